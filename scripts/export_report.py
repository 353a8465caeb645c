#!/usr/bin/env python3
"""CSV report written by the export command."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Dict, Optional

from models import Item, iso_utc

EXPORT_COLUMNS = [
    "Subject",
    "Organizer",
    "Attendees",
    "Location",
    "Start Time",
    "End Time",
    "Type",
    "Item Id",
]
ATTENDEE_SEPARATOR = "; "


def export_row(item: Item) -> Dict[str, str]:
    return {
        "Subject": item.subject,
        "Organizer": item.sender,
        "Attendees": ATTENDEE_SEPARATOR.join(item.attendees),
        "Location": item.location,
        "Start Time": iso_utc(item.start),
        "End Time": iso_utc(item.end),
        "Type": item.item_type,
        "Item Id": item.id,
    }


class CsvReport:
    """Append-only CSV report; opened for the duration of a run.

    Written with a BOM so Excel picks up UTF-8 subjects correctly.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.rows = 0
        self._handle = None
        self._writer: Optional[csv.DictWriter] = None

    def __enter__(self) -> "CsvReport":
        self.open()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.path.open("w", newline="", encoding="utf-8-sig")
        self._writer = csv.DictWriter(self._handle, fieldnames=EXPORT_COLUMNS)
        self._writer.writeheader()

    def write(self, item: Item) -> None:
        if self._writer is None:
            raise OSError(f"report {self.path} is not open")
        self._writer.writerow(export_row(item))
        self.rows += 1

    def close(self) -> None:
        if self._handle is not None:
            self._handle.close()
        self._handle = None
        self._writer = None
