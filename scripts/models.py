#!/usr/bin/env python3
"""Value types shared by the session, query, and action layers."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple, Union


class ItemKind(str, Enum):
    MEETING = "meeting"
    MESSAGE = "message"

    @property
    def collection(self) -> str:
        return "events" if self is ItemKind.MEETING else "messages"


@dataclass(frozen=True)
class Item:
    id: str
    subject: str
    sender: str
    mailbox: str
    kind: ItemKind
    attendees: Tuple[str, ...] = ()
    location: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    item_type: str = ""

    @classmethod
    def from_graph(cls, payload: Dict[str, Any], mailbox: str, kind: ItemKind) -> "Item":
        """Build an Item from a Graph event or message resource."""
        if kind is ItemKind.MEETING:
            return cls(
                id=str(payload.get("id") or ""),
                subject=payload.get("subject") or "",
                sender=_address_of(payload.get("organizer")),
                mailbox=mailbox,
                kind=kind,
                attendees=_addresses(payload.get("attendees")),
                location=(payload.get("location") or {}).get("displayName") or "",
                start=parse_graph_datetime(payload.get("start")),
                end=parse_graph_datetime(payload.get("end")),
                item_type=payload.get("type") or "",
            )

        return cls(
            id=str(payload.get("id") or ""),
            subject=payload.get("subject") or "",
            sender=_address_of(payload.get("from")),
            mailbox=mailbox,
            kind=kind,
            attendees=_addresses(payload.get("toRecipients")),
            start=parse_graph_datetime(payload.get("receivedDateTime")),
            item_type="message",
        )


@dataclass(frozen=True)
class SubjectCriterion:
    text: str

    def describe(self) -> str:
        return f"subject = {self.text!r}"


@dataclass(frozen=True)
class SenderCriterion:
    address: str

    def describe(self) -> str:
        return f"sender = {self.address!r}"


Criterion = Union[SubjectCriterion, SenderCriterion]


@dataclass
class Session:
    """An authenticated Graph identity, reused for every mailbox in a run."""

    principal: str
    scopes: FrozenSet[str]
    identity: str
    client: Any
    auth: Any = None

    @property
    def is_application(self) -> bool:
        return self.identity == "application"

    def has_scopes(self, required: Iterable[str]) -> bool:
        granted = {scope.lower() for scope in self.scopes}
        for scope in required:
            wanted = scope.lower()
            if wanted in granted:
                continue
            # ReadWrite covers Read.
            if wanted.endswith(".read") and wanted[: -len(".read")] + ".readwrite" in granted:
                continue
            return False
        return True

    def close(self) -> None:
        if self.auth is not None:
            self.auth.logout()
        self.auth = None


@dataclass
class MailboxResult:
    mailbox: str
    status: str = "pending"
    matched: int = 0
    acted: int = 0
    failures: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "mailbox": self.mailbox,
            "status": self.status,
            "matched": self.matched,
            "acted": self.acted,
            "failed": len(self.failures),
        }
        if self.failures:
            payload["failures"] = list(self.failures)
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class RunSummary:
    action: str
    criterion: str
    mailboxes: List[MailboxResult] = field(default_factory=list)

    @property
    def item_failures(self) -> int:
        return sum(len(result.failures) for result in self.mailboxes)

    @property
    def failed_mailboxes(self) -> List[str]:
        return [result.mailbox for result in self.mailboxes if result.status == "failed"]

    @property
    def has_failures(self) -> bool:
        return bool(self.item_failures or self.failed_mailboxes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "criterion": self.criterion,
            "mailbox_count": len(self.mailboxes),
            "matched": sum(result.matched for result in self.mailboxes),
            "acted": sum(result.acted for result in self.mailboxes),
            "item_failures": self.item_failures,
            "failed_mailboxes": self.failed_mailboxes,
            "mailboxes": [result.to_dict() for result in self.mailboxes],
        }


_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_graph_datetime(raw: Any) -> Optional[datetime]:
    """Parse a Graph timestamp into an aware UTC datetime.

    Accepts either a plain ISO string (``receivedDateTime``) or a
    ``dateTimeTimeZone`` object. Graph emits seven fractional digits, which
    ``fromisoformat`` rejects on older interpreters, so the fraction is cut to
    microseconds. Naive values are UTC because every request asks Graph for
    UTC times.
    """
    if isinstance(raw, dict):
        raw = raw.get("dateTime")
    if not raw:
        return None

    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(r".\1", text)

    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def iso_utc(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _address_of(recipient: Any) -> str:
    if not isinstance(recipient, dict):
        return ""
    return ((recipient.get("emailAddress") or {}).get("address") or "").strip()


def _addresses(recipients: Any) -> Tuple[str, ...]:
    found = []
    for recipient in recipients or []:
        address = _address_of(recipient)
        if address:
            found.append(address)
    return tuple(found)
