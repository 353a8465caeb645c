#!/usr/bin/env python3
"""Mailbox sweep pipeline.

For every mailbox: query items with a server filter, narrow them with the
client-side predicates Graph cannot express, then export or delete each match.
Mailboxes run one after another with the same Session. A failing mailbox is
reported and skipped, and a failing item never stops the items after it.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from export_report import CsvReport
from graph_client import GraphAPIError
from models import (
    Criterion,
    Item,
    ItemKind,
    MailboxResult,
    RunSummary,
    SenderCriterion,
    Session,
    SubjectCriterion,
)
from reporting import Reporter

logger = logging.getLogger(__name__)


class QueryError(RuntimeError):
    """Raised when a mailbox's items cannot be listed."""

    def __init__(self, mailbox: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{mailbox}: {message}")
        self.mailbox = mailbox
        self.status_code = status_code


class ActionError(RuntimeError):
    """Raised when exporting or deleting one item fails."""

    def __init__(self, item: Item, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.item = item
        self.status_code = status_code


def resolve_mailboxes(session: Session, explicit: Optional[Sequence[str]] = None) -> List[str]:
    if explicit is not None:
        return list(explicit)
    return [session.principal]


def query_items(
    session: Session,
    mailbox: str,
    criterion: Criterion,
    kind: ItemKind = ItemKind.MEETING,
) -> Iterator[Item]:
    """Lazily yield the mailbox items the server-side filter lets through.

    A subject criterion becomes an exact-match ``$filter``. Sender matching is
    not pushed to the server, so a sender criterion lists the whole collection.
    """
    subject = criterion.text if isinstance(criterion, SubjectCriterion) else None
    try:
        for payload in session.client.iter_items(mailbox, kind, subject=subject):
            yield Item.from_graph(payload, mailbox, kind)
    except GraphAPIError as err:
        raise QueryError(mailbox, str(err), status_code=err.status_code) from err


def refine(
    items: Iterable[Item],
    criterion: Criterion,
    start_after: Optional[datetime] = None,
) -> List[Item]:
    return [item for item in items if matches(item, criterion, start_after)]


def matches(item: Item, criterion: Criterion, start_after: Optional[datetime] = None) -> bool:
    if isinstance(criterion, SenderCriterion):
        if item.sender.strip().lower() != criterion.address.strip().lower():
            return False
    elif item.subject != criterion.text:
        return False

    if start_after is not None:
        return item.start is not None and item.start > start_after
    return True


class Action:
    """What the run loop does with each refined item.

    ``name`` labels the run summary and ``verb`` the per-item record.
    ``apply`` raises ActionError for a failure confined to that item.
    """

    name = ""
    verb = ""

    def apply(self, session: Session, item: Item) -> None:
        raise NotImplementedError


class DeleteAction(Action):
    name = "delete"
    verb = "deleting"

    def apply(self, session: Session, item: Item) -> None:
        try:
            session.client.delete_item(item.mailbox, item.kind, item.id)
        except GraphAPIError as err:
            raise ActionError(item, str(err), status_code=err.status_code) from err


class ExportAction(Action):
    name = "export"
    verb = "exporting"

    def __init__(self, report: CsvReport) -> None:
        self.report = report

    def apply(self, session: Session, item: Item) -> None:
        try:
            self.report.write(item)
        except OSError as err:
            raise ActionError(item, f"could not write report row: {err}") from err


def run_pipeline(
    session: Session,
    mailboxes: Sequence[str],
    criterion: Criterion,
    action: Action,
    kind: ItemKind = ItemKind.MEETING,
    reporter: Optional[Reporter] = None,
    start_after: Optional[datetime] = None,
) -> RunSummary:
    reporter = reporter or Reporter()
    summary = RunSummary(action=action.name, criterion=criterion.describe())
    total = len(mailboxes)
    reporter.on_run_start(total, criterion.describe())

    for index, mailbox in enumerate(mailboxes, start=1):
        reporter.on_mailbox_start(index, total, mailbox)
        result = MailboxResult(mailbox=mailbox)
        summary.mailboxes.append(result)

        # Collect the full match set first; deleting while paging would move
        # the server's cursor under us.
        try:
            selected = refine(query_items(session, mailbox, criterion, kind), criterion, start_after)
        except QueryError as err:
            result.status = "failed"
            result.error = str(err)
            reporter.on_mailbox_failed(mailbox, err)
            continue

        result.matched = len(selected)
        logger.debug("%s: %d item(s) left after client-side filtering", mailbox, len(selected))
        if not selected:
            result.status = "empty"
            reporter.on_mailbox_empty(mailbox)
            reporter.on_mailbox_done(result)
            continue

        for item in selected:
            reporter.on_item_action(mailbox, item, action.verb)
            try:
                action.apply(session, item)
            except ActionError as err:
                result.failures.append(_failure_record(item, err))
                reporter.on_item_failed(mailbox, item, err)
                continue
            result.acted += 1

        result.status = "processed"
        reporter.on_mailbox_done(result)

    reporter.on_run_done(summary)
    return summary


def _failure_record(item: Item, err: ActionError) -> Dict[str, Any]:
    record: Dict[str, Any] = {"item_id": item.id, "subject": item.subject, "error": str(err)}
    if err.status_code is not None:
        record["status_code"] = err.status_code
    return record
