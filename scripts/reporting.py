#!/usr/bin/env python3
"""Progress and per-item observability hooks for a sweep run."""

from __future__ import annotations

import logging
from typing import Optional

from models import Item, MailboxResult, RunSummary

logger = logging.getLogger("mailbox_sweeper")


class Reporter:
    """Hook interface called by the pipeline. Every hook defaults to a no-op."""

    def on_run_start(self, total: int, criterion: str) -> None:
        pass

    def on_mailbox_start(self, index: int, total: int, mailbox: str) -> None:
        pass

    def on_item_action(self, mailbox: str, item: Item, action: str) -> None:
        pass

    def on_item_failed(self, mailbox: str, item: Item, error: Exception) -> None:
        pass

    def on_mailbox_empty(self, mailbox: str) -> None:
        pass

    def on_mailbox_failed(self, mailbox: str, error: Exception) -> None:
        pass

    def on_mailbox_done(self, result: MailboxResult) -> None:
        pass

    def on_run_done(self, summary: RunSummary) -> None:
        pass


class LoggingReporter(Reporter):
    """Writes every hook to the ``mailbox_sweeper`` logger."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self.log = log or logger

    def on_run_start(self, total: int, criterion: str) -> None:
        self.log.info("Sweeping %d mailbox(es) where %s", total, criterion)

    def on_mailbox_start(self, index: int, total: int, mailbox: str) -> None:
        self.log.info("[%d/%d] %s", index, total, mailbox)

    def on_item_action(self, mailbox: str, item: Item, action: str) -> None:
        self.log.info(
            "  %s %s | %r | organizer %s | starts %s",
            action,
            item.id,
            item.subject,
            item.sender or "-",
            item.start.isoformat() if item.start else "-",
        )

    def on_item_failed(self, mailbox: str, item: Item, error: Exception) -> None:
        self.log.error("  failed on %s (%r): %s", item.id, item.subject, error)

    def on_mailbox_empty(self, mailbox: str) -> None:
        self.log.info("  no matching items in %s", mailbox)

    def on_mailbox_failed(self, mailbox: str, error: Exception) -> None:
        self.log.error("  skipping %s: %s", mailbox, error)

    def on_mailbox_done(self, result: MailboxResult) -> None:
        self.log.info(
            "  %s: %d matched, %d done, %d failed",
            result.mailbox,
            result.matched,
            result.acted,
            len(result.failures),
        )

    def on_run_done(self, summary: RunSummary) -> None:
        if not summary.mailboxes:
            self.log.info("No mailboxes were processed")
            return
        self.log.info(
            "Finished %s across %d mailbox(es): %d item failure(s), %d mailbox failure(s)",
            summary.action,
            len(summary.mailboxes),
            summary.item_failures,
            len(summary.failed_mailboxes),
        )
