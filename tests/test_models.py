"""Tests for models parsing and the Session scope check."""

import unittest
from datetime import datetime, timezone

from models import (
    Item,
    ItemKind,
    MailboxResult,
    RunSummary,
    SenderCriterion,
    SubjectCriterion,
    iso_utc,
    parse_graph_datetime,
)
from tests.fakes import FakeGraphClient, make_session


class TestParseGraphDatetime(unittest.TestCase):
    def test_seven_digit_fraction(self):
        parsed = parse_graph_datetime({"dateTime": "2025-03-04T09:30:00.1234567", "timeZone": "UTC"})
        self.assertEqual(parsed, datetime(2025, 3, 4, 9, 30, 0, 123456, tzinfo=timezone.utc))

    def test_zulu_string(self):
        self.assertEqual(
            parse_graph_datetime("2025-03-04T09:30:00Z"),
            datetime(2025, 3, 4, 9, 30, tzinfo=timezone.utc),
        )

    def test_offset_converted_to_utc(self):
        self.assertEqual(
            parse_graph_datetime("2025-03-04T11:30:00+02:00"),
            datetime(2025, 3, 4, 9, 30, tzinfo=timezone.utc),
        )

    def test_missing_or_invalid(self):
        self.assertIsNone(parse_graph_datetime(None))
        self.assertIsNone(parse_graph_datetime({"timeZone": "UTC"}))
        self.assertIsNone(parse_graph_datetime("yesterday"))

    def test_iso_utc(self):
        self.assertEqual(iso_utc(datetime(2025, 3, 4, 9, 30, 5, 900, tzinfo=timezone.utc)), "2025-03-04T09:30:05Z")
        self.assertEqual(iso_utc(None), "")


class TestItemFromGraph(unittest.TestCase):
    def test_event(self):
        payload = {
            "id": "evt-1",
            "subject": "Quarterly review",
            "organizer": {"emailAddress": {"address": "boss@x.com"}},
            "attendees": [
                {"emailAddress": {"address": "a@x.com"}},
                {"emailAddress": {}},
                {"emailAddress": {"address": "b@x.com"}},
            ],
            "location": {"displayName": "Room 4"},
            "start": {"dateTime": "2025-03-04T09:00:00.0000000", "timeZone": "UTC"},
            "end": {"dateTime": "2025-03-04T10:00:00.0000000", "timeZone": "UTC"},
            "type": "occurrence",
        }
        item = Item.from_graph(payload, "a@x.com", ItemKind.MEETING)

        self.assertEqual(item.sender, "boss@x.com")
        self.assertEqual(item.attendees, ("a@x.com", "b@x.com"))
        self.assertEqual(item.location, "Room 4")
        self.assertEqual(item.item_type, "occurrence")
        self.assertEqual(item.end.hour, 10)

    def test_event_with_sparse_fields(self):
        item = Item.from_graph({"id": "x"}, "a@x.com", ItemKind.MEETING)
        self.assertEqual(item.subject, "")
        self.assertEqual(item.sender, "")
        self.assertEqual(item.attendees, ())
        self.assertIsNone(item.start)

    def test_message(self):
        payload = {
            "id": "msg-1",
            "subject": "Invoice",
            "from": {"emailAddress": {"address": "billing@x.com"}},
            "toRecipients": [{"emailAddress": {"address": "a@x.com"}}],
            "receivedDateTime": "2025-03-04T09:00:00Z",
        }
        item = Item.from_graph(payload, "a@x.com", ItemKind.MESSAGE)
        self.assertEqual(item.sender, "billing@x.com")
        self.assertEqual(item.item_type, "message")
        self.assertIsNone(item.end)
        self.assertEqual(ItemKind.MESSAGE.collection, "messages")


class TestCriterion(unittest.TestCase):
    def test_describe(self):
        self.assertEqual(SubjectCriterion("Team Sync").describe(), "subject = 'Team Sync'")
        self.assertEqual(SenderCriterion("b@x.com").describe(), "sender = 'b@x.com'")


class TestSession(unittest.TestCase):
    def test_scope_check_is_case_insensitive(self):
        session = make_session(FakeGraphClient(), scopes=("calendars.readwrite",))
        self.assertTrue(session.has_scopes(["Calendars.ReadWrite"]))
        self.assertTrue(session.has_scopes(["Calendars.Read"]))
        self.assertFalse(session.has_scopes(["Mail.Read"]))

    def test_read_does_not_cover_readwrite(self):
        session = make_session(FakeGraphClient(), scopes=("Calendars.Read",))
        self.assertFalse(session.has_scopes(["Calendars.ReadWrite"]))

    def test_close_logs_out_once(self):
        class _Auth:
            calls = 0

            def logout(self):
                _Auth.calls += 1

        session = make_session(FakeGraphClient())
        session.auth = _Auth()
        session.close()
        session.close()
        self.assertEqual(_Auth.calls, 1)


class TestRunSummary(unittest.TestCase):
    def test_aggregates(self):
        summary = RunSummary(action="delete", criterion="subject = 'x'")
        summary.mailboxes.append(MailboxResult("a@x.com", status="processed", matched=3, acted=2,
                                               failures=[{"item_id": "9", "error": "gone"}]))
        summary.mailboxes.append(MailboxResult("b@x.com", status="failed", error="denied"))

        payload = summary.to_dict()

        self.assertEqual(payload["matched"], 3)
        self.assertEqual(payload["acted"], 2)
        self.assertEqual(payload["item_failures"], 1)
        self.assertEqual(payload["failed_mailboxes"], ["b@x.com"])
        self.assertEqual(payload["mailboxes"][1]["error"], "denied")
        self.assertTrue(summary.has_failures)


if __name__ == "__main__":
    unittest.main()
