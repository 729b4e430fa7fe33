"""Tests for autopilot/automation/inbox.py"""

import os
from datetime import datetime, timedelta
from email.message import EmailMessage
from unittest.mock import MagicMock, patch

import pytest

from autopilot.automation.inbox import DirectoryInbox, ImapInbox, parse_message


def raw_email(subject="Hello", message_id="<m1@example.com>", date=None, body="Body text"):
    msg = EmailMessage()
    msg["From"] = "Sender <sender@example.com>"
    msg["Subject"] = subject
    if message_id:
        msg["Message-ID"] = message_id
    if date:
        msg["Date"] = date
    msg.set_content(body)
    return msg.as_bytes()


class TestParseMessage:
    def test_basic_fields(self):
        item = parse_message(raw_email(), fallback_id="fallback")

        assert item.id == "<m1@example.com>"
        assert item.sender == "Sender <sender@example.com>"
        assert item.subject == "Hello"
        assert item.body.strip() == "Body text"

    def test_fallback_id(self):
        item = parse_message(raw_email(message_id=None), fallback_id="file:x.eml")

        assert item.id == "file:x.eml"

    def test_encoded_subject(self):
        item = parse_message(raw_email(subject="Café bill"), fallback_id="f")

        assert item.subject == "Café bill"

    def test_body_truncated(self):
        item = parse_message(raw_email(body="y" * 100), fallback_id="f", max_body_chars=10)

        assert item.body == "y" * 10

    def test_naive_date(self):
        item = parse_message(raw_email(date="Mon, 02 Mar 2026 08:00:00 -0000"), fallback_id="f")

        assert datetime.fromisoformat(item.timestamp).tzinfo is None


class TestDirectoryInbox:
    def test_missing_directory(self, tmp_path):
        assert DirectoryInbox(tmp_path / "nope").poll_new_items() == []

    def test_newest_first_and_limited(self, tmp_path):
        for n in range(3):
            path = tmp_path / f"{n}.eml"
            path.write_bytes(raw_email(subject=f"Message {n}", message_id=f"<{n}@x>"))
            os.utime(path, (1_700_000_000 + n, 1_700_000_000 + n))
        (tmp_path / "ignored.txt").write_text("not mail")

        items = DirectoryInbox(tmp_path, max_items=2).poll_new_items()

        assert [i.subject for i in items] == ["Message 2", "Message 1"]


class TestImapInbox:
    @pytest.fixture
    def imap(self):
        conn = MagicMock()
        conn.search.return_value = ("OK", [b"1 2"])
        recent = raw_email(subject="Recent", message_id="<r@x>", date="Mon, 02 Mar 2026 08:25:00 +0000")
        old = raw_email(subject="Old", message_id="<o@x>", date="Mon, 02 Mar 2026 06:00:00 +0000")
        conn.fetch.side_effect = lambda num, spec: (
            "OK",
            [(b"header", recent if num == b"2" else old)],
        )
        return conn

    def test_filters_by_lookback_and_logs_out(self, imap):
        inbox = ImapInbox("imap.test", "me", "pw", lookback_minutes=10)
        received = datetime.fromisoformat(
            parse_message(raw_email(date="Mon, 02 Mar 2026 08:25:00 +0000"), "f").timestamp
        )

        with patch.object(ImapInbox, "_connect", return_value=imap):
            items = inbox.poll_new_items(now=received + timedelta(minutes=1))

        assert [i.subject for i in items] == ["Recent"]
        imap.select.assert_called_once_with("INBOX", readonly=True)
        imap.logout.assert_called_once()

    def test_logs_out_on_error(self, imap):
        imap.search.side_effect = OSError("connection dropped")
        inbox = ImapInbox("imap.test", "me", "pw")

        with patch.object(ImapInbox, "_connect", return_value=imap):
            with pytest.raises(OSError):
                inbox.poll_new_items()

        imap.logout.assert_called_once()
