"""
Tool: Inbox Providers
Purpose: Poll an inbox for recent messages

Providers:
    ImapInbox      - messages received in the last few minutes over IMAP (stdlib imaplib)
    DirectoryInbox - .eml files dropped into a directory

Item IDs are the Message-ID header when present, so the daemon's
de-duplication survives restarts and provider changes.

Usage:
    inbox = ImapInbox(host="imap.example.com", username="me", password="...")
    for item in inbox.poll_new_items():
        print(item.subject)
"""

from __future__ import annotations

import email
import email.errors
import email.message
import email.utils
import hashlib
import imaplib
import logging
from datetime import datetime, timedelta
from email.header import decode_header, make_header
from pathlib import Path
from typing import Protocol

from autopilot.automation.models import InboxItem

logger = logging.getLogger(__name__)

MAX_BODY_CHARS = 3000


class Inbox(Protocol):
    def poll_new_items(self) -> list[InboxItem]: ...


def _decode(value: str | None) -> str:
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except (UnicodeDecodeError, LookupError, email.errors.HeaderParseError):
        return value


def _received_at(msg: email.message.Message) -> datetime | None:
    date_header = msg.get("Date", "")
    if not date_header:
        return None
    try:
        parsed = email.utils.parsedate_to_datetime(date_header)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _body_text(msg: email.message.Message) -> str:
    if msg.is_multipart():
        for part in msg.walk():
            if part.get_content_type() == "text/plain":
                payload = part.get_payload(decode=True)
                if payload:
                    return payload.decode("utf-8", errors="ignore")
        return ""
    payload = msg.get_payload(decode=True)
    return payload.decode("utf-8", errors="ignore") if payload else ""


def parse_message(raw: bytes, fallback_id: str, max_body_chars: int = MAX_BODY_CHARS) -> InboxItem:
    """Parse an RFC 822 message into an InboxItem."""
    msg = email.message_from_bytes(raw)
    message_id = (msg.get("Message-ID") or "").strip() or fallback_id
    received = _received_at(msg)
    return InboxItem(
        id=message_id,
        sender=_decode(msg.get("From")),
        subject=_decode(msg.get("Subject")),
        timestamp=(received or datetime.now()).isoformat(timespec="seconds"),
        body=_body_text(msg)[:max_body_chars],
    )


class ImapInbox:
    """Polls an IMAP mailbox for messages received within a lookback window."""

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 993,
        mailbox: str = "INBOX",
        lookback_minutes: int = 10,
        max_items: int = 20,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.mailbox = mailbox
        self.lookback_minutes = lookback_minutes
        self.max_items = max_items

    def _connect(self) -> imaplib.IMAP4_SSL:
        conn = imaplib.IMAP4_SSL(self.host, self.port)
        conn.login(self.username, self.password)
        return conn

    def poll_new_items(self, now: datetime | None = None) -> list[InboxItem]:
        now = now or datetime.now()
        cutoff = now - timedelta(minutes=self.lookback_minutes)

        conn = self._connect()
        try:
            conn.select(self.mailbox, readonly=True)
            # SINCE has day granularity; the exact cutoff is applied below
            _, data = conn.search(None, "SINCE", cutoff.strftime("%d-%b-%Y"))
            message_nums = list(reversed(data[0].split()))[: self.max_items]

            items = []
            for num in message_nums:
                _, msg_data = conn.fetch(num, "(BODY.PEEK[])")
                if not msg_data or not isinstance(msg_data[0], tuple):
                    continue
                raw = msg_data[0][1]
                fallback = f"imap:{self.mailbox}:{hashlib.sha256(raw).hexdigest()[:16]}"
                item = parse_message(raw, fallback)
                if datetime.fromisoformat(item.timestamp) >= cutoff:
                    items.append(item)
            return items
        finally:
            try:
                conn.logout()
            except (imaplib.IMAP4.error, OSError) as e:
                logger.debug(f"IMAP logout failed: {e}")


class DirectoryInbox:
    """Treats ``*.eml`` files in a directory as inbox messages, newest first."""

    def __init__(self, directory: str | Path, max_items: int = 20):
        self.directory = Path(directory).expanduser()
        self.max_items = max_items

    def poll_new_items(self) -> list[InboxItem]:
        if not self.directory.is_dir():
            logger.debug(f"Inbox directory {self.directory} does not exist")
            return []

        files = sorted(
            self.directory.glob("*.eml"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )[: self.max_items]

        items = []
        for path in files:
            try:
                raw = path.read_bytes()
            except OSError as e:
                logger.warning(f"Could not read {path}: {e}")
                continue
            items.append(parse_message(raw, fallback_id=f"file:{path.name}"))
        return items
