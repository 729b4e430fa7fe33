"""Intent classification for inbox items.

Two interchangeable classifiers:
- KeywordIntentClassifier: priority-sorted regex patterns plus field extraction
- LLMIntentClassifier: batched chat-completion classification

Classifiers return every actionable intent they find with its confidence;
the daemon applies the confidence threshold.
"""

from __future__ import annotations

import json
import logging
import re
from email.utils import parseaddr
from typing import Any, Protocol

import httpx

from autopilot.automation.llm import ChatClient, extract_json_object
from autopilot.automation.models import InboxItem, Intent

logger = logging.getLogger(__name__)

INTENTS = ("flight_checkin", "hotel_booking", "package_tracking", "bill_due", "meeting_prep")

MAX_BATCH_SIZE = 10
MAX_BODY_CHARS = 2000


class IntentClassifier(Protocol):
    def classify(self, items: list[InboxItem]) -> list[Intent]: ...


# =============================================================================
# Keyword classifier
# =============================================================================

# Intent patterns: (pattern, intent, priority)
# Higher priority = matched first and reported with higher confidence.
INTENT_PATTERNS: list[tuple[str, str, int]] = [
    # Flights
    (r"(?:check[\s-]?in\s+(?:is\s+)?(?:now\s+)?open|online\s+check[\s-]?in|web\s+check[\s-]?in)", "flight_checkin", 95),
    (r"(?:boarding\s+pass|flight\s+(?:itinerary|confirmation))", "flight_checkin", 70),
    (r"\bflight\b", "flight_checkin", 30),

    # Shipping
    (r"(?:out\s+for\s+delivery|has\s+(?:been\s+)?shipped|tracking\s+(?:number|#))", "package_tracking", 90),
    (r"(?:your\s+(?:package|order|parcel)\s+is\s+on\s+its\s+way)", "package_tracking", 85),
    (r"\b(?:package|parcel|shipment)\b", "package_tracking", 30),

    # Bills
    (r"(?:payment\s+(?:is\s+)?due|amount\s+due|balance\s+due|your\s+bill\s+is\s+(?:ready|available))", "bill_due", 85),
    (r"(?:invoice\s+(?:#|no\.?|number)\s*\w+)", "bill_due", 65),
    (r"\binvoice\b", "bill_due", 30),

    # Hotels
    (r"(?:hotel\s+(?:reservation|booking)|your\s+stay\s+at|reservation\s+confirm(?:ed|ation))", "hotel_booking", 80),

    # Meetings
    (r"(?:^invitation:|meeting\s+(?:invitation|agenda)|agenda\s+for)", "meeting_prep", 60),
    (r"\bmeeting\b", "meeting_prep", 25),
]

URGENCY = {
    "flight_checkin": "immediate",
    "hotel_booking": "upcoming",
    "package_tracking": "none",
    "bill_due": "upcoming",
    "meeting_prep": "today",
}

ACTION_PLANS = {
    "flight_checkin": "Open the airline's check-in page and complete web check-in for the flight.",
    "hotel_booking": "Review the hotel reservation and note check-in and check-out dates.",
    "package_tracking": "Open the tracking page and report the current delivery status.",
    "bill_due": "Review the bill and report the amount and due date.",
    "meeting_prep": "Gather the agenda and attendee list and prepare notes for the meeting.",
}

AIRLINES = [
    "Alaska", "American", "British Airways", "Delta", "Emirates", "JetBlue",
    "Lufthansa", "Qantas", "Ryanair", "Southwest", "United",
]
CARRIERS = ["UPS", "FedEx", "USPS", "DHL", "Amazon", "Royal Mail"]

_FLIGHT_NUMBER = re.compile(r"\b([A-Z]{2}|[A-Z]\d|\d[A-Z])\s?(\d{1,4})\b")
_CONFIRMATION = re.compile(
    r"confirmation(?:\s+(?:code|number|no\.?))?\s*[:#]?\s*([A-Z0-9]{6,8})\b", re.IGNORECASE
)
_URL = re.compile(r"https?://[^\s<>\"')]+")
_TRACKING_NUMBER = re.compile(r"tracking\s+(?:number|#|no\.?)\s*[:#]?\s*([A-Z0-9]{8,})", re.IGNORECASE)
_AMOUNT = re.compile(r"[$€£]\s?\d[\d,]*(?:\.\d{2})?")
_DUE_DATE = re.compile(
    r"due\s+(?:on|by)?\s*(\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}(?:/\d{2,4})?|[A-Z][a-z]+\s+\d{1,2}(?:,\s*\d{4})?)"
)
_HOTEL_NAME = re.compile(r"\bat\s+(?:the\s+)?([A-Z][\w&' ]*?(?:Hotel|Inn|Resort|Suites|Lodge))\b")
_INVITATION_PREFIX = re.compile(r"^(?:invitation|updated\s+invitation|invite)\s*:\s*", re.IGNORECASE)

_compiled_patterns: list[tuple[re.Pattern, str, int]] | None = None


def _get_patterns() -> list[tuple[re.Pattern, str, int]]:
    """Get compiled patterns sorted by priority (highest first)."""
    global _compiled_patterns
    if _compiled_patterns is None:
        _compiled_patterns = sorted(
            [
                (re.compile(p, re.IGNORECASE | re.MULTILINE), intent, priority)
                for p, intent, priority in INTENT_PATTERNS
            ],
            key=lambda x: x[2],
            reverse=True,
        )
    return _compiled_patterns


def _first(pattern: re.Pattern, text: str, group: int = 1) -> str | None:
    match = pattern.search(text)
    return match.group(group) if match else None


def _find_name(names: list[str], text: str) -> str | None:
    lowered = text.lower()
    for name in names:
        if name.lower() in lowered:
            return name
    return None


def _sender_name(sender: str) -> str:
    name, address = parseaddr(sender)
    if name:
        return name
    domain = address.split("@")[-1] if "@" in address else address
    return domain.split(".")[0].capitalize() if domain else ""


def extract_fields(intent: str, item: InboxItem) -> dict[str, Any]:
    """Pull intent-specific fields out of an inbox item."""
    text = f"{item.subject}\n{item.body}"
    urls = _URL.findall(item.body)
    data: dict[str, Any] = {}

    if intent == "flight_checkin":
        match = _FLIGHT_NUMBER.search(text)
        data["airline"] = _find_name(AIRLINES, text) or _sender_name(item.sender)
        data["flight_number"] = f"{match.group(1)}{match.group(2)}" if match else None
        data["confirmation_number"] = _first(_CONFIRMATION, text)
        data["checkin_url"] = next((u for u in urls if "check" in u.lower()), None)

    elif intent == "package_tracking":
        data["carrier"] = _find_name(CARRIERS, f"{item.sender}\n{text}")
        data["tracking_number"] = _first(_TRACKING_NUMBER, text)
        data["tracking_url"] = next((u for u in urls if "track" in u.lower()), None)

    elif intent == "bill_due":
        data["vendor"] = _sender_name(item.sender)
        amount = _AMOUNT.search(text)
        data["amount"] = amount.group(0).replace(" ", "") if amount else None
        data["due_date"] = _first(_DUE_DATE, text)

    elif intent == "hotel_booking":
        data["hotel_name"] = _first(_HOTEL_NAME, text)
        data["confirmation_number"] = _first(_CONFIRMATION, text)

    elif intent == "meeting_prep":
        data["title"] = _INVITATION_PREFIX.sub("", item.subject).strip() or None

    return {k: v for k, v in data.items() if v}


class KeywordIntentClassifier:
    """Regex classifier; confidence grows with the priority of the matching pattern."""

    def classify_item(self, item: InboxItem) -> Intent | None:
        text = f"{item.subject}\n{item.body}"
        for pattern, intent, priority in _get_patterns():
            if pattern.search(text):
                confidence = min(0.95, 0.6 + (priority / 200))
                return Intent(
                    source_id=item.id,
                    intent=intent,
                    confidence=confidence,
                    data=extract_fields(intent, item),
                    action_text=ACTION_PLANS[intent],
                    urgency=URGENCY[intent],
                )
        return None

    def classify(self, items: list[InboxItem]) -> list[Intent]:
        intents = []
        for item in items:
            try:
                intent = self.classify_item(item)
            except Exception as e:
                logger.warning(f"Could not classify item {item.id}: {e}")
                continue
            if intent:
                intents.append(intent)
        return intents


# =============================================================================
# LLM classifier
# =============================================================================

CLASSIFICATION_PROMPT = """You are an email classifier. For each email, determine if it's actionable.
Return ONLY valid JSON, no other text.

Supported intents:
- flight_checkin: airline confirmation emails with flight details
- hotel_booking: hotel reservation confirmations
- package_tracking: shipping/delivery notifications with tracking info
- bill_due: invoices, bills, payment reminders
- meeting_prep: meeting invitations or agendas needing preparation
- none: not actionable

For each actionable email, extract relevant structured data.

Return format:
{
  "items": [
    {
      "email_id": "the message id",
      "intent": "one of the intents above",
      "confidence": 0.0 to 1.0,
      "data": { ... extracted fields relevant to the intent ... },
      "action": "human-readable description of what to do",
      "urgency": "immediate|today|upcoming|none"
    }
  ]
}

For flight_checkin, extract: airline, confirmation_number, flight_number, date, checkin_url
For hotel_booking, extract: hotel_name, checkin_date, checkout_date, confirmation_number
For package_tracking, extract: carrier, tracking_number, tracking_url, delivery_date
For bill_due, extract: vendor, amount, due_date
For meeting_prep, extract: title, time, attendees, agenda
"""


def format_batch(items: list[InboxItem], max_body_chars: int = MAX_BODY_CHARS) -> str:
    blocks = []
    for i, item in enumerate(items, start=1):
        blocks.append(
            f"--- Email {i} (id: {item.id}) ---\n"
            f"From: {item.sender}\n"
            f"Subject: {item.subject}\n"
            f"Date: {item.timestamp}\n\n"
            f"{item.body[:max_body_chars]}"
        )
    return "\n\n".join(blocks)


def parse_classification(content: str, known_ids: set[str]) -> list[Intent]:
    """Turn a model reply into intents, dropping malformed and non-actionable entries."""
    parsed = extract_json_object(content)
    if not parsed:
        return []

    intents = []
    for entry in parsed.get("items") or []:
        if not isinstance(entry, dict):
            continue
        source_id = str(entry.get("email_id") or "")
        intent = entry.get("intent")
        if source_id not in known_ids or intent not in INTENTS:
            continue
        try:
            confidence = float(entry.get("confidence") or 0.0)
        except (TypeError, ValueError):
            continue
        data = entry.get("data") if isinstance(entry.get("data"), dict) else {}
        intents.append(
            Intent(
                source_id=source_id,
                intent=intent,
                confidence=min(max(confidence, 0.0), 1.0),
                data=data,
                action_text=str(entry.get("action") or ACTION_PLANS[intent]),
                urgency=str(entry.get("urgency") or "none"),
            )
        )
    return intents


class LLMIntentClassifier:
    """Classifies items in batches through a chat-completions model."""

    def __init__(self, client: ChatClient, max_batch_size: int = MAX_BATCH_SIZE):
        self.client = client
        self.max_batch_size = max_batch_size

    def classify(self, items: list[InboxItem]) -> list[Intent]:
        intents: list[Intent] = []
        for start in range(0, len(items), self.max_batch_size):
            batch = items[start : start + self.max_batch_size]
            messages = [
                {"role": "system", "content": CLASSIFICATION_PROMPT},
                {"role": "user", "content": f"Classify these emails:\n\n{format_batch(batch)}"},
            ]
            try:
                content = self.client.complete_text(messages)
            except (httpx.HTTPError, json.JSONDecodeError) as e:
                logger.warning(f"Classification failed for {len(batch)} items: {e}")
                continue
            intents.extend(parse_classification(content, {item.id for item in batch}))
        return intents
