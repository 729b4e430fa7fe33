"""
Minimal OpenAI-compatible chat completion client used by the LLM intent
classifier and the HTTP agent executor.
"""

from __future__ import annotations

import json
import re
from typing import Any

import httpx

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class ChatClient:
    """Synchronous chat-completions client.

    Args:
        endpoint: Full chat completions URL.
        model: Model ID sent with each request.
        api_key: Bearer token; omitted from headers when empty.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        endpoint: str,
        model: str,
        api_key: str | None = None,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.endpoint = endpoint
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    def complete(self, messages: list[dict[str, str]], **options: Any) -> dict[str, Any]:
        """POST a chat request and return the decoded response body.

        Raises:
            httpx.HTTPStatusError: on non-2xx responses
            httpx.TransportError: on network or timeout failures
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload = {"model": self.model, "messages": messages, **options}

        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            response = client.post(self.endpoint, headers=headers, json=payload)
            response.raise_for_status()
            return response.json()

    def complete_text(self, messages: list[dict[str, str]], **options: Any) -> str:
        body = self.complete(messages, **options)
        choices = body.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Pull the outermost JSON object out of a model reply."""
    match = _JSON_OBJECT.search(text or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None
