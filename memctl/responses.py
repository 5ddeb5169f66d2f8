"""Response decoding and error extraction for memctl API responses."""

import json
from typing import Any

import httpx

from memctl.exceptions import ProtocolError

EMPTY_BODY_STATUSES = (204, 205)


def is_json_content_type(content_type: str) -> bool:
    """Missing content type is treated as JSON."""
    content_type = content_type.lower()
    return (
        not content_type
        or "application/json" in content_type
        or "+json" in content_type
    )


def decode_body(response: httpx.Response) -> Any:
    """Decode a successful response body.

    Returns:
        Parsed JSON, raw text, or None for empty bodies and 204/205
    """
    if response.status_code in EMPTY_BODY_STATUSES:
        return None

    text = response.text
    if is_json_content_type(response.headers.get("content-type", "")):
        try:
            return json.loads(text)
        except ValueError:
            pass

    return text if text.strip() else None


def error_message(status: int, text: str) -> str:
    """Best-effort human message for a failed response."""
    message = f"Request failed ({status})"
    try:
        parsed = json.loads(text)
    except ValueError:
        return text.strip() or message

    if isinstance(parsed, dict):
        return parsed.get("error") or parsed.get("message") or message
    return message


def raise_for_status(response: httpx.Response) -> None:
    """Raise ProtocolError for any non-2xx response.

    Raises:
        ProtocolError: Status outside 200-299
    """
    if response.is_success:
        return

    text = response.text
    raise ProtocolError(
        status=response.status_code,
        message=error_message(response.status_code, text),
        details=text,
    )
