from __future__ import annotations

import asyncio
import json

from gamecard.core.errors import DeliveryError
from gamecard.core.http import request_with_retries, telegram_client
from gamecard.core.logger import get_logger

log = get_logger("providers.telegram")

_RETRYABLE_CODES = {429, 500, 502, 503, 504}
_MAX_RETRIES = 3
_BACKOFF_BASE = 0.6
_BACKOFF_CAP = 8.0


def _payload_retry_after(payload: dict) -> float | None:
    raw = (payload.get("parameters") or {}).get("retry_after")
    if raw is None:
        return None
    try:
        retry_after = float(raw)
    except (TypeError, ValueError):
        return None
    return retry_after if retry_after > 0 else None


def _backoff_delay(attempt: int, *, retry_after: float | None) -> float:
    delay = min(_BACKOFF_CAP, _BACKOFF_BASE * (2 ** attempt))
    if retry_after is not None:
        delay = max(delay, retry_after)
    return delay


def _decode(resp, method: str) -> dict:
    try:
        payload = resp.json()
    except ValueError as e:
        raise DeliveryError("share", f"Telegram {method} returned a non-JSON body", cause=e) from e
    return payload if isinstance(payload, dict) else {}


async def send_photo(
    chat_id: int,
    image_bytes: bytes,
    *,
    filename: str = "game.png",
    content_type: str = "image/png",
    caption: str | None = None,
    as_document: bool = False,
) -> int:
    """Post an exported card to a chat; ``as_document`` keeps the file uncompressed."""
    client = telegram_client()
    method, field = ("/sendDocument", "document") if as_document else ("/sendPhoto", "photo")
    form = {"chat_id": str(chat_id)}
    if caption:
        form["caption"] = caption
    attempt = 0
    while True:
        resp = await request_with_retries(
            client,
            "POST",
            method,
            data=form,
            files={field: (filename, image_bytes, content_type)},
        )
        payload = _decode(resp, method)
        if payload.get("ok"):
            msg_id = (payload.get("result") or {}).get("message_id")
            if not msg_id:
                raise DeliveryError("share", f"Telegram {method} missing message_id")
            return int(msg_id)

        code = int(payload.get("error_code") or 0)
        if code not in _RETRYABLE_CODES or attempt >= _MAX_RETRIES:
            raise DeliveryError("share", f"Telegram {method} failed: {json.dumps(payload)[:500]}")
        delay = _backoff_delay(attempt, retry_after=_payload_retry_after(payload))
        log.info("telegram_retry method=%s code=%s attempt=%s delay=%.1fs", method, code, attempt + 1, delay)
        await asyncio.sleep(delay)
        attempt += 1
