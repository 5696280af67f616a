"""
NDJSON Delta Transport

Serializes a delta stream as newline-delimited JSON, one object per line,
followed by exactly one terminal event:

    {"type": "done",  "promptId": ..., "seq": <deltas sent>}
    {"type": "error", "promptId": ..., "seq": <deltas sent>,
     "error": {"code": ..., "message": ...}}

A failure in the upstream stream never breaks the HTTP response; it becomes
the terminal ``error`` event instead.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterable, AsyncIterator, Dict

from ..core.errors import RagError
from .normalizer import Delta

logger = logging.getLogger("ragstream.streaming")

NDJSON_MEDIA_TYPE = "application/x-ndjson"


def encode_line(payload: Dict[str, Any]) -> bytes:
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


def done_event(prompt_id: str, seq: int) -> Dict[str, Any]:
    return {"type": "done", "promptId": prompt_id, "seq": seq}


def error_event(prompt_id: str, seq: int, code: str, message: str) -> Dict[str, Any]:
    return {
        "type": "error",
        "promptId": prompt_id,
        "seq": seq,
        "error": {"code": code, "message": message},
    }


async def ndjson_stream(
    deltas: AsyncIterable[Delta],
    prompt_id: str,
) -> AsyncIterator[bytes]:
    """
    Encode ``deltas`` as NDJSON lines terminated by a done/error event.

    Cancellation propagates unchanged; no terminal event is written for a
    cancelled stream because the client is gone.
    """
    sent = 0
    try:
        async for delta in deltas:
            yield encode_line(delta.to_wire())
            sent += 1
    except asyncio.CancelledError:
        raise
    except RagError as exc:
        logger.warning("Stream %s failed after %d deltas: %s", prompt_id, sent, exc)
        yield encode_line(error_event(prompt_id, sent, exc.code, str(exc)))
        return
    except Exception:
        logger.exception("Stream %s failed after %d deltas", prompt_id, sent)
        yield encode_line(
            error_event(prompt_id, sent, "internal_error", "Stream terminated unexpectedly")
        )
        return

    yield encode_line(done_event(prompt_id, sent))
