"""
NDJSON Transport Tests
"""

import asyncio
import json

import pytest

from ragstream.core.errors import StreamNormalizationError
from ragstream.streaming.normalizer import StreamNormalizer
from ragstream.streaming.transport import ndjson_stream


async def agen(items):
    for item in items:
        yield item


async def collect(stream):
    return [json.loads(line) async for line in stream]


@pytest.mark.asyncio
async def test_deltas_are_followed_by_done_event():
    normalizer = StreamNormalizer("p1")
    deltas = normalizer.anormalize(agen(["Hello", " world"]))

    records = await collect(ndjson_stream(deltas, "p1"))

    assert records == [
        {"promptId": "p1", "role": "assistant", "type": "token", "seq": 0, "text": "Hello"},
        {"promptId": "p1", "role": "assistant", "type": "token", "seq": 1, "text": " world"},
        {"type": "done", "promptId": "p1", "seq": 2},
    ]


@pytest.mark.asyncio
async def test_each_record_is_one_line():
    normalizer = StreamNormalizer("p1")
    lines = [
        line
        async for line in ndjson_stream(normalizer.anormalize(agen(["a\nb"])), "p1")
    ]

    assert all(line.endswith(b"\n") and line.count(b"\n") == 1 for line in lines)


@pytest.mark.asyncio
async def test_truncated_stream_ends_with_error_event():
    normalizer = StreamNormalizer("p2")
    chunks = agen([b"ok", "é".encode("utf-8")[:1]])

    records = await collect(ndjson_stream(normalizer.anormalize(chunks), "p2"))

    assert records[0]["text"] == "ok"
    assert records[-1]["type"] == "error"
    assert records[-1]["seq"] == 1
    assert records[-1]["error"]["code"] == StreamNormalizationError.code
    assert all(r["type"] != "done" for r in records)


@pytest.mark.asyncio
async def test_unexpected_failure_is_reported_generically():
    async def broken():
        yield StreamNormalizer("p3").feed("x")
        raise RuntimeError("secret internals")

    records = await collect(ndjson_stream(broken(), "p3"))

    assert records[-1]["type"] == "error"
    assert records[-1]["error"]["code"] == "internal_error"
    assert "secret" not in records[-1]["error"]["message"]


@pytest.mark.asyncio
async def test_cancellation_propagates():
    async def cancelled():
        raise asyncio.CancelledError()
        yield  # pragma: no cover

    with pytest.raises(asyncio.CancelledError):
        await collect(ndjson_stream(cancelled(), "p4"))
