"""
Stream Normalizer

Converts arbitrarily fragmented UTF-8 byte chunks from an upstream model
stream into an ordered sequence of ``Delta`` records that are always valid,
complete text.

Per chunk:
1. Bytes of an incomplete trailing multi-byte sequence are held back and
   prepended to the next chunk (incremental UTF-8 decoder state).
2. Text identical to the immediately preceding emitted delta is dropped.
   Only consecutive duplicates are dropped, never earlier ones.
3. Any other non-empty text is emitted with the next sequence number,
   starting at 0.

A normalizer serves exactly one (prompt_id, role) stream, from a single
producer, and cannot be restarted once finished.
"""

from __future__ import annotations

import codecs
import logging
from enum import Enum
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..core.errors import StreamNormalizationError, StreamStateError

logger = logging.getLogger("ragstream.streaming")

Chunk = Union[bytes, bytearray, memoryview, str, None]


class Delta(BaseModel):
    """
    One UI-safe text fragment. Serialized with camelCase keys.
    """

    prompt_id: str = Field(alias="promptId")
    role: str
    type: str = "token"
    seq: int = Field(ge=0)
    text: str

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class NormalizerState(str, Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    CLOSED = "closed"


class StreamNormalizer:
    """
    Single-pass normalizer for one model output stream.

    Parameters
    ----------
    prompt_id : str
        Stamped on every emitted delta.

    role : str
        Stamped on every emitted delta (usually ``"assistant"``).
    """

    def __init__(self, prompt_id: str, role: str = "assistant") -> None:
        self.prompt_id = prompt_id
        self.role = role

        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="strict")
        self._state = NormalizerState.IDLE
        self._last_text: Optional[str] = None
        self._next_seq = 0
        self._consumed = False

    @property
    def state(self) -> NormalizerState:
        return self._state

    @property
    def pending_bytes(self) -> bytes:
        """Bytes of an incomplete character awaiting the next chunk."""
        pending, _ = self._decoder.getstate()
        return pending

    @property
    def emitted_count(self) -> int:
        return self._next_seq

    # ------------------------------------------------------------------
    # Push API
    # ------------------------------------------------------------------

    def feed(self, chunk: Chunk) -> Optional[Delta]:
        """
        Consume one chunk; return the delta it produced, if any.

        Raises
        ------
        StreamStateError
            If the stream has already finished.

        StreamNormalizationError
            If the accumulated bytes are not valid UTF-8.
        """
        if self._state is NormalizerState.CLOSED:
            raise StreamStateError(
                f"Stream {self.prompt_id} is closed; cannot accept more chunks"
            )

        if not chunk:
            return None

        data = chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)

        try:
            text = self._decoder.decode(data, final=False)
        except UnicodeDecodeError as exc:
            self._state = NormalizerState.CLOSED
            raise StreamNormalizationError(
                f"Invalid UTF-8 in stream {self.prompt_id} at byte {exc.start}"
            ) from exc

        self._state = (
            NormalizerState.BUFFERING if self.pending_bytes else NormalizerState.IDLE
        )

        if not text or text == self._last_text:
            return None

        delta = Delta(
            prompt_id=self.prompt_id,
            role=self.role,
            seq=self._next_seq,
            text=text,
        )
        self._next_seq += 1
        self._last_text = text
        return delta

    def finish(self) -> None:
        """
        Close the stream.

        Raises
        ------
        StreamNormalizationError
            If an incomplete multi-byte sequence is still pending.
        """
        if self._state is NormalizerState.CLOSED:
            return

        leftover = self.pending_bytes
        self._state = NormalizerState.CLOSED

        if leftover:
            logger.warning(
                "Stream %s ended with %d undecodable byte(s)",
                self.prompt_id,
                len(leftover),
            )
            raise StreamNormalizationError(
                f"Stream {self.prompt_id} ended inside a multi-byte character "
                f"({len(leftover)} pending byte(s))"
            )

    # ------------------------------------------------------------------
    # Pull API
    # ------------------------------------------------------------------

    def _claim(self) -> None:
        if self._consumed or self._state is NormalizerState.CLOSED:
            raise StreamStateError(
                f"Stream {self.prompt_id} has already been normalized"
            )
        self._consumed = True

    def normalize(self, chunks: Iterable[Chunk]) -> Iterator[Delta]:
        """Normalize a whole synchronous chunk sequence."""
        self._claim()
        return self._iterate(chunks)

    def _iterate(self, chunks: Iterable[Chunk]) -> Iterator[Delta]:
        try:
            for chunk in chunks:
                delta = self.feed(chunk)
                if delta is not None:
                    yield delta
            self.finish()
        finally:
            self._state = NormalizerState.CLOSED

    def anormalize(self, chunks: AsyncIterable[Chunk]) -> AsyncIterator[Delta]:
        """Normalize an async chunk stream, e.g. from an HTTP response."""
        self._claim()
        return self._aiterate(chunks)

    async def _aiterate(self, chunks: AsyncIterable[Chunk]) -> AsyncIterator[Delta]:
        try:
            async for chunk in chunks:
                delta = self.feed(chunk)
                if delta is not None:
                    yield delta
            self.finish()
        finally:
            self._state = NormalizerState.CLOSED


def normalize(
    chunks: Iterable[Chunk],
    prompt_id: str,
    role: str = "assistant",
) -> Iterator[Delta]:
    """Normalize ``chunks`` with a fresh ``StreamNormalizer``."""
    return StreamNormalizer(prompt_id, role).normalize(chunks)
