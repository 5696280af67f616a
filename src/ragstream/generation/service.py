"""
Generation Service

Runs one prompt through the chat pipeline:

    session check -> prompt registration -> retrieval -> LLM stream
        -> StreamNormalizer -> Delta iterator

The LLM stream is consumed by a separate task so that ``cancel`` can stop
it while the consumer still observes an orderly end (a
``GenerationCancelledError``) and the prompt is marked ``cancelled``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Set

from ..core.errors import InvalidArgumentError, RagError
from ..embeddings.ingestion import IngestionService
from ..embeddings.models import VectorQueryResult
from ..embeddings.store import normalize_filters, validate_k
from ..llm.client import LLMClient
from ..sessions.store import Prompt, PromptStatus, SessionManager
from ..streaming.normalizer import Delta, StreamNormalizer

logger = logging.getLogger("ragstream.generation")

SYSTEM_PROMPT = (
    "You are a helpful assistant for a code repository. Answer the user's "
    "question using the context documents below when they are relevant. "
    "If the context does not contain the answer, say so."
)

ASSISTANT_ROLE = "assistant"

_DONE = object()
_CANCELLED = object()


class GenerationCancelledError(RagError):
    code = "cancelled"


class GenerationService:
    """
    Parameters
    ----------
    sessions : SessionManager
        Session and prompt bookkeeping.

    llm : LLMClient
        Upstream model stream.

    retriever : Optional[IngestionService]
        Source of context documents. ``None`` disables retrieval.

    top_k : int
        Default number of context documents.
    """

    def __init__(
        self,
        sessions: SessionManager,
        llm: LLMClient,
        retriever: Optional[IngestionService] = None,
        top_k: int = 5,
    ) -> None:
        self._sessions = sessions
        self._llm = llm
        self._retriever = retriever
        self._top_k = top_k
        self._running: Dict[str, Optional[asyncio.Task]] = {}
        self._cancel_requested: Set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def begin(
        self,
        session_id: str,
        prompt_text: str,
        idempotency_key: Optional[str] = None,
        top_k: Optional[int] = None,
        filters: Optional[Mapping[str, Optional[str]]] = None,
    ) -> Prompt:
        """
        Validate the request and register (or look up) its prompt.

        Raises
        ------
        InvalidArgumentError
            If the prompt text is empty, ``top_k < 1``, a filter is unknown,
            or the prompt is already streaming.

        SessionNotFoundError
            If the session is unknown or expired.
        """
        if not prompt_text or not prompt_text.strip():
            raise InvalidArgumentError("Prompt text must not be empty")
        if top_k is not None:
            validate_k(top_k)
        normalize_filters(filters)

        prompt = self._sessions.create_prompt(session_id, prompt_text, idempotency_key)
        if self.is_running(prompt.prompt_id):
            raise InvalidArgumentError(f"Prompt {prompt.prompt_id} is already streaming")

        self._sessions.touch_session(session_id)
        return prompt

    async def stream(
        self,
        prompt: Prompt,
        top_k: Optional[int] = None,
        filters: Optional[Mapping[str, Optional[str]]] = None,
    ) -> AsyncIterator[Delta]:
        """
        Yield the deltas of ``prompt``.

        A prompt that already completed is replayed from its recorded
        output without calling the model. Once streaming starts, the prompt
        always ends in a terminal status, whatever fails.
        """
        prompt_id = prompt.prompt_id
        prompt = self._sessions.get_prompt(prompt_id) or prompt

        if prompt.status is PromptStatus.COMPLETED:
            logger.info("Replaying completed prompt %s", prompt_id)
            for seq, text in enumerate(prompt.output):
                yield Delta(
                    prompt_id=prompt_id,
                    role=ASSISTANT_ROLE,
                    seq=seq,
                    text=text,
                )
            return

        if prompt.status is not PromptStatus.IN_FLIGHT:
            raise InvalidArgumentError(f"Prompt {prompt_id} already {prompt.status.value}")
        if prompt_id in self._running:
            raise InvalidArgumentError(f"Prompt {prompt_id} is already streaming")

        # Claimed before the first await; _run swaps in the producer task.
        self._running[prompt_id] = None

        try:
            k = top_k if top_k is not None else self._top_k
            validate_k(k)
            criteria = normalize_filters(filters)

            context = await self._retrieve(prompt.text, k, criteria)
            if prompt_id in self._cancel_requested:
                raise GenerationCancelledError(f"Prompt {prompt_id} was cancelled")
            messages = self._build_messages(prompt.text, context)
        except BaseException as exc:
            self._running.pop(prompt_id, None)
            self._cancel_requested.discard(prompt_id)
            cancelled = isinstance(exc, (asyncio.CancelledError, GenerationCancelledError))
            self._sessions.complete_prompt(
                prompt_id,
                PromptStatus.CANCELLED if cancelled else PromptStatus.FAILED,
                token_count=0,
                output=[],
            )
            raise

        async for delta in self._run(prompt_id, messages):
            yield delta

    async def generate(
        self,
        session_id: str,
        prompt_text: str,
        top_k: Optional[int] = None,
        filters: Optional[Mapping[str, Optional[str]]] = None,
        idempotency_key: Optional[str] = None,
    ) -> AsyncIterator[Delta]:
        prompt = self.begin(session_id, prompt_text, idempotency_key, top_k, filters)
        async for delta in self.stream(prompt, top_k, filters):
            yield delta

    def cancel(self, prompt_id: str) -> bool:
        """Cancel a running prompt. Returns False if it is not running."""
        if prompt_id not in self._running:
            return False

        task = self._running[prompt_id]
        if task is None:
            # Still retrieving context; stopped before the model is called.
            self._cancel_requested.add(prompt_id)
        elif task.done():
            return False
        else:
            task.cancel()

        logger.info("Cancelling prompt %s", prompt_id)
        return True

    def is_running(self, prompt_id: str) -> bool:
        return prompt_id in self._running

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _retrieve(
        self,
        text: str,
        k: int,
        filters: Dict[str, str],
    ) -> List[VectorQueryResult]:
        if self._retriever is None:
            return []
        try:
            return await self._retriever.query(text, k, filters)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Retrieval failed, continuing without context: %s", exc)
            return []

    @staticmethod
    def _build_messages(
        question: str,
        context: List[VectorQueryResult],
    ) -> List[Dict[str, Any]]:
        system = SYSTEM_PROMPT
        if context:
            blocks = [
                f"[{i}] {r.document.repo_url} {r.document.file_path}\n{r.document.text}"
                for i, r in enumerate(context, start=1)
            ]
            system += "\n\nContext documents:\n\n" + "\n\n".join(blocks)

        return [
            {"role": "system", "content": system},
            {"role": "user", "content": question},
        ]

    async def _run(
        self,
        prompt_id: str,
        messages: List[Dict[str, Any]],
    ) -> AsyncIterator[Delta]:
        normalizer = StreamNormalizer(prompt_id, ASSISTANT_ROLE)
        queue: asyncio.Queue = asyncio.Queue()

        async def produce() -> None:
            async for delta in normalizer.anormalize(self._llm.stream(messages)):
                queue.put_nowait(delta)

        def on_done(task: asyncio.Task) -> None:
            if task.cancelled():
                queue.put_nowait(_CANCELLED)
            elif task.exception() is not None:
                queue.put_nowait(task.exception())
            else:
                queue.put_nowait(_DONE)

        task = asyncio.create_task(produce())
        task.add_done_callback(on_done)
        self._running[prompt_id] = task

        texts: List[str] = []
        status = PromptStatus.FAILED
        try:
            while True:
                item = await queue.get()
                if isinstance(item, Delta):
                    texts.append(item.text)
                    yield item
                elif item is _DONE:
                    status = PromptStatus.COMPLETED
                    break
                elif item is _CANCELLED:
                    status = PromptStatus.CANCELLED
                    raise GenerationCancelledError(f"Prompt {prompt_id} was cancelled")
                else:
                    raise item
        finally:
            self._running.pop(prompt_id, None)
            self._cancel_requested.discard(prompt_id)
            if not task.done():
                # Consumer went away before the model finished.
                task.cancel()
                status = PromptStatus.CANCELLED

            self._sessions.complete_prompt(
                prompt_id,
                status,
                token_count=len(texts),
                output=texts,
            )
            logger.info(
                "Prompt %s %s after %d deltas",
                prompt_id,
                status.value,
                len(texts),
            )
