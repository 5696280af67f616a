"""
Generation Routes

Streams normalized model output for a prompt as NDJSON. Session and prompt
validation happen before the response starts, so those failures are plain
HTTP errors; anything that fails mid-stream ends the body with an ``error``
event instead of ``done``.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from .dependencies import get_generation_service
from .models import CancelRequest, CancelResponse, GenerateRequest
from ..generation.service import GenerationService
from ..streaming.transport import NDJSON_MEDIA_TYPE, ndjson_stream

router = APIRouter(prefix="/generation", tags=["generation"])


@router.post("/stream", summary="Stream a prompt's deltas as NDJSON")
async def stream_generation(
    req: GenerateRequest,
    service: Annotated[GenerationService, Depends(get_generation_service)],
) -> StreamingResponse:
    prompt = service.begin(
        req.session_id,
        req.prompt,
        req.idempotency_key,
        top_k=req.top_k,
        filters=req.filters,
    )

    return StreamingResponse(
        ndjson_stream(
            service.stream(prompt, top_k=req.top_k, filters=req.filters),
            prompt.prompt_id,
        ),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"X-Prompt-Id": prompt.prompt_id},
    )


@router.post(
    "/cancel",
    response_model=CancelResponse,
    summary="Cancel an in-flight prompt",
)
async def cancel_generation(req: CancelRequest, request: Request) -> CancelResponse:
    # Nothing can be running before the first stream created the service.
    service = getattr(request.app.state, "generation_service", None)
    if service is None:
        return CancelResponse(cancelled=False)
    return CancelResponse(cancelled=service.cancel(req.prompt_id))
