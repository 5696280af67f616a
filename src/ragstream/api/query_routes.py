"""
Query Routes

Vector-based semantic retrieval: embed the query text and return the
nearest stored documents, most similar first.
"""

from typing import Annotated, List

from fastapi import APIRouter, Depends, status

from .dependencies import get_ingestion_service
from .models import QueryRequest, QueryResult
from ..embeddings.ingestion import IngestionService

router = APIRouter(tags=["query"])


@router.post(
    "/query",
    response_model=List[QueryResult],
    summary="Vector-based semantic search",
    status_code=status.HTTP_200_OK,
)
async def query(
    req: QueryRequest,
    service: Annotated[IngestionService, Depends(get_ingestion_service)],
) -> List[QueryResult]:
    results = await service.query(req.text, req.k, req.filters)
    return [QueryResult.from_result(r) for r in results]
