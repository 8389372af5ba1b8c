"""Batch generation and route claiming endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from ...errors import BatchingError, BatchNotFound, BatchUnavailable, FatalConfigurationError, PersistenceFailure
from ...persistence.batch_store import BatchStore
from ...schemas.batching import (
    BatchGenerationRequest,
    BatchGenerationResponse,
    ClaimBatchRequest,
    ClaimBatchResponse,
)
from ...services.batching.service import claim_batch, default_store, generate_batches

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/batches", tags=["batches"])

_STATUS_BY_CODE = {
    BatchNotFound.code: status.HTTP_404_NOT_FOUND,
    BatchUnavailable.code: status.HTTP_409_CONFLICT,
    FatalConfigurationError.code: status.HTTP_500_INTERNAL_SERVER_ERROR,
    PersistenceFailure.code: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_batch_store() -> BatchStore:
    return default_store()


def _http_error(exc: BatchingError) -> HTTPException:
    code = _STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return HTTPException(status_code=code, detail=exc.to_dict())


@router.post("/generate", response_model=BatchGenerationResponse, status_code=status.HTTP_200_OK)
def generate(payload: BatchGenerationRequest | None = None) -> BatchGenerationResponse:
    payload = payload or BatchGenerationRequest()
    try:
        return generate_batches(payload, store=get_batch_store())
    except BatchingError as exc:
        logger.error(f"Batch generation aborted ({exc.code}): {exc.message}")
        raise _http_error(exc) from exc
    except Exception as exc:
        logging.exception(f"Error generating batches: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": f"Failed to generate batches: {exc}", "code": "INTERNAL_ERROR", "details": {}},
        ) from exc


@router.post("/{batch_id}/claim", response_model=ClaimBatchResponse, status_code=status.HTTP_200_OK)
def claim(batch_id: str, payload: ClaimBatchRequest) -> ClaimBatchResponse:
    try:
        batch = claim_batch(batch_id, payload.driver_id, store=get_batch_store())
    except BatchingError as exc:
        raise _http_error(exc) from exc
    return ClaimBatchResponse(
        success=True,
        batch_id=batch_id,
        driver_id=payload.driver_id,
        status=batch.get("status", "assigned"),
    )
