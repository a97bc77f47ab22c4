"""Deferred completion router."""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from deferred_completion.config import settings
from deferred_completion.core.record_store import RecordStore, StoreUnavailableError
from deferred_completion.core.submitter import submit_request
from deferred_completion.database import get_db
from deferred_completion.schemas.completion import (
    CompletionAcceptedResponse,
    CompletionRecordResponse,
    CompletionSubmitRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/completions", tags=["completions"])


def get_record_store(db: Annotated[Session, Depends(get_db)]) -> RecordStore:
    """Dependency for getting a record store bound to the request session."""
    return RecordStore(db, ttl_seconds=settings.record_ttl_seconds)


@router.post("", response_model=CompletionAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_completion(
    completion_request: CompletionSubmitRequest,
    store: Annotated[RecordStore, Depends(get_record_store)],
) -> CompletionAcceptedResponse:
    """Submit a completion request.

    The request is stored as a pending record and processed out-of-band. Poll
    GET /api/completions/{id} until ``finish_reason`` is present.

    Args:
        completion_request: Prompts and optional generation parameters
        store: Record store

    Returns:
        CompletionAcceptedResponse: Accepted response with the record id

    Raises:
        HTTPException: If the record could not be stored
    """
    try:
        record_id = submit_request(store, completion_request)
    except StoreUnavailableError as e:
        logger.error(f"Completion submission failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Completion request could not be stored",
        ) from e

    return CompletionAcceptedResponse(id=record_id, status="pending")


@router.get("/{record_id}", response_model=CompletionRecordResponse, status_code=status.HTTP_200_OK)
async def get_completion(
    record_id: UUID,
    store: Annotated[RecordStore, Depends(get_record_store)],
) -> CompletionRecordResponse:
    """Get a request record by ID.

    Args:
        record_id: ID of the request record
        store: Record store

    Returns:
        CompletionRecordResponse: The record; ``status`` is ``done`` once ``finish_reason`` is present

    Raises:
        HTTPException: If the record is not found or cannot be read
    """
    try:
        record = store.get(record_id)
    except StoreUnavailableError as e:
        logger.error(f"Failed to read record {record_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Completion record could not be read",
        ) from e

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Completion record not found",
        )

    return CompletionRecordResponse.from_record(record)
