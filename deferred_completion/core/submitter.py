"""Request submission: admits a completion request as a pending record."""

import logging
from uuid import UUID

from deferred_completion.core.record_store import RecordStore
from deferred_completion.schemas.completion import CompletionSubmitRequest

logger = logging.getLogger(__name__)


def submit_request(store: RecordStore, request: CompletionSubmitRequest) -> UUID:
    """Create a pending record for a completion request.

    Fields are independently optional; unset ``max_tokens`` and ``model_id``
    are resolved from process defaults when the record is processed.

    Args:
        store: Record store to write to
        request: Submitted fields

    Returns:
        UUID: Identifier of the new record. The record exists only once this returns.

    Raises:
        StoreUnavailableError: If the record cannot be committed
    """
    record_id = store.create(
        system_prompt=request.system_prompt,
        user_prompt=request.user_prompt,
        max_tokens=request.max_tokens,
        response_format=request.response_format.value,
        model_id=request.model_id,
    )
    logger.info(f"Completion request submitted as record {record_id}")
    return record_id
