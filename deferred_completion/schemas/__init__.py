"""Pydantic schemas package."""

from deferred_completion.schemas.completion import (
    CompletionAcceptedResponse,
    CompletionRecordResponse,
    CompletionSubmitRequest,
)

__all__ = [
    "CompletionSubmitRequest",
    "CompletionAcceptedResponse",
    "CompletionRecordResponse",
]
