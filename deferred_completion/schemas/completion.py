"""Schemas for deferred completion requests."""

from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from deferred_completion.models.request_record import RequestRecord, ResponseFormat


class CompletionSubmitRequest(BaseModel):
    """Request schema for submitting a completion."""

    model_config = ConfigDict(protected_namespaces=())

    system_prompt: Optional[str] = Field(None, description="Instruction context for the completion")
    user_prompt: Optional[str] = Field(None, description="User-supplied content")
    max_tokens: Optional[int] = Field(None, description="Upper bound on generated tokens", ge=1)
    response_format: ResponseFormat = Field(
        ResponseFormat.STRUCTURED,
        description="Output-shaping mode (plain or structured)",
    )
    model_id: Optional[str] = Field(None, description="Backend model variant to invoke")


class CompletionAcceptedResponse(BaseModel):
    """Response schema for an accepted completion request (202 Accepted)."""

    id: UUID = Field(..., description="ID of the request record")
    status: str = Field(..., description="Current status of the request (pending)")


class CompletionRecordResponse(BaseModel):
    """Response schema for reading a request record."""

    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    id: UUID = Field(..., description="ID of the request record")
    status: str = Field(..., description="pending until finish_reason is present, then done")
    system_prompt: Optional[str] = None
    user_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    response_format: ResponseFormat = ResponseFormat.STRUCTURED
    model_id: Optional[str] = None
    content: Optional[str] = Field(None, description="Result body, absent while pending")
    usage: Optional[Dict[str, int]] = Field(None, description="Token usage counters, absent while pending")
    finish_reason: Optional[str] = Field(None, description="Terminal marker")
    expires_at: Optional[int] = Field(None, description="Expiry time in epoch seconds")
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: RequestRecord) -> "CompletionRecordResponse":
        """Build the read view of a record."""
        return cls(
            id=record.id,
            status="done" if record.is_done else "pending",
            system_prompt=record.system_prompt,
            user_prompt=record.user_prompt,
            max_tokens=record.max_tokens,
            response_format=record.response_format,
            model_id=record.model_id,
            content=record.content,
            usage=record.usage,
            finish_reason=record.finish_reason,
            expires_at=record.expires_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    @property
    def is_done(self) -> bool:
        return self.finish_reason is not None
