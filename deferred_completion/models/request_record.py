"""RequestRecord model."""

import enum
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import uuid4

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from deferred_completion.database import Base


class ResponseFormat(str, enum.Enum):
    """Output-shaping mode requested from the completion service."""

    PLAIN = "plain"
    STRUCTURED = "structured"


class RequestRecord(Base):
    """A completion request and, once processed, its result.

    ``finish_reason`` is the terminal marker: it is absent while the request is
    pending and present once processing has ended, successfully or not.
    """

    __tablename__ = "request_records"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    system_prompt = Column(Text, nullable=True)
    user_prompt = Column(Text, nullable=True)
    max_tokens = Column(Integer, nullable=True)
    response_format = Column(
        String(20),
        nullable=False,
        default=ResponseFormat.STRUCTURED.value,
    )
    model_id = Column(String(255), nullable=True)
    content = Column(Text, nullable=True)
    usage = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)  # {"input_tokens", "output_tokens", "total_tokens"}
    finish_reason = Column(String(100), nullable=True, index=True)
    expires_at = Column(BigInteger, nullable=True, index=True)  # Epoch seconds
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    @property
    def is_done(self) -> bool:
        return self.finish_reason is not None

    def to_image(self) -> Dict[str, Any]:
        """Plain-dict snapshot of the record, as carried by change events."""
        return {
            "id": str(self.id),
            "system_prompt": self.system_prompt,
            "user_prompt": self.user_prompt,
            "max_tokens": self.max_tokens,
            "response_format": self.response_format,
            "model_id": self.model_id,
            "content": self.content,
            "usage": self.usage,
            "finish_reason": self.finish_reason,
            "expires_at": self.expires_at,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self) -> str:
        """String representation of RequestRecord."""
        return (
            f"<RequestRecord("
            f"id={self.id}, "
            f"model_id={self.model_id}, "
            f"finish_reason={self.finish_reason})>"
        )
