"""ChangeEvent model."""

import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, BigInteger, Column, DateTime, Integer, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB

from deferred_completion.database import Base


class ChangeEventKind(str, enum.Enum):
    """Kind of mutation a change event describes."""

    CREATED = "created"
    UPDATED = "updated"
    REMOVED = "removed"


class ChangeEvent(Base):
    """One entry of the request record change feed.

    Rows are written in the same transaction as the mutation they describe.
    ``sequence`` orders the feed; ``acknowledged_at`` stays empty until the
    consumer reports the event as handled.
    """

    __tablename__ = "change_events"

    sequence = Column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    event_kind = Column(String(20), nullable=False)
    record_key = Column(Uuid(as_uuid=True), nullable=False, index=True)
    new_image = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)  # Absent for removals
    delivery_count = Column(Integer, nullable=False, default=0)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True, index=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )

    def __repr__(self) -> str:
        """String representation of ChangeEvent."""
        return (
            f"<ChangeEvent("
            f"sequence={self.sequence}, "
            f"event_kind={self.event_kind}, "
            f"record_key={self.record_key})>"
        )
