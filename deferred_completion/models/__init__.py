"""Database models package."""

from deferred_completion.models.change_event import ChangeEvent, ChangeEventKind
from deferred_completion.models.request_record import RequestRecord, ResponseFormat

__all__ = ["RequestRecord", "ResponseFormat", "ChangeEvent", "ChangeEventKind"]
