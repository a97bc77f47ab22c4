"""Unit tests for the trigger processor."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from deferred_completion.config import CompletionDefaults
from deferred_completion.core.change_feed import ChangeFeed, FeedEvent
from deferred_completion.core.completion_client import CompletionResult, ExternalServiceError
from deferred_completion.core.processor import (
    STRUCTURED_FORMAT_HINT,
    TriggerProcessor,
    build_completion_request,
)
from deferred_completion.core.record_store import RecordStore, StoreUnavailableError
from deferred_completion.models.change_event import ChangeEventKind


@pytest.fixture
def mock_completion_client():
    """Completion client whose complete() is an AsyncMock."""
    client = MagicMock()
    client.complete = AsyncMock(
        return_value=CompletionResult(
            content="4",
            finish_reason="stop",
            usage={"input_tokens": 3, "output_tokens": 2, "total_tokens": 5},
        )
    )
    return client


@pytest.fixture
def processor(session_factory, mock_completion_client, defaults) -> TriggerProcessor:
    """Trigger processor wired to the test database and a mock client."""
    return TriggerProcessor(session_factory=session_factory, client=mock_completion_client, defaults=defaults)


def _created_event(store: RecordStore, test_db_session, **fields) -> FeedEvent:
    store.create(**fields)
    events = ChangeFeed(test_db_session).read_batch()
    return events[-1]


class TestBuildCompletionRequest:
    """Tests for build_completion_request()."""

    def test__build__system_before_user(self, defaults: CompletionDefaults):
        """Test that both prompts become messages, system first."""
        request = build_completion_request({"system_prompt": "Be brief", "user_prompt": "2+2=?"}, defaults)

        assert [(m.role, m.content) for m in request.messages] == [("system", "Be brief"), ("user", "2+2=?")]

    def test__build__only_present_prompts(self, defaults: CompletionDefaults):
        """Test that absent prompts are left out."""
        request = build_completion_request({"user_prompt": "2+2=?"}, defaults)

        assert [(m.role, m.content) for m in request.messages] == [("user", "2+2=?")]

    def test__build__no_prompts(self, defaults: CompletionDefaults):
        """Test that a record without prompts yields no messages."""
        assert build_completion_request({}, defaults).messages == ()

    def test__build__keeps_empty_prompts(self, defaults: CompletionDefaults):
        """Test that an explicitly empty prompt is still sent."""
        request = build_completion_request({"system_prompt": "", "user_prompt": "2+2=?"}, defaults)

        assert [(m.role, m.content) for m in request.messages] == [("system", ""), ("user", "2+2=?")]

    def test__build__record_values_win(self, defaults: CompletionDefaults):
        """Test that record max_tokens and model_id override defaults."""
        request = build_completion_request({"max_tokens": 16, "model_id": "gpt-4o"}, defaults)

        assert request.max_tokens == 16
        assert request.model_id == "gpt-4o"
        assert request.temperature == 0.7

    def test__build__falls_back_to_defaults(self):
        """Test that process defaults apply when the record leaves fields unset."""
        defaults = CompletionDefaults(model_id="small-model", max_tokens=200, temperature=0.2)

        request = build_completion_request({"max_tokens": None, "model_id": None}, defaults)

        assert request.max_tokens == 200
        assert request.model_id == "small-model"
        assert request.temperature == 0.2

    def test__build__falls_back_to_floor(self):
        """Test that the hardcoded floor applies without any configured default."""
        defaults = CompletionDefaults(max_tokens=0)

        assert build_completion_request({}, defaults).max_tokens == 50

    def test__build__structured_format_hint(self, defaults: CompletionDefaults):
        """Test that structured output maps to the service's format parameter."""
        request = build_completion_request({"response_format": "structured"}, defaults)

        assert request.format_hint == STRUCTURED_FORMAT_HINT

    def test__build__plain_has_no_format_hint(self, defaults: CompletionDefaults):
        """Test that plain output sends no format parameter."""
        assert build_completion_request({"response_format": "plain"}, defaults).format_hint is None


class TestTriggerProcessorProcessEvent:
    """Tests for TriggerProcessor.process_event()."""

    @pytest.mark.asyncio
    async def test__process_event__writes_result_back(
        self, processor, mock_completion_client, store, test_db_session
    ):
        """Test that a creation event leads to one call and a terminal record."""
        event = _created_event(store, test_db_session, system_prompt="Be brief", user_prompt="2+2=?", max_tokens=16)

        written = await processor.process_event(event)

        assert written is True
        mock_completion_client.complete.assert_awaited_once()
        call_kwargs = mock_completion_client.complete.call_args.kwargs
        assert [m.role for m in call_kwargs["messages"]] == ["system", "user"]
        assert call_kwargs["max_tokens"] == 16
        assert call_kwargs["model_id"] == "gpt-4o-mini"
        assert call_kwargs["format_hint"] == STRUCTURED_FORMAT_HINT

        record = store.get(event.key)
        assert record.content == "4"
        assert record.finish_reason == "stop"
        assert record.usage == {"input_tokens": 3, "output_tokens": 2, "total_tokens": 5}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("event_kind", [ChangeEventKind.UPDATED, ChangeEventKind.REMOVED])
    async def test__process_event__ignores_non_creation_events(
        self, processor, mock_completion_client, store, event_kind
    ):
        """Test that update and removal events never reach the completion service."""
        record_id = store.create(user_prompt="Hi")
        event = FeedEvent(sequence=99, event_kind=event_kind, key=record_id, new_image={"user_prompt": "Hi"})

        written = await processor.process_event(event)

        assert written is False
        mock_completion_client.complete.assert_not_awaited()
        assert store.get(record_id).finish_reason is None

    @pytest.mark.asyncio
    async def test__process_event__external_error_becomes_error_record(
        self, processor, mock_completion_client, store, test_db_session
    ):
        """Test that a service error is stored as content/finish_reason with empty usage."""
        mock_completion_client.complete.side_effect = ExternalServiceError("rate limited", "rate_limit")
        event = _created_event(store, test_db_session, user_prompt="Hi")

        written = await processor.process_event(event)

        assert written is True
        mock_completion_client.complete.assert_awaited_once()
        record = store.get(event.key)
        assert record.content == "rate limited"
        assert record.finish_reason == "rate_limit"
        assert record.usage == {}

    @pytest.mark.asyncio
    async def test__process_event__unexpected_error_becomes_error_record(
        self, processor, mock_completion_client, store, test_db_session
    ):
        """Test that an unexpected client failure still leaves a terminal record."""
        mock_completion_client.complete.side_effect = AttributeError("'str' object has no attribute 'get'")
        event = _created_event(store, test_db_session, user_prompt="Hi")

        written = await processor.process_event(event)

        assert written is True
        record = store.get(event.key)
        assert record.finish_reason == "internal_error"
        assert record.content.startswith("Unexpected error:")
        assert record.usage == {}

    @pytest.mark.asyncio
    async def test__process_event__unusable_image_becomes_error_record(
        self, processor, mock_completion_client, store
    ):
        """Test that a record that cannot become a request is completed with an error."""
        record_id = store.create(user_prompt="Hi")
        event = FeedEvent(
            sequence=1,
            event_kind=ChangeEventKind.CREATED,
            key=record_id,
            new_image={"user_prompt": "Hi", "max_tokens": "lots"},
        )

        await processor.process_event(event)

        mock_completion_client.complete.assert_not_awaited()
        assert store.get(record_id).finish_reason == "internal_error"

    @pytest.mark.asyncio
    async def test__process_event__execution_ceiling_becomes_timeout_record(
        self, session_factory, store, test_db_session
    ):
        """Test that exceeding the processor ceiling stores a timeout result."""

        async def slow_complete(**kwargs):
            await asyncio.sleep(1)

        client = MagicMock()
        client.complete = slow_complete
        processor = TriggerProcessor(
            session_factory=session_factory,
            client=client,
            defaults=CompletionDefaults(timeout_seconds=0.01),
        )
        event = _created_event(store, test_db_session, user_prompt="Hi")

        await processor.process_event(event)

        record = store.get(event.key)
        assert record.finish_reason == "timeout"
        assert "did not finish" in record.content
        assert record.usage == {}

    @pytest.mark.asyncio
    async def test__process_event__duplicate_delivery_keeps_first_result(
        self, processor, mock_completion_client, store, test_db_session
    ):
        """Test that redelivering a creation event leaves the record as after the first delivery."""
        event = _created_event(store, test_db_session, user_prompt="2+2=?")

        await processor.process_event(event)
        first = store.get(event.key).to_image()

        mock_completion_client.complete.return_value = CompletionResult(
            content="four", finish_reason="length", usage={"total_tokens": 9}
        )
        written = await processor.process_event(event)

        assert written is False
        second = store.get(event.key).to_image()
        first.pop("updated_at")
        second.pop("updated_at")
        assert first == second

    @pytest.mark.asyncio
    async def test__process_event__targets_record_by_event_key(
        self, processor, store, test_db_session
    ):
        """Test that the write-back lands on the record named by the event key only."""
        other_id = store.create(user_prompt="other")
        event = _created_event(store, test_db_session, user_prompt="target")

        await processor.process_event(event)

        assert store.get(event.key).finish_reason == "stop"
        assert store.get(other_id).finish_reason is None

    @pytest.mark.asyncio
    async def test__process_event__record_gone_before_write_back(self, processor, mock_completion_client):
        """Test that a record removed mid-processing is skipped."""
        event = FeedEvent(
            sequence=1,
            event_kind=ChangeEventKind.CREATED,
            key=uuid4(),
            new_image={"user_prompt": "Hi"},
        )

        written = await processor.process_event(event)

        assert written is False
        mock_completion_client.complete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test__process_event__loads_image_when_missing(
        self, processor, mock_completion_client, store
    ):
        """Test that a creation event without an image reads the record from the store."""
        record_id = store.create(user_prompt="from store")
        event = FeedEvent(sequence=1, event_kind=ChangeEventKind.CREATED, key=record_id, new_image=None)

        await processor.process_event(event)

        messages = mock_completion_client.complete.call_args.kwargs["messages"]
        assert messages[0].content == "from store"


class TestTriggerProcessorHandleBatch:
    """Tests for TriggerProcessor.handle_batch()."""

    @pytest.mark.asyncio
    async def test__handle_batch__processes_only_creations(
        self, processor, mock_completion_client, store, test_db_session
    ):
        """Test that a mixed batch calls the service once per creation event."""
        first = store.create(user_prompt="one")
        second = store.create(user_prompt="two")
        store.update(first, {"model_id": "gpt-4o"})
        events = ChangeFeed(test_db_session).read_batch()

        result = await processor.handle_batch(events)

        assert result.batch_item_failures == []
        assert mock_completion_client.complete.await_count == 2
        assert store.get(first).finish_reason == "stop"
        assert store.get(second).finish_reason == "stop"

    @pytest.mark.asyncio
    async def test__handle_batch__absorbs_store_failures(self, processor, store, test_db_session):
        """Test that store failures are never reported as batch item failures."""
        event = _created_event(store, test_db_session, user_prompt="Hi")

        with patch.object(TriggerProcessor, "_write_back", side_effect=StoreUnavailableError("down")):
            result = await processor.handle_batch([event])

        assert result.batch_item_failures == []
        assert store.get(event.key).finish_reason is None

    @pytest.mark.asyncio
    async def test__handle_batch__empty_batch(self, processor, mock_completion_client):
        """Test that an empty batch reports no failures and makes no calls."""
        result = await processor.handle_batch([])

        assert result.batch_item_failures == []
        mock_completion_client.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test__handle_batch__malformed_service_body_completes_record(
        self, session_factory, completion_client_factory, defaults, store, test_db_session
    ):
        """Test that a malformed service response ends as an error record, not a pending one."""
        client = completion_client_factory(post_responses=[{"choices": ["not-an-object"], "usage": {}}])
        processor = TriggerProcessor(session_factory=session_factory, client=client, defaults=defaults)
        record_id = store.create(user_prompt="Hi")

        result = await processor.handle_batch(ChangeFeed(test_db_session).read_batch())

        assert result.batch_item_failures == []
        record = store.get(record_id)
        assert record.finish_reason == "invalid_response"
        assert record.usage == {}
