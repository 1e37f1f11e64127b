"""Tests for conversation start, message send and the conversation aggregator."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tutorhub.services.chat_service import ChatService, count_unread, effective_updated_at, role_from_profile, validate_content
from tutorhub.services.exceptions import (
    ConversationLoadError,
    ConversationNotFound,
    MessageValidationError,
    NotAParticipant,
)
from tutorhub.services.read_state import ReadTimeStore
from tutorhub.utils.kv_store import MemoryKeyValueStore
from tutorhub.utils.realtime_bus import conversation_channel

from conftest import CLIENT_ID, OTHER_CLIENT_ID, TUTOR_ID


async def _start(chat_service, client_id=CLIENT_ID):
    return await chat_service.start_conversation(client_id, TUTOR_ID, service_type="tmua")


class TestHelpers:

    def test_role_from_profile(self):
        assert role_from_profile({"user_type": "Tutor"}) == "tutor"
        assert role_from_profile({"user_type": "tutor"}) == "tutor"
        assert role_from_profile({"user_type": "Student"}) == "client"
        assert role_from_profile({}) == "client"

    def test_count_unread_without_marker_counts_all_counterpart_messages(self):
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        msgs = [
            {"sender_type": "tutor", "created_at": now},
            {"sender_type": "client", "created_at": now},
            {"sender_type": "tutor", "created_at": now + timedelta(seconds=1)},
        ]
        assert count_unread(msgs, "client", None) == 2
        assert count_unread(msgs, "tutor", None) == 1

    def test_count_unread_is_strictly_after_marker(self):
        marker = datetime(2026, 1, 1, tzinfo=timezone.utc)
        msgs = [
            {"sender_type": "tutor", "created_at": marker},
            {"sender_type": "tutor", "created_at": marker + timedelta(milliseconds=1)},
            {"sender_type": "tutor", "created_at": (marker + timedelta(seconds=5)).isoformat()},
        ]
        assert count_unread(msgs, "client", marker) == 2

    def test_effective_updated_at_uses_latest_message(self):
        updated = datetime(2026, 1, 1, tzinfo=timezone.utc)
        later = updated + timedelta(minutes=3)
        assert effective_updated_at({"updated_at": updated, "last_message": {"created_at": later}}) == later
        assert effective_updated_at({"updated_at": later, "last_message": {"created_at": updated}}) == later
        assert effective_updated_at({"updated_at": updated, "last_message": None}) == updated


class TestValidateContent:

    def test_exactly_max_length_accepted(self):
        assert validate_content("x" * 1000) == "x" * 1000

    def test_one_over_max_rejected(self):
        with pytest.raises(MessageValidationError, match="under 1000 characters"):
            validate_content("x" * 1001)

    def test_length_measured_after_trim(self):
        assert validate_content("  " + "x" * 1000 + "\n") == "x" * 1000

    @pytest.mark.parametrize("content", ["", "   ", "\n\t "])
    def test_blank_rejected(self, content):
        with pytest.raises(MessageValidationError, match="Message cannot be empty"):
            validate_content(content)

    def test_non_string_rejected(self):
        with pytest.raises(MessageValidationError):
            validate_content(None)


class TestStartConversation:

    @pytest.mark.asyncio
    async def test_creates_once_and_reuses(self, chat_service, conversations):
        first = await _start(chat_service)
        second = await _start(chat_service)
        assert first["_id"] == second["_id"]
        assert len(conversations.items) == 1
        assert first["client_name"] == "Alice"
        assert first["tutor_name"] == "Bob"
        assert first["service_type"] == "tmua"

    @pytest.mark.asyncio
    async def test_separate_clients_get_separate_conversations(self, chat_service, conversations):
        a = await _start(chat_service, CLIENT_ID)
        b = await _start(chat_service, OTHER_CLIENT_ID)
        assert a["_id"] != b["_id"]
        assert len(conversations.items) == 2

    @pytest.mark.asyncio
    async def test_client_without_profile_named_student(self, chat_service):
        convo = await chat_service.start_conversation("ghost", TUTOR_ID)
        assert convo["client_name"] == "Student"

    @pytest.mark.asyncio
    async def test_unknown_or_non_tutor_rejected(self, chat_service):
        with pytest.raises(ConversationNotFound):
            await chat_service.start_conversation(CLIENT_ID, "missing")
        with pytest.raises(ConversationNotFound):
            await chat_service.start_conversation(CLIENT_ID, OTHER_CLIENT_ID)

    @pytest.mark.asyncio
    async def test_self_conversation_rejected(self, chat_service):
        with pytest.raises(ValueError):
            await chat_service.start_conversation(TUTOR_ID, TUTOR_ID)


class TestSendMessage:

    @pytest.mark.asyncio
    async def test_sender_type_follows_conversation_role(self, chat_service):
        convo = await _start(chat_service)
        from_client = await chat_service.send_message(convo["_id"], CLIENT_ID, "hello")
        from_tutor = await chat_service.send_message(convo["_id"], TUTOR_ID, "hi there")
        assert from_client["sender_type"] == "client"
        assert from_tutor["sender_type"] == "tutor"

    @pytest.mark.asyncio
    async def test_content_is_trimmed(self, chat_service):
        convo = await _start(chat_service)
        saved = await chat_service.send_message(convo["_id"], CLIENT_ID, "  hello  ")
        assert saved["content"] == "hello"

    @pytest.mark.asyncio
    async def test_invalid_content_rejected_before_backend(self, chat_service, messages, conversations):
        convo = await _start(chat_service)
        for content in ("x" * 1001, "    "):
            with pytest.raises(MessageValidationError):
                await chat_service.send_message(convo["_id"], CLIENT_ID, content)
        assert messages.save_calls == 0
        assert conversations.bump_calls == 0

    @pytest.mark.asyncio
    async def test_max_length_accepted(self, chat_service, messages):
        convo = await _start(chat_service)
        await chat_service.send_message(convo["_id"], CLIENT_ID, "y" * 1000)
        assert messages.save_calls == 1

    @pytest.mark.asyncio
    async def test_non_participant_rejected(self, chat_service):
        convo = await _start(chat_service)
        with pytest.raises(NotAParticipant):
            await chat_service.send_message(convo["_id"], OTHER_CLIENT_ID, "hello")

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, chat_service):
        with pytest.raises(ConversationNotFound):
            await chat_service.send_message("5f0000000000000000000000", CLIENT_ID, "hello")

    @pytest.mark.asyncio
    async def test_updated_at_not_before_message(self, chat_service, conversations):
        convo = await _start(chat_service)
        saved = await chat_service.send_message(convo["_id"], CLIENT_ID, "hello")
        assert conversations.items[convo["_id"]]["updated_at"] >= saved["created_at"]

    @pytest.mark.asyncio
    async def test_bump_retried_after_transient_failure(self, chat_service, conversations):
        convo = await _start(chat_service)
        conversations.bump_failures = 2
        saved = await chat_service.send_message(convo["_id"], CLIENT_ID, "hello")
        assert conversations.bump_calls == 3
        assert conversations.items[convo["_id"]]["updated_at"] >= saved["created_at"]

    @pytest.mark.asyncio
    async def test_bump_failure_keeps_message(self, chat_service, conversations, messages):
        convo = await _start(chat_service)
        conversations.bump_failures = 10
        saved = await chat_service.send_message(convo["_id"], CLIENT_ID, "hello")
        assert saved["_id"] in [m["_id"] for m in messages.items]

    @pytest.mark.asyncio
    async def test_publishes_to_conversation_channel(self, chat_service, bus):
        convo = await _start(chat_service)
        got = asyncio.Event()
        events = []

        async def on_message(raw):
            events.append(json.loads(raw))
            got.set()

        sub = await bus.subscribe(conversation_channel(convo["_id"]), on_message)
        runner = asyncio.create_task(sub.run())
        try:
            saved = await chat_service.send_message(convo["_id"], TUTOR_ID, "ping")
            await asyncio.wait_for(got.wait(), timeout=1)
        finally:
            await sub.cancel()
            await runner
        assert events[0]["type"] == "message"
        assert events[0]["message"]["id"] == saved["_id"]
        assert events[0]["message"]["content"] == "ping"


class TestListConversations:

    @pytest.mark.asyncio
    async def test_never_opened_counts_all_counterpart_messages(self, chat_service, messages):
        convo = await _start(chat_service)
        messages.add(convo["_id"], "client")
        for _ in range(3):
            messages.add(convo["_id"], "tutor")

        role, items = await chat_service.list_conversations(CLIENT_ID)
        assert role == "client"
        assert items[0]["unread_count"] == 3

        role, items = await chat_service.list_conversations(TUTOR_ID)
        assert role == "tutor"
        assert items[0]["unread_count"] == 1

    @pytest.mark.asyncio
    async def test_mark_read_zeroes_until_newer_counterpart_message(self, chat_service, messages, read_store):
        convo = await _start(chat_service)
        earlier = datetime.now(timezone.utc) - timedelta(minutes=5)
        for i in range(2):
            messages.add(convo["_id"], "tutor", created_at=earlier + timedelta(seconds=i))
        await chat_service.mark_read(convo["_id"], CLIENT_ID)

        _, items = await chat_service.list_conversations(CLIENT_ID)
        assert items[0]["unread_count"] == 0

        # own message never counts
        messages.add(convo["_id"], "client", created_at=datetime.now(timezone.utc) + timedelta(seconds=1))
        _, items = await chat_service.list_conversations(CLIENT_ID)
        assert items[0]["unread_count"] == 0

        marker = (await read_store.get(CLIENT_ID))[convo["_id"]]
        messages.add(convo["_id"], "tutor", created_at=marker + timedelta(milliseconds=1))
        _, items = await chat_service.list_conversations(CLIENT_ID)
        assert items[0]["unread_count"] == 1

    @pytest.mark.asyncio
    async def test_last_message_is_newest(self, chat_service, messages):
        convo = await _start(chat_service)
        messages.add(convo["_id"], "client", content="first")
        messages.add(convo["_id"], "tutor", content="second")
        _, items = await chat_service.list_conversations(CLIENT_ID)
        assert items[0]["last_message"]["content"] == "second"

    @pytest.mark.asyncio
    async def test_conversations_without_messages_omitted(self, chat_service):
        await _start(chat_service)
        _, items = await chat_service.list_conversations(CLIENT_ID)
        assert items == []

    @pytest.mark.asyncio
    async def test_sent_message_moves_conversation_to_top(self, chat_service, messages):
        a = await _start(chat_service, CLIENT_ID)
        b = await chat_service.start_conversation(OTHER_CLIENT_ID, TUTOR_ID)
        messages.add(a["_id"], "client")
        messages.add(b["_id"], "client")
        await chat_service.send_message(b["_id"], TUTOR_ID, "to b")
        await chat_service.send_message(a["_id"], TUTOR_ID, "to a")

        _, items = await chat_service.list_conversations(TUTOR_ID)
        assert [i["_id"] for i in items] == [a["_id"], b["_id"]]

    @pytest.mark.asyncio
    async def test_stale_updated_at_still_sorted_by_last_message(self, chat_service, messages, conversations):
        a = await _start(chat_service, CLIENT_ID)
        b = await chat_service.start_conversation(OTHER_CLIENT_ID, TUTOR_ID)
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        conversations.items[a["_id"]]["updated_at"] = base
        conversations.items[b["_id"]]["updated_at"] = base + timedelta(hours=1)
        messages.add(b["_id"], "client", created_at=base + timedelta(minutes=30))
        # newer message whose timestamp bump never landed
        messages.add(a["_id"], "client", created_at=base + timedelta(hours=2))

        _, items = await chat_service.list_conversations(TUTOR_ID)
        assert [i["_id"] for i in items] == [a["_id"], b["_id"]]

    @pytest.mark.asyncio
    async def test_only_own_conversations(self, chat_service, messages):
        a = await _start(chat_service, CLIENT_ID)
        b = await chat_service.start_conversation(OTHER_CLIENT_ID, TUTOR_ID)
        messages.add(a["_id"], "tutor")
        messages.add(b["_id"], "tutor")
        _, items = await chat_service.list_conversations(CLIENT_ID)
        assert [i["_id"] for i in items] == [a["_id"]]

    @pytest.mark.asyncio
    async def test_badge_total(self, chat_service, messages):
        a = await _start(chat_service, CLIENT_ID)
        b = await chat_service.start_conversation(OTHER_CLIENT_ID, TUTOR_ID)
        for _ in range(3):
            messages.add(a["_id"], "client")
        messages.add(b["_id"], "client")
        assert await chat_service.unread_total(TUTOR_ID) == 4

    @pytest.mark.asyncio
    async def test_missing_profile_fails_to_load(self, chat_service):
        with pytest.raises(ConversationLoadError, match="Failed to load conversations."):
            await chat_service.list_conversations("ghost")

    @pytest.mark.asyncio
    async def test_backend_failure_fails_to_load(self, chat_service, profiles, conversations):
        profiles.fail = True
        with pytest.raises(ConversationLoadError):
            await chat_service.list_conversations(CLIENT_ID)
        profiles.fail = False
        conversations.fail_list = True
        with pytest.raises(ConversationLoadError):
            await chat_service.list_conversations(CLIENT_ID)

    @pytest.mark.asyncio
    async def test_marker_store_failure_fails_to_load(self, messages, conversations, profiles, bus, monkeypatch):
        kv = MemoryKeyValueStore()

        async def unavailable(key):
            raise RedisConnectionError("marker store unavailable")

        monkeypatch.setattr(kv, "hgetall", unavailable)
        service = ChatService(messages, conversations, profiles, ReadTimeStore(kv), bus=bus)
        with pytest.raises(ConversationLoadError, match="Failed to load conversations."):
            await service.list_conversations(CLIENT_ID)

    @pytest.mark.asyncio
    async def test_aggregation_does_not_write_markers(self, chat_service, messages, read_store):
        convo = await _start(chat_service)
        messages.add(convo["_id"], "tutor")
        await chat_service.list_conversations(CLIENT_ID)
        assert await read_store.get(CLIENT_ID) == {}


class TestHistory:

    @pytest.mark.asyncio
    async def test_history_in_creation_order(self, chat_service, messages):
        convo = await _start(chat_service)
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        messages.add(convo["_id"], "tutor", created_at=base + timedelta(seconds=2), content="b")
        messages.add(convo["_id"], "client", created_at=base + timedelta(seconds=1), content="a")
        history = await chat_service.get_history(convo["_id"], CLIENT_ID)
        assert [m["content"] for m in history] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_history_since(self, chat_service, messages):
        convo = await _start(chat_service)
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        messages.add(convo["_id"], "tutor", created_at=base, content="old")
        messages.add(convo["_id"], "tutor", created_at=base + timedelta(seconds=1), content="new")
        history = await chat_service.get_history(convo["_id"], CLIENT_ID, since=base)
        assert [m["content"] for m in history] == ["new"]

    @pytest.mark.asyncio
    async def test_history_requires_participant(self, chat_service):
        convo = await _start(chat_service)
        with pytest.raises(NotAParticipant):
            await chat_service.get_history(convo["_id"], OTHER_CLIENT_ID)
