"""Shared fixtures: in-memory repository doubles, token factory, app client."""

from __future__ import annotations

import os

os.environ["AUTH_JWT_SECRET"] = "test-secret-with-at-least-32-bytes!!"
os.environ["AUTH_JWT_AUDIENCE"] = "authenticated"
os.environ["REDIS_URL"] = ""
os.environ["STRIPE_SECRET_KEY"] = ""

import copy
import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import jwt
import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect

from tutorhub.services.chat_service import ChatService
from tutorhub.services.read_state import ReadStateNotifier, ReadTimeStore
from tutorhub.utils.clock import utcnow
from tutorhub.utils.kv_store import MemoryKeyValueStore
from tutorhub.utils.realtime_bus import LocalBus

CLIENT_ID = "client-1"
TUTOR_ID = "tutor-1"
OTHER_CLIENT_ID = "client-2"


# ── Repository doubles ─────────────────────────────────────────────────────


class FakeProfileRepository:

    def __init__(self, profiles: Optional[List[Dict[str, Any]]] = None) -> None:
        self.profiles = {p["_id"]: dict(p) for p in profiles or []}
        self.fail = False

    async def get_by_id(self, user_id):
        if self.fail:
            raise AutoReconnect("profiles unavailable")
        profile = self.profiles.get(user_id)
        return copy.deepcopy(profile) if profile else None

    async def update_fields(self, user_id, fields):
        if user_id not in self.profiles:
            return False
        self.profiles[user_id].update(fields)
        return True

    async def delete(self, user_id):
        return self.profiles.pop(user_id, None) is not None


class FakeConversationRepository:

    def __init__(self) -> None:
        self.items: Dict[str, Dict[str, Any]] = {}
        self.bump_failures = 0
        self.bump_calls = 0
        self.fail_list = False

    async def get_by_id(self, conversation_id):
        doc = self.items.get(conversation_id)
        return copy.deepcopy(doc) if doc else None

    async def find_by_pair(self, client_id, tutor_id):
        for doc in self.items.values():
            if doc["client_id"] == client_id and doc["tutor_id"] == tutor_id:
                return copy.deepcopy(doc)
        return None

    async def get_or_create(self, client_id, tutor_id, client_name, tutor_name, service_type=None):
        existing = await self.find_by_pair(client_id, tutor_id)
        if existing:
            return existing
        now = utcnow()
        doc = {
            "_id": str(ObjectId()),
            "client_id": client_id,
            "client_name": client_name,
            "tutor_id": tutor_id,
            "tutor_name": tutor_name,
            "service_type": service_type,
            "created_at": now,
            "updated_at": now,
        }
        self.items[doc["_id"]] = doc
        return copy.deepcopy(doc)

    async def bump_updated_at(self, conversation_id, at):
        self.bump_calls += 1
        if self.bump_failures:
            self.bump_failures -= 1
            raise AutoReconnect("primary stepped down")
        doc = self.items[conversation_id]
        doc["updated_at"] = max(doc["updated_at"], at)

    async def list_for_user(self, user_id, role):
        if self.fail_list:
            raise AutoReconnect("conversations unavailable")
        field = "tutor_id" if role == "tutor" else "client_id"
        found = [copy.deepcopy(d) for d in self.items.values() if d[field] == user_id]
        return sorted(found, key=lambda d: d["updated_at"], reverse=True)

    async def list_ids_involving(self, user_id):
        return [cid for cid, d in self.items.items() if user_id in (d["client_id"], d["tutor_id"])]

    async def delete_involving(self, user_id):
        ids = await self.list_ids_involving(user_id)
        for cid in ids:
            del self.items[cid]
        return len(ids)


class FakeMessageRepository:

    def __init__(self) -> None:
        self.items: List[Dict[str, Any]] = []
        self.save_calls = 0
        self._last: Optional[datetime] = None

    def _next_time(self) -> datetime:
        now = utcnow()
        if self._last is not None and now <= self._last:
            now = self._last + timedelta(milliseconds=1)
        self._last = now
        return now

    def add(self, conversation_id, sender_type, created_at=None, content="hi"):
        """Seed a message directly, bypassing the service."""
        doc = {
            "_id": str(ObjectId()),
            "conversation_id": conversation_id,
            "content": content,
            "sender_type": sender_type,
            "created_at": created_at or self._next_time(),
        }
        self.items.append(doc)
        return copy.deepcopy(doc)

    async def save_message(self, conversation_id, content, sender_type):
        self.save_calls += 1
        return self.add(conversation_id, sender_type, content=content)

    def _sorted(self, docs):
        return sorted((copy.deepcopy(d) for d in docs), key=lambda d: d["created_at"])

    async def get_messages_by_conversation(self, conversation_id, since=None):
        return self._sorted(
            d for d in self.items if d["conversation_id"] == conversation_id and (since is None or d["created_at"] > since)
        )

    async def get_messages_for_conversations(self, conversation_ids):
        grouped: Dict[str, List[Dict[str, Any]]] = {}
        for doc in self._sorted(d for d in self.items if d["conversation_id"] in conversation_ids):
            grouped.setdefault(doc["conversation_id"], []).append(doc)
        return grouped

    async def delete_for_conversations(self, conversation_ids):
        before = len(self.items)
        self.items = [d for d in self.items if d["conversation_id"] not in conversation_ids]
        return before - len(self.items)


class FakePaymentRepository:

    def __init__(self) -> None:
        self.items: List[Dict[str, Any]] = []

    async def create(self, fields):
        doc = {**fields, "_id": str(ObjectId()), "status": "pending", "created_at": utcnow(), "completed_at": None}
        self.items.append(doc)
        return doc

    async def get_by_session(self, session_id):
        return next((d for d in self.items if d["stripe_session_id"] == session_id), None)

    async def mark_completed(self, session_id, payment_intent):
        doc = await self.get_by_session(session_id)
        if not doc or doc["status"] != "pending":
            return False
        doc.update(status="completed", stripe_payment_intent=payment_intent, completed_at=utcnow())
        return True

    async def delete_involving(self, user_id):
        before = len(self.items)
        self.items = [d for d in self.items if user_id not in (d["student_id"], d["tutor_id"])]
        return before - len(self.items)


# ── Fixtures ───────────────────────────────────────────────────────────────


@pytest.fixture
def profiles():
    return FakeProfileRepository(
        [
            {"_id": CLIENT_ID, "name": "Alice", "email": "alice@example.com", "user_type": "Student"},
            {"_id": OTHER_CLIENT_ID, "name": "Carol", "email": "carol@example.com", "user_type": "Student"},
            {
                "_id": TUTOR_ID,
                "name": "Bob",
                "email": "bob@example.com",
                "user_type": "Tutor",
                "exam_rates": {"TMUA": 40, "Interview prep": 55},
                "stripe_account_id": "acct_tutor",
                "charges_enabled": True,
                "payouts_enabled": True,
            },
        ]
    )


@pytest.fixture
def conversations():
    return FakeConversationRepository()


@pytest.fixture
def messages():
    return FakeMessageRepository()


@pytest.fixture
def payments():
    return FakePaymentRepository()


@pytest.fixture
def kv_store():
    return MemoryKeyValueStore()


@pytest.fixture
def bus():
    return LocalBus()


@pytest.fixture
def read_store(kv_store, bus):
    return ReadTimeStore(kv_store, ReadStateNotifier(bus))


@pytest.fixture
def chat_service(messages, conversations, profiles, read_store, bus):
    return ChatService(messages, conversations, profiles, read_store, bus=bus)


@pytest.fixture
def make_token():
    def _make(user_id=CLIENT_ID, email="alice@example.com", verified=True, expires_in=3600, secret=None, audience="authenticated"):
        claims = {
            "sub": user_id,
            "email": email,
            "aud": audience,
            "exp": int(time.time()) + expires_in,
            "user_metadata": {"email_verified": verified},
        }
        return jwt.encode(claims, secret or os.environ["AUTH_JWT_SECRET"], algorithm="HS256")

    return _make


@pytest.fixture
def app_client(chat_service, kv_store, bus, read_store):
    from fastapi.testclient import TestClient

    from tutorhub.main import app
    from tutorhub.utils.dependencies import get_chat_service, get_key_value_store, get_read_store, get_realtime_bus

    app.dependency_overrides[get_chat_service] = lambda: chat_service
    app.dependency_overrides[get_key_value_store] = lambda: kv_store
    app.dependency_overrides[get_realtime_bus] = lambda: bus
    app.dependency_overrides[get_read_store] = lambda: read_store
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
