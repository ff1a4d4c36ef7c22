import asyncio

import pytest

from leadinbox.auth.verify import AccountContext, account_context
from leadinbox.services.conversations.repository import RawConversationSet
from leadinbox.services.record_store_client import RecordStoreError
from tests.factories import NOW, make_message, make_thread


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def auth_override():
    def _override():
        return AccountContext(user_id="user-123", account_id="acct-1")

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[account_context] = auth_override

    return _apply


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.healthy = True

    async def ping(self) -> bool:
        return self.healthy

    async def set_with_ttl(self, key: str, value: str, ttl_s: int | None = None) -> bool:
        self.store[key] = value
        self.ttls[key] = ttl_s
        return True

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def delete(self, key: str) -> bool:
        return self.store.pop(key, None) is not None


@pytest.fixture
def fake_redis():
    return FakeRedis()


class FakeRepository:
    """In-memory stand-in for ConversationRepository."""

    def __init__(self, threads: list[dict] | None = None, messages: dict[str, list[dict]] | None = None):
        self.threads = {thread["conversation_id"]: dict(thread) for thread in threads or []}
        self.messages = {cid: list(items) for cid, items in (messages or {}).items()}
        self.fail_ids: set[str] = set()
        self.raise_ids: set[str] = set()
        self.fail_messages_table = False
        self.write_delay = 0.0
        self.thread_updates: list[tuple[str, dict]] = []
        self.message_updates: list[tuple[str, dict]] = []
        self.fetch_count = 0
        self.new_email: dict[str, bool] = {}

    async def fetch_account(self, account_id: str) -> RawConversationSet:
        self.fetch_count += 1
        threads = [dict(thread) for thread in self.threads.values() if not thread.get("deleted")]
        return RawConversationSet(
            threads=threads,
            messages_by_thread={t["conversation_id"]: list(self.messages.get(t["conversation_id"], [])) for t in threads},
        )

    async def fetch_conversation(self, conversation_id: str) -> RawConversationSet:
        thread = self.threads.get(conversation_id)
        if thread is None:
            return RawConversationSet(messages_by_thread={conversation_id: []})
        return RawConversationSet(
            threads=[dict(thread)],
            messages_by_thread={conversation_id: list(self.messages.get(conversation_id, []))},
        )

    async def update_thread(self, conversation_id: str, patch: dict) -> bool:
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        self.thread_updates.append((conversation_id, dict(patch)))
        if conversation_id in self.raise_ids:
            raise RecordStoreError("boom", error_code="500", status_code=500)
        if conversation_id in self.fail_ids:
            return False
        self.threads.setdefault(conversation_id, {"conversation_id": conversation_id}).update(patch)
        return True

    async def update_messages_table(self, conversation_id: str, patch: dict) -> bool:
        self.message_updates.append((conversation_id, dict(patch)))
        if self.fail_messages_table:
            return False
        for message in self.messages.get(conversation_id, []):
            message.update(patch)
        return True

    async def consume_new_email_flag(self, user_id: str) -> bool:
        return self.new_email.pop(user_id, False)


@pytest.fixture
def inbox_records():
    """Three threads: one pending high-value lead, one answered, one spam."""
    threads = [
        make_thread("conv-1", lead_name="Alice Buyer", ai_summary="Looking for a 3 bed condo"),
        make_thread("conv-2", lead_name="Bob Seller"),
        make_thread("conv-3", lead_name="Spammy", spam="true"),
    ]
    messages = {
        "conv-1": [make_message("conv-1", "2024-06-10T09:00:00", ev_score=85)],
        "conv-2": [
            make_message("conv-2", "2024-06-09T08:00:00", ev_score=40),
            make_message("conv-2", "2024-06-09T09:30:00", type="outbound-email"),
        ],
        "conv-3": [make_message("conv-3", "2024-06-01T10:00:00", ev_score=5)],
    }
    return threads, messages


@pytest.fixture
def fake_repository(inbox_records):
    threads, messages = inbox_records
    return FakeRepository(threads, messages)
