"""
Conversation repository.

Reads threads and messages for one account from the record store and
writes thread patches back. Returns raw records; normalization happens in
the aggregator.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

from leadinbox.config import settings
from leadinbox.infrastructure.observability.logging import get_logger
from leadinbox.services.record_store_client import RecordStoreClient, RecordStoreError

from .normalizer import normalize_bool

logger = get_logger(__name__)

ACCOUNT_INDEX = "associated_account-index"
CONVERSATION_INDEX = "conversation_id-index"
USER_INDEX = "id-index"


@dataclass(slots=True)
class RawConversationSet:
    """Raw records for one account as fetched from the store."""

    threads: list[dict[str, Any]] = field(default_factory=list)
    messages_by_thread: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    failed_threads: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"threads": self.threads, "messages_by_thread": self.messages_by_thread}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RawConversationSet:
        return cls(
            threads=list(data.get("threads") or []),
            messages_by_thread=dict(data.get("messages_by_thread") or {}),
        )


class ConversationRepository:
    def __init__(self, client: RecordStoreClient):
        self._client = client

    async def fetch_account(self, account_id: str) -> RawConversationSet:
        """
        Fetch all threads for an account plus each thread's messages.

        A thread whose messages cannot be fetched is left out and reported
        in ``failed_threads``; only the thread listing itself is fatal.

        Raises:
            RecordStoreError: If the thread listing fails
        """
        threads = await self._client.select(
            settings.THREADS_TABLE, ACCOUNT_INDEX, "associated_account", account_id
        )

        ids = [str(thread.get("conversation_id") or thread.get("id") or "") for thread in threads]
        results = await asyncio.gather(
            *(self.fetch_messages(conversation_id) for conversation_id in ids if conversation_id),
            return_exceptions=True,
        )

        raw = RawConversationSet()
        fetched = iter(results)
        for thread, conversation_id in zip(threads, ids):
            if not conversation_id:
                # Let the normalizer log and drop it
                raw.threads.append(thread)
                continue
            result = next(fetched)
            if isinstance(result, BaseException):
                raw.failed_threads[conversation_id] = str(result)
                continue
            raw.threads.append(thread)
            raw.messages_by_thread[conversation_id] = result

        if raw.failed_threads:
            logger.warning(
                "Failed to fetch messages for some threads",
                account_id=account_id,
                failed_count=len(raw.failed_threads),
            )

        logger.info(
            "Fetched account conversations",
            account_id=account_id,
            thread_count=len(raw.threads),
        )
        return raw

    async def fetch_messages(self, conversation_id: str) -> list[dict[str, Any]]:
        return await self._client.select(
            settings.MESSAGES_TABLE, CONVERSATION_INDEX, "conversation_id", conversation_id
        )

    async def fetch_conversation(self, conversation_id: str) -> RawConversationSet:
        """Fetch a single thread and its messages."""
        threads = await self._client.select(
            settings.THREADS_TABLE, CONVERSATION_INDEX, "conversation_id", conversation_id
        )
        messages = await self.fetch_messages(conversation_id) if threads else []
        return RawConversationSet(threads=threads[:1], messages_by_thread={conversation_id: messages})

    async def update_thread(self, conversation_id: str, patch: dict[str, Any]) -> bool:
        return await self._client.update(
            settings.THREADS_TABLE, CONVERSATION_INDEX, "conversation_id", conversation_id, patch
        )

    async def update_messages_table(self, conversation_id: str, patch: dict[str, Any]) -> bool:
        return await self._client.update(
            settings.MESSAGES_TABLE, CONVERSATION_INDEX, "conversation_id", conversation_id, patch
        )

    async def consume_new_email_flag(self, user_id: str) -> bool:
        """
        Check the user's ``new_email`` flag and reset it if set.

        Returns:
            bool: True if new mail arrived since the last check
        """
        try:
            users = await self._client.select(settings.USERS_TABLE, USER_INDEX, "id", user_id)
        except RecordStoreError as e:
            logger.error("Failed to check new email flag", user_id=user_id, error=str(e))
            return False

        if not users or not normalize_bool(users[0].get("new_email")):
            return False

        try:
            await self._client.update(settings.USERS_TABLE, USER_INDEX, "id", user_id, {"new_email": False})
        except RecordStoreError as e:
            # Worst case the next poll refreshes again
            logger.warning("Failed to reset new email flag", user_id=user_id, error=str(e))
        return True
