"""
Conversation service.

Facade used by the HTTP routes: keeps one ConversationView and
MutationCoordinator per account, loads raw records through the cache or
the repository, and exposes list/metrics/trends/mutation operations.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from leadinbox.infrastructure.observability.logging import get_logger
from leadinbox.models.domain.conversation_domain import ProcessedConversation
from leadinbox.services.conversation_cache import ConversationCache

from .aggregator import aggregate
from .coordinator import BULK_OPERATIONS, BulkResult, MutationCoordinator
from .metrics import ConversationMetrics, TrendData, calculate_conversation_metrics, calculate_trends
from .pipeline import ConversationFilters, SortConfig, apply_view
from .repository import ConversationRepository
from .view import ConversationView

logger = get_logger(__name__)

SINGLE_MUTATIONS = frozenset(
    {
        "mark_read",
        "toggle_lcp",
        "toggle_review_override",
        "unflag_for_review",
        "clear_completion_flag",
        "mark_not_spam",
        "mark_spam",
        "complete_conversation",
        "save_notes",
        "delete",
    }
)


class ConversationNotFoundError(Exception):
    """Raised when a conversation id is not in the account's view."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


@dataclass(slots=True)
class AccountSession:
    account_id: str
    view: ConversationView
    coordinator: MutationCoordinator
    loaded: bool = False
    failed_threads: int = 0
    cached_at_commit: int = 0


class ConversationService:
    def __init__(
        self,
        repository: ConversationRepository,
        cache: ConversationCache | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        mutation_timeout: float | None = None,
        refresh_after_commit: bool | None = None,
    ):
        self._repository = repository
        self._cache = cache
        self._clock = clock or (lambda: datetime.now(UTC))
        self._mutation_timeout = mutation_timeout
        self._refresh_after_commit = refresh_after_commit
        self._sessions: dict[str, AccountSession] = {}
        self._load_locks: dict[str, asyncio.Lock] = {}

    def session(self, account_id: str) -> AccountSession:
        existing = self._sessions.get(account_id)
        if existing is not None:
            return existing

        view = ConversationView(clock=self._clock)
        coordinator = MutationCoordinator(
            view,
            self._repository,
            timeout=self._mutation_timeout,
            refresh_after_commit=self._refresh_after_commit,
            clock=self._clock,
        )
        session = AccountSession(account_id=account_id, view=view, coordinator=coordinator)
        self._sessions[account_id] = session
        return session

    async def refresh(self, account_id: str, *, force: bool = False) -> list[ProcessedConversation]:
        """
        Load the account's conversations into its view.

        Args:
            account_id: Account whose threads are loaded
            force: Skip the cache and read from the record store

        Returns:
            list[ProcessedConversation]: Most recent activity first

        Raises:
            RecordStoreError: If the thread listing cannot be fetched
        """
        session = self.session(account_id)
        coordinator = session.coordinator
        lock = self._load_locks.setdefault(account_id, asyncio.Lock())

        async with lock:
            # Settle started writes so the fetch sees them
            await coordinator.drain()
            commits_before = coordinator.commit_count

            raw = None
            if self._cache is not None and not force:
                raw = await self._cache.get(account_id)
                if raw is not None and session.cached_at_commit != commits_before:
                    # Cached before a commit whose invalidation has not landed yet
                    raw = None
                if raw is not None:
                    logger.debug("Conversation cache hit", account_id=account_id)

            if raw is None:
                raw = await self._repository.fetch_account(account_id)
                session.failed_threads = len(raw.failed_threads)
                if self._cache is not None:
                    if coordinator.has_pending or coordinator.commit_count != commits_before:
                        # A write overlapped the fetch; the snapshot may predate it
                        await self._cache.invalidate(account_id)
                    elif await self._cache.put(account_id, raw):
                        session.cached_at_commit = commits_before

            processed = aggregate(raw.threads, raw.messages_by_thread, now=self._clock())
            session.view.replace_all(processed)
            coordinator.reapply_pending()
            session.loaded = True
            items = session.view.snapshot()

        logger.info("Conversations refreshed", account_id=account_id, count=len(items), forced=force)
        return items

    async def _loaded(self, account_id: str) -> AccountSession:
        session = self.session(account_id)
        if not session.loaded:
            await self.refresh(account_id)
        return session

    async def list_conversations(
        self,
        account_id: str,
        filters: ConversationFilters | None = None,
        sort_config: SortConfig | None = None,
    ) -> list[ProcessedConversation]:
        session = await self._loaded(account_id)
        return apply_view(session.view.snapshot(), filters or ConversationFilters(), sort_config or SortConfig())

    async def get_conversation(self, account_id: str, conversation_id: str) -> ProcessedConversation:
        session = await self._loaded(account_id)
        record = session.view.get(conversation_id)
        if record is None:
            raise ConversationNotFoundError(conversation_id)
        return record

    async def get_metrics(self, account_id: str) -> ConversationMetrics:
        session = await self._loaded(account_id)
        return calculate_conversation_metrics(session.view.snapshot())

    async def get_trends(self, account_id: str, start: datetime, end: datetime) -> dict[str, TrendData]:
        session = await self._loaded(account_id)
        return calculate_trends(session.view.snapshot(), start, end)

    async def poll_new_email(self, account_id: str, user_id: str) -> bool:
        """Refresh from the store if the user's new-email flag was set."""
        if not await self._repository.consume_new_email_flag(user_id):
            return False

        logger.info("New email detected, refreshing conversations", account_id=account_id)
        await self.refresh(account_id, force=True)
        return True

    async def mutate(self, account_id: str, operation: str, conversation_id: str, **kwargs: Any) -> bool:
        """
        Run one named single-conversation mutation.

        Raises:
            ValueError: If the operation name is unknown
            ConversationNotFoundError: If the id is not in the view
        """
        if operation not in SINGLE_MUTATIONS:
            raise ValueError(f"Unsupported mutation: {operation}")

        session = await self._loaded(account_id)
        if conversation_id not in session.view:
            raise ConversationNotFoundError(conversation_id)

        committed = await getattr(session.coordinator, operation)(conversation_id, **kwargs)
        if committed:
            await self._invalidate(account_id)
        return committed

    async def bulk(
        self,
        account_id: str,
        ids: Collection[str],
        operation: str,
        note: str | None = None,
    ) -> BulkResult:
        """
        Raises:
            ValueError: If the operation name is unknown
        """
        if operation not in BULK_OPERATIONS:
            raise ValueError(f"Unsupported bulk operation: {operation}")

        session = await self._loaded(account_id)
        result = await session.coordinator.apply_to_selection(ids, operation, note=note)
        if result.succeeded:
            await self._invalidate(account_id)
        return result

    async def _invalidate(self, account_id: str) -> None:
        # Cached raw records no longer match the store after a commit
        if self._cache is not None:
            await self._cache.invalidate(account_id)

    async def close(self) -> None:
        """Let every in-flight mutation settle."""
        await asyncio.gather(*(session.coordinator.drain() for session in self._sessions.values()))
