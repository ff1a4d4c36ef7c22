"""
Optimistic mutation coordinator.

Applies user actions to the conversation view immediately, issues the
matching record store write and commits or rolls back based on the
result. Mutations on one conversation are serialized; a started write is
never abandoned, even if the caller goes away.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Collection, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from leadinbox.config import settings
from leadinbox.infrastructure.observability.logging import get_logger, log_mutation
from leadinbox.models.domain.conversation_domain import Thread

from .aggregator import aggregate
from .optimistic import with_optimistic_update
from .repository import ConversationRepository
from .view import ConversationView

logger = get_logger(__name__)

BulkOperation = Literal["delete", "mark_complete", "add_note", "mark_spam", "flag_for_review"]
BULK_OPERATIONS: tuple[str, ...] = ("delete", "mark_complete", "add_note", "mark_spam", "flag_for_review")

# Far-future TTL (epoch seconds) so the store never expires a rescued thread
NEVER_EXPIRE_TTL = 32503680000

PatchSource = Mapping[str, Any] | Callable[[Thread], Mapping[str, Any]]
WriteFactory = Callable[[Mapping[str, Any]], Awaitable[bool]]


@dataclass(frozen=True, slots=True)
class BulkResult:
    operation: str
    succeeded: frozenset[str] = field(default_factory=frozenset)
    failed: frozenset[str] = field(default_factory=frozenset)
    rejected: bool = False

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.rejected and not self.failed


class MutationCoordinator:
    """
    Coordinates optimistic mutations for one account's conversation view.

    Every public mutation returns a bool (or BulkResult) and never raises
    for remote failures.
    """

    def __init__(
        self,
        view: ConversationView,
        repository: ConversationRepository,
        *,
        timeout: float | None = None,
        refresh_after_commit: bool | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self._view = view
        self._repository = repository
        self._timeout = timeout if timeout is not None else settings.MUTATION_TIMEOUT_SECONDS
        self._refresh_after_commit = (
            refresh_after_commit if refresh_after_commit is not None else settings.REFRESH_AFTER_COMMIT
        )
        self._clock = clock or (lambda: datetime.now(UTC))
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._inflight: set[asyncio.Task] = set()
        self._bulk_ids: set[str] = set()
        # conversation_id -> patch awaiting the store (None for a pending delete)
        self._pending: dict[str, Mapping[str, Any] | None] = {}
        self._commits = 0

    @property
    def is_processing(self) -> bool:
        """True while any bulk operation is in flight."""
        return bool(self._bulk_ids)

    @property
    def has_pending(self) -> bool:
        """True while any optimistic change is waiting on the store."""
        return bool(self._pending)

    @property
    def commit_count(self) -> int:
        """Number of mutations committed so far; refreshes compare it across a fetch."""
        return self._commits

    def reapply_pending(self) -> None:
        """Re-publish in-flight changes on top of a freshly loaded view."""
        for conversation_id, fields in list(self._pending.items()):
            if fields is None:
                self._view.remove(conversation_id)
            else:
                self._view.patch_thread(conversation_id, fields)

    @asynccontextmanager
    async def _conversation_lock(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(conversation_id, asyncio.Lock())
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[conversation_id] -= 1
            if not self._lock_users[conversation_id]:
                del self._lock_users[conversation_id]
                del self._locks[conversation_id]

    async def drain(self) -> None:
        """Wait for every in-flight mutation to commit or roll back."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _spawn(self, coro: Awaitable[bool]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _shielded(self, coro: Awaitable[bool]) -> bool:
        # Cancelling the caller must not cancel the write or its bookkeeping
        return await asyncio.shield(self._spawn(coro))

    # ------------------------------------------------------------------
    # Single mutations
    # ------------------------------------------------------------------

    async def apply(
        self,
        conversation_id: str,
        patch: PatchSource,
        *,
        write: WriteFactory | None = None,
        operation: str = "update",
    ) -> bool:
        """
        Apply a thread patch optimistically and reconcile with the store.

        Args:
            conversation_id: Target conversation
            patch: Field values, or a function of the current thread that
                returns them (evaluated after acquiring the conversation lock)
            write: Remote write for the patch; defaults to a Threads update
            operation: Name used in log lines

        Returns:
            True if committed, False if rolled back or the id is unknown
        """
        return await self._shielded(self._apply_locked(conversation_id, patch, write, operation))

    async def _apply_locked(
        self,
        conversation_id: str,
        patch: PatchSource,
        write: WriteFactory | None,
        operation: str,
    ) -> bool:
        async with self._conversation_lock(conversation_id):
            current = self._view.get(conversation_id)
            if current is None:
                logger.warning("Mutation on unknown conversation", conversation_id=conversation_id, operation=operation)
                return False

            fields = dict(patch(current.thread) if callable(patch) else patch)
            remote = write or (lambda data: self._repository.update_thread(conversation_id, dict(data)))

            self._pending[conversation_id] = fields
            try:
                committed = await with_optimistic_update(
                    current.thread,
                    fields,
                    lambda: remote(fields),
                    publish=lambda values: self._view.patch_thread(conversation_id, values),
                    timeout=self._timeout,
                    operation=operation,
                )
            finally:
                self._pending.pop(conversation_id, None)
            if committed:
                self._commits += 1
            log_mutation(operation, conversation_id, committed)

            if committed and self._refresh_after_commit:
                await self._refresh_one(conversation_id)
            return committed

    async def _refresh_one(self, conversation_id: str) -> None:
        """Absorb server-computed fields after a commit; failures keep local state."""
        try:
            raw = await asyncio.wait_for(
                self._repository.fetch_conversation(conversation_id), timeout=self._timeout
            )
        except Exception as e:
            logger.warning("Post-commit refresh failed", conversation_id=conversation_id, error=str(e))
            return

        refreshed = aggregate(raw.threads, raw.messages_by_thread, now=self._clock())
        if refreshed and conversation_id in self._view:
            self._view.replace(refreshed[0])

    async def mark_read(self, conversation_id: str) -> bool:
        return await self.apply(conversation_id, {"read": True}, operation="mark_read")

    async def toggle_lcp(self, conversation_id: str) -> bool:
        return await self.apply(
            conversation_id,
            lambda thread: {"lcp_enabled": not thread.lcp_enabled},
            operation="toggle_lcp",
        )

    async def toggle_review_override(self, conversation_id: str) -> bool:
        return await self.apply(
            conversation_id,
            lambda thread: {"flag_review_override": not thread.flag_review_override},
            operation="toggle_review_override",
        )

    async def unflag_for_review(self, conversation_id: str) -> bool:
        return await self.apply(conversation_id, {"flag_for_review": False}, operation="unflag_for_review")

    async def clear_completion_flag(self, conversation_id: str) -> bool:
        return await self.apply(conversation_id, {"flag": False}, operation="clear_completion_flag")

    async def mark_spam(self, conversation_id: str) -> bool:
        return await self.apply(conversation_id, {"spam": True}, operation="mark_spam")

    async def mark_not_spam(self, conversation_id: str) -> bool:
        """
        Clear spam on both the thread and its messages, and lift the expiry.

        The messages table is written first; if the thread write then fails,
        the messages are flagged as spam again so both tables agree with the
        rolled-back view.
        """

        async def write(fields: Mapping[str, Any]) -> bool:
            patch = {**fields, "ttl": NEVER_EXPIRE_TTL}
            if not await self._repository.update_messages_table(conversation_id, patch):
                return False
            try:
                if await self._repository.update_thread(conversation_id, patch):
                    return True
            except Exception:
                await self._restore_message_spam(conversation_id)
                raise
            await self._restore_message_spam(conversation_id)
            return False

        return await self.apply(conversation_id, {"spam": False}, write=write, operation="mark_not_spam")

    async def _restore_message_spam(self, conversation_id: str) -> None:
        try:
            restored = await self._repository.update_messages_table(conversation_id, {"spam": True})
        except Exception as e:
            logger.error("Failed to restore message spam flag", conversation_id=conversation_id, error=str(e))
            return
        if not restored:
            logger.error("Failed to restore message spam flag", conversation_id=conversation_id)

    async def complete_conversation(self, conversation_id: str, reason: str, next_steps: str = "") -> bool:
        fields = {
            "completed": True,
            "flag": False,
            "completion_reason": reason.strip() or None,
            "completion_next_steps": next_steps.strip() or None,
        }

        async def write(values: Mapping[str, Any]) -> bool:
            return await self._repository.update_thread(
                conversation_id,
                {**values, "completed_at": self._clock().isoformat()},
            )

        return await self.apply(conversation_id, fields, write=write, operation="complete_conversation")

    async def save_notes(self, conversation_id: str, notes: str) -> bool:
        return await self.apply(conversation_id, {"notes": notes}, operation="save_notes")

    async def delete(self, conversation_id: str) -> bool:
        """Remove optimistically; soft-delete in the store; reinsert on failure."""
        return await self._shielded(self._delete_locked(conversation_id))

    async def _delete_locked(self, conversation_id: str) -> bool:
        async with self._conversation_lock(conversation_id):
            removed = self._view.remove(conversation_id)
            if removed is None:
                logger.warning("Delete of unknown conversation", conversation_id=conversation_id)
                return False
            position, record = removed

            error = None
            self._pending[conversation_id] = None
            try:
                committed = await asyncio.wait_for(
                    self._repository.update_thread(conversation_id, {"deleted": True}),
                    timeout=self._timeout,
                )
            except Exception as e:
                committed = False
                error = f"{type(e).__name__}: {e}"
            finally:
                self._pending.pop(conversation_id, None)

            if committed is not True:
                self._view.restore(position, record)
                log_mutation("delete", conversation_id, False, error or "store reported failure")
                return False

            self._commits += 1
            log_mutation("delete", conversation_id, True)
            return True

    # ------------------------------------------------------------------
    # Bulk mutations
    # ------------------------------------------------------------------

    def _single_for(self, operation: str, note: str | None) -> Callable[[str], Awaitable[bool]]:
        if operation == "delete":
            return self.delete
        if operation == "mark_complete":
            return lambda conversation_id: self.apply(
                conversation_id, {"completed": True, "busy": False}, operation="bulk_mark_complete"
            )
        if operation == "add_note":
            return lambda conversation_id: self.save_notes(conversation_id, note or "")
        if operation == "mark_spam":
            return self.mark_spam
        if operation == "flag_for_review":
            return lambda conversation_id: self.apply(
                conversation_id, {"flag": True, "flag_for_review": True}, operation="bulk_flag_for_review"
            )
        raise ValueError(f"Unsupported bulk operation: {operation}")

    async def apply_to_selection(
        self,
        ids: Collection[str],
        operation: BulkOperation,
        *,
        note: str | None = None,
    ) -> BulkResult:
        """
        Run one operation over a selection; each id succeeds or fails on its own.

        A selection overlapping a bulk operation still in flight is rejected
        outright rather than queued.

        Raises:
            ValueError: If the operation is unknown
        """
        single = self._single_for(operation, note)
        selection = set(ids)

        if not selection or (operation == "add_note" and not (note or "").strip()):
            return BulkResult(operation=operation)

        if selection & self._bulk_ids:
            logger.warning(
                "Bulk operation rejected, selection already processing",
                operation=operation,
                overlap=len(selection & self._bulk_ids),
            )
            return BulkResult(operation=operation, rejected=True)

        ordered = sorted(selection)
        self._bulk_ids.update(ordered)
        try:
            outcomes = await asyncio.gather(*(single(conversation_id) for conversation_id in ordered))
        finally:
            self._bulk_ids.difference_update(ordered)

        succeeded = frozenset(cid for cid, ok in zip(ordered, outcomes) if ok)
        failed = frozenset(ordered) - succeeded

        logger.info(
            "Bulk operation finished",
            operation=operation,
            succeeded=len(succeeded),
            failed=len(failed),
        )
        return BulkResult(operation=operation, succeeded=succeeded, failed=failed)
