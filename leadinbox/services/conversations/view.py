"""
In-memory conversation view.

The single shared mutable collection of ProcessedConversation records.
Writers (the refresh path and the mutation coordinator) only ever replace
whole records; readers get immutable snapshots.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Callable, Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from leadinbox.infrastructure.observability.logging import get_logger
from leadinbox.models.domain.conversation_domain import Conversation, ProcessedConversation, Thread

from .aggregator import process_conversation

logger = get_logger(__name__)

Listener = Callable[[int], None]

_THREAD_FIELDS = {f.name for f in dataclasses.fields(Thread)} - {"conversation_id"}


class ConversationView:
    """Ordered id -> ProcessedConversation map with a monotonic version."""

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._records: dict[str, ProcessedConversation] = {}
        self._version = 0
        self._listeners: list[Listener] = []
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def version(self) -> int:
        return self._version

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._records

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change callback; returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _changed(self) -> None:
        self._version += 1
        for listener in list(self._listeners):
            try:
                listener(self._version)
            except Exception as e:
                logger.error("Conversation view listener failed", error=str(e))

    def snapshot(self) -> list[ProcessedConversation]:
        return list(self._records.values())

    def get(self, conversation_id: str) -> ProcessedConversation | None:
        return self._records.get(conversation_id)

    def replace_all(self, items: Iterable[ProcessedConversation]) -> None:
        self._records = {item.conversation_id: item for item in items}
        self._changed()

    def replace(self, item: ProcessedConversation) -> None:
        """Swap in a new record for an existing id (or append a new one)."""
        self._records[item.conversation_id] = item
        self._changed()

    def patch_thread(self, conversation_id: str, fields: Mapping[str, Any]) -> ProcessedConversation | None:
        """
        Rebuild one record with thread fields replaced and derived fields
        recomputed. Returns the new record, or None if the id is unknown.

        Raises:
            KeyError: If a field is not a Thread attribute
        """
        current = self._records.get(conversation_id)
        if current is None:
            return None

        unknown = set(fields) - _THREAD_FIELDS
        if unknown:
            raise KeyError(f"Unknown thread fields: {sorted(unknown)}")

        thread = dataclasses.replace(current.thread, **dict(fields))
        updated = process_conversation(Conversation(thread, current.messages), now=self._clock())
        self._records[conversation_id] = updated
        self._changed()
        return updated

    def remove(self, conversation_id: str) -> tuple[int, ProcessedConversation] | None:
        """Remove a record; returns its former position and value."""
        if conversation_id not in self._records:
            return None
        position = list(self._records).index(conversation_id)
        record = self._records.pop(conversation_id)
        self._changed()
        return position, record

    def restore(self, position: int, record: ProcessedConversation) -> None:
        """Reinsert a removed record at its former position."""
        items = [item for item in self._records.values() if item.conversation_id != record.conversation_id]
        items.insert(min(position, len(items)), record)
        self._records = {item.conversation_id: item for item in items}
        self._changed()
