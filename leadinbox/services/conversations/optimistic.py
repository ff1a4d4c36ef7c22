"""
Snapshot/patch/commit-or-rollback primitive for optimistic updates.

Every optimistic mutation goes through ``with_optimistic_update``: the
fields touched by the patch are snapshotted, the patch is published
locally before the remote write starts, and the snapshot is published
back if the write fails, times out or raises.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from leadinbox.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

RemoteWrite = Callable[[], Awaitable[bool]]
Publish = Callable[[Mapping[str, Any]], None]


def snapshot_fields(current: Any, fields: Iterable[str]) -> dict[str, Any]:
    """Current values of the given fields from a mapping or an object."""
    if isinstance(current, Mapping):
        return {name: current.get(name) for name in fields}
    return {name: getattr(current, name) for name in fields}


async def with_optimistic_update(
    current: Any,
    patch: Mapping[str, Any],
    remote_write: RemoteWrite,
    *,
    publish: Publish,
    timeout: float | None = None,
    operation: str = "update",
) -> bool:
    """
    Apply ``patch`` locally, run ``remote_write`` and reconcile.

    Args:
        current: Value the patch applies to (read for the snapshot only)
        patch: Field values to apply optimistically
        remote_write: Coroutine factory returning the store's success flag
        publish: Applies a field mapping to the shared local state
        timeout: Upper bound for the remote write in seconds
        operation: Name used in log lines

    Returns:
        True if the write committed, False if it was rolled back
    """
    snapshot = snapshot_fields(current, patch.keys())
    publish(patch)

    error: str | None = None
    try:
        committed = await asyncio.wait_for(remote_write(), timeout=timeout)
    except TimeoutError:
        committed = False
        error = f"timed out after {timeout}s"
    except Exception as e:
        committed = False
        error = f"{type(e).__name__}: {e}"
    else:
        if committed is not True:
            committed = False
            error = "store reported failure"

    if committed:
        return True

    publish(snapshot)
    logger.warning(
        "Optimistic update rolled back",
        operation=operation,
        fields=sorted(patch.keys()),
        error=error,
    )
    return False
