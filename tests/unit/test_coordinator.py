"""
Tests for the optimistic mutation coordinator and the conversation view.
"""

import asyncio

import pytest

from leadinbox.services.conversations.aggregator import aggregate
from leadinbox.services.conversations.coordinator import NEVER_EXPIRE_TTL, MutationCoordinator
from leadinbox.services.conversations.view import ConversationView
from tests.factories import NOW


@pytest.fixture
def view(inbox_records, clock):
    threads, messages = inbox_records
    view = ConversationView(clock=clock)
    view.replace_all(aggregate(threads, messages, now=NOW))
    return view


@pytest.fixture
def coordinator(view, fake_repository, clock):
    return MutationCoordinator(view, fake_repository, timeout=1.0, refresh_after_commit=False, clock=clock)


def test_view_patch_recomputes_derived_fields(view):
    updated = view.patch_thread("conv-1", {"spam": True})

    assert updated.status == "spam"
    assert updated.priority == "low"
    assert view.get("conv-1") is updated


def test_view_rejects_unknown_fields(view):
    with pytest.raises(KeyError):
        view.patch_thread("conv-1", {"color": "red"})
    assert view.patch_thread("missing", {"read": True}) is None


def test_view_notifies_subscribers(view):
    versions = []
    unsubscribe = view.subscribe(versions.append)

    view.patch_thread("conv-1", {"read": True})
    unsubscribe()
    view.patch_thread("conv-1", {"read": False})

    assert len(versions) == 1
    assert view.version == versions[0] + 1


@pytest.mark.asyncio
async def test_mark_read_commits(coordinator, view, fake_repository):
    assert await coordinator.mark_read("conv-1") is True

    assert view.get("conv-1").thread.read is True
    assert fake_repository.thread_updates == [("conv-1", {"read": True})]


@pytest.mark.asyncio
async def test_failed_write_restores_record_exactly(coordinator, view, fake_repository):
    before = view.get("conv-1")
    fake_repository.fail_ids.add("conv-1")

    assert await coordinator.toggle_lcp("conv-1") is False
    assert view.get("conv-1") == before


@pytest.mark.asyncio
async def test_raised_write_restores_record(coordinator, view, fake_repository):
    before = view.get("conv-3")
    fake_repository.raise_ids.add("conv-3")

    assert await coordinator.mark_not_spam("conv-3") is False
    assert view.get("conv-3") == before


@pytest.mark.asyncio
async def test_toggles_read_current_value_under_lock(coordinator, view):
    results = await asyncio.gather(coordinator.toggle_lcp("conv-1"), coordinator.toggle_lcp("conv-1"))

    assert results == [True, True]
    assert view.get("conv-1").thread.lcp_enabled is False


@pytest.mark.asyncio
async def test_unknown_id_returns_false(coordinator, fake_repository):
    assert await coordinator.mark_read("nope") is False
    assert await coordinator.delete("nope") is False
    assert fake_repository.thread_updates == []


@pytest.mark.asyncio
async def test_mark_not_spam_writes_both_tables(coordinator, view, fake_repository):
    assert await coordinator.mark_not_spam("conv-3") is True

    assert view.get("conv-3").status != "spam"
    assert fake_repository.thread_updates == [("conv-3", {"spam": False, "ttl": NEVER_EXPIRE_TTL})]
    assert fake_repository.message_updates == [("conv-3", {"spam": False, "ttl": NEVER_EXPIRE_TTL})]


@pytest.mark.asyncio
async def test_mark_not_spam_leaves_thread_untouched_if_messages_table_fails(coordinator, view, fake_repository):
    fake_repository.fail_messages_table = True

    assert await coordinator.mark_not_spam("conv-3") is False
    assert view.get("conv-3").status == "spam"
    assert fake_repository.thread_updates == []
    assert fake_repository.threads["conv-3"]["spam"] == "true"


@pytest.mark.asyncio
async def test_mark_not_spam_restores_messages_if_thread_write_fails(coordinator, view, fake_repository):
    fake_repository.fail_ids.add("conv-3")

    assert await coordinator.mark_not_spam("conv-3") is False
    assert view.get("conv-3").status == "spam"
    assert fake_repository.message_updates == [
        ("conv-3", {"spam": False, "ttl": NEVER_EXPIRE_TTL}),
        ("conv-3", {"spam": True}),
    ]
    assert all(message["spam"] is True for message in fake_repository.messages["conv-3"])


@pytest.mark.asyncio
async def test_locks_are_released_after_mutations(coordinator, fake_repository):
    fake_repository.write_delay = 0.01

    await asyncio.gather(
        coordinator.toggle_lcp("conv-1"),
        coordinator.toggle_lcp("conv-1"),
        coordinator.mark_read("nope"),
        coordinator.delete("conv-2"),
    )

    assert coordinator._locks == {}
    assert coordinator._lock_users == {}


@pytest.mark.asyncio
async def test_pending_changes_survive_a_reload(coordinator, view, fake_repository, inbox_records):
    threads, messages = inbox_records
    fake_repository.write_delay = 0.05

    read = asyncio.create_task(coordinator.mark_read("conv-1"))
    removed = asyncio.create_task(coordinator.delete("conv-2"))
    await asyncio.sleep(0.01)
    assert coordinator.has_pending is True

    view.replace_all(aggregate(threads, messages, now=NOW))
    coordinator.reapply_pending()

    assert view.get("conv-1").thread.read is True
    assert "conv-2" not in view

    assert await read is True
    assert await removed is True
    assert coordinator.has_pending is False
    assert coordinator.commit_count == 2
    assert view.get("conv-1").thread.read is True


@pytest.mark.asyncio
async def test_complete_conversation(coordinator, view, fake_repository):
    assert await coordinator.complete_conversation("conv-1", "Signed listing", "Send paperwork") is True

    item = view.get("conv-1")
    assert item.status == "completed"
    assert item.thread.flag is False
    assert item.thread.completion_reason == "Signed listing"

    _, payload = fake_repository.thread_updates[0]
    assert payload["completed"] is True
    assert payload["completed_at"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_review_override_and_unflag(coordinator, view):
    view.patch_thread("conv-2", {"flag_for_review": True})
    assert view.get("conv-2").status == "flagged"

    assert await coordinator.toggle_review_override("conv-2") is True
    assert view.get("conv-2").status == "active"

    assert await coordinator.unflag_for_review("conv-2") is True
    assert view.get("conv-2").thread.flag_for_review is False


@pytest.mark.asyncio
async def test_delete_is_soft_and_rollback_restores_position(coordinator, view, fake_repository):
    order = [item.conversation_id for item in view.snapshot()]
    fake_repository.fail_ids.add("conv-2")

    assert await coordinator.delete("conv-2") is False
    assert [item.conversation_id for item in view.snapshot()] == order

    assert await coordinator.delete("conv-1") is True
    assert "conv-1" not in view
    assert fake_repository.thread_updates[-1] == ("conv-1", {"deleted": True})


@pytest.mark.asyncio
async def test_bulk_partial_failure(coordinator, view, fake_repository):
    fake_repository.fail_ids.add("conv-2")

    result = await coordinator.apply_to_selection(["conv-1", "conv-2", "conv-3"], "mark_complete")

    assert result.succeeded == {"conv-1", "conv-3"}
    assert result.failed == {"conv-2"}
    assert result.attempted == 3
    assert not result.ok
    assert coordinator.is_processing is False
    assert view.get("conv-1").status == "completed"
    assert view.get("conv-2").status == "active"


@pytest.mark.asyncio
async def test_bulk_empty_selection_and_blank_note_are_noops(coordinator, fake_repository):
    empty = await coordinator.apply_to_selection([], "delete")
    blank = await coordinator.apply_to_selection(["conv-1"], "add_note", note="   ")

    assert empty.attempted == 0 and blank.attempted == 0
    assert fake_repository.thread_updates == []


@pytest.mark.asyncio
async def test_bulk_unknown_operation_raises(coordinator):
    with pytest.raises(ValueError):
        await coordinator.apply_to_selection(["conv-1"], "archive")


@pytest.mark.asyncio
async def test_overlapping_bulk_is_rejected(coordinator, fake_repository):
    fake_repository.write_delay = 0.05

    first = asyncio.create_task(coordinator.apply_to_selection(["conv-1", "conv-2"], "mark_spam"))
    await asyncio.sleep(0)
    assert coordinator.is_processing is True

    second = await coordinator.apply_to_selection(["conv-2", "conv-3"], "flag_for_review")
    first_result = await first

    assert second.rejected is True
    assert first_result.succeeded == {"conv-1", "conv-2"}
    assert coordinator.is_processing is False


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_abandon_write(coordinator, view, fake_repository):
    fake_repository.write_delay = 0.05

    task = asyncio.create_task(coordinator.save_notes("conv-1", "Call back Tuesday"))
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await coordinator.drain()
    assert view.get("conv-1").thread.notes == "Call back Tuesday"
    assert fake_repository.thread_updates == [("conv-1", {"notes": "Call back Tuesday"})]


@pytest.mark.asyncio
async def test_refresh_after_commit_absorbs_store_fields(view, fake_repository, clock):
    coordinator = MutationCoordinator(view, fake_repository, timeout=1.0, refresh_after_commit=True, clock=clock)
    fake_repository.threads["conv-1"]["ai_summary"] = "Updated by the store"

    assert await coordinator.mark_read("conv-1") is True
    assert view.get("conv-1").thread.ai_summary == "Updated by the store"
