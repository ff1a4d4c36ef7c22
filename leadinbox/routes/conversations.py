"""
Conversation API Routes
HTTP endpoints for the lead inbox: listing, metrics, trends and
optimistic mutations on conversations.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from leadinbox.auth.verify import AccountContext, account_context
from leadinbox.infrastructure.observability.logging import get_logger
from leadinbox.models.api.conversation_request import (
    BulkActionRequest,
    CompleteConversationRequest,
    SaveNotesRequest,
)
from leadinbox.models.api.conversation_response import (
    BulkActionResponse,
    ConversationDetailResponse,
    ConversationListResponse,
    MetricsResponse,
    MutationResponse,
    PollResponse,
    TrendsResponse,
    ViewMode,
    bulk_response,
    metrics_response,
    present,
    present_detailed,
    present_simple,
    trend_response,
)
from leadinbox.services.conversations.pipeline import ConversationFilters, SortConfig
from leadinbox.services.conversations.service import ConversationNotFoundError, ConversationService
from leadinbox.services.record_store_client import RecordStoreError

logger = get_logger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])

STATUS_VALUES = {"spam", "flagged", "completed", "pending", "active"}


def get_conversation_service(request: Request) -> ConversationService:
    return request.app.state.conversation_service


def _aware(value: datetime | None) -> datetime | None:
    """Query datetimes without a zone are UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _store_unavailable(account_id: str, e: RecordStoreError) -> HTTPException:
    logger.error(
        "Record store unavailable",
        account_id=account_id,
        error_code=e.error_code,
        error=str(e),
    )
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail="Record store unavailable, please retry",
        headers={"Retry-After": "5"},
    )


@router.get("", response_model=ConversationListResponse)
async def list_conversations(
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
    statuses: list[str] = Query(default=[], description="Statuses to include (OR-combined)"),
    ev_min: float = Query(default=0.0, ge=0, le=100, description="Minimum EV score"),
    ev_max: float = Query(default=100.0, ge=0, le=100, description="Maximum EV score"),
    date_from: datetime | None = Query(default=None, description="Earliest last activity"),
    date_to: datetime | None = Query(default=None, description="Latest last activity"),
    q: str = Query(default="", max_length=200, description="Search over name, email, ID and summary"),
    pending_only: bool = Query(default=False, description="Only conversations awaiting a reply"),
    sort: str = Query(default="last_message", description="last_message, ai_score, date or name"),
    direction: str = Query(default="desc", pattern="^(asc|desc)$", description="Sort direction"),
    view: ViewMode = Query(default="simple", description="Presentation variant"),
    refresh: bool = Query(default=False, description="Bypass the cache and reload from the store"),
):
    """List conversations for the authenticated account."""
    unknown = set(statuses) - STATUS_VALUES
    if unknown:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown statuses: {sorted(unknown)}")
    if ev_min > ev_max:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="ev_min must not exceed ev_max")

    filters = ConversationFilters(
        statuses=frozenset(statuses),
        ev_score_range=(ev_min, ev_max),
        date_range=(_aware(date_from), _aware(date_to)),
        search_query=q,
        show_pending_only=pending_only,
    )

    try:
        if refresh:
            await service.refresh(ctx.account_id, force=True)
        items = await service.list_conversations(ctx.account_id, filters, SortConfig(field=sort, direction=direction))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RecordStoreError as e:
        raise _store_unavailable(ctx.account_id, e)

    return ConversationListResponse(
        conversations=[present(item, view) for item in items],
        total_count=len(items),
        view=view,
    )


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    try:
        metrics = await service.get_metrics(ctx.account_id)
    except RecordStoreError as e:
        raise _store_unavailable(ctx.account_id, e)
    return metrics_response(metrics)


@router.get("/trends", response_model=TrendsResponse)
async def get_trends(
    start: datetime = Query(..., description="Window start"),
    end: datetime = Query(..., description="Window end"),
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    """Compare the window against the equal-length window before it."""
    try:
        trends = await service.get_trends(ctx.account_id, _aware(start), _aware(end))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RecordStoreError as e:
        raise _store_unavailable(ctx.account_id, e)

    return TrendsResponse(
        start=_aware(start),
        end=_aware(end),
        trends={name: trend_response(trend) for name, trend in trends.items()},
    )


@router.post("/poll", response_model=PollResponse)
async def poll_new_email(
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    """Refresh the inbox if new mail arrived since the last poll."""
    try:
        new_email = await service.poll_new_email(ctx.account_id, ctx.user_id)
        items = await service.list_conversations(ctx.account_id)
    except RecordStoreError as e:
        raise _store_unavailable(ctx.account_id, e)
    return PollResponse(new_email=new_email, total_count=len(items))


@router.post("/bulk", response_model=BulkActionResponse)
async def bulk_action(
    request: BulkActionRequest,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    """Apply one operation to a selection; partial failure is reported per id."""
    try:
        result = await service.bulk(ctx.account_id, request.ids, request.operation, note=request.note)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RecordStoreError as e:
        raise _store_unavailable(ctx.account_id, e)

    if result.rejected:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Selection overlaps a bulk operation in progress",
        )
    return bulk_response(result)


@router.get("/{conversation_id}", response_model=ConversationDetailResponse)
async def get_conversation(
    conversation_id: str,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    try:
        item = await service.get_conversation(ctx.account_id, conversation_id)
    except ConversationNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    except RecordStoreError as e:
        raise _store_unavailable(ctx.account_id, e)
    return present_detailed(item)


async def _mutate(
    service: ConversationService,
    ctx: AccountContext,
    operation: str,
    conversation_id: str,
    **kwargs,
) -> MutationResponse:
    try:
        committed = await service.mutate(ctx.account_id, operation, conversation_id, **kwargs)
    except ConversationNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    except RecordStoreError as e:
        raise _store_unavailable(ctx.account_id, e)

    if not committed:
        # Local state was already rolled back
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{operation} was not saved and has been reverted, please retry",
            headers={"Retry-After": "1"},
        )

    record = service.session(ctx.account_id).view.get(conversation_id)
    return MutationResponse(
        success=True,
        conversation_id=conversation_id,
        operation=operation,
        conversation=present_simple(record) if record is not None else None,
    )


@router.post("/{conversation_id}/read", response_model=MutationResponse)
async def mark_read(
    conversation_id: str,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    return await _mutate(service, ctx, "mark_read", conversation_id)


@router.post("/{conversation_id}/lcp/toggle", response_model=MutationResponse)
async def toggle_lcp(
    conversation_id: str,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    return await _mutate(service, ctx, "toggle_lcp", conversation_id)


@router.post("/{conversation_id}/review-override/toggle", response_model=MutationResponse)
async def toggle_review_override(
    conversation_id: str,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    return await _mutate(service, ctx, "toggle_review_override", conversation_id)


@router.post("/{conversation_id}/unflag", response_model=MutationResponse)
async def unflag_for_review(
    conversation_id: str,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    return await _mutate(service, ctx, "unflag_for_review", conversation_id)


@router.post("/{conversation_id}/clear-flag", response_model=MutationResponse)
async def clear_completion_flag(
    conversation_id: str,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    return await _mutate(service, ctx, "clear_completion_flag", conversation_id)


@router.post("/{conversation_id}/not-spam", response_model=MutationResponse)
async def mark_not_spam(
    conversation_id: str,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    return await _mutate(service, ctx, "mark_not_spam", conversation_id)


@router.post("/{conversation_id}/spam", response_model=MutationResponse)
async def mark_spam(
    conversation_id: str,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    return await _mutate(service, ctx, "mark_spam", conversation_id)


@router.post("/{conversation_id}/complete", response_model=MutationResponse)
async def complete_conversation(
    conversation_id: str,
    request: CompleteConversationRequest,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    return await _mutate(
        service,
        ctx,
        "complete_conversation",
        conversation_id,
        reason=request.reason,
        next_steps=request.next_steps,
    )


@router.post("/{conversation_id}/notes", response_model=MutationResponse)
async def save_notes(
    conversation_id: str,
    request: SaveNotesRequest,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    return await _mutate(service, ctx, "save_notes", conversation_id, notes=request.notes)


@router.delete("/{conversation_id}", response_model=MutationResponse)
async def delete_conversation(
    conversation_id: str,
    ctx: AccountContext = Depends(account_context),
    service: ConversationService = Depends(get_conversation_service),
):
    return await _mutate(service, ctx, "delete", conversation_id)
