"""Subscription API router."""

from uuid import UUID

from fastapi import APIRouter, status

from expense_tracker.deps import DbSession
from expense_tracker.logger import get_logger
from expense_tracker.schemas import (
    ApproveSubscriptionSuggestionRequest,
    DetectSubscriptionsResult,
    ListResponse,
    SubscriptionCancelRequest,
    SubscriptionCancelResult,
    SubscriptionCreate,
    SubscriptionCreateResult,
    SubscriptionSuggestionResponse,
)
from expense_tracker.services import (
    InvalidSubscriptionError,
    SubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionSuggestionNotFoundError,
    approve_subscription_suggestion,
    cancel_subscription,
    create_subscription,
    detect_subscriptions,
    list_pending_subscription_suggestions,
    reject_subscription_suggestion,
)
from expense_tracker.utils import raise_bad_request, raise_not_found

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
logger = get_logger(__name__)


@router.post("", response_model=SubscriptionCreateResult, status_code=status.HTTP_201_CREATED)
async def create(payload: SubscriptionCreate, db: DbSession) -> SubscriptionCreateResult:
    """Create a subscription and generate its past and projected occurrences."""
    try:
        result = await create_subscription(db, payload)
    except InvalidSubscriptionError as e:
        raise_bad_request(str(e), cause=e)

    await db.commit()
    return result


@router.post("/{subscription_id}/cancel", response_model=SubscriptionCancelResult)
async def cancel(
    subscription_id: UUID,
    db: DbSession,
    payload: SubscriptionCancelRequest | None = None,
) -> SubscriptionCancelResult:
    effective_date = payload.effective_date if payload else None
    try:
        result = await cancel_subscription(db, subscription_id, effective_date)
    except SubscriptionNotFoundError as e:
        raise_not_found("Subscription", cause=e)
    except InvalidSubscriptionError as e:
        raise_bad_request(str(e), cause=e)

    await db.commit()
    return result


@router.post("/detect", response_model=DetectSubscriptionsResult)
async def detect(db: DbSession) -> DetectSubscriptionsResult:
    """Look for recurring charges and suggest subscriptions for them."""
    result = await detect_subscriptions(db)
    await db.commit()
    return result


@router.get("/suggestions", response_model=ListResponse[SubscriptionSuggestionResponse])
async def list_suggestions(db: DbSession) -> ListResponse[SubscriptionSuggestionResponse]:
    suggestions = await list_pending_subscription_suggestions(db)
    items = [SubscriptionSuggestionResponse.model_validate(s) for s in suggestions]
    return ListResponse[SubscriptionSuggestionResponse](items=items, total=len(items))


@router.post(
    "/suggestions/{suggestion_id}/approve",
    response_model=SubscriptionCreateResult,
    status_code=status.HTTP_201_CREATED,
)
async def approve_suggestion(
    suggestion_id: UUID,
    db: DbSession,
    payload: ApproveSubscriptionSuggestionRequest | None = None,
) -> SubscriptionCreateResult:
    try:
        result = await approve_subscription_suggestion(
            db,
            suggestion_id,
            name=payload.name if payload else None,
            end_date=payload.end_date if payload else None,
        )
    except SubscriptionSuggestionNotFoundError as e:
        raise_not_found("Subscription suggestion", cause=e)
    except SubscriptionError as e:
        raise_bad_request(str(e), cause=e)

    await db.commit()
    logger.info("Subscription created from suggestion", suggestion_id=str(suggestion_id))
    return result


@router.post("/suggestions/{suggestion_id}/reject", response_model=SubscriptionSuggestionResponse)
async def reject_suggestion(suggestion_id: UUID, db: DbSession) -> SubscriptionSuggestionResponse:
    try:
        suggestion = await reject_subscription_suggestion(db, suggestion_id)
    except SubscriptionSuggestionNotFoundError as e:
        raise_not_found("Subscription suggestion", cause=e)
    except SubscriptionError as e:
        raise_bad_request(str(e), cause=e)

    await db.commit()
    await db.refresh(suggestion)
    return SubscriptionSuggestionResponse.model_validate(suggestion)
