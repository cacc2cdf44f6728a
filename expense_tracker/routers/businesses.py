"""Business catalog API router: listing, merge, unmerge and delete."""

from uuid import UUID

from fastapi import APIRouter, Query

from expense_tracker.deps import DbSession
from expense_tracker.logger import get_logger
from expense_tracker.schemas import (
    BusinessDeleteInfo,
    BusinessDeleteMode,
    BusinessDeleteResult,
    BusinessListItem,
    BusinessResponse,
    BusinessSort,
    DetectMergesResult,
    ListResponse,
    MergeRequest,
    MergeResult,
    UnmergeResult,
)
from expense_tracker.services import (
    BusinessNotFoundError,
    DeleteModeRequiredError,
    InvalidMergeRequestError,
    delete_business,
    detect_merges,
    get_delete_info,
    list_businesses,
    merge_businesses,
    unmerge_business,
)
from expense_tracker.utils import raise_bad_request, raise_conflict, raise_not_found

router = APIRouter(prefix="/businesses", tags=["businesses"])
logger = get_logger(__name__)


@router.get("", response_model=ListResponse[BusinessListItem])
async def list_active_businesses(
    db: DbSession,
    search: str | None = Query(default=None, max_length=255),
    approved: bool | None = Query(default=None),
    sort: BusinessSort = Query(default=BusinessSort.NAME),
) -> ListResponse[BusinessListItem]:
    """List active businesses with usage totals. Merged businesses are never listed."""
    usage = await list_businesses(db, search=search, approved=approved, sort=sort)
    items = [
        BusinessListItem(
            **BusinessResponse.model_validate(u.business).model_dump(),
            transaction_count=u.transaction_count,
            total_spent=u.total_spent,
            last_used_date=u.last_used_date,
        )
        for u in usage
    ]
    return ListResponse[BusinessListItem](items=items, total=len(items))


@router.post("/detect-merges", response_model=DetectMergesResult)
async def run_merge_detection(
    db: DbSession,
    threshold: float | None = Query(default=None, gt=0, le=1),
) -> DetectMergesResult:
    """Scan active businesses for likely duplicates and record suggestions."""
    result = await detect_merges(db, threshold=threshold)
    await db.commit()
    return result


@router.post("/merge", response_model=MergeResult)
async def merge(payload: MergeRequest, db: DbSession) -> MergeResult:
    """Merge businesses into the target, moving their transactions."""
    try:
        result = await merge_businesses(db, payload.target_id, payload.business_ids)
    except BusinessNotFoundError as e:
        raise_not_found("Business", cause=e)
    except InvalidMergeRequestError as e:
        raise_bad_request(str(e), cause=e)

    await db.commit()
    return result


@router.post("/{business_id}/unmerge", response_model=UnmergeResult)
async def unmerge(business_id: UUID, db: DbSession) -> UnmergeResult:
    """Reverse a merge, returning the business's original transactions to it."""
    try:
        result = await unmerge_business(db, business_id)
    except BusinessNotFoundError as e:
        raise_not_found("Business", cause=e)
    except InvalidMergeRequestError as e:
        raise_bad_request(str(e), cause=e)

    await db.commit()
    return result


@router.get("/{business_id}/delete-info", response_model=BusinessDeleteInfo)
async def delete_info(business_id: UUID, db: DbSession) -> BusinessDeleteInfo:
    """What deleting the business would remove."""
    try:
        return await get_delete_info(db, business_id)
    except BusinessNotFoundError as e:
        raise_not_found("Business", cause=e)


@router.delete("/{business_id}", response_model=BusinessDeleteResult)
async def delete(
    business_id: UUID,
    db: DbSession,
    mode: BusinessDeleteMode | None = Query(default=None),
) -> BusinessDeleteResult:
    """Delete a business; ``mode`` is required when others are merged into it."""
    try:
        result = await delete_business(db, business_id, mode)
    except BusinessNotFoundError as e:
        raise_not_found("Business", cause=e)
    except DeleteModeRequiredError as e:
        logger.info("Business deletion needs a mode", business_id=str(business_id))
        raise_conflict({"message": str(e), "info": e.info.model_dump(mode="json")}, cause=e)

    await db.commit()
    return result
