"""Business merge suggestion review API router."""

from uuid import UUID

from fastapi import APIRouter

from expense_tracker.deps import DbSession
from expense_tracker.schemas import (
    ApproveMergeRequest,
    ListResponse,
    MergeResult,
    MergeSuggestionResponse,
)
from expense_tracker.services import (
    BusinessMergeError,
    BusinessNotFoundError,
    SuggestionNotFoundError,
    approve_merge_suggestion,
    list_pending_suggestions,
    reject_merge_suggestion,
)
from expense_tracker.utils import raise_bad_request, raise_not_found

router = APIRouter(prefix="/suggestions", tags=["suggestions"])


@router.get("/business-merges", response_model=ListResponse[MergeSuggestionResponse])
async def list_merge_suggestions(db: DbSession) -> ListResponse[MergeSuggestionResponse]:
    suggestions = await list_pending_suggestions(db)
    items = [MergeSuggestionResponse.model_validate(s) for s in suggestions]
    return ListResponse[MergeSuggestionResponse](items=items, total=len(items))


@router.post("/business-merges/{suggestion_id}/approve", response_model=MergeResult)
async def approve_merge(suggestion_id: UUID, payload: ApproveMergeRequest, db: DbSession) -> MergeResult:
    """Approve a suggestion, merging the pair into ``target_id``."""
    try:
        result = await approve_merge_suggestion(db, suggestion_id, payload.target_id)
    except SuggestionNotFoundError as e:
        raise_not_found("Merge suggestion", cause=e)
    except BusinessNotFoundError as e:
        raise_not_found("Business", cause=e)
    except BusinessMergeError as e:
        raise_bad_request(str(e), cause=e)

    await db.commit()
    return result


@router.post("/business-merges/{suggestion_id}/reject", response_model=MergeSuggestionResponse)
async def reject_merge(suggestion_id: UUID, db: DbSession) -> MergeSuggestionResponse:
    """Reject a suggestion; the pair is not suggested again during the freeze window."""
    try:
        suggestion = await reject_merge_suggestion(db, suggestion_id)
    except SuggestionNotFoundError as e:
        raise_not_found("Merge suggestion", cause=e)
    except BusinessMergeError as e:
        raise_bad_request(str(e), cause=e)

    await db.commit()
    await db.refresh(suggestion)
    return MergeSuggestionResponse.model_validate(suggestion)
