"""Transaction API router: installment groups and group-aware deletion."""

from uuid import UUID

from fastapi import APIRouter

from expense_tracker.deps import DbSession
from expense_tracker.logger import get_logger
from expense_tracker.models import Transaction
from expense_tracker.schemas import BulkDeleteRequest, DeletionResult, ListResponse, TransactionResponse
from expense_tracker.services import (
    DeletionTargetNotFoundError,
    PartialGroupDeletionError,
    delete_transactions,
)
from expense_tracker.services.installments import get_group_transactions
from expense_tracker.utils import raise_conflict, raise_not_found

router = APIRouter(prefix="/transactions", tags=["transactions"])
logger = get_logger(__name__)


@router.get("/{transaction_id}/installments", response_model=ListResponse[TransactionResponse])
async def list_installments(transaction_id: UUID, db: DbSession) -> ListResponse[TransactionResponse]:
    """All payments of the transaction's installment plan, in payment order."""
    transaction = await db.get(Transaction, transaction_id)
    if transaction is None or transaction.installment_group_id is None:
        raise_not_found("Installment group")

    group = await get_group_transactions(db, transaction.installment_group_id)
    items = [TransactionResponse.model_validate(txn) for txn in group]
    return ListResponse[TransactionResponse](items=items, total=len(items))


@router.post("/bulk-delete", response_model=DeletionResult)
async def bulk_delete(payload: BulkDeleteRequest, db: DbSession) -> DeletionResult:
    """Delete transactions.

    A selection that splits an installment plan or a subscription is refused
    with 409 and a preview of the split unless ``strategy`` is given.
    """
    try:
        result = await delete_transactions(db, payload.transaction_ids, strategy=payload.strategy)
    except DeletionTargetNotFoundError as e:
        raise_not_found("Transaction", cause=e)
    except PartialGroupDeletionError as e:
        logger.info("Bulk delete needs a strategy", selected=len(payload.transaction_ids))
        raise_conflict({"message": str(e), "preview": e.preview.model_dump(mode="json")}, cause=e)

    await db.commit()
    return result
