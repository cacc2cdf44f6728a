"""Statement ingestion API router."""

from uuid import UUID

from fastapi import APIRouter, Query, status

from expense_tracker.deps import DbSession
from expense_tracker.logger import get_logger
from expense_tracker.models import UploadBatch, UploadBatchStatus
from expense_tracker.schemas import (
    BatchIngestResponse,
    DeleteStrategy,
    DeletionResult,
    IngestRequest,
)
from expense_tracker.services import (
    DeletionTargetNotFoundError,
    PartialGroupDeletionError,
    ReconciliationEngine,
    delete_upload_batch,
)
from expense_tracker.utils import raise_conflict, raise_not_found

router = APIRouter(prefix="/statements", tags=["statements"])
logger = get_logger(__name__)


@router.post("/ingest", response_model=BatchIngestResponse, status_code=status.HTTP_201_CREATED)
async def ingest_statements(payload: IngestRequest, db: DbSession) -> BatchIngestResponse:
    """Ingest parsed statement files as one upload batch.

    Every row is classified as new, duplicate, group_joined, completed or
    ambiguous. Ambiguous rows are reported back and not stored.
    """
    batch = UploadBatch(status=UploadBatchStatus.PENDING, file_count=len(payload.files))
    db.add(batch)
    await db.flush()

    engine = ReconciliationEngine()
    summaries = await engine.process_batch(db, batch, payload.files)
    await db.commit()
    await db.refresh(batch)

    return BatchIngestResponse(
        batch_id=batch.id,
        status=batch.status.value,
        total_transactions=batch.total_transactions,
        new_transactions=batch.new_transactions,
        updated_transactions=batch.updated_transactions,
        duplicate_transactions=batch.duplicate_transactions,
        ambiguous_transactions=batch.ambiguous_transactions,
        error_message=batch.error_message,
        files=summaries,
    )


@router.delete("/batches/{batch_id}", response_model=DeletionResult)
async def delete_batch(
    batch_id: UUID,
    db: DbSession,
    strategy: DeleteStrategy | None = Query(default=None),
) -> DeletionResult:
    """Delete an upload batch and the transactions it wrote."""
    try:
        result = await delete_upload_batch(db, batch_id, strategy=strategy)
    except DeletionTargetNotFoundError as e:
        raise_not_found("Upload batch", cause=e)
    except PartialGroupDeletionError as e:
        logger.info("Batch deletion needs a strategy", batch_id=str(batch_id))
        raise_conflict({"message": str(e), "preview": e.preview.model_dump(mode="json")}, cause=e)

    await db.commit()
    return result
