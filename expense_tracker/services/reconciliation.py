"""Statement reconciliation engine.

Decides, for every parsed statement row, whether it is a new charge, a
duplicate of a stored one, a payment joining a known installment plan, or
the real-world confirmation of a projected installment/subscription row.

Rows of a file are processed strictly in order. Within a file the ids of rows
already written are tracked so that a second identical row in the same upload
is reported instead of silently merged into the first.
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from expense_tracker.config import settings
from expense_tracker.logger import async_log_timing, get_logger, log_exception
from expense_tracker.models import (
    Business,
    Card,
    PaymentType,
    Transaction,
    TransactionStatus,
    TransactionType,
    UploadBatch,
    UploadBatchStatus,
)
from expense_tracker.schemas.statement import (
    FileIngestSummary,
    IngestOutcome,
    IngestResult,
    StatementFile,
    StatementRow,
)
from expense_tracker.services.business_catalog import MergeChainError, resolve_business
from expense_tracker.services.hashing import (
    installment_group_id,
    installment_transaction_hash,
    transaction_hash,
)
from expense_tracker.services.installments import (
    group_exists,
    payment_charge_date,
    plan_payments,
    resolve_purchase_date,
    total_payment_sum,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Runtime tuning for reconciliation."""

    subscription_match_window_days: int
    amount_discrepancy_tolerance: Decimal
    installment_date_drift_days: int
    installment_backfill_enabled: bool
    installment_projection_enabled: bool
    detect_after_batch: bool


def load_engine_config() -> EngineConfig:
    return EngineConfig(
        subscription_match_window_days=settings.subscription_match_window_days,
        amount_discrepancy_tolerance=Decimal(str(settings.amount_discrepancy_tolerance)),
        installment_date_drift_days=settings.installment_date_drift_days,
        installment_backfill_enabled=settings.installment_backfill_enabled,
        installment_projection_enabled=settings.installment_projection_enabled,
        detect_after_batch=settings.detect_after_batch,
    )


class AmbiguousRowError(Exception):
    """The row cannot be classified without guessing."""

    def __init__(self, reason: str, candidate_ids: list[UUID] | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.candidate_ids = candidate_ids or []


class _ConcurrentInsert(Exception):
    """A unique constraint rejected a write; another upload got there first."""


@dataclass
class _RowContext:
    row: StatementRow
    business: Business
    source_business: Business
    card: Card
    batch: UploadBatch | None
    source_file: str | None
    processed_ids: set[UUID] = field(default_factory=set)

    @property
    def batch_id(self) -> UUID | None:
        return self.batch.id if self.batch else None

    @property
    def normalized_name(self) -> str:
        return self.source_business.normalized_name


_PLACEHOLDER_CONDITION = or_(
    Transaction.status == TransactionStatus.PROJECTED,
    and_(
        Transaction.status == TransactionStatus.COMPLETED,
        Transaction.source_file.is_(None),
    ),
)


def exceeds_tolerance(expected: Decimal, actual: Decimal, tolerance: Decimal) -> bool:
    """True when ``actual`` differs from ``expected`` by more than ``tolerance`` (relative)."""
    if expected == 0:
        return actual != 0
    return abs(actual - expected) / abs(expected) > tolerance


class ReconciliationEngine:
    """Classifies statement rows against the transaction store."""

    def __init__(self, config: EngineConfig | None = None) -> None:
        self.config = config or load_engine_config()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def ingest(
        self,
        db: AsyncSession,
        row: StatementRow,
        *,
        processed_ids: set[UUID] | None = None,
        batch: UploadBatch | None = None,
        source_file: str | None = None,
    ) -> IngestResult:
        """Classify and persist a single row.

        Ambiguous rows are returned as ``IngestOutcome.AMBIGUOUS`` with the
        reason and the competing candidates; nothing is written for them.
        """
        processed = processed_ids if processed_ids is not None else set()
        try:
            context = await self._build_context(db, row, batch, source_file, processed)
            if row.payment_type == PaymentType.INSTALLMENTS:
                result = await self._ingest_installment(db, context)
            else:
                result = await self._ingest_single(db, context)
        except AmbiguousRowError as exc:
            logger.warning(
                "Statement row left unresolved",
                business_name=row.business_name,
                reason=exc.reason,
                candidate_ids=[str(c) for c in exc.candidate_ids],
                source_file=source_file,
            )
            return IngestResult(
                outcome=IngestOutcome.AMBIGUOUS,
                reason=exc.reason,
                candidate_ids=exc.candidate_ids,
            )

        if result.transaction_id and result.outcome != IngestOutcome.DUPLICATE:
            processed.add(result.transaction_id)
        return result

    async def ingest_file(
        self,
        db: AsyncSession,
        rows: list[StatementRow],
        *,
        batch: UploadBatch | None = None,
        source_file: str | None = None,
    ) -> list[IngestResult]:
        """Ingest the rows of one file in order."""
        processed_ids: set[UUID] = set()
        results = []
        for row in rows:
            results.append(
                await self.ingest(
                    db,
                    row,
                    processed_ids=processed_ids,
                    batch=batch,
                    source_file=source_file,
                )
            )
        return results

    async def process_batch(
        self,
        db: AsyncSession,
        batch: UploadBatch,
        files: list[StatementFile],
    ) -> list[FileIngestSummary]:
        """Ingest every file of an upload batch and record the batch totals.

        Each file runs in its own SAVEPOINT: a file that fails is rolled back
        and reported while the remaining files are still ingested.
        """
        batch.status = UploadBatchStatus.PROCESSING
        batch.processing_started_at = datetime.now(UTC)
        batch.file_count = len(files)
        await db.flush()

        summaries: list[FileIngestSummary] = []
        async with async_log_timing("process_batch", logger=logger, batch_id=str(batch.id)) as timing:
            for statement_file in files:
                summary = FileIngestSummary(filename=statement_file.filename)
                try:
                    async with db.begin_nested():
                        summary.results = await self.ingest_file(
                            db,
                            statement_file.rows,
                            batch=batch,
                            source_file=statement_file.filename,
                        )
                except Exception as exc:
                    log_exception(
                        logger,
                        exc,
                        "Statement file processing failed",
                        batch_id=str(batch.id),
                        filename=statement_file.filename,
                    )
                    summary.results = []
                    summary.error = str(exc) or type(exc).__name__
                summaries.append(summary)

            await self._finish_batch(db, batch, summaries)
            timing["files"] = len(files)
            timing["new"] = batch.new_transactions
            timing["duplicates"] = batch.duplicate_transactions

        if self.config.detect_after_batch and batch.status == UploadBatchStatus.COMPLETED:
            await self._run_post_batch_detection(db)

        return summaries

    # ------------------------------------------------------------------
    # Row context
    # ------------------------------------------------------------------

    async def _build_context(
        self,
        db: AsyncSession,
        row: StatementRow,
        batch: UploadBatch | None,
        source_file: str | None,
        processed_ids: set[UUID],
    ) -> _RowContext:
        card = await self._resolve_card(db, row.card_last4)
        try:
            resolved = await resolve_business(db, row.business_name)
        except MergeChainError as exc:
            raise AmbiguousRowError(
                "business merge chain detected",
                [exc.business_id, exc.target_id],
            ) from exc
        return _RowContext(
            row=row,
            business=resolved.business,
            source_business=resolved.source,
            card=card,
            batch=batch,
            source_file=source_file,
            processed_ids=processed_ids,
        )

    async def _resolve_card(self, db: AsyncSession, last4: str) -> Card:
        result = await db.execute(
            select(Card).where(Card.last4_digits == last4, Card.is_active.is_(True))
        )
        cards = list(result.scalars().all())
        if not cards:
            raise AmbiguousRowError(f"no active card ending in {last4}")
        if len(cards) > 1:
            raise AmbiguousRowError(
                f"several active cards end in {last4}",
                [card.id for card in cards],
            )
        return cards[0]

    # ------------------------------------------------------------------
    # One-time and subscription rows
    # ------------------------------------------------------------------

    async def _ingest_single(self, db: AsyncSession, context: _RowContext) -> IngestResult:
        row = context.row
        deal_date = row.deal_date or row.bank_charge_date
        if deal_date is None:
            raise AmbiguousRowError("row has neither a deal date nor a charge date")

        txn_hash = transaction_hash(
            context.normalized_name,
            deal_date,
            row.charged_amount_ils,
            context.card.last4_digits,
            PaymentType.ONE_TIME,
            row.is_refund,
        )
        existing = await self._find_by_hash(db, txn_hash)
        if existing:
            logger.debug("Skipping duplicate transaction", hash_prefix=txn_hash[:8])
            return IngestResult(outcome=IngestOutcome.DUPLICATE, transaction_id=existing.id)

        if not row.is_refund:
            placeholder = await self._match_subscription_placeholder(db, context, deal_date)
            if placeholder is not None:
                return await self._complete(
                    db,
                    placeholder,
                    context,
                    actual_charge_date=row.bank_charge_date or deal_date,
                    deal_date=deal_date,
                    new_hash=txn_hash,
                )

        transaction = Transaction(
            transaction_hash=txn_hash,
            transaction_type=TransactionType.SUBSCRIPTION if row.is_subscription else TransactionType.ONE_TIME,
            business_id=context.business.id,
            original_business_id=context.source_business.id,
            card_id=context.card.id,
            deal_date=deal_date,
            bank_charge_date=row.bank_charge_date,
            charged_amount_ils=row.charged_amount_ils,
            original_amount=row.original_amount,
            original_currency=row.original_currency,
            exchange_rate_used=row.exchange_rate,
            payment_type=PaymentType.ONE_TIME,
            status=TransactionStatus.COMPLETED,
            actual_charge_date=row.bank_charge_date or deal_date,
            is_refund=row.is_refund,
            source_file=context.source_file,
            upload_batch_id=context.batch_id,
        )
        try:
            await self._insert(db, [transaction])
        except _ConcurrentInsert:
            return await self._duplicate_after_conflict(db, txn_hash)
        return IngestResult(outcome=IngestOutcome.NEW, transaction_id=transaction.id)

    async def _match_subscription_placeholder(
        self,
        db: AsyncSession,
        context: _RowContext,
        deal_date: date,
    ) -> Transaction | None:
        """Find the generated subscription occurrence this real charge confirms."""
        window = timedelta(days=self.config.subscription_match_window_days)
        result = await db.execute(
            select(Transaction).where(
                Transaction.subscription_id.is_not(None),
                Transaction.business_id == context.business.id,
                Transaction.card_id == context.card.id,
                Transaction.deal_date.between(deal_date - window, deal_date + window),
                _PLACEHOLDER_CONDITION,
            )
        )
        candidates = [
            txn
            for txn in result.scalars().all()
            if txn.id not in context.processed_ids
            and not exceeds_tolerance(
                txn.charged_amount_ils,
                context.row.charged_amount_ils,
                self.config.amount_discrepancy_tolerance,
            )
        ]
        if len(candidates) > 1:
            raise AmbiguousRowError(
                "several subscription occurrences match this charge",
                [txn.id for txn in candidates],
            )
        return candidates[0] if candidates else None

    # ------------------------------------------------------------------
    # Installment rows
    # ------------------------------------------------------------------

    async def _ingest_installment(self, db: AsyncSession, context: _RowContext) -> IngestResult:
        row = context.row
        index, total = row.installment_index, row.installment_total
        if index is None or total is None:
            raise AmbiguousRowError("installment row without payment number or count")
        if total < 1 or not 1 <= index <= total:
            raise AmbiguousRowError(f"installment number {index} of {total} is out of range")

        purchase_date = resolve_purchase_date(row.deal_date, row.bank_charge_date, index)
        if purchase_date is None:
            raise AmbiguousRowError("installment row has neither a deal date nor a charge date")

        total_sum = total_payment_sum(row.original_amount, row.charged_amount_ils, total)
        group_id = installment_group_id(context.normalized_name, total_sum, total, purchase_date)
        txn_hash = installment_transaction_hash(group_id, index)
        charge_date = row.bank_charge_date or payment_charge_date(purchase_date, index)

        existing = await self._find_by_hash(db, txn_hash)
        if existing is not None:
            if existing.id in context.processed_ids:
                # Same payment of the same plan twice in one upload: a twin purchase
                raise AmbiguousRowError(
                    f"payment {index} of this installment plan already appears in this file",
                    [existing.id],
                )
            if existing.is_placeholder:
                return await self._complete(db, existing, context, actual_charge_date=charge_date)
            self._reject_batch_twin(context, existing, index)
            return IngestResult(outcome=IngestOutcome.DUPLICATE, transaction_id=existing.id)

        bucket_match = await self._match_installment_bucket(db, context, purchase_date, total_sum, index, total)
        if bucket_match is not None:
            if bucket_match.is_placeholder:
                return await self._complete(db, bucket_match, context, actual_charge_date=charge_date)
            self._reject_batch_twin(context, bucket_match, index)
            logger.info(
                "Installment payment already recorded under a drifted purchase date",
                transaction_id=str(bucket_match.id),
                installment_index=index,
            )
            return IngestResult(outcome=IngestOutcome.DUPLICATE, transaction_id=bucket_match.id)

        def build(index_: int, status: TransactionStatus, charge: date, real: bool) -> Transaction:
            return Transaction(
                transaction_hash=installment_transaction_hash(group_id, index_),
                transaction_type=TransactionType.INSTALLMENT,
                business_id=context.business.id,
                original_business_id=context.source_business.id,
                card_id=context.card.id,
                deal_date=purchase_date,
                bank_charge_date=(row.bank_charge_date or charge) if real else charge,
                charged_amount_ils=row.charged_amount_ils,
                original_amount=total_sum,
                original_currency=row.original_currency,
                exchange_rate_used=row.exchange_rate if real else None,
                payment_type=PaymentType.INSTALLMENTS,
                installment_group_id=group_id,
                installment_index=index_,
                installment_total=total,
                status=status,
                projected_charge_date=charge if status == TransactionStatus.PROJECTED else None,
                actual_charge_date=charge if status == TransactionStatus.COMPLETED else None,
                is_refund=row.is_refund,
                source_file=context.source_file if real else None,
                upload_batch_id=context.batch_id,
            )

        current = build(index, TransactionStatus.COMPLETED, charge_date, real=True)

        if await group_exists(db, group_id):
            try:
                await self._insert(db, [current])
            except _ConcurrentInsert:
                return await self._duplicate_after_conflict(db, txn_hash)
            logger.info(
                "Installment payment joined existing group",
                group_id=group_id[:12],
                installment_index=index,
                installment_total=total,
            )
            return IngestResult(outcome=IngestOutcome.GROUP_JOINED, transaction_id=current.id)

        past, future = plan_payments(
            purchase_date,
            index,
            total,
            backfill=self.config.installment_backfill_enabled,
            project=self.config.installment_projection_enabled,
        )
        generated = [build(p.index, TransactionStatus.COMPLETED, p.charge_date, real=False) for p in past]
        generated += [build(p.index, TransactionStatus.PROJECTED, p.charge_date, real=False) for p in future]

        try:
            await self._insert(db, [current, *generated])
        except _ConcurrentInsert:
            return await self._duplicate_after_conflict(db, txn_hash)

        logger.info(
            "Installment group established",
            group_id=group_id[:12],
            installment_index=index,
            installment_total=total,
            backfilled=len(past),
            projected=len(future),
        )
        return IngestResult(
            outcome=IngestOutcome.NEW,
            transaction_id=current.id,
            generated_count=len(generated),
        )

    @staticmethod
    def _reject_batch_twin(context: _RowContext, existing: Transaction, index: int) -> None:
        """Raise when the real payment this row matched was stored by the current batch.

        Another file of the same upload carrying the same plan is a second
        purchase, often on another card, not a re-upload of the first.
        """
        if context.batch_id is None or existing.upload_batch_id != context.batch_id:
            return
        if existing.card_id != context.card.id:
            reason = f"payment {index} of this installment plan was charged to another card in this upload"
        else:
            reason = f"payment {index} of this installment plan already appears in another file of this upload"
        raise AmbiguousRowError(reason, [existing.id])

    async def _match_installment_bucket(
        self,
        db: AsyncSession,
        context: _RowContext,
        purchase_date: date,
        total_sum: Decimal,
        index: int,
        total: int,
    ) -> Transaction | None:
        """Find the same payment recorded under a slightly different purchase date.

        Back-calculated purchase dates can drift by a few days between
        statements, which yields a different group id for the same plan. Rows
        at the same payment number with the same business, payment count and
        total sum inside the drift window are treated as that same payment.
        """
        drift = timedelta(days=self.config.installment_date_drift_days)
        result = await db.execute(
            select(Transaction).where(
                Transaction.business_id == context.business.id,
                Transaction.payment_type == PaymentType.INSTALLMENTS,
                Transaction.installment_total == total,
                Transaction.installment_index == index,
                Transaction.status != TransactionStatus.CANCELLED,
                Transaction.is_refund == context.row.is_refund,
                Transaction.deal_date.between(purchase_date - drift, purchase_date + drift),
            )
        )
        bucket = [txn for txn in result.scalars().all() if txn.original_amount == total_sum]
        if not bucket:
            return None

        touched = [txn.id for txn in bucket if txn.id in context.processed_ids]
        if touched:
            raise AmbiguousRowError(
                f"payment {index} of a matching installment plan already appears in this file",
                touched,
            )
        if len(bucket) > 1:
            raise AmbiguousRowError(
                f"several installment plans match payment {index}",
                [txn.id for txn in bucket],
            )
        return bucket[0]

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _find_by_hash(self, db: AsyncSession, txn_hash: str) -> Transaction | None:
        result = await db.execute(select(Transaction).where(Transaction.transaction_hash == txn_hash))
        return result.scalar_one_or_none()

    async def _insert(self, db: AsyncSession, transactions: list[Transaction]) -> None:
        """Insert rows atomically, translating unique violations into ``_ConcurrentInsert``."""
        try:
            async with db.begin_nested():
                db.add_all(transactions)
                await db.flush()
        except IntegrityError as exc:
            log_exception(
                logger,
                exc,
                "Insert rejected by unique constraint",
                level="warning",
                include_traceback=False,
                rows=len(transactions),
            )
            raise _ConcurrentInsert() from exc

    async def _duplicate_after_conflict(self, db: AsyncSession, txn_hash: str) -> IngestResult:
        existing = await self._find_by_hash(db, txn_hash)
        if existing is None:
            raise AmbiguousRowError("insert was rejected but no stored row carries this hash")
        return IngestResult(
            outcome=IngestOutcome.DUPLICATE,
            transaction_id=existing.id,
            reason="stored concurrently by another upload",
        )

    async def _complete(
        self,
        db: AsyncSession,
        placeholder: Transaction,
        context: _RowContext,
        *,
        actual_charge_date: date,
        deal_date: date | None = None,
        new_hash: str | None = None,
    ) -> IngestResult:
        """Turn a projected or synthetic row into the real charge, in place."""
        row = context.row
        expected = placeholder.charged_amount_ils
        if exceeds_tolerance(expected, row.charged_amount_ils, self.config.amount_discrepancy_tolerance):
            logger.warning(
                "Actual charge differs from projection",
                transaction_id=str(placeholder.id),
                expected=str(expected),
                actual=str(row.charged_amount_ils),
            )

        try:
            async with db.begin_nested():
                placeholder.status = TransactionStatus.COMPLETED
                placeholder.actual_charge_date = actual_charge_date
                placeholder.bank_charge_date = row.bank_charge_date or actual_charge_date
                placeholder.charged_amount_ils = row.charged_amount_ils
                placeholder.exchange_rate_used = row.exchange_rate
                if row.original_currency:
                    placeholder.original_currency = row.original_currency
                placeholder.card_id = context.card.id
                placeholder.source_file = context.source_file or "statement"
                placeholder.upload_batch_id = context.batch_id
                if deal_date is not None:
                    placeholder.deal_date = deal_date
                if new_hash is not None:
                    # Re-uploads of the same statement row must find this row by hash
                    placeholder.transaction_hash = new_hash
                await db.flush()
        except IntegrityError as exc:
            log_exception(
                logger,
                exc,
                "Completing placeholder rejected by unique constraint",
                level="warning",
                include_traceback=False,
                transaction_id=str(placeholder.id),
            )
            await db.refresh(placeholder)
            return IngestResult(
                outcome=IngestOutcome.DUPLICATE,
                transaction_id=placeholder.id,
                reason="stored concurrently by another upload",
            )

        logger.info(
            "Placeholder completed by statement row",
            transaction_id=str(placeholder.id),
            transaction_type=placeholder.transaction_type.value,
            installment_index=placeholder.installment_index,
        )
        return IngestResult(outcome=IngestOutcome.COMPLETED, transaction_id=placeholder.id)

    # ------------------------------------------------------------------
    # Batch bookkeeping
    # ------------------------------------------------------------------

    async def _finish_batch(
        self,
        db: AsyncSession,
        batch: UploadBatch,
        summaries: list[FileIngestSummary],
    ) -> None:
        results = [result for summary in summaries for result in summary.results]
        new = sum(1 for r in results if r.outcome in (IngestOutcome.NEW, IngestOutcome.GROUP_JOINED))
        updated = sum(1 for r in results if r.outcome == IngestOutcome.COMPLETED)
        duplicates = sum(1 for r in results if r.outcome == IngestOutcome.DUPLICATE)
        ambiguous = sum(1 for r in results if r.outcome == IngestOutcome.AMBIGUOUS)

        batch.total_transactions = len(results)
        batch.new_transactions = new
        batch.updated_transactions = updated
        batch.duplicate_transactions = duplicates
        batch.ambiguous_transactions = ambiguous

        total_amount = await db.scalar(
            select(func.coalesce(func.sum(Transaction.charged_amount_ils), 0)).where(
                Transaction.upload_batch_id == batch.id,
                Transaction.source_file.is_not(None),
            )
        )
        batch.total_amount_ils = Decimal(str(total_amount or 0))

        failed = [summary for summary in summaries if summary.error]
        if summaries and len(failed) == len(summaries):
            batch.status = UploadBatchStatus.FAILED
            batch.error_message = "; ".join(f"{s.filename}: {s.error}" for s in failed)
        else:
            batch.status = UploadBatchStatus.COMPLETED
            batch.error_message = batch_message(len(results), new + updated, duplicates, ambiguous)
            if failed:
                failed_note = ", ".join(s.filename for s in failed)
                prefix = f"{batch.error_message} " if batch.error_message else ""
                batch.error_message = f"{prefix}Failed files: {failed_note}"
        batch.processing_completed_at = datetime.now(UTC)
        await db.flush()

        logger.info(
            "Upload batch processed",
            batch_id=str(batch.id),
            status=batch.status.value,
            total=len(results),
            new=new,
            updated=updated,
            duplicates=duplicates,
            ambiguous=ambiguous,
        )

    async def _run_post_batch_detection(self, db: AsyncSession) -> None:
        from expense_tracker.services.business_merge import detect_merges
        from expense_tracker.services.subscription_detection import detect_subscriptions

        try:
            async with db.begin_nested():
                await detect_merges(db)
                await detect_subscriptions(db)
        except Exception as exc:
            # Detection only produces suggestions; the ingested rows stand
            log_exception(logger, exc, "Post-batch detection failed", level="warning")


def batch_message(total: int, processed: int, duplicates: int, ambiguous: int = 0) -> str | None:
    """Human-readable batch warning, or None when every row was stored cleanly."""
    parts: list[str] = []
    if total > 0 and processed == 0 and duplicates == total:
        plural = "s" if duplicates != 1 else ""
        parts.append(f"All {duplicates} transaction{plural} already exist in the system")
    elif duplicates > 0:
        dup_plural = "s" if duplicates != 1 else ""
        verb = "s were" if processed != 1 else " was"
        parts.append(
            f"{duplicates} duplicate transaction{dup_plural} found and skipped. "
            f"{processed} transaction{verb} processed."
        )
    if ambiguous > 0:
        plural = "s" if ambiguous != 1 else ""
        parts.append(f"{ambiguous} transaction{plural} need review.")
    return " ".join(parts) if parts else None
