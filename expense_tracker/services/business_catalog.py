"""Business catalog lookups shared by ingestion, merging and subscriptions."""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from expense_tracker.logger import get_logger
from expense_tracker.models import Business, Transaction, TransactionStatus
from expense_tracker.schemas.businesses import BusinessSort

logger = get_logger(__name__)


class BusinessCatalogError(Exception):
    """Base exception for business catalog errors."""

    pass


class MergeChainError(BusinessCatalogError):
    """A merge target is itself merged; merges must always point at an active business."""

    def __init__(self, business_id: UUID, target_id: UUID) -> None:
        super().__init__(f"Business {business_id} is merged into {target_id}, which is itself merged")
        self.business_id = business_id
        self.target_id = target_id


@dataclass(frozen=True)
class ResolvedBusiness:
    """Business a statement row should be booked against.

    ``business`` is the active business; ``source`` is the row's own catalog
    entry, which differs only when that entry was merged away.
    """

    business: Business
    source: Business


def normalize_business_name(name: str) -> str:
    return name.strip().lower()


def to_title_case(name: str) -> str:
    """Title-case each word, hyphenated parts included ("coca-cola" -> "Coca-Cola")."""

    def _cap(part: str) -> str:
        return part[:1].upper() + part[1:].lower()

    words = []
    for word in name.strip().split(" "):
        if "-" in word:
            words.append("-".join(_cap(part) for part in word.split("-")))
        else:
            words.append(_cap(word))
    return " ".join(words)


async def get_business_by_name(db: AsyncSession, name: str) -> Business | None:
    result = await db.execute(select(Business).where(Business.normalized_name == normalize_business_name(name)))
    return result.scalar_one_or_none()


async def get_or_create_business(db: AsyncSession, name: str) -> Business:
    """Find a business by normalized name, creating it with a title-cased display name."""
    existing = await get_business_by_name(db, name)
    if existing:
        return existing

    normalized_name = normalize_business_name(name)
    business = Business(normalized_name=normalized_name, display_name=to_title_case(name))
    try:
        async with db.begin_nested():
            db.add(business)
            await db.flush()
    except IntegrityError:
        # Created concurrently by another upload
        logger.info("Business created concurrently, reusing", normalized_name=normalized_name)
        result = await db.execute(select(Business).where(Business.normalized_name == normalized_name))
        return result.scalar_one()

    logger.info("Business created", business_id=str(business.id), normalized_name=normalized_name)
    return business


async def resolve_business(db: AsyncSession, name: str) -> ResolvedBusiness:
    """Get-or-create the named business and follow its merge pointer one level.

    Raises:
        MergeChainError: If the merge target is not active.
    """
    source = await get_or_create_business(db, name)
    if source.merged_to_id is None:
        return ResolvedBusiness(business=source, source=source)

    target = await db.get(Business, source.merged_to_id)
    if target is None or target.merged_to_id is not None:
        logger.error(
            "Merge chain detected",
            business_id=str(source.id),
            merged_to_id=str(source.merged_to_id),
        )
        raise MergeChainError(source.id, source.merged_to_id)

    logger.debug(
        "Resolved merged business",
        source_id=str(source.id),
        target_id=str(target.id),
    )
    return ResolvedBusiness(business=target, source=source)


@dataclass(frozen=True)
class BusinessUsage:
    business: Business
    transaction_count: int
    total_spent: Decimal
    last_used_date: date | None


async def list_businesses(
    db: AsyncSession,
    *,
    search: str | None = None,
    approved: bool | None = None,
    sort: BusinessSort = BusinessSort.NAME,
) -> list[BusinessUsage]:
    """Active businesses with their transaction count, completed spend and last deal date."""
    owned = Transaction.business_id == Business.id
    transaction_count = (
        select(func.count(Transaction.id)).where(owned).correlate(Business).scalar_subquery().label("transaction_count")
    )
    total_spent = (
        select(func.coalesce(func.sum(Transaction.charged_amount_ils), 0))
        .where(owned, Transaction.status == TransactionStatus.COMPLETED)
        .correlate(Business)
        .scalar_subquery()
        .label("total_spent")
    )
    last_used_date = (
        select(func.max(Transaction.deal_date)).where(owned).correlate(Business).scalar_subquery().label("last_used_date")
    )

    query = select(Business, transaction_count, total_spent, last_used_date).where(Business.merged_to_id.is_(None))
    if search:
        query = query.where(Business.display_name.icontains(search, autoescape=True))
    if approved is not None:
        query = query.where(Business.approved.is_(approved))

    order_by = {
        BusinessSort.NAME: Business.display_name.asc(),
        BusinessSort.NAME_DESC: Business.display_name.desc(),
        BusinessSort.TOTAL_SPENT: total_spent.desc(),
        BusinessSort.TRANSACTION_COUNT: transaction_count.desc(),
        BusinessSort.LAST_USED_DATE: last_used_date.desc().nulls_last(),
    }[sort]
    result = await db.execute(query.order_by(order_by, Business.display_name.asc()))

    return [
        BusinessUsage(
            business=business,
            transaction_count=count or 0,
            total_spent=Decimal(spent or 0),
            last_used_date=last_used,
        )
        for business, count, spent, last_used in result.all()
    ]
