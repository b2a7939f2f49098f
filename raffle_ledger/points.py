"""
Loyalty points ledger.

PointsHistory is append-only and is the source of truth; the counters on User
are a cache of it. Every change goes through `_append`, which moves the counter
and writes the history row in the same unit of work, so

    sum(earned) - sum(spent) - sum(redeemed) == user.total_points

holds after every commit. `recompute` rebuilds the cache from history.
"""
import logging
from decimal import ROUND_FLOOR, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import DEFAULT_POINTS_PER_DOLLAR
from .errors import NotFound, ValidationFailed
from .models import PointsHistory, PointsSettings, PointsType, User

logger = logging.getLogger(__name__)


async def get_settings(db: AsyncSession) -> PointsSettings:
    settings = (await db.execute(select(PointsSettings).order_by(PointsSettings.id).limit(1))).scalar_one_or_none()
    if settings is None:
        settings = PointsSettings(points_per_dollar=DEFAULT_POINTS_PER_DOLLAR, is_active=True)
        db.add(settings)
        await db.flush()
    return settings


def points_for_spend(dollars: Decimal, settings: PointsSettings) -> int:
    if not settings.is_active or dollars <= 0:
        return 0
    return int((Decimal(dollars) * Decimal(settings.points_per_dollar)).to_integral_value(rounding=ROUND_FLOOR))


async def get_user(db: AsyncSession, user_id: str, for_update: bool = False) -> User:
    q = select(User).where(User.id == user_id)
    if for_update:
        q = q.with_for_update()
    user = (await db.execute(q)).scalar_one_or_none()
    if user is None:
        raise NotFound("User not found", user_id=user_id)
    return user


def _append(
    db: AsyncSession, user: User, kind: str, amount: int, description: str, payment_id: str | None = None
) -> PointsHistory:
    if amount <= 0:
        raise ValidationFailed(f"Invalid points amount: {amount}. Amount must be positive.")

    if kind == PointsType.EARNED:
        user.total_points += amount
        user.total_earned += amount
    elif kind == PointsType.REDEEMED:
        user.total_points -= amount
        user.total_redeemed += amount
    elif kind == PointsType.SPENT:
        user.total_points -= amount
    else:
        raise ValueError(f"unknown points type {kind!r}")

    row = PointsHistory(user_id=user.id, type=kind, amount=amount, description=description, payment_id=payment_id)
    db.add(row)
    return row


def earn(db: AsyncSession, user: User, amount: int, description: str, payment_id: str | None = None):
    return _append(db, user, PointsType.EARNED, amount, description, payment_id)


def redeem(db: AsyncSession, user: User, amount: int, description: str, payment_id: str | None = None):
    if amount > user.total_points:
        raise ValidationFailed(
            f"Insufficient points. You have {user.total_points} points but trying to redeem {amount}",
            code="INSUFFICIENT_POINTS",
            balance=user.total_points,
            requested=amount,
        )
    return _append(db, user, PointsType.REDEEMED, amount, description, payment_id)


def spend(db: AsyncSession, user: User, amount: int, description: str):
    if amount > user.total_points:
        raise ValidationFailed(
            "Insufficient points",
            code="INSUFFICIENT_POINTS",
            balance=user.total_points,
            requested=amount,
        )
    return _append(db, user, PointsType.SPENT, amount, description)


async def history_totals(db: AsyncSession, user_id: str) -> dict[str, int]:
    rows = await db.execute(
        select(PointsHistory.type, func.coalesce(func.sum(PointsHistory.amount), 0))
        .where(PointsHistory.user_id == user_id)
        .group_by(PointsHistory.type)
    )
    totals = {PointsType.EARNED: 0, PointsType.SPENT: 0, PointsType.REDEEMED: 0}
    for kind, total in rows.all():
        totals[kind] = int(total)
    return totals


async def recompute(db: AsyncSession, user_id: str) -> User:
    user = await get_user(db, user_id, for_update=True)
    totals = await history_totals(db, user_id)
    balance = totals[PointsType.EARNED] - totals[PointsType.SPENT] - totals[PointsType.REDEEMED]

    if balance != user.total_points:
        logger.warning(
            "Points counter drifted from history; rebuilding",
            extra={"user_id": user_id, "counter": user.total_points, "history": balance},
        )
    user.total_points = balance
    user.total_earned = totals[PointsType.EARNED]
    user.total_redeemed = totals[PointsType.REDEEMED]
    await db.flush()
    return user


async def ensure_user(db: AsyncSession, user_id: str) -> User:
    """Points account for an externally authenticated user, opened on first use."""
    user = await db.get(User, user_id)
    if user is None:
        user = User(id=user_id, total_points=0, total_earned=0, total_redeemed=0, total_spent=Decimal("0"))
        db.add(user)
        await db.flush()
    return user
