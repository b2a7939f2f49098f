import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select

from . import points
from .deps import CurrentUser, get_coordinator, get_gateway, require_admin
from .errors import ValidationFailed
from .gateway import StripeGateway
from .models import Competition, CompetitionStatus, GatewayEvent, Payment
from .purchases import money
from .refunds import refund_payment, retry_payment
from .transactions import TransactionCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _competition_view(c: Competition) -> dict:
    return {
        "competition_id": c.id,
        "title": c.title,
        "ticket_price": money(c.ticket_price),
        "max_tickets": c.max_tickets,
        "max_per_person": c.max_per_person,
        "tickets_sold": c.tickets_sold,
        "remaining": c.remaining,
        "status": c.status,
        "created_at": str(c.created_at),
    }


# -------------------------
# Competitions
# -------------------------
class CreateCompetitionReq(BaseModel):
    title: str
    ticket_price: Decimal
    max_tickets: int
    max_per_person: int = 1
    status: str = CompetitionStatus.ACTIVE


@router.post("/competitions")
async def create_competition(
    req: CreateCompetitionReq, coordinator: TransactionCoordinator = Depends(get_coordinator)
):
    if req.max_tickets < 1:
        raise ValidationFailed("max_tickets must be at least 1", code="INVALID_COMPETITION")
    if req.max_per_person < 1:
        raise ValidationFailed("max_per_person must be at least 1", code="INVALID_COMPETITION")
    if req.ticket_price <= 0:
        raise ValidationFailed("ticket_price must be greater than 0", code="INVALID_COMPETITION")
    allowed = {CompetitionStatus.UPCOMING, CompetitionStatus.ACTIVE, CompetitionStatus.CLOSED, CompetitionStatus.COMPLETED}
    if req.status not in allowed:
        raise ValidationFailed(f"Unknown competition status: {req.status}", code="INVALID_COMPETITION")

    async def _create(db):
        comp = Competition(
            title=req.title,
            ticket_price=req.ticket_price,
            max_tickets=req.max_tickets,
            max_per_person=req.max_per_person,
            tickets_sold=0,
            status=req.status,
        )
        db.add(comp)
        await db.flush()
        return {"ok": True, **_competition_view(comp)}

    return await coordinator.run(_create)


@router.get("/competitions")
async def list_competitions(
    status: Optional[str] = None, coordinator: TransactionCoordinator = Depends(get_coordinator)
):
    async def _list(db):
        q = select(Competition).order_by(Competition.created_at.desc())
        if status:
            q = q.where(Competition.status == status)
        return [_competition_view(c) for c in (await db.execute(q)).scalars().all()]

    return await coordinator.read(_list)


# -------------------------
# Payments
# -------------------------
@router.get("/payments")
async def list_payments(
    limit: int = 50,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    async def _list(db):
        q = select(Payment).order_by(Payment.created_at.desc()).limit(limit)
        if status:
            q = q.where(Payment.status == status)
        if user_id:
            q = q.where(Payment.user_id == user_id)
        return [
            {
                "payment_id": p.id,
                "payment_intent_id": p.payment_intent_id,
                "user_id": p.user_id,
                "payment_type": p.payment_type,
                "amount": money(p.amount),
                "status": p.status,
                "tickets_created": p.tickets_created,
                "ticket_count": len(p.ticket_ids or []),
                "failure_reason": p.failure_reason,
                "settlement_error": p.settlement_error,
                "refund_amount": money(p.refund_amount),
                "created_at": str(p.created_at),
            }
            for p in (await db.execute(q)).scalars().all()
        ]

    return await coordinator.read(_list)


class RefundReq(BaseModel):
    reason: Optional[str] = None
    amount: Optional[Decimal] = None
    partial: bool = False


@router.post("/payments/{payment_id}/refund")
async def refund(
    payment_id: str,
    req: RefundReq,
    admin: CurrentUser = Depends(require_admin),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
    gateway: StripeGateway = Depends(get_gateway),
):
    logger.info("Admin refund requested", extra={"payment_id": payment_id, "admin_id": admin.id})
    result = await refund_payment(coordinator, gateway, payment_id, req.reason, req.amount, req.partial)
    return {"ok": True, **result}


@router.post("/payments/{payment_id}/retry")
async def retry(
    payment_id: str,
    admin: CurrentUser = Depends(require_admin),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    logger.info("Admin retry requested", extra={"payment_id": payment_id, "admin_id": admin.id})
    result = await retry_payment(coordinator, payment_id)
    return {"ok": True, **result}


# -------------------------
# Points
# -------------------------
class PointsSettingsReq(BaseModel):
    points_per_dollar: Decimal
    is_active: bool = True


class AdjustPointsReq(BaseModel):
    user_id: str
    amount: int
    description: Optional[str] = None


def _settings_view(s) -> dict:
    return {
        "points_per_dollar": str(s.points_per_dollar),
        "is_active": s.is_active,
        "updated_by": s.updated_by,
        "updated_at": str(s.updated_at),
    }


@router.get("/points/settings")
async def get_points_settings(coordinator: TransactionCoordinator = Depends(get_coordinator)):
    async def _load(db):
        return _settings_view(await points.get_settings(db))

    return await coordinator.run(_load)


@router.put("/points/settings")
async def update_points_settings(
    req: PointsSettingsReq,
    admin: CurrentUser = Depends(require_admin),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    if req.points_per_dollar < 0:
        raise ValidationFailed("points_per_dollar must be a positive number", code="INVALID_SETTINGS")

    async def _update(db):
        settings = await points.get_settings(db)
        settings.points_per_dollar = req.points_per_dollar
        settings.is_active = req.is_active
        settings.updated_by = admin.id
        await db.flush()
        logger.info(
            "Points settings updated",
            extra={"points_per_dollar": str(req.points_per_dollar), "is_active": req.is_active, "updated_by": admin.id},
        )
        return {"ok": True, **_settings_view(settings)}

    return await coordinator.run(_update)


@router.post("/points/add")
async def add_points(
    req: AdjustPointsReq,
    admin: CurrentUser = Depends(require_admin),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    async def _add(db):
        user = await points.get_user(db, req.user_id, for_update=True)
        points.earn(db, user, req.amount, req.description or f"Admin bonus: {req.amount} points")
        await db.flush()
        logger.info("Admin added points", extra={"user_id": req.user_id, "amount": req.amount, "admin_id": admin.id})
        return {"ok": True, "user_id": user.id, "total_points": user.total_points}

    return await coordinator.run(_add)


@router.post("/points/deduct")
async def deduct_points(
    req: AdjustPointsReq,
    admin: CurrentUser = Depends(require_admin),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    async def _deduct(db):
        user = await points.get_user(db, req.user_id, for_update=True)
        points.spend(db, user, req.amount, req.description or f"Admin deduction: {req.amount} points")
        await db.flush()
        logger.info(
            "Admin deducted points", extra={"user_id": req.user_id, "amount": req.amount, "admin_id": admin.id}
        )
        return {"ok": True, "user_id": user.id, "total_points": user.total_points}

    return await coordinator.run(_deduct)


@router.post("/users/{user_id}/points/reconcile")
async def reconcile_points(user_id: str, coordinator: TransactionCoordinator = Depends(get_coordinator)):
    async def _reconcile(db):
        user = await points.recompute(db, user_id)
        return {
            "ok": True,
            "user_id": user.id,
            "total_points": user.total_points,
            "total_earned": user.total_earned,
            "total_redeemed": user.total_redeemed,
        }

    return await coordinator.run(_reconcile)


# -------------------------
# Logs
# -------------------------
@router.get("/gateway-events")
async def list_gateway_events(
    limit: int = 80,
    payment_intent_id: Optional[str] = None,
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    async def _list(db):
        q = select(GatewayEvent).order_by(GatewayEvent.created_at.desc(), GatewayEvent.id.desc()).limit(limit)
        if payment_intent_id:
            q = q.where(GatewayEvent.payment_intent_id == payment_intent_id)
        return [
            {
                "created_at": str(e.created_at),
                "event_id": e.event_id,
                "event_type": e.event_type,
                "payment_intent_id": e.payment_intent_id,
                "status": e.status,
                "reason_code": e.reason_code,
            }
            for e in (await db.execute(q)).scalars().all()
        ]

    return await coordinator.read(_list)
