import json
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis.asyncio import Redis
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from . import cart, points
from .admin import router as admin_router
from .config import LOG_LEVEL, STRIPE_WEBHOOK_SECRET, WEBHOOK_TOLERANCE_SECONDS
from .db import create_all
from .deps import CurrentUser, get_coordinator, get_current_user, get_gateway, get_redis, rate_limited, redis
from .errors import LedgerError, NotFound, ledger_error_handler
from .gateway import StripeGateway
from .idempotency import get_cached_response, set_cached_response
from .models import Payment, PointsHistory, Ticket
from .purchases import create_checkout_intent, create_single_intent, money, purchase_ticket
from .security import verify_gateway_signature
from .settlement import handle_event, record_gateway_event
from .transactions import TransactionCoordinator

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

PENDING_STREAM = "pending_settlements"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # fine for a single-node deployment; run migrations elsewhere
    await create_all()
    yield
    await redis.aclose()


app = FastAPI(title="Raffle Ledger", version="1.0.0", lifespan=lifespan)
app.add_exception_handler(LedgerError, ledger_error_handler)
app.include_router(admin_router)


# -------------------------
# Purchases
# -------------------------
class PurchaseReq(BaseModel):
    competition_id: str
    quantity: int = 1


class CheckoutReq(BaseModel):
    points_to_redeem: int = 0


def _gateway_key(scope: str, idempotency_key: str | None) -> str | None:
    # Stripe keys are account-wide; two users may pick the same client key
    return f"{scope}:{idempotency_key}" if idempotency_key else None


@app.post("/tickets/purchase", dependencies=[Depends(rate_limited)])
async def buy_tickets(
    req: PurchaseReq,
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
    redis: Redis = Depends(get_redis),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    scope = f"purchase:{user.id}"
    if idempotency_key:
        cached = await get_cached_response(redis, scope, idempotency_key)
        if cached:
            return cached

    result = await coordinator.run(lambda db: purchase_ticket(db, user.id, req.competition_id, req.quantity))
    resp = {"ok": True, **result}
    if idempotency_key:
        await set_cached_response(redis, scope, idempotency_key, resp)
    return resp


@app.post("/payments/intents/single", dependencies=[Depends(rate_limited)])
async def single_intent(
    req: PurchaseReq,
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
    gateway: StripeGateway = Depends(get_gateway),
    redis: Redis = Depends(get_redis),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    scope = f"intent:{user.id}"
    if idempotency_key:
        cached = await get_cached_response(redis, scope, idempotency_key)
        if cached:
            return cached

    result = await create_single_intent(
        coordinator, gateway, user.id, req.competition_id, req.quantity, idempotency_key=_gateway_key(scope, idempotency_key)
    )
    resp = {"ok": True, **result}
    if idempotency_key:
        await set_cached_response(redis, scope, idempotency_key, resp)
    return resp


@app.post("/payments/intents/checkout", dependencies=[Depends(rate_limited)])
async def checkout_intent(
    req: CheckoutReq,
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
    gateway: StripeGateway = Depends(get_gateway),
    redis: Redis = Depends(get_redis),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    scope = f"checkout:{user.id}"
    if idempotency_key:
        cached = await get_cached_response(redis, scope, idempotency_key)
        if cached:
            return cached

    result = await create_checkout_intent(
        coordinator, gateway, user.id, req.points_to_redeem, idempotency_key=_gateway_key(scope, idempotency_key)
    )
    resp = {"ok": True, **result}
    if idempotency_key:
        await set_cached_response(redis, scope, idempotency_key, resp)
    return resp


@app.get("/payments/{intent_id}")
async def get_payment_status(
    intent_id: str,
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    async def _load(db):
        payment = (
            await db.execute(
                select(Payment).where(Payment.payment_intent_id == intent_id, Payment.user_id == user.id)
            )
        ).scalar_one_or_none()
        if payment is None:
            raise NotFound("Payment not found", payment_intent_id=intent_id)
        return {
            "ok": True,
            "payment_id": payment.id,
            "payment_intent_id": payment.payment_intent_id,
            "status": payment.status,
            "payment_type": payment.payment_type,
            "amount": money(payment.amount),
            "currency": payment.currency,
            "tickets_created": payment.tickets_created,
            "ticket_ids": list(payment.ticket_ids or []),
            "failure_reason": payment.failure_reason,
            "settlement_error": payment.settlement_error,
            "created_at": str(payment.created_at),
            "updated_at": str(payment.updated_at),
        }

    return await coordinator.read(_load)


@app.get("/tickets/mine")
async def my_tickets(
    limit: int = 100,
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    async def _load(db):
        rows = (
            await db.execute(
                select(Ticket).where(Ticket.user_id == user.id).order_by(Ticket.purchase_date.desc()).limit(limit)
            )
        ).scalars().all()
        return [
            {
                "ticket_id": t.id,
                "ticket_number": t.ticket_number,
                "competition_id": t.competition_id,
                "price": money(t.price),
                "status": t.status,
                "purchase_date": str(t.purchase_date),
            }
            for t in rows
        ]

    return await coordinator.read(_load)


# -------------------------
# Gateway callbacks
# -------------------------
@app.post("/webhooks/gateway")
async def gateway_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
    redis: Redis = Depends(get_redis),
):
    payload = await request.body()

    try:
        event = verify_gateway_signature(payload, stripe_signature, STRIPE_WEBHOOK_SECRET, WEBHOOK_TOLERANCE_SECONDS)
    except ValueError as e:
        logger.warning("Webhook signature verification failed", extra={"reason": str(e)})
        await record_gateway_event(coordinator, None, "REJECTED", str(e))
        return JSONResponse(status_code=400, content={"ok": False, "error": str(e)})

    # ConcurrentUpdateError (another delivery settling the same payment) surfaces
    # as 409 so the gateway redelivers later
    try:
        outcome = await handle_event(coordinator, event)
    except SQLAlchemyError:
        logger.exception("Ledger store unavailable, queueing event", extra={"event_id": event.get("id")})
        await redis.xadd(PENDING_STREAM, {"event": json.dumps(event)})
        await record_gateway_event(coordinator, event, "PENDING_SYNC", "STORE_UNAVAILABLE")
        return JSONResponse(
            status_code=202,
            content={"ok": True, "status": "PENDING_SYNC", "reason_code": "STORE_UNAVAILABLE", "event_id": event.get("id")},
        )

    await record_gateway_event(coordinator, event, outcome["status"], outcome["reason_code"])
    return outcome


# -------------------------
# Cart
# -------------------------
class CartAddReq(BaseModel):
    competition_id: str
    quantity: int = 1


class CartUpdateReq(BaseModel):
    quantity: int


@app.get("/cart")
async def view_cart(
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    return await coordinator.read(lambda db: cart.get_cart(db, user.id))


@app.post("/cart")
async def add_cart_item(
    req: CartAddReq,
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    async def _add(db):
        item = await cart.add_to_cart(db, user.id, req.competition_id, req.quantity)
        return {"ok": True, "id": item.id, "competition_id": item.competition_id, "quantity": item.quantity}

    return await coordinator.run(_add)


@app.patch("/cart/{item_id}")
async def update_cart_item(
    item_id: str,
    req: CartUpdateReq,
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    async def _update(db):
        item = await cart.update_item(db, user.id, item_id, req.quantity)
        return {"ok": True, "id": item.id, "competition_id": item.competition_id, "quantity": item.quantity}

    return await coordinator.run(_update)


@app.delete("/cart/{item_id}")
async def remove_cart_item(
    item_id: str,
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    await coordinator.run(lambda db: cart.remove_item(db, user.id, item_id))
    return {"ok": True}


@app.delete("/cart")
async def clear_cart(
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    await coordinator.run(lambda db: cart.clear_cart(db, user.id))
    return {"ok": True}


# -------------------------
# Points
# -------------------------
@app.get("/points/summary")
async def points_summary(
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    async def _load(db):
        account = await points.get_user(db, user.id)
        settings = await points.get_settings(db)
        return {
            "total_points": account.total_points,
            "total_earned": account.total_earned,
            "total_redeemed": account.total_redeemed,
            "total_spent": money(account.total_spent),
            "points_per_dollar": str(settings.points_per_dollar),
            "points_active": settings.is_active,
        }

    return await coordinator.run(_load)


@app.get("/points/history")
async def points_history(
    limit: int = 50,
    offset: int = 0,
    user: CurrentUser = Depends(get_current_user),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
):
    async def _load(db):
        total = (
            await db.execute(select(func.count()).select_from(PointsHistory).where(PointsHistory.user_id == user.id))
        ).scalar_one()
        rows = (
            await db.execute(
                select(PointsHistory)
                .where(PointsHistory.user_id == user.id)
                .order_by(PointsHistory.created_at.desc(), PointsHistory.id.desc())
                .limit(limit)
                .offset(offset)
            )
        ).scalars().all()
        return {
            "history": [
                {
                    "id": h.id,
                    "type": h.type,
                    "amount": h.amount,
                    "description": h.description,
                    "payment_id": h.payment_id,
                    "created_at": str(h.created_at),
                }
                for h in rows
            ],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    return await coordinator.read(_load)
