"""
Turns verified gateway callbacks into ledger state.

The exactly-once boundary is Payment.tickets_created: it is written last, in the
same unit of work as the tickets, so a redelivered "succeeded" callback either
finds it set (no-op) or finds nothing committed and settles from scratch.
"""
import logging
from typing import Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound, ValidationFailed
from .models import GatewayEvent, Payment, PaymentStatus
from .purchases import issue_for_payment
from .ticket_numbers import generate_ticket_number
from .transactions import TransactionCoordinator

logger = logging.getLogger(__name__)

SUCCEEDED = "payment_intent.succeeded"
FAILED = "payment_intent.payment_failed"
CANCELED = "payment_intent.canceled"
PROCESSING = "payment_intent.processing"

# a failed intent can still succeed on a later attempt with another card; a
# succeeded payment without tickets was rejected at settlement and is retried
SETTLEABLE = {PaymentStatus.PENDING, PaymentStatus.PROCESSING, PaymentStatus.FAILED, PaymentStatus.SUCCEEDED}


def _outcome(status: str, reason_code: str, intent_id: str | None, **extra) -> dict:
    return {"ok": True, "status": status, "reason_code": reason_code, "payment_intent_id": intent_id, **extra}


async def _load_payment(db: AsyncSession, intent_id: str) -> Payment | None:
    return (
        await db.execute(select(Payment).where(Payment.payment_intent_id == intent_id).with_for_update())
    ).scalar_one_or_none()


async def settle_succeeded(
    coordinator: TransactionCoordinator,
    intent: dict,
    generate: Callable[[], str] = generate_ticket_number,
) -> dict:
    intent_id = intent.get("id")

    async def _settle(db: AsyncSession) -> dict:
        payment = await _load_payment(db, intent_id)
        if payment is None:
            logger.error("Payment record not found for successful payment intent", extra={"payment_intent_id": intent_id})
            return _outcome("IGNORED", "UNKNOWN_PAYMENT", intent_id)

        if payment.tickets_created:
            logger.info("Tickets already created for this payment", extra={"payment_intent_id": intent_id})
            return _outcome("ACCEPTED", "DUPLICATE", intent_id, duplicate=True, ticket_ids=list(payment.ticket_ids))

        if payment.status not in SETTLEABLE:
            logger.warning(
                "Ignoring success callback for payment in terminal state",
                extra={"payment_intent_id": intent_id, "payment_status": payment.status},
            )
            return _outcome("IGNORED", f"STATUS_{payment.status.upper()}", intent_id)

        payment.status = PaymentStatus.SUCCEEDED
        payment.gateway_response = intent
        payment.failure_reason = None
        # claim the row before issuing; a concurrent settler fails its version check here
        await db.flush()

        result = await issue_for_payment(db, payment, generate=generate)

        payment.ticket_ids = [t.id for t in result.tickets]
        payment.settlement_error = "; ".join(
            f"{s['competition_id']}: {s['error']}" for s in result.skipped
        ) or None
        payment.tickets_created = True
        await db.flush()

        logger.info(
            "Payment processed successfully and tickets created",
            extra={
                "payment_intent_id": intent_id,
                "user_id": payment.user_id,
                "tickets_created": len(result.tickets),
                "total_spent": str(result.total_spent),
                "points_earned": result.points_earned,
            },
        )
        return _outcome(
            "ACCEPTED",
            "SETTLED",
            intent_id,
            ticket_ids=list(payment.ticket_ids),
            points_earned=result.points_earned,
            skipped=result.skipped,
        )

    try:
        return await coordinator.run(_settle)
    except (ValidationFailed, NotFound) as e:
        # paid but can no longer be honoured (sold out, closed ...). Keep the money
        # visible for a refund; a later redelivery retries issuance.
        logger.error(
            "Settlement rejected for paid intent",
            extra={"payment_intent_id": intent_id, "error": e.message},
        )
        await coordinator.run(lambda db: _record_rejection(db, intent_id, intent, e.message))
        return _outcome("ACCEPTED", "SETTLEMENT_REJECTED", intent_id, error=e.message)


async def _record_rejection(db: AsyncSession, intent_id: str, intent: dict, message: str) -> None:
    payment = await _load_payment(db, intent_id)
    if payment is None or payment.tickets_created:
        return
    payment.status = PaymentStatus.SUCCEEDED
    payment.gateway_response = intent
    payment.settlement_error = message
    await db.flush()


async def mark_unsuccessful(coordinator: TransactionCoordinator, intent: dict, new_status: str) -> dict:
    intent_id = intent.get("id")
    if new_status == PaymentStatus.FAILED:
        reason = (intent.get("last_payment_error") or {}).get("message") or "Payment failed"
    else:
        reason = intent.get("cancellation_reason") or "Payment canceled"

    async def _mark(db: AsyncSession) -> dict:
        payment = await _load_payment(db, intent_id)
        if payment is None:
            logger.warning("Payment record not found for intent", extra={"payment_intent_id": intent_id})
            return _outcome("IGNORED", "UNKNOWN_PAYMENT", intent_id)

        if payment.tickets_created or payment.status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
            return _outcome("IGNORED", "ALREADY_SETTLED", intent_id)

        payment.status = new_status
        payment.failure_reason = reason
        payment.gateway_response = intent
        await db.flush()

        logger.info(
            f"Payment marked as {new_status}",
            extra={"payment_intent_id": intent_id, "user_id": payment.user_id},
        )
        return _outcome("ACCEPTED", new_status.upper(), intent_id)

    return await coordinator.run(_mark)


async def mark_processing(coordinator: TransactionCoordinator, intent: dict) -> dict:
    intent_id = intent.get("id")

    async def _mark(db: AsyncSession) -> dict:
        payment = await _load_payment(db, intent_id)
        if payment is None:
            return _outcome("IGNORED", "UNKNOWN_PAYMENT", intent_id)
        if payment.status != PaymentStatus.PENDING:
            return _outcome("IGNORED", f"STATUS_{payment.status.upper()}", intent_id)
        payment.status = PaymentStatus.PROCESSING
        await db.flush()
        return _outcome("ACCEPTED", "PROCESSING", intent_id)

    return await coordinator.run(_mark)


async def handle_event(
    coordinator: TransactionCoordinator,
    event: dict,
    generate: Callable[[], str] = generate_ticket_number,
) -> dict:
    """Dispatches one signature-verified gateway event."""
    event_type = event.get("type")
    intent = (event.get("data") or {}).get("object") or {}

    if event_type == SUCCEEDED:
        return await settle_succeeded(coordinator, intent, generate=generate)
    if event_type == FAILED:
        return await mark_unsuccessful(coordinator, intent, PaymentStatus.FAILED)
    if event_type == CANCELED:
        return await mark_unsuccessful(coordinator, intent, PaymentStatus.CANCELED)
    if event_type == PROCESSING:
        return await mark_processing(coordinator, intent)

    logger.info(f"Unhandled event type: {event_type}")
    return _outcome("IGNORED", "UNHANDLED_EVENT", intent.get("id"))


async def record_gateway_event(
    coordinator: TransactionCoordinator,
    event: dict | None,
    status: str,
    reason_code: str,
) -> None:
    event = event or {}
    intent = (event.get("data") or {}).get("object") or {}

    async def _write(db: AsyncSession):
        db.add(
            GatewayEvent(
                event_id=event.get("id"),
                event_type=event.get("type"),
                payment_intent_id=intent.get("id"),
                status=status,
                reason_code=reason_code,
            )
        )
        await db.flush()

    try:
        await coordinator.run(_write)
    except Exception:
        logger.warning("Could not write gateway event audit row", exc_info=True)
