import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound, PreconditionFailed, ValidationFailed
from .gateway import StripeGateway
from .models import Competition, Payment, PaymentStatus, Ticket, TicketStatus, User
from .purchases import money
from .transactions import TransactionCoordinator

logger = logging.getLogger(__name__)


async def _load_payment(db: AsyncSession, payment_id: str) -> Payment:
    payment = (
        await db.execute(select(Payment).where(Payment.id == payment_id).with_for_update())
    ).scalar_one_or_none()
    if payment is None:
        raise NotFound("Payment not found", payment_id=payment_id)
    return payment


def refund_amount_for(payment: Payment, amount: Decimal | None, partial: bool) -> Decimal:
    refund = Decimal(amount) if partial and amount is not None else Decimal(payment.amount)
    if refund <= 0:
        raise ValidationFailed("Amount must be greater than 0", code="INVALID_AMOUNT")
    if refund > Decimal(payment.amount):
        raise ValidationFailed(
            "Refund amount cannot exceed payment amount",
            code="REFUND_TOO_LARGE",
            payment_amount=money(payment.amount),
        )
    return refund


async def refund_payment(
    coordinator: TransactionCoordinator,
    gateway: StripeGateway,
    payment_id: str,
    reason: str | None = None,
    amount: Decimal | None = None,
    partial: bool = False,
) -> dict:
    """
    Refunds a succeeded payment at the gateway, then reverses its ledger
    effects: tickets refunded, tickets_sold and total_spent reduced (never
    below zero). Earned points stay with the user.
    """

    async def _refund(db: AsyncSession) -> dict:
        payment = await _load_payment(db, payment_id)

        if payment.status == PaymentStatus.REFUNDED:
            raise PreconditionFailed("Payment has already been refunded", payment_status=payment.status)
        if payment.status != PaymentStatus.SUCCEEDED:
            raise PreconditionFailed(
                f"Payment cannot be refunded. Current status: {payment.status}", payment_status=payment.status
            )

        refund_amount = refund_amount_for(payment, amount, partial)
        refund = await gateway.create_refund(payment.payment_intent_id, refund_amount if partial else None)

        payment.status = PaymentStatus.REFUNDED
        payment.refund_reason = reason or "Admin refund"
        payment.refund_amount = refund_amount
        payment.refunded_at = datetime.now(timezone.utc)
        payment.refund_id = refund.refund_id

        if payment.ticket_ids:
            await db.execute(
                update(Ticket)
                .where(Ticket.id.in_(payment.ticket_ids))
                .values(status=TicketStatus.REFUNDED)
                .execution_options(synchronize_session=False)
            )

        # a payment whose settlement was rejected never touched counters
        if payment.tickets_created:
            user = (
                await db.execute(select(User).where(User.id == payment.user_id).with_for_update())
            ).scalar_one_or_none()
            if user is not None:
                user.total_spent = max(Decimal("0"), Decimal(user.total_spent) - refund_amount)

            issued = set(
                (
                    await db.execute(select(Ticket.competition_id).where(Ticket.id.in_(payment.ticket_ids or [])))
                ).scalars()
            )
            for line in sorted(payment.lines, key=lambda l: l.competition_id):
                if line.competition_id not in issued:
                    continue
                comp = (
                    await db.execute(
                        select(Competition).where(Competition.id == line.competition_id).with_for_update()
                    )
                ).scalar_one_or_none()
                if comp is not None:
                    comp.tickets_sold = max(0, comp.tickets_sold - line.quantity)

        await db.flush()
        logger.info(
            "Payment refunded successfully",
            extra={"payment_id": payment_id, "refund_amount": str(refund_amount), "refund_id": refund.refund_id},
        )
        return {
            "payment_id": payment.id,
            "payment_intent_id": payment.payment_intent_id,
            "status": payment.status,
            "refund_amount": money(refund_amount),
            "refund_reason": payment.refund_reason,
            "refund_id": payment.refund_id,
            "refunded_at": payment.refunded_at.isoformat(),
        }

    return await coordinator.run(_refund)


async def retry_payment(coordinator: TransactionCoordinator, payment_id: str) -> dict:
    """Re-arms a failed payment on the same intent and purchase snapshot."""

    async def _retry(db: AsyncSession) -> dict:
        payment = await _load_payment(db, payment_id)
        if payment.status != PaymentStatus.FAILED:
            raise PreconditionFailed(
                f"Payment cannot be retried. Current status: {payment.status}", payment_status=payment.status
            )

        payment.status = PaymentStatus.PENDING
        payment.failure_reason = None
        payment.settlement_error = None
        await db.flush()

        logger.info(
            "Payment retry initiated",
            extra={"payment_id": payment_id, "payment_intent_id": payment.payment_intent_id},
        )
        return {"payment_id": payment.id, "payment_intent_id": payment.payment_intent_id, "status": payment.status}

    return await coordinator.run(_retry)
