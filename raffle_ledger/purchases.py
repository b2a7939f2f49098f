"""
Purchase orchestration: inventory/eligibility checks, pricing, point accrual and
ticket issuance.

Entry points:
  purchase_ticket          direct purchase, no gateway, one unit of work
  create_single_intent     validate, ask the gateway for an intent, record a pending Payment
  create_checkout_intent   snapshot the active cart, apply a points discount, same as above
  issue_for_payment        settlement-time issuance from a stored Payment (called by settlement.py)

Nothing is reserved at intent time. Inventory is taken when a payment settles.
"""
import logging
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import points
from .config import CURRENCY, MIN_CHARGE_AMOUNT, MIN_POINTS_REDEMPTION, POINTS_REDEMPTION_RATE
from .errors import NotFound, ValidationFailed
from .gateway import StripeGateway
from .models import (
    CartCheckout,
    CartItem,
    CartLine,
    Competition,
    CompetitionStatus,
    Payment,
    PaymentStatus,
    PaymentType,
    PointsSettings,
    SinglePurchase,
    Ticket,
    TicketStatus,
    User,
)
from .ticket_numbers import allocate_ticket_numbers, generate_ticket_number
from .transactions import TransactionCoordinator

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def money(value) -> str:
    return str(Decimal(value or 0).quantize(CENT, rounding=ROUND_HALF_UP))


# -------------------------
# Reads / checks
# -------------------------
async def load_competition(db: AsyncSession, competition_id: str, for_update: bool = False) -> Competition:
    q = select(Competition).where(Competition.id == competition_id)
    if for_update:
        q = q.with_for_update()
    comp = (await db.execute(q)).scalar_one_or_none()
    if comp is None:
        raise NotFound("Competition not found", competition_id=competition_id)
    return comp


async def count_owned_tickets(db: AsyncSession, user_id: str, competition_id: str) -> int:
    return (
        await db.execute(
            select(func.count(Ticket.id)).where(
                Ticket.user_id == user_id,
                Ticket.competition_id == competition_id,
                Ticket.status != TicketStatus.REFUNDED,
            )
        )
    ).scalar_one()


def check_quantity(quantity: int) -> None:
    if not isinstance(quantity, int) or quantity < 1:
        raise ValidationFailed("Quantity must be at least 1", code="INVALID_QUANTITY")


def check_eligibility(comp: Competition, quantity: int, owned: int) -> None:
    """Validation order: active, inventory, per-person allowance."""
    if comp.status != CompetitionStatus.ACTIVE:
        raise ValidationFailed("Competition is not active", code="COMPETITION_NOT_ACTIVE", competition_id=comp.id)

    if comp.tickets_sold + quantity > comp.max_tickets:
        raise ValidationFailed(
            "Not enough tickets available",
            code="SOLD_OUT",
            competition_id=comp.id,
            available=comp.remaining,
        )

    if owned + quantity > comp.max_per_person:
        remaining = max(0, comp.max_per_person - owned)
        raise ValidationFailed(
            f"Maximum {comp.max_per_person} tickets per person. You already have {owned} ticket(s), "
            f"and can purchase up to {remaining} more.",
            code="PER_PERSON_LIMIT",
            competition_id=comp.id,
            remaining=remaining,
        )


async def validate_purchase(db: AsyncSession, user_id: str, comp: Competition, quantity: int) -> None:
    check_quantity(quantity)
    owned = await count_owned_tickets(db, user_id, comp.id)
    check_eligibility(comp, quantity, owned)


# -------------------------
# Issuance
# -------------------------
async def issue_tickets(
    db: AsyncSession,
    user: User,
    comp: Competition,
    quantity: int,
    payment_id: str | None = None,
    generate: Callable[[], str] = generate_ticket_number,
) -> list[Ticket]:
    """Validates against the locked competition row, then inserts tickets and moves tickets_sold."""
    await validate_purchase(db, user.id, comp, quantity)

    numbers = await allocate_ticket_numbers(db, quantity, generate=generate)
    tickets = [
        Ticket(
            ticket_number=n,
            user_id=user.id,
            competition_id=comp.id,
            payment_id=payment_id,
            price=comp.ticket_price,
            status=TicketStatus.ACTIVE,
        )
        for n in numbers
    ]
    db.add_all(tickets)

    comp.tickets_sold = comp.tickets_sold + quantity
    await db.flush()
    return tickets


def _ticket_view(t: Ticket) -> dict:
    return {
        "ticket_id": t.id,
        "ticket_number": t.ticket_number,
        "competition_id": t.competition_id,
        "price": money(t.price),
        "status": t.status,
    }


# -------------------------
# Direct purchase
# -------------------------
async def purchase_ticket(
    db: AsyncSession,
    user_id: str,
    competition_id: str,
    quantity: int,
    generate: Callable[[], str] = generate_ticket_number,
) -> dict:
    check_quantity(quantity)
    comp = await load_competition(db, competition_id, for_update=True)
    user = await points.get_user(db, user_id, for_update=True)
    settings = await points.get_settings(db)

    tickets = await issue_tickets(db, user, comp, quantity, generate=generate)

    dollars = Decimal(comp.ticket_price) * quantity
    user.total_spent = Decimal(user.total_spent) + dollars

    earned = points.points_for_spend(dollars, settings)
    if earned > 0:
        points.earn(
            db,
            user,
            earned,
            f"Earned {earned} points for purchasing {quantity} ticket(s) (${money(dollars)} spent)",
        )
    await db.flush()

    logger.info(
        "Tickets purchased",
        extra={"user_id": user_id, "competition_id": competition_id, "quantity": quantity, "points_earned": earned},
    )
    return {
        "tickets": [_ticket_view(t) for t in tickets],
        "total_spent": money(dollars),
        "points_earned": earned,
        "total_points_balance": user.total_points,
    }


# -------------------------
# Intents
# -------------------------
@dataclass
class CheckoutQuote:
    lines: list[CartLine]
    cart_total: Decimal
    discount_amount: Decimal = Decimal("0")
    points_redeemed: int = 0
    titles: dict[str, str] = field(default_factory=dict)

    @property
    def amount(self) -> Decimal:
        return max(Decimal("0"), self.cart_total - self.discount_amount)


def redemption_discount(points_to_redeem: int, cart_total: Decimal, rate: int = POINTS_REDEMPTION_RATE) -> tuple[Decimal, int]:
    """
    Whole-dollar discount for `points_to_redeem`, capped at the cart total.
    Returns (discount, points actually charged); points the cart cannot absorb are not charged.
    """
    discount = Decimal(points_to_redeem // rate)
    if discount > cart_total:
        discount = cart_total
        charged = int((cart_total * rate).to_integral_value(rounding=ROUND_FLOOR))
        return discount, charged
    return discount, points_to_redeem


async def quote_checkout(db: AsyncSession, user_id: str, points_to_redeem: int = 0) -> CheckoutQuote:
    rows = (
        await db.execute(
            select(CartItem, Competition)
            .join(Competition, Competition.id == CartItem.competition_id)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.created_at)
        )
    ).all()
    if not rows:
        raise ValidationFailed("Cart is empty", code="CART_EMPTY")

    quote = CheckoutQuote(lines=[], cart_total=Decimal("0"))
    for item, comp in rows:
        if comp.status != CompetitionStatus.ACTIVE:
            continue
        quote.cart_total += Decimal(comp.ticket_price) * item.quantity
        quote.lines.append(CartLine(competition_id=comp.id, quantity=item.quantity))
        quote.titles[comp.id] = comp.title

    if not quote.lines:
        raise ValidationFailed("No active competitions in cart", code="CART_EMPTY")

    if points_to_redeem < 0:
        raise ValidationFailed("Points to redeem cannot be negative", code="INVALID_POINTS")

    if points_to_redeem > 0:
        user = await points.get_user(db, user_id)
        if points_to_redeem < MIN_POINTS_REDEMPTION:
            raise ValidationFailed(
                f"Minimum redemption is {MIN_POINTS_REDEMPTION} points",
                code="MIN_REDEMPTION",
                minimum=MIN_POINTS_REDEMPTION,
            )
        if user.total_points < points_to_redeem:
            raise ValidationFailed(
                f"Insufficient points. You have {user.total_points} points but trying to redeem {points_to_redeem}",
                code="INSUFFICIENT_POINTS",
                balance=user.total_points,
                requested=points_to_redeem,
            )
        quote.discount_amount, quote.points_redeemed = redemption_discount(points_to_redeem, quote.cart_total)

    if quote.amount < MIN_CHARGE_AMOUNT:
        raise ValidationFailed(
            f"Final amount after discount is too low. Minimum payment is ${money(MIN_CHARGE_AMOUNT)}",
            code="AMOUNT_TOO_LOW",
            amount=money(quote.amount),
            minimum=money(MIN_CHARGE_AMOUNT),
        )
    return quote


async def create_single_intent(
    coordinator: TransactionCoordinator,
    gateway: StripeGateway,
    user_id: str,
    competition_id: str,
    quantity: int,
    idempotency_key: str | None = None,
) -> dict:
    async def _validate(db: AsyncSession):
        check_quantity(quantity)
        comp = await load_competition(db, competition_id)
        await validate_purchase(db, user_id, comp, quantity)
        return comp.title, Decimal(comp.ticket_price) * quantity

    title, amount = await coordinator.run(_validate)
    if amount < MIN_CHARGE_AMOUNT:
        raise ValidationFailed(
            f"Minimum payment is ${money(MIN_CHARGE_AMOUNT)}", code="AMOUNT_TOO_LOW", amount=money(amount)
        )

    intent = await gateway.create_intent(
        amount,
        currency=CURRENCY,
        metadata={
            "user_id": user_id,
            "payment_type": PaymentType.SINGLE_PURCHASE,
            "competition_id": competition_id,
            "quantity": quantity,
        },
        idempotency_key=idempotency_key,
    )

    async def _record(db: AsyncSession):
        db.add(
            Payment(
                payment_intent_id=intent.intent_id,
                user_id=user_id,
                amount=amount,
                currency=CURRENCY,
                status=PaymentStatus.PENDING,
                payment_type=PaymentType.SINGLE_PURCHASE,
                competition_id=competition_id,
                quantity=quantity,
                ticket_ids=[],
            )
        )
        await db.flush()

    await coordinator.run(_record)
    logger.info(
        "Single purchase intent created",
        extra={"payment_intent_id": intent.intent_id, "user_id": user_id, "competition": title},
    )
    return {
        "payment_intent_id": intent.intent_id,
        "client_secret": intent.client_secret,
        "amount": money(amount),
        "currency": CURRENCY,
    }


async def create_checkout_intent(
    coordinator: TransactionCoordinator,
    gateway: StripeGateway,
    user_id: str,
    points_to_redeem: int = 0,
    idempotency_key: str | None = None,
) -> dict:
    quote = await coordinator.run(lambda db: quote_checkout(db, user_id, points_to_redeem))

    intent = await gateway.create_intent(
        quote.amount,
        currency=CURRENCY,
        metadata={
            "user_id": user_id,
            "payment_type": PaymentType.CART_CHECKOUT,
            "cart_items_count": len(quote.lines),
            "points_redeemed": quote.points_redeemed,
            "discount_amount": money(quote.discount_amount),
        },
        idempotency_key=idempotency_key,
    )

    async def _record(db: AsyncSession):
        db.add(
            Payment(
                payment_intent_id=intent.intent_id,
                user_id=user_id,
                amount=quote.amount,
                currency=CURRENCY,
                status=PaymentStatus.PENDING,
                payment_type=PaymentType.CART_CHECKOUT,
                cart_items=[{"competition_id": l.competition_id, "quantity": l.quantity} for l in quote.lines],
                cart_total=quote.cart_total,
                points_redeemed=quote.points_redeemed,
                discount_amount=quote.discount_amount,
                ticket_ids=[],
            )
        )
        await db.flush()

    await coordinator.run(_record)
    logger.info(
        "Checkout intent created",
        extra={"payment_intent_id": intent.intent_id, "user_id": user_id, "lines": len(quote.lines)},
    )
    return {
        "payment_intent_id": intent.intent_id,
        "client_secret": intent.client_secret,
        "amount": money(quote.amount),
        "currency": CURRENCY,
        "cart_total": money(quote.cart_total),
        "discount_amount": money(quote.discount_amount),
        "points_redeemed": quote.points_redeemed,
    }


# -------------------------
# Settlement-time issuance
# -------------------------
@dataclass
class IssueResult:
    tickets: list[Ticket] = field(default_factory=list)
    total_spent: Decimal = Decimal("0")
    points_earned: int = 0
    skipped: list[dict] = field(default_factory=list)


async def _issue_single(
    db: AsyncSession, payment: Payment, purchase: SinglePurchase, user: User, settings: PointsSettings, generate
) -> IssueResult:
    comp = await load_competition(db, purchase.competition_id, for_update=True)
    tickets = await issue_tickets(db, user, comp, purchase.quantity, payment_id=payment.id, generate=generate)

    dollars = Decimal(comp.ticket_price) * purchase.quantity
    earned = points.points_for_spend(dollars, settings)
    if earned > 0:
        points.earn(
            db,
            user,
            earned,
            f"Earned {earned} points for purchasing {purchase.quantity} ticket(s) (${money(dollars)} spent)",
            payment_id=payment.id,
        )
    return IssueResult(tickets=tickets, total_spent=dollars, points_earned=earned)


async def _issue_cart(
    db: AsyncSession, payment: Payment, purchase: CartCheckout, user: User, settings: PointsSettings, generate
) -> IssueResult:
    result = IssueResult()

    # lock competitions in a stable order and decide every line before the first write;
    # without a transaction each flush is committed and a rejected delivery must leave nothing behind
    issuable = []
    for line in sorted(purchase.lines, key=lambda l: l.competition_id):
        try:
            comp = await load_competition(db, line.competition_id, for_update=True)
            await validate_purchase(db, user.id, comp, line.quantity)
        except (ValidationFailed, NotFound) as e:
            result.skipped.append({"competition_id": line.competition_id, "quantity": line.quantity, "error": e.message})
            continue
        issuable.append((line, comp))

    if not issuable:
        reasons = "; ".join(s["error"] for s in result.skipped)
        raise ValidationFailed(f"No cart item could be issued: {reasons}", code="NOTHING_ISSUED", skipped=result.skipped)

    if purchase.points_redeemed > 0:
        charged = min(purchase.points_redeemed, user.total_points)
        if charged < purchase.points_redeemed:
            logger.warning(
                "Balance dropped below the redemption quoted at checkout; redeeming what is left",
                extra={"payment_intent_id": payment.payment_intent_id, "quoted": purchase.points_redeemed, "balance": user.total_points},
            )
        if charged > 0:
            points.redeem(
                db,
                user,
                charged,
                f"Redeemed {charged} points for ${money(purchase.discount_amount)} discount on cart checkout",
                payment_id=payment.id,
            )

    cart_total = purchase.cart_total
    discount = purchase.discount_amount

    for line, comp in issuable:
        tickets = await issue_tickets(db, user, comp, line.quantity, payment_id=payment.id, generate=generate)

        item_price = Decimal(comp.ticket_price) * line.quantity
        item_discount = (item_price / cart_total) * discount if cart_total > 0 else Decimal("0")
        dollars = max(Decimal("0"), item_price - item_discount)
        result.tickets.extend(tickets)
        result.total_spent += dollars

        earned = points.points_for_spend(dollars, settings)
        result.points_earned += earned
        if earned > 0:
            points.earn(
                db,
                user,
                earned,
                f"Earned {earned} points for purchasing {line.quantity} ticket(s) for {comp.title} "
                f"(${money(dollars)} spent)",
                payment_id=payment.id,
            )

    issued = {t.competition_id for t in result.tickets}
    if issued:
        for item in (
            await db.execute(
                select(CartItem).where(CartItem.user_id == user.id, CartItem.competition_id.in_(issued))
            )
        ).scalars():
            await db.delete(item)
    return result


async def issue_for_payment(
    db: AsyncSession, payment: Payment, generate: Callable[[], str] = generate_ticket_number
) -> IssueResult:
    """
    Issues what a stored Payment paid for. Reads purchase parameters from the
    Payment row only, never from client input.
    """
    user = await points.ensure_user(db, payment.user_id)
    settings = await points.get_settings(db)

    purchase = payment.purchase
    if isinstance(purchase, SinglePurchase):
        result = await _issue_single(db, payment, purchase, user, settings, generate)
    else:
        result = await _issue_cart(db, payment, purchase, user, settings, generate)

    user.total_spent = (Decimal(user.total_spent) + result.total_spent).quantize(CENT, rounding=ROUND_HALF_UP)
    await db.flush()
    return result
