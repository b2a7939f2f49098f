from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import NotFound, ValidationFailed
from .models import CartItem, Competition, CompetitionStatus
from .purchases import check_quantity, count_owned_tickets, load_competition, money


async def _check_room(db: AsyncSession, user_id: str, comp: Competition, in_cart_after: int) -> None:
    if comp.status != CompetitionStatus.ACTIVE:
        raise ValidationFailed("Competition is not active", code="COMPETITION_NOT_ACTIVE", competition_id=comp.id)

    if comp.tickets_sold + in_cart_after > comp.max_tickets:
        raise ValidationFailed(
            "Not enough tickets available", code="SOLD_OUT", competition_id=comp.id, available=comp.remaining
        )

    owned = await count_owned_tickets(db, user_id, comp.id)
    if owned + in_cart_after > comp.max_per_person:
        remaining = max(0, comp.max_per_person - owned)
        raise ValidationFailed(
            f"Maximum {comp.max_per_person} tickets per person. You already have {owned} ticket(s). "
            f"You can have up to {remaining} in your cart.",
            code="PER_PERSON_LIMIT",
            competition_id=comp.id,
            remaining=remaining,
        )


async def add_to_cart(db: AsyncSession, user_id: str, competition_id: str, quantity: int) -> CartItem:
    check_quantity(quantity)
    comp = await load_competition(db, competition_id)

    item = (
        await db.execute(
            select(CartItem).where(CartItem.user_id == user_id, CartItem.competition_id == competition_id)
        )
    ).scalar_one_or_none()
    current = item.quantity if item else 0
    await _check_room(db, user_id, comp, current + quantity)

    if item is None:
        item = CartItem(user_id=user_id, competition_id=competition_id, quantity=quantity)
        db.add(item)
    else:
        item.quantity = current + quantity
    await db.flush()
    return item


async def _own_item(db: AsyncSession, user_id: str, item_id: str) -> CartItem:
    item = (
        await db.execute(select(CartItem).where(CartItem.id == item_id, CartItem.user_id == user_id))
    ).scalar_one_or_none()
    if item is None:
        raise NotFound("Cart item not found", item_id=item_id)
    return item


async def update_item(db: AsyncSession, user_id: str, item_id: str, quantity: int) -> CartItem:
    check_quantity(quantity)
    item = await _own_item(db, user_id, item_id)
    comp = await load_competition(db, item.competition_id)
    await _check_room(db, user_id, comp, quantity)
    item.quantity = quantity
    await db.flush()
    return item


async def remove_item(db: AsyncSession, user_id: str, item_id: str) -> None:
    item = await _own_item(db, user_id, item_id)
    await db.delete(item)
    await db.flush()


async def clear_cart(db: AsyncSession, user_id: str) -> None:
    await db.execute(delete(CartItem).where(CartItem.user_id == user_id))


async def get_cart(db: AsyncSession, user_id: str) -> dict:
    rows = (
        await db.execute(
            select(CartItem, Competition)
            .join(Competition, Competition.id == CartItem.competition_id)
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.created_at.desc())
        )
    ).all()

    items = []
    total_items = 0
    total_price = Decimal("0")
    for item, comp in rows:
        owned = await count_owned_tickets(db, user_id, comp.id)
        line_total = Decimal(comp.ticket_price) * item.quantity
        items.append(
            {
                "id": item.id,
                "competition_id": comp.id,
                "competition_title": comp.title,
                "ticket_price": money(comp.ticket_price),
                "quantity": item.quantity,
                "total_price": money(line_total),
                "max_per_person": comp.max_per_person,
                "existing_tickets": owned,
                "available_to_add": max(0, comp.max_per_person - owned - item.quantity),
                "remaining_tickets": comp.remaining,
                "is_active": comp.status == CompetitionStatus.ACTIVE,
            }
        )
        total_items += item.quantity
        total_price += line_total

    return {
        "cart_items": items,
        "summary": {"total_items": total_items, "total_price": money(total_price), "item_count": len(items)},
    }
