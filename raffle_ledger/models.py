import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return uuid.uuid4().hex


class CompetitionStatus:
    UPCOMING = "upcoming"
    ACTIVE = "active"
    CLOSED = "closed"
    COMPLETED = "completed"


class TicketStatus:
    ACTIVE = "active"
    WON = "won"
    LOST = "lost"
    REFUNDED = "refunded"


class PaymentStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class PaymentType:
    SINGLE_PURCHASE = "single_purchase"
    CART_CHECKOUT = "cart_checkout"


class PointsType:
    EARNED = "earned"
    SPENT = "spent"
    REDEEMED = "redeemed"


class Competition(Base):
    __tablename__ = "competitions"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    title: Mapped[str] = mapped_column(String)
    ticket_price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    max_tickets: Mapped[int] = mapped_column(Integer)
    max_per_person: Mapped[int] = mapped_column(Integer, default=1)
    tickets_sold: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String, index=True, default=CompetitionStatus.UPCOMING)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __mapper_args__ = {"version_id_col": version}

    @property
    def remaining(self) -> int:
        return max(0, self.max_tickets - self.tickets_sold)


class Ticket(Base):
    __tablename__ = "tickets"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    ticket_number: Mapped[str] = mapped_column(String, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    competition_id: Mapped[str] = mapped_column(String, ForeignKey("competitions.id"), index=True)
    payment_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    status: Mapped[str] = mapped_column(String, default=TicketStatus.ACTIVE)
    purchase_date: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=_utcnow)


@dataclass(frozen=True)
class CartLine:
    competition_id: str
    quantity: int


@dataclass(frozen=True)
class SinglePurchase:
    competition_id: str
    quantity: int


@dataclass(frozen=True)
class CartCheckout:
    lines: tuple[CartLine, ...]
    points_redeemed: int
    discount_amount: Decimal
    cart_total: Decimal


class Payment(Base):
    __tablename__ = "payments"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    payment_intent_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String, default="usd")
    status: Mapped[str] = mapped_column(String, index=True, default=PaymentStatus.PENDING)
    payment_type: Mapped[str] = mapped_column(String)

    # single_purchase
    competition_id: Mapped[str | None] = mapped_column(String, nullable=True)
    quantity: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # cart_checkout
    cart_items: Mapped[list | None] = mapped_column(JSON, nullable=True)
    cart_total: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    points_redeemed: Mapped[int] = mapped_column(Integer, default=0)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))

    tickets_created: Mapped[bool] = mapped_column(Boolean, default=False)
    ticket_ids: Mapped[list] = mapped_column(JSON, default=list)

    failure_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    settlement_error: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    refund_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"))
    refund_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String, nullable=True)
    refunded_at: Mapped[DateTime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def purchase(self) -> SinglePurchase | CartCheckout:
        if self.payment_type == PaymentType.SINGLE_PURCHASE:
            return SinglePurchase(competition_id=self.competition_id, quantity=self.quantity)
        if self.payment_type == PaymentType.CART_CHECKOUT:
            return CartCheckout(
                lines=tuple(
                    CartLine(competition_id=i["competition_id"], quantity=int(i["quantity"]))
                    for i in (self.cart_items or [])
                ),
                points_redeemed=self.points_redeemed or 0,
                discount_amount=Decimal(self.discount_amount or 0),
                cart_total=Decimal(self.cart_total or 0),
            )
        raise ValueError(f"unknown payment_type {self.payment_type!r}")

    @property
    def lines(self) -> tuple[CartLine, ...]:
        """Competition/quantity pairs this payment bought, whatever its shape."""
        p = self.purchase
        if isinstance(p, SinglePurchase):
            return (CartLine(competition_id=p.competition_id, quantity=p.quantity),)
        return p.lines


class User(Base):
    __tablename__ = "users"
    id: Mapped[str] = mapped_column(String, primary_key=True)
    total_points: Mapped[int] = mapped_column(Integer, default=0)
    total_earned: Mapped[int] = mapped_column(Integer, default=0)
    total_redeemed: Mapped[int] = mapped_column(Integer, default=0)
    total_spent: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __mapper_args__ = {"version_id_col": version}


class PointsHistory(Base):
    __tablename__ = "points_history"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    type: Mapped[str] = mapped_column(String)
    amount: Mapped[int] = mapped_column(Integer)
    description: Mapped[str] = mapped_column(String, default="")
    payment_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class CartItem(Base):
    __tablename__ = "cart_items"
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String, index=True)
    competition_id: Mapped[str] = mapped_column(String, ForeignKey("competitions.id"), index=True)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (UniqueConstraint("user_id", "competition_id", name="uniq_cart_user_competition"),)


class PointsSettings(Base):
    __tablename__ = "points_settings"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    points_per_dollar: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    updated_at: Mapped[DateTime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class GatewayEvent(Base):
    __tablename__ = "gateway_events"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    event_type: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String, index=True, nullable=True)
    status: Mapped[str] = mapped_column(String)
    reason_code: Mapped[str] = mapped_column(String)
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), server_default=func.now())
