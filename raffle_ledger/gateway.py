import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

import stripe

from .config import CURRENCY, MIN_CHARGE_AMOUNT, STRIPE_SECRET_KEY
from .errors import GatewayError, ValidationFailed

logger = logging.getLogger(__name__)


@dataclass
class IntentResult:
    intent_id: str
    client_secret: str


@dataclass
class RefundResult:
    refund_id: str


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class StripeGateway:
    """Charge intents and refunds. Card handling stays on Stripe's side."""

    def __init__(self, api_key: str = STRIPE_SECRET_KEY):
        self.api_key = api_key

    async def create_intent(
        self,
        amount: Decimal,
        currency: str = CURRENCY,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> IntentResult:
        if amount < MIN_CHARGE_AMOUNT:
            raise ValidationFailed(f"Amount must be at least ${MIN_CHARGE_AMOUNT}", code="AMOUNT_TOO_LOW")

        try:
            intent = await stripe.PaymentIntent.create_async(
                api_key=self.api_key,
                amount=to_minor_units(amount),
                currency=currency.lower(),
                metadata={k: str(v) for k, v in (metadata or {}).items()},
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error("Failed to create payment intent", extra={"amount": str(amount), "error": str(e)})
            raise GatewayError(f"Payment gateway error: {e.user_message or e}") from e

        logger.info("Payment intent created", extra={"payment_intent_id": intent.id, "amount": str(amount)})
        return IntentResult(intent_id=intent.id, client_secret=intent.client_secret)

    async def create_refund(self, intent_id: str, amount: Decimal | None = None) -> RefundResult:
        params = {"payment_intent": intent_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount)

        try:
            refund = await stripe.Refund.create_async(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error("Stripe refund failed", extra={"payment_intent_id": intent_id, "error": str(e)})
            raise GatewayError(f"Stripe refund failed: {e.user_message or e}") from e

        logger.info("Refund created", extra={"payment_intent_id": intent_id, "refund_id": refund.id})
        return RefundResult(refund_id=refund.id)
