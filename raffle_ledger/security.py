from datetime import datetime, timezone

import stripe
from jose import jwt
from jose.exceptions import JWTError


def verify_access_token(token: str, secret: str) -> dict:
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except JWTError:
        raise ValueError("INVALID_TOKEN")

    now = datetime.now(timezone.utc).timestamp()
    exp = payload.get("exp")
    if exp is None or now > float(exp):
        raise ValueError("EXPIRED")

    if not payload.get("sub"):
        raise ValueError("INVALID_TOKEN")

    return payload


def verify_gateway_signature(payload: bytes, sig_header: str | None, secret: str, tolerance: int) -> dict:
    """
    Checks the Stripe-Signature header over the raw body and returns the parsed
    event. Raises ValueError with a reason code; nothing is returned unless the
    signature matches.
    """
    if not sig_header:
        raise ValueError("MISSING_SIGNATURE")

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError:
        raise ValueError("INVALID_SIGNATURE")
    except ValueError:
        raise ValueError("INVALID_PAYLOAD")

    # plain dict from here on: settlement reads it and the backlog stream stores it as JSON
    event = event.to_dict()
    for k in ["type", "data"]:
        if k not in event:
            raise ValueError("INVALID_PAYLOAD")

    return event
