from fastapi import Depends, Header, Request
from redis.asyncio import Redis
from sqlalchemy.exc import IntegrityError

from . import points
from .config import AUTH_SIGNING_SECRET, RATE_LIMIT_PER_MINUTE, REDIS_URL, TRANSACTIONS_MODE
from .db import AutocommitSessionLocal, SessionLocal, engine
from .errors import Forbidden, RateLimited, Unauthorized
from .gateway import StripeGateway
from .models import User
from .rate_limit import take
from .security import verify_access_token
from .transactions import TransactionCoordinator

redis = Redis.from_url(REDIS_URL, decode_responses=True)
gateway = StripeGateway()
coordinator = TransactionCoordinator(engine, SessionLocal, AutocommitSessionLocal, mode=TRANSACTIONS_MODE)


def get_redis() -> Redis:
    return redis


def get_gateway() -> StripeGateway:
    return gateway


def get_coordinator() -> TransactionCoordinator:
    return coordinator


class CurrentUser:
    def __init__(self, user_id: str, role: str):
        self.id = user_id
        self.role = role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_current_user(
    authorization: str | None = Header(default=None),
    coordinator: TransactionCoordinator = Depends(get_coordinator),
) -> CurrentUser:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise Unauthorized("Missing bearer token", code="MISSING_TOKEN")

    try:
        claims = verify_access_token(authorization.split(" ", 1)[1].strip(), AUTH_SIGNING_SECRET)
    except ValueError as e:
        raise Unauthorized("Invalid or expired token", code=str(e))

    user = CurrentUser(str(claims["sub"]), claims.get("role", "user"))

    # most requests come from known accounts; only a first visit needs a write
    if await coordinator.read(lambda db: db.get(User, user.id)) is not None:
        return user

    async def _open_account(db):
        await points.ensure_user(db, user.id)

    try:
        await coordinator.run(_open_account)
    except IntegrityError:
        # opened concurrently by another request
        pass
    return user


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise Forbidden("Admin access required")
    return user


async def rate_limited(request: Request, redis: Redis = Depends(get_redis)) -> None:
    ip = request.client.host if request.client else "unknown"
    auth = request.headers.get("authorization", "")
    key = f"{ip}:{auth[-16:]}" if auth else ip
    decision = await take(redis, key, RATE_LIMIT_PER_MINUTE)
    if not decision.allowed:
        raise RateLimited("Too many requests, slow down", retry_after=decision.retry_after)
