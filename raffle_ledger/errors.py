from fastapi import Request
from fastapi.responses import JSONResponse


class LedgerError(Exception):
    """Base for every error the ledger reports to a caller.

    ``code`` is a stable machine-readable reason, ``details`` carries the numbers
    a client needs to recover (remaining allowance, point balance, ...).
    """

    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, code: str | None = None, **details):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.code, "message": self.message, **self.details}


class ValidationFailed(LedgerError):
    code = "VALIDATION_FAILED"


class NotFound(LedgerError):
    status_code = 404
    code = "NOT_FOUND"


class PreconditionFailed(LedgerError):
    code = "INVALID_STATE"


class Unauthorized(LedgerError):
    status_code = 401
    code = "UNAUTHORIZED"


class Forbidden(LedgerError):
    status_code = 403
    code = "FORBIDDEN"


class RateLimited(LedgerError):
    status_code = 429
    code = "RATE_LIMITED"


class ConcurrentUpdateError(LedgerError):
    status_code = 409
    code = "CONFLICT"


class TicketNumberExhausted(LedgerError):
    status_code = 500
    code = "TICKET_NUMBER_EXHAUSTED"


class GatewayError(LedgerError):
    status_code = 502
    code = "GATEWAY_ERROR"


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
