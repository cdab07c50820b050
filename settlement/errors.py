"""Domain error taxonomy and the FastAPI handler that renders it.

Every error is an ``HTTPException`` so services can raise them directly,
the same way they raise plain HTTP errors. Each carries a stable ``code``
that clients can branch on without parsing the message.
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse


class SettlementError(HTTPException):
    """Base class for all settlement domain errors."""

    status_code_default = 400
    code = "SETTLEMENT_ERROR"

    def __init__(self, detail: str) -> None:
        super().__init__(status_code=self.status_code_default, detail=detail)


class NotFoundError(SettlementError):
    status_code_default = 404
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: object | None = None) -> None:
        msg = f"{entity} not found" if entity_id is None else f"{entity} '{entity_id}' not found"
        super().__init__(msg)


class InvalidStateError(SettlementError):
    """An illegal state transition was attempted."""

    status_code_default = 409
    code = "INVALID_STATE"


class NotAuthorizedError(SettlementError):
    """The actor lacks permission for the operation."""

    status_code_default = 403
    code = "NOT_AUTHORIZED"


class AlreadySignedError(SettlementError):
    status_code_default = 409
    code = "ALREADY_SIGNED"


class DualControlViolation(NotAuthorizedError):
    """Checker and maker are the same identity."""

    code = "DUAL_CONTROL_VIOLATION"


class InsufficientFundsError(SettlementError):
    """Disbursement total exceeds the escrow balance."""

    status_code_default = 422
    code = "INSUFFICIENT_FUNDS"


class BatchValidationError(SettlementError):
    status_code_default = 422
    code = "BATCH_INVALID"


class ProviderCallError(SettlementError):
    """A custody/banking provider call failed. Treated as transient."""

    status_code_default = 502
    code = "PROVIDER_CALL_FAILED"


class SignatureVerificationError(SettlementError):
    """An inbound provider webhook failed signature or freshness checks."""

    status_code_default = 401
    code = "SIGNATURE_INVALID"


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the domain error handler to the FastAPI app."""

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail, "code": exc.code},
        )
