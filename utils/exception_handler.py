"""
Exception Handler Module
Provides the marketplace error kinds and the FastAPI handlers that render them
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import Config

logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    """Base for errors that map to an HTTP status"""

    status_code = 500

    def __init__(self, message: str, detail: Optional[str] = None):
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": self.message}
        if self.detail and Config.DEBUG:
            body["error"] = self.detail
        return body


class ValidationError(MarketplaceError):
    """Custom validation error for input validation failures"""

    status_code = 400

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []

    def to_response(self) -> Dict[str, Any]:
        body = super().to_response()
        if self.errors:
            body["errors"] = self.errors
        return body


InvalidInputError = ValidationError


class NotAuthenticatedError(MarketplaceError):
    status_code = 401


class NotAuthorizedError(MarketplaceError):
    status_code = 403


class NotFoundError(MarketplaceError):
    status_code = 404


class NoKeyError(NotFoundError):
    """User has no key record"""


class GoneError(MarketplaceError):
    status_code = 410


class InvalidStateError(MarketplaceError):
    status_code = 400


class StateTransitionError(InvalidStateError):
    """Raised when an invalid state transition is attempted"""


class ConflictError(MarketplaceError):
    status_code = 409


class EscrowAlreadyExistsError(ConflictError):
    def __init__(self, message: str = "Escrow already exists for this order"):
        super().__init__(message)


class ChainUnavailableError(MarketplaceError):
    """RPC timeout, provider error or unconfigured blockchain service"""

    status_code = 503


class EventDecodeError(MarketplaceError):
    """Expected contract event missing from a receipt"""


class PayoutUnavailableError(MarketplaceError):
    """Payout provider down or unconfigured; callers route the payout to manual processing"""

    status_code = 503


def register_exception_handlers(app: FastAPI) -> None:
    """Render MarketplaceError subclasses and validation failures as {"message", "error"?}"""

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        if exc.status_code >= 500:
            logger.error(f"❌ {type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
        else:
            logger.info(f"⚠️ {type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
                "message": err.get("msg", "Invalid value"),
            }
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"message": "Validation failed", "errors": errors},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"❌ Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
        body: Dict[str, Any] = {"message": "Server error"}
        if Config.DEBUG:
            body["error"] = str(exc)
        return JSONResponse(status_code=500, content=body)
