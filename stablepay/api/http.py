from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from stablepay.api.routes import payment_requests
from stablepay.application.service import PaymentRequestService, build_service
from stablepay.application.sweeper import expiry_sweeper
from stablepay.domain.errors import (
    ConflictError,
    ForbiddenError,
    MalformedPayloadError,
    NotFoundError,
    PaymentRequestError,
    RequestExpiredError,
    ValidationError,
)
from stablepay.settings import Settings, settings

log = logging.getLogger("api.http")

# порядок важен: RequestExpiredError является подклассом ConflictError
_STATUS_BY_ERROR = [
    (ValidationError, 400),
    (ForbiddenError, 403),
    (NotFoundError, 404),
    (RequestExpiredError, 410),
    (ConflictError, 409),
    (MalformedPayloadError, 422),
]


def _status_for(exc: PaymentRequestError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return 500


def _describe_validation(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def create_app(service: Optional[PaymentRequestService] = None, *, cfg: Optional[Settings] = None) -> FastAPI:
    cfg = cfg or settings
    service = service or build_service(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # схему SQL-хранилища создаёт `alembic upgrade head`
        store = service.engine.store
        sweeper = None
        if cfg.SWEEP_ENABLED:
            sweeper = asyncio.create_task(expiry_sweeper(service.engine, cfg.SWEEP_INTERVAL_SEC))
        try:
            yield
        finally:
            if sweeper:
                sweeper.cancel()
                try:
                    await sweeper
                except asyncio.CancelledError:
                    pass
            await service.engine.hub.drain()
            if hasattr(store, "dispose"):
                await store.dispose()

    app = FastAPI(title="StablePay Payment Requests API", lifespan=lifespan)
    app.state.service = service
    app.include_router(payment_requests.router)

    @app.exception_handler(PaymentRequestError)
    async def payment_request_error(request: Request, exc: PaymentRequestError):
        code = _status_for(exc)
        if code >= 500:
            log.error("Unhandled lifecycle error %s: %s", exc.kind, exc.message)
        return JSONResponse(status_code=code, content={"error": exc.kind, "detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        # тело/параметры не прошли pydantic: та же форма ответа, что и у ValidationError
        return JSONResponse(
            status_code=400,
            content={"error": ValidationError.kind, "detail": _describe_validation(exc)},
        )

    @app.get("/healthz")
    async def healthz():
        return {"ok": True}

    return app


logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

app = create_app()
