"""
Wallet Guard admin server.

FastAPI operator surface over a running `WalletGuard`:

- GET    /v1/security/status
- POST   /v1/security/emergency/clear
- GET    /v1/security/rate-limits/{user_id}/{operation}
- DELETE /v1/security/rate-limits/{user_id}/{operation}
- GET    /metrics (Prometheus, when WG_METRICS_ENABLED)

Every admin route requires a valid X-Api-Key once admin keys are configured
(see `wallet_guard.auth`). Malformed key configuration rejects every request.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .auth import AdminContext, ApiKeyAuth
from .errors import WG_E_AUTH_REQUIRED, WG_E_BAD_REQUEST, GuardError
from .metrics import instrument_fastapi
from .system import WalletGuard

logger = logging.getLogger("wallet_guard.server")


def _http_exc(status: int, code: str, message: str, *, retryable: bool = False, **details: Any) -> HTTPException:
    """Create an HTTPException with a stable error envelope in `detail`."""
    detail: Dict[str, Any] = {"code": code, "message": message, "retryable": bool(retryable)}
    if details:
        detail["details"] = details
    return HTTPException(status, detail)


class EmergencyClearRequest(BaseModel):
    reason: str = Field("", max_length=500)


class EmergencyClearResponse(BaseModel):
    cleared: bool
    was_active: bool
    actor: str


class RateLimitStatusResponse(BaseModel):
    user_id: str
    operation: str
    allowed: bool
    tier: Optional[str] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[float] = None
    window_seconds: Optional[int] = None


class RateLimitResetResponse(BaseModel):
    user_id: str
    operation: str
    reset: bool
    actor: str


class StatusResponse(BaseModel):
    store: Dict[str, Any]
    monitor: Dict[str, Any]
    emergency_mode: Dict[str, Any]
    operations: List[str]
    recent_alerts: List[Dict[str, Any]]
    health: str
    counters: Dict[str, Any]


_STATUS_KEYS = ("store", "monitor", "emergency_mode", "operations", "recent_alerts", "health")


def create_app(guard: Optional[WalletGuard] = None, auth: Optional[ApiKeyAuth] = None) -> FastAPI:
    """Create the FastAPI admin application."""
    from . import __version__ as wg_version

    if guard is None:
        guard = WalletGuard.from_env()
    api_auth = auth if auth is not None else ApiKeyAuth.load_from_env()

    app = FastAPI(
        title="Wallet Guard",
        description="Unified security subsystem - operator API",
        version=wg_version,
    )
    app.state.guard = guard

    @app.exception_handler(GuardError)
    async def _guard_error_handler(request: Request, exc: GuardError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    def _authorize_metrics(req: Request) -> bool:
        if not api_auth.enabled():
            return True
        return api_auth.resolve(req.headers.get("X-Api-Key")).authenticated

    instrument_fastapi(app, authorize=_authorize_metrics)

    def require_admin(x_api_key: Optional[str] = Header(None, alias="X-Api-Key")) -> AdminContext:
        ctx = api_auth.resolve(x_api_key)
        if ctx.error:
            raise _http_exc(401, WG_E_AUTH_REQUIRED, ctx.error)
        return ctx

    def _known_operation(operation: str) -> None:
        if guard.config.policies.get(operation) is None:
            raise _http_exc(404, WG_E_BAD_REQUEST, "unknown operation", operation=operation)

    @app.get("/v1/security/status", response_model=StatusResponse)
    def security_status(admin: AdminContext = Depends(require_admin)):
        snap = guard.status()
        return StatusResponse(
            counters={k: v for k, v in snap.items() if k not in _STATUS_KEYS},
            **{k: snap[k] for k in _STATUS_KEYS},
        )

    @app.post("/v1/security/emergency/clear", response_model=EmergencyClearResponse)
    def emergency_clear(
        request: Optional[EmergencyClearRequest] = None,
        admin: AdminContext = Depends(require_admin),
    ):
        actor = str(admin.actor)
        was_active = guard.emergency.clear(actor=actor)
        logger.warning(
            "Emergency clear requested by %s (was_active=%s reason=%s)",
            actor,
            was_active,
            request.reason if request else "",
        )
        return EmergencyClearResponse(cleared=True, was_active=was_active, actor=actor)

    @app.get("/v1/security/rate-limits/{user_id}/{operation}", response_model=RateLimitStatusResponse)
    def rate_limit_status(user_id: str, operation: str, admin: AdminContext = Depends(require_admin)):
        _known_operation(operation)
        decision = guard.rate_limiter.status(user_id, operation)
        return RateLimitStatusResponse(
            user_id=user_id,
            operation=operation,
            allowed=decision.allowed,
            tier=decision.tier.value if decision.tier is not None else None,
            limit=decision.limit,
            remaining=decision.remaining,
            reset_at=decision.reset_at,
            window_seconds=decision.window_seconds,
        )

    @app.delete("/v1/security/rate-limits/{user_id}/{operation}", response_model=RateLimitResetResponse)
    def rate_limit_reset(user_id: str, operation: str, admin: AdminContext = Depends(require_admin)):
        _known_operation(operation)
        guard.rate_limiter.reset(user_id, operation)
        logger.warning("Rate limit for user %s operation %s reset by %s", user_id, operation, admin.actor)
        return RateLimitResetResponse(user_id=user_id, operation=operation, reset=True, actor=str(admin.actor))

    return app
