import logging
import time
from typing import Any

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from plan_relay.config import Settings, load_settings
from plan_relay.db import create_db_engine, create_session_factory
from plan_relay.logging_utils import configure_logging, hash_address
from plan_relay.models import Base
from plan_relay.schemas import (
    PrepareRequest,
    RelayedRequest,
    SessionPrepareRequest,
    SessionRevokeRequest,
    SessionStatusRequest,
    SubmitRequest,
)
from plan_relay.services.execution_service import ApiError, ExecutionService
from plan_relay.services.guards import ValidationError
from plan_relay.services.plan_codec import is_valid_address
from plan_relay.services.portfolio import InMemoryPortfolioStore, PortfolioSource
from plan_relay.services.rate_limit import CooldownLimiter, TTLCache
from plan_relay.services.receipts import ReceiptConfirmer
from plan_relay.services.relayer import Relayer
from plan_relay.services.rpc_client import RpcClient
from plan_relay.services.session_manager import ConfigError, SessionLookup, SessionManager

logger = logging.getLogger(__name__)


def session_payload(
    status: str,
    cooldown_ms: int,
    mode: str | None = None,
    reason: str | None = None,
    required: list[str] | None = None,
    session: dict | None = None,
    error_code: str | None = None,
) -> dict[str, Any]:
    """Single mapping from session outcomes to the always-200 session response shape."""
    if session is not None:
        body = {"enabled": status in {"active", "preparing"}, **session}
    else:
        body = {"enabled": False, "reason": reason, "required": required or []}
    payload: dict[str, Any] = {"ok": True, "status": status, "session": body, "cooldownMs": cooldown_ms}
    if mode is not None:
        payload["mode"] = mode
    if error_code is not None:
        payload["errorCode"] = error_code
    return payload


def lookup_payload(lookup: SessionLookup, session_id: str, cooldown_ms: int) -> dict[str, Any]:
    if lookup.session is None:
        required = ["RPC_OK"] if lookup.reason == "RPC_ERROR" else ["ETH_TESTNET_RPC_URL", "EXECUTION_ROUTER_ADDRESS"]
        if lookup.reason == "INVALID_SESSION_ID":
            required = ["sessionId"]
        return session_payload(
            lookup.status,
            cooldown_ms,
            mode="session",
            reason=lookup.reason,
            required=required,
            error_code="RPC_ERROR" if lookup.reason == "RPC_ERROR" else None,
        )
    onchain = lookup.session
    return session_payload(
        lookup.status,
        cooldown_ms,
        mode="session",
        session={
            "status": lookup.status,
            "sessionId": session_id,
            "owner": onchain.owner,
            "executor": onchain.executor,
            "expiresAt": str(onchain.expires_at),
            "maxSpend": str(onchain.max_spend),
            "spent": str(onchain.spent),
            "active": onchain.active,
        },
    )


def create_app(
    settings: Settings | None = None,
    rpc=None,
    portfolio: PortfolioSource | None = None,
    session_factory=None,
    relayer=None,
    confirmer: ReceiptConfirmer | None = None,
    clock=time.time,
    monotonic=time.monotonic,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    if session_factory is None:
        engine = create_db_engine(settings.database_url)
        Base.metadata.create_all(bind=engine)
        session_factory = create_session_factory(engine)
    if rpc is None and settings.rpc_url:
        rpc = RpcClient(settings.rpc_url, default_timeout=settings.rpc_read_timeout_sec)
    if relayer is None and rpc is not None and settings.relayer_private_key:
        relayer = Relayer(settings, rpc, clock=clock)
    if confirmer is None and rpc is not None:
        confirmer = ReceiptConfirmer(rpc, settings.receipt_timeout_sec, settings.receipt_poll_sec)

    limiter = CooldownLimiter(settings.session_cooldown_ms, clock=monotonic)
    cache = TTLCache(settings.router_code_cache_ttl_sec, clock=monotonic)
    sessions = SessionManager(settings, rpc, cache=cache, clock=clock)
    service = ExecutionService(
        settings,
        session_factory,
        portfolio or InMemoryPortfolioStore(),
        sessions,
        rpc=rpc,
        relayer=relayer,
        confirmer=confirmer,
        clock=clock,
    )
    cooldown_ms = settings.session_cooldown_ms

    app = FastAPI(title="Plan Relay Execution Service")
    app.state.settings = settings
    app.state.service = service
    app.state.sessions = sessions

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": exc.reason, "details": exc.details})

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error, "errorCode": exc.error_code, **exc.extra},
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.on_event("shutdown")
    async def shutdown() -> None:
        if isinstance(rpc, RpcClient):
            await rpc.aclose()

    def _throttled(key: tuple) -> dict | None:
        if limiter.try_acquire(key):
            return None
        return cache.get(key)

    def _remember(key: tuple, payload: dict) -> dict:
        cache.set(key, payload, ttl_sec=cooldown_ms / 1000)
        return payload

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok", "mode": settings.execution_mode, "authMode": settings.execution_auth_mode}

    @app.post("/api/execute/prepare")
    async def execute_prepare(request: PrepareRequest) -> dict:
        return await service.prepare(request)

    @app.post("/api/session/prepare")
    async def session_prepare(request: SessionPrepareRequest | None = None) -> dict:
        request = request or SessionPrepareRequest()
        user = (request.user_address or "").lower()
        key = ("session_prepare", user)
        cached = _throttled(key)
        if cached is not None:
            return cached
        if not settings.session_mode_enabled:
            return session_payload(
                "disabled",
                cooldown_ms,
                reason="NOT_CONFIGURED",
                required=["EXECUTION_MODE=eth_testnet", "EXECUTION_AUTH_MODE=session"],
            )
        if not is_valid_address(user):
            return session_payload("not_created", cooldown_ms, reason="MISSING_FIELDS", required=["userAddress"])
        try:
            created = sessions.prepare_create(user)
        except ConfigError as exc:
            return session_payload("disabled", cooldown_ms, reason="NOT_CONFIGURED", required=exc.missing)
        except ValueError as exc:
            logger.warning("Session prepare failed for %s: %s", hash_address(user), exc)
            return session_payload(
                "disabled", cooldown_ms, reason="RPC_ERROR", required=["RPC_OK"], error_code="RPC_ERROR"
            )
        payload = session_payload(
            "preparing",
            cooldown_ms,
            session={
                "sessionId": created.session_id,
                "to": created.to,
                "data": created.data,
                "value": created.value,
                "summary": created.summary,
                "capabilitySnapshot": created.capability_snapshot,
            },
        )
        return _remember(key, payload)

    async def _session_status(user_address: str | None, session_id: str | None) -> dict:
        key = ("session_status", (user_address or "").lower(), session_id or "")
        cached = _throttled(key)
        if cached is not None:
            return cached
        if not settings.session_mode_enabled:
            return session_payload(
                "disabled",
                cooldown_ms,
                mode=settings.execution_auth_mode,
                reason="NOT_CONFIGURED",
                required=["EXECUTION_MODE=eth_testnet", "EXECUTION_AUTH_MODE=session"],
            )
        if not session_id:
            return session_payload(
                "not_created", cooldown_ms, mode="session", reason="MISSING_FIELDS", required=["sessionId"]
            )
        lookup = await sessions.status(session_id)
        if lookup.reason == "NOT_CONFIGURED":
            return session_payload(
                "disabled",
                cooldown_ms,
                mode="session",
                reason="NOT_CONFIGURED",
                required=["ETH_TESTNET_RPC_URL", "EXECUTION_ROUTER_ADDRESS"],
            )
        return _remember(key, lookup_payload(lookup, session_id, cooldown_ms))

    @app.get("/api/session/status")
    async def session_status_get(
        user_address: str | None = Query(default=None, alias="userAddress"),
        session_id: str | None = Query(default=None, alias="sessionId"),
    ) -> dict:
        return await _session_status(user_address, session_id)

    @app.post("/api/session/status")
    async def session_status_post(request: SessionStatusRequest | None = None) -> dict:
        request = request or SessionStatusRequest()
        return await _session_status(request.user_address, request.session_id)

    @app.post("/api/session/revoke/prepare")
    async def session_revoke_prepare(request: SessionRevokeRequest) -> dict:
        if not request.session_id:
            raise ValidationError("sessionId is required", {"required": ["sessionId"]})
        try:
            return sessions.prepare_revoke(request.session_id)
        except ConfigError as exc:
            raise ApiError(503, str(exc), "NOT_CONFIGURED", {"required": exc.missing}) from exc

    @app.post("/api/execute/relayed")
    async def execute_relayed(request: RelayedRequest):
        status_code, payload = await service.relay(request)
        if status_code != 200:
            return JSONResponse(status_code=status_code, content=payload)
        return payload

    @app.post("/api/execute/submit")
    async def execute_submit(request: SubmitRequest) -> dict:
        return await service.submit(request)

    @app.get("/api/execute/status")
    async def execute_status(tx_hash: str | None = Query(default=None, alias="txHash")) -> dict:
        return await service.status(tx_hash)

    @app.get("/api/execute/preflight")
    async def execute_preflight() -> dict:
        return await service.preflight()

    return app


app = create_app()
