import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable

from eth_abi.exceptions import EncodingError
from sqlalchemy.exc import IntegrityError

from plan_relay.config import Settings
from plan_relay.logging_utils import hash_address, short_hex
from plan_relay.models import ExecutionRecord
from plan_relay.schemas import PrepareRequest, RelayedRequest, SubmitRequest
from plan_relay.services.guards import ValidationError, validate_plan_shape, validate_plan_with_settings
from plan_relay.services.plan_builder import PlanBuilder
from plan_relay.services.plan_codec import (
    allowance_call,
    approve_call,
    decode_bool,
    decode_uint,
    hex_to_int,
    is_adapter_allowed_call,
    is_valid_address,
    nonces_call,
    session_id_bytes,
    to_hex,
)
from plan_relay.services.plan_signer import build_call, build_typed_data, plan_hash, typed_data_digest
from plan_relay.services.portfolio import PortfolioSource, settle
from plan_relay.services.receipts import ReceiptConfirmer, ReceiptOutcome
from plan_relay.services.relayer import RelayExecutionError
from plan_relay.services.rpc_client import ChainError
from plan_relay.services.session_manager import SessionManager, evaluate_session_policy

logger = logging.getLogger(__name__)

TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
PREFLIGHT_PROBE_ADDRESS = "0x" + "1" * 40


class ApiError(Exception):
    """Request-level failure with an explicit HTTP status and error code."""

    def __init__(self, status_code: int, error: str, error_code: str, extra: dict | None = None) -> None:
        super().__init__(error)
        self.status_code = status_code
        self.error = error
        self.error_code = error_code
        self.extra = extra or {}


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    status: str
    receipt_status: str
    portfolio: dict
    notes: tuple[str, ...] = ()
    tx_hash: str | None = None
    block_number: int | None = None
    plan_hash: str | None = None
    error: str | None = None
    error_code: str | None = None
    portfolio_delta: dict | None = None
    chain_id: int | None = None
    explorer_url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            "success": self.success,
            "status": self.status,
            "txHash": self.tx_hash,
            "receiptStatus": self.receipt_status,
            "blockNumber": self.block_number,
            "planHash": self.plan_hash,
            "error": self.error,
            "errorCode": self.error_code,
            "portfolioDelta": self.portfolio_delta,
            "portfolio": self.portfolio,
            "chainId": self.chain_id,
            "explorerUrl": self.explorer_url,
            "notes": list(self.notes),
        }
        return {key: value for key, value in payload.items() if value is not None}


class ExecutionService:
    def __init__(
        self,
        settings: Settings,
        session_factory,
        portfolio: PortfolioSource,
        session_manager: SessionManager,
        rpc=None,
        relayer=None,
        confirmer: ReceiptConfirmer | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.portfolio = portfolio
        self.sessions = session_manager
        self.rpc = rpc
        self.relayer = relayer
        self.confirmer = confirmer
        self.builder = PlanBuilder(settings)
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def _ensure_enabled(self) -> None:
        if self.settings.execution_disabled:
            raise ApiError(503, "Execution temporarily disabled", "EXECUTION_DISABLED")

    def _explorer_url(self, tx_hash: str) -> str:
        return f"{self.settings.explorer_tx_url}{tx_hash}"

    async def fetch_nonce(self, user: str) -> tuple[int, list[str]]:
        if self.rpc is None or not self.settings.router_address:
            return 0, ["ETH_TESTNET_RPC_URL missing; nonce fetch disabled (first tx only)."]
        try:
            result = await self.rpc.eth_call(self.settings.router_address, nonces_call(user))
            return decode_uint(result), []
        except (ChainError, ValueError) as exc:
            logger.warning("Nonce fetch failed for %s: %s", hash_address(user), exc)
            return 0, [f"Nonce fetch failed: {exc}. Using nonce 0 (first tx only)."]

    async def _approval_requirements(self, user: str, built) -> tuple[list[dict], list[str]]:
        approvals: list[dict] = []
        warnings: list[str] = []
        if self.rpc is None or not built.approvals:
            return approvals, warnings
        router = self.settings.router_address
        for need in built.approvals:
            try:
                allowance = decode_uint(await self.rpc.eth_call(need.token, allowance_call(user, router)))
            except (ChainError, ValueError) as exc:
                warnings.append(f"Could not verify token allowance: {exc}. Proceeding anyway.")
                continue
            if allowance < need.amount:
                approvals.append(
                    {
                        "token": need.token,
                        "spender": router,
                        "amount": hex(need.amount),
                        "data": to_hex(approve_call(router, need.amount)),
                    }
                )
        return approvals, warnings

    async def prepare(self, request: PrepareRequest) -> dict:
        self._ensure_enabled()
        auth_mode = request.auth_mode or self.settings.execution_auth_mode
        if self.settings.v1_demo and auth_mode != "session":
            raise ApiError(403, "Direct execution is blocked in V1 demo mode; use session mode", "V1_DEMO_DIRECT_BLOCKED")
        if self.settings.execution_mode != "eth_testnet":
            raise ApiError(400, "Execution mode is not eth_testnet", "EXECUTION_MODE_SIM")
        missing = self.settings.missing_testnet_config()
        if missing:
            raise ApiError(503, "Execution is not configured", "NOT_CONFIGURED", {"required": missing})
        if not is_valid_address(request.user_address):
            raise ValidationError("Invalid userAddress", {"userAddress": request.user_address})

        user = request.user_address.lower()
        now = self._now()
        nonce, warnings = await self.fetch_nonce(user)
        built = self.builder.build(request.execution_request, user, nonce, now, auth_mode)
        validate_plan_with_settings(built.plan, built.value, now, self.settings)
        approvals, approval_warnings = await self._approval_requirements(user, built)

        response = {
            "chainId": self.settings.chain_id,
            "to": self.settings.router_address,
            "value": hex(built.value),
            "plan": built.plan.to_message(),
            "planHash": plan_hash(built.plan),
            "typedData": build_typed_data(built.plan, self.settings.chain_id, self.settings.router_address),
            "typedDataDigest": typed_data_digest(built.plan, self.settings.chain_id, self.settings.router_address),
            "call": build_call(built.plan),
            "summary": built.summary,
            "warnings": warnings + list(built.warnings) + approval_warnings,
            "routing": built.routing,
        }
        if approvals:
            response["requirements"] = {"approvals": approvals}
        logger.info(
            "Prepared plan for %s (draft=%s, actions=%s, auth=%s)",
            hash_address(user),
            request.draft_id,
            len(built.plan.actions),
            auth_mode,
        )
        return response

    def _find_record(self, db, draft_id: str) -> ExecutionRecord | None:
        return db.query(ExecutionRecord).filter(ExecutionRecord.draft_id == draft_id).one_or_none()

    def _replay(self, record: ExecutionRecord, user: str) -> dict:
        success = record.status == "success"
        error = record.error
        if record.status == "submitting":
            error = "Relay for this draftId is already in flight"
        return ExecutionResult(
            success=success,
            status="success" if success else "failed",
            receipt_status=record.receipt_status or "pending",
            portfolio=self.portfolio.snapshot(user).to_dict(),
            notes=(f"execution_path:{record.mode}", "idempotent_replay"),
            tx_hash=record.tx_hash,
            block_number=record.block_number,
            plan_hash=record.plan_hash,
            error=error,
            error_code=record.error_code,
            chain_id=self.settings.chain_id,
            explorer_url=self._explorer_url(record.tx_hash) if record.tx_hash else None,
        ).to_dict()

    def _claim_draft(self, draft_id: str, user: str, mode: str, digest: str | None) -> ExecutionRecord | None:
        """Insert a ledger row for draft_id. Returns the existing row when the draft was already submitted."""
        with self.session_factory() as db:
            existing = self._find_record(db, draft_id)
            if existing is not None:
                if existing.status == "failed" and existing.tx_hash is None:
                    existing.status = "submitting"
                    existing.error = None
                    existing.error_code = None
                    existing.plan_hash = digest
                    db.commit()
                    return None
                db.expunge(existing)
                return existing
            db.add(
                ExecutionRecord(
                    draft_id=draft_id,
                    user_hash=hash_address(user),
                    mode=mode,
                    plan_hash=digest,
                    status="submitting",
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                existing = self._find_record(db, draft_id)
                db.expunge(existing)
                return existing
        return None

    def _update_record(self, draft_id: str, **fields: Any) -> None:
        with self.session_factory() as db:
            record = self._find_record(db, draft_id)
            if record is None:
                return
            for key, value in fields.items():
                setattr(record, key, value)
            db.commit()

    def _result_from_outcome(
        self, tx_hash: str, outcome: ReceiptOutcome, before, user: str, digest: str | None, path: str
    ) -> ExecutionResult:
        after, delta = settle(before, outcome, self.portfolio, user)
        return ExecutionResult(
            success=outcome.confirmed,
            status="success" if outcome.confirmed else "failed",
            receipt_status=outcome.status.value,
            portfolio=after.to_dict(),
            notes=(f"execution_path:{path}",),
            tx_hash=tx_hash,
            block_number=outcome.block_number,
            plan_hash=digest,
            error=outcome.error,
            portfolio_delta=delta.to_dict(),
            chain_id=self.settings.chain_id,
            explorer_url=self._explorer_url(tx_hash),
        )

    async def relay(self, request: RelayedRequest) -> tuple[int, dict]:
        self._ensure_enabled()
        missing = [
            name
            for name, value in (
                ("draftId", request.draft_id),
                ("userAddress", request.user_address),
                ("plan", request.plan),
                ("sessionId", request.session_id),
            )
            if not value
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", {"missing": missing})
        try:
            plan = request.plan.to_plan()
            value = hex_to_int(request.value or "0x0")
            raw_session_id = session_id_bytes(request.session_id)
        except ValueError as exc:
            raise ValidationError(f"Malformed relay request: {exc}") from exc
        validate_plan_shape(plan, value)
        user = request.user_address.lower()

        if self.settings.v1_demo and len(plan.actions) != 1:
            raise ApiError(
                400,
                f"V1 demo relays single-action plans only. Got {len(plan.actions)} actions.",
                "V1_DEMO_MULTI_ACTION_REJECTED",
            )
        if (
            not self.settings.session_mode_enabled
            or self.sessions.missing_prerequisites()
            or self.relayer is None
            or not await self.sessions.is_router_deployed()
        ):
            raise ApiError(
                400,
                "Session mode is not enabled",
                "SESSION_DISABLED",
                {"required": self.sessions.missing_prerequisites()},
            )

        validate_plan_with_settings(plan, value, self._now(), self.settings)
        lookup = await self.sessions.status(request.session_id)
        decision = evaluate_session_policy(lookup, plan, value)
        if not decision.allowed:
            raise ApiError(400, decision.message, decision.code, {"details": decision.details})

        try:
            digest = plan_hash(plan)
        except EncodingError as exc:
            raise ValidationError(f"Plan could not be encoded: {exc}") from exc
        existing = self._claim_draft(request.draft_id, user, "relayed", digest)
        if existing is not None:
            logger.info("Replaying recorded relay for draft %s", request.draft_id)
            return 200, self._replay(existing, user)

        before = self.portfolio.snapshot(user)
        try:
            tx_hash = await self.relayer.submit(raw_session_id, plan, value)
        except RelayExecutionError as exc:
            self._update_record(request.draft_id, status="failed", error=str(exc), error_code=exc.kind.value)
            result = ExecutionResult(
                success=False,
                status="failed",
                receipt_status="failed",
                portfolio=before.to_dict(),
                notes=("execution_path:relayed",),
                plan_hash=digest,
                error=str(exc),
                error_code=exc.kind.value,
                chain_id=self.settings.chain_id,
            )
            return 500, result.to_dict()
        except ValidationError:
            self._update_record(request.draft_id, status="failed", error="guard rejected plan at submission")
            raise

        self._update_record(request.draft_id, tx_hash=tx_hash, receipt_status="pending")
        outcome = await self.confirmer.wait(tx_hash)
        result = self._result_from_outcome(tx_hash, outcome, before, user, digest, "relayed")
        self._update_record(
            request.draft_id,
            status=result.status,
            receipt_status=result.receipt_status,
            block_number=result.block_number,
            error=result.error,
        )
        return 200, result.to_dict()

    async def submit(self, request: SubmitRequest) -> dict:
        missing = [name for name, value in (("draftId", request.draft_id), ("txHash", request.tx_hash)) if not value]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", {"missing": missing})
        if not TX_HASH_RE.match(request.tx_hash):
            raise ValidationError("Invalid txHash format", {"txHash": request.tx_hash})
        if self.confirmer is None:
            raise ApiError(503, "Execution is not configured", "NOT_CONFIGURED", {"required": ["ETH_TESTNET_RPC_URL"]})
        user = (request.user_address or "").lower()

        with self.session_factory() as db:
            record = self._find_record(db, request.draft_id)
            if record is None:
                db.add(
                    ExecutionRecord(
                        draft_id=request.draft_id,
                        user_hash=hash_address(user),
                        mode="direct",
                        tx_hash=request.tx_hash,
                        status="submitting",
                        receipt_status="pending",
                    )
                )
                db.commit()
            elif record.tx_hash and record.tx_hash.lower() != request.tx_hash.lower():
                raise ValidationError(
                    "draftId already recorded with a different txHash", {"draftId": request.draft_id}
                )

        before = self.portfolio.snapshot(user)
        outcome = await self.confirmer.wait(request.tx_hash)
        result = self._result_from_outcome(request.tx_hash, outcome, before, user, None, "direct")
        self._update_record(
            request.draft_id,
            status=result.status,
            receipt_status=result.receipt_status,
            block_number=result.block_number,
            error=result.error,
        )
        logger.info("Direct submission %s settled as %s", short_hex(request.tx_hash), result.receipt_status)
        return result.to_dict()

    async def status(self, tx_hash: str | None) -> dict:
        if not tx_hash or not TX_HASH_RE.match(tx_hash):
            raise ValidationError("Invalid txHash format", {"txHash": tx_hash})
        if self.confirmer is None:
            raise ApiError(503, "Execution is not configured", "NOT_CONFIGURED", {"required": ["ETH_TESTNET_RPC_URL"]})
        try:
            outcome = await self.confirmer.check(tx_hash)
        except ChainError as exc:
            logger.warning("Status check failed for %s: %s", short_hex(tx_hash), exc)
            return {"txHash": tx_hash, "status": "pending", "error": str(exc)}
        payload = {"txHash": tx_hash, "status": outcome.status.value, "explorerUrl": self._explorer_url(tx_hash)}
        if outcome.block_number is not None:
            payload["blockNumber"] = outcome.block_number
        return payload

    async def preflight(self) -> dict:
        settings = self.settings
        notes: list[str] = []
        response = {
            "mode": settings.execution_mode,
            "ok": False,
            "chainId": settings.chain_id,
            "router": settings.router_address or None,
            "adapter": settings.allowed_adapters[0] if settings.allowed_adapters else None,
            "rpc": False,
            "routerDeployed": False,
            "adapterAllowlisted": False,
            "nonce": False,
            "session": {
                "enabled": settings.session_mode_enabled and not self.sessions.missing_prerequisites(),
                "missing": self.sessions.missing_prerequisites(),
            },
            "notes": notes,
        }
        if settings.execution_mode != "eth_testnet":
            notes.append("EXECUTION_MODE is not eth_testnet")
            return response
        missing = settings.missing_testnet_config()
        if missing or self.rpc is None:
            notes.append(f"Missing configuration: {', '.join(missing or ['ETH_TESTNET_RPC_URL'])}")
            return response

        try:
            await self.rpc.block_number()
            response["rpc"] = True
        except ChainError as exc:
            notes.append(f"RPC unreachable: {exc}")
            return response
        try:
            code = await self.rpc.get_code(settings.router_address)
            response["routerDeployed"] = len(code) > 0
            if not code:
                notes.append("Router has no code at configured address")
        except ChainError as exc:
            notes.append(f"Router code check failed: {exc}")
        try:
            allowed = [
                decode_bool(await self.rpc.eth_call(settings.router_address, is_adapter_allowed_call(adapter)))
                for adapter in settings.allowed_adapters
            ]
            response["adapterAllowlisted"] = all(allowed)
            if not all(allowed):
                notes.append("One or more configured adapters are not allowlisted on the router")
        except ChainError as exc:
            notes.append(f"Adapter allowlist check failed: {exc}")
        try:
            await self.rpc.get_transaction_count(PREFLIGHT_PROBE_ADDRESS, "latest")
            response["nonce"] = True
        except ChainError as exc:
            notes.append(f"Nonce check failed: {exc}")

        response["ok"] = all(response[key] for key in ("rpc", "routerDeployed", "adapterAllowlisted", "nonce"))
        return response
