import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from eth_account import Account

from plan_relay.config import Settings
from plan_relay.logging_utils import hash_address, short_hex
from plan_relay.services.plan_codec import (
    ZERO_ADDRESS,
    ActionType,
    OnChainSession,
    PayloadDecodeError,
    Plan,
    create_session_call,
    decode_lend_supply,
    decode_pull,
    decode_session,
    decode_swap,
    keccak,
    revoke_session_call,
    session_id_bytes,
    sessions_call,
    to_hex,
    unwrap_session,
)
from plan_relay.services.rate_limit import TTLCache
from plan_relay.services.rpc_client import ChainError

logger = logging.getLogger(__name__)

PULL_PAYLOAD_SIZE = 96
LEND_PAYLOAD_SIZE = 128


class ConfigError(Exception):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing configuration: {', '.join(missing)}")
        self.missing = missing


@dataclass(frozen=True)
class SessionLookup:
    """Outcome of a session status read. reason is set when status could not be read."""

    status: str
    session: OnChainSession | None = None
    reason: str | None = None


@dataclass(frozen=True)
class SessionCreation:
    session_id: str
    to: str
    data: str
    value: str
    summary: str
    capability_snapshot: dict


@dataclass(frozen=True)
class SpendEstimate:
    spend_wei: int
    determinable: bool
    instrument_type: str | None = None


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    code: str | None = None
    message: str | None = None
    details: dict = field(default_factory=dict)


def derive_status(session: OnChainSession, now: int) -> str:
    if session.active:
        return "active" if session.expires_at > now else "expired"
    if session.owner and session.owner != ZERO_ADDRESS:
        return "revoked"
    return "not_created"


def _wrapped_units(data: bytes) -> int:
    units, _ = unwrap_session(data)
    return units


def estimate_plan_spend(plan: Plan, value: int = 0) -> SpendEstimate:
    """Best-effort spend estimate; direct payloads count their amount, wrapped ones their max spend units."""
    total = value
    instrument_type = None
    for action in plan.actions:
        try:
            if action.action_type == ActionType.SWAP:
                instrument_type = "swap"
                if len(action.data) == 7 * 32:
                    total += decode_swap(action.data).amount_in
                else:
                    total += _wrapped_units(action.data)
            elif action.action_type == ActionType.PULL:
                if len(action.data) == PULL_PAYLOAD_SIZE:
                    total += decode_pull(action.data)[2]
                else:
                    total += _wrapped_units(action.data)
            elif action.action_type == ActionType.WRAP:
                instrument_type = instrument_type or "swap"
            elif action.action_type == ActionType.LEND_SUPPLY:
                instrument_type = "defi"
                if len(action.data) == LEND_PAYLOAD_SIZE:
                    total += decode_lend_supply(action.data)[2]
                else:
                    total += _wrapped_units(action.data)
            elif action.action_type == ActionType.PROOF:
                instrument_type = instrument_type or "proof"
            else:
                return SpendEstimate(total, False, instrument_type)
        except PayloadDecodeError:
            return SpendEstimate(total, False, instrument_type)
    return SpendEstimate(total, True, instrument_type)


def evaluate_session_policy(lookup: SessionLookup, plan: Plan, value: int = 0) -> PolicyDecision:
    if lookup.session is None or lookup.status == "not_created":
        return PolicyDecision(
            False,
            "SESSION_NOT_ACTIVE",
            "Session not found or not active",
            {"reason": lookup.reason} if lookup.reason else {},
        )
    if lookup.status != "active":
        return PolicyDecision(
            False,
            "SESSION_EXPIRED_OR_REVOKED",
            f"Session is {lookup.status}",
            {"status": lookup.status, "expiresAt": str(lookup.session.expires_at)},
        )
    estimate = estimate_plan_spend(plan, value)
    if not estimate.determinable:
        return PolicyDecision(
            False,
            "POLICY_UNDETERMINED_SPEND",
            "Cannot determine plan spend from actions. Policy cannot be evaluated.",
            {"actionTypes": [int(a.action_type) for a in plan.actions]},
        )
    remaining = lookup.session.max_spend - lookup.session.spent
    if estimate.spend_wei > remaining:
        return PolicyDecision(
            False,
            "POLICY_EXCEEDED",
            f"Plan spend ({estimate.spend_wei}) exceeds remaining session spend limit ({remaining})",
            {
                "spendAttempted": str(estimate.spend_wei),
                "maxSpend": str(lookup.session.max_spend),
                "spent": str(lookup.session.spent),
                "remaining": str(remaining),
            },
        )
    return PolicyDecision(True)


class SessionManager:
    def __init__(
        self,
        settings: Settings,
        rpc=None,
        cache: TTLCache | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.rpc = rpc
        self.cache = cache or TTLCache(settings.router_code_cache_ttl_sec)
        self._clock = clock

    def missing_prerequisites(self) -> list[str]:
        missing = self.settings.missing_relayer_config()
        if self.rpc is None and "ETH_TESTNET_RPC_URL" not in missing:
            missing.append("ETH_TESTNET_RPC_URL")
        return missing

    def require_prerequisites(self) -> None:
        missing = self.missing_prerequisites()
        if missing:
            raise ConfigError(missing)

    def relayer_address(self) -> str:
        self.require_prerequisites()
        return Account.from_key(self.settings.relayer_private_key).address.lower()

    async def is_router_deployed(self) -> bool:
        if self.rpc is None or not self.settings.router_address:
            return False
        cache_key = ("router_code", self.settings.router_address)
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached
        try:
            code = await self.rpc.get_code(self.settings.router_address, timeout=self.settings.router_check_timeout_sec)
        except ChainError as exc:
            logger.warning("Router code check failed: %s", exc)
            return False
        deployed = len(code) > 0
        self.cache.set(cache_key, deployed)
        return deployed

    async def status(self, session_id: str) -> SessionLookup:
        if self.rpc is None or not self.settings.router_address:
            return SessionLookup("not_created", reason="NOT_CONFIGURED")
        try:
            raw_id = session_id_bytes(session_id)
        except ValueError:
            return SessionLookup("not_created", reason="INVALID_SESSION_ID")
        try:
            result = await self.rpc.eth_call(
                self.settings.router_address,
                sessions_call(raw_id),
                timeout=self.settings.session_status_timeout_sec,
            )
            session = decode_session(result)
        except (ChainError, PayloadDecodeError) as exc:
            logger.warning("Session status read failed for %s: %s", short_hex(session_id), exc)
            return SessionLookup("not_created", reason="RPC_ERROR")
        return SessionLookup(derive_status(session, int(self._clock())), session=session)

    def prepare_create(self, user: str, now: float | None = None) -> SessionCreation:
        self.require_prerequisites()
        now = self._clock() if now is None else now
        now_ms = int(now * 1000)
        executor = self.relayer_address()
        session_id = to_hex(keccak((user.lower() + str(now_ms)).encode()))
        expires_at = int(now) + self.settings.session_ttl_sec
        max_spend = self.settings.session_max_spend_wei
        adapters = list(self.settings.allowed_adapters)
        data = create_session_call(session_id_bytes(session_id), executor, expires_at, max_spend, adapters)
        logger.info("Prepared session for user %s", hash_address(user))
        return SessionCreation(
            session_id=session_id,
            to=self.settings.router_address,
            data=to_hex(data),
            value="0x0",
            summary=f"Create session for relayed execution (expires in {self.settings.session_ttl_sec // 86400} days)",
            capability_snapshot={
                "sessionId": session_id,
                "caps": {
                    "maxSpend": str(max_spend),
                    "maxSpendUsd": str(max_spend * 1000 // 10**18),
                    "expiresAt": expires_at,
                    "expiresAtIso": datetime.fromtimestamp(expires_at, tz=timezone.utc).isoformat(),
                },
                "allowlistedAdapters": adapters,
                "approvals": [],
                "expiresAt": expires_at,
            },
        )

    def prepare_revoke(self, session_id: str) -> dict:
        if not self.settings.router_address:
            raise ConfigError(["EXECUTION_ROUTER_ADDRESS"])
        data = revoke_session_call(session_id_bytes(session_id))
        return {
            "to": self.settings.router_address,
            "data": to_hex(data),
            "value": "0x0",
            "summary": f"Revoke session {short_hex(session_id)}",
        }
