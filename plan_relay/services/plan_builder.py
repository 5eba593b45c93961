import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

from plan_relay.config import Settings
from plan_relay.schemas import EventRequest, LendSupplyRequest, PerpRequest, SwapRequest
from plan_relay.services.plan_codec import (
    Action,
    ActionType,
    Plan,
    SwapParams,
    encode_lend_supply,
    encode_proof,
    encode_pull,
    encode_swap,
    encode_wrap,
    keccak,
    wrap_session,
)

DEFAULT_FEE_TIER = 3000
PERP_VENUE = 1
EVENT_VENUE = 2
DEFAULT_PERP_RISK_PCT = 3


class UnsupportedIntent(ValueError):
    pass


class MissingParameter(ValueError):
    pass


@dataclass(frozen=True)
class ApprovalNeed:
    token: str
    amount: int


@dataclass(frozen=True)
class BuiltPlan:
    plan: Plan
    value: int
    summary: str
    warnings: tuple[str, ...] = ()
    approvals: tuple[ApprovalNeed, ...] = ()
    routing: dict = field(default_factory=dict)


def parse_units(amount: str, decimals: int) -> int:
    if amount is None or not str(amount).strip():
        raise MissingParameter("amount is required")
    try:
        value = Decimal(str(amount).strip())
    except InvalidOperation as exc:
        raise UnsupportedIntent(f"Invalid amount: {amount}") from exc
    if not value.is_finite() or value <= 0:
        raise UnsupportedIntent(f"Amount must be positive: {amount}")
    units = value.scaleb(decimals)
    if units != units.to_integral_value():
        raise UnsupportedIntent(f"Amount {amount} has more than {decimals} decimals")
    return int(units)


def _fmt(number: float) -> str:
    return f"{number:g}"


def _canonical_json(payload: dict) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()


class PlanBuilder:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def select_swap_venue(self) -> tuple[str, str]:
        if self.settings.uniswap_v3_adapter:
            return self.settings.uniswap_v3_adapter, "Uniswap V3"
        if self.settings.mock_swap_adapter:
            return self.settings.mock_swap_adapter, "Demo swap venue"
        raise MissingParameter("UNISWAP_V3_ADAPTER_ADDRESS not configured")

    def build(self, request, user: str, nonce: int, now: int, auth_mode: str = "direct") -> BuiltPlan:
        user = user.lower()
        deadline = now + self.settings.max_deadline_sec
        session = auth_mode == "session"
        if isinstance(request, SwapRequest):
            built = self._build_swap(request, user, nonce, deadline, session)
        elif isinstance(request, LendSupplyRequest):
            built = self._build_lend(request, user, nonce, deadline, session)
        elif isinstance(request, PerpRequest):
            built = self._build_perp(request, user, nonce, deadline, now, session)
        elif isinstance(request, EventRequest):
            built = self._build_event(request, user, nonce, deadline, now, session)
        else:
            raise UnsupportedIntent(f"Unsupported execution request: {getattr(request, 'kind', request)!r}")
        return built

    def _require(self, value: str, name: str) -> str:
        if not value:
            raise MissingParameter(f"{name} not configured")
        return value

    def _token(self, symbol: str) -> str:
        address = self.settings.token_address(symbol)
        if not address:
            raise MissingParameter(f"Token address for {symbol} not configured")
        return address

    def _swap_action(self, adapter: str, params: SwapParams, session: bool) -> Action:
        data = encode_swap(params)
        if session:
            data = wrap_session(params.amount_in // (100 * 10**6) + 1, data)
        return Action(ActionType.SWAP, adapter, data)

    def _build_swap(self, request: SwapRequest, user: str, nonce: int, deadline: int, session: bool) -> BuiltPlan:
        token_in = request.token_in.strip().upper()
        token_out = request.token_out.strip().upper()
        stable = self.settings.stable_symbol.upper()
        if token_in not in {"ETH", "WETH", stable}:
            raise UnsupportedIntent(f"Unsupported tokenIn: {request.token_in}")
        if token_out not in {"WETH", stable}:
            raise UnsupportedIntent(f"Unsupported tokenOut: {request.token_out}")
        if token_in == token_out:
            raise UnsupportedIntent("tokenIn and tokenOut must differ")

        amount_in = parse_units(request.amount_in, self.settings.token_decimals(token_in))
        amount_out_min = int(request.amount_out_min) if request.amount_out_min else 0
        fee = request.fee_tier or DEFAULT_FEE_TIER

        if token_in == "ETH":
            if request.funding_policy != "auto" or not self.settings.weth_wrap_adapter:
                raise UnsupportedIntent("Swapping native ETH requires fundingPolicy=auto and a WETH wrap adapter")
            return self._build_funding_route(
                request, token_out, amount_in, amount_out_min, fee, user, nonce, deadline, session
            )

        adapter, venue = self.select_swap_venue()
        token_in_address = self._token(token_in)
        params = SwapParams(
            token_in=token_in_address,
            token_out=self._token(token_out),
            fee=fee,
            amount_in=amount_in,
            amount_out_min=amount_out_min,
            recipient=user,
            deadline=deadline,
        )
        actions = []
        if self.settings.erc20_pull_adapter:
            pull = encode_pull(token_in_address, user, amount_in)
            if session:
                pull = wrap_session(amount_in // (100 * 10**6) + 1, pull)
            actions.append(Action(ActionType.PULL, self.settings.erc20_pull_adapter, pull))
        actions.append(self._swap_action(adapter, params, session))
        return BuiltPlan(
            plan=Plan(user, nonce, deadline, tuple(actions)),
            value=0,
            summary=f"Swap {request.amount_in} {token_in} to {token_out} via {venue}",
            approvals=(ApprovalNeed(token_in_address, amount_in),),
            routing={
                "venue": venue,
                "chain": "Sepolia",
                "routingSource": "deterministic",
                "feeTier": fee,
                "minOutRaw": str(amount_out_min),
                "settlementEstimate": "~1 block",
            },
        )

    def _build_funding_route(
        self,
        request: SwapRequest,
        token_out: str,
        amount_in: int,
        amount_out_min: int,
        fee: int,
        user: str,
        nonce: int,
        deadline: int,
        session: bool,
    ) -> BuiltPlan:
        wrap_adapter = self.settings.weth_wrap_adapter
        weth = self._token("WETH")
        spend_units = amount_in // (100 * 10**6) + 1
        if token_out == "WETH":
            wrap = encode_wrap(user)
            if session:
                wrap = wrap_session(spend_units, wrap)
            actions = (Action(ActionType.WRAP, wrap_adapter, wrap),)
            summary = f"Wrap {request.amount_in} ETH to WETH"
            venue = "WETH wrap"
        else:
            router = self._require(self.settings.router_address, "EXECUTION_ROUTER_ADDRESS")
            adapter, venue = self.select_swap_venue()
            wrap = encode_wrap(router)
            if session:
                wrap = wrap_session(spend_units, wrap)
            params = SwapParams(
                token_in=weth,
                token_out=self._token(token_out),
                fee=fee,
                amount_in=amount_in,
                amount_out_min=amount_out_min,
                recipient=user,
                deadline=deadline,
            )
            actions = (Action(ActionType.WRAP, wrap_adapter, wrap), self._swap_action(adapter, params, session))
            summary = f"Wrap {request.amount_in} ETH to WETH, then swap WETH to {token_out} via {venue}"
        return BuiltPlan(
            plan=Plan(user, nonce, deadline, actions),
            value=amount_in,
            summary=summary,
            warnings=(
                f"FUNDING_ROUTE: Composing atomic route: Wrap {request.amount_in} ETH to WETH"
                + ("" if token_out == "WETH" else f", then swap WETH to {token_out}")
                + ".",
            ),
            routing={
                "venue": venue,
                "chain": "Sepolia",
                "routingSource": "deterministic",
                "fundingRoute": True,
                "settlementEstimate": "~1 block",
            },
        )

    def _build_lend(self, request: LendSupplyRequest, user: str, nonce: int, deadline: int, session: bool) -> BuiltPlan:
        asset_symbol = request.asset.strip().upper()
        if asset_symbol not in {"WETH", self.settings.stable_symbol.upper()}:
            raise UnsupportedIntent(f"Unsupported lending asset: {request.asset}")
        pull_adapter = self._require(self.settings.erc20_pull_adapter, "ERC20_PULL_ADAPTER_ADDRESS")
        lend_adapter = self._require(self.settings.lend_adapter, "DEMO_LEND_ADAPTER_ADDRESS")
        vault = (request.vault or self.settings.lend_vault or "").lower()
        if not vault:
            raise MissingParameter("DEMO_LEND_VAULT_ADDRESS not configured")
        asset = self._token(asset_symbol)
        amount = parse_units(request.amount, self.settings.token_decimals(asset_symbol))

        pull = encode_pull(asset, user, amount)
        lend = encode_lend_supply(asset, vault, amount, user)
        if session:
            pull = wrap_session(0, pull)
            lend = wrap_session(0, lend)
        actions = (
            Action(ActionType.PULL, pull_adapter, pull),
            Action(ActionType.LEND_SUPPLY, lend_adapter, lend),
        )
        return BuiltPlan(
            plan=Plan(user, nonce, deadline, actions),
            value=0,
            summary=f"Supply {request.amount} {asset_symbol} to vault {vault[:10]}...",
            approvals=(ApprovalNeed(asset, amount),),
            routing={
                "venue": "Demo lending vault",
                "chain": "Sepolia",
                "routingSource": "deterministic",
                "settlementEstimate": "~1 block",
            },
        )

    def _proof_plan(
        self,
        user: str,
        nonce: int,
        deadline: int,
        venue_type: int,
        intent: dict,
        proof_summary: str,
        summary: str,
        venue: str,
        session: bool,
    ) -> BuiltPlan:
        adapter = self._require(self.settings.proof_adapter, "PROOF_ADAPTER_ADDRESS")
        data = encode_proof(user, venue_type, keccak(_canonical_json(intent)), proof_summary)
        if session:
            data = wrap_session(0, data)
        return BuiltPlan(
            plan=Plan(user, nonce, deadline, (Action(ActionType.PROOF, adapter, data),)),
            value=0,
            summary=summary,
            routing={
                "venue": venue,
                "chain": "Sepolia",
                "routingSource": "proof",
                "venueType": venue_type,
                "executionVenue": "On-chain proof (venue execution simulated)",
                "settlementEstimate": "~1 block",
            },
        )

    def _build_perp(
        self, request: PerpRequest, user: str, nonce: int, deadline: int, now: int, session: bool
    ) -> BuiltPlan:
        risk_pct = request.risk_pct if request.risk_pct is not None else DEFAULT_PERP_RISK_PCT
        side = request.side.upper()
        intent = {
            "type": "perp",
            "market": request.market,
            "side": request.side,
            "leverage": request.leverage,
            "riskPct": risk_pct,
            "marginUsd": request.margin_usd,
            "timestamp": now,
        }
        return self._proof_plan(
            user,
            nonce,
            deadline,
            PERP_VENUE,
            intent,
            f"PERP:{request.market}-{side}-{_fmt(request.leverage)}x-{_fmt(risk_pct)}%",
            f"{side} {request.market} @ {_fmt(request.leverage)}x leverage ({_fmt(risk_pct)}% risk)",
            f"Perps: {request.market}",
            session,
        )

    def _build_event(
        self, request: EventRequest, user: str, nonce: int, deadline: int, now: int, session: bool
    ) -> BuiltPlan:
        intent = {
            "type": "event",
            "marketId": request.market_id,
            "outcome": request.outcome,
            "stakeUsd": request.stake_usd,
            "price": request.price,
            "timestamp": now,
        }
        return self._proof_plan(
            user,
            nonce,
            deadline,
            EVENT_VENUE,
            intent,
            f"EVENT:{request.market_id}-{request.outcome}-{_fmt(request.stake_usd)}USD",
            f"{request.outcome} on {request.market_id} (${_fmt(request.stake_usd)} stake)",
            f"Event: {request.market_id}",
            session,
        )
