from dataclasses import dataclass, field
from typing import Any, Protocol

from plan_relay.services.receipts import ReceiptOutcome


@dataclass(frozen=True)
class Balance:
    symbol: str
    balance_usd: float


@dataclass(frozen=True)
class PortfolioSnapshot:
    account_value_usd: float = 0.0
    balances: tuple[Balance, ...] = ()
    open_perp_exposure_usd: float = 0.0
    event_exposure_usd: float = 0.0
    defi_positions: tuple[dict, ...] = ()
    strategies: tuple[dict, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountValueUsd": self.account_value_usd,
            "balances": [{"symbol": b.symbol, "balanceUsd": b.balance_usd} for b in self.balances],
            "openPerpExposureUsd": self.open_perp_exposure_usd,
            "eventExposureUsd": self.event_exposure_usd,
            "defiPositions": list(self.defi_positions),
            "strategies": list(self.strategies),
        }


@dataclass(frozen=True)
class BalanceDelta:
    symbol: str
    delta_usd: float


@dataclass(frozen=True)
class PortfolioDelta:
    account_value_delta_usd: float = 0.0
    balance_deltas: tuple[BalanceDelta, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {
            "accountValueDeltaUsd": self.account_value_delta_usd,
            "balanceDeltas": [{"symbol": d.symbol, "deltaUsd": d.delta_usd} for d in self.balance_deltas],
        }


class PortfolioSource(Protocol):
    def snapshot(self, user: str) -> PortfolioSnapshot: ...


class InMemoryPortfolioStore:
    def __init__(self, default: PortfolioSnapshot | None = None) -> None:
        self._default = default or PortfolioSnapshot()
        self._snapshots: dict[str, PortfolioSnapshot] = {}

    def snapshot(self, user: str) -> PortfolioSnapshot:
        return self._snapshots.get((user or "").lower(), self._default)

    def update(self, user: str, snapshot: PortfolioSnapshot) -> None:
        self._snapshots[(user or "").lower()] = snapshot


def compute_delta(before: PortfolioSnapshot, after: PortfolioSnapshot) -> PortfolioDelta:
    before_balances = {b.symbol: b.balance_usd for b in before.balances}
    deltas = [BalanceDelta(b.symbol, b.balance_usd - before_balances.get(b.symbol, 0.0)) for b in after.balances]
    after_symbols = {b.symbol for b in after.balances}
    deltas.extend(BalanceDelta(b.symbol, -b.balance_usd) for b in before.balances if b.symbol not in after_symbols)
    return PortfolioDelta(
        account_value_delta_usd=after.account_value_usd - before.account_value_usd,
        balance_deltas=tuple(deltas),
    )


def settle(
    before: PortfolioSnapshot, outcome: ReceiptOutcome, source: PortfolioSource, user: str
) -> tuple[PortfolioSnapshot, PortfolioDelta]:
    """Read the after snapshot only for a confirmed receipt; otherwise after is before."""
    after = source.snapshot(user) if outcome.confirmed else before
    return after, compute_delta(before, after)
