from typing import Sequence

from plan_relay.services.plan_codec import ActionType, PayloadDecodeError, Plan, decode_swap, is_valid_address

ONE_NATIVE_UNIT = 10**18
MAX_UINT256 = 2**256 - 1


class ValidationError(ValueError):
    def __init__(self, reason: str, details: dict | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.details = details or {}


def validate_plan_shape(plan: Plan, value: int = 0) -> None:
    """Reject plans that cannot be ABI-encoded: bad user address or out-of-range integers."""
    if not is_valid_address(plan.user):
        raise ValidationError("Plan user must be a 0x-prefixed 20-byte address", {"user": plan.user})
    for name, number in (("nonce", plan.nonce), ("deadline", plan.deadline), ("value", value)):
        if not 0 <= number <= MAX_UINT256:
            raise ValidationError(f"Plan {name} must be a uint256", {name: str(number)})


def _check_action_count(plan: Plan, max_actions: int) -> None:
    count = len(plan.actions)
    if count == 0:
        raise ValidationError("Plan must have at least one action")
    if count > max_actions:
        raise ValidationError(
            f"Plan exceeds maximum action count ({max_actions}). Got {count} actions.",
            {"count": count, "max": max_actions},
        )


def _check_adapters(plan: Plan, allowed_adapters: Sequence[str]) -> None:
    allowed = [adapter.lower() for adapter in allowed_adapters]
    for index, action in enumerate(plan.actions):
        adapter = (action.adapter or "").lower()
        if not adapter:
            raise ValidationError("Action missing adapter address", {"actionIndex": index})
        if adapter not in allowed:
            raise ValidationError(
                f"Adapter {adapter} not allowed. Allowed adapters: {', '.join(allowed)}",
                {"actionIndex": index, "adapter": adapter},
            )


def _check_deadline(plan: Plan, now: int, max_deadline_sec: int) -> None:
    if plan.deadline <= now:
        raise ValidationError("Plan deadline must be in the future", {"deadline": plan.deadline, "now": now})
    max_deadline = now + max_deadline_sec
    if plan.deadline > max_deadline:
        raise ValidationError(
            f"Plan deadline too far in future. Maximum: {max_deadline} "
            f"({max_deadline_sec // 60} minutes), got: {plan.deadline}",
            {"deadline": plan.deadline, "maxDeadline": max_deadline},
        )


def _check_swaps(plan: Plan, allowed_tokens: Sequence[str], max_swap_amount: int) -> None:
    allowed = [token.lower() for token in allowed_tokens]
    for index, action in enumerate(plan.actions):
        if action.action_type != ActionType.SWAP:
            continue
        try:
            swap = decode_swap(action.data)
        except PayloadDecodeError as exc:
            raise ValidationError("Could not decode swap action payload", {"actionIndex": index}) from exc
        for token in (swap.token_in, swap.token_out):
            if token not in allowed:
                raise ValidationError(
                    f"Token {token} not allowed. Allowed tokens: {', '.join(allowed)}",
                    {"actionIndex": index, "token": token},
                )
        if swap.amount_in > max_swap_amount:
            raise ValidationError(
                f"Swap amountIn exceeds maximum (1 ETH). Got {swap.amount_in}",
                {"actionIndex": index, "amountIn": str(swap.amount_in)},
            )


def validate_plan(
    plan: Plan,
    value: int,
    now: int,
    allowed_adapters: Sequence[str],
    allowed_tokens: Sequence[str],
    max_actions: int = 4,
    max_deadline_sec: int = 600,
    max_swap_amount: int = ONE_NATIVE_UNIT,
    max_value: int = ONE_NATIVE_UNIT,
) -> None:
    """Run every guard in order and raise ValidationError on the first failure."""
    _check_action_count(plan, max_actions)
    _check_adapters(plan, allowed_adapters)
    _check_deadline(plan, now, max_deadline_sec)
    _check_swaps(plan, allowed_tokens, max_swap_amount)
    if value > max_value:
        raise ValidationError(f"Plan value exceeds maximum (1 ETH). Got {value}", {"value": str(value)})


def validate_plan_with_settings(plan: Plan, value: int, now: int, settings) -> None:
    validate_plan(
        plan,
        value,
        now,
        allowed_adapters=settings.allowed_adapters,
        allowed_tokens=settings.allowed_tokens,
        max_actions=settings.max_plan_actions,
        max_deadline_sec=settings.max_deadline_sec,
        max_swap_amount=settings.max_swap_amount_wei,
        max_value=settings.max_plan_value_wei,
    )
