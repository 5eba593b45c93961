import pytest

from conftest import NOW, PROOF_ADAPTER, UNISWAP_ADAPTER, USDC, USER, WETH, make_settings
from plan_relay.services.guards import ValidationError, validate_plan, validate_plan_shape, validate_plan_with_settings
from plan_relay.services.plan_codec import Action, ActionType, Plan, SwapParams, encode_swap, wrap_session

ADAPTERS = [UNISWAP_ADAPTER, PROOF_ADAPTER]
TOKENS = [WETH, USDC]


def swap_action(token_in=WETH, token_out=USDC, amount_in=10**17, wrapped=False) -> Action:
    data = encode_swap(SwapParams(token_in, token_out, 3000, amount_in, 0, USER, NOW + 600))
    if wrapped:
        data = wrap_session(1, data)
    return Action(ActionType.SWAP, UNISWAP_ADAPTER, data)


def make_plan(actions, deadline=NOW + 300) -> Plan:
    return Plan(USER, 0, deadline, tuple(actions))


def check(plan, value=0):
    validate_plan(plan, value, NOW, ADAPTERS, TOKENS)


def test_valid_plan_passes():
    check(make_plan([swap_action()]))
    check(make_plan([swap_action(wrapped=True)]))


def test_rejects_empty_plan():
    with pytest.raises(ValidationError, match="Plan must have at least one action"):
        check(make_plan([]))


def test_rejects_five_actions():
    with pytest.raises(ValidationError) as excinfo:
        check(make_plan([swap_action()] * 5))
    assert excinfo.value.reason == "Plan exceeds maximum action count (4). Got 5 actions."


def test_count_checked_before_adapters():
    unknown = Action(ActionType.SWAP, "0x" + "99" * 20, b"")
    with pytest.raises(ValidationError, match="maximum action count"):
        check(make_plan([unknown] * 5))


def test_rejects_unknown_adapter_and_lists_allowlist():
    stranger = "0x" + "99" * 20
    with pytest.raises(ValidationError) as excinfo:
        check(make_plan([Action(ActionType.SWAP, stranger, b"")]))
    assert excinfo.value.reason == f"Adapter {stranger} not allowed. Allowed adapters: {UNISWAP_ADAPTER}, {PROOF_ADAPTER}"


def test_adapter_allowlist_is_case_insensitive():
    upper = "0x" + UNISWAP_ADAPTER[2:].upper()
    action = swap_action()
    check(make_plan([Action(action.action_type, upper, action.data)]))


def test_rejects_missing_adapter():
    with pytest.raises(ValidationError, match="Action missing adapter address"):
        check(make_plan([Action(ActionType.SWAP, "", b"")]))


def test_rejects_past_deadline():
    with pytest.raises(ValidationError) as excinfo:
        check(make_plan([swap_action()], deadline=NOW - 1))
    assert excinfo.value.reason == "Plan deadline must be in the future"


def test_rejects_deadline_beyond_ten_minutes():
    with pytest.raises(ValidationError) as excinfo:
        check(make_plan([swap_action()], deadline=NOW + 601))
    assert excinfo.value.reason == (
        f"Plan deadline too far in future. Maximum: {NOW + 600} (10 minutes), got: {NOW + 601}"
    )


def test_deadline_at_limit_is_accepted():
    check(make_plan([swap_action()], deadline=NOW + 600))


def test_rejects_token_outside_allowlist():
    stranger = "0x" + "77" * 20
    with pytest.raises(ValidationError) as excinfo:
        check(make_plan([swap_action(token_in=stranger)]))
    assert excinfo.value.reason == f"Token {stranger} not allowed. Allowed tokens: {WETH}, {USDC}"


def test_token_allowlist_applies_to_session_wrapped_swaps():
    stranger = "0x" + "77" * 20
    with pytest.raises(ValidationError, match="not allowed. Allowed tokens"):
        check(make_plan([swap_action(token_out=stranger, wrapped=True)]))


def test_rejects_undecodable_swap_payload():
    with pytest.raises(ValidationError, match="Could not decode swap action payload"):
        check(make_plan([Action(ActionType.SWAP, UNISWAP_ADAPTER, b"\x00" * 10)]))


def test_non_swap_actions_skip_token_checks():
    check(make_plan([Action(ActionType.PROOF, PROOF_ADAPTER, b"")]))


def test_rejects_swap_amount_over_one_native_unit():
    with pytest.raises(ValidationError) as excinfo:
        check(make_plan([swap_action(amount_in=2 * 10**18)]))
    assert excinfo.value.reason == f"Swap amountIn exceeds maximum (1 ETH). Got {2 * 10**18}"


def test_rejects_plan_value_over_one_native_unit():
    with pytest.raises(ValidationError) as excinfo:
        check(make_plan([swap_action()]), value=10**18 + 1)
    assert excinfo.value.reason == f"Plan value exceeds maximum (1 ETH). Got {10**18 + 1}"


def test_validate_with_settings_uses_configured_allowlists(settings):
    validate_plan_with_settings(make_plan([swap_action()]), 0, NOW, settings)
    with pytest.raises(ValidationError):
        validate_plan_with_settings(make_plan([swap_action()]), 0, NOW, make_settings(uniswap_v3_adapter=""))


def test_plan_shape_rejects_unencodable_fields():
    validate_plan_shape(make_plan([swap_action()]), 0)
    with pytest.raises(ValidationError, match="Plan user must be"):
        validate_plan_shape(Plan("0xnotanaddress", 0, NOW + 300, ()))
    with pytest.raises(ValidationError, match="Plan nonce must be a uint256"):
        validate_plan_shape(Plan(USER, -1, NOW + 300, ()))
    with pytest.raises(ValidationError, match="Plan value must be a uint256"):
        validate_plan_shape(make_plan([swap_action()]), 2**256)
