"""ABI codec for router plans, adapter payloads and router/ERC-20 calls.

Everything that turns plan data into bytes (or back) lives here so that the
plan builder, the guard checks and the relayer agree on a single layout.
"""

import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3

ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
ZERO_ADDRESS = "0x" + "0" * 40

PLAN_TYPES = ["address", "uint256", "uint256", "(uint8,address,bytes)[]"]
PLAN_TUPLE = "(address,uint256,uint256,(uint8,address,bytes)[])"
SWAP_TYPES = ["address", "address", "uint24", "uint256", "uint256", "address", "uint256"]
SESSION_WRAPPED_TYPES = ["uint256", "bytes"]
WRAP_TYPES = ["address"]
PULL_TYPES = ["address", "address", "uint256"]
LEND_SUPPLY_TYPES = ["address", "address", "uint256", "address"]
PROOF_TYPES = ["address", "uint8", "bytes32", "string"]
SESSION_TYPES = ["address", "address", "uint64", "uint256", "uint256", "bool"]

SWAP_PAYLOAD_SIZE = 32 * len(SWAP_TYPES)
PROOF_SUMMARY_MAX = 160


class ActionType(IntEnum):
    SWAP = 0
    WRAP = 1
    PULL = 2
    LEND_SUPPLY = 3
    PROOF = 6


class PayloadDecodeError(ValueError):
    """Raised when an action payload does not match the expected layout."""


@dataclass(frozen=True)
class Action:
    action_type: int
    adapter: str
    data: bytes

    def to_message(self) -> dict[str, Any]:
        return {"actionType": int(self.action_type), "adapter": self.adapter.lower(), "data": to_hex(self.data)}


@dataclass(frozen=True)
class Plan:
    user: str
    nonce: int
    deadline: int
    actions: tuple[Action, ...]

    def to_message(self) -> dict[str, Any]:
        return {
            "user": self.user.lower(),
            "nonce": str(self.nonce),
            "deadline": str(self.deadline),
            "actions": [action.to_message() for action in self.actions],
        }


@dataclass(frozen=True)
class SwapParams:
    token_in: str
    token_out: str
    fee: int
    amount_in: int
    amount_out_min: int
    recipient: str
    deadline: int


@dataclass(frozen=True)
class OnChainSession:
    owner: str
    executor: str
    expires_at: int
    max_spend: int
    spent: int
    active: bool


def to_hex(value: bytes) -> str:
    return Web3.to_hex(bytes(value))


def hex_to_bytes(value: str | bytes | None) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    # eth_utils left-pads odd-length hex; calldata and ids must be whole bytes
    if len(value.removeprefix("0x")) % 2 != 0:
        raise ValueError("invalid hex data: odd length")
    return bytes(HexBytes(value))


def hex_to_int(value: str | int | None) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    value = value.strip()
    if not value or value == "0x":
        return 0
    if value.startswith("0x"):
        return Web3.to_int(hexstr=value)
    return Web3.to_int(text=value)


def is_valid_address(address: str | None) -> bool:
    return bool(address) and bool(ADDRESS_RE.match(address))


def keccak(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


def function_selector(signature: str) -> bytes:
    return bytes(Web3.keccak(text=signature))[:4]


def encode_call(signature: str, types: Sequence[str], values: Sequence[Any]) -> bytes:
    return function_selector(signature) + encode(list(types), list(values))


def _decode(types: Sequence[str], data: bytes) -> tuple:
    try:
        return decode(list(types), data)
    except (DecodingError, ValueError, OverflowError) as exc:
        raise PayloadDecodeError(f"payload does not match {','.join(types)}") from exc


# Adapter payloads


def encode_swap(params: SwapParams) -> bytes:
    return encode(
        SWAP_TYPES,
        [
            params.token_in,
            params.token_out,
            params.fee,
            params.amount_in,
            params.amount_out_min,
            params.recipient,
            params.deadline,
        ],
    )


def wrap_session(max_spend_units: int, inner: bytes) -> bytes:
    return encode(SESSION_WRAPPED_TYPES, [max_spend_units, inner])


def unwrap_session(data: bytes) -> tuple[int, bytes]:
    max_spend_units, inner = _decode(SESSION_WRAPPED_TYPES, data)
    return max_spend_units, inner


def decode_swap(data: bytes) -> SwapParams:
    """Decode a SWAP payload, unwrapping the session envelope when present.

    A direct swap payload is exactly seven static words; anything else must be a
    session envelope whose inner bytes are a direct swap payload.
    """
    if len(data) != SWAP_PAYLOAD_SIZE:
        _, data = unwrap_session(data)
        if len(data) != SWAP_PAYLOAD_SIZE:
            raise PayloadDecodeError("session-wrapped payload does not contain a swap")
    token_in, token_out, fee, amount_in, amount_out_min, recipient, deadline = _decode(SWAP_TYPES, data)
    return SwapParams(
        token_in=token_in.lower(),
        token_out=token_out.lower(),
        fee=fee,
        amount_in=amount_in,
        amount_out_min=amount_out_min,
        recipient=recipient.lower(),
        deadline=deadline,
    )


def encode_wrap(recipient: str) -> bytes:
    return encode(WRAP_TYPES, [recipient])


def encode_pull(token: str, owner: str, amount: int) -> bytes:
    return encode(PULL_TYPES, [token, owner, amount])


def decode_pull(data: bytes) -> tuple[str, str, int]:
    token, owner, amount = _decode(PULL_TYPES, data)
    return token.lower(), owner.lower(), amount


def encode_lend_supply(asset: str, vault: str, amount: int, on_behalf_of: str) -> bytes:
    return encode(LEND_SUPPLY_TYPES, [asset, vault, amount, on_behalf_of])


def decode_lend_supply(data: bytes) -> tuple[str, str, int, str]:
    asset, vault, amount, on_behalf_of = _decode(LEND_SUPPLY_TYPES, data)
    return asset.lower(), vault.lower(), amount, on_behalf_of.lower()


def encode_proof(user: str, venue_type: int, intent_hash: bytes, summary: str) -> bytes:
    return encode(PROOF_TYPES, [user, venue_type, intent_hash, summary[:PROOF_SUMMARY_MAX]])


# Plan encoding


def _plan_values(plan: Plan) -> list[Any]:
    return [
        plan.user,
        plan.nonce,
        plan.deadline,
        [(int(action.action_type), action.adapter, action.data) for action in plan.actions],
    ]


def encode_plan(plan: Plan) -> bytes:
    return encode(PLAN_TYPES, _plan_values(plan))


def execute_with_session_call(session_id: bytes, plan: Plan) -> bytes:
    return encode_call(
        f"executeWithSession(bytes32,{PLAN_TUPLE})",
        ["bytes32", PLAN_TUPLE],
        [session_id, tuple(_plan_values(plan))],
    )


def execute_by_sender_call(plan: Plan) -> bytes:
    return encode_call(f"executeBySender({PLAN_TUPLE})", [PLAN_TUPLE], [tuple(_plan_values(plan))])


# Router session calls


def create_session_call(
    session_id: bytes, executor: str, expires_at: int, max_spend: int, allowed_adapters: Sequence[str]
) -> bytes:
    return encode_call(
        "createSession(bytes32,address,uint64,uint256,address[])",
        ["bytes32", "address", "uint64", "uint256", "address[]"],
        [session_id, executor, expires_at, max_spend, list(allowed_adapters)],
    )


def revoke_session_call(session_id: bytes) -> bytes:
    return encode_call("revokeSession(bytes32)", ["bytes32"], [session_id])


def sessions_call(session_id: bytes) -> bytes:
    return encode_call("sessions(bytes32)", ["bytes32"], [session_id])


def decode_session(result: bytes) -> OnChainSession:
    owner, executor, expires_at, max_spend, spent, active = _decode(SESSION_TYPES, result)
    return OnChainSession(
        owner=owner.lower(),
        executor=executor.lower(),
        expires_at=expires_at,
        max_spend=max_spend,
        spent=spent,
        active=active,
    )


def session_id_bytes(session_id: str) -> bytes:
    raw = hex_to_bytes(session_id)
    if len(raw) != 32:
        raise ValueError("sessionId must be 32 bytes")
    return raw


def nonces_call(user: str) -> bytes:
    return encode_call("nonces(address)", ["address"], [user])


def is_adapter_allowed_call(adapter: str) -> bytes:
    return encode_call("isAdapterAllowed(address)", ["address"], [adapter])


def allowance_call(owner: str, spender: str) -> bytes:
    return encode_call("allowance(address,address)", ["address", "address"], [owner, spender])


def approve_call(spender: str, amount: int) -> bytes:
    return encode_call("approve(address,uint256)", ["address", "uint256"], [spender, amount])


def decode_uint(result: bytes) -> int:
    if not result:
        return 0
    return _decode(["uint256"], result)[0]


def decode_bool(result: bytes) -> bool:
    if not result:
        return False
    return int.from_bytes(result[:32], "big") != 0
