from typing import Any

from eth_account.messages import encode_typed_data

from plan_relay.services.plan_codec import Plan, encode_plan, keccak, to_hex

DOMAIN_NAME = "BlossomExecutionRouter"
DOMAIN_VERSION = "1"

TYPED_DATA_TYPES = {
    "EIP712Domain": [
        {"name": "name", "type": "string"},
        {"name": "version", "type": "string"},
        {"name": "chainId", "type": "uint256"},
        {"name": "verifyingContract", "type": "address"},
    ],
    "Action": [
        {"name": "actionType", "type": "uint8"},
        {"name": "adapter", "type": "address"},
        {"name": "data", "type": "bytes"},
    ],
    "Plan": [
        {"name": "user", "type": "address"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
        {"name": "actions", "type": "Action[]"},
    ],
}


def plan_hash(plan: Plan) -> str:
    return to_hex(keccak(encode_plan(plan)))


def _domain(chain_id: int, router: str) -> dict[str, Any]:
    return {
        "name": DOMAIN_NAME,
        "version": DOMAIN_VERSION,
        "chainId": chain_id,
        "verifyingContract": router.lower(),
    }


def build_typed_data(plan: Plan, chain_id: int, router: str) -> dict[str, Any]:
    """JSON-safe typed data payload for wallet signing (uint256 values as strings)."""
    return {
        "domain": _domain(chain_id, router),
        "types": TYPED_DATA_TYPES,
        "primaryType": "Plan",
        "message": plan.to_message(),
    }


def typed_data_digest(plan: Plan, chain_id: int, router: str) -> str:
    message = {
        "user": plan.user,
        "nonce": plan.nonce,
        "deadline": plan.deadline,
        "actions": [
            {"actionType": int(action.action_type), "adapter": action.adapter, "data": action.data}
            for action in plan.actions
        ],
    }
    signable = encode_typed_data(
        full_message={
            "domain": _domain(chain_id, router),
            "types": TYPED_DATA_TYPES,
            "primaryType": "Plan",
            "message": message,
        }
    )
    return to_hex(keccak(b"\x19" + signable.version + signable.header + signable.body))


def build_call(plan: Plan) -> dict[str, Any]:
    return {"method": "executeBySender", "args": {"plan": plan.to_message()}}
