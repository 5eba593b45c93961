#!/usr/bin/env python
import argparse
import json

from plan_relay.services.plan_codec import (
    Action,
    ActionType,
    Plan,
    SwapParams,
    encode_swap,
    execute_by_sender_call,
    is_valid_address,
    to_hex,
)
from plan_relay.services.plan_signer import plan_hash


def build_swap_plan(args: argparse.Namespace) -> Plan:
    for name in ("user", "adapter", "token_in", "token_out"):
        if not is_valid_address(getattr(args, name)):
            raise ValueError(f"invalid {name.replace('_', '-')} address")
    if args.amount < 0:
        raise ValueError("amount must be >= 0")
    params = SwapParams(
        token_in=args.token_in.lower(),
        token_out=args.token_out.lower(),
        fee=args.fee,
        amount_in=args.amount,
        amount_out_min=args.min_out,
        recipient=args.user.lower(),
        deadline=args.deadline,
    )
    action = Action(ActionType.SWAP, args.adapter.lower(), encode_swap(params))
    return Plan(args.user.lower(), args.nonce, args.deadline, (action,))


def main() -> None:
    parser = argparse.ArgumentParser(description="Encode a single-swap router plan and print its hash and calldata.")
    parser.add_argument("--user", required=True, help="Plan owner address (0x...)")
    parser.add_argument("--adapter", required=True, help="Swap adapter address (0x...)")
    parser.add_argument("--token-in", required=True, help="Input token address (0x...)")
    parser.add_argument("--token-out", required=True, help="Output token address (0x...)")
    parser.add_argument("--amount", required=True, type=int, help="Input amount in base units")
    parser.add_argument("--min-out", default=0, type=int, help="Minimum output in base units")
    parser.add_argument("--fee", default=3000, type=int, help="Pool fee tier")
    parser.add_argument("--nonce", default=0, type=int, help="Router nonce for the user")
    parser.add_argument("--deadline", required=True, type=int, help="Unix deadline in seconds")
    args = parser.parse_args()

    plan = build_swap_plan(args)
    print(
        json.dumps(
            {
                "plan": plan.to_message(),
                "planHash": plan_hash(plan),
                "executeBySender": to_hex(execute_by_sender_call(plan)),
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    main()
