#!/usr/bin/env python
import argparse
import json
import sys

import httpx


def request(method: str, base_url: str, path: str, payload: dict | None = None, params: dict | None = None) -> dict:
    url = f"{base_url.rstrip('/')}{path}"
    response = httpx.request(method, url, json=payload, params=params, timeout=20)
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        detail = ""
        try:
            detail = json.dumps(response.json(), indent=2)
        except ValueError:
            detail = response.text
        raise RuntimeError(f"{method} {path} failed: {detail}") from exc
    if response.content:
        return response.json()
    return {}


def main() -> None:
    parser = argparse.ArgumentParser(description="Run plan relay API smoke checks.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="API base URL")
    parser.add_argument("--user", default="0x" + "ab" * 20, help="User address used for plan preparation")
    args = parser.parse_args()

    base_url = args.base_url

    health = request("GET", base_url, "/health")
    if health.get("status") != "ok":
        raise RuntimeError(f"Health check failed: {health}")

    preflight = request("GET", base_url, "/api/execute/preflight")
    if "ok" not in preflight:
        raise RuntimeError(f"Preflight response missing ok: {preflight}")
    print(f"Preflight: mode={preflight.get('mode')} ok={preflight.get('ok')} notes={preflight.get('notes')}")

    status = request("GET", base_url, "/api/session/status", params={"userAddress": args.user})
    if status.get("ok") is not True or "session" not in status:
        raise RuntimeError(f"Session status response malformed: {status}")

    if preflight.get("mode") == "eth_testnet" and preflight.get("ok"):
        prepared = request(
            "POST",
            base_url,
            "/api/execute/prepare",
            {
                "draftId": "smoke-draft",
                "userAddress": args.user,
                "executionRequest": {
                    "kind": "swap",
                    "tokenIn": "ETH",
                    "tokenOut": "WETH",
                    "amountIn": "0.001",
                    "fundingPolicy": "auto",
                },
            },
        )
        if "planHash" not in prepared:
            raise RuntimeError(f"Prepare response missing planHash: {prepared}")
        print(f"Prepared plan {prepared['planHash']} with {len(prepared['plan']['actions'])} action(s)")

    print("Integration smoke checks passed.")


if __name__ == "__main__":
    try:
        main()
    except Exception as exc:
        print(f"Smoke check failed: {exc}", file=sys.stderr)
        sys.exit(1)
