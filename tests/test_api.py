import pytest
from eth_abi import encode
from fastapi.testclient import TestClient

from conftest import NOW, ROUTER, SESSION_ID, USER, WETH, FakeClock, FakeRpc, make_settings, session_result
from plan_relay.main import create_app
from plan_relay.services.portfolio import Balance, InMemoryPortfolioStore, PortfolioSnapshot
from plan_relay.services.receipts import ReceiptConfirmer
from plan_relay.services.rpc_client import ChainError

TX_HASH = "0x" + "ab" * 32
CONFIRMED = {"status": "0x1", "blockNumber": "0x3e8", "gasUsed": "0x5208"}
SWAP_REQUEST = {"kind": "swap", "tokenIn": "WETH", "tokenOut": "USDC", "amountIn": "0.1"}


def make_client(rpc: FakeRpc | None = None, portfolio=None, **overrides) -> TestClient:
    rpc = rpc or FakeRpc()
    clock = FakeClock()
    app = create_app(
        settings=make_settings(**overrides),
        rpc=rpc,
        portfolio=portfolio,
        confirmer=ReceiptConfirmer(rpc, 60, 2, clock=clock, sleep=clock.sleep),
        clock=clock,
    )
    return TestClient(app)


def prepared_plan(client: TestClient, auth_mode: str = "session") -> dict:
    response = client.post(
        "/api/execute/prepare",
        json={"draftId": "draft-1", "userAddress": USER, "executionRequest": SWAP_REQUEST, "authMode": auth_mode},
    )
    assert response.status_code == 200
    return response.json()["plan"]


def relay_body(plan: dict, draft_id: str = "draft-1") -> dict:
    return {"draftId": draft_id, "userAddress": USER, "plan": plan, "sessionId": SESSION_ID, "value": "0x0"}


@pytest.fixture
def live_rpc():
    rpc = FakeRpc()
    rpc.set_call("sessions(bytes32)", session_result())
    rpc.set_call("nonces(address)", encode(["uint256"], [7]))
    rpc.set_call("allowance(address,address)", encode(["uint256"], [0]))
    rpc.set_call("isAdapterAllowed(address)", encode(["bool"], [True]))
    rpc.receipts = [CONFIRMED]
    return rpc


def test_health():
    response = make_client().get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "mode": "eth_testnet", "authMode": "session"}


# Prepare


def test_prepare_returns_signable_plan(live_rpc):
    response = make_client(live_rpc).post(
        "/api/execute/prepare",
        json={"draftId": "d", "userAddress": USER, "executionRequest": SWAP_REQUEST, "authMode": "direct"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["chainId"] == 11155111
    assert body["to"] == ROUTER
    assert body["value"] == "0x0"
    assert body["plan"]["nonce"] == "7"
    assert body["plan"]["deadline"] == str(NOW + 600)
    assert len(body["plan"]["actions"]) == 2
    assert len(body["planHash"]) == 66
    assert len(body["typedDataDigest"]) == 66
    assert body["typedData"]["primaryType"] == "Plan"
    assert body["call"]["method"] == "executeBySender"
    approval = body["requirements"]["approvals"][0]
    assert (approval["token"], approval["spender"], approval["amount"]) == (WETH, ROUTER, hex(10**17))
    assert approval["data"] == "0x095ea7b3" + "00" * 12 + ROUTER[2:] + f"{10**17:064x}"


def test_prepare_warns_when_nonce_fetch_fails():
    body = make_client().post(
        "/api/execute/prepare",
        json={"userAddress": USER, "executionRequest": SWAP_REQUEST},
    ).json()
    assert body["plan"]["nonce"] == "0"
    assert any(warning.startswith("Nonce fetch failed") for warning in body["warnings"])
    assert any(warning.startswith("Could not verify token allowance") for warning in body["warnings"])


def test_prepare_when_execution_disabled():
    response = make_client(execution_disabled=True).post(
        "/api/execute/prepare", json={"userAddress": USER, "executionRequest": SWAP_REQUEST}
    )
    assert response.status_code == 503
    assert response.json()["errorCode"] == "EXECUTION_DISABLED"


def test_prepare_blocks_direct_auth_in_v1_demo():
    response = make_client(v1_demo=True).post(
        "/api/execute/prepare",
        json={"userAddress": USER, "executionRequest": SWAP_REQUEST, "authMode": "direct"},
    )
    assert response.status_code == 403
    assert response.json()["errorCode"] == "V1_DEMO_DIRECT_BLOCKED"


def test_prepare_in_sim_mode():
    response = make_client(execution_mode="sim").post(
        "/api/execute/prepare", json={"userAddress": USER, "executionRequest": SWAP_REQUEST}
    )
    assert response.status_code == 400
    assert response.json()["errorCode"] == "EXECUTION_MODE_SIM"


def test_prepare_reports_missing_configuration():
    response = make_client(router_address="").post(
        "/api/execute/prepare", json={"userAddress": USER, "executionRequest": SWAP_REQUEST}
    )
    assert response.status_code == 503
    assert response.json()["errorCode"] == "NOT_CONFIGURED"
    assert "EXECUTION_ROUTER_ADDRESS" in response.json()["required"]


def test_prepare_rejects_invalid_user():
    response = make_client().post(
        "/api/execute/prepare", json={"userAddress": "0x1234", "executionRequest": SWAP_REQUEST}
    )
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid userAddress"


def test_prepare_rejects_unsupported_token():
    request = dict(SWAP_REQUEST, tokenIn="DOGE")
    response = make_client().post("/api/execute/prepare", json={"userAddress": USER, "executionRequest": request})
    assert response.status_code == 400
    assert "Unsupported tokenIn" in response.json()["error"]


# Session endpoints


def test_session_prepare_disabled_in_direct_mode():
    response = make_client(execution_auth_mode="direct").post("/api/session/prepare", json={"userAddress": USER})
    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["status"] == "disabled"
    assert body["session"]["enabled"] is False
    assert body["session"]["reason"] == "NOT_CONFIGURED"
    assert body["cooldownMs"] == 1500


def test_session_prepare_returns_create_transaction():
    body = make_client().post("/api/session/prepare", json={"userAddress": USER}).json()
    assert body["status"] == "preparing"
    session = body["session"]
    assert session["enabled"] is True
    assert session["to"] == ROUTER
    assert len(session["sessionId"]) == 66
    assert session["capabilitySnapshot"]["caps"]["maxSpendUsd"] == "10000"


def test_session_prepare_throttles_repeat_calls():
    client = make_client()
    first = client.post("/api/session/prepare", json={"userAddress": USER}).json()
    second = client.post("/api/session/prepare", json={"userAddress": USER}).json()
    assert second == first


def test_session_prepare_without_user():
    body = make_client().post("/api/session/prepare", json={}).json()
    assert body["status"] == "not_created"
    assert body["session"]["reason"] == "MISSING_FIELDS"


def test_session_prepare_without_relayer_key():
    body = make_client(relayer_private_key="").post("/api/session/prepare", json={"userAddress": USER}).json()
    assert body["status"] == "disabled"
    assert body["session"]["required"] == ["RELAYER_PRIVATE_KEY"]


def test_session_status_active(live_rpc):
    response = make_client(live_rpc).get("/api/session/status", params={"userAddress": USER, "sessionId": SESSION_ID})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "active"
    assert body["mode"] == "session"
    assert body["session"]["enabled"] is True
    assert body["session"]["owner"] == USER
    assert body["session"]["maxSpend"] == str(10 * 10**18)


def test_session_status_post_matches_get(live_rpc):
    body = make_client(live_rpc).post("/api/session/status", json={"sessionId": SESSION_ID}).json()
    assert body["status"] == "active"


def test_session_status_rpc_failure_is_still_200():
    response = make_client().get("/api/session/status", params={"sessionId": SESSION_ID})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "not_created"
    assert body["errorCode"] == "RPC_ERROR"
    assert body["session"]["reason"] == "RPC_ERROR"


def test_session_status_without_session_id():
    body = make_client().get("/api/session/status").json()
    assert body["status"] == "not_created"
    assert body["session"]["required"] == ["sessionId"]


def test_session_status_disabled_in_sim_mode():
    body = make_client(execution_mode="sim").get("/api/session/status", params={"sessionId": SESSION_ID}).json()
    assert body["status"] == "disabled"
    assert body["session"]["enabled"] is False


def test_session_revoke_prepare():
    body = make_client().post("/api/session/revoke/prepare", json={"sessionId": SESSION_ID}).json()
    assert body["to"] == ROUTER
    assert body["data"].endswith("5e" * 32)


def test_session_revoke_requires_session_id():
    response = make_client().post("/api/session/revoke/prepare", json={})
    assert response.status_code == 400


def test_session_revoke_without_router():
    response = make_client(router_address="").post("/api/session/revoke/prepare", json={"sessionId": SESSION_ID})
    assert response.status_code == 503
    assert response.json()["errorCode"] == "NOT_CONFIGURED"


# Relayed execution


def test_relayed_execution_confirms_and_reports_portfolio(live_rpc):
    portfolio = InMemoryPortfolioStore(PortfolioSnapshot(account_value_usd=100.0, balances=(Balance("USDC", 100.0),)))
    client = make_client(live_rpc, portfolio=portfolio)
    plan = prepared_plan(client)

    response = client.post("/api/execute/relayed", json=relay_body(plan))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "success"
    assert body["txHash"] == TX_HASH
    assert body["receiptStatus"] == "confirmed"
    assert body["blockNumber"] == 1000
    assert body["notes"] == ["execution_path:relayed"]
    assert body["explorerUrl"].endswith(TX_HASH)
    assert body["portfolio"]["accountValueUsd"] == 100.0
    assert body["portfolioDelta"]["accountValueDeltaUsd"] == 0
    assert len(live_rpc.sent) == 1


def test_relayed_retry_with_same_draft_replays_result(live_rpc):
    client = make_client(live_rpc)
    plan = prepared_plan(client)
    first = client.post("/api/execute/relayed", json=relay_body(plan)).json()

    second = client.post("/api/execute/relayed", json=relay_body(plan)).json()

    assert second["txHash"] == first["txHash"]
    assert second["success"] is True
    assert "idempotent_replay" in second["notes"]
    assert len(live_rpc.sent) == 1


def test_relayed_send_failure_returns_error_code_and_allows_retry(live_rpc):
    client = make_client(live_rpc)
    plan = prepared_plan(client)
    live_rpc.send_error = ChainError("rpc", "insufficient funds for gas")

    failed = client.post("/api/execute/relayed", json=relay_body(plan))

    assert failed.status_code == 500
    assert failed.json()["errorCode"] == "INSUFFICIENT_BALANCE"
    assert failed.json()["success"] is False

    live_rpc.send_error = None
    retried = client.post("/api/execute/relayed", json=relay_body(plan))
    assert retried.status_code == 200
    assert retried.json()["success"] is True


def test_relayed_rejects_plan_failing_guards(live_rpc):
    client = make_client(live_rpc)
    plan = prepared_plan(client)
    plan["actions"] = plan["actions"] * 3

    response = client.post("/api/execute/relayed", json=relay_body(plan))

    assert response.status_code == 400
    assert response.json()["error"] == "Plan exceeds maximum action count (4). Got 6 actions."
    assert live_rpc.sent == []


def test_relayed_rejects_revoked_session(live_rpc):
    client = make_client(live_rpc)
    plan = prepared_plan(client)
    live_rpc.set_call("sessions(bytes32)", session_result(active=False))

    response = client.post("/api/execute/relayed", json=relay_body(plan))

    assert response.status_code == 400
    assert response.json()["errorCode"] == "SESSION_EXPIRED_OR_REVOKED"


def test_relayed_rejects_spend_over_session_cap(live_rpc):
    client = make_client(live_rpc)
    plan = prepared_plan(client)
    live_rpc.set_call("sessions(bytes32)", session_result(max_spend=10, spent=10))

    response = client.post("/api/execute/relayed", json=relay_body(plan))

    assert response.status_code == 400
    assert response.json()["errorCode"] == "POLICY_EXCEEDED"


def test_relayed_requires_session_mode(live_rpc):
    client = make_client(live_rpc, execution_auth_mode="direct")
    plan = prepared_plan(client, auth_mode="session")

    response = client.post("/api/execute/relayed", json=relay_body(plan))

    assert response.status_code == 400
    assert response.json()["errorCode"] == "SESSION_DISABLED"


def test_relayed_reports_missing_fields():
    response = make_client().post("/api/execute/relayed", json={"userAddress": USER})
    assert response.status_code == 400
    assert response.json()["details"]["missing"] == ["draftId", "plan", "sessionId"]


@pytest.mark.parametrize(
    "field,bad_value,error",
    [
        ("user", "0xnotanaddress", "Plan user must be a 0x-prefixed 20-byte address"),
        ("nonce", -1, "Plan nonce must be a uint256"),
        ("deadline", str(2**256), "Plan deadline must be a uint256"),
    ],
)
def test_relayed_rejects_malformed_plan_shape(live_rpc, field, bad_value, error):
    client = make_client(live_rpc)
    plan = prepared_plan(client)
    plan[field] = bad_value

    response = client.post("/api/execute/relayed", json=relay_body(plan))

    assert response.status_code == 400
    assert response.json()["error"] == error
    assert live_rpc.sent == []


def test_relayed_rejects_multi_action_plan_in_v1_demo(live_rpc):
    client = make_client(live_rpc, v1_demo=True)
    plan = prepared_plan(client)

    response = client.post("/api/execute/relayed", json=relay_body(plan))

    assert response.status_code == 400
    assert response.json()["errorCode"] == "V1_DEMO_MULTI_ACTION_REJECTED"


# Direct submission and status


def test_submit_waits_for_receipt(live_rpc):
    response = make_client(live_rpc).post(
        "/api/execute/submit", json={"draftId": "direct-1", "txHash": TX_HASH, "userAddress": USER}
    )
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["receiptStatus"] == "confirmed"
    assert body["notes"] == ["execution_path:direct"]


def test_submit_reports_timeout():
    body = make_client().post("/api/execute/submit", json={"draftId": "direct-2", "txHash": TX_HASH}).json()
    assert body["success"] is False
    assert body["receiptStatus"] == "timeout"
    assert body["error"] == "Transaction not confirmed within 60s"


def test_submit_rejects_malformed_tx_hash():
    response = make_client().post("/api/execute/submit", json={"draftId": "d", "txHash": "0x1234"})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid txHash format"


def test_submit_requires_fields():
    response = make_client().post("/api/execute/submit", json={})
    assert response.status_code == 400
    assert response.json()["details"]["missing"] == ["draftId", "txHash"]


def test_status_reports_confirmed_receipt(live_rpc):
    body = make_client(live_rpc).get("/api/execute/status", params={"txHash": TX_HASH}).json()
    assert body["status"] == "confirmed"
    assert body["blockNumber"] == 1000
    assert body["explorerUrl"] == f"https://sepolia.etherscan.io/tx/{TX_HASH}"


def test_status_pending_on_rpc_error():
    rpc = FakeRpc()
    rpc.receipts = [ChainError("timeout", "eth_getTransactionReceipt timed out")]
    body = make_client(rpc).get("/api/execute/status", params={"txHash": TX_HASH}).json()
    assert body["status"] == "pending"
    assert "timed out" in body["error"]


def test_status_rejects_bad_hash():
    assert make_client().get("/api/execute/status", params={"txHash": "nope"}).status_code == 400


# Preflight


def test_preflight_ok(live_rpc):
    body = make_client(live_rpc).get("/api/execute/preflight").json()
    assert body["ok"] is True
    assert body["rpc"] and body["routerDeployed"] and body["adapterAllowlisted"] and body["nonce"]
    assert body["session"] == {"enabled": True, "missing": []}
    assert body["notes"] == []


def test_preflight_unreachable_rpc():
    rpc = FakeRpc()
    rpc.block_error = ChainError("transport", "connection refused")
    body = make_client(rpc).get("/api/execute/preflight").json()
    assert body["ok"] is False
    assert body["rpc"] is False
    assert body["notes"][0].startswith("RPC unreachable")


def test_preflight_in_sim_mode():
    body = make_client(execution_mode="sim").get("/api/execute/preflight").json()
    assert body["mode"] == "sim"
    assert body["ok"] is False
    assert body["notes"] == ["EXECUTION_MODE is not eth_testnet"]
