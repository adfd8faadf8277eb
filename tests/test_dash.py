"""Tests for server/dash.py -- funding checks, the stub node and the JSON-RPC backend."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

from decimal import Decimal
from unittest.mock import patch, MagicMock

import pytest
import requests

from server.dash import (
    DashBackend, DashRPCBackend, DashRPCError, StubDashBackend,
    FundingError, check_funding, dash_to_duffs, duffs_to_dash, fit_outputs, merge_outputs,
)
from validation import validate_multisig_address, validate_redeem_script
from conftest import CREATOR, ACCEPTER, CREATOR_KEY, PLACEHOLDER_KEY, ORACLE_KEY, MULTISIG, TX_CREATOR


def rpc_response(result=None, error=None, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = {"result": result, "error": error, "id": "settle-1"}
    return resp


# --- Units ---

def test_duff_conversion():
    assert dash_to_duffs("1.5") == 150_000_000
    assert duffs_to_dash(150_000_000) == Decimal("1.5")
    assert duffs_to_dash(1) == Decimal("0.00000001")


# --- Funding checks ---

def tx(outputs, confirmations=1):
    return {"txid": TX_CREATOR, "confirmations": confirmations,
            "outputs": [{"address": a, "amount": Decimal(v), "n": i} for i, (a, v) in enumerate(outputs)]}


def test_funding_ok():
    ok, msg = check_funding(tx([(MULTISIG, "10")]), MULTISIG, "10")
    assert ok
    assert "Transaction valid" in msg


def test_funding_sums_outputs():
    ok, _ = check_funding(tx([(MULTISIG, "6"), (CREATOR, "1"), (MULTISIG, "4")]), MULTISIG, "10")
    assert ok


def test_funding_wrong_destination():
    ok, msg = check_funding(tx([(CREATOR, "10")]), MULTISIG, "10")
    assert not ok
    assert "does not pay" in msg


def test_funding_short():
    ok, msg = check_funding(tx([(MULTISIG, "9.99")]), MULTISIG, "10")
    assert not ok


def test_funding_unconfirmed():
    ok, msg = check_funding(tx([(MULTISIG, "10")], confirmations=0), MULTISIG, "10", min_confirmations=1)
    assert (ok, msg) == (False, "Insufficient confirmations")


def test_funding_bad_amount():
    assert not check_funding(tx([(MULTISIG, "10")]), MULTISIG, "zero")[0]


# --- Settlement outputs ---

def test_fit_outputs_reserves_network_fee():
    outputs = [{"to": CREATOR, "amount": "9.8", "reason": "winnings"},
               {"to": ACCEPTER, "amount": "0.2", "reason": "platform fee"}]
    paid = fit_outputs(outputs, Decimal("10"), network_fee=Decimal("0.0001"))
    assert [o["amount"] for o in paid] == ["9.80000000", "0.19990000"]


def test_fit_outputs_leaves_slack_alone():
    paid = fit_outputs([{"to": CREATOR, "amount": "9", "reason": "winnings"}], Decimal("10"))
    assert paid[0]["amount"] == "9.00000000"


def test_fit_outputs_without_fee_output():
    paid = fit_outputs([{"to": CREATOR, "amount": "11", "reason": "cancellation refund"}],
                       Decimal("11"), network_fee=Decimal("0.00001"))
    assert paid[0]["amount"] == "10.99999000"


def test_fit_outputs_rejects_overspend():
    with pytest.raises(FundingError):
        fit_outputs([{"to": CREATOR, "amount": "27.5", "reason": "winnings"}], Decimal("25"))


def test_fit_outputs_fee_too_small():
    outputs = [{"to": CREATOR, "amount": "9.99999999", "reason": "winnings"},
               {"to": ACCEPTER, "amount": "0.00000001", "reason": "platform fee"}]
    with pytest.raises(FundingError, match="network fee"):
        fit_outputs(outputs, Decimal("10"), network_fee=Decimal("0.00001"))


def test_merge_outputs():
    merged = merge_outputs([{"to": CREATOR, "amount": "1.5"}, {"to": CREATOR, "amount": "2"},
                            {"to": ACCEPTER, "amount": "0.1"}])
    assert merged == {CREATOR: "3.50000000", ACCEPTER: "0.10000000"}


# --- Stub ---

def test_backend_is_abstract():
    with pytest.raises(TypeError):
        DashBackend()


def test_stub_multisig_is_deterministic():
    stub = StubDashBackend()
    keys = [CREATOR_KEY, PLACEHOLDER_KEY, ORACLE_KEY]
    a = stub.create_multisig(keys, 2)
    b = stub.create_multisig(keys, 2)
    assert a == b
    assert validate_multisig_address(a["multisig_address"])[0]
    assert validate_redeem_script(a["redeemScript"])[0]
    assert a["redeemScript"].startswith("5221" + CREATOR_KEY)
    assert stub.create_multisig(list(reversed(keys)), 2) != a


def test_stub_transactions_and_balances():
    stub = StubDashBackend()
    stub.add_transaction(TX_CREATOR, [(MULTISIG, "10"), (CREATOR, "0.25")], confirmations=3)
    assert stub.get_balance(MULTISIG) == Decimal("10")
    info = stub.transaction_info(TX_CREATOR)
    assert info["status"] == "confirmed"
    assert info["amount"] == "10.25"
    assert stub.get_transaction("ff" * 32) is None
    assert stub.transaction_info("ff" * 32) is None


def test_stub_settlement_checks_funding():
    stub = StubDashBackend()
    stub.add_transaction(TX_CREATOR, [(MULTISIG, "10")])
    outputs = [{"to": CREATOR, "amount": "10.5", "reason": "winnings"}]
    with pytest.raises(FundingError):
        stub.create_settlement_tx(MULTISIG, [TX_CREATOR], outputs)
    with pytest.raises(FundingError, match="not found"):
        stub.create_settlement_tx(MULTISIG, ["ff" * 32], outputs)
    built = stub.create_settlement_tx(MULTISIG, [TX_CREATOR], [{**outputs[0], "amount": "10"}])
    assert built["outputs"][0]["amount"] == "9.99999000"
    assert built["unsigned_tx"].startswith("02000000")


def test_stub_constants():
    stub = StubDashBackend(network="testnet", fee_address=CREATOR, oracle_public_key=ORACLE_KEY)
    c = stub.get_constants()
    assert c["fee_address"] == CREATOR
    assert c["oracle_public_key"] == ORACLE_KEY
    assert c["placeholder_public_key"] == ""


# --- JSON-RPC backend ---

@pytest.fixture
def rpc():
    return DashRPCBackend(url="http://node:19998", user="rpcuser", password="rpcpass")


def test_rpc_payload(rpc):
    with patch("server.dash.requests.post", return_value=rpc_response(True)) as post:
        assert rpc.verify_message(CREATOR, "sig", "SettleInDash:x") is True
    args, kwargs = post.call_args
    assert args[0] == "http://node:19998"
    assert kwargs["json"]["method"] == "verifymessage"
    assert kwargs["json"]["params"] == [CREATOR, "sig", "SettleInDash:x"]
    assert kwargs["auth"] == ("rpcuser", "rpcpass")


def test_rpc_error(rpc):
    err = {"code": -5, "message": "Invalid address"}
    with patch("server.dash.requests.post", return_value=rpc_response(error=err, status=500)):
        with pytest.raises(DashRPCError, match="Invalid address"):
            rpc.verify_message(CREATOR, "sig", "m")


def test_rpc_unreachable(rpc):
    with patch("server.dash.requests.post", side_effect=requests.ConnectionError("refused")):
        with pytest.raises(DashRPCError, match="unreachable"):
            rpc.get_balance(CREATOR)


def test_rpc_non_json(rpc):
    resp = MagicMock(status_code=401)
    resp.json.side_effect = ValueError("no json")
    with patch("server.dash.requests.post", return_value=resp):
        with pytest.raises(DashRPCError, match="HTTP 401"):
            rpc.get_balance(CREATOR)


def test_rpc_multisig(rpc):
    result = {"address": MULTISIG, "redeemScript": "52ae"}
    with patch("server.dash.requests.post", return_value=rpc_response(result)) as post:
        out = rpc.create_multisig([CREATOR_KEY, PLACEHOLDER_KEY, ORACLE_KEY], 2)
    assert out == {"multisig_address": MULTISIG, "redeemScript": "52ae"}
    assert post.call_args.kwargs["json"]["params"][0] == 2


def test_rpc_balance_in_duffs(rpc):
    with patch("server.dash.requests.post", return_value=rpc_response({"balance": 250_000_000})):
        assert rpc.get_balance(CREATOR) == Decimal("2.5")


def test_rpc_transaction(rpc):
    raw = {
        "txid": TX_CREATOR, "confirmations": 4,
        "vout": [
            {"value": 10.0, "n": 0, "scriptPubKey": {"addresses": [MULTISIG]}},
            {"value": 0.5, "n": 1, "scriptPubKey": {"address": CREATOR}},
        ],
    }
    with patch("server.dash.requests.post", return_value=rpc_response(raw)):
        tx = rpc.get_transaction(TX_CREATOR)
    assert tx["confirmations"] == 4
    assert tx["outputs"][0] == {"address": MULTISIG, "amount": Decimal("10.0"), "n": 0}
    assert tx["outputs"][1]["address"] == CREATOR


def test_rpc_transaction_missing(rpc):
    err = {"code": -5, "message": "No such mempool or blockchain transaction"}
    with patch("server.dash.requests.post", return_value=rpc_response(error=err, status=500)):
        assert rpc.get_transaction(TX_CREATOR) is None


def test_rpc_settlement_tx(rpc):
    raw = {"txid": TX_CREATOR, "confirmations": 1,
           "vout": [{"value": 11.0, "n": 1, "scriptPubKey": {"address": MULTISIG}}]}
    outputs = [
        {"to": CREATOR, "amount": "9.8", "reason": "winnings"},
        {"to": CREATOR, "amount": "1", "reason": "additional contract refund"},
        {"to": ACCEPTER, "amount": "0.2", "reason": "platform fee"},
    ]
    with patch("server.dash.requests.post",
               side_effect=[rpc_response(raw), rpc_response("0200abcd")]) as post:
        built = rpc.create_settlement_tx(MULTISIG, [TX_CREATOR], outputs)
    assert built["unsigned_tx"] == "0200abcd"
    assert built["funded"] == "11.00000000"
    inputs, amounts = post.call_args.kwargs["json"]["params"]
    assert inputs == [{"txid": TX_CREATOR, "vout": 1}]
    assert amounts == {CREATOR: "10.80000000", ACCEPTER: "0.19999000"}


def test_rpc_settlement_tx_overspend(rpc):
    raw = {"txid": TX_CREATOR, "confirmations": 1,
           "vout": [{"value": 10.0, "n": 0, "scriptPubKey": {"address": MULTISIG}}]}
    outputs = [{"to": CREATOR, "amount": "10.5", "reason": "winnings"}]
    with patch("server.dash.requests.post", return_value=rpc_response(raw)) as post:
        with pytest.raises(FundingError, match="multisig holds 10"):
            rpc.create_settlement_tx(MULTISIG, [TX_CREATOR], outputs)
    assert post.call_count == 1


def test_rpc_settlement_tx_without_funding(rpc):
    raw = {"txid": TX_CREATOR, "confirmations": 1,
           "vout": [{"value": 10.0, "n": 0, "scriptPubKey": {"address": CREATOR}}]}
    with patch("server.dash.requests.post", return_value=rpc_response(raw)):
        with pytest.raises(DashRPCError, match="No funding outputs"):
            rpc.create_settlement_tx(MULTISIG, [TX_CREATOR], [])


def test_rpc_env_defaults(monkeypatch):
    monkeypatch.setenv("SETTLE_DASH_RPC_URL", "http://env-node:9998")
    monkeypatch.delenv("SETTLE_DASH_RPC_USER", raising=False)
    backend = DashRPCBackend()
    assert backend.url == "http://env-node:9998"
    assert backend.auth is None
