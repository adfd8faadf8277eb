import sys
import os
from datetime import datetime, timedelta, timezone

# Ensure the project root is on the path for all tests
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Module-level constants read these at import time
os.environ["SETTLE_NETWORK"] = "testnet"
os.environ["SETTLE_MIN_STAKE"] = "1"

import pytest
from starlette.testclient import TestClient

from client import Transport, APIError
from server.app import create_app
from server.store import MarketStore
from server.dash import StubDashBackend
from server.oracle import GrokOracle


# --- Test identities (testnet P2PKH addresses, compressed pubkeys) ---

CREATOR = "yCreator" + "1" * 25
ACCEPTER = "yAccepter" + "1" * 24
STRANGER = "yStranger" + "3" * 24
FEE_WALLET = "yFee" + "2" * 28

CREATOR_KEY = "02" + "a1" * 32
ACCEPTER_KEY = "03" + "b2" * 32
PLACEHOLDER_KEY = "02" + "c3" * 32
ORACLE_KEY = "03" + "d4" * 32

SIGNATURE = "H" + "Zm9vYmFy" * 10 + "A="
BAD_SIGNATURE = "I" + "YmFkc2ln" * 10 + "A="

TX_CREATOR = "ab" * 32
TX_ACCEPTER = "cd" * 32
MULTISIG = "8" + "Mu1t" * 8

RULING_CREATOR = '{"winner": "creator", "reasoning": "The home side won 2-1."}'
ASSESSMENT_OK = ('{"is_valid": true, "reasoning": "Objective and public.", '
                 '"improved_description": "Final score after regulation time.", "timezone_note": null}')


def future(days: float = 0, hours: float = 0, minutes: float = 0) -> str:
    dt = datetime.now(timezone.utc) + timedelta(days=days, hours=hours, minutes=minutes)
    return dt.replace(microsecond=0).isoformat()


def past(days: float = 0, hours: float = 0) -> str:
    dt = datetime.now(timezone.utc) - timedelta(days=days, hours=hours)
    return dt.replace(microsecond=0).isoformat()


def sample_event(**overrides) -> dict:
    event = {
        "title": "Rovers vs United",
        "category": "football",
        "event_date": future(days=7),
        "possible_outcomes": ["Home", "Away", "Draw"],
        "oracle_source": "https://example.org/results",
    }
    event.update(overrides)
    return event


def sample_contract(event_id: str, **overrides) -> dict:
    contract = {
        "event_id": event_id,
        "outcome": "Home",
        "position_type": "buy",
        "stake": "10",
        "odds": "2.5",
        "creator_address": CREATOR,
        "creator_public_key": CREATOR_KEY,
        "signature": SIGNATURE,
        "acceptance_deadline": future(days=3),
        "multisig_address": MULTISIG,
        "transaction_id": TX_CREATOR,
        "additional_contract_creator": "1",
    }
    contract.update(overrides)
    return contract


class FakeLLM:
    """Scripted llm_call. Set .reply to a string, or to an exception to raise."""

    def __init__(self, reply=RULING_CREATOR):
        self.reply = reply
        self.calls = []

    async def __call__(self, system_prompt, user_prompt, model=None):
        self.calls.append((system_prompt, user_prompt, model))
        if isinstance(self.reply, Exception):
            raise self.reply
        return self.reply


class AppTransport(Transport):
    """Routes SettleClient calls into a TestClient instead of the network."""

    def __init__(self, test_client: TestClient):
        self.test_client = test_client
        self.calls = []

    def _handle(self, resp):
        if resp.status_code >= 400:
            raise APIError(resp.status_code, resp.json().get("error", ""))
        return resp.json()

    async def post(self, path, data):
        self.calls.append(("POST", path, data))
        return self._handle(self.test_client.post(path, json=data))

    async def get(self, path, params=None):
        self.calls.append(("GET", path, params))
        return self._handle(self.test_client.get(path, params=params))


async def no_sleep(seconds):
    return None


@pytest.fixture
def dash():
    return StubDashBackend(
        network="testnet", fee_address=FEE_WALLET,
        oracle_public_key=ORACLE_KEY, placeholder_public_key=PLACEHOLDER_KEY,
    )


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def store():
    s = MarketStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def app(store, dash, llm):
    """Fresh app with in-memory store, stub node and scripted oracle."""
    return create_app(store=store, dash=dash, oracle=GrokOracle(llm_call=llm))


@pytest.fixture
def client(app):
    return TestClient(app)


def action(client, name, **data):
    return client.post("/api/contracts", json={"action": name, "data": data})


def create_event(client, **overrides) -> str:
    resp = client.post("/api/events", json=sample_event(**overrides))
    assert resp.status_code == 200, resp.text
    return resp.json()["event_id"]


def create_contract(client, event_id, **overrides) -> str:
    resp = action(client, "create_contract", **sample_contract(event_id, **overrides))
    assert resp.status_code == 200, resp.text
    return resp.json()["contract_id"]


def accept_contract(client, contract_id, **overrides) -> dict:
    data = {
        "contract_id": contract_id,
        "accepterWalletAddress": ACCEPTER,
        "accepter_public_key": ACCEPTER_KEY,
        "accepter_transaction_id": TX_ACCEPTER,
        "signature": SIGNATURE,
        "accepter_stake": "15",
        "additional_contract_accepter": "1.5",
    }
    data.update(overrides)
    resp = action(client, "accept_contract", **data)
    assert resp.status_code == 200, resp.text
    return resp.json()


def settle(client, contract_id, submitter, winner, reasoning="Final whistle result."):
    return action(client, "settle_contract", contract_id=contract_id, submitter=submitter,
                  winner=winner, reasoning=reasoning)


def accepted_contract(client) -> str:
    """Event + contract + acceptance in one go. Returns contract_id."""
    event_id = create_event(client)
    contract_id = create_contract(client, event_id)
    accept_contract(client, contract_id)
    return contract_id

