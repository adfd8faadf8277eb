"""API client for the Settle In DASH market.

Thin async HTTP client with a pluggable transport interface. Mirrors the
server's JSON API: constants, events, contract listing and the POST
/api/contracts action dispatcher.

Two calls retry on their own:
  - verify_signature retries on HTTP 400/503 with linear backoff
    (1s, 2s, ...)
  - validate_transaction waits for confirmations, sleeping 30s between
    checks while the node reports "Insufficient confirmations"
"""

import asyncio
from abc import ABC, abstractmethod

import httpx
import structlog

from protocol import (
    DEFAULT_API_URL, SIGNATURE_VERIFY_ATTEMPTS, SIGNATURE_VERIFY_BACKOFF,
    SIGNATURE_RETRY_STATUSES, TX_VALIDATE_ATTEMPTS, TX_VALIDATE_SLEEP,
    DEFAULT_MIN_CONFIRMATIONS, INSUFFICIENT_CONFIRMATIONS, MULTISIG_REQUIRED_SIGNATURES,
)

log = structlog.get_logger(__name__)


class APIError(Exception):
    """Non-2xx response (status > 0) or transport failure (status 0)."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


class Transport(ABC):
    """Override this to talk to the API some other way."""

    @abstractmethod
    async def post(self, path: str, data: dict) -> dict:
        ...

    @abstractmethod
    async def get(self, path: str, params: dict | None = None):
        ...


class HTTPTransport(Transport):
    """Default. Talks JSON over HTTP to the market API."""

    def __init__(self, base_url: str = DEFAULT_API_URL, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @staticmethod
    def _raise_for_error(resp: httpx.Response):
        if resp.is_success:
            return
        try:
            message = resp.json().get("error") or resp.reason_phrase
        except ValueError:
            message = resp.text or resp.reason_phrase
        raise APIError(resp.status_code, str(message))

    async def post(self, path: str, data: dict) -> dict:
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(f"{self.base_url}{path}", json=data, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise APIError(0, f"Network error: {e}") from e
        self._raise_for_error(resp)
        return resp.json()

    async def get(self, path: str, params: dict | None = None):
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise APIError(0, f"Network error: {e}") from e
        self._raise_for_error(resp)
        return resp.json()


async def capture(awaitable) -> tuple[object, str | None]:
    """Await a client call and return (result, None) or (None, error string).

    For UI edges that show a message instead of handling exceptions.
    """
    try:
        return await awaitable, None
    except APIError as e:
        return None, e.message


class SettleClient:
    """High-level client for the Settle In DASH API."""

    def __init__(self, transport: Transport | None = None, base_url: str = DEFAULT_API_URL,
                 sleep=asyncio.sleep):
        """
        Args:
            transport: custom Transport; defaults to HTTPTransport(base_url).
            sleep: async callable(seconds) used between retries. Tests pass a no-op.
        """
        self.transport = transport or HTTPTransport(base_url)
        self._sleep = sleep
        self._constants: dict | None = None

    async def _action(self, action: str, data: dict) -> dict:
        return await self.transport.post("/api/contracts", {"action": action, "data": data})

    # --- Constants ---

    async def get_constants(self, refresh: bool = False) -> dict:
        """Market constants, fetched once and cached."""
        if self._constants is None or refresh:
            resp = await self.transport.get("/api/constants")
            if not resp.get("success"):
                raise APIError(500, resp.get("error", "Failed to load constants"))
            self._constants = {
                "network": resp["NETWORK"],
                "fee_address": resp["SETTLE_IN_DASH_WALLET"],
                "oracle_public_key": resp["ORACLE_PUBLIC_KEY"],
                "placeholder_public_key": resp["PLACEHOLDER_PUBLIC_KEY"],
            }
        return self._constants

    # --- Events ---

    async def get_events(self, event_id: str = "", category: str = "", status: str = "") -> list[dict]:
        params = {k: v for k, v in (("event_id", event_id), ("category", category), ("status", status)) if v}
        return await self.transport.get("/api/events", params or None)

    async def create_event(self, event: dict) -> str:
        """Create an event. Returns event_id."""
        resp = await self.transport.post("/api/events", event)
        return resp["event_id"]

    async def validate_event(self, title: str, category: str, event_date: str,
                             possible_outcomes: list[str], description: str) -> dict:
        """Oracle pre-check of an event before creating it."""
        resp = await self.transport.post("/api/events/validate", {
            "title": title, "category": category, "event_date": event_date,
            "possible_outcomes": possible_outcomes, "description": description,
        })
        if "error" in resp:
            raise APIError(502, resp["error"])
        return resp

    # --- Contracts ---

    async def fetch_contracts(self, contract_id: str = "", event_id: str = "", status: str = "") -> list[dict]:
        params = {k: v for k, v in (("contract_id", contract_id), ("event_id", event_id), ("status", status)) if v}
        return await self.transport.get("/api/contracts", params or None)

    async def get_contract(self, contract_id: str) -> dict | None:
        contracts = await self.fetch_contracts(contract_id=contract_id)
        return next((c for c in contracts if c.get("contract_id") == contract_id), None)

    async def verify_signature(self, address: str, signature: str, message: str) -> bool:
        """Ask the backend to verify a signed message. Retries on 400/503."""
        data = {"address": address, "signature": signature, "message": message}
        for attempt in range(1, SIGNATURE_VERIFY_ATTEMPTS + 1):
            try:
                resp = await self._action("verify-signature", data)
                return bool(resp.get("isValid"))
            except APIError as e:
                if e.status not in SIGNATURE_RETRY_STATUSES or attempt == SIGNATURE_VERIFY_ATTEMPTS:
                    raise
                log.info("verify_signature_retry", attempt=attempt, status=e.status)
                await self._sleep(SIGNATURE_VERIFY_BACKOFF * attempt)
        raise APIError(0, "Signature verification failed")

    async def create_multisig(self, public_keys: list[str], required: int = MULTISIG_REQUIRED_SIGNATURES,
                              network: str = "") -> dict:
        """Returns {"multisig_address", "redeemScript"}."""
        data = {"public_keys": public_keys, "required_signatures": required}
        if network:
            data["network"] = network
        resp = await self._action("create-multisig", data)
        return {"multisig_address": resp["multisig_address"], "redeemScript": resp["redeemScript"]}

    async def validate_transaction(self, txid: str, expected_destination: str, expected_amount: str,
                                   min_confirmations: int = DEFAULT_MIN_CONFIRMATIONS,
                                   network: str = "") -> dict:
        """Check a funding transaction, waiting for confirmations.

        Returns the last {"success", "message"} response.
        """
        data = {
            "txid": txid,
            "expected_destination": expected_destination,
            "expected_amount": str(expected_amount),
            "min_confirmations": min_confirmations,
        }
        if network:
            data["network"] = network
        resp: dict = {}
        for attempt in range(1, TX_VALIDATE_ATTEMPTS + 1):
            resp = await self._action("validate_transaction", data)
            if resp.get("success") or resp.get("message") != INSUFFICIENT_CONFIRMATIONS:
                return resp
            if attempt < TX_VALIDATE_ATTEMPTS:
                log.info("validate_transaction_wait", txid=txid, attempt=attempt)
                await self._sleep(TX_VALIDATE_SLEEP)
        return resp

    async def get_balance(self, address: str, multisig_address: str = "") -> dict:
        data = {"address": address}
        if multisig_address:
            data["multisig_address"] = multisig_address
        return await self._action("get_balance", data)

    async def get_transaction_info(self, txid: str) -> dict:
        resp = await self._action("get_transaction_info", {"txid": txid})
        return resp["data"]

    async def create_contract(self, contract: dict) -> str:
        """Create a contract. Returns contract_id."""
        resp = await self._action("create_contract", contract)
        return resp["contract_id"]

    async def accept_contract(self, contract_id: str, accepter_address: str, **fields) -> dict:
        """Accept an open contract.

        fields: accepter_public_key, accepter_transaction_id, signature,
        message, accepter_stake, additional_contract_accepter.
        """
        return await self._action("accept_contract", {
            "contract_id": contract_id, "accepterWalletAddress": accepter_address, **fields,
        })

    async def settle_contract(self, contract_id: str, submitter: str, winner: str, reasoning: str,
                              fee_recipient: str = "") -> dict:
        data = {"contract_id": contract_id, "submitter": submitter, "winner": winner, "reasoning": reasoning}
        if fee_recipient:
            data["fee_recipient"] = fee_recipient
        return await self._action("settle_contract", data)

    async def trigger_twist(self, contract_id: str) -> dict:
        return await self._action("trigger_twist", {"contract_id": contract_id})

    async def resolve_twist(self, contract_id: str) -> dict:
        return await self._action("resolve_twist", {"contract_id": contract_id})

    async def generate_unsigned_settlement_tx(self, contract_id: str) -> dict:
        return await self._action("generate_unsigned_settlement_tx", {"contract_id": contract_id})
