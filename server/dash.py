"""Dash payment backend for Settle In DASH.

The market never holds keys or builds scripts itself. Everything that
touches the chain goes through a Dash Core node over JSON-RPC:

  - verifymessage       signature checks for wallet ownership
  - createmultisig      2-of-3 address from party, placeholder and oracle keys
  - getrawtransaction   funding checks and transaction info
  - getaddressbalance   balances (node must run with -addressindex)
  - createrawtransaction unsigned settlement transactions

StubDashBackend keeps the same interface in memory for tests and local
development.
"""

import hashlib
import os
from abc import ABC, abstractmethod
from decimal import Decimal

import requests
import structlog

from protocol import (
    NETWORK, FEE_ADDRESS, ORACLE_PUBLIC_KEY, PLACEHOLDER_PUBLIC_KEY,
    DASH_QUANTUM, INSUFFICIENT_CONFIRMATIONS, NETWORK_FEE,
)
from validation import to_decimal

log = structlog.get_logger(__name__)

DUFFS_PER_DASH = 10**8


class DashRPCError(RuntimeError):
    """The node rejected a call or couldn't be reached."""


class FundingError(DashRPCError):
    """Settlement outputs don't fit what the multisig was funded with."""


def dash_to_duffs(amount: str | Decimal) -> int:
    """Convert DASH amount to duffs (integer)."""
    result = Decimal(str(amount)) * DUFFS_PER_DASH
    return int(result.to_integral_value())


def duffs_to_dash(duffs: int | str) -> Decimal:
    """Convert duffs to DASH."""
    return (Decimal(str(duffs)) / DUFFS_PER_DASH).quantize(DASH_QUANTUM)


def _output_addresses(vout: dict) -> list[str]:
    """Addresses paid by a verbose getrawtransaction output."""
    spk = vout.get("scriptPubKey", {})
    if spk.get("address"):
        return [spk["address"]]
    return list(spk.get("addresses", []))


def check_funding(tx: dict, destination: str, expected_amount: str | Decimal,
                  min_confirmations: int = 1) -> tuple[bool, str]:
    """Check a transaction pays at least expected_amount to destination.

    ``tx`` is the normalized shape returned by DashBackend.get_transaction.
    Returns (True, message) on success. When the only problem is depth the
    message is INSUFFICIENT_CONFIRMATIONS so callers can wait and retry.
    """
    expected = to_decimal(expected_amount)
    if expected is None or expected <= 0:
        return False, "Expected amount must be a positive number"
    paid = sum(
        (Decimal(str(o["amount"])) for o in tx.get("outputs", []) if o.get("address") == destination),
        Decimal(0),
    )
    if paid == 0:
        return False, f"Transaction does not pay {destination}"
    if paid < expected:
        return False, f"Transaction pays {paid} DASH, expected at least {expected} DASH"
    if tx.get("confirmations", 0) < min_confirmations:
        return False, INSUFFICIENT_CONFIRMATIONS
    return True, f"Transaction valid: {paid} DASH to {destination}"


def fit_outputs(outputs: list[dict], funded: Decimal, network_fee: Decimal = NETWORK_FEE) -> list[dict]:
    """Check settlement outputs against the funded total and leave room for the miner.

    The network fee comes out of the platform fee output, or out of the last
    output when there is none. Amounts come back as 8 dp strings.
    """
    amounts = [to_decimal(o["amount"]) for o in outputs]
    if not outputs or any(a is None or a <= 0 for a in amounts):
        raise FundingError("Settlement outputs must be positive amounts")
    total = sum(amounts, Decimal(0))
    if total > funded:
        raise FundingError(f"Settlement pays {total} DASH but the multisig holds {funded} DASH")
    shortfall = total + network_fee - funded
    if shortfall > 0:
        idx = next((i for i, o in enumerate(outputs) if o.get("reason") == "platform fee"), len(outputs) - 1)
        if amounts[idx] <= shortfall:
            raise FundingError("Settlement outputs too small to cover the network fee")
        amounts[idx] -= shortfall
    return [{**o, "amount": str(a.quantize(DASH_QUANTUM))} for o, a in zip(outputs, amounts)]


def merge_outputs(outputs: list[dict]) -> dict[str, str]:
    """{address: amount} for createrawtransaction; outputs to one address merge."""
    amounts: dict[str, Decimal] = {}
    for o in outputs:
        amounts[o["to"]] = amounts.get(o["to"], Decimal(0)) + Decimal(str(o["amount"]))
    return {addr: str(a.quantize(DASH_QUANTUM)) for addr, a in amounts.items()}


class DashBackend(ABC):
    """Abstract interface to a Dash node."""

    network: str = NETWORK
    fee_address: str = FEE_ADDRESS
    oracle_public_key: str = ORACLE_PUBLIC_KEY
    placeholder_public_key: str = PLACEHOLDER_PUBLIC_KEY

    def get_constants(self) -> dict:
        """Published market constants (network, fee wallet, fixed multisig keys)."""
        return {
            "network": self.network,
            "fee_address": self.fee_address,
            "oracle_public_key": self.oracle_public_key,
            "placeholder_public_key": self.placeholder_public_key,
        }

    @abstractmethod
    def verify_message(self, address: str, signature: str, message: str) -> bool:
        """Check a wallet signed message with the key behind address."""
        ...

    @abstractmethod
    def create_multisig(self, public_keys: list[str], required: int) -> dict:
        """Returns {"multisig_address", "redeemScript"}."""
        ...

    @abstractmethod
    def get_balance(self, address: str) -> Decimal:
        ...

    @abstractmethod
    def get_transaction(self, txid: str) -> dict | None:
        """Returns {"txid", "confirmations", "outputs": [{"address", "amount", "n"}]} or None."""
        ...

    @abstractmethod
    def create_settlement_tx(self, multisig_address: str, funding_txids: list[str],
                             outputs: list[dict]) -> dict:
        """Unsigned transaction spending the multisig's funding outputs.

        Returns {"unsigned_tx": hex, "outputs": [...], "funded", "network_fee"}
        with outputs as actually paid, after the network fee is reserved.
        """
        ...

    def funding_inputs(self, multisig_address: str, funding_txids: list[str]) -> tuple[list[dict], Decimal]:
        """Outputs of the funding transactions that pay the multisig, and their total."""
        inputs, funded = [], Decimal(0)
        for txid in funding_txids:
            tx = self.get_transaction(txid)
            if tx is None:
                raise FundingError(f"Funding transaction {txid} not found")
            for o in tx["outputs"]:
                if o["address"] == multisig_address:
                    inputs.append({"txid": txid, "vout": o["n"]})
                    funded += Decimal(str(o["amount"]))
        if not inputs:
            raise FundingError(f"No funding outputs pay {multisig_address}")
        return inputs, funded

    def transaction_info(self, txid: str) -> dict | None:
        """Display summary of a transaction."""
        tx = self.get_transaction(txid)
        if tx is None:
            return None
        total = sum((Decimal(str(o["amount"])) for o in tx["outputs"]), Decimal(0))
        return {
            "txid": tx["txid"],
            "status": "confirmed" if tx.get("confirmations", 0) > 0 else "pending",
            "confirmations": tx.get("confirmations", 0),
            "amount": str(total),
            "outputs": [{**o, "amount": str(o["amount"])} for o in tx["outputs"]],
        }


class DashRPCBackend(DashBackend):
    """Dash Core JSON-RPC backend.

    Credentials come from SETTLE_DASH_RPC_URL / _USER / _PASSWORD unless
    passed explicitly. Testnet dashd listens on 19998 by default.
    """

    DEFAULT_URL = "http://127.0.0.1:19998"

    def __init__(self, url: str | None = None, user: str | None = None,
                 password: str | None = None, network: str | None = None,
                 fee_address: str | None = None, oracle_public_key: str | None = None,
                 placeholder_public_key: str | None = None, timeout: float = 30):
        self.url = url or os.environ.get("SETTLE_DASH_RPC_URL", self.DEFAULT_URL)
        user = user if user is not None else os.environ.get("SETTLE_DASH_RPC_USER", "")
        password = password if password is not None else os.environ.get("SETTLE_DASH_RPC_PASSWORD", "")
        self.auth = (user, password) if user else None
        self.timeout = timeout
        self.network = network or NETWORK
        self.fee_address = fee_address if fee_address is not None else FEE_ADDRESS
        self.oracle_public_key = oracle_public_key if oracle_public_key is not None else ORACLE_PUBLIC_KEY
        self.placeholder_public_key = (placeholder_public_key if placeholder_public_key is not None
                                       else PLACEHOLDER_PUBLIC_KEY)
        self._id = 0

    def _rpc(self, method: str, *params):
        """Make a JSON-RPC call. Returns the result field."""
        self._id += 1
        payload = {"jsonrpc": "1.0", "id": f"settle-{self._id}", "method": method, "params": list(params)}
        try:
            resp = requests.post(self.url, json=payload, auth=self.auth, timeout=self.timeout)
        except requests.RequestException as e:
            log.error("rpc_unreachable", method=method, error=str(e))
            raise DashRPCError(f"Dash node unreachable: {e}") from e
        # dashd reports RPC errors as HTTP 500 with a JSON body
        try:
            body = resp.json()
        except ValueError:
            log.error("rpc_bad_response", method=method, status=resp.status_code)
            raise DashRPCError(f"Dash RPC {method}: HTTP {resp.status_code}")
        if body.get("error"):
            err = body["error"]
            message = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            log.warning("rpc_error", method=method, error=message)
            raise DashRPCError(f"Dash RPC error: {message}")
        return body.get("result")

    def verify_message(self, address: str, signature: str, message: str) -> bool:
        return bool(self._rpc("verifymessage", address, signature, message))

    def create_multisig(self, public_keys: list[str], required: int) -> dict:
        result = self._rpc("createmultisig", required, public_keys)
        return {"multisig_address": result["address"], "redeemScript": result["redeemScript"]}

    def get_balance(self, address: str) -> Decimal:
        result = self._rpc("getaddressbalance", {"addresses": [address]})
        return duffs_to_dash(result.get("balance", 0))

    def get_transaction(self, txid: str) -> dict | None:
        try:
            raw = self._rpc("getrawtransaction", txid, 1)
        except DashRPCError as e:
            if "No such mempool or blockchain transaction" in str(e):
                return None
            raise
        outputs = []
        for vout in raw.get("vout", []):
            addrs = _output_addresses(vout)
            outputs.append({
                "address": addrs[0] if addrs else "",
                "amount": Decimal(str(vout.get("value", 0))),
                "n": vout.get("n", 0),
            })
        return {
            "txid": raw.get("txid", txid),
            "confirmations": raw.get("confirmations", 0),
            "outputs": outputs,
        }

    def create_settlement_tx(self, multisig_address: str, funding_txids: list[str],
                             outputs: list[dict]) -> dict:
        inputs, funded = self.funding_inputs(multisig_address, funding_txids)
        paid = fit_outputs(outputs, funded)
        # dashd accepts amounts as decimal strings
        raw = self._rpc("createrawtransaction", inputs, merge_outputs(paid))
        return {"unsigned_tx": raw, "outputs": paid, "funded": str(funded.quantize(DASH_QUANTUM)),
                "network_fee": str(NETWORK_FEE)}


class StubDashBackend(DashBackend):
    """In-memory backend for testing. Records every call.

    Signatures verify unless listed in ``bad_signatures``. Transactions
    exist only once added with add_transaction().
    """

    def __init__(self, network: str = "testnet", fee_address: str = "",
                 oracle_public_key: str = "", placeholder_public_key: str = ""):
        self.network = network
        self.fee_address = fee_address
        self.oracle_public_key = oracle_public_key
        self.placeholder_public_key = placeholder_public_key
        self.bad_signatures: set[str] = set()
        self.balances: dict[str, Decimal] = {}
        self.transactions: dict[str, dict] = {}
        self.calls: list[tuple] = []  # log of calls for test assertions

    def add_transaction(self, txid: str, outputs: list[tuple[str, str]], confirmations: int = 1) -> dict:
        """Register a transaction paying [(address, amount), ...]."""
        tx = {
            "txid": txid,
            "confirmations": confirmations,
            "outputs": [{"address": a, "amount": Decimal(str(v)), "n": i} for i, (a, v) in enumerate(outputs)],
        }
        self.transactions[txid] = tx
        for address, amount in outputs:
            self.balances[address] = self.balances.get(address, Decimal(0)) + Decimal(str(amount))
        return tx

    def verify_message(self, address: str, signature: str, message: str) -> bool:
        self.calls.append(("verify_message", address, signature, message))
        return signature not in self.bad_signatures

    def create_multisig(self, public_keys: list[str], required: int) -> dict:
        self.calls.append(("create_multisig", tuple(public_keys), required))
        digest = hashlib.sha256("".join(public_keys).encode() + bytes([required])).hexdigest()
        # Fixed-format fake P2SH address: "8" + 33 chars of the digest
        address = "8" + digest[:33].replace("0", "z")
        redeem = f"{0x50 + required:02x}" + "".join(f"{len(k) // 2:02x}{k}" for k in public_keys)
        redeem += f"{0x50 + len(public_keys):02x}ae"
        return {"multisig_address": address, "redeemScript": redeem}

    def get_balance(self, address: str) -> Decimal:
        self.calls.append(("get_balance", address))
        return self.balances.get(address, Decimal(0)).quantize(DASH_QUANTUM)

    def get_transaction(self, txid: str) -> dict | None:
        self.calls.append(("get_transaction", txid))
        return self.transactions.get(txid)

    def create_settlement_tx(self, multisig_address: str, funding_txids: list[str],
                             outputs: list[dict]) -> dict:
        _, funded = self.funding_inputs(multisig_address, funding_txids)
        self.calls.append(("create_settlement_tx", multisig_address, tuple(funding_txids), len(outputs)))
        paid = fit_outputs(outputs, funded)
        body = multisig_address + "".join(funding_txids) + "".join(f"{o['to']}{o['amount']}" for o in paid)
        return {"unsigned_tx": "02000000" + hashlib.sha256(body.encode()).hexdigest(), "outputs": paid,
                "funded": str(funded.quantize(DASH_QUANTUM)), "network_fee": str(NETWORK_FEE)}
