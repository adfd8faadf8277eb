"""Wallet flows for creating and accepting contracts.

A flow walks one party through the steps their wallet has to take part
in, in order:

    connect wallet -> sign message -> verify signature
        -> (creator only) create multisig
        -> fund multisig -> validate funding tx -> submit

Signing and paying happen in the user's wallet (Dash Core, mobile apps).
The flow only produces the payloads to hand to the wallet (a
``signmessage:`` request and a ``dash:`` payment URI) and checks each
result with the API before unlocking the next step. Calling a step out of
order raises FlowError with the message to show the user.
"""

from decimal import Decimal, ROUND_UP
from enum import Enum

import structlog

from client import SettleClient, APIError
from protocol import (
    SIGNATURE_MESSAGE_PREFIX, MULTISIG_REQUIRED_SIGNATURES, NETWORK, DASH_QUANTUM, ContractStatus,
)
from validation import (
    validate_wallet_address, validate_public_key, validate_signature_format,
    validate_txid, validate_redeem_script, to_decimal, expected_accepter_stake,
    additional_contract_amount,
)

log = structlog.get_logger(__name__)


def _duffs_up(amount: Decimal) -> Decimal:
    return amount.quantize(DASH_QUANTUM, rounding=ROUND_UP)


class FlowError(Exception):
    """A step was refused. str(e) is the user-facing message."""


class FlowStep(Enum):
    START = "start"
    CONNECTED = "connected"    # address + pubkey checked, waiting for signature
    SIGNED = "signed"          # signature verified by the backend
    MULTISIG = "multisig"      # multisig address known
    FUNDED = "funded"          # funding tx validated
    SUBMITTED = "submitted"


def sign_message(address: str) -> str:
    """The message a party signs to prove they control address."""
    return f"{SIGNATURE_MESSAGE_PREFIX}{address}"


def signing_request(address: str, message: str) -> str:
    """Payload a wallet QR scanner understands as 'sign this message'."""
    return f"signmessage:{address}:{message}:"


def payment_uri(address: str, amount: Decimal | str) -> str:
    """BIP21-style dash: URI requesting amount DASH to address."""
    d = to_decimal(amount)
    if d is None or d <= 0:
        raise FlowError("Invalid amount")
    return f"dash:{address}?amount={d:.8f}"


class WalletFlow:
    """Steps shared by creator and accepter."""

    def __init__(self, client: SettleClient, network: str = NETWORK):
        self.client = client
        self.network = network
        self.step = FlowStep.START
        self.address = ""
        self.public_key = ""
        self.message = ""
        self.signature = ""
        self.multisig_address = ""
        self.redeem_script = ""
        self.transaction_id = ""

    def _require(self, *steps: FlowStep, message: str):
        if self.step not in steps:
            raise FlowError(message)

    def connect_wallet(self, address: str, public_key: str) -> dict:
        """Check address and key, return the signing request for the wallet."""
        if not address:
            raise FlowError("Please enter your DASH wallet address")
        if not public_key:
            raise FlowError("Please enter your public key")
        ok, _ = validate_wallet_address(address, self.network)
        if not ok:
            raise FlowError(f"Invalid Dash {self.network} wallet address")
        ok, _ = validate_public_key(public_key)
        if not ok:
            raise FlowError("Invalid public key. Ensure you entered the correct 'pubkey' from Dash Core.")
        self.address = address
        self.public_key = public_key
        self.message = sign_message(address)
        self.signature = ""
        self.step = FlowStep.CONNECTED
        return {"message": self.message, "payload": signing_request(address, self.message)}

    async def verify_signature(self, signature: str) -> bool:
        """Send the pasted signature to the backend for verification."""
        self._require(FlowStep.CONNECTED, FlowStep.SIGNED, message="Please connect your wallet first")
        if not signature:
            raise FlowError("Please enter a signature")
        ok, err = validate_signature_format(signature.strip())
        if not ok:
            raise FlowError(err)
        try:
            valid = await self.client.verify_signature(self.address, signature.strip(), self.message)
        except APIError as e:
            raise FlowError(f"Failed to verify signature: {e.message}")
        if not valid:
            raise FlowError("Signature verification failed")
        self.signature = signature.strip()
        self.step = FlowStep.SIGNED
        log.info("wallet_signed", address=self.address)
        return True

    def funding_amount(self) -> Decimal:
        """Stake plus additional contract, rounded up to whole duffs.

        Both go into the multisig; settlement pays the additional contracts
        back out of it.
        """
        return _duffs_up(self.stake) + _duffs_up(additional_contract_amount(self.stake))

    def funding_request(self) -> dict:
        """Payment URI for the party's stake and additional contract."""
        self._require(FlowStep.MULTISIG, FlowStep.FUNDED, message="Please connect and sign first")
        if not self.multisig_address:
            raise FlowError("Contract multisig address missing")
        amount = self.funding_amount()
        return {
            "address": self.multisig_address,
            "amount": f"{amount:.8f}",
            "uri": payment_uri(self.multisig_address, amount),
        }

    async def validate_funding(self, txid: str) -> dict:
        """Confirm the funding transaction pays the multisig."""
        self._require(FlowStep.MULTISIG, FlowStep.FUNDED, message="Please connect and sign first")
        txid = (txid or "").strip()
        if not txid:
            raise FlowError("Enter transaction ID")
        ok, _ = validate_txid(txid)
        if not ok:
            raise FlowError("Invalid transaction ID format.")
        try:
            result = await self.client.validate_transaction(
                txid, self.multisig_address, str(self.funding_amount()), network=self.network)
        except APIError as e:
            raise FlowError(f"Failed to validate transaction: {e.message}")
        if not result.get("success"):
            raise FlowError(result.get("message") or "Transaction validation failed")
        self.transaction_id = txid
        self.step = FlowStep.FUNDED
        return result


class CreationFlow(WalletFlow):
    """Creator side: builds the multisig and posts the contract.

    terms: event_id, outcome, position_type, stake, odds, acceptance_deadline.
    """

    def __init__(self, client: SettleClient, terms: dict, network: str = NETWORK):
        super().__init__(client, network)
        stake = to_decimal(terms.get("stake"))
        if stake is None or stake <= 0:
            raise FlowError("Please enter a valid stake amount (must be greater than 0)")
        self.terms = dict(terms)
        self.stake = stake

    async def create_multisig(self) -> dict:
        """2-of-3 multisig over creator, placeholder and oracle keys."""
        self._require(FlowStep.SIGNED, FlowStep.MULTISIG, message="Please connect and sign first")
        constants = await self.client.get_constants()
        keys = [self.public_key, constants["placeholder_public_key"], constants["oracle_public_key"]]
        try:
            result = await self.client.create_multisig(keys, MULTISIG_REQUIRED_SIGNATURES, self.network)
        except APIError as e:
            raise FlowError(f"Failed to create multisig: {e.message}")
        ok, _ = validate_redeem_script(result.get("redeemScript", ""))
        if not result.get("multisig_address") or not ok:
            raise FlowError("Invalid multisig response from server")
        self.multisig_address = result["multisig_address"]
        self.redeem_script = result["redeemScript"]
        self.step = FlowStep.MULTISIG
        return result

    async def submit(self) -> str:
        """Post the contract. Returns contract_id."""
        self._require(FlowStep.FUNDED, message="Please validate the stake transaction")
        payload = {
            **self.terms,
            "stake": str(self.stake),
            "creator_address": self.address,
            "creator_public_key": self.public_key,
            "signature": self.signature,
            "message": self.message,
            "multisig_address": self.multisig_address,
            "redeem_script": self.redeem_script,
            "transaction_id": self.transaction_id,
            "additional_contract_creator": str(additional_contract_amount(self.stake)),
            "network": self.network,
        }
        try:
            contract_id = await self.client.create_contract(payload)
        except APIError as e:
            raise FlowError(f"Failed to create contract: {e.message}")
        self.step = FlowStep.SUBMITTED
        log.info("flow_contract_created", contract_id=contract_id)
        return contract_id


class AcceptanceFlow(WalletFlow):
    """Accepter side: funds the creator's multisig and accepts."""

    def __init__(self, client: SettleClient, contract: dict, network: str = NETWORK):
        super().__init__(client, network)
        if contract.get("status") != ContractStatus.OPEN.value:
            raise FlowError("This contract is no longer open for acceptance")
        self.contract = contract
        stake = to_decimal(contract.get("stake"))
        odds = to_decimal(contract.get("odds"))
        try:
            self.stake = expected_accepter_stake(stake, odds, contract.get("position_type", ""))
        except (TypeError, ValueError):
            raise FlowError("Invalid accepter stake amount")

    async def verify_signature(self, signature: str) -> bool:
        await super().verify_signature(signature)
        # The multisig already exists; acceptance funds it directly
        if not self.contract.get("multisig_address"):
            raise FlowError("Contract multisig address missing")
        self.multisig_address = self.contract["multisig_address"]
        self.step = FlowStep.MULTISIG
        return True

    async def submit(self) -> dict:
        self._require(FlowStep.FUNDED, message="Please validate the stake transaction")
        try:
            result = await self.client.accept_contract(
                self.contract["contract_id"], self.address,
                accepter_public_key=self.public_key,
                accepter_transaction_id=self.transaction_id,
                signature=self.signature,
                message=self.message,
                accepter_stake=f"{self.stake:.8f}",
                additional_contract_accepter=f"{additional_contract_amount(self.stake):.8f}",
                network=self.network,
            )
        except APIError as e:
            raise FlowError(f"Failed to accept contract: {e.message}")
        self.step = FlowStep.SUBMITTED
        log.info("flow_contract_accepted", contract_id=self.contract["contract_id"])
        return result
