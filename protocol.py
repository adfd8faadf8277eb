"""Shared constants and interfaces for the Settle In DASH market.

All modules import from here to avoid circular dependencies.
"""

import os
from decimal import Decimal
from enum import Enum

# --- Network ---

NETWORK = os.environ.get("SETTLE_NETWORK", "testnet")
DEFAULT_API_URL = os.environ.get("SETTLE_API_URL", "https://settleindash.com")

# Addresses and keys published through /api/constants
FEE_ADDRESS = os.environ.get("SETTLE_FEE_ADDRESS", "")
ORACLE_PUBLIC_KEY = os.environ.get("SETTLE_ORACLE_PUBKEY", "")
PLACEHOLDER_PUBLIC_KEY = os.environ.get("SETTLE_PLACEHOLDER_PUBKEY", "")

SIGNATURE_MESSAGE_PREFIX = "SettleInDash:"

# Base58 alphabet (no 0, O, I, l). Testnet P2PKH addresses start with 'y',
# mainnet with 'X'.
ADDRESS_PATTERNS = {
    "testnet": r"^y[1-9A-HJ-NP-Za-km-z]{25,34}$",
    "mainnet": r"^X[1-9A-HJ-NP-Za-km-z]{25,34}$",
}
COMPRESSED_PUBKEY_PATTERN = r"^(02|03)[0-9a-fA-F]{64}$"
UNCOMPRESSED_PUBKEY_PATTERN = r"^04[0-9a-fA-F]{128}$"
SIGNATURE_PATTERN = r"^[A-Za-z0-9+/=]+$"
TXID_PATTERN = r"^[0-9a-fA-F]{64}$"
HEX_PATTERN = r"^[0-9a-fA-F]+$"

# --- Market rules ---

MINIMUM_STAKE = Decimal(os.environ.get("SETTLE_MIN_STAKE", "1"))
MINIMUM_ODDS = Decimal("1")  # odds must be strictly greater
ADDITIONAL_CONTRACT_RATE = Decimal("0.10")  # extra collateral per side
STAKE_TOLERANCE = Decimal("0.01")
EVENT_MIN_LEAD_SECONDS = 300  # events must start at least 5 minutes out

MAX_TITLE_LENGTH = 255
MAX_CATEGORY_LENGTH = 100
MAX_OUTCOME_LENGTH = 255
MAX_ORACLE_SOURCE_LENGTH = 255
MAX_REASONING_LENGTH = 1000
MIN_OUTCOMES = 2

# Payout splits (winner keeps 98%, platform takes 2%; ties 99/1)
WIN_PAYOUT_RATE = Decimal("0.98")
WIN_FEE_RATE = Decimal("0.02")
TIE_REFUND_RATE = Decimal("0.99")
TIE_FEE_RATE = Decimal("0.01")
DASH_QUANTUM = Decimal("0.00000001")  # 1 duff
# Miner fee reserved out of every settlement transaction
NETWORK_FEE = Decimal(os.environ.get("SETTLE_NETWORK_FEE", "0.00001"))

TIE = "tie"

# Multisig: party key + placeholder/counterparty key + oracle key, 2 to spend
MULTISIG_REQUIRED_SIGNATURES = 2
MULTISIG_KEY_COUNT = 3

# --- Client retry policy ---

SIGNATURE_VERIFY_ATTEMPTS = 3
SIGNATURE_VERIFY_BACKOFF = 1.0  # seconds * attempt
SIGNATURE_RETRY_STATUSES = {400, 503}
TX_VALIDATE_ATTEMPTS = 3
TX_VALIDATE_SLEEP = 30.0  # seconds between confirmation checks
DEFAULT_MIN_CONFIRMATIONS = 1
INSUFFICIENT_CONFIRMATIONS = "Insufficient confirmations"

DEFAULT_PAGE_SIZE = 20

# --- Oracle defaults ---

XAI_API_URL = "https://api.x.ai/v1/chat/completions"
DEFAULT_ORACLE_MODEL = os.environ.get("SETTLE_ORACLE_MODEL", "grok-beta")
ORACLE_TEMPERATURE = 0.3
ORACLE_MAX_TOKENS = 500

ALLOWED_ORIGINS = [
    o.strip() for o in os.environ.get(
        "SETTLE_ALLOWED_ORIGINS",
        "https://settleindash.com,https://www.settleindash.com",
    ).split(",") if o.strip()
]


# --- State Machine ---

class ContractStatus(Enum):
    OPEN = "open"
    ACCEPTED = "accepted"
    CANCELLED = "cancelled"
    SETTLED = "settled"
    TWIST = "twist"  # parties disagree, oracle decides


# Valid state transitions: current_status -> set of valid next statuses
STATE_TRANSITIONS = {
    ContractStatus.OPEN: {ContractStatus.ACCEPTED, ContractStatus.CANCELLED},
    ContractStatus.ACCEPTED: {ContractStatus.SETTLED, ContractStatus.TWIST},
    ContractStatus.TWIST: {ContractStatus.SETTLED},
    ContractStatus.CANCELLED: set(),
    ContractStatus.SETTLED: set(),
}

STATUS_LABELS = {
    "open": "Open for Acceptance",
    "accepted": "Accepted",
    "cancelled": "Cancelled",
    "settled": "Settled",
    "twist": "Twist Resolved",
}


class PositionType(Enum):
    BUY = "buy"    # backs the outcome; accepter lays stake * (odds - 1)
    SELL = "sell"  # lays the outcome; accepter backs stake / (odds - 1)


# --- API actions ---

# POST /api/contracts {"action": ..., "data": {...}}
CONTRACT_ACTIONS = {
    "get_contracts",
    "get_constants",
    "verify-signature",
    "verify_signature",
    "create-multisig",
    "get_balance",
    "validate_transaction",
    "get_transaction_info",
    "create_contract",
    "accept_contract",
    "settle_contract",
    "trigger_twist",
    "resolve_twist",
    "generate_unsigned_settlement_tx",
}

# Legacy PUT actions and the POST action they map to
LEGACY_PUT_ACTIONS = {
    "accept": "accept_contract",
    "settle": "settle_contract",
    "twist": "trigger_twist",
    "resolve_twist": "resolve_twist",
}
