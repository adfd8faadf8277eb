"""Input validation and display formatting for Settle In DASH.

Validators follow one convention: ``(True, [])`` / ``(True, "")`` on
success, ``(False, errors)`` otherwise. Nothing here raises on bad user
input; callers decide whether a failure is a 400 or a form message.
"""

import json
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from protocol import (
    NETWORK, ADDRESS_PATTERNS, COMPRESSED_PUBKEY_PATTERN, UNCOMPRESSED_PUBKEY_PATTERN,
    SIGNATURE_PATTERN, TXID_PATTERN, HEX_PATTERN,
    MINIMUM_STAKE, MINIMUM_ODDS, ADDITIONAL_CONTRACT_RATE, STAKE_TOLERANCE,
    EVENT_MIN_LEAD_SECONDS, MAX_TITLE_LENGTH, MAX_CATEGORY_LENGTH,
    MAX_OUTCOME_LENGTH, MAX_ORACLE_SOURCE_LENGTH, MAX_REASONING_LENGTH,
    MIN_OUTCOMES, STATUS_LABELS, PositionType, TIE,
)


# --- Parsing helpers ---

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value) -> datetime | None:
    """Parse a timestamp into an aware UTC datetime.

    Accepts datetimes, epoch seconds, and ISO-8601 strings with either a
    space or a 'T' separator. Naive values are taken to be UTC, which is how
    the backend stores them. Returns None when the value can't be parsed.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_decimal(value) -> Decimal | None:
    """Decimal from user input, or None for anything non-numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite():
        return None
    return d


def parse_outcomes(value) -> list[str]:
    """Normalize an event's possible outcomes to a list of strings.

    Events carry outcomes as a list, a JSON-encoded list, or a legacy
    comma-separated string. Entries are trimmed and empties dropped.
    """
    if value is None:
        return []
    items = value
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        try:
            items = json.loads(text)
        except json.JSONDecodeError:
            items = text.split(",")
        if isinstance(items, str):
            items = [items]
    if not isinstance(items, (list, tuple)):
        return []
    out = []
    for item in items:
        if item is None:
            continue
        s = str(item).strip()
        if s:
            out.append(s)
    return out


# --- Format checks ---

def validate_wallet_address(address: str, network: str = NETWORK) -> tuple[bool, str]:
    """Validate a Dash P2PKH address for the given network.

    Returns (True, "") on success, or (False, "error message") on failure.
    """
    if not address or not isinstance(address, str):
        return False, "Wallet address is required"
    pattern = ADDRESS_PATTERNS.get(network)
    if pattern is None:
        return False, f"Unknown network '{network}'"
    if not re.match(pattern, address):
        prefix = "y" if network == "testnet" else "X"
        return False, (f"Invalid Dash {network} address: must start with '{prefix}' "
                       f"and be 26-35 base58 characters")
    return True, ""


def validate_multisig_address(address: str) -> tuple[bool, str]:
    """P2SH addresses carry their own prefix ('8' on testnet, '7' on mainnet)."""
    if not address or not isinstance(address, str):
        return False, "Multisig address is required"
    if not re.match(r"^[1-9A-HJ-NP-Za-km-z]{26,35}$", address):
        return False, "Invalid multisig address"
    return True, ""


def validate_public_key(pubkey: str) -> tuple[bool, str]:
    """Compressed (02/03 + 64 hex) or uncompressed (04 + 128 hex) key."""
    if not pubkey or not isinstance(pubkey, str):
        return False, "Public key is required"
    if re.match(COMPRESSED_PUBKEY_PATTERN, pubkey) or re.match(UNCOMPRESSED_PUBKEY_PATTERN, pubkey):
        return True, ""
    return False, ("Invalid public key: expected 66 hex chars starting with 02/03 "
                   "or 130 hex chars starting with 04")


def validate_signature_format(signature: str) -> tuple[bool, str]:
    if not signature or not isinstance(signature, str):
        return False, "Signature is required"
    if not re.match(SIGNATURE_PATTERN, signature):
        return False, "Invalid signature format: must be base64"
    return True, ""


def validate_txid(txid: str) -> tuple[bool, str]:
    if not txid or not isinstance(txid, str):
        return False, "Transaction ID is required"
    if not re.match(TXID_PATTERN, txid):
        return False, "Invalid transaction ID: must be 64 hex characters"
    return True, ""


def validate_redeem_script(script: str) -> tuple[bool, str]:
    if not script or not isinstance(script, str):
        return False, "Redeem script is required"
    if not re.match(HEX_PATTERN, script) or len(script) % 2:
        return False, "Invalid redeem script: must be hex"
    return True, ""


# --- Derived amounts ---

def additional_contract_amount(stake: Decimal) -> Decimal:
    """Extra collateral each side locks alongside its stake."""
    return stake * ADDITIONAL_CONTRACT_RATE


def expected_accepter_stake(stake: Decimal, odds: Decimal, position_type: str) -> Decimal:
    """What the counterparty must put up to take the other side.

    A buyer backs the outcome at ``odds`` so the accepter lays
    ``stake * (odds - 1)``; a seller lays it, so the accepter backs
    ``stake / (odds - 1)``.
    """
    if odds <= MINIMUM_ODDS:
        raise ValueError("odds must be greater than 1")
    if position_type == PositionType.BUY.value:
        return stake * (odds - 1)
    if position_type == PositionType.SELL.value:
        return stake / (odds - 1)
    raise ValueError(f"Invalid position type: {position_type}")


def stake_matches(supplied: Decimal, expected: Decimal) -> bool:
    return abs(supplied - expected) <= STAKE_TOLERANCE


# --- Event validation ---

def validate_event_creation(data: dict, now: datetime | None = None) -> tuple[bool, list[str]]:
    """Validate a new event.

    Returns:
        (True, []) if valid, (False, [errors]) otherwise.
    """
    if not isinstance(data, dict):
        return False, ["event is not a dict"]
    errors = []
    now = now or utcnow()

    for name in ("title", "category", "event_date", "possible_outcomes"):
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(f"Missing required field: {name}")
    if errors:
        return False, errors

    title = str(data["title"]).strip()
    if len(title) > MAX_TITLE_LENGTH:
        errors.append(f"Title must be {MAX_TITLE_LENGTH} characters or fewer")

    category = str(data["category"]).strip()
    if len(category) > MAX_CATEGORY_LENGTH:
        errors.append(f"Category must be {MAX_CATEGORY_LENGTH} characters or fewer")

    event_date = parse_datetime(data["event_date"])
    if event_date is None:
        errors.append("Invalid event date format")
    elif event_date < now + timedelta(seconds=EVENT_MIN_LEAD_SECONDS):
        errors.append("Event date must be at least 5 minutes in the future")

    raw_outcomes = data["possible_outcomes"]
    if isinstance(raw_outcomes, (list, tuple)):
        outcomes = [str(o).strip() if o is not None else "" for o in raw_outcomes]
        if any(not o for o in outcomes):
            errors.append("Outcomes cannot be empty")
        outcomes = [o for o in outcomes if o]
    else:
        outcomes = parse_outcomes(raw_outcomes)
    if len(outcomes) < MIN_OUTCOMES:
        errors.append("At least two possible outcomes are required")
    if any(len(o) > MAX_OUTCOME_LENGTH for o in outcomes):
        errors.append(f"Each outcome must be {MAX_OUTCOME_LENGTH} characters or fewer")

    oracle_source = data.get("oracle_source")
    if oracle_source and len(str(oracle_source)) > MAX_ORACLE_SOURCE_LENGTH:
        errors.append(f"Oracle source must be {MAX_ORACLE_SOURCE_LENGTH} characters or fewer")

    if data.get("event_wallet_address"):
        ok, err = validate_wallet_address(data["event_wallet_address"])
        if not ok:
            errors.append(err)
    if data.get("signature"):
        ok, err = validate_signature_format(data["signature"])
        if not ok:
            errors.append(err)

    return (len(errors) == 0, errors)


# --- Contract validation ---

# Accepted spellings for each canonical contract field
CONTRACT_FIELD_ALIASES = {
    "event_id": ("event_id", "eventId"),
    "position_type": ("position_type", "positionType"),
    "creator_address": ("creator_address", "WalletAddress", "walletAddress"),
    "acceptance_deadline": ("acceptance_deadline", "acceptanceDeadline", "expiration_date"),
    "creator_public_key": ("creator_public_key", "public_key"),
    "transaction_id": ("transaction_id", "creator_transaction_id", "txid"),
    "redeem_script": ("redeem_script", "redeemScript"),
}


def normalize_contract_request(data: dict) -> dict:
    """Map the field spellings older clients send onto canonical names."""
    out = dict(data)
    for canonical, aliases in CONTRACT_FIELD_ALIASES.items():
        if out.get(canonical) not in (None, ""):
            continue
        for alias in aliases:
            if data.get(alias) not in (None, ""):
                out[canonical] = data[alias]
                break
    return out


def validate_contract_creation(data: dict, event: dict | None,
                               now: datetime | None = None) -> tuple[bool, list[str]]:
    """Validate a new contract against the event it bets on.

    ``data`` should already be normalized (see normalize_contract_request).
    """
    if not isinstance(data, dict):
        return False, ["contract is not a dict"]
    errors = []
    now = now or utcnow()

    required = ("event_id", "outcome", "position_type", "stake", "odds",
                "creator_address", "acceptance_deadline", "signature")
    for name in required:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(f"Missing required field: {name}")
    if errors:
        return False, errors

    if event is None:
        return False, ["Event not found"]

    if data["outcome"] not in parse_outcomes(event.get("possible_outcomes")):
        errors.append("Invalid outcome for this event")

    if data["position_type"] not in {p.value for p in PositionType}:
        errors.append("Position type must be 'buy' or 'sell'")

    stake = to_decimal(data["stake"])
    if stake is None:
        errors.append("Stake must be a number")
    elif stake < MINIMUM_STAKE:
        errors.append(f"Stake must be at least {MINIMUM_STAKE} DASH")

    odds = to_decimal(data["odds"])
    if odds is None:
        errors.append("Odds must be a number")
    elif odds <= MINIMUM_ODDS:
        errors.append("Odds must be greater than 1")

    ok, err = validate_wallet_address(data["creator_address"])
    if not ok:
        errors.append(err)

    deadline = parse_datetime(data["acceptance_deadline"])
    event_date = parse_datetime(event.get("event_date"))
    if deadline is None:
        errors.append("Invalid acceptance deadline format")
    else:
        if deadline <= now:
            errors.append("Acceptance deadline must be in the future")
        if event_date is not None and deadline > event_date:
            errors.append("Acceptance deadline must be on or before the event date")

    ok, err = validate_signature_format(data["signature"])
    if not ok:
        errors.append(err)

    if data.get("creator_public_key"):
        ok, err = validate_public_key(data["creator_public_key"])
        if not ok:
            errors.append(err)
    if data.get("transaction_id"):
        ok, err = validate_txid(data["transaction_id"])
        if not ok:
            errors.append(err)
    if data.get("redeem_script"):
        ok, err = validate_redeem_script(data["redeem_script"])
        if not ok:
            errors.append(err)
    if data.get("multisig_address"):
        ok, err = validate_multisig_address(data["multisig_address"])
        if not ok:
            errors.append(err)

    additional = data.get("additional_contract_creator")
    if additional not in (None, "") and stake is not None:
        supplied = to_decimal(additional)
        if supplied is None or not stake_matches(supplied, additional_contract_amount(stake)):
            errors.append("Additional contract must be 10% of stake")

    return (len(errors) == 0, errors)


def validate_settlement(contract: dict, submitter: str, winner: str,
                        reasoning: str) -> tuple[bool, list[str]]:
    """Validate one party's settlement claim on an accepted contract."""
    errors = []
    creator = contract.get("creator_address")
    accepter = contract.get("accepter_address")

    if not submitter:
        errors.append("Submitter wallet address is required")
    elif submitter not in (creator, accepter):
        errors.append("Submitter must be the creator or the accepter")

    if not winner:
        errors.append("Winner is required")
    elif winner not in (creator, accepter, TIE):
        errors.append("Winner must be the creator, the accepter, or 'tie'")

    reasoning = (reasoning or "").strip()
    if not reasoning:
        errors.append("Reasoning is required")
    elif len(reasoning) > MAX_REASONING_LENGTH:
        errors.append(f"Reasoning must be at most {MAX_REASONING_LENGTH} characters")

    return (len(errors) == 0, errors)


# --- Display ---

def format_status(status: str) -> str:
    return STATUS_LABELS.get(status, status)


def format_custom_date(value) -> str:
    """Human-readable UTC timestamp, e.g. 'Jan 20, 2026, 21:00'."""
    if value is None or value == "":
        return "Not set"
    dt = parse_datetime(value)
    if dt is None:
        return "Invalid date"
    return f"{dt.strftime('%b')} {dt.day}, {dt.year}, {dt.strftime('%H:%M')}"


def format_date(value) -> str:
    """YYYY-MM-DD in UTC."""
    if value is None or value == "":
        return "Not set"
    dt = parse_datetime(value)
    if dt is None:
        return "Invalid date"
    return dt.strftime("%Y-%m-%d")


def format_dash(amount: Decimal | str | None) -> str:
    d = to_decimal(amount)
    if d is None:
        return "0.00000000"
    return f"{d:.8f}"
