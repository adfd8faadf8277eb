# SPDX-License-Identifier: AGPL-3.0-or-later
# Copyright (c) 2026 Karan Sharma
"""HTTP API for the Settle In DASH market (FastAPI).

Endpoints:
- /api/constants: network, fee wallet and fixed multisig keys
- /api/events: list and create events, plus an oracle pre-check
- /api/contracts: list contracts (GET) and an action dispatcher (POST)
  covering the wallet flow (signature checks, multisig creation, funding
  validation) and the contract lifecycle (create, accept, settle, twist)

Funds never touch this process. Multisig addresses and settlement
transactions are built by the Dash node; signing happens in the parties'
wallets.

Errors are returned as {"error": "..."} with an HTTP status.
"""

import sys
import os
# Ensure parent directory is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json as json_mod
from datetime import datetime, timezone
from decimal import Decimal

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from server.store import MarketStore
from server.dash import DashBackend, DashRPCBackend, DashRPCError, FundingError, check_funding
from server.oracle import GrokOracle, OracleBackend, OracleError, InvalidRuling, TwistEvidence
from server.settlement import Settlement, refund
from protocol import (
    ALLOWED_ORIGINS, LEGACY_PUT_ACTIONS, ContractStatus,
    SIGNATURE_MESSAGE_PREFIX, MULTISIG_KEY_COUNT, MULTISIG_REQUIRED_SIGNATURES,
    DEFAULT_MIN_CONFIRMATIONS, MINIMUM_STAKE, ADDITIONAL_CONTRACT_RATE,
    WIN_PAYOUT_RATE, TIE_REFUND_RATE, TIE, WIN_FEE_RATE, TIE_FEE_RATE,
)
from validation import (
    normalize_contract_request, validate_contract_creation, validate_event_creation,
    validate_wallet_address, validate_multisig_address, validate_public_key,
    validate_signature_format, validate_txid, validate_settlement,
    expected_accepter_stake, additional_contract_amount, stake_matches,
    to_decimal, parse_datetime, utcnow, format_dash,
)

log = structlog.get_logger(__name__)


# --- Request models ---

class ActionRequest(BaseModel):
    action: str
    data: dict = {}

class EventValidateRequest(BaseModel):
    title: str
    category: str
    event_date: str
    possible_outcomes: list[str] | str
    description: str


def _require(data: dict, *names: str):
    """Raise 400 listing any missing or blank fields."""
    missing = [n for n in names if data.get(n) is None or (isinstance(data.get(n), str) and not data[n].strip())]
    if missing:
        raise HTTPException(400, f"Missing required fields: {', '.join(missing)}")


def _check(result: tuple, status: int = 400):
    """Turn a validator's (ok, error) into an HTTPException."""
    ok, err = result
    if not ok:
        raise HTTPException(status, "; ".join(err) if isinstance(err, list) else err)


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except (json_mod.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(400, "Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(400, "Invalid JSON")
    return body


def _contract_summary(contract: dict) -> dict:
    """Public subset of a contract returned after accept."""
    keys = ("contract_id", "event_id", "outcome", "position_type", "stake", "odds", "status",
            "creator_address", "accepter_address", "accepter_stake",
            "additional_contract_creator", "additional_contract_accepter",
            "multisig_address", "acceptance_deadline")
    return {k: contract.get(k) for k in keys}


def create_app(
    store: MarketStore | None = None,
    dash: DashBackend | None = None,
    oracle: OracleBackend | None = None,
    allowed_origins: list[str] | None = None,
) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Defaults talk to a real Dash node (SETTLE_DASH_RPC_*) and the xAI API
    (SETTLE_XAI_API_KEY); tests pass a StubDashBackend and an oracle with
    an injected llm_call.
    """

    app = FastAPI(title="Settle In DASH", version="1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins if allowed_origins is not None else ALLOWED_ORIGINS,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    # Defaults
    _store = store or MarketStore()
    _dash = dash or DashRPCBackend()
    _oracle = oracle or GrokOracle()

    # Expose for testing
    app.state.store = _store
    app.state.dash = _dash
    app.state.oracle = _oracle

    # --- Helpers ---

    def _get_contract(data: dict) -> dict:
        _require(data, "contract_id")
        contract = _store.get_contract(data["contract_id"])
        if not contract:
            raise HTTPException(404, "Contract not found")
        return contract

    def _transition(contract_id: str, status: str, **fields):
        try:
            ok = _store.update_status(contract_id, status, **fields)
        except ValueError as e:
            raise HTTPException(409, str(e))
        if not ok:
            raise HTTPException(409, "Contract changed concurrently, retry")

    def _fee_recipient(data: dict) -> str:
        recipient = data.get("fee_recipient") or _dash.fee_address or ""
        ok, _ = validate_wallet_address(recipient)
        if not ok:
            raise HTTPException(400, "Please provide a valid fee recipient address")
        return recipient

    def _node_call(fn, *args, status: int = 502):
        """Run a Dash backend call, mapping node failures to an HTTP error."""
        try:
            return fn(*args)
        except DashRPCError as e:
            raise HTTPException(status, str(e))

    def _constants() -> dict:
        try:
            return _dash.get_constants()
        except DashRPCError as e:
            log.error("constants_unavailable", error=str(e))
            raise HTTPException(500, "Failed to load constants")

    # --- Constants ---

    @app.get("/api/constants")
    async def get_constants():
        c = _constants()
        return {
            "success": True,
            "NETWORK": c["network"],
            "SETTLE_IN_DASH_WALLET": c["fee_address"],
            "ORACLE_PUBLIC_KEY": c["oracle_public_key"],
            "PLACEHOLDER_PUBLIC_KEY": c["placeholder_public_key"],
        }

    @app.get("/api/platform_info")
    async def platform_info():
        """Advertised rates and minimums."""
        return {
            "network": _dash.network,
            "min_stake": str(MINIMUM_STAKE),
            "additional_contract_rate": str(ADDITIONAL_CONTRACT_RATE),
            "win_payout_rate": str(WIN_PAYOUT_RATE),
            "win_fee_rate": str(WIN_FEE_RATE),
            "tie_refund_rate": str(TIE_REFUND_RATE),
            "tie_fee_rate": str(TIE_FEE_RATE),
            "multisig": f"{MULTISIG_REQUIRED_SIGNATURES}-of-{MULTISIG_KEY_COUNT}",
            "currency": "DASH",
        }

    @app.get("/api/stats")
    async def get_stats():
        counts = {s.value: 0 for s in ContractStatus}
        for c in _store.list_contracts(limit=100000):
            counts[c["status"]] = counts.get(c["status"], 0) + 1
        return {"contracts": counts, "total": sum(counts.values()),
                "events": len(_store.list_events(limit=100000))}

    # --- Events ---

    @app.get("/api/events")
    async def list_events(event_id: str = "", category: str = "", status: str = ""):
        """List events. status=open keeps events that haven't started."""
        return _store.list_events(event_id=event_id or None, category=category or None,
                                  upcoming=(status == "open"))

    @app.post("/api/events")
    async def create_event(request: Request):
        data = await _read_json(request)
        _check(validate_event_creation(data))
        try:
            event_id = _store.create_event(data)
        except ValueError as e:
            raise HTTPException(409, str(e))
        log.info("event_created", event_id=event_id, category=data.get("category"))
        return {"success": True, "event_id": event_id}

    @app.post("/api/events/validate")
    async def validate_event(req: EventValidateRequest):
        """Ask the oracle whether an event is objective and resolvable."""
        event = req.model_dump()
        try:
            assessment = await _oracle.validate_event(event, req.description)
        except OracleError as e:
            return {"error": str(e)}
        return assessment.to_dict()

    # --- Contract actions ---

    async def _get_contracts(data: dict) -> dict:
        contracts = _store.list_contracts(
            contract_id=data.get("contract_id") or None,
            event_id=data.get("event_id") or None,
            status=data.get("status") or None,
        )
        return {"success": True, "data": contracts}

    async def _get_constants_action(data: dict) -> dict:
        return {"success": True, "data": _constants()}

    async def _verify_signature(data: dict) -> dict:
        _require(data, "address", "signature", "message")
        _check(validate_wallet_address(data["address"]))
        _check(validate_signature_format(data["signature"]))
        if not str(data["message"]).startswith(SIGNATURE_MESSAGE_PREFIX):
            raise HTTPException(400, f"Message must start with '{SIGNATURE_MESSAGE_PREFIX}'")
        # 503 tells clients the node hiccuped and a retry may succeed
        valid = _node_call(_dash.verify_message, data["address"], data["signature"], data["message"],
                           status=503)
        log.info("signature_checked", address=data["address"], valid=valid)
        return {"success": True, "isValid": valid,
                "message": "Signature verified" if valid else "Invalid signature"}

    async def _create_multisig(data: dict) -> dict:
        _require(data, "public_keys")
        keys = data["public_keys"]
        if not isinstance(keys, list) or len(keys) != MULTISIG_KEY_COUNT:
            raise HTTPException(400, f"Exactly {MULTISIG_KEY_COUNT} public keys are required")
        for key in keys:
            _check(validate_public_key(key))
        if len(set(keys)) != len(keys):
            raise HTTPException(400, "Public keys must be distinct")
        required = data.get("required_signatures", MULTISIG_REQUIRED_SIGNATURES)
        if not isinstance(required, int) or isinstance(required, bool) or not 1 <= required <= len(keys):
            raise HTTPException(400, f"required_signatures must be between 1 and {len(keys)}")
        if data.get("network") and data["network"] != _dash.network:
            raise HTTPException(400, f"Network mismatch: server runs on {_dash.network}")
        result = _node_call(_dash.create_multisig, keys, required)
        log.info("multisig_created", address=result["multisig_address"], required=required)
        return {"success": True, **result}

    async def _get_balance(data: dict) -> dict:
        _require(data, "address")
        _check(validate_wallet_address(data["address"]))
        result = {"success": True, "address": data["address"],
                  "balance": format_dash(_node_call(_dash.get_balance, data["address"]))}
        if data.get("multisig_address"):
            _check(validate_multisig_address(data["multisig_address"]))
            result["multisig_balance"] = format_dash(_node_call(_dash.get_balance, data["multisig_address"]))
        return result

    async def _validate_transaction(data: dict) -> dict:
        _require(data, "txid", "expected_destination", "expected_amount")
        _check(validate_txid(data["txid"]))
        min_conf = data.get("min_confirmations", DEFAULT_MIN_CONFIRMATIONS)
        if not isinstance(min_conf, int) or isinstance(min_conf, bool) or min_conf < 0:
            raise HTTPException(400, "min_confirmations must be a non-negative integer")
        tx = _node_call(_dash.get_transaction, data["txid"])
        if tx is None:
            return {"success": False, "message": "Transaction not found"}
        ok, message = check_funding(tx, data["expected_destination"], data["expected_amount"], min_conf)
        log.info("transaction_checked", txid=data["txid"], ok=ok, message=message)
        return {"success": ok, "message": message, "confirmations": tx.get("confirmations", 0)}

    async def _get_transaction_info(data: dict) -> dict:
        _require(data, "txid")
        _check(validate_txid(data["txid"]))
        info = _node_call(_dash.transaction_info, data["txid"])
        if info is None:
            raise HTTPException(404, "Transaction not found")
        return {"success": True, "data": info}

    async def _create_contract(data: dict) -> dict:
        data = normalize_contract_request(data)
        _require(data, "event_id")
        event = _store.get_event(data["event_id"])
        if not event:
            raise HTTPException(404, "Event not found")
        _check(validate_contract_creation(data, event))

        stake = to_decimal(data["stake"])
        if data.get("additional_contract_creator") in (None, ""):
            data["additional_contract_creator"] = str(additional_contract_amount(stake))
        contract_id = _store.create_contract(data)
        log.info("contract_created", contract_id=contract_id, event_id=data["event_id"],
                 stake=str(stake), odds=str(data["odds"]), position=data["position_type"])
        return {"success": True, "contract_id": contract_id, "event_id": data["event_id"]}

    async def _accept_contract(data: dict) -> dict:
        if not data.get("accepterWalletAddress") and data.get("accepter_address"):
            data = {**data, "accepterWalletAddress": data["accepter_address"]}
        contract = _get_contract(data)
        _require(data, "accepterWalletAddress")
        accepter = data["accepterWalletAddress"]

        deadline = parse_datetime(contract["acceptance_deadline"])
        if deadline is None or deadline <= utcnow():
            raise HTTPException(400, "Acceptance deadline has passed")
        _check(validate_wallet_address(accepter))

        if accepter == contract["creator_address"]:
            _transition(contract["contract_id"], ContractStatus.CANCELLED.value)
            log.info("contract_cancelled", contract_id=contract["contract_id"], reason="self_accept")
            return {"success": True, "status": "cancelled",
                    "message": "Contract cancelled! Creator and accepter cannot have the same wallet address."}

        if contract["status"] != ContractStatus.OPEN.value:
            raise HTTPException(400, "Contract is not open for acceptance")

        expected = expected_accepter_stake(
            to_decimal(contract["stake"]), to_decimal(contract["odds"]), contract["position_type"])
        supplied = data.get("accepter_stake")
        if supplied not in (None, ""):
            supplied_dec = to_decimal(supplied)
            if supplied_dec is None or not stake_matches(supplied_dec, expected):
                raise HTTPException(400, f"Accepter stake must be {expected:.8f} DASH")
        expected_additional = additional_contract_amount(expected)
        additional = data.get("additional_contract_accepter")
        if additional not in (None, ""):
            additional_dec = to_decimal(additional)
            if additional_dec is None or not stake_matches(additional_dec, expected_additional):
                raise HTTPException(400, "Additional contract must be 10% of accepter stake")

        if data.get("accepter_public_key"):
            _check(validate_public_key(data["accepter_public_key"]))
        if data.get("accepter_transaction_id"):
            _check(validate_txid(data["accepter_transaction_id"]))
        if data.get("signature"):
            _check(validate_signature_format(data["signature"]))

        _transition(
            contract["contract_id"], ContractStatus.ACCEPTED.value,
            accepter_address=accepter,
            accepter_public_key=data.get("accepter_public_key"),
            accepter_signature=data.get("signature"),
            accepter_message=data.get("message"),
            accepter_transaction_id=data.get("accepter_transaction_id"),
            accepter_stake=str(expected.quantize(Decimal("0.00000001"))),
            additional_contract_accepter=str(expected_additional.quantize(Decimal("0.00000001"))),
        )
        log.info("contract_accepted", contract_id=contract["contract_id"], accepter=accepter)
        updated = _store.get_contract(contract["contract_id"])
        return {"success": True, "message": "Contract accepted", "contract": _contract_summary(updated)}

    async def _settle_contract(data: dict) -> dict:
        contract = _get_contract(data)
        if contract["status"] != ContractStatus.ACCEPTED.value:
            raise HTTPException(400, "Contract must be accepted to settle")
        submitter = data.get("submitter") or data.get("submitter_address") or ""
        winner = data.get("winner") or ""
        reasoning = data.get("reasoning") or ""
        _check(validate_settlement(contract, submitter, winner, reasoning))

        side = "creator" if submitter == contract["creator_address"] else "accepter"
        if contract.get(f"{side}_winner_choice"):
            raise HTTPException(409, "You have already submitted a settlement for this contract")
        fee_recipient = _fee_recipient(data)
        _store.update_fields(contract["contract_id"], **{
            f"{side}_winner_choice": winner,
            f"{side}_winner_reasoning": reasoning.strip(),
        })
        contract = _store.get_contract(contract["contract_id"])
        log.info("settlement_submitted", contract_id=contract["contract_id"], side=side, winner=winner)

        creator_choice = contract.get("creator_winner_choice")
        accepter_choice = contract.get("accepter_winner_choice")
        if not (creator_choice and accepter_choice):
            return {"success": True, "status": contract["status"],
                    "message": "Settlement recorded. Waiting for the other party."}

        if creator_choice != accepter_choice:
            _transition(contract["contract_id"], ContractStatus.TWIST.value)
            log.info("contract_twist", contract_id=contract["contract_id"])
            return {"success": True, "status": "twist",
                    "message": "Parties disagree. Contract moved to twist for oracle resolution."}

        breakdown = Settlement(contract, fee_recipient).settle(creator_choice)
        now = datetime.now(timezone.utc).isoformat()
        _transition(
            contract["contract_id"], ContractStatus.SETTLED.value,
            winner=creator_choice, fee_recipient=fee_recipient,
            resolution_reasoning="Both parties agreed on the result.",
            resolution_timestamp=now,
        )
        log.info("contract_settled", contract_id=contract["contract_id"], winner=creator_choice,
                 fee=breakdown["fee"])
        return {"success": True, "status": "settled", "winner": creator_choice,
                "message": "Contract settled!", "settlement": breakdown}

    async def _trigger_twist(data: dict) -> dict:
        contract = _get_contract(data)
        if contract["status"] != ContractStatus.ACCEPTED.value:
            raise HTTPException(400, "Only accepted contracts can go to twist")
        _transition(contract["contract_id"], ContractStatus.TWIST.value)
        log.info("contract_twist", contract_id=contract["contract_id"], trigger="manual")
        return {"success": True, "status": "twist", "message": "Twist triggered"}

    async def _resolve_twist(data: dict) -> dict:
        contract = _get_contract(data)
        if contract["status"] != ContractStatus.TWIST.value:
            raise HTTPException(400, "Contract not in twist state")
        event = _store.get_event(contract["event_id"]) or {}
        evidence = TwistEvidence(
            contract=contract, event=event,
            creator_choice=contract.get("creator_winner_choice") or "",
            accepter_choice=contract.get("accepter_winner_choice") or "",
            creator_reasoning=contract.get("creator_winner_reasoning") or "",
            accepter_reasoning=contract.get("accepter_winner_reasoning") or "",
        )
        try:
            ruling = await _oracle.resolve(evidence)
        except InvalidRuling as e:
            raise HTTPException(400, str(e))
        except OracleError as e:
            log.error("twist_oracle_failed", contract_id=contract["contract_id"], error=str(e))
            raise HTTPException(502, str(e))
        if ruling.winner not in (TIE, contract["creator_address"], contract["accepter_address"]):
            raise HTTPException(400, "Invalid winner from oracle")

        fee_recipient = _fee_recipient(data)
        breakdown = Settlement(contract, fee_recipient).resolve_twist(ruling.winner)
        _transition(
            contract["contract_id"], ContractStatus.SETTLED.value,
            winner=ruling.winner, fee_recipient=fee_recipient,
            resolution_reasoning=ruling.reasoning, resolution_timestamp=ruling.timestamp,
        )
        log.info("twist_resolved", contract_id=contract["contract_id"], winner=ruling.winner,
                 fee=breakdown["fee"])
        return {"success": True, "status": "settled", "winner": ruling.winner,
                "resolutionDetails": {"reasoning": ruling.reasoning, "timestamp": ruling.timestamp},
                "settlement": breakdown}

    async def _generate_unsigned_settlement_tx(data: dict) -> dict:
        contract = _get_contract(data)
        status = contract["status"]
        if status == ContractStatus.CANCELLED.value:
            breakdown = refund(contract)
        elif status == ContractStatus.SETTLED.value:
            fee_recipient = contract.get("fee_recipient") or _dash.fee_address or ""
            settlement = Settlement(contract, fee_recipient)
            agreed = (contract.get("creator_winner_choice")
                      and contract["creator_winner_choice"] == contract.get("accepter_winner_choice"))
            if agreed:
                breakdown = settlement.settle(contract["winner"])
            else:
                breakdown = settlement.resolve_twist(contract["winner"])
        else:
            raise HTTPException(400, "Contract must be settled or cancelled")

        if not contract.get("multisig_address"):
            raise HTTPException(400, "Contract has no multisig address")
        funding = [t for t in (contract.get("creator_transaction_id"),
                               contract.get("accepter_transaction_id")) if t]
        if not funding:
            raise HTTPException(400, "Contract has no funding transactions")
        for output in breakdown["outputs"]:
            ok, _ = validate_wallet_address(output["to"])
            if not ok:
                raise HTTPException(400, f"Invalid payout address for {output['reason']}")

        try:
            built = _dash.create_settlement_tx(contract["multisig_address"], funding, breakdown["outputs"])
        except FundingError as e:
            raise HTTPException(400, str(e))
        except DashRPCError as e:
            raise HTTPException(502, str(e))
        _store.update_fields(contract["contract_id"], unsigned_settlement_tx=built["unsigned_tx"])
        log.info("settlement_tx_built", contract_id=contract["contract_id"], kind=breakdown["kind"],
                 funded=built["funded"], network_fee=built["network_fee"])
        return {"success": True, "unsigned_tx": built["unsigned_tx"], "outputs": built["outputs"],
                "funded": built["funded"], "network_fee": built["network_fee"], "settlement": breakdown}

    _actions = {
        "get_contracts": _get_contracts,
        "get_constants": _get_constants_action,
        "verify-signature": _verify_signature,
        "verify_signature": _verify_signature,
        "create-multisig": _create_multisig,
        "get_balance": _get_balance,
        "validate_transaction": _validate_transaction,
        "get_transaction_info": _get_transaction_info,
        "create_contract": _create_contract,
        "accept_contract": _accept_contract,
        "settle_contract": _settle_contract,
        "trigger_twist": _trigger_twist,
        "resolve_twist": _resolve_twist,
        "generate_unsigned_settlement_tx": _generate_unsigned_settlement_tx,
    }

    # --- Contracts ---

    @app.get("/api/contracts")
    async def list_contracts(contract_id: str = "", event_id: str = "", status: str = ""):
        """List contracts joined with their event."""
        return _store.list_contracts(contract_id=contract_id or None, event_id=event_id or None,
                                     status=status or None)

    @app.post("/api/contracts")
    async def contract_action(request: Request):
        body = await _read_json(request)
        try:
            req = ActionRequest(**body)
        except ValidationError:
            raise HTTPException(400, "Missing action")
        handler = _actions.get(req.action)
        if handler is None:
            raise HTTPException(400, "Unsupported action")
        log.debug("contract_action", action=req.action)
        return await handler(req.data)

    @app.put("/api/contracts")
    async def legacy_contract_action(request: Request):
        """Older clients PUT {"action": "accept"|"settle"|..., "contract_id", ...}."""
        body = await _read_json(request)
        action = LEGACY_PUT_ACTIONS.get(body.get("action", ""))
        if action is None:
            raise HTTPException(400, "Unsupported action")
        data = body.get("data") if isinstance(body.get("data"), dict) else {
            k: v for k, v in body.items() if k != "action"}
        return await _actions[action](data)

    return app
