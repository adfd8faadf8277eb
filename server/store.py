"""Event and contract storage for Settle In DASH.

SQLite-backed CRUD with state machine enforcement on contract status.
Amounts are stored as decimal strings, timestamps as ISO-8601 UTC.
"""

import json
import sqlite3
import threading
import uuid
from datetime import datetime, timezone

from protocol import ContractStatus, STATE_TRANSITIONS
from validation import parse_outcomes, parse_datetime


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# Columns callers may set through update_fields / update_status
CONTRACT_MUTABLE_FIELDS = {
    "multisig_address", "redeem_script", "creator_public_key", "creator_transaction_id",
    "accepter_address", "accepter_public_key", "accepter_signature", "accepter_message",
    "accepter_transaction_id", "accepter_stake", "additional_contract_accepter",
    "creator_winner_choice", "creator_winner_reasoning",
    "accepter_winner_choice", "accepter_winner_reasoning",
    "winner", "resolution_reasoning", "resolution_timestamp",
    "fee_recipient", "settlement_transaction_id", "refund_transaction_id",
    "unsigned_settlement_tx",
}


class MarketStore:
    """SQLite-backed event and contract storage."""

    def __init__(self, db_path: str = ":memory:"):
        self.db = sqlite3.connect(db_path, check_same_thread=False)
        self.db.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        # Enable WAL mode for safe concurrent reads during writes
        self.db.execute("PRAGMA journal_mode=WAL")
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS events (
                event_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                category TEXT NOT NULL,
                event_date TEXT NOT NULL,
                possible_outcomes TEXT NOT NULL,
                oracle_source TEXT,
                description TEXT,
                event_wallet_address TEXT,
                created_at TEXT NOT NULL
            )
        """)
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS contracts (
                contract_id TEXT PRIMARY KEY,
                event_id TEXT NOT NULL REFERENCES events(event_id),
                outcome TEXT NOT NULL,
                position_type TEXT NOT NULL,
                stake TEXT NOT NULL,
                odds TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'open',
                creator_address TEXT NOT NULL,
                creator_public_key TEXT,
                creator_signature TEXT,
                creator_transaction_id TEXT,
                additional_contract_creator TEXT,
                acceptance_deadline TEXT NOT NULL,
                multisig_address TEXT,
                redeem_script TEXT,
                accepter_address TEXT,
                accepter_public_key TEXT,
                accepter_signature TEXT,
                accepter_message TEXT,
                accepter_transaction_id TEXT,
                accepter_stake TEXT,
                additional_contract_accepter TEXT,
                creator_winner_choice TEXT,
                creator_winner_reasoning TEXT,
                accepter_winner_choice TEXT,
                accepter_winner_reasoning TEXT,
                winner TEXT,
                resolution_reasoning TEXT,
                resolution_timestamp TEXT,
                fee_recipient TEXT,
                settlement_transaction_id TEXT,
                refund_transaction_id TEXT,
                unsigned_settlement_tx TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_contract_status ON contracts(status)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_contract_event ON contracts(event_id)")
        self.db.execute("CREATE INDEX IF NOT EXISTS idx_event_category ON events(category)")
        self.db.commit()

    # --- Events ---

    def create_event(self, event: dict) -> str:
        """Store a new event. Returns event ID. Raises ValueError on duplicate ID."""
        event_id = event.get("event_id") or f"EVENT_{uuid.uuid4().hex[:13]}"
        outcomes = parse_outcomes(event["possible_outcomes"])
        event_date = parse_datetime(event["event_date"])
        try:
            self.db.execute(
                "INSERT INTO events (event_id, title, category, event_date, possible_outcomes, oracle_source, "
                "description, event_wallet_address, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (event_id, str(event["title"]).strip(), str(event["category"]).strip(),
                 event_date.isoformat() if event_date else str(event["event_date"]),
                 json.dumps(outcomes), event.get("oracle_source") or None,
                 event.get("description") or None, event.get("event_wallet_address") or None, _now()),
            )
            self.db.commit()
        except sqlite3.IntegrityError:
            raise ValueError(f"Event {event_id} already exists")
        return event_id

    def get_event(self, event_id: str) -> dict | None:
        row = self.db.execute("SELECT * FROM events WHERE event_id = ?", (event_id,)).fetchone()
        if not row:
            return None
        return self._event_to_dict(row)

    def list_events(self, event_id: str | None = None, category: str | None = None,
                    upcoming: bool = False, limit: int = 500) -> list[dict]:
        """List events, newest event date last. upcoming keeps future events only."""
        sql = "SELECT * FROM events WHERE 1=1"
        params: list = []
        if event_id:
            sql += " AND event_id = ?"
            params.append(event_id)
        if category:
            sql += " AND category = ?"
            params.append(category)
        if upcoming:
            sql += " AND event_date > ?"
            params.append(_now())
        sql += " ORDER BY event_date ASC LIMIT ?"
        params.append(limit)
        return [self._event_to_dict(r) for r in self.db.execute(sql, params).fetchall()]

    # --- Contracts ---

    def create_contract(self, contract: dict) -> str:
        """Store a new open contract. Returns contract ID."""
        contract_id = contract.get("contract_id") or uuid.uuid4().hex[:16]
        now = _now()
        deadline = parse_datetime(contract["acceptance_deadline"])
        self.db.execute(
            "INSERT INTO contracts (contract_id, event_id, outcome, position_type, stake, odds, status, "
            "creator_address, creator_public_key, creator_signature, creator_transaction_id, "
            "additional_contract_creator, acceptance_deadline, multisig_address, redeem_script, "
            "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (contract_id, contract["event_id"], contract["outcome"], contract["position_type"],
             str(contract["stake"]), str(contract["odds"]), ContractStatus.OPEN.value,
             contract["creator_address"], contract.get("creator_public_key"), contract.get("signature"),
             contract.get("transaction_id"), str(contract.get("additional_contract_creator", "")) or None,
             deadline.isoformat() if deadline else str(contract["acceptance_deadline"]),
             contract.get("multisig_address"), contract.get("redeem_script"), now, now),
        )
        self.db.commit()
        return contract_id

    _CONTRACT_SELECT = (
        "SELECT c.*, e.title AS title, e.category AS event_category, e.event_date AS event_date "
        "FROM contracts c LEFT JOIN events e ON c.event_id = e.event_id"
    )

    def get_contract(self, contract_id: str) -> dict | None:
        """Get a contract (joined with its event) by ID."""
        row = self.db.execute(f"{self._CONTRACT_SELECT} WHERE c.contract_id = ?", (contract_id,)).fetchone()
        if not row:
            return None
        return self._contract_to_dict(row)

    def list_contracts(self, contract_id: str | None = None, event_id: str | None = None,
                       status: str | None = None, limit: int = 500) -> list[dict]:
        sql = f"{self._CONTRACT_SELECT} WHERE 1=1"
        params: list = []
        if contract_id:
            sql += " AND c.contract_id = ?"
            params.append(contract_id)
        if event_id:
            sql += " AND c.event_id = ?"
            params.append(event_id)
        if status:
            sql += " AND c.status = ?"
            params.append(status)
        sql += " ORDER BY c.created_at DESC LIMIT ?"
        params.append(limit)
        return [self._contract_to_dict(r) for r in self.db.execute(sql, params).fetchall()]

    def update_status(self, contract_id: str, status: str, **fields) -> bool:
        """Update contract status with state machine enforcement.

        Extra keyword fields are written in the same statement, so a status
        change and the data that justifies it land together.
        """
        self._check_fields(fields)
        with self._lock:
            row = self.db.execute("SELECT status FROM contracts WHERE contract_id = ?",
                                  (contract_id,)).fetchone()
            if not row:
                return False

            current = row["status"]
            try:
                current_state = ContractStatus(current)
                new_state = ContractStatus(status)
            except ValueError:
                raise ValueError(f"Invalid state: {current} -> {status}")

            if new_state not in STATE_TRANSITIONS.get(current_state, set()):
                raise ValueError(f"Invalid state transition: {current} -> {status}")

            assignments = ", ".join(f"{k} = ?" for k in fields)
            sql = "UPDATE contracts SET status = ?, updated_at = ?"
            if assignments:
                sql += ", " + assignments
            sql += " WHERE contract_id = ? AND status = ?"
            cursor = self.db.execute(
                sql, (status, _now(), *[self._db_value(v) for v in fields.values()], contract_id, current),
            )
            self.db.commit()
            return cursor.rowcount > 0

    def update_fields(self, contract_id: str, **fields) -> bool:
        """Update non-status columns."""
        self._check_fields(fields)
        if not fields:
            return False
        with self._lock:
            assignments = ", ".join(f"{k} = ?" for k in fields)
            cursor = self.db.execute(
                f"UPDATE contracts SET {assignments}, updated_at = ? WHERE contract_id = ?",
                (*[self._db_value(v) for v in fields.values()], _now(), contract_id),
            )
            self.db.commit()
            return cursor.rowcount > 0

    @staticmethod
    def _check_fields(fields: dict):
        unknown = set(fields) - CONTRACT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown contract fields: {sorted(unknown)}")

    @staticmethod
    def _db_value(value):
        if value is None or isinstance(value, (int, float, str)):
            return value
        return str(value)

    def _event_to_dict(self, row) -> dict:
        return {
            "event_id": row["event_id"],
            "title": row["title"],
            "category": row["category"],
            "event_date": row["event_date"],
            "possible_outcomes": row["possible_outcomes"],
            "oracle_source": row["oracle_source"],
            "description": row["description"],
            "event_wallet_address": row["event_wallet_address"],
            "created_at": row["created_at"],
        }

    def _contract_to_dict(self, row) -> dict:
        data = {k: row[k] for k in row.keys()}
        reasoning = data.pop("resolution_reasoning")
        timestamp = data.pop("resolution_timestamp")
        if reasoning or timestamp:
            data["resolutionDetails"] = {"reasoning": reasoning, "timestamp": timestamp}
        else:
            data["resolutionDetails"] = None
        data["eventTitle"] = data.get("title")
        return data

    def close(self):
        self.db.close()
