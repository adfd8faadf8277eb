#!/usr/bin/env python3
"""Settle In DASH API server.

Talks to a Dash Core node over JSON-RPC (SETTLE_DASH_RPC_URL,
SETTLE_DASH_RPC_USER, SETTLE_DASH_RPC_PASSWORD) and to the xAI API for
twist resolution (SETTLE_XAI_API_KEY, never in code).
"""

import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import structlog
import uvicorn

from logs import configure_logging
from server.app import create_app
from server.store import MarketStore
from server.dash import DashRPCBackend
from server.oracle import GrokOracle
from protocol import NETWORK, DEFAULT_ORACLE_MODEL

DB_PATH = os.environ.get("SETTLE_DB", "/var/lib/settle/settle.db")
HOST = os.environ.get("SETTLE_HOST", "0.0.0.0")
PORT = int(os.environ.get("SETTLE_PORT", "8000"))
ORACLE_MODEL = os.environ.get("SETTLE_ORACLE_MODEL") or DEFAULT_ORACLE_MODEL

log = structlog.get_logger("run_server")


def main():
    configure_logging()
    if not os.environ.get("SETTLE_XAI_API_KEY"):
        log.warning("xai_key_missing", detail="twist resolution and event checks will fail")

    db_dir = os.path.dirname(DB_PATH)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    store = MarketStore(DB_PATH)
    dash = DashRPCBackend()
    oracle = GrokOracle(model=ORACLE_MODEL)
    app = create_app(store=store, dash=dash, oracle=oracle)

    log.info("server_starting", network=NETWORK, db=DB_PATH, port=PORT)
    uvicorn.run(app, host=HOST, port=PORT, log_config=None)


if __name__ == "__main__":
    main()
