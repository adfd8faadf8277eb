#!/usr/bin/env python3
"""settle -- browse the Settle In DASH market from a terminal.

Usage:
    settle constants                        Network, fee wallet and multisig keys
    settle events [options]                 Upcoming events
        --category NAME                     Only this category
        --search TEXT                       Title contains TEXT
        --all                               Include past events
        --page N                            Page number (20 per page)
    settle contracts [options]              Contracts
        --event-id ID                       Only this event
        --status STATUS                     open, accepted, cancelled, settled, twist
        --search TEXT                       Event title contains TEXT
        --sort FIELD[:desc]                 stake, odds, created_at
        --page N                            Page number (20 per page)
    settle contract <id>                    One contract in detail
    settle orderbook <event_id> [--outcome X]
                                            Open offers for an event, best odds first
    settle serve [--port N]                 Run the API server

Options:
    --api URL                               API base URL (default: $SETTLE_API_URL)
"""

import asyncio
import os
import sys

# Add script directory to path so sibling modules are importable
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from client import SettleClient, capture
from filters import filter_contracts, filter_events, paginate, contract_details, order_book
from protocol import DEFAULT_API_URL
from validation import format_custom_date, parse_outcomes

C_RESET = "\033[0m"
C_RED = "\033[31m"
C_GREEN = "\033[32m"
C_YELLOW = "\033[33m"
C_DIM = "\033[2m"
C_BOLD = "\033[1m"

if not sys.stderr.isatty():
    C_RESET = C_RED = C_GREEN = C_YELLOW = C_DIM = C_BOLD = ""


def status(icon, msg):
    print(f"  {icon}  {msg}", file=sys.stderr)


def fail(msg):
    status(f"{C_RED}!{C_RESET}", msg)
    sys.exit(1)


VALUE_FLAGS = {"--api", "--category", "--search", "--page", "--event-id", "--status",
               "--sort", "--outcome", "--port"}
BOOL_FLAGS = {"--all"}


def parse_args(args: list[str]) -> tuple[dict, list[str]]:
    """Split argv into ({flag: value}, positionals). Exits on unknown flags."""
    flags: dict = {}
    positional = []
    i = 0
    while i < len(args):
        a = args[i]
        if a.startswith("--") and "=" in a:
            name, value = a.split("=", 1)
            if name not in VALUE_FLAGS:
                fail(f"Unknown option {name}")
            flags[name] = value
        elif a in VALUE_FLAGS:
            if i + 1 >= len(args):
                fail(f"{a} needs a value")
            flags[a] = args[i + 1]
            i += 1
        elif a in BOOL_FLAGS:
            flags[a] = True
        elif a.startswith("--"):
            fail(f"Unknown option {a}")
        else:
            positional.append(a)
        i += 1
    return flags, positional


def _page(flags: dict) -> int:
    try:
        return int(flags.get("--page", "1"))
    except ValueError:
        fail("--page must be a number")


async def _fetch(coro):
    result, error = await capture(coro)
    if error is not None:
        fail(error)
    return result


async def cmd_constants(client: SettleClient, flags, positional):
    c = await _fetch(client.get_constants())
    print(f"Network:            {c['network']}")
    print(f"Fee wallet:         {c['fee_address'] or '(not set)'}")
    print(f"Oracle key:         {c['oracle_public_key'] or '(not set)'}")
    print(f"Placeholder key:    {c['placeholder_public_key'] or '(not set)'}")


async def cmd_events(client: SettleClient, flags, positional):
    events = await _fetch(client.get_events())
    events = filter_events(
        events, search=flags.get("--search", ""), category=flags.get("--category", ""),
        upcoming_only=not flags.get("--all"), sort_by="event_date",
    )
    page = paginate(events, _page(flags))
    if not page.items:
        status(f"{C_DIM}▸{C_RESET}", "No events found.")
        return
    for e in page.items:
        outcomes = ", ".join(parse_outcomes(e.get("possible_outcomes")))
        print(f"{C_BOLD}{e['event_id']}{C_RESET}  {e['title']}")
        print(f"    {e['category']} | {format_custom_date(e['event_date'])} UTC | {outcomes}")
    print(f"{C_DIM}page {page.page}/{page.total_pages} ({page.total} events){C_RESET}")


async def cmd_contracts(client: SettleClient, flags, positional):
    contracts = await _fetch(client.fetch_contracts(event_id=flags.get("--event-id", "")))
    sort_by, _, direction = flags.get("--sort", "").partition(":")
    contracts = filter_contracts(
        contracts, search=flags.get("--search", ""), status=flags.get("--status") or None,
        sort_by=sort_by, direction=direction or "asc",
    )
    page = paginate(contracts, _page(flags))
    if not page.items:
        status(f"{C_DIM}▸{C_RESET}", "No contracts found.")
        return
    for c in page.items:
        d = contract_details(c)
        print(f"{C_BOLD}{d['contract_id']}{C_RESET}  {d['event']}  [{d['status']}]")
        print(f"    {d['position']} '{d['outcome']}' stake {d['stake']} @ {d['odds']} "
              f"(accepter stakes {d['accepter_stake']})")
    print(f"{C_DIM}page {page.page}/{page.total_pages} ({page.total} contracts){C_RESET}")


async def cmd_contract(client: SettleClient, flags, positional):
    if not positional:
        fail("Usage: settle contract <id>")
    contract = await _fetch(client.get_contract(positional[0]))
    if contract is None:
        fail(f"Contract {positional[0]} not found")
    d = contract_details(contract)
    for label, key in (("Contract", "contract_id"), ("Event", "event"), ("Outcome", "outcome"),
                       ("Position", "position"), ("Status", "status"), ("Stake", "stake"),
                       ("Odds", "odds"), ("Accepter stake", "accepter_stake"), ("To win", "to_win"),
                       ("Event date", "event_date"), ("Deadline", "acceptance_deadline")):
        print(f"{label + ':':<16}{d[key]}")
    if contract.get("multisig_address"):
        print(f"{'Multisig:':<16}{contract['multisig_address']}")
    if d["winner"]:
        print(f"{'Winner:':<16}{d['winner']}")
    details = contract.get("resolutionDetails")
    if details:
        print(f"{'Resolved:':<16}{format_custom_date(details.get('timestamp'))}")
        print(f"{'Reasoning:':<16}{details.get('reasoning')}")


async def cmd_orderbook(client: SettleClient, flags, positional):
    if not positional:
        fail("Usage: settle orderbook <event_id>")
    contracts = await _fetch(client.fetch_contracts(event_id=positional[0], status="open"))
    book = order_book(contracts, positional[0], outcome=flags.get("--outcome", ""))
    if not book["entries"]:
        status(f"{C_DIM}▸{C_RESET}", "No open offers.")
    for outcome, sides in book["outcomes"].items():
        print(f"{C_BOLD}{outcome}{C_RESET}")
        for position, offers in sides.items():
            if not offers:
                continue
            print(f"  {position.capitalize()}")
            for c in offers:
                print(f"    {c['odds']:>8}  stake {c['stake']:<14} {c['contract_id']}")
    print(f"{C_GREEN}Total Open Liquidity: {book['total_liquidity']} DASH{C_RESET}")


COMMANDS = {
    "constants": cmd_constants,
    "events": cmd_events,
    "contracts": cmd_contracts,
    "contract": cmd_contract,
    "orderbook": cmd_orderbook,
}


def main():
    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help", "help"):
        print(__doc__.strip())
        return

    command = sys.argv[1]
    flags, positional = parse_args(sys.argv[2:])

    if command == "serve":
        import run_server
        if "--port" in flags:
            try:
                run_server.PORT = int(flags["--port"])
            except ValueError:
                fail("--port must be a number")
        run_server.main()
        return

    handler = COMMANDS.get(command)
    if handler is None:
        fail(f"Unknown command '{command}'. Run 'settle --help'.")

    client = SettleClient(base_url=flags.get("--api", DEFAULT_API_URL))
    try:
        asyncio.run(handler(client, flags, positional))
    except KeyboardInterrupt:
        status(f"{C_DIM}▸{C_RESET}", "Interrupted.")


if __name__ == "__main__":
    main()
