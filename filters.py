"""Filter, sort and paginate contract and event listings.

Operates on already-fetched lists of dicts (API rows), the way the market
and order-book views browse them. Pure functions, no I/O.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from protocol import DEFAULT_PAGE_SIZE, PositionType
from validation import (
    parse_datetime, to_decimal, utcnow, expected_accepter_stake,
    format_status, format_date,
)


@dataclass
class Page:
    """One page of a filtered listing."""
    items: list[dict]
    page: int
    per_page: int
    total: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 1
        return (self.total + self.per_page - 1) // self.per_page

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    def to_dict(self) -> dict:
        return {
            "items": self.items,
            "page": self.page,
            "per_page": self.per_page,
            "total": self.total,
            "total_pages": self.total_pages,
        }


def paginate(items: list[dict], page: int = 1, per_page: int = DEFAULT_PAGE_SIZE) -> Page:
    """1-based pagination. Out-of-range pages are clamped."""
    if per_page < 1:
        raise ValueError("per_page must be at least 1")
    total = len(items)
    last = max(1, (total + per_page - 1) // per_page)
    page = min(max(1, page), last)
    start = (page - 1) * per_page
    return Page(items=items[start:start + per_page], page=page, per_page=per_page, total=total)


def _event_title(contract: dict) -> str:
    return str(contract.get("eventTitle") or contract.get("title") or "")


def _numeric(value) -> Decimal:
    d = to_decimal(value)
    return d if d is not None else Decimal(0)


def _date_key(value) -> datetime:
    dt = parse_datetime(value)
    return dt if dt is not None else datetime.min.replace(tzinfo=timezone.utc)


def filter_contracts(
    contracts: list[dict],
    search: str = "",
    contract_id: str = "",
    status: str | list[str] | None = None,
    event_id: str = "",
    hide_expired: bool = False,
    sort_by: str = "",
    direction: str = "asc",
    now: datetime | None = None,
) -> list[dict]:
    """Filter and sort contracts.

    Args:
        search: case-insensitive substring of the event title
        contract_id: substring of the contract id
        status: one status or a list of accepted statuses
        hide_expired: drop contracts whose acceptance deadline has passed
        sort_by: field to sort on; created_at sorts by date, anything else numerically
        direction: "asc" or "desc"
    """
    now = now or utcnow()
    needle = search.strip().lower()
    if isinstance(status, str):
        statuses = {status} if status else None
    elif status:
        statuses = set(status)
    else:
        statuses = None

    out = []
    for c in contracts:
        if needle and needle not in _event_title(c).lower():
            continue
        if contract_id and contract_id not in str(c.get("contract_id", "")):
            continue
        if statuses is not None and c.get("status") not in statuses:
            continue
        if event_id and c.get("event_id") != event_id:
            continue
        if hide_expired:
            deadline = parse_datetime(c.get("acceptance_deadline") or c.get("acceptanceDeadline"))
            if deadline is None or deadline <= now:
                continue
        out.append(c)

    if sort_by:
        reverse = direction == "desc"
        if sort_by == "created_at":
            out.sort(key=lambda c: _date_key(c.get("created_at")), reverse=reverse)
        else:
            out.sort(key=lambda c: _numeric(c.get(sort_by)), reverse=reverse)
    return out


def filter_events(
    events: list[dict],
    search: str = "",
    category: str = "",
    upcoming_only: bool = True,
    sort_by: str = "",
    direction: str = "asc",
    now: datetime | None = None,
) -> list[dict]:
    """Filter and sort events.

    Events with an unparseable date are dropped when upcoming_only is set.
    event_date sorts chronologically; any other field sorts as a string.
    """
    now = now or utcnow()
    needle = search.strip().lower()

    out = []
    for e in events:
        if needle and needle not in str(e.get("title", "")).lower():
            continue
        if category and e.get("category") != category:
            continue
        if upcoming_only:
            event_date = parse_datetime(e.get("event_date"))
            if event_date is None or event_date <= now:
                continue
        out.append(e)

    if sort_by:
        reverse = direction == "desc"
        if sort_by == "event_date":
            out.sort(key=lambda e: _date_key(e.get("event_date")), reverse=reverse)
        else:
            out.sort(key=lambda e: str(e.get(sort_by, "")), reverse=reverse)
    return out


def categories(events: list[dict]) -> list[str]:
    """Distinct non-empty categories in the order they first appear."""
    return list(dict.fromkeys(e["category"] for e in events if e.get("category")))


# --- Contract detail ---

def accepter_stake(contract: dict) -> Decimal | None:
    """Stake the accepter must lock, or None when the contract is malformed."""
    stake = to_decimal(contract.get("stake"))
    odds = to_decimal(contract.get("odds"))
    if stake is None or odds is None:
        return None
    try:
        return expected_accepter_stake(stake, odds, contract.get("position_type", ""))
    except ValueError:
        return None


def to_win(contract: dict) -> Decimal | None:
    """What the accepter wins if their side comes in: the creator's stake."""
    stake = to_decimal(contract.get("stake"))
    if stake is None or accepter_stake(contract) is None:
        return None
    return stake


def contract_details(contract: dict) -> dict:
    """Display view of a contract for detail pages and the CLI."""
    a_stake = accepter_stake(contract)
    win = to_win(contract)
    side = contract.get("position_type", "")
    return {
        "contract_id": contract.get("contract_id"),
        "event": _event_title(contract),
        "outcome": contract.get("outcome"),
        "position": "Buy" if side == PositionType.BUY.value else "Sell" if side == PositionType.SELL.value else side,
        "status": format_status(contract.get("status", "")),
        "stake": f"{_numeric(contract.get('stake')):.8f}",
        "odds": str(contract.get("odds", "")),
        "accepter_stake": f"{a_stake:.8f}" if a_stake is not None else "N/A",
        "to_win": f"{win:.8f}" if win is not None else "N/A",
        "event_date": format_date(contract.get("event_date")),
        "acceptance_deadline": format_date(contract.get("acceptance_deadline")),
        "winner": contract.get("winner") or "",
    }


def order_book(contracts: list[dict], event_id: str, outcome: str = "",
               now: datetime | None = None) -> dict:
    """Open, unexpired contracts for one event grouped by outcome and position.

    Returns {"event_id", "outcome", "outcomes", "entries", "total_liquidity"}.
    ``outcomes`` maps each outcome to {"buy": [...], "sell": [...]}, each list
    best odds first; ``entries`` is the same contracts as one flat list.
    total_liquidity is the sum of creator stakes on offer.
    """
    entries = filter_contracts(
        contracts, status="open", event_id=event_id, hide_expired=True,
        sort_by="odds", direction="desc", now=now,
    )
    if outcome:
        entries = [c for c in entries if c.get("outcome") == outcome]
    grouped: dict[str, dict[str, list[dict]]] = {}
    for c in entries:
        sides = grouped.setdefault(c.get("outcome", ""), {p.value: [] for p in PositionType})
        sides.setdefault(c.get("position_type", ""), []).append(c)
    liquidity = sum((_numeric(c.get("stake")) for c in entries), Decimal(0))
    return {
        "event_id": event_id,
        "outcome": outcome,
        "outcomes": grouped,
        "entries": entries,
        "total_liquidity": f"{liquidity:.8f}",
    }
