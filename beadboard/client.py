"""
Panel-side state: tiered card cache, incremental column loader, pending
request table, and the local filter → sort → group pipeline.

Everything lives on a PanelContext created when a panel opens and torn down
on dispose(); nothing is module-global, so two panels never share state.

Tiers only move up:

    SUMMARY  → ENRICHED → FULL

A lower-tier payload for a card already held at a higher tier refreshes the
fields that tier carries and leaves the rest alone.
"""
import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import BoardError
from .schema import (
    BoardColumn, CacheTier, LONG_TEXT_FIELDS, classify, tier_fields,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 30.0
SWEEP_INTERVAL = 10.0
MAX_REQUEST_AGE = 60.0
CANCEL_REASON = "Request cancelled: panel hidden or disposed"
DEFAULT_SORT = [("updated_at", "desc")]


class RequestError(BoardError):
    """A request that failed, timed out or was cancelled before its response arrived."""
    category = "request"


def new_request_id() -> str:
    return f"req-{int(time.time() * 1000)}-{secrets.token_hex(6)}"


def infer_tier(card: Dict[str, Any]) -> CacheTier:
    if all(k in card for k in LONG_TEXT_FIELDS):
        return CacheTier.FULL
    if "labels" in card:
        return CacheTier.ENRICHED
    return CacheTier.SUMMARY


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Tiered cache
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TieredCache:
    def __init__(self):
        self._cards: Dict[str, Dict[str, Any]] = {}
        self._tiers: Dict[str, CacheTier] = {}

    def put(self, card: Dict[str, Any], tier: Optional[CacheTier] = None) -> CacheTier:
        """Merge a card payload. Returns the tier the card is held at afterwards."""
        tier = CacheTier(tier) if tier is not None else infer_tier(card)
        card_id = card["id"]
        current = self._tiers.get(card_id)
        existing = self._cards.setdefault(card_id, {})

        if current is None or tier >= current:
            existing.update(card)
            self._tiers[card_id] = tier
        else:
            for key in tier_fields(tier):
                if key in card:
                    existing[key] = card[key]
        return self._tiers[card_id]

    def get(self, card_id: str) -> Optional[Dict[str, Any]]:
        card = self._cards.get(card_id)
        return dict(card) if card is not None else None

    def tier_of(self, card_id: str) -> Optional[CacheTier]:
        return self._tiers.get(card_id)

    def needs(self, card_id: str, tier: CacheTier) -> bool:
        current = self._tiers.get(card_id)
        return current is None or current < tier

    def prune(self, keep_ids) -> int:
        """Drop cards not in keep_ids (deleted elsewhere). Returns how many went."""
        keep = set(keep_ids)
        gone = [cid for cid in self._cards if cid not in keep]
        for cid in gone:
            del self._cards[cid]
            del self._tiers[cid]
        return len(gone)

    def values(self) -> List[Dict[str, Any]]:
        return [dict(c) for c in self._cards.values()]

    def clear(self) -> None:
        self._cards.clear()
        self._tiers.clear()

    def __len__(self) -> int:
        return len(self._cards)

    def __contains__(self, card_id) -> bool:
        return card_id in self._cards


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Pending requests
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class PendingRequest:
    type: str
    future: asyncio.Future
    timer: asyncio.TimerHandle
    created_at: float


def _consume(future: asyncio.Future) -> None:
    # Retrieve the exception so unawaited failures don't log "never retrieved"
    if not future.cancelled():
        future.exception()


class PendingRequests:
    """
    Outstanding requests keyed by request id.

    Every settle path (response, timeout, sweep, cancel_all) pops the entry
    before touching the future, so each request settles exactly once and a
    late response for a settled id is ignored.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, timeout: float = REQUEST_TIMEOUT):
        self.loop = loop
        self.timeout = timeout
        self._entries: Dict[str, PendingRequest] = {}

    def create(self, msg_type: str) -> Tuple[str, asyncio.Future]:
        request_id = new_request_id()
        future = self.loop.create_future()
        future.add_done_callback(_consume)
        timer = self.loop.call_later(self.timeout, self._expire, request_id)
        self._entries[request_id] = PendingRequest(msg_type, future, timer, self.loop.time())
        return request_id, future

    def _expire(self, request_id: str) -> None:
        entry = self._entries.get(request_id)
        if entry is not None:
            logger.warning(f"Request {entry.type} timed out after {self.timeout:.0f}s")
            self.reject(request_id, RequestError(f"Request timeout: {entry.type}"))

    def resolve(self, request_id: str, value: Any) -> bool:
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_result(value)
        return True

    def reject(self, request_id: str, error: BaseException) -> bool:
        entry = self._entries.pop(request_id, None)
        if entry is None:
            return False
        entry.timer.cancel()
        if not entry.future.done():
            entry.future.set_exception(error)
        return True

    def sweep(self, max_age: float = MAX_REQUEST_AGE, now: Optional[float] = None) -> int:
        """Reject entries older than max_age seconds. Returns how many were removed."""
        now = self.loop.time() if now is None else now
        stale = [rid for rid, e in self._entries.items() if now - e.created_at > max_age]
        for rid in stale:
            self.reject(rid, RequestError("Request expired without a response"))
        if stale:
            logger.info(f"Removed {len(stale)} stale request(s) older than {max_age:.0f}s")
        return len(stale)

    def cancel_all(self, reason: str = CANCEL_REASON) -> int:
        ids = list(self._entries)
        for rid in ids:
            self.reject(rid, RequestError(reason))
        return len(ids)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, request_id) -> bool:
        return request_id in self._entries


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Column paging
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class ColumnLoadState:
    cards: List[Dict[str, Any]] = field(default_factory=list)
    offset: int = 0
    total_count: int = 0
    has_more: bool = False
    loading: bool = False

    def apply_page(self, page: Dict[str, Any]) -> None:
        """offset 0 replaces the column, later pages append. Counts come from the server."""
        offset = int(page.get("offset") or 0)
        cards = list(page.get("cards") or [])
        if offset == 0:
            self.cards = cards
            self.offset = len(cards)
        else:
            self.cards.extend(cards)
            self.offset = max(self.offset, offset + len(cards))
        self.total_count = int(page.get("totalCount") or 0)
        self.has_more = bool(page.get("hasMore"))
        self.loading = False


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Filter / sort / group
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@dataclass
class BoardFilters:
    priority: Optional[int] = None
    issue_type: Optional[str] = None
    statuses: List[str] = field(default_factory=list)
    search: str = ""

    @property
    def active(self) -> bool:
        return bool(self.priority is not None or self.issue_type or self.statuses
                    or self.search.strip())

    def matches(self, card: Dict[str, Any]) -> bool:
        if self.priority is not None and card.get("priority") != self.priority:
            return False
        if self.issue_type and card.get("issue_type") != self.issue_type:
            return False
        # by stored status, not by visual column
        if self.statuses and card.get("status") not in self.statuses:
            return False
        needle = self.search.strip().lower()
        if needle:
            haystack = [card.get("title") or "", card.get("description") or "", card.get("id") or ""]
            haystack.extend(card.get("labels") or [])
            if not any(needle in text.lower() for text in haystack):
                return False
        return True


def filter_cards(cards: List[Dict[str, Any]], filters: BoardFilters) -> List[Dict[str, Any]]:
    if not filters.active:
        return list(cards)
    return [c for c in cards if filters.matches(c)]


def _sort_value(card: Dict[str, Any], key: str):
    if key == "priority":
        value = card.get("priority")
        return 2 if value is None else value
    value = card.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return str(value or "").lower()


def sort_cards(cards: List[Dict[str, Any]], keys: List[Tuple[str, str]]) -> List[Dict[str, Any]]:
    """Stable multi-key sort; keys is [(field, "asc"|"desc")], most significant first."""
    result = list(cards)
    for key, direction in reversed(keys):
        result.sort(key=lambda c: _sort_value(c, key), reverse=(direction == "desc"))
    return result


class SortState:
    """Column-header click state for the table view."""

    def __init__(self):
        self.keys: List[Tuple[str, str]] = []

    def click(self, column: str, additive: bool = False) -> List[Tuple[str, str]]:
        index = next((i for i, (k, _) in enumerate(self.keys) if k == column), None)
        if not additive:
            # none → asc → desc → none
            if index is None:
                self.keys = [(column, "asc")]
            elif self.keys[index][1] == "asc":
                self.keys = [(column, "desc")]
            else:
                self.keys = []
        elif index is None:
            self.keys.append((column, "asc"))
        elif self.keys[index][1] == "asc":
            self.keys[index] = (column, "desc")
        else:
            del self.keys[index]
        return list(self.keys)


def group_by_column(cards: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped = {c.value: [] for c in BoardColumn}
    for card in cards:
        column = classify(card.get("status"), bool(card.get("is_ready")),
                          card.get("blocked_by_count") or 0)
        grouped[column.value].append(card)
    return grouped


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# PanelContext
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class PanelContext:
    """All client state for one open panel."""

    def __init__(self, post_message: Callable[[Dict[str, Any]], None],
                 loop: Optional[asyncio.AbstractEventLoop] = None,
                 request_timeout: float = REQUEST_TIMEOUT,
                 sweep_interval: float = SWEEP_INTERVAL,
                 max_request_age: float = MAX_REQUEST_AGE):
        self.post_message = post_message
        self.loop = loop or asyncio.get_running_loop()
        self.sweep_interval = sweep_interval
        self.max_request_age = max_request_age

        self.cache = TieredCache()
        self.pending = PendingRequests(self.loop, request_timeout)
        self.columns: Dict[str, ColumnLoadState] = {c.value: ColumnLoadState() for c in BoardColumn}
        self.filters = BoardFilters()
        self.sort = SortState()
        self.read_only = False
        self.last_error: Optional[str] = None
        self.disposed = False

        self._sweep_handle = self.loop.call_later(self.sweep_interval, self._sweep)

    # ── Requests ──

    async def request(self, msg_type: str, payload: Optional[dict] = None) -> Any:
        if self.disposed:
            raise RequestError("Panel disposed")
        request_id, future = self.pending.create(msg_type)
        self.post_message({"type": msg_type, "requestId": request_id, "payload": payload or {}})
        return await future

    async def load_board(self) -> Dict[str, Any]:
        return await self.request("board.load")

    async def refresh(self) -> Dict[str, Any]:
        return await self.request("board.refresh")

    async def load_column(self, column: str, offset: int = 0, limit: int = 50) -> Dict[str, Any]:
        return await self.request("board.loadColumn",
                                  {"column": column, "offset": offset, "limit": limit})

    async def load_more(self, column: str) -> Optional[Dict[str, Any]]:
        state = self.columns[BoardColumn.from_str(column).value]
        if state.loading or not state.has_more:
            return None
        state.loading = True
        try:
            return await self.request("board.loadMore", {"column": column})
        finally:
            state.loading = False

    async def fetch_full(self, card_id: str) -> Optional[Dict[str, Any]]:
        if not self.cache.needs(card_id, CacheTier.FULL):
            return self.cache.get(card_id)
        await self.request("issue.getFull", {"id": card_id})
        return self.cache.get(card_id)

    async def mutate(self, msg_type: str, payload: dict) -> Dict[str, Any]:
        if self.read_only:
            raise RequestError("Read-only mode: mutations are disabled.")
        return await self.request(msg_type, payload)

    # ── Responses ──

    def handle_message(self, msg: Dict[str, Any]) -> None:
        if not isinstance(msg, dict) or not msg.get("type"):
            return
        msg_type = msg["type"]
        request_id = msg.get("requestId")
        payload = msg.get("payload") or {}

        if msg_type == "webview.cleanup":
            self.pending.cancel_all(CANCEL_REASON)
            return
        if msg_type == "mutation.error":
            error = payload.get("error") or "Operation failed."
            if not (request_id and self.pending.reject(request_id, RequestError(error))):
                self.last_error = error
                logger.warning(f"Unsolicited error from host: {error}")
            return

        if msg_type == "board.data":
            self._apply_board(payload)
        elif msg_type == "board.columnData":
            self._apply_column(payload)
        elif msg_type == "issue.full":
            self.cache.put(payload["card"], CacheTier.FULL)
        elif msg_type != "mutation.ok":
            logger.debug(f"Ignoring unknown message type: {msg_type}")
            return

        if request_id:
            self.pending.resolve(request_id, payload)

    def _apply_board(self, payload: Dict[str, Any]) -> None:
        cards = payload.get("cards") or []
        for card in cards:
            self.cache.put(card)
        self.cache.prune(c["id"] for c in cards)
        self.read_only = bool(payload.get("readOnly"))

        column_data = payload.get("columnData") or {}
        for column in BoardColumn:
            state = ColumnLoadState()
            page = column_data.get(column.value)
            if page:
                state.apply_page(page)
            self.columns[column.value] = state

    def _apply_column(self, page: Dict[str, Any]) -> None:
        column = page.get("column")
        if column not in self.columns:
            logger.warning(f"Column data for unknown column: {column}")
            return
        for card in page.get("cards") or []:
            self.cache.put(card)
        self.columns[column].apply_page(page)

    # ── Local pipeline ──

    def visible_columns(self) -> Dict[str, List[Dict[str, Any]]]:
        cards = filter_cards(self.cache.values(), self.filters)
        return group_by_column(sort_cards(cards, self.sort.keys or DEFAULT_SORT))

    # ── Lifecycle ──

    def _sweep(self) -> None:
        if self.disposed:
            return
        self.pending.sweep(self.max_request_age)
        self._sweep_handle = self.loop.call_later(self.sweep_interval, self._sweep)

    def on_visibility_change(self, hidden: bool) -> None:
        if hidden:
            cancelled = self.pending.cancel_all(CANCEL_REASON)
            if cancelled:
                logger.info(f"Panel hidden, cancelled {cancelled} request(s)")

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        self.pending.cancel_all(CANCEL_REASON)
        self._sweep_handle.cancel()
        self.cache.clear()
        self.columns = {c.value: ColumnLoadState() for c in BoardColumn}
