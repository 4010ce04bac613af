"""
Message bridge: connects a UI panel to the active board adapter.

One MessageBridge exists per open panel. Inbound envelopes are validated,
routed to the adapter, and answered with response envelopes; every mutation
is followed by a refreshed board. Changes to the database file made by other
processes trigger a debounced reload.

The host is reached only through HostChannel. The bridge is the single place
where exceptions are turned into `mutation.error` envelopes.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from .adapter import BoardAdapter
from .config import BoardConfig
from .errors import ValidationError, sanitize_error_with_context
from .schema import BoardColumn, BoardSnapshot, CacheTier, ColumnPage, column_to_status
from .validation import Envelope, make_response, validate_envelope

logger = logging.getLogger(__name__)

DB_WATCH_PATTERN = ".beads/**/*.{db,sqlite,sqlite3}"
FILE_CHANGE_DEBOUNCE = 0.3
READ_ONLY_MESSAGE = "Read-only mode: mutations are disabled."

PRELOADED_COLUMNS = (BoardColumn.READY, BoardColumn.IN_PROGRESS, BoardColumn.BLOCKED)


# ── Host interfaces ─────────────────────────────────────────────────────────

class Disposable(Protocol):
    def dispose(self) -> None: ...


class HostChannel(Protocol):
    """What the embedding host provides to one panel."""

    def post_message(self, envelope: Dict[str, Any]) -> None: ...

    def on_message(self, handler: Callable[[Dict[str, Any]], Awaitable[None]]) -> None: ...

    def watch_file(self, pattern: str, on_change: Callable[[str], None]) -> Disposable: ...


# ── Bridge ──────────────────────────────────────────────────────────────────

class MessageBridge:
    """Routes one panel's envelopes to the adapter and posts responses back."""

    def __init__(self, adapter: BoardAdapter, host: HostChannel,
                 config: Optional[BoardConfig] = None,
                 debounce: float = FILE_CHANGE_DEBOUNCE):
        self.adapter = adapter
        self.host = host
        self.config = config or BoardConfig()
        self.debounce = debounce

        # column -> [(offset, limit)] already delivered to this panel
        self._ranges: Dict[BoardColumn, List[Tuple[int, int]]] = {}
        self._watch: Optional[Disposable] = None
        self._refresh_handle: Optional[asyncio.TimerHandle] = None
        self._refresh_task: Optional[asyncio.Task] = None
        self.disposed = False

        self._routes = {
            "board.load": self._on_board_load,
            "board.refresh": self._on_board_refresh,
            "board.loadColumn": self._on_load_column,
            "board.loadMore": self._on_load_more,
            "issue.getFull": self._on_get_full,
            "issue.create": self._on_create,
            "issue.update": self._on_update,
            "issue.move": self._on_move,
            "issue.delete": self._on_delete,
            "issue.addComment": self._on_add_comment,
            "issue.addLabel": self._on_add_label,
            "issue.removeLabel": self._on_remove_label,
            "issue.addDependency": self._on_add_dependency,
            "issue.removeDependency": self._on_remove_dependency,
        }

    def start(self) -> None:
        self.host.on_message(self.handle)
        self._watch = self.host.watch_file(DB_WATCH_PATTERN, self._on_file_change)
        logger.info(f"Bridge started ({self.adapter.name} adapter, read_only={self.config.read_only})")

    # ── Outbound ──

    def post(self, msg_type: str, request_id: Optional[str] = None,
             payload: Optional[dict] = None) -> None:
        if self.disposed:
            logger.debug(f"Dropping {msg_type}: panel disposed")
            return
        self.host.post_message(make_response(msg_type, request_id, payload))

    def post_error(self, request_id: Optional[str], error, context: str = "") -> None:
        self.post("mutation.error", request_id, {"error": sanitize_error_with_context(error, context)})

    # ── Inbound ──

    async def handle(self, raw: Any) -> None:
        """Validate and dispatch one inbound envelope. Never raises."""
        if self.disposed:
            logger.debug("Ignoring message after dispose")
            return
        request_id = raw.get("requestId") if isinstance(raw, dict) else None
        if not isinstance(request_id, str):
            request_id = None

        try:
            envelope = validate_envelope(raw)
        except ValidationError as e:
            logger.warning(f"Rejected message: {e}")
            self.post_error(request_id, e)
            return

        if envelope.is_mutation and self.config.read_only:
            self.post("mutation.error", envelope.request_id, {"error": READ_ONLY_MESSAGE})
            return

        try:
            await self._routes[envelope.type](envelope)
        except Exception as e:
            if isinstance(e, ValidationError):
                logger.warning(f"{envelope.type} rejected: {e}")
            else:
                logger.error(f"{envelope.type} failed: {e}", exc_info=True)
            self.post_error(envelope.request_id, e, f"handle {envelope.type}")

    # ── Board reads ──

    def _record_range(self, column: BoardColumn, offset: int, limit: int) -> None:
        self._ranges.setdefault(column, []).append((offset, limit))

    def loaded_ranges(self, column: BoardColumn) -> List[Tuple[int, int]]:
        return list(self._ranges.get(column, []))

    async def _page(self, column: BoardColumn, offset: int, limit: int) -> ColumnPage:
        cards = await self.adapter.get_column_data(column, offset, limit)
        total = await self.adapter.get_column_count(column)
        return ColumnPage(column=column, cards=cards, offset=offset, limit=limit, total_count=total)

    async def send_board(self, request_id: Optional[str] = None) -> None:
        """Post board.data: the full snapshot plus the first page of each preloaded column."""
        board = await self.adapter.get_board()
        limit = self.config.initial_load_limit
        self._ranges.clear()

        columns = list(PRELOADED_COLUMNS)
        if self.config.preload_closed_column:
            columns.append(BoardColumn.CLOSED)

        column_data = {}
        for column in columns:
            try:
                page = await self._page(column, 0, limit)
            except Exception as e:
                logger.warning(f"Failed to load column {column.value}: {e}")
                page = ColumnPage(column=column, cards=[], offset=0, limit=limit, total_count=0)
            else:
                self._record_range(column, 0, limit)
            column_data[column.value] = page.to_dict()

        if not self.config.preload_closed_column:
            try:
                closed_total = await self.adapter.get_column_count(BoardColumn.CLOSED)
            except Exception as e:
                logger.warning(f"Failed to count closed column: {e}")
                closed_total = 0
            column_data[BoardColumn.CLOSED.value] = ColumnPage(
                column=BoardColumn.CLOSED, cards=[], offset=0, limit=0, total_count=closed_total,
            ).to_dict()

        snapshot = BoardSnapshot(cards=board.cards, column_data=column_data)
        payload = snapshot.to_dict()
        payload["readOnly"] = self.config.read_only
        self.post("board.data", request_id, payload)

    async def load_column(self, column, offset: int, limit: int,
                          request_id: Optional[str] = None) -> None:
        column = column if isinstance(column, BoardColumn) else BoardColumn.from_str(column)
        page = await self._page(column, offset, limit)
        self._record_range(column, offset, limit)
        self.post("board.columnData", request_id, page.to_dict())

    async def load_more(self, column, request_id: Optional[str] = None) -> None:
        column = column if isinstance(column, BoardColumn) else BoardColumn.from_str(column)
        ranges = self._ranges.get(column, [])
        next_offset = max((o + l for o, l in ranges), default=0)
        await self.load_column(column, next_offset, self.config.page_size, request_id)

    async def _on_board_load(self, env: Envelope) -> None:
        await self.send_board(env.request_id)

    async def _on_board_refresh(self, env: Envelope) -> None:
        await self.adapter.reload()
        await self.send_board(env.request_id)

    async def _on_load_column(self, env: Envelope) -> None:
        p = env.payload
        await self.load_column(p["column"], p["offset"], p["limit"], env.request_id)

    async def _on_load_more(self, env: Envelope) -> None:
        await self.load_more(env.payload["column"], env.request_id)

    async def _on_get_full(self, env: Envelope) -> None:
        card = await self.adapter.get_issue(env.payload["id"])
        self.post("issue.full", env.request_id, {"card": card.to_dict(CacheTier.FULL)})

    # ── Mutations ──

    async def _mutated(self, env: Envelope, result: Optional[dict] = None) -> None:
        self.post("mutation.ok", env.request_id, result)
        await self.send_board()

    async def _on_create(self, env: Envelope) -> None:
        issue_id = await self.adapter.create_issue(env.payload)
        await self._mutated(env, {"id": issue_id})

    async def _on_update(self, env: Envelope) -> None:
        await self.adapter.update_issue(env.payload["id"], env.payload["updates"])
        await self._mutated(env)

    async def _on_move(self, env: Envelope) -> None:
        status = column_to_status(env.payload["toColumn"])
        await self.adapter.set_issue_status(env.payload["id"], status)
        await self._mutated(env)

    async def _on_delete(self, env: Envelope) -> None:
        await self.adapter.delete_issue(env.payload["id"])
        await self._mutated(env)

    async def _on_add_comment(self, env: Envelope) -> None:
        p = env.payload
        await self.adapter.add_comment(p["id"], p["text"], p["author"])
        await self._mutated(env)

    async def _on_add_label(self, env: Envelope) -> None:
        await self.adapter.add_label(env.payload["id"], env.payload["label"])
        await self._mutated(env)

    async def _on_remove_label(self, env: Envelope) -> None:
        await self.adapter.remove_label(env.payload["id"], env.payload["label"])
        await self._mutated(env)

    async def _on_add_dependency(self, env: Envelope) -> None:
        p = env.payload
        await self.adapter.add_dependency(p["id"], p["otherId"], p["type"])
        await self._mutated(env)

    async def _on_remove_dependency(self, env: Envelope) -> None:
        await self.adapter.remove_dependency(env.payload["id"], env.payload["otherId"])
        await self._mutated(env)

    # ── External file changes ──

    def _on_file_change(self, path: str) -> None:
        """Runs on the loop thread (the watcher hands events over thread-safely)."""
        if self.disposed:
            return
        if self.adapter.is_recent_self_change():
            logger.debug(f"Ignoring own write to {path}")
            return
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
        loop = asyncio.get_running_loop()
        self._refresh_handle = loop.call_later(self.debounce, self._start_refresh)

    def _start_refresh(self) -> None:
        self._refresh_handle = None
        if not self.disposed:
            self._refresh_task = asyncio.ensure_future(self._refresh_from_disk())

    async def _refresh_from_disk(self) -> None:
        logger.info("Database changed on disk, reloading board")
        try:
            await self.adapter.reload()
            await self.send_board()
        except Exception as e:
            logger.error(f"Refresh after file change failed: {e}")
            self.post_error(None, e, "refresh board")

    # ── Teardown ──

    def dispose(self) -> None:
        if self.disposed:
            return
        self.post("webview.cleanup")
        self.disposed = True
        self._ranges.clear()
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
            self._refresh_handle = None
        if self._refresh_task is not None and not self._refresh_task.done():
            self._refresh_task.cancel()
        if self._watch is not None:
            self._watch.dispose()
            self._watch = None
        logger.info("Bridge disposed")
