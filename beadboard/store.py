"""
Embedded storage adapter (SQLite file under .beads/).

The database file is copied into an in-memory connection on connect. Every
mutation runs against that copy, marks it dirty and schedules a debounced
save; the save writes a sibling .tmp file and atomically replaces the real
file. Reads check the file's mtime first so edits made by other processes
(bd itself, git checkouts) are picked up.
"""
import asyncio
import errno
import logging
import os
import sqlite3
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .adapter import BoardAdapter, build_relationships, paginate, validate_updates
from .errors import (
    CatastrophicError, ConnectivityError, ResourceExhaustedError,
    TransientError, ValidationError,
)
from .schema import (
    BoardCard, BoardSnapshot, Comment, DependencyInfo, DependencyType,
    IssueStatus, METADATA_FIELDS,
)

logger = logging.getLogger(__name__)

BOARD_CACHE_TTL = 1.0       # seconds a getBoard() result is reused
SAVE_DEBOUNCE = 0.3         # quiet window before a dirty database is written
SELF_SAVE_WINDOW = 2.0      # file changes this soon after our save are ours
MAX_ISSUES = 50_000
RENAME_MAX_ATTEMPTS = 5
RENAME_BASE_DELAY = 0.05    # doubles on every retry

DB_SUFFIXES = (".db", ".sqlite", ".sqlite3")
LOCK_ERRNOS = {errno.EACCES, errno.EPERM, errno.EBUSY, errno.ETXTBSY}

ISSUE_COLUMNS = (
    "id", "title", "description", "status", "priority", "issue_type",
    "assignee", "estimated_minutes", "created_at", "updated_at", "closed_at",
    "external_ref", "acceptance_criteria", "design", "notes", "due_at",
    "defer_until", "pinned", "is_template", "ephemeral",
) + METADATA_FIELDS


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# File helpers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _connect(db_path, readonly: bool = False) -> sqlite3.Connection:
    """Open a connection with dict-style rows."""
    if readonly:
        conn = sqlite3.connect(Path(db_path).resolve().as_uri() + "?mode=ro", uri=True)
    else:
        conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def _table_names(conn: sqlite3.Connection) -> List[str]:
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type IN ('table', 'view') ORDER BY name"
    ).fetchall()
    return [r[0] for r in rows]


def _has_issues_table(conn: sqlite3.Connection) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name='issues' LIMIT 1"
    ).fetchone()
    return row is not None


def _is_lock_error(exc: OSError) -> bool:
    return isinstance(exc, PermissionError) or exc.errno in LOCK_ERRNOS


def find_database(workspace_root) -> Path:
    """
    Locate the beads database under <workspace>/.beads.

    Every *.db / *.sqlite / *.sqlite3 file (symlinks skipped) is probed for an
    `issues` table; the first match wins. If none qualifies, the error lists
    every file searched and why it was rejected.
    """
    beads_dir = Path(workspace_root) / ".beads"
    if not beads_dir.is_dir():
        raise ConnectivityError("No .beads directory found in the workspace root.")

    candidates = []
    for p in sorted(beads_dir.iterdir()):
        if p.suffix.lower() not in DB_SUFFIXES:
            continue
        if p.is_symlink():
            logger.info(f"Skipping symlink: {p.name}")
            continue
        if p.is_file():
            candidates.append(p)

    if not candidates:
        raise ConnectivityError(
            "No SQLite database file found in .beads (expected *.db/*.sqlite/*.sqlite3)."
        )

    failures = []
    for p in candidates:
        try:
            conn = _connect(p, readonly=True)
            try:
                if _has_issues_table(conn):
                    return p
                tables = ", ".join(_table_names(conn))
                reason = f"issues table missing. Tables found: [{tables}]"
            finally:
                conn.close()
        except sqlite3.Error as e:
            reason = str(e)
        logger.warning(f"Candidate DB rejected: {p.name} ({reason})")
        failures.append(f"{p.name}: {reason}")

    raise ConnectivityError(
        "Could not find a valid Beads DB in .beads. "
        f"Searched: {', '.join(p.name for p in candidates)}. "
        "Details:\n" + "\n".join(failures)
    )


def _load_into_memory(db_path: Path) -> sqlite3.Connection:
    """Copy the database file into a private in-memory connection."""
    try:
        src = _connect(db_path, readonly=True)
    except sqlite3.Error as e:
        raise ConnectivityError(f"unable to open database {db_path.name}: {e}") from e
    try:
        if not _has_issues_table(src):
            raise ConnectivityError("Database reloaded but issues table is missing")
        mem = sqlite3.connect(":memory:")
        mem.row_factory = sqlite3.Row
        src.backup(mem)
        return mem
    except sqlite3.DatabaseError as e:
        raise CatastrophicError(f"Database file is corrupted: {e}") from e
    finally:
        src.close()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Adapter
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class SQLiteBoardAdapter(BoardAdapter):
    """
    Board backed by the beads SQLite file.

    State: disconnected → connected → (dirty ⇄ saving) → disconnected.
    Only one save runs at a time; a mutation during a save just re-arms the
    dirty flag and another debounced save follows.
    """

    name = "sqlite"

    def __init__(
        self,
        workspace_root: str = ".",
        cache_ttl: float = BOARD_CACHE_TTL,
        save_debounce: float = SAVE_DEBOUNCE,
        self_save_window: float = SELF_SAVE_WINDOW,
        max_issues: int = MAX_ISSUES,
        rename_max_attempts: int = RENAME_MAX_ATTEMPTS,
        rename_base_delay: float = RENAME_BASE_DELAY,
        clock=time.monotonic,
    ):
        self.workspace_root = Path(workspace_root)
        self.cache_ttl = cache_ttl
        self.save_debounce = save_debounce
        self.self_save_window = self_save_window
        self.max_issues = max_issues
        self.rename_max_attempts = rename_max_attempts
        self.rename_base_delay = rename_base_delay
        self._clock = clock

        self.db_path: Optional[Path] = None
        self._conn: Optional[sqlite3.Connection] = None
        self._dirty = False
        self._saving = False
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._save_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._board_cache: Optional[BoardSnapshot] = None
        self._cache_time = 0.0
        self._last_save_time: Optional[float] = None
        self._last_known_mtime: Optional[int] = None

        self.save_count = 0
        self.last_save_error: Optional[BaseException] = None

    # ── Connection lifecycle ──

    @property
    def connected(self) -> bool:
        return self._conn is not None

    @property
    def dirty(self) -> bool:
        return self._dirty

    async def connect(self) -> None:
        path = find_database(self.workspace_root)
        self._open(path)
        logger.info(f"Connected to DB: {path.name}")

    async def _ensure_connected(self) -> sqlite3.Connection:
        if self._conn is None:
            await self.connect()
        return self._conn

    def _open(self, path: Path) -> None:
        mem = _load_into_memory(path)
        self._close()
        self._conn = mem
        self.db_path = path
        self._invalidate()
        self._last_known_mtime = self._mtime()

    def _close(self) -> None:
        if self._conn is not None:
            self._conn.close()
        self._conn = None

    def _mtime(self) -> Optional[int]:
        try:
            return self.db_path.stat().st_mtime_ns
        except OSError as e:
            logger.warning(f"Could not read file stats: {e}")
            return None

    def _invalidate(self) -> None:
        self._board_cache = None
        self._cache_time = 0.0

    async def reload(self) -> None:
        """Flush pending edits, then re-open the file from disk."""
        if self.db_path is None:
            await self.connect()
            return

        await self.flush()
        logger.info(f"Reloading database from {self.db_path.name}")
        try:
            self._open(self.db_path)
        except (ConnectivityError, CatastrophicError) as e:
            logger.error(f"Failed to reload database: {e}")
            self._close()
            self.db_path = None
            await self.connect()

    async def dispose(self) -> None:
        try:
            await self.flush()
        finally:
            self._close()
            self.db_path = None
            logger.info("SQLite adapter disposed")

    # ── External change detection ──

    def is_recent_self_change(self) -> bool:
        if self._last_save_time is None:
            return False
        return (self._clock() - self._last_save_time) < self.self_save_window

    def _has_file_changed_externally(self) -> bool:
        if self.db_path is None or self._last_known_mtime is None:
            return False
        current = self._mtime()
        return current is not None and current != self._last_known_mtime

    def _reload_from_disk(self) -> None:
        if self._dirty:
            logger.warning(
                "Database was modified externally; discarding unsaved local changes"
            )
        self._cancel_save_timer()
        self._dirty = False
        self._open(self.db_path)
        logger.info(f"Reloaded database from disk: {self.db_path.name}")

    # ── Read path ──

    async def get_board(self) -> BoardSnapshot:
        if self._board_cache is not None and (self._clock() - self._cache_time) < self.cache_ttl:
            return self._board_cache

        await self._ensure_connected()
        if (not self._saving and self._has_file_changed_externally()
                and not self.is_recent_self_change()):
            logger.info("External database change detected, reloading from disk")
            self._reload_from_disk()

        snapshot = BoardSnapshot(cards=self._query_cards(self._conn))
        self._board_cache = snapshot
        self._cache_time = self._clock()
        return snapshot

    def _columns(self, conn: sqlite3.Connection, table: str) -> set:
        return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}

    def _query_cards(self, conn: sqlite3.Connection) -> List[BoardCard]:
        names = set(_table_names(conn))
        missing = {"ready_issues", "blocked_issues"} - names
        if missing:
            raise CatastrophicError(
                f"Database schema is missing views: {', '.join(sorted(missing))}"
            )

        cols = self._columns(conn, "issues")
        select = [f"i.{c}" if c in cols else f"NULL AS {c}" for c in ISSUE_COLUMNS]
        live = "i.deleted_at IS NULL" if "deleted_at" in cols else "1"
        live_ids = (
            "SELECT id FROM issues WHERE deleted_at IS NULL"
            if "deleted_at" in cols else "SELECT id FROM issues"
        )

        # 1) issues + derived readiness and blocker count
        rows = conn.execute(f"""
            SELECT {', '.join(select)},
                   CASE WHEN ri.id IS NOT NULL THEN 1 ELSE 0 END AS is_ready,
                   COALESCE(bi.blocked_by_count, 0) AS blocked_by_count,
                   (SELECT COUNT(*) FROM comments c WHERE c.issue_id = i.id) AS comment_count
            FROM issues i
            LEFT JOIN ready_issues ri ON ri.id = i.id
            LEFT JOIN blocked_issues bi ON bi.id = i.id
            WHERE {live}
            ORDER BY i.priority ASC, i.updated_at DESC, i.created_at DESC
        """).fetchall()

        if len(rows) > self.max_issues:
            raise ResourceExhaustedError(
                f"Too many issues ({len(rows)}). Up to {self.max_issues:,} issues "
                "are supported. Consider archiving closed issues."
            )

        # 2) labels for the whole id set
        labels = {}
        for r in conn.execute(f"""
            SELECT issue_id, label FROM labels
            WHERE issue_id IN ({live_ids})
            ORDER BY label
        """):
            labels.setdefault(r["issue_id"], []).append(r["label"])

        # 3) dependency edges touching the id set
        dep_cols = self._columns(conn, "dependencies")
        extra = [f"d.{c}" if c in dep_cols else f"NULL AS {c}"
                 for c in ("created_at", "created_by", "metadata", "thread_id")]
        edges = []
        for d in conn.execute(f"""
            SELECT d.issue_id, d.depends_on_id, d.type,
                   i1.title AS issue_title, i2.title AS depends_title,
                   {', '.join(extra)}
            FROM dependencies d
            JOIN issues i1 ON i1.id = d.issue_id
            JOIN issues i2 ON i2.id = d.depends_on_id
            WHERE d.issue_id IN ({live_ids}) OR d.depends_on_id IN ({live_ids})
        """):
            common = dict(
                created_at=d["created_at"], created_by=d["created_by"],
                metadata=d["metadata"], thread_id=d["thread_id"],
            )
            edges.append((
                DependencyInfo(id=d["issue_id"], title=d["issue_title"], **common),
                DependencyInfo(id=d["depends_on_id"], title=d["depends_title"], **common),
                d["type"],
            ))
        rel = build_relationships(edges)

        cards = []
        for row in rows:
            data = dict(row)
            data["labels"] = labels.get(data["id"], [])
            cards.append(rel.apply(BoardCard.from_dict(data)))
        return cards

    async def get_column_count(self, column) -> int:
        column = self._column(column)
        board = await self.get_board()
        return sum(1 for c in board.cards if c.column == column)

    async def get_column_data(self, column, offset: int = 0, limit: int = 50) -> List[BoardCard]:
        column = self._column(column)
        board = await self.get_board()
        return paginate(board.cards, column, offset, limit)

    async def get_issue(self, issue_id: str) -> BoardCard:
        board = await self.get_board()
        for card in board.cards:
            if card.id == issue_id:
                comments = await self.get_issue_comments(issue_id)
                return replace(card, comments=comments, comment_count=len(comments))
        raise ValidationError(f"Issue not found: {issue_id}")

    async def get_issue_comments(self, issue_id: str) -> List[Comment]:
        conn = await self._ensure_connected()
        rows = conn.execute("""
            SELECT id, issue_id, author, text, created_at
            FROM comments
            WHERE issue_id = ?
            ORDER BY created_at ASC, id ASC
        """, (issue_id,)).fetchall()
        return [Comment.from_dict(dict(r)) for r in rows]

    # ── Write path ──

    async def _run(self, sql: str, params=(), expect_row: bool = False) -> sqlite3.Cursor:
        """Execute one mutating statement and schedule persistence."""
        conn = await self._ensure_connected()
        try:
            cur = conn.execute(sql, params)
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ValidationError(f"Invalid change rejected by database: {e}") from e
        if expect_row and cur.rowcount == 0:
            raise ValidationError(f"Issue not found: {params[-1]}")

        self._dirty = True
        self._invalidate()
        self._schedule_save()
        return cur

    async def create_issue(self, data: dict) -> str:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("Title is required.")
        status = self._status(data.get("status") or "open")

        values = {
            "id": str(uuid.uuid4()),
            "title": title,
            "description": data.get("description") or "",
            "status": status.value,
            "priority": data["priority"] if data.get("priority") is not None else 2,
            "issue_type": data.get("issue_type") or "task",
            "assignee": data.get("assignee"),
            "estimated_minutes": data.get("estimated_minutes"),
            "acceptance_criteria": data.get("acceptance_criteria") or "",
            "design": data.get("design") or "",
            "notes": data.get("notes") or "",
            "external_ref": data.get("external_ref"),
            "due_at": data.get("due_at"),
            "defer_until": data.get("defer_until"),
        }
        conn = await self._ensure_connected()
        cols = self._columns(conn, "issues")
        values = {k: v for k, v in values.items() if k in cols}

        names = list(values) + ["created_at", "updated_at"]
        placeholders = ["?"] * len(values) + ["CURRENT_TIMESTAMP", "CURRENT_TIMESTAMP"]
        if status == IssueStatus.CLOSED and "closed_at" in cols:
            names.append("closed_at")
            placeholders.append("CURRENT_TIMESTAMP")

        await self._run(
            f"INSERT INTO issues ({', '.join(names)}) VALUES ({', '.join(placeholders)})",
            tuple(values.values()),
        )
        logger.info(f"Created issue {values['id']}")
        return values["id"]

    async def set_issue_status(self, issue_id: str, status) -> None:
        status = self._status(status)
        closed_at = "CURRENT_TIMESTAMP" if status == IssueStatus.CLOSED else "NULL"
        await self._run(f"""
            UPDATE issues
            SET status = ?, closed_at = {closed_at}, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND deleted_at IS NULL
        """, (status.value, issue_id), expect_row=True)

    async def update_issue(self, issue_id: str, updates: dict) -> None:
        updates = validate_updates(dict(updates))
        if "title" in updates:
            updates["title"] = (updates["title"] or "").strip()
            if not updates["title"]:
                raise ValidationError("Title is required.")

        fields, values = [], []
        for name, value in updates.items():
            fields.append(f"{name} = ?")
            values.append(value)
        if "status" in updates:
            fields.append(
                "closed_at = CURRENT_TIMESTAMP" if updates["status"] == "closed"
                else "closed_at = NULL"
            )
        if not fields:
            return

        fields.append("updated_at = CURRENT_TIMESTAMP")
        values.append(issue_id)
        await self._run(
            f"UPDATE issues SET {', '.join(fields)} WHERE id = ? AND deleted_at IS NULL",
            tuple(values), expect_row=True,
        )

    async def delete_issue(self, issue_id: str) -> None:
        await self._run("""
            UPDATE issues
            SET deleted_at = CURRENT_TIMESTAMP, updated_at = CURRENT_TIMESTAMP
            WHERE id = ? AND deleted_at IS NULL
        """, (issue_id,), expect_row=True)

    async def add_comment(self, issue_id: str, text: str, author: str) -> None:
        await self._run(
            "INSERT INTO comments (issue_id, author, text, created_at) "
            "VALUES (?, ?, ?, CURRENT_TIMESTAMP)",
            (issue_id, author, text),
        )

    async def add_label(self, issue_id: str, label: str) -> None:
        await self._run(
            "INSERT OR IGNORE INTO labels (issue_id, label) VALUES (?, ?)",
            (issue_id, label),
        )

    async def remove_label(self, issue_id: str, label: str) -> None:
        await self._run(
            "DELETE FROM labels WHERE issue_id = ? AND label = ?", (issue_id, label)
        )

    async def add_dependency(self, issue_id: str, other_id: str, dep_type: str = "blocks") -> None:
        dep_type = DependencyType.from_str(dep_type)
        if issue_id == other_id:
            raise ValidationError("An issue cannot depend on itself.")
        await self._run("""
            INSERT OR IGNORE INTO dependencies (issue_id, depends_on_id, type, created_at, created_by)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP, 'beadboard')
        """, (issue_id, other_id, dep_type.value))

    async def remove_dependency(self, issue_id: str, other_id: str) -> None:
        await self._run(
            "DELETE FROM dependencies WHERE issue_id = ? AND depends_on_id = ?",
            (issue_id, other_id),
        )

    # ── Persistence ──

    def _cancel_save_timer(self) -> None:
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None

    def _schedule_save(self) -> None:
        """(Re)start the debounce timer."""
        self._cancel_save_timer()
        loop = asyncio.get_running_loop()
        self._save_handle = loop.call_later(self.save_debounce, self._on_save_timer)

    def _on_save_timer(self) -> None:
        self._save_handle = None
        if not self._dirty or self._conn is None:
            return
        if self._saving:
            # never two physical writes at once; try again after this one
            self._schedule_save()
            return
        self._save_task = asyncio.get_running_loop().create_task(self._debounced_save())

    async def _debounced_save(self) -> None:
        saved = False
        try:
            await self._persist()
            saved = True
        except Exception as e:
            self.last_save_error = e
            logger.error(f"Failed to save database: {e}")
        finally:
            self._save_task = None
        if saved and self._dirty and self._conn is not None:
            self._schedule_save()

    async def flush(self) -> None:
        """
        Write pending changes now and return only once nothing is unsaved.

        Waits out a save already in flight (debounced or another flush), then
        saves again if mutations landed meanwhile. Errors propagate; dirty
        stays armed.
        """
        while self._conn is not None:
            self._cancel_save_timer()
            if self._save_task is not None:
                await asyncio.shield(self._save_task)
            elif self._flush_task is not None:
                await asyncio.shield(self._flush_task)
            elif self._dirty:
                self._flush_task = asyncio.get_running_loop().create_task(self._flush_once())
                await asyncio.shield(self._flush_task)
            else:
                return

    async def _flush_once(self) -> None:
        try:
            await self._persist()
        finally:
            self._flush_task = None

    def _write_snapshot(self, tmp_path: Path) -> None:
        if tmp_path.exists():
            tmp_path.unlink()
        dst = sqlite3.connect(str(tmp_path))
        try:
            self._conn.backup(dst)
        finally:
            dst.close()

    async def _replace_with_retry(self, tmp_path: Path, target: Path) -> None:
        delay = self.rename_base_delay
        for attempt in range(1, self.rename_max_attempts + 1):
            try:
                os.replace(tmp_path, target)
                return
            except OSError as e:
                if not _is_lock_error(e):
                    raise
                if attempt == self.rename_max_attempts:
                    raise TransientError(
                        f"Database file is locked; gave up after {attempt} attempts: {e}"
                    ) from e
                logger.warning(
                    f"Replace attempt {attempt} failed (locked), retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                delay *= 2

    async def _persist(self) -> None:
        """Atomic write: snapshot to <db>.tmp, then replace the real file."""
        tmp_path = self.db_path.with_name(self.db_path.name + ".tmp")
        self._saving = True
        self._dirty = False
        try:
            self._write_snapshot(tmp_path)
            await self._replace_with_retry(tmp_path, self.db_path)
        except BaseException:
            self._dirty = True
            if tmp_path.exists():
                tmp_path.unlink()
            raise
        finally:
            self._saving = False

        self._last_save_time = self._clock()
        self._last_known_mtime = self._mtime()
        self.save_count += 1
        self.last_save_error = None
        logger.info(f"Database saved: {self.db_path.name}")
