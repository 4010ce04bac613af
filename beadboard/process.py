"""
Process adapter: the board over the `bd` CLI and its background daemon.

Every operation is one `bd` invocation built as an argv list (never a shell
string). Arguments are sanitized, identifiers are validated, and every call
runs under a wall-clock timeout and an output-size cap. Detail fetches are
batched and guarded by a circuit breaker.
"""
import asyncio
import contextlib
import json
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .adapter import BoardAdapter, build_relationships, validate_updates
from .circuit import CircuitBreaker
from .errors import (
    BoardError, CircuitOpenError, ConnectivityError, ResourceExhaustedError,
    TransientError, ValidationError,
)
from .schema import (
    BoardCard, BoardColumn, BoardSnapshot, Comment, DependencyInfo,
    DependencyType, IssueStatus,
)

logger = logging.getLogger(__name__)

BD_TIMEOUT = 30.0                      # seconds per invocation
MAX_OUTPUT_BYTES = 10 * 1024 * 1024    # per stream
BATCH_SIZE = 50                        # ids per `bd show`
MAX_ISSUES = 1000
BOARD_CACHE_TTL = 1.0
SELF_CHANGE_WINDOW = 3.0

ISSUE_ID_PATTERN = r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}"
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Argument hygiene
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def sanitize_cli_arg(arg) -> str:
    """Strip control characters, fold newlines and collapse whitespace."""
    text = str(arg)
    text = _CONTROL_CHARS.sub("", text)
    text = re.sub(r"[\r\n]+", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def validate_issue_id(value) -> str:
    """Reject anything that is not a plain issue id (including leading hyphens)."""
    if not isinstance(value, str) or not re.fullmatch(ISSUE_ID_PATTERN, value):
        raise ValidationError(f"Invalid issue id: {value!r}")
    return value


def validate_label(value) -> str:
    if not isinstance(value, str) or not value.strip() or value.lstrip().startswith("-"):
        raise ValidationError(f"Invalid label: {value!r}")
    return value.strip()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# BdRunner: one bd invocation
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class BdRunner:
    """Spawns bd with cwd pinned to the workspace root and parses its JSON output."""

    def __init__(self, workspace_root: str = ".", executable: str = "bd",
                 timeout: float = BD_TIMEOUT, max_output: int = MAX_OUTPUT_BYTES):
        self.workspace_root = str(Path(workspace_root).resolve())
        self.executable = executable
        self.timeout = timeout
        self.max_output = max_output
        self.calls = 0

    async def _read_capped(self, stream, label: str) -> bytes:
        chunks, size = [], 0
        while True:
            chunk = await stream.read(65536)
            if not chunk:
                return b"".join(chunks)
            size += len(chunk)
            if size > self.max_output:
                raise ResourceExhaustedError(
                    f"Command {label} exceeded {self.max_output} bytes limit"
                )
            chunks.append(chunk)

    async def _communicate(self, proc):
        out, err = await asyncio.gather(
            self._read_capped(proc.stdout, "output"),
            self._read_capped(proc.stderr, "error output"),
        )
        code = await proc.wait()
        return out, err, code

    @staticmethod
    async def _kill(proc) -> None:
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        await proc.wait()

    async def run(self, args: List[Any], timeout: Optional[float] = None,
                  parse_json: bool = True) -> Any:
        """
        Run `bd <args>` and return parsed JSON.

        Returns None for a successful run with empty or non-JSON output
        (mutations print a friendly message). With parse_json=False the raw
        stdout text is returned instead. Raises:
            ConnectivityError       bd not installed
            ResourceExhaustedError  timeout or output cap exceeded (process killed)
            TransientError          non-zero exit
        """
        argv = [sanitize_cli_arg(a) for a in args]
        timeout = timeout or self.timeout
        command = " ".join([self.executable] + argv[:3])
        self.calls += 1

        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable, *argv,
                cwd=self.workspace_root,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ConnectivityError(f"bd executable not found: {self.executable}") from e

        try:
            out, err, code = await asyncio.wait_for(self._communicate(proc), timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            logger.error(f"Command timed out after {timeout:.0f}s: {command}")
            raise ResourceExhaustedError(f"Command timed out after {timeout:.0f}s: {command}")
        except ResourceExhaustedError as e:
            await self._kill(proc)
            logger.error(f"{e}: {command}")
            raise

        stdout = out.decode("utf-8", errors="replace").strip()
        stderr = err.decode("utf-8", errors="replace").strip()

        if code != 0:
            logger.error(f"Command failed (exit {code}): {command}: {stderr or stdout}")
            raise TransientError(f"bd command failed with exit code {code}: {stderr or stdout}")
        if not parse_json:
            return stdout
        if not stdout:
            return None
        try:
            return json.loads(stdout)
        except json.JSONDecodeError:
            logger.info(f"Non-JSON output from {command}: {stdout[:200]}")
            return None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Mapping bd JSON → cards
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _info(issue: Dict[str, Any]) -> DependencyInfo:
    return DependencyInfo(
        id=issue["id"],
        title=issue.get("title") or "",
        created_at=issue.get("created_at"),
        created_by=issue.get("created_by") or "unknown",
        metadata=issue.get("metadata"),
        thread_id=issue.get("thread_id"),
    )


def map_issues(issues: List[Dict[str, Any]], hints: Optional[Dict[str, dict]] = None) -> List[BoardCard]:
    """
    Build cards and relationship maps in one pass.

    bd reports `dependents` (issues that depend on this one) and, for `show`,
    `dependencies` (issues this one depends on). Both describe the same edge
    set; duplicates are folded.
    """
    hints = hints or {}
    seen, edges = set(), []

    def add(dependent: DependencyInfo, depended_on: DependencyInfo, dep_type):
        key = (dependent.id, depended_on.id, dep_type)
        if key not in seen:
            seen.add(key)
            edges.append((dependent, depended_on, dep_type))

    for issue in issues:
        this = _info(issue)
        for dep in issue.get("dependents") or []:
            add(DependencyInfo.from_dict(dep), this, dep.get("dependency_type"))
        for dep in issue.get("dependencies") or []:
            add(this, DependencyInfo.from_dict(dep), dep.get("dependency_type"))
    rel = build_relationships(edges)

    cards = []
    for issue in issues:
        data = dict(issue)
        comments = data.pop("comments", None) or []
        blocked_by = rel.blocked_by.get(issue["id"], [])
        hint = hints.get(issue["id"], {})

        data["blocked_by_count"] = max(len(blocked_by), int(hint.get("blocked_by_count") or 0))
        data["is_ready"] = hint.get("is_ready", data.get("status") == "open" and not blocked_by)
        data["comment_count"] = data.get("comment_count") or len(comments)
        cards.append(rel.apply(BoardCard.from_dict(data)))
    return cards


def _as_list(result) -> List[Dict[str, Any]]:
    if isinstance(result, list):
        return [r for r in result if isinstance(r, dict) and r.get("id")]
    if isinstance(result, dict) and result.get("id"):
        return [result]
    return []


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Adapter
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ProcessBoardAdapter(BoardAdapter):
    """Board backed by the bd daemon, one CLI call per operation."""

    name = "daemon"

    def __init__(self, workspace_root: str = ".", runner: Optional[BdRunner] = None,
                 breaker: Optional[CircuitBreaker] = None, max_issues: int = MAX_ISSUES,
                 batch_size: int = BATCH_SIZE, cache_ttl: float = BOARD_CACHE_TTL,
                 self_change_window: float = SELF_CHANGE_WINDOW, clock=time.monotonic):
        self.workspace_root = workspace_root
        self.runner = runner or BdRunner(workspace_root)
        self.breaker = breaker or CircuitBreaker()
        self.max_issues = max_issues
        self.batch_size = batch_size
        self.cache_ttl = cache_ttl
        self.self_change_window = self_change_window
        self._clock = clock

        self._board_cache: Optional[BoardSnapshot] = None
        self._cache_time = 0.0
        self._last_mutation: Optional[float] = None

    # ── Lifecycle ──

    async def connect(self) -> None:
        try:
            info = await self.runner.run(["info", "--json"])
        except BoardError as e:
            raise ConnectivityError(f"Failed to connect to beads daemon: {e}") from e
        if not isinstance(info, dict) or not info.get("daemon_connected"):
            raise ConnectivityError(
                "Beads daemon is not running. Start it with: bd daemon --start"
            )
        if info.get("daemon_status") != "healthy":
            logger.warning(f"Daemon status is {info.get('daemon_status')}")
        logger.info("Connected to beads daemon")

    async def reload(self) -> None:
        self._board_cache = None
        logger.info("Board cache invalidated")

    async def dispose(self) -> None:
        self._board_cache = None
        logger.info("Process adapter disposed")

    def is_recent_self_change(self) -> bool:
        if self._last_mutation is None:
            return False
        return (self._clock() - self._last_mutation) < self.self_change_window

    def _track_mutation(self) -> None:
        self._last_mutation = self._clock()
        self._board_cache = None

    # ── Detail fetching ──

    async def _show(self, ids: List[str]) -> List[Dict[str, Any]]:
        result = await self.runner.run(["show", "--json"] + ids)
        if not isinstance(result, list):
            raise TransientError("Expected array from bd show --json <ids>")
        return result

    async def fetch_details(self, ids: List[str]) -> List[Dict[str, Any]]:
        """
        `bd show` in fixed-size batches behind the circuit breaker.

        A failed batch is retried id by id; ids that still fail are dropped.
        The breaker sees one failure per failed batch, never one per id.
        """
        details = []
        for start in range(0, len(ids), self.batch_size):
            batch = []
            for issue_id in ids[start:start + self.batch_size]:
                try:
                    batch.append(validate_issue_id(issue_id))
                except ValidationError:
                    logger.warning(f"Skipping invalid issue id: {issue_id!r}")
            if not batch:
                continue

            try:
                details.extend(await self.breaker.call(self._show, batch))
                continue
            except CircuitOpenError:
                raise
            except BoardError as e:
                logger.warning(f"Batch show failed, retrying individually: {e}")

            recovered = 0
            for issue_id in batch:
                try:
                    found = await self._show([issue_id])
                except (TransientError, ResourceExhaustedError) as e:
                    logger.warning(f"Skipping missing issue {issue_id}: {e}")
                    continue
                details.extend(found)
                recovered += len(found)
            if recovered:
                self.breaker.record_success()
        return details

    # ── Read path ──

    async def get_board(self) -> BoardSnapshot:
        if self._board_cache is not None and (self._clock() - self._cache_time) < self.cache_ttl:
            return self._board_cache

        basic = _as_list(await self.runner.run(
            ["list", "--json", "--all", "--limit", str(self.max_issues + 1)]
        ))
        if len(basic) > self.max_issues:
            logger.info(
                f"Loaded {self.max_issues} issues (more available); raise max_issues to show more"
            )
            basic = basic[:self.max_issues]

        details = await self.fetch_details([i["id"] for i in basic]) if basic else []
        snapshot = BoardSnapshot(cards=map_issues(details))
        self._board_cache = snapshot
        self._cache_time = self._clock()
        return snapshot

    def _column_args(self, column: BoardColumn, limit: int) -> List[List[str]]:
        if column == BoardColumn.READY:
            return [["ready", "--json", "--limit", str(limit)]]
        if column == BoardColumn.IN_PROGRESS:
            return [["list", "--status=in_progress", "--json", "--limit", str(limit)]]
        if column == BoardColumn.BLOCKED:
            return [["blocked", "--json"],
                    ["list", "--status=blocked", "--json", "--limit", str(limit)]]
        if column == BoardColumn.CLOSED:
            return [["list", "--status=closed", "--json", "--limit", str(limit)]]
        raise ValidationError(f"Unknown column: {column}")

    async def _column_candidates(self, column: BoardColumn, limit: int) -> List[Dict[str, Any]]:
        """Basic rows for a column, narrowed so they agree with classify()."""
        rows, seen = [], set()
        for args in self._column_args(column, limit):
            for row in _as_list(await self.runner.run(args)):
                if row["id"] not in seen:
                    seen.add(row["id"])
                    rows.append(row)

        if column == BoardColumn.READY:
            return [r for r in rows if (r.get("status") or "open") == "open"]
        if column == BoardColumn.BLOCKED:
            return [r for r in rows if r.get("status") not in ("closed", "in_progress")]
        return rows

    async def get_column_count(self, column) -> int:
        column = self._column(column)
        return len(await self._column_candidates(column, 0))   # 0 = unlimited

    async def get_column_data(self, column, offset: int = 0, limit: int = 50) -> List[BoardCard]:
        column = self._column(column)
        # bd has --limit but no --offset: fetch offset+limit and slice
        rows = (await self._column_candidates(column, offset + limit))[offset:offset + limit]
        if not rows:
            return []

        hints = {}
        for r in rows:
            hint = {}
            if column == BoardColumn.READY:
                hint["is_ready"] = True
            if r.get("blocked_by_count"):
                hint["blocked_by_count"] = r["blocked_by_count"]
            hints[r["id"]] = hint

        cards = map_issues(await self.fetch_details([r["id"] for r in rows]), hints)
        page = [c for c in cards if c.column == column]
        if len(page) != len(cards):
            logger.debug(f"Dropped {len(cards) - len(page)} cards that classify outside {column.value}")
        return page

    async def get_issue(self, issue_id: str) -> BoardCard:
        validate_issue_id(issue_id)
        result = _as_list(await self.runner.run(["show", "--json", issue_id]))
        if not result:
            raise ValidationError(f"Issue not found: {issue_id}")
        card = map_issues(result[:1])[0]
        card.comments = [Comment.from_dict(c, issue_id) for c in result[0].get("comments") or []]
        card.comment_count = len(card.comments)
        return card

    async def get_issue_comments(self, issue_id: str) -> List[Comment]:
        return (await self.get_issue(issue_id)).comments

    # ── Write path ──

    async def _mutate(self, args: List[str]) -> Any:
        result = await self.runner.run(args)
        self._track_mutation()
        return result

    async def create_issue(self, data: dict) -> str:
        title = (data.get("title") or "").strip()
        if not title:
            raise ValidationError("Title is required.")

        args = ["create", f"--title={title}"]
        flags = (
            ("description", "description"), ("priority", "priority"),
            ("issue_type", "type"), ("assignee", "assignee"),
            ("estimated_minutes", "estimate"), ("acceptance_criteria", "acceptance"),
            ("design", "design"), ("notes", "notes"), ("external_ref", "external-ref"),
            ("due_at", "due"), ("defer_until", "defer"),
        )
        for key, flag in flags:
            value = data.get(key)
            if value is not None and value != "":
                args.append(f"--{flag}={value}")
        args.append("--json")

        result = await self._mutate(args)
        created = _as_list(result)
        if not created:
            raise TransientError("bd create did not return an issue id")
        issue_id = created[0]["id"]

        status = data.get("status")
        if status and status != IssueStatus.OPEN.value:
            await self.set_issue_status(issue_id, status)
        logger.info(f"Created issue {issue_id}")
        return issue_id

    async def set_issue_status(self, issue_id: str, status) -> None:
        status = self._status(status)
        await self._mutate(["update", validate_issue_id(issue_id), f"--status={status.value}"])

    async def update_issue(self, issue_id: str, updates: dict) -> None:
        updates = validate_updates(dict(updates))
        args = ["update", validate_issue_id(issue_id)]
        flags = {
            "title": "title", "description": "description", "priority": "priority",
            "issue_type": "type", "acceptance_criteria": "acceptance",
            "design": "design", "notes": "notes", "status": "status",
        }
        for key, flag in flags.items():
            if key in updates:
                args.append(f"--{flag}={updates[key] if updates[key] is not None else ''}")
        if "assignee" in updates:
            args.append(f"--assignee={updates['assignee'] or ''}")
        if "estimated_minutes" in updates:
            args.append(f"--estimate={updates['estimated_minutes'] or 0}")
        # bd cannot clear these; only forward real values
        for key, flag in (("external_ref", "external-ref"), ("due_at", "due"), ("defer_until", "defer")):
            if updates.get(key):
                args.append(f"--{flag}={updates[key]}")
        if len(args) == 2:
            return
        await self._mutate(args)

    async def delete_issue(self, issue_id: str) -> None:
        await self._mutate(["delete", validate_issue_id(issue_id), "--force"])

    async def add_comment(self, issue_id: str, text: str, author: str) -> None:
        # flags first, then "--" so comment text can never be read as a flag
        await self._mutate(
            ["comments", "add", f"--author={author}", "--", validate_issue_id(issue_id), text]
        )

    async def add_label(self, issue_id: str, label: str) -> None:
        await self._mutate(["label", "add", validate_issue_id(issue_id), validate_label(label)])

    async def remove_label(self, issue_id: str, label: str) -> None:
        await self._mutate(["label", "remove", validate_issue_id(issue_id), validate_label(label)])

    async def add_dependency(self, issue_id: str, other_id: str, dep_type: str = "blocks") -> None:
        dep_type = DependencyType.from_str(dep_type)
        await self._mutate([
            "dep", "add", validate_issue_id(issue_id), validate_issue_id(other_id),
            f"--type={dep_type.value}",
        ])

    async def remove_dependency(self, issue_id: str, other_id: str) -> None:
        await self._mutate(
            ["dep", "remove", validate_issue_id(issue_id), validate_issue_id(other_id)]
        )
