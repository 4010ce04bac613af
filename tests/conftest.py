"""Shared test fixtures: a beads-shaped SQLite workspace and a scripted bd runner."""

import sqlite3
import sys
from pathlib import Path

import pytest

# Ensure the project root (beadboard/, board_server.py) is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from beadboard.errors import TransientError  # noqa: E402


SCHEMA = """
CREATE TABLE issues (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'open',
    priority INTEGER NOT NULL DEFAULT 2,
    issue_type TEXT NOT NULL DEFAULT 'task',
    assignee TEXT,
    estimated_minutes INTEGER,
    created_at TEXT,
    updated_at TEXT,
    closed_at TEXT,
    external_ref TEXT,
    acceptance_criteria TEXT NOT NULL DEFAULT '',
    design TEXT NOT NULL DEFAULT '',
    notes TEXT NOT NULL DEFAULT '',
    due_at TEXT,
    defer_until TEXT,
    pinned INTEGER DEFAULT 0,
    is_template INTEGER DEFAULT 0,
    ephemeral INTEGER DEFAULT 0,
    actor TEXT,
    event_kind TEXT,
    deleted_at TEXT
);
CREATE TABLE labels (
    issue_id TEXT NOT NULL,
    label TEXT NOT NULL,
    PRIMARY KEY (issue_id, label)
);
CREATE TABLE dependencies (
    issue_id TEXT NOT NULL,
    depends_on_id TEXT NOT NULL,
    type TEXT NOT NULL DEFAULT 'blocks',
    created_at TEXT,
    created_by TEXT,
    PRIMARY KEY (issue_id, depends_on_id)
);
CREATE TABLE comments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issue_id TEXT NOT NULL,
    author TEXT NOT NULL,
    text TEXT NOT NULL,
    created_at TEXT
);
CREATE VIEW ready_issues AS
    SELECT i.id FROM issues i
    WHERE i.status = 'open' AND i.deleted_at IS NULL
      AND NOT EXISTS (
          SELECT 1 FROM dependencies d JOIN issues b ON b.id = d.depends_on_id
          WHERE d.issue_id = i.id AND d.type = 'blocks' AND b.status != 'closed'
      );
CREATE VIEW blocked_issues AS
    SELECT i.id, COUNT(*) AS blocked_by_count FROM issues i
    JOIN dependencies d ON d.issue_id = i.id AND d.type = 'blocks'
    JOIN issues b ON b.id = d.depends_on_id AND b.status != 'closed'
    WHERE i.status != 'closed' AND i.deleted_at IS NULL
    GROUP BY i.id;
"""

# id, title, status, priority, deleted
SEED_ISSUES = [
    ("bd-1", "Ready task", "open", 1, False),
    ("bd-2", "Waiting on bd-3", "open", 2, False),
    ("bd-3", "Work in progress", "in_progress", 1, False),
    ("bd-4", "Finished", "closed", 3, False),
    ("bd-5", "Explicitly blocked", "blocked", 2, False),
    ("bd-6", "Deleted issue", "open", 2, True),
    ("bd-7", "Child of bd-1", "open", 2, False),
]


def make_beads_db(db_path: Path, issues=SEED_ISSUES, with_views: bool = True) -> Path:
    """Create a beads-shaped database at db_path with the seed board."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    schema = SCHEMA if with_views else SCHEMA.split("CREATE VIEW")[0]
    conn.executescript(schema)
    for issue_id, title, status, priority, deleted in issues:
        conn.execute(
            "INSERT INTO issues (id, title, status, priority, created_at, updated_at, "
            "closed_at, deleted_at) VALUES (?, ?, ?, ?, '2024-01-01', '2024-01-02', ?, ?)",
            (issue_id, title, status, priority,
             "2024-01-03" if status == "closed" else None,
             "2024-01-04" if deleted else None),
        )
    ids = {i[0] for i in issues}
    if {"bd-2", "bd-3"} <= ids:
        conn.execute("INSERT INTO dependencies VALUES ('bd-2', 'bd-3', 'blocks', '2024-01-01', 'alice')")
    if {"bd-7", "bd-1"} <= ids:
        conn.execute("INSERT INTO dependencies VALUES ('bd-7', 'bd-1', 'parent-child', '2024-01-01', 'alice')")
    if "bd-1" in ids:
        conn.execute("INSERT INTO labels VALUES ('bd-1', 'backend')")
        conn.execute("INSERT INTO labels VALUES ('bd-1', 'urgent')")
        conn.execute("INSERT INTO comments (issue_id, author, text, created_at) "
                     "VALUES ('bd-1', 'alice', 'First', '2024-01-01')")
        conn.execute("INSERT INTO comments (issue_id, author, text, created_at) "
                     "VALUES ('bd-1', 'bob', 'Second', '2024-01-02')")
    conn.commit()
    conn.close()
    return db_path


@pytest.fixture
def workspace(tmp_path):
    """A workspace root containing .beads/beads.db with the seed board."""
    make_beads_db(tmp_path / ".beads" / "beads.db")
    return tmp_path


@pytest.fixture
def db_path(workspace):
    return workspace / ".beads" / "beads.db"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class FakeRunner:
    """
    Stands in for BdRunner. `script(args)` returns the parsed result or raises.
    Every call is recorded in `calls`.
    """

    def __init__(self, script=None, workspace_root="/ws"):
        self.script = script or (lambda args: None)
        self.workspace_root = workspace_root
        self.calls = []

    async def run(self, args, timeout=None, parse_json=True):
        self.calls.append([str(a) for a in args])
        return self.script(list(args))

    def commands(self):
        return [" ".join(c[:2]) for c in self.calls]


def bd_issue(issue_id, status="open", title=None, **extra):
    issue = {"id": issue_id, "title": title or f"Issue {issue_id}", "status": status,
             "priority": 2, "issue_type": "task"}
    issue.update(extra)
    return issue


def failing(message="bd command failed with exit code 1: boom"):
    raise TransientError(message)


@pytest.fixture
def fake_runner():
    return FakeRunner
