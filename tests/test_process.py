"""
Tests for the bd process adapter.

Covers:
    - sanitize_cli_arg() / validate_issue_id() / validate_label()
    - BdRunner            - real subprocess via a stub executable: JSON, exit codes,
                            timeout kill, output cap, missing executable, cwd
    - fetch_details()     - batching, per-id fallback, one breaker failure per batch
    - read path           - board mapping, column narrowing, counts
    - write path          - argv shapes, flag injection guards, self-change window
"""

import asyncio
import json
import os
import stat
import sys

import pytest

from beadboard.circuit import CircuitBreaker, CircuitState
from beadboard.errors import (
    CircuitOpenError, ConnectivityError, ResourceExhaustedError,
    TransientError, ValidationError,
)
from beadboard.process import (
    BdRunner, ProcessBoardAdapter, map_issues, sanitize_cli_arg,
    validate_issue_id, validate_label,
)
from beadboard.schema import BoardColumn

from conftest import FakeRunner, bd_issue, failing


def run(coro):
    return asyncio.run(coro)


def show_ids(args):
    return args[2:] if args[:2] == ["show", "--json"] else None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Argument hygiene
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestSanitizeArgs:

    def test_strips_control_chars_and_newlines(self):
        assert sanitize_cli_arg("a\x00b\nc \r\n  d\x7f") == "ab c d"

    def test_non_strings_stringified(self):
        assert sanitize_cli_arg(3) == "3"

    def test_issue_ids(self):
        assert validate_issue_id("bd-1") == "bd-1"
        assert validate_issue_id("proj.a1b2_c") == "proj.a1b2_c"
        for bad in ("-rf", "--all", "a b", "", "x;y", None, "bd-1\n"):
            with pytest.raises(ValidationError):
                validate_issue_id(bad)

    def test_labels(self):
        assert validate_label(" ops ") == "ops"
        for bad in ("-x", " --force", "", "   ", None):
            with pytest.raises(ValidationError):
                validate_label(bad)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# BdRunner against a stub executable
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def stub_bd(tmp_path, body):
    path = tmp_path / "bd-stub"
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


@pytest.mark.skipif(sys.platform == "win32", reason="needs /bin/sh")
class TestBdRunner:

    def test_parses_json(self, tmp_path):
        exe = stub_bd(tmp_path, """echo '[{"id": "bd-1"}]'""")
        assert run(BdRunner(tmp_path, exe).run(["list", "--json"])) == [{"id": "bd-1"}]

    def test_empty_and_non_json_output(self, tmp_path):
        assert run(BdRunner(tmp_path, stub_bd(tmp_path, "true")).run(["x"])) is None
        exe = stub_bd(tmp_path, "echo 'Updated issue bd-1'")
        assert run(BdRunner(tmp_path, exe).run(["update"])) is None

    def test_raw_text(self, tmp_path):
        exe = stub_bd(tmp_path, "echo 'line one'; echo 'line two'")
        assert run(BdRunner(tmp_path, exe).run(["logs"], parse_json=False)) == "line one\nline two"

    def test_runs_in_workspace_root(self, tmp_path):
        exe = stub_bd(tmp_path, "pwd")
        out = run(BdRunner(tmp_path, exe).run(["info"], parse_json=False))
        assert os.path.realpath(out) == os.path.realpath(tmp_path)

    def test_args_passed_verbatim_not_shell_expanded(self, tmp_path):
        exe = stub_bd(tmp_path, 'for a in "$@"; do echo "$a"; done')
        out = run(BdRunner(tmp_path, exe).run(["comments", "$(whoami)", "a;b"], parse_json=False))
        assert out.splitlines() == ["comments", "$(whoami)", "a;b"]

    def test_nonzero_exit(self, tmp_path):
        exe = stub_bd(tmp_path, "echo 'no such issue' >&2; exit 3")
        with pytest.raises(TransientError, match="exit code 3: no such issue"):
            run(BdRunner(tmp_path, exe).run(["show"]))

    def test_timeout_kills(self, tmp_path):
        exe = stub_bd(tmp_path, "exec sleep 5")
        with pytest.raises(ResourceExhaustedError, match="timed out"):
            run(BdRunner(tmp_path, exe, timeout=0.2).run(["list"]))

    def test_output_cap(self, tmp_path):
        exe = stub_bd(tmp_path, "head -c 5000 /dev/zero | tr '\\0' 'x'")
        with pytest.raises(ResourceExhaustedError, match="exceeded 1000 bytes"):
            run(BdRunner(tmp_path, exe, max_output=1000).run(["list"]))

    def test_missing_executable(self, tmp_path):
        with pytest.raises(ConnectivityError, match="bd executable not found"):
            run(BdRunner(tmp_path, str(tmp_path / "nope")).run(["info"]))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Batched detail fetch
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def batch_script(bad_ids=(), batch_fails=True):
    def script(args):
        ids = show_ids(args)
        if ids is None:
            return None
        if len(ids) > 1 and batch_fails:
            failing()
        if any(i in bad_ids for i in ids):
            failing("no issue found")
        return [bd_issue(i) for i in ids]
    return script


def make_adapter(script, clock=None, **kwargs):
    runner = FakeRunner(script)
    breaker = kwargs.pop("breaker", None) or CircuitBreaker()
    extra = {"clock": clock} if clock else {}
    return ProcessBoardAdapter("/ws", runner=runner, breaker=breaker, **extra, **kwargs), runner


class TestFetchDetails:

    def test_batches_of_fifty(self):
        adapter, runner = make_adapter(batch_script(batch_fails=False))
        ids = [f"bd-{i}" for i in range(120)]
        details = run(adapter.fetch_details(ids))
        assert len(details) == 120
        assert [len(c) - 2 for c in runner.calls] == [50, 50, 20]

    def test_partial_batch_failure_recovers_rest(self):
        """One bad id in a batch of 50: 49 come back, breaker stays closed."""
        adapter, runner = make_adapter(batch_script(bad_ids={"bd-13"}))
        ids = [f"bd-{i}" for i in range(50)]
        details = run(adapter.fetch_details(ids))

        assert len(details) == 49
        assert "bd-13" not in {d["id"] for d in details}
        assert len(runner.calls) == 1 + 50
        assert adapter.breaker.state == CircuitState.CLOSED
        assert adapter.breaker.consecutive_failures == 0

    def test_failed_batch_counts_once(self):
        ids = [f"bd-{i}" for i in range(50)]
        adapter, _ = make_adapter(batch_script(bad_ids=set(ids)))
        assert run(adapter.fetch_details(ids)) == []
        assert adapter.breaker.consecutive_failures == 1

    def test_open_breaker_fails_fast(self, clock):
        breaker = CircuitBreaker(threshold=1, clock=clock)
        breaker.record_failure()
        adapter, runner = make_adapter(batch_script(batch_fails=False), breaker=breaker)
        with pytest.raises(CircuitOpenError):
            run(adapter.fetch_details(["bd-1", "bd-2"]))
        assert runner.calls == []

    def test_invalid_ids_skipped(self):
        adapter, runner = make_adapter(batch_script(batch_fails=False))
        details = run(adapter.fetch_details(["bd-1", "-rf", "bd 2"]))
        assert [d["id"] for d in details] == ["bd-1"]
        assert runner.calls == [["show", "--json", "bd-1"]]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Mapping and reads
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


DETAILS = {
    "bd-1": bd_issue("bd-1", labels=["api"], comments=[{"id": 1, "author": "a", "text": "hi"}],
                     dependents=[{"id": "bd-2", "title": "Two", "dependency_type": "blocks"}]),
    "bd-2": bd_issue("bd-2", dependencies=[{"id": "bd-1", "title": "One", "dependency_type": "blocks"}]),
    "bd-3": bd_issue("bd-3", status="in_progress"),
    "bd-4": bd_issue("bd-4", status="closed"),
    "bd-5": bd_issue("bd-5", status="blocked"),
    "bd-6": bd_issue("bd-6", dependencies=[{"id": "bd-1", "dependency_type": "parent-child"}]),
}


def board_script(args):
    ids = show_ids(args)
    if ids is not None:
        return [DETAILS[i] for i in ids if i in DETAILS]
    if args[:1] == ["info"]:
        return {"daemon_connected": True, "daemon_status": "healthy"}
    if args[:2] == ["list", "--json"]:
        return [{"id": i, "status": d["status"]} for i, d in DETAILS.items()]
    if args[:1] == ["ready"]:
        return [{"id": "bd-1", "status": "open"}, {"id": "bd-6", "status": "open"}]
    if args[:1] == ["blocked"]:
        return [{"id": "bd-2", "status": "open", "blocked_by_count": 1},
                {"id": "bd-3", "status": "in_progress"}]
    if args[:2] == ["list", "--status=blocked"]:
        return [{"id": "bd-5", "status": "blocked"}, {"id": "bd-2", "status": "open"}]
    if args[:2] == ["list", "--status=in_progress"]:
        return [{"id": "bd-3", "status": "in_progress"}]
    if args[:2] == ["list", "--status=closed"]:
        return [{"id": "bd-4", "status": "closed"}]
    if args[:1] == ["create"]:
        return {"id": "bd-100"}
    return None


class TestMapping:

    def test_edges_folded_from_both_sides(self):
        cards = {c.id: c for c in map_issues([DETAILS["bd-1"], DETAILS["bd-2"]])}
        assert [d.id for d in cards["bd-1"].blocks] == ["bd-2"]
        assert [d.id for d in cards["bd-2"].blocked_by] == ["bd-1"]
        assert cards["bd-2"].blocked_by_count == 1

    def test_readiness_and_comment_count(self):
        cards = {c.id: c for c in map_issues(list(DETAILS.values()))}
        assert cards["bd-1"].is_ready is True
        assert cards["bd-2"].is_ready is False
        assert cards["bd-1"].comment_count == 1
        assert cards["bd-1"].comments == []
        assert cards["bd-6"].parent.id == "bd-1"

    def test_hints_override(self):
        card = map_issues([DETAILS["bd-3"]], {"bd-3": {"is_ready": True}})[0]
        assert card.column == BoardColumn.READY


class TestReads:

    def test_connect_requires_daemon(self):
        adapter, _ = make_adapter(lambda args: {"daemon_connected": False})
        with pytest.raises(ConnectivityError, match="not running"):
            run(adapter.connect())
        adapter, _ = make_adapter(board_script)
        run(adapter.connect())

    def test_connect_wraps_runner_failure(self):
        adapter, _ = make_adapter(lambda args: failing())
        with pytest.raises(ConnectivityError, match="Failed to connect"):
            run(adapter.connect())

    def test_board(self):
        adapter, runner = make_adapter(board_script)
        board = run(adapter.get_board())
        columns = {c.id: c.column for c in board.cards}
        assert columns == {
            "bd-1": BoardColumn.READY, "bd-2": BoardColumn.BLOCKED,
            "bd-3": BoardColumn.IN_PROGRESS, "bd-4": BoardColumn.CLOSED,
            "bd-5": BoardColumn.BLOCKED, "bd-6": BoardColumn.READY,
        }
        assert runner.calls[0] == ["list", "--json", "--all", "--limit", "1001"]

    def test_board_cached_briefly(self, clock):
        adapter, runner = make_adapter(board_script, clock=clock)
        run(adapter.get_board())
        run(adapter.get_board())
        assert runner.commands().count("list --json") == 1
        clock.advance(1.5)
        run(adapter.get_board())
        assert runner.commands().count("list --json") == 2

    def test_ready_column(self):
        adapter, runner = make_adapter(board_script)
        cards = run(adapter.get_column_data("ready", 0, 10))
        assert [c.id for c in cards] == ["bd-1", "bd-6"]
        assert runner.calls[0] == ["ready", "--json", "--limit", "10"]

    def test_blocked_column_dedupes_and_narrows(self):
        adapter, _ = make_adapter(board_script)
        assert run(adapter.get_column_count("blocked")) == 2
        cards = run(adapter.get_column_data(BoardColumn.BLOCKED, 0, 10))
        assert sorted(c.id for c in cards) == ["bd-2", "bd-5"]

    def test_offset_slices(self):
        adapter, _ = make_adapter(board_script)
        cards = run(adapter.get_column_data("ready", 1, 1))
        assert [c.id for c in cards] == ["bd-6"]

    def test_get_issue_with_comments(self):
        adapter, _ = make_adapter(board_script)
        card = run(adapter.get_issue("bd-1"))
        assert [c.text for c in card.comments] == ["hi"]
        assert card.labels == ["api"]

    def test_get_issue_missing(self):
        adapter, _ = make_adapter(board_script)
        with pytest.raises(ValidationError, match="Issue not found"):
            run(adapter.get_issue("bd-404"))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Writes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestWrites:

    def test_create_with_status(self):
        adapter, runner = make_adapter(board_script)
        new_id = run(adapter.create_issue({
            "title": "New", "priority": 1, "description": "", "status": "in_progress",
        }))
        assert new_id == "bd-100"
        assert runner.calls[0] == ["create", "--title=New", "--priority=1", "--json"]
        assert runner.calls[1] == ["update", "bd-100", "--status=in_progress"]

    def test_create_requires_title(self):
        adapter, runner = make_adapter(board_script)
        with pytest.raises(ValidationError):
            run(adapter.create_issue({"title": " "}))
        assert runner.calls == []

    def test_comment_text_after_separator(self):
        adapter, runner = make_adapter(board_script)
        run(adapter.add_comment("bd-1", "--force everything", "me"))
        assert runner.calls[0] == ["comments", "add", "--author=me", "--", "bd-1", "--force everything"]

    def test_label_flag_injection_rejected(self):
        adapter, runner = make_adapter(board_script)
        with pytest.raises(ValidationError):
            run(adapter.add_label("bd-1", "--delete"))
        assert runner.calls == []

    def test_update_clears_and_skips(self):
        adapter, runner = make_adapter(board_script)
        run(adapter.update_issue("bd-1", {
            "assignee": None, "estimated_minutes": None, "external_ref": None, "title": "T",
        }))
        assert runner.calls[0] == ["update", "bd-1", "--title=T", "--assignee=", "--estimate=0"]

    def test_empty_update_is_noop(self):
        adapter, runner = make_adapter(board_script)
        run(adapter.update_issue("bd-1", {"due_at": None}))
        assert runner.calls == []

    def test_dependency_and_delete(self):
        adapter, runner = make_adapter(board_script)
        run(adapter.add_dependency("bd-1", "bd-2", "parent-child"))
        run(adapter.remove_dependency("bd-1", "bd-2"))
        run(adapter.delete_issue("bd-2"))
        assert runner.calls == [
            ["dep", "add", "bd-1", "bd-2", "--type=parent-child"],
            ["dep", "remove", "bd-1", "bd-2"],
            ["delete", "bd-2", "--force"],
        ]

    def test_bad_dependency_type(self):
        adapter, _ = make_adapter(board_script)
        with pytest.raises(ValidationError):
            run(adapter.add_dependency("bd-1", "bd-2", "relates"))

    def test_self_change_window(self, clock):
        adapter, _ = make_adapter(board_script, clock=clock)
        assert adapter.is_recent_self_change() is False
        run(adapter.set_issue_status("bd-1", "closed"))
        assert adapter.is_recent_self_change() is True
        clock.advance(3.1)
        assert adapter.is_recent_self_change() is False

    def test_mutation_invalidates_board_cache(self, clock):
        adapter, runner = make_adapter(board_script, clock=clock)
        run(adapter.get_board())
        run(adapter.add_label("bd-1", "ops"))
        run(adapter.get_board())
        assert runner.commands().count("list --json") == 2
