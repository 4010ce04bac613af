"""Tests for glob matching and the watchdog-backed FileWatcher."""

import asyncio

import pytest

from beadboard.bridge import DB_WATCH_PATTERN
from beadboard.watcher import FileWatcher, GlobMatcher, expand_braces


class TestGlob:

    def test_expand_braces(self):
        assert expand_braces("*.{db,sqlite}") == ["*.db", "*.sqlite"]
        assert expand_braces("{a,b}/{c,d}") == ["a/c", "a/d", "b/c", "b/d"]
        assert expand_braces("plain.db") == ["plain.db"]

    @pytest.mark.parametrize("path, expected", [
        (".beads/beads.db", True),
        ("./.beads/beads.db", True),
        (".beads/nested/dir/board.sqlite3", True),
        (".beads/beads.sqlite", True),
        (".beads/beads.db.tmp", False),
        (".beads/beads.db-journal", False),
        ("other/.beads/beads.db", False),
        ("beads.db", False),
    ])
    def test_db_pattern(self, path, expected):
        assert GlobMatcher(DB_WATCH_PATTERN).matches(path) is expected

    def test_single_star_stays_in_segment(self):
        matcher = GlobMatcher("src/*.py")
        assert matcher.matches("src/a.py")
        assert not matcher.matches("src/pkg/a.py")

    def test_question_mark(self):
        assert GlobMatcher("log?.txt").matches("log1.txt")
        assert not GlobMatcher("log?.txt").matches("log10.txt")

    def test_windows_separators(self):
        assert GlobMatcher(DB_WATCH_PATTERN).matches(".beads\\beads.db")

    def test_static_prefix(self):
        assert GlobMatcher(DB_WATCH_PATTERN).static_prefix() == ".beads"
        assert GlobMatcher("a/b/*.db").static_prefix() == "a/b"
        assert GlobMatcher("*.db").static_prefix() == ""


class TestFileWatcher:

    def test_delivers_matching_change_on_loop(self, workspace, db_path):
        async def main():
            changes = asyncio.Queue()
            watcher = FileWatcher(str(workspace))
            handle = watcher.watch_file(DB_WATCH_PATTERN, changes.put_nowait)
            try:
                await asyncio.sleep(0.2)
                (workspace / ".beads" / "notes.txt").write_text("ignored")
                db_path.write_bytes(db_path.read_bytes())
                return await asyncio.wait_for(changes.get(), timeout=5)
            finally:
                handle.dispose()
                handle.dispose()
                watcher.stop()

        path = asyncio.run(main())
        assert path.endswith("beads.db")

    def test_stop_without_watches(self, tmp_path):
        FileWatcher(str(tmp_path)).stop()
