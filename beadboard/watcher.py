"""
Filesystem watching for the host's watch_file() capability.

Beadboard: watchdog observer, glob matching, thread → asyncio handoff.

watchdog delivers events on its own thread; callbacks are forwarded onto the
asyncio loop with call_soon_threadsafe so consumers never see a foreign thread.
"""
import asyncio
import logging
import re
from pathlib import Path
from typing import Callable, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


# ── Glob matching ──────────────────────────────────────────────────────────

def expand_braces(pattern: str) -> List[str]:
    """'*.{db,sqlite}' → ['*.db', '*.sqlite']. Nested groups expand left to right."""
    match = re.search(r"\{([^{}]*)\}", pattern)
    if not match:
        return [pattern]
    head, tail = pattern[:match.start()], pattern[match.end():]
    expanded = []
    for option in match.group(1).split(","):
        expanded.extend(expand_braces(head + option + tail))
    return expanded


def glob_to_regex(pattern: str) -> "re.Pattern":
    """
    Translate one brace-free glob to a regex over '/'-separated paths.

    `**/` matches zero or more directories, `*` and `?` never cross '/'.
    """
    out, i = [], 0
    while i < len(pattern):
        if pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return re.compile("".join(out) + r"\Z")


class GlobMatcher:
    def __init__(self, pattern: str):
        self.pattern = pattern
        self._regexes = [glob_to_regex(p) for p in expand_braces(pattern)]

    def matches(self, relative_path: str) -> bool:
        path = relative_path.replace("\\", "/")
        if path.startswith("./"):
            path = path[2:]
        return any(r.match(path) for r in self._regexes)

    def static_prefix(self) -> str:
        """Leading directory segments that contain no wildcard."""
        parts = []
        for segment in self.pattern.split("/")[:-1]:
            if any(ch in segment for ch in "*?{["):
                break
            parts.append(segment)
        return "/".join(parts)


# ── watchdog handler ───────────────────────────────────────────────────────

class _MatchingHandler(FileSystemEventHandler):
    """Filters raw events by glob and hands matches to the loop."""

    def __init__(self, root: Path, matcher: GlobMatcher, on_change: Callable[[str], None],
                 loop: asyncio.AbstractEventLoop):
        self.root = root
        self.matcher = matcher
        self.on_change = on_change
        self.loop = loop

    def on_any_event(self, fs_event):
        if fs_event.is_directory:
            return
        # atomic replace shows up as a move whose destination is the watched file
        for raw in (fs_event.src_path, getattr(fs_event, "dest_path", "")):
            if raw and self._matches(raw):
                self._dispatch(str(raw))
                return

    def _matches(self, raw) -> bool:
        try:
            relative = Path(raw).resolve().relative_to(self.root)
        except ValueError:
            return False
        return self.matcher.matches(relative.as_posix())

    def _dispatch(self, path: str) -> None:
        if self.loop.is_closed():
            return
        try:
            self.loop.call_soon_threadsafe(self.on_change, path)
        except RuntimeError:
            logger.debug(f"Loop closed, dropping change event for {path}")


# ── Watch handle / watcher ─────────────────────────────────────────────────

class WatchHandle:
    """Returned by watch_file(); dispose() stops delivery. Idempotent."""

    def __init__(self, observer, watch, pattern: str):
        self._observer = observer
        self._watch = watch
        self.pattern = pattern
        self.disposed = False

    def dispose(self) -> None:
        if self.disposed:
            return
        self.disposed = True
        try:
            self._observer.unschedule(self._watch)
        except KeyError:
            pass
        logger.debug(f"Stopped watching {self.pattern}")


class FileWatcher:
    """One watchdog Observer per workspace, shared by every panel."""

    def __init__(self, root: str = ".", loop: Optional[asyncio.AbstractEventLoop] = None):
        self.root = Path(root).resolve()
        self.loop = loop
        self._observer = Observer()
        self._started = False

    def watch_file(self, pattern: str, on_change: Callable[[str], None]) -> WatchHandle:
        loop = self.loop or asyncio.get_running_loop()
        matcher = GlobMatcher(pattern)

        watch_dir = self.root / matcher.static_prefix()
        if not watch_dir.is_dir():
            watch_dir = self.root

        handler = _MatchingHandler(self.root, matcher, on_change, loop)
        watch = self._observer.schedule(handler, str(watch_dir), recursive=True)
        if not self._started:
            self._observer.start()
            self._started = True
        logger.info(f"Watching {watch_dir} for {pattern}")
        return WatchHandle(self._observer, watch, pattern)

    def stop(self) -> None:
        if self._started:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._started = False
