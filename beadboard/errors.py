"""
Error taxonomy and boundary sanitization.

Every failure raised by an adapter is one of five categories:

    ValidationError         malformed request or identifier, never retried
    ConnectivityError       no database found, daemon unreachable, bd missing
    TransientError          lock contention, batch failure (retried with backoff)
    ResourceExhaustedError  timeout, output cap, too many issues
    CatastrophicError       corrupted backing store

Text that crosses into the UI process always goes through sanitize_error()
first so file-system paths and stack traces never leak out.
"""
import re


class BoardError(Exception):
    """Base class for all beadboard failures."""
    category = "error"


class ConfigError(BoardError):
    """Raised when configuration is invalid or incomplete."""
    category = "config"


class ValidationError(BoardError):
    """Raised when a request payload or identifier fails validation."""
    category = "validation"


class ConnectivityError(BoardError):
    category = "connectivity"


class TransientError(BoardError):
    category = "transient"


class CircuitOpenError(TransientError):
    """Raised without touching the downstream call while the breaker is open."""

    def __init__(self, retry_in: float = 0.0):
        self.retry_in = retry_in
        super().__init__(
            f"bd is temporarily unavailable, retry scheduled in {retry_in:.0f}s"
        )


class ResourceExhaustedError(BoardError):
    category = "resource_exhausted"


class CatastrophicError(BoardError):
    category = "catastrophic"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Sanitization
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

GENERIC_MESSAGE = "An unexpected error occurred."

_UNIX_ROOTS = (
    "usr|home|opt|var|tmp|etc|lib|bin|sbin|mnt|srv|root|proc|sys|dev"
    "|Applications|Users|Library|private"
)

_PATH_PATTERNS = [
    # C:\... or C:/...
    (re.compile(r"[A-Za-z]:[\\/][^\s'\"]*"), "[PATH]"),
    # \\server\share
    (re.compile(r"\\\\[^\s'\"]+"), "[PATH]"),
    (re.compile(rf"/(?:{_UNIX_ROOTS})(?:/[^\s'\"]*)?"), "[PATH]"),
    # Anything else that still looks like a path to a known file type
    (re.compile(
        r"(?:\.{1,2})?(?:/|\\)[^\s'\"]*\.(?:py|pyc|ts|js|db|sqlite|sqlite3|json|yaml|yml|log|txt|tmp)\b"
    ), "[FILE]"),
]

_TRACE_PATTERNS = [
    re.compile(r"Traceback \(most recent call last\):"),
    re.compile(r"\s+File \"[^\"]*\", line \d+.*"),
    re.compile(r"\s+at\s+.*"),
]


def sanitize_error(error) -> str:
    """Strip paths and stack traces from an error before it leaves the host."""
    msg = str(error) if not isinstance(error, str) else error

    for pattern, placeholder in _PATH_PATTERNS:
        msg = pattern.sub(placeholder, msg)
    for pattern in _TRACE_PATTERNS:
        msg = pattern.sub("", msg)

    msg = re.sub(r"\s+", " ", msg).strip()
    return msg or GENERIC_MESSAGE


# (needles, friendly message); first match wins
_FRIENDLY = [
    (("ENOENT", "No such file or directory"),
     "Database file not found. Refresh the board or check that the .beads "
     "directory exists in your workspace."),
    (("EACCES", "EPERM", "Permission denied"),
     "Permission denied accessing the database file. Check file permissions "
     "in the .beads directory."),
    (("SQLITE_BUSY", "database is locked"),
     "Database is locked by another process. Close other applications "
     "accessing the database and try again."),
    (("SQLITE_CORRUPT", "malformed", "file is not a database"),
     "Database file is corrupted. Restore from backup or reinitialize with "
     "\"bd init\"."),
    (("SQLITE_CANTOPEN", "unable to open database"),
     "Cannot open database file. Ensure the .beads directory exists and has "
     "proper permissions."),
    (("not connected",),
     "Database connection lost. Refresh the board to reconnect."),
    (("timed out", "timeout", "ETIMEDOUT"),
     "Operation timed out. Check the daemon status or try again."),
    (("ECONNREFUSED", "connection refused"),
     "Connection refused. Ensure the bd daemon is running."),
    (("daemon is not running", "daemon not running"),
     "Beads daemon is not running. Start it with \"bd daemon --start\"."),
    (("bd: command not found", "bd command not found", "bd executable not found"),
     "Beads CLI (bd) not found in PATH. Install beads or add it to your PATH."),
]


def sanitize_error_with_context(error, context: str = "") -> str:
    """
    Sanitize an error and map well-known failure signatures to actionable text.

    Validation messages are already user-facing and pass through untouched.
    """
    sanitized = sanitize_error(error)
    lowered = sanitized.lower()

    if isinstance(error, ValidationError) or any(
        needle in lowered for needle in ("invalid", "validation", "required")
    ):
        return sanitized

    for needles, friendly in _FRIENDLY:
        if any(n.lower() in lowered for n in needles):
            return friendly

    if "json" in lowered or "parse" in lowered:
        return (
            "Invalid data format received. This may indicate a bd version "
            "mismatch. Try refreshing the board."
        )

    if sanitized == GENERIC_MESSAGE:
        return sanitized
    if context:
        return f"Failed to {context}: {sanitized}"
    return sanitized
