"""
bd daemon lifecycle: status, health, start/stop/restart and logs.

Status and health never raise for an unreachable daemon; they report it.
Lifecycle commands propagate failures to the caller.
"""
import logging
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from .errors import BoardError
from .process import BdRunner

logger = logging.getLogger(__name__)


@dataclass
class DaemonStatus:
    running: bool
    healthy: bool
    pid: Optional[int] = None
    version: Optional[str] = None
    workspace: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DaemonHealth:
    healthy: bool
    issues: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DaemonManager:
    """Thin wrapper over `bd info` / `bd daemons ...` for one workspace."""

    def __init__(self, runner: BdRunner):
        self.runner = runner

    async def status(self) -> DaemonStatus:
        try:
            info = await self.runner.run(["info", "--json"])
        except BoardError as e:
            logger.warning(f"Daemon status check failed: {e}")
            return DaemonStatus(running=False, healthy=False, error=str(e))
        if not isinstance(info, dict):
            return DaemonStatus(running=False, healthy=False)

        running = bool(info.get("daemon_connected"))
        return DaemonStatus(
            running=running,
            healthy=running and info.get("daemon_status") == "healthy",
            pid=info.get("daemon_pid"),
            version=info.get("daemon_version"),
            workspace=self.runner.workspace_root,
        )

    async def list_all(self) -> List[Dict[str, Any]]:
        result = await self.runner.run(["daemons", "list", "--json"])
        if isinstance(result, list):
            return result
        if isinstance(result, dict) and isinstance(result.get("daemons"), list):
            return result["daemons"]
        return []

    async def check_health(self) -> DaemonHealth:
        try:
            result = await self.runner.run(["daemons", "health", "--json"])
        except BoardError as e:
            return DaemonHealth(healthy=False, issues=[str(e)])
        if not isinstance(result, dict):
            return DaemonHealth(healthy=True)

        issues = []
        if result.get("dead_processes"):
            issues.append(f"{len(result['dead_processes'])} dead process(es) with remaining sockets")
        if result.get("version_mismatches"):
            issues.append(f"{len(result['version_mismatches'])} version mismatch(es)")
        if result.get("unresponsive"):
            issues.append(f"{len(result['unresponsive'])} unresponsive daemon(s)")
        return DaemonHealth(healthy=not issues, issues=issues)

    async def start(self) -> None:
        logger.info("Starting bd daemon")
        await self.runner.run(["daemon", "--start"])

    async def restart(self) -> None:
        logger.info("Restarting bd daemon")
        await self.runner.run(["daemons", "restart", "."])

    async def stop(self) -> None:
        logger.info("Stopping bd daemon")
        await self.runner.run(["daemons", "stop", "."])

    async def logs(self, lines: int = 50) -> str:
        lines = max(1, min(1000, int(lines)))
        return await self.runner.run(["daemons", "logs", ".", "-n", str(lines)], parse_json=False)
