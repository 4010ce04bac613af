# Beadboard: configuration
# Override values via board.yaml, BEADBOARD_* env vars or CLI args.

import os
import yaml
from pathlib import Path
from dataclasses import dataclass, fields
from typing import Optional

from .errors import ConfigError

CONFIG_PATH = Path("board.yaml")
ENV_PREFIX = "BEADBOARD_"
ADAPTERS = ("sqlite", "daemon")


@dataclass
class BoardConfig:
    """Runtime configuration for one board server."""

    # Workspace & backend
    workspace_root: str = "."
    adapter: str = "sqlite"          # "sqlite" | "daemon"
    read_only: bool = False

    # Pagination
    page_size: int = 50
    initial_load_limit: int = 100
    preload_closed_column: bool = False
    max_issues: int = 1000

    # bd CLI
    bd_executable: str = "bd"
    bd_timeout: float = 30.0

    # Client
    request_timeout: float = 30.0

    # HTTP host
    host: str = "127.0.0.1"
    port: int = 5151
    api_key_env: str = "BEADBOARD_API_KEY"
    api_key: str = ""

    def validate(self) -> "BoardConfig":
        if self.adapter not in ADAPTERS:
            raise ConfigError(f"adapter must be one of {', '.join(ADAPTERS)}, got: {self.adapter}")
        for name in ("page_size", "initial_load_limit", "max_issues"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigError(f"{name} must be a positive integer, got: {value!r}")
        if self.page_size > 1000:
            raise ConfigError(f"page_size must be <= 1000, got: {self.page_size}")
        for name in ("bd_timeout", "request_timeout"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                raise ConfigError(f"{name} must be a positive number, got: {value!r}")
        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise ConfigError(f"port must be 1-65535, got: {self.port!r}")
        return self

    def apply_env(self, environ=None) -> "BoardConfig":
        """BEADBOARD_<FIELD> overrides, coerced to the field's declared type."""
        environ = os.environ if environ is None else environ
        for f in fields(self):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or f.name == "api_key":
                continue
            setattr(self, f.name, _coerce(f.name, raw, type(getattr(self, f.name))))
        if not self.api_key and self.api_key_env:
            self.api_key = environ.get(self.api_key_env, "")
        return self

    @classmethod
    def load(cls, path: Optional[str] = None, environ=None) -> "BoardConfig":
        """Load config from a YAML file, falling back to defaults when it is absent."""
        cfg_path = Path(path) if path else CONFIG_PATH
        data = {}
        if cfg_path.exists():
            try:
                with open(cfg_path, "r") as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {cfg_path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"{cfg_path} must contain a mapping")
        elif path:
            raise ConfigError(f"Config file not found: {cfg_path}")

        cfg = cls(**{k: v for k, v in data.items() if k in _FIELD_NAMES})
        return cfg.apply_env(environ).validate()


_FIELD_NAMES = {f.name for f in fields(BoardConfig)}


def _coerce(name: str, raw: str, kind: type):
    if kind is bool:
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off", ""):
            return False
        raise ConfigError(f"{ENV_PREFIX}{name.upper()} must be a boolean, got: {raw}")
    if kind in (int, float):
        try:
            return kind(raw)
        except ValueError:
            raise ConfigError(f"{ENV_PREFIX}{name.upper()} must be a number, got: {raw}")
    return raw
