"""Configuration loader for the chat hub."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List
import os
import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "default.yaml"
USER_CONFIG_PATH = Path.home() / ".config" / "chathub" / "config.yaml"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _int_env(name: str) -> int | None:
    value = os.getenv(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def load_config(path: Path | None = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    base_path = path or DEFAULT_CONFIG_PATH
    if base_path.exists():
        data = yaml.safe_load(base_path.read_text(encoding="utf-8")) or {}
    if USER_CONFIG_PATH.exists():
        override = yaml.safe_load(USER_CONFIG_PATH.read_text(encoding="utf-8")) or {}
        data = _deep_merge(data, override)

    # Environment overrides - Server
    host = os.getenv("CHATHUB_HOST")
    if host:
        data.setdefault("server", {})["host"] = host
    port = _int_env("CHATHUB_PORT")
    if port is not None:
        data.setdefault("server", {})["port"] = port

    # Environment overrides - Storage
    data_dir = os.getenv("CHATHUB_DATA_DIR")
    if data_dir:
        data["data_dir"] = data_dir
    issues_file = os.getenv("CHATHUB_ISSUES_FILE")
    if issues_file:
        data["issues_file"] = issues_file

    # Environment overrides - Invocation
    cli_timeout = _int_env("CHATHUB_CLI_TIMEOUT")
    if cli_timeout is not None:
        data.setdefault("gateway", {})["timeout_seconds"] = cli_timeout
    concurrency = _int_env("CHATHUB_CONCURRENCY")
    if concurrency is not None:
        data.setdefault("opinions", {})["concurrency"] = concurrency

    log_level = os.getenv("CHATHUB_LOG_LEVEL")
    if log_level:
        data.setdefault("logging", {})["level"] = log_level.upper()

    return data


@dataclass
class Config:
    raw: Dict[str, Any]

    @property
    def server(self) -> Dict[str, Any]:
        return self.raw.get("server", {})

    @property
    def send_timeout_seconds(self) -> float:
        return float(self.server.get("send_timeout_seconds", 5))

    @property
    def data_dir(self) -> Path:
        default = str(Path.home() / ".chathub")
        return Path(self.raw.get("data_dir", default)).expanduser()

    @property
    def issues_file(self) -> Path:
        path = self.raw.get("issues_file")
        if path:
            return Path(path).expanduser()
        return self.data_dir / "issues.json"

    @property
    def locale(self) -> str:
        return str(self.raw.get("locale", "pt-BR"))

    @property
    def log_level(self) -> str:
        return str((self.raw.get("logging") or {}).get("level", "INFO")).upper()

    @property
    def models(self) -> Dict[str, Any]:
        return self.raw.get("models", {})

    @property
    def mediator(self) -> str:
        return str(self.models.get("mediator", "auto"))

    @property
    def opinions(self) -> Dict[str, Any]:
        return self.raw.get("opinions", {})

    @property
    def concurrency(self) -> int:
        """Simultaneous model invocations per opinion session."""
        return max(1, int(self.opinions.get("concurrency", 3)))

    @property
    def retention_seconds(self) -> float:
        """How long a finished session stays queryable. Default 10 minutes."""
        return float(self.opinions.get("retention_seconds", 600))

    @property
    def default_issue_id(self) -> int:
        return int(self.opinions.get("default_issue_id", 1))

    @property
    def invoke_timeout_seconds(self) -> float:
        return float(self.opinions.get("invoke_timeout_seconds", 120))

    @property
    def context_chars(self) -> int:
        return int(self.opinions.get("context_chars", 18000))

    @property
    def context_dirs(self) -> List[Path]:
        return [Path(p).expanduser() for p in self.opinions.get("context_dirs", []) or []]

    @property
    def gateway(self) -> Dict[str, Any]:
        return self.raw.get("gateway", {})

    @property
    def availability(self) -> Dict[str, Any]:
        return self.raw.get("availability", {})

    @property
    def cost_ledger_path(self) -> Path:
        return self.data_dir / "costs.json"

    @property
    def availability_cache_path(self) -> Path:
        return self.data_dir / "api-test-cache.json"


def get_config() -> Config:
    return Config(load_config())
