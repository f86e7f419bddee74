"""Three-layer config loading and merging."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass
class DatabaseConfig:
    path: str = ".ccrvote/state.db"
    busy_timeout_sec: float = 5.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


@dataclass
class JudgmentConfig:
    minutes_placeholder: str = "[DETALHAR]"
    admins: list[str] = field(default_factory=list)


@dataclass
class CatalogConfig:
    path: str = ""  # empty → built-in decisions


@dataclass
class NotifyConfig:
    webhook_url: str = ""
    events: list[str] = field(default_factory=lambda: [
        "voting.concluded", "resource.status_changed",
        "session.completed", "session.reverted",
    ])


@dataclass
class Config:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    judgment: JudgmentConfig = field(default_factory=JudgmentConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    project_root: str = ""

    def db_path(self) -> str:
        """Database path resolved against the project root."""
        path = self.database.path
        if path == ":memory:" or Path(path).is_absolute():
            return path
        return str(Path(self.project_root) / path)

    def is_admin(self, user: str) -> bool:
        return user in self.judgment.admins


# ---------------------------------------------------------------------------
# Deep merge
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Field-level deep merge. Lists are replaced, None values ignored."""
    result = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        if (
            key in result
            and isinstance(result[key], dict)
            and isinstance(value, dict)
        ):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# ---------------------------------------------------------------------------
# Dict → Config mapping
# ---------------------------------------------------------------------------

def _section(data: dict, name: str) -> dict:
    value = data.get(name)
    return value if isinstance(value, dict) else {}


def _dict_to_config(data: dict, project_root: str) -> Config:
    cfg = Config(project_root=project_root)

    d = _section(data, "database")
    cfg.database = DatabaseConfig(
        path=d.get("path", cfg.database.path),
        busy_timeout_sec=float(d.get("busy_timeout_sec", cfg.database.busy_timeout_sec)),
    )

    lg = _section(data, "logging")
    cfg.logging = LoggingConfig(
        level=str(lg.get("level", cfg.logging.level)).upper(),
        format=lg.get("format", cfg.logging.format),
    )

    j = _section(data, "judgment")
    cfg.judgment = JudgmentConfig(
        minutes_placeholder=j.get("minutes_placeholder", cfg.judgment.minutes_placeholder),
        admins=list(j.get("admins", [])),
    )

    c = _section(data, "catalog")
    cfg.catalog = CatalogConfig(path=c.get("path", ""))

    n = _section(data, "notify")
    cfg.notify = NotifyConfig(
        webhook_url=n.get("webhook_url", ""),
        events=n.get("events", cfg.notify.events),
    )
    return cfg


# ---------------------------------------------------------------------------
# Load config (3-layer)
# ---------------------------------------------------------------------------

def _read_yaml(path: Path, strict: bool) -> dict:
    if not path.exists():
        return {}
    parsed = yaml.safe_load(path.read_text())
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        if strict:
            raise ValueError(f"Invalid {path.name}: expected mapping, got {type(parsed).__name__}")
        return {}
    return parsed


def load_config(project_root: str | Path) -> Config:
    """Load and merge config from up to 3 layers.

    Priority (highest first):
      1. Environment variables (CCRVOTE_*)
      2. .ccrvote/local.config.yaml
      3. .ccrvote/config.yaml
    """
    project_root = Path(project_root)
    cfg_dir = project_root / ".ccrvote"

    base_data = _read_yaml(cfg_dir / "config.yaml", strict=True)
    local_data = _read_yaml(cfg_dir / "local.config.yaml", strict=False)

    merged = deep_merge(base_data, local_data)
    cfg = _dict_to_config(merged, str(project_root))

    env_db = os.environ.get("CCRVOTE_DB_PATH")
    if env_db:
        cfg.database.path = env_db

    env_level = os.environ.get("CCRVOTE_LOG_LEVEL")
    if env_level:
        cfg.logging.level = env_level.upper()

    env_format = os.environ.get("CCRVOTE_LOG_FORMAT")
    if env_format:
        cfg.logging.format = env_format

    env_webhook = os.environ.get("CCRVOTE_WEBHOOK_URL")
    if env_webhook:
        cfg.notify.webhook_url = env_webhook

    return cfg
