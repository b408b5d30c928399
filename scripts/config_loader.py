"""Load and validate account YAML configs and environment settings."""

from __future__ import annotations

import logging
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from archive_errors import ConfigError

logger = logging.getLogger(__name__)

VALID_TYPES = {"IMAP"}
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass(frozen=True)
class ImapAccount:
    """Connection settings for one IMAP account."""

    name: str
    host: str
    user: str
    password: str = field(repr=False)
    port: int = 993
    ssl: bool = True
    starttls: bool = False
    ignore_mailboxes: frozenset[str] = frozenset()
    timeout: float | None = 60.0
    interval_seconds: int = 300


@dataclass(frozen=True)
class Settings:
    """Process-wide paths and knobs, taken from the environment."""

    config_dir: Path
    db_path: Path
    obj_dir: Path
    pool_size: int = 5
    max_workers: int | None = None

    @classmethod
    def from_env(cls, project_root: Path | None = None) -> Settings:
        """Build settings from CONFIG_DIR, ARCHIVE_DB, OBJ_DIR, DB_POOL_SIZE, SYNC_WORKERS."""
        root = project_root or Path.cwd()
        workers = os.getenv("SYNC_WORKERS")
        return cls(
            config_dir=Path(os.getenv("CONFIG_DIR", str(root / "config"))),
            db_path=Path(os.getenv("ARCHIVE_DB", str(root / "data" / "archive.db"))),
            obj_dir=Path(os.getenv("OBJ_DIR", str(root / "dump"))),
            pool_size=_positive_int(os.getenv("DB_POOL_SIZE", "5"), "DB_POOL_SIZE"),
            max_workers=_positive_int(workers, "SYNC_WORKERS") if workers else None,
        )


def _positive_int(value: Any, what: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{what}: expected an integer, got {value!r}") from None
    if number < 1:
        raise ConfigError(f"{what}: must be >= 1, got {number}")
    return number


def _flag(value: Any, what: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"'{what}' must be true or false, got {value!r}")
    return value


def configure_logging(level: str | None = None) -> None:
    """Configure root logging on stdout; level from argument or LOG_LEVEL."""
    log_level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def parse_interval(interval_str: str) -> int:
    """
    Parse human-readable interval string to seconds.

    Supports: 30s, 5m, 1h, 1d or combinations like '1h30m'.
    """
    total = 0
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    for match in re.finditer(r"(\d+)\s*([smhd])", interval_str.lower()):
        value = int(match.group(1))
        unit = match.group(2)
        total += value * units[unit]
    return total if total > 0 else 300  # Default: 5 minutes


def account_from_dict(name: str, cfg: dict[str, Any]) -> ImapAccount:
    """Validate a raw config mapping and turn it into an ImapAccount."""
    account_type = str(cfg.get("type", "IMAP")).upper()
    if account_type not in VALID_TYPES:
        raise ConfigError(
            f"unknown type '{account_type}' (expected one of {sorted(VALID_TYPES)})"
        )

    for key in ("host", "email", "password"):
        if not cfg.get(key):
            raise ConfigError(f"missing '{key}' field")

    ignored = cfg.get("ignore_mailboxes") or []
    if isinstance(ignored, str):
        ignored = [ignored]
    if not isinstance(ignored, list):
        raise ConfigError("'ignore_mailboxes' must be a list of mailbox names")

    timeout = cfg.get("timeout", 60)
    if timeout is not None:
        try:
            timeout = float(timeout)
        except (TypeError, ValueError):
            raise ConfigError(f"'timeout' must be a number, got {timeout!r}") from None
        if timeout <= 0:
            timeout = None

    sync_cfg = cfg.get("sync") or {}
    if not isinstance(sync_cfg, dict):
        raise ConfigError("'sync' must be a mapping")
    interval_str = str(sync_cfg.get("interval", "5m"))

    return ImapAccount(
        name=name,
        host=str(cfg["host"]),
        user=str(cfg["email"]),
        password=str(cfg["password"]),
        port=_positive_int(cfg.get("port", 993), "port"),
        ssl=_flag(cfg.get("ssl", True), "ssl"),
        starttls=_flag(cfg.get("starttls", False), "starttls"),
        ignore_mailboxes=frozenset(str(m) for m in ignored),
        timeout=timeout,
        interval_seconds=parse_interval(interval_str),
    )


def load_account_config(filepath: Path) -> ImapAccount | None:
    """Load and validate a single account YAML config."""
    try:
        with open(filepath) as f:
            cfg = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        logger.exception("Failed to parse config %s", filepath)
        return None

    if not isinstance(cfg, dict):
        logger.error("Config %s is not a valid YAML mapping", filepath)
        return None

    # Account name is the filename
    try:
        return account_from_dict(filepath.stem, cfg)
    except ConfigError as exc:
        logger.error("Config %s: %s", filepath, exc)
        return None


def load_all_configs(config_dir: Path) -> list[ImapAccount]:
    """Load all *.yml configs from the config directory."""
    accounts: list[ImapAccount] = []

    if not config_dir.is_dir():
        logger.error("Config directory %s does not exist", config_dir)
        return accounts

    for filepath in sorted(config_dir.glob("*.yml")):
        if filepath.name == "example.yml":
            continue
        account = load_account_config(filepath)
        if account is not None:
            accounts.append(account)
            logger.info("Loaded config for '%s' (%s)", account.name, account.host)

    return accounts
