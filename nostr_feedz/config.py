"""Configuration loading for nostr_feedz."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
from xml.etree import ElementTree as ET

from .relays import DEFAULT_RELAYS
from .retry import RetryOptions

logger = logging.getLogger(__name__)


@dataclass
class DatabaseConfig:
    connection_string: str = "sqlite:///nostr-feedz.db"


@dataclass
class RefreshConfig:
    cooldown_minutes: float = 5.0
    concurrency: int = 5


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000

    def to_options(self) -> RetryOptions:
        return RetryOptions(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay_ms / 1000.0,
            max_delay=self.max_delay_ms / 1000.0,
        )


@dataclass
class RelayConfig:
    urls: List[str] = field(default_factory=lambda: list(DEFAULT_RELAYS))
    timeout: float = 5.0


@dataclass
class ClientConfig:
    web_app_url: str = "https://nostrfeedz.com"
    poll_interval_minutes: int = 5
    notifications_enabled: bool = True
    notify_on_new_items: bool = True
    max_notifications_per_refresh: int = 3
    state_file: Optional[str] = None
    cache_connection_string: str = "sqlite://"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class AppConfig:
    env_file: Optional[str] = None
    user_pubkey: Optional[str] = None
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    relays: RelayConfig = field(default_factory=RelayConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _resolve_path(base_path: Path, target_path: str) -> str:
    """Resolve a path relative to the base config file if it's not absolute."""
    target = Path(target_path)
    if target.is_absolute():
        return str(target)
    return str((base_path.parent / target).resolve())


def _bool(node: ET.Element, tag: str, default: bool) -> bool:
    return node.findtext(tag, "true" if default else "false").strip().lower() == "true"


def _at_least_one(name: str, value: int) -> int:
    if value < 1:
        raise ValueError(f"{name} must be at least 1 (got {value})")
    return value


def parse_env_config(path: Optional[str]) -> Dict[str, str]:
    """Parse ``<variable name="...">value</variable>`` entries from XML."""
    env_vars: Dict[str, str] = {}
    if not path:
        return env_vars

    logger.info("Loading environment configuration from %s", path)
    tree = ET.parse(path)
    for var in tree.getroot().findall("variable"):
        name = var.attrib.get("name")
        value = var.text
        if name and value:
            env_vars[name] = value.strip()
    return env_vars


def parse_app_config(path: str) -> AppConfig:
    """Parse the main application configuration XML."""
    config_path = Path(path).resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    logger.info("Loading application configuration from %s", config_path)
    root = ET.parse(config_path).getroot()
    config = AppConfig()

    env_text = root.findtext("env")
    if env_text and env_text.strip():
        config.env_file = _resolve_path(config_path, env_text.strip())

    user_text = root.findtext("user-pubkey")
    if user_text and user_text.strip():
        config.user_pubkey = user_text.strip()

    db_node = root.find("database")
    if db_node is not None:
        conn = db_node.findtext("connection-string")
        if conn and conn.strip():
            config.database.connection_string = conn.strip()

    refresh_node = root.find("refresh")
    if refresh_node is not None:
        config.refresh.cooldown_minutes = float(
            refresh_node.findtext("cooldown-minutes", "5")
        )
        config.refresh.concurrency = _at_least_one(
            "concurrency", int(refresh_node.findtext("concurrency", "5"))
        )

    retry_node = root.find("retry")
    if retry_node is not None:
        config.retry.max_attempts = _at_least_one(
            "max-attempts", int(retry_node.findtext("max-attempts", "3"))
        )
        config.retry.base_delay_ms = int(retry_node.findtext("base-delay-ms", "1000"))
        config.retry.max_delay_ms = int(retry_node.findtext("max-delay-ms", "10000"))

    relays_node = root.find("relays")
    if relays_node is not None:
        urls = [
            relay.text.strip()
            for relay in relays_node.findall("relay")
            if relay.text and relay.text.strip()
        ]
        if urls:
            config.relays.urls = urls
        timeout = relays_node.attrib.get("timeout")
        if timeout:
            config.relays.timeout = float(timeout)

    client_node = root.find("client")
    if client_node is not None:
        client = config.client
        client.web_app_url = client_node.findtext("web-app-url", client.web_app_url).strip()
        client.poll_interval_minutes = _at_least_one(
            "poll-interval-minutes",
            int(client_node.findtext("poll-interval-minutes", "5")),
        )
        client.notifications_enabled = _bool(client_node, "notifications-enabled", True)
        client.notify_on_new_items = _bool(client_node, "notify-on-new-items", True)
        client.max_notifications_per_refresh = int(
            client_node.findtext("max-notifications-per-refresh", "3")
        )
        state_file = client_node.findtext("state-file")
        if state_file and state_file.strip():
            client.state_file = _resolve_path(config_path, state_file.strip())
        cache_conn = client_node.findtext("cache-connection-string")
        if cache_conn and cache_conn.strip():
            client.cache_connection_string = cache_conn.strip()

    log_node = root.find("logging")
    if log_node is not None:
        config.logging.level = log_node.findtext("level", "INFO").strip()
        log_file = log_node.findtext("file")
        if log_file and log_file.strip():
            config.logging.file = _resolve_path(config_path, log_file.strip())

    return config
