"""Configuration loading and management."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


def _default_claude_home() -> Path:
    return Path.home() / ".claude"


def _default_opencode_home() -> Path:
    return Path.home() / ".local" / "share" / "opencode"


@dataclass
class IngestConfig:
    lookback_days: int = 30
    poll_interval_ms: int = 30000
    claude_home: Path = field(default_factory=_default_claude_home)
    opencode_home: Path = field(default_factory=_default_opencode_home)

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000


@dataclass
class StoreConfig:
    db_path: Path = field(default_factory=lambda: Path.home() / "agentmesh" / "agentmesh.db")


@dataclass
class TypesenseConfig:
    enabled: bool = False
    host: str = "localhost"
    port: int = 8108
    protocol: str = "http"
    api_key: str = "dev-api-key"


@dataclass
class Config:
    ingest: IngestConfig = field(default_factory=IngestConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    typesense: TypesenseConfig = field(default_factory=TypesenseConfig)


def expand_env_var(value: str) -> str:
    """Expand environment variables in string (e.g. ${VAR})."""
    if value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.environ.get(env_var, value)
    return value


def expand_path(path_str: str) -> Path:
    """Expand ~ and environment variables in path."""
    return Path(os.path.expandvars(os.path.expanduser(path_str)))


def apply_env_overrides(config: Config, environ: dict[str, str] | None = None) -> Config:
    """Apply environment-level overrides on top of file configuration.

    Recognised variables:
        CLAUDE_HOME, OPENCODE_HOME: root path override per source family
        INGEST_LOOKBACK_DAYS: lookback window in days
        INGEST_POLL_INTERVAL_MS: watcher poll interval in milliseconds
        AGENTMESH_DB: path to the SQLite store

    Args:
        config: Configuration loaded from file (or defaults)
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        The same Config instance, updated in place
    """
    env = os.environ if environ is None else environ

    if env.get("CLAUDE_HOME"):
        config.ingest.claude_home = expand_path(env["CLAUDE_HOME"])
    if env.get("OPENCODE_HOME"):
        config.ingest.opencode_home = expand_path(env["OPENCODE_HOME"])
    if env.get("INGEST_LOOKBACK_DAYS"):
        config.ingest.lookback_days = int(env["INGEST_LOOKBACK_DAYS"])
    if env.get("INGEST_POLL_INTERVAL_MS"):
        config.ingest.poll_interval_ms = int(env["INGEST_POLL_INTERVAL_MS"])
    if env.get("AGENTMESH_DB"):
        config.store.db_path = expand_path(env["AGENTMESH_DB"])

    return config


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file, then apply environment overrides."""
    if config_path is None:
        # Look for config in standard locations
        search_paths = [
            Path.cwd() / "config.yaml",
            Path.home() / ".config" / "agentmesh" / "config.yaml",
            Path("/etc/agentmesh/config.yaml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    if config_path is None or not config_path.exists():
        return apply_env_overrides(Config())

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    # Parse ingest config
    ingest_data = data.get("ingest", {})
    defaults = IngestConfig()
    ingest = IngestConfig(
        lookback_days=ingest_data.get("lookback_days", defaults.lookback_days),
        poll_interval_ms=ingest_data.get("poll_interval_ms", defaults.poll_interval_ms),
        claude_home=expand_path(ingest_data["claude_home"])
        if "claude_home" in ingest_data
        else defaults.claude_home,
        opencode_home=expand_path(ingest_data["opencode_home"])
        if "opencode_home" in ingest_data
        else defaults.opencode_home,
    )

    # Parse store config
    store_data = data.get("store", {})
    store = StoreConfig(
        db_path=expand_path(store_data.get("db_path", "~/agentmesh/agentmesh.db")),
    )

    # Parse typesense config
    ts_data = data.get("typesense", {})
    api_key = expand_env_var(ts_data.get("api_key", "dev-api-key"))

    typesense = TypesenseConfig(
        enabled=ts_data.get("enabled", False),
        host=ts_data.get("host", "localhost"),
        port=ts_data.get("port", 8108),
        protocol=ts_data.get("protocol", "http"),
        api_key=api_key,
    )

    return apply_env_overrides(Config(ingest=ingest, store=store, typesense=typesense))
