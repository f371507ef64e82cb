"""Shared IdeaForge configuration utilities.

Centralises reading of ~/.ideaforge/configuration.json and the environment
(.env is loaded through python-dotenv) so the runner, the research bridge
and the CLI resolve settings the same way.

Example configuration.json:

    {
      "state_dir": "~/.ideaforge/state",
      "research": {
        "base_url": "http://localhost:5678",
        "webhook_path": "webhook",
        "max_concurrency": 5,
        "providers": {
          "reddit": {"capacity": 2, "refill_rate": 0.5, "ttl_seconds": 900}
        }
      }
    }
"""

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

IDEAFORGE_HOME = Path.home() / ".ideaforge"
IDEAFORGE_CONFIG_FILE = IDEAFORGE_HOME / "configuration.json"

DEFAULT_BASE_URL = "http://localhost:5678"
DEFAULT_WEBHOOK_PATH = "webhook"


def load_environment(dotenv_path: Path | None = None) -> None:
    """Load a .env file into the process environment without overriding it."""
    load_dotenv(dotenv_path=dotenv_path, override=False)


def get_ideaforge_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from ~/.ideaforge/configuration.json (or `path`)."""
    config_file = path or IDEAFORGE_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ValueError(f"{name} must be a positive number")
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from e
    if value < 0:
        raise ValueError(f"{name} must be a non-negative integer")
    return value


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_state_dir(config: dict[str, Any] | None = None) -> Path:
    """Return the checkpoint directory (IDEAFORGE_STATE_DIR wins over the file)."""
    env_dir = os.environ.get("IDEAFORGE_STATE_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    config = get_ideaforge_config() if config is None else config
    configured = config.get("state_dir")
    if configured:
        return Path(configured).expanduser()
    return IDEAFORGE_HOME / "state"


def get_research_api_key() -> str | None:
    """Return the webhook API key from N8N_API_KEY, if set."""
    return os.environ.get("N8N_API_KEY") or None


# ---------------------------------------------------------------------------
# Dataclasses consumed by the bridge and the executor
# ---------------------------------------------------------------------------


@dataclass
class ProviderConfig:
    """Rate, cache and retry settings for one research provider."""

    name: str
    path: str = ""  # webhook path below base_url, e.g. "ideaforge/hackernews-search"
    capacity: int = 5
    refill_rate: float = 5.0  # tokens per second
    ttl_seconds: float = 3600.0
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    wait_timeout: float = 30.0  # max time to queue for a rate-limit token
    request_timeout: float = 30.0
    # Circuit breaker
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    success_threshold: int = 2

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError(f"Provider '{self.name}': capacity must be >= 1")
        if self.refill_rate <= 0:
            raise ValueError(f"Provider '{self.name}': refill_rate must be > 0")
        if self.max_attempts < 1:
            raise ValueError(f"Provider '{self.name}': max_attempts must be >= 1")
        if self.ttl_seconds < 0:
            raise ValueError(f"Provider '{self.name}': ttl_seconds must be >= 0")
        if self.failure_threshold < 1 or self.success_threshold < 1:
            raise ValueError(f"Provider '{self.name}': circuit thresholds must be >= 1")


def default_provider_configs() -> dict[str, ProviderConfig]:
    """Built-in provider budgets (HN is generous, Reddit allows ~1 req/s)."""
    return {
        "hackernews": ProviderConfig(
            name="hackernews",
            path="ideaforge/hackernews-search",
            capacity=10,
            refill_rate=10.0,
            ttl_seconds=3600.0,
        ),
        "reddit": ProviderConfig(
            name="reddit",
            path="ideaforge/reddit-search",
            capacity=1,
            refill_rate=1.0,
            ttl_seconds=1800.0,
        ),
    }


@dataclass
class BridgeConfig:
    """Research bridge configuration."""

    base_url: str = DEFAULT_BASE_URL
    webhook_path: str = DEFAULT_WEBHOOK_PATH
    api_key: str | None = field(default_factory=get_research_api_key)
    providers: dict[str, ProviderConfig] = field(default_factory=default_provider_configs)
    default_provider: ProviderConfig = field(default_factory=lambda: ProviderConfig(name="default"))
    max_concurrency: int = 5
    max_results: int = 10

    def provider(self, name: str) -> ProviderConfig:
        """Settings for `name`, falling back to the default budget."""
        if name in self.providers:
            return self.providers[name]
        return replace(self.default_provider, name=name)

    @classmethod
    def from_sources(cls, config: dict[str, Any] | None = None) -> "BridgeConfig":
        """Build from configuration.json merged with N8N_* environment overrides."""
        config = get_ideaforge_config() if config is None else config
        research = config.get("research", {})

        providers = default_provider_configs()
        for name, overrides in research.get("providers", {}).items():
            base = providers.get(name, ProviderConfig(name=name))
            providers[name] = replace(base, **overrides)

        updates: dict[str, Any] = {}
        if os.environ.get("N8N_TIMEOUT"):
            # milliseconds, like the webhook client it configures
            updates["request_timeout"] = _env_float("N8N_TIMEOUT", 30000.0) / 1000.0
        if os.environ.get("N8N_RETRIES"):
            updates["max_attempts"] = _env_int("N8N_RETRIES", 3) + 1
        default_provider = replace(ProviderConfig(name="default"), **updates)
        if updates:
            providers = {name: replace(p, **updates) for name, p in providers.items()}

        return cls(
            base_url=os.environ.get("N8N_BASE_URL") or research.get("base_url", DEFAULT_BASE_URL),
            webhook_path=os.environ.get("N8N_WEBHOOK_PATH")
            or research.get("webhook_path", DEFAULT_WEBHOOK_PATH),
            providers=providers,
            default_provider=default_provider,
            max_concurrency=research.get("max_concurrency", 5),
            max_results=research.get("max_results", 10),
        )


@dataclass
class OrchestratorConfig:
    """Executor and checkpoint store configuration."""

    state_dir: Path = field(default_factory=get_state_dir)
    checkpoint_history: int = 20  # prior checkpoints kept per session for audit
    log_level: str = field(default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO"))
