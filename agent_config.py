"""Agent configuration: defaults, environment / .env overrides, confirmation table."""

import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional

from dotenv import load_dotenv

from agent_models import AgentError, RiskTier
from risk_classifier import CONFIRMATION_MODES, DEFAULT_CONFIRMATION_MODES, ConfirmationPolicy


class ConfigError(AgentError, ValueError):
    """A configuration value could not be parsed."""


DEFAULT_MODEL = "gemini-2.0-flash"
DEFAULT_AUDIT_DIR = "./audit"
DEFAULT_OLLAMA_MODEL = "llama3.2"
DEFAULT_OLLAMA_URL = "http://localhost:11434"

PROVIDER_GEMINI = "gemini"
PROVIDER_OLLAMA = "ollama"
PROVIDER_AUTO = "auto"     # Gemini first, Ollama when Gemini fails or has no key
PROVIDERS = (PROVIDER_GEMINI, PROVIDER_OLLAMA, PROVIDER_AUTO)
ENV_PREFIX = "DIAG_"

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class AgentConfig:
    max_iterations: int = 20
    max_execution_time: float = 300.0
    command_timeout: float = 30.0
    reasoning_timeout: Optional[float] = 60.0
    reasoning_attempts: int = 3
    reasoning_backoff_seconds: float = 2.0
    history_window: int = 10
    pattern_confidence_threshold: int = 70
    confirm_destructive: bool = True
    production: bool = False
    typed_confirmation_in_production: bool = True
    typed_confirmation_phrase: str = "CONFIRM"
    confirmation_modes: Mapping = field(default_factory=lambda: dict(DEFAULT_CONFIRMATION_MODES))
    audit_dir: str = DEFAULT_AUDIT_DIR
    model: str = DEFAULT_MODEL
    provider: str = PROVIDER_GEMINI
    ollama_model: str = DEFAULT_OLLAMA_MODEL
    ollama_base_url: str = DEFAULT_OLLAMA_URL

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ConfigError("max_iterations must be at least 1")
        if self.max_execution_time <= 0:
            raise ConfigError("max_execution_time must be positive")
        if self.command_timeout <= 0:
            raise ConfigError("command_timeout must be positive")
        if self.reasoning_attempts < 1:
            raise ConfigError("reasoning_attempts must be at least 1")
        if self.history_window < 1:
            raise ConfigError("history_window must be at least 1")
        if not 0 <= self.pattern_confidence_threshold <= 100:
            raise ConfigError("pattern_confidence_threshold must be between 0 and 100")
        if self.provider not in PROVIDERS:
            raise ConfigError(f"provider must be one of {', '.join(PROVIDERS)}, got {self.provider!r}")
        for tier, mode in self.confirmation_modes.items():
            if mode not in CONFIRMATION_MODES:
                raise ConfigError(f"unknown confirmation mode for {RiskTier.parse(tier).label}: {mode!r}")

    def confirmation_policy(self) -> ConfirmationPolicy:
        return ConfirmationPolicy(
            modes={RiskTier.parse(t): m for t, m in self.confirmation_modes.items()},
            production=self.production,
            typed_in_production=self.typed_confirmation_in_production,
            confirm_destructive=self.confirm_destructive,
        )

    def with_overrides(self, **overrides) -> "AgentConfig":
        """Copy with non-None overrides applied (CLI flags)."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


# ---------------------------------------------------------------------------
# Environment loading
# ---------------------------------------------------------------------------

def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{name}: expected a boolean, got {raw!r}")


def _parse_number(name: str, raw: str, kind):
    try:
        return kind(raw.strip())
    except ValueError:
        raise ConfigError(f"{name}: expected {kind.__name__}, got {raw!r}") from None


_ENV_FIELDS = {
    "MAX_ITERATIONS": ("max_iterations", int),
    "MAX_EXECUTION_TIME": ("max_execution_time", float),
    "COMMAND_TIMEOUT": ("command_timeout", float),
    "REASONING_TIMEOUT": ("reasoning_timeout", float),
    "REASONING_ATTEMPTS": ("reasoning_attempts", int),
    "REASONING_BACKOFF": ("reasoning_backoff_seconds", float),
    "HISTORY_WINDOW": ("history_window", int),
    "PATTERN_CONFIDENCE": ("pattern_confidence_threshold", int),
    "CONFIRM_DESTRUCTIVE": ("confirm_destructive", bool),
    "PRODUCTION": ("production", bool),
    "TYPED_IN_PRODUCTION": ("typed_confirmation_in_production", bool),
    "TYPED_PHRASE": ("typed_confirmation_phrase", str),
    "AUDIT_DIR": ("audit_dir", str),
    "MODEL": ("model", str),
    "PROVIDER": ("provider", str),
    "OLLAMA_MODEL": ("ollama_model", str),
    "OLLAMA_URL": ("ollama_base_url", str),
}


def config_from_env(env: Mapping[str, str]) -> AgentConfig:
    values = {}
    for suffix, (attr, kind) in _ENV_FIELDS.items():
        name = ENV_PREFIX + suffix
        raw = env.get(name)
        if raw is None or raw == "":
            continue
        if kind is bool:
            values[attr] = _parse_bool(name, raw)
        elif kind is str:
            values[attr] = raw.strip().lower() if attr == "provider" else raw
        else:
            values[attr] = _parse_number(name, raw, kind)

    modes = dict(DEFAULT_CONFIRMATION_MODES)
    for tier in RiskTier:
        raw = env.get(f"{ENV_PREFIX}CONFIRM_{tier.name}")
        if raw:
            modes[tier] = raw.strip().lower()
    values["confirmation_modes"] = modes
    return AgentConfig(**values)


def load_config(dotenv_path: Optional[str] = None) -> AgentConfig:
    """Load .env (if present) into the environment, then build the config from it."""
    load_dotenv(dotenv_path)
    return config_from_env(os.environ)
