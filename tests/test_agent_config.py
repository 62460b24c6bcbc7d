"""Configuration: defaults, environment parsing, overrides, confirmation table."""

import pytest

from agent_config import AgentConfig, ConfigError, config_from_env, load_config
from agent_models import RiskTier
from risk_classifier import MODE_NONE, MODE_SIMPLE, MODE_TYPED


@pytest.mark.p1
class TestDefaults:

    def test_defaults(self):
        cfg = AgentConfig()
        assert cfg.max_iterations == 20
        assert cfg.max_execution_time == 300
        assert cfg.command_timeout == 30
        assert cfg.confirm_destructive is True
        assert cfg.production is False
        assert cfg.typed_confirmation_phrase == "CONFIRM"
        assert cfg.provider == "gemini"
        assert cfg.ollama_model == "llama3.2"
        assert cfg.ollama_base_url == "http://localhost:11434"

    def test_default_confirmation_table(self):
        policy = AgentConfig().confirmation_policy()
        assert policy.mode_for(RiskTier.LOW) == MODE_NONE
        assert policy.mode_for(RiskTier.MEDIUM) == MODE_SIMPLE
        assert policy.mode_for(RiskTier.HIGH) == MODE_SIMPLE
        assert policy.mode_for(RiskTier.CRITICAL) == MODE_TYPED

    @pytest.mark.parametrize("field, value", [
        ("max_iterations", 0),
        ("max_execution_time", 0),
        ("command_timeout", -1),
        ("reasoning_attempts", 0),
        ("history_window", 0),
        ("pattern_confidence_threshold", 101),
    ])
    def test_invalid_values(self, field, value):
        with pytest.raises(ConfigError):
            AgentConfig(**{field: value})

    def test_unknown_confirmation_mode(self):
        with pytest.raises(ConfigError):
            AgentConfig(confirmation_modes={RiskTier.LOW: "maybe"})

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)


@pytest.mark.p1
class TestEnvironment:

    def test_empty_env_gives_defaults(self):
        assert config_from_env({}).max_iterations == 20

    def test_numeric_and_bool_values(self):
        cfg = config_from_env({
            "DIAG_MAX_ITERATIONS": "7",
            "DIAG_MAX_EXECUTION_TIME": "45.5",
            "DIAG_PRODUCTION": "yes",
            "DIAG_CONFIRM_DESTRUCTIVE": "off",
            "DIAG_MODEL": "gemini-2.5-pro",
        })
        assert cfg.max_iterations == 7
        assert cfg.max_execution_time == 45.5
        assert cfg.production is True
        assert cfg.confirm_destructive is False
        assert cfg.model == "gemini-2.5-pro"

    def test_provider_settings(self):
        cfg = config_from_env({
            "DIAG_PROVIDER": " Ollama ",
            "DIAG_OLLAMA_MODEL": "qwen2.5:7b",
            "DIAG_OLLAMA_URL": "http://gpu-box:11434",
        })
        assert cfg.provider == "ollama"
        assert cfg.ollama_model == "qwen2.5:7b"
        assert cfg.ollama_base_url == "http://gpu-box:11434"

    def test_blank_values_ignored(self):
        assert config_from_env({"DIAG_MAX_ITERATIONS": ""}).max_iterations == 20

    @pytest.mark.parametrize("env", [
        {"DIAG_MAX_ITERATIONS": "ten"},
        {"DIAG_PRODUCTION": "sometimes"},
        {"DIAG_MAX_ITERATIONS": "0"},
        {"DIAG_CONFIRM_HIGH": "never"},
        {"DIAG_PROVIDER": "openai"},
    ])
    def test_bad_values_raise(self, env):
        with pytest.raises(ConfigError):
            config_from_env(env)

    def test_per_tier_modes(self):
        cfg = config_from_env({"DIAG_CONFIRM_MEDIUM": "none", "DIAG_CONFIRM_HIGH": "Typed"})
        policy = cfg.confirmation_policy()
        assert policy.mode_for(RiskTier.MEDIUM) == MODE_NONE
        assert policy.mode_for(RiskTier.HIGH) == MODE_TYPED

    def test_critical_cannot_be_relaxed(self):
        cfg = config_from_env({"DIAG_CONFIRM_CRITICAL": "none"})
        assert cfg.confirmation_policy().mode_for(RiskTier.CRITICAL) == MODE_TYPED

    def test_load_config_reads_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.delenv("DIAG_HISTORY_WINDOW", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("DIAG_HISTORY_WINDOW=4\n")
        cfg = load_config(str(env_file))
        monkeypatch.delenv("DIAG_HISTORY_WINDOW", raising=False)
        assert cfg.history_window == 4


@pytest.mark.p1
class TestOverrides:

    def test_none_is_not_an_override(self):
        cfg = AgentConfig(max_iterations=9).with_overrides(max_iterations=None, production=True)
        assert cfg.max_iterations == 9
        assert cfg.production is True

    def test_overrides_are_validated(self):
        with pytest.raises(ConfigError):
            AgentConfig().with_overrides(max_iterations=0)

    def test_production_policy(self):
        policy = AgentConfig(production=True).confirmation_policy()
        assert policy.mode_for(RiskTier.MEDIUM) == MODE_SIMPLE
        assert policy.mode_for(RiskTier.HIGH) == MODE_TYPED

    def test_production_without_typed(self):
        policy = AgentConfig(production=True, typed_confirmation_in_production=False).confirmation_policy()
        assert policy.mode_for(RiskTier.HIGH) == MODE_SIMPLE
