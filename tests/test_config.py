"""
Tests for configuration loading, resolution and typed service settings.
"""

from pathlib import Path

import pytest

from filepoll.config.loader import Config, _merge_dict, load_config
from filepoll.config.resolver import resolve_config
from filepoll.config.settings import ServiceSettings
from filepoll.exceptions import ConfigurationError


def write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


class TestConfig:
    """Tests for Config class."""

    def test_dot_notation(self):
        cfg = Config({"scheduler": {"tick_interval_s": 30}})
        assert cfg.get("scheduler.tick_interval_s") == 30
        assert cfg.get("scheduler.missing", "fallback") == "fallback"
        assert cfg.get("scheduler.tick_interval_s.deeper", 1) == 1

    def test_contains(self):
        cfg = Config({"a": {"b": 1}})
        assert "a" in cfg
        assert "a.b" in cfg
        assert "a.c" not in cfg

    def test_getitem(self):
        cfg = Config({"name": "filepoll", "nested": {"key": "val"}})
        assert cfg["name"] == "filepoll"
        assert isinstance(cfg["nested"], Config)
        assert cfg["nested.key"] == "val"
        with pytest.raises(KeyError):
            _ = cfg["missing"]

    def test_convenience_sections(self):
        cfg = Config({"scheduler": {"batch_size": 5}, "configurations": [{"name": "x"}]})
        assert cfg.scheduler == {"batch_size": 5}
        assert cfg.notifications == {}
        assert cfg.configurations == [{"name": "x"}]

    def test_validate_section_types(self):
        with pytest.raises(ConfigurationError, match="'scheduler' must be a mapping"):
            Config({"scheduler": [1, 2]}).validate()
        with pytest.raises(ConfigurationError, match="'configurations' must be a list"):
            Config({"configurations": {"a": 1}}).validate()

    def test_merge_dict(self):
        base = {"scheduler": {"tick_interval_s": 60, "batch_size": 500}, "state": {"path": "a"}}
        _merge_dict(base, {"scheduler": {"tick_interval_s": 5}, "state": "flat"})
        assert base == {"scheduler": {"tick_interval_s": 5, "batch_size": 500}, "state": "flat"}


class TestResolver:
    def test_env_var_substitution(self, monkeypatch):
        monkeypatch.setenv("HOOK_SECRET", "abc")
        resolved = resolve_config({"webhook": {"signing_secret": "${HOOK_SECRET}", "list": ["${HOOK_SECRET}"]}})
        assert resolved == {"webhook": {"signing_secret": "abc", "list": ["abc"]}}

    def test_unset_variable_left_alone(self, monkeypatch):
        monkeypatch.delenv("FILEPOLL_UNSET_VAR", raising=False)
        assert resolve_config({"x": "${FILEPOLL_UNSET_VAR}"}) == {"x": "${FILEPOLL_UNSET_VAR}"}

    def test_env_placeholder(self):
        assert resolve_config({"path": "state/{env}.duckdb"}, env="prod") == {"path": "state/prod.duckdb"}

    def test_date_tokens_untouched(self):
        assert resolve_config({"path_pattern": "/in/{yyyy}/{mm}"}) == {"path_pattern": "/in/{yyyy}/{mm}"}

    def test_non_strings_untouched(self):
        assert resolve_config({"n": 5, "flag": True, "none": None}) == {"n": 5, "flag": True, "none": None}


class TestLoadConfig:
    """Tests for load_config()."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Configuration file not found"):
            load_config(tmp_path)

    def test_loads_and_overlays_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FILEPOLL_TEST_URL", "https://hooks.example.com")
        write(
            tmp_path / "config.yaml",
            "scheduler:\n  tick_interval_s: 60\n  batch_size: 100\n"
            "notifications:\n  webhook:\n    default_url: ${FILEPOLL_TEST_URL}\n",
        )
        write(tmp_path / "config.prod.yaml", "scheduler:\n  tick_interval_s: 15\n")

        cfg = load_config(tmp_path, env="prod")

        assert cfg.get("scheduler.tick_interval_s") == 15
        assert cfg.get("scheduler.batch_size") == 100
        assert cfg.get("notifications.webhook.default_url") == "https://hooks.example.com"

    def test_missing_env_overlay_is_ignored(self, tmp_path):
        write(tmp_path / "config.yaml", "scheduler:\n  tick_interval_s: 60\n")
        assert load_config(tmp_path, env="staging").get("scheduler.tick_interval_s") == 60

    def test_empty_file(self, tmp_path):
        write(tmp_path / "config.yaml", "")
        assert load_config(tmp_path).data == {}

    def test_yaml_error_has_location(self, tmp_path):
        write(tmp_path / "config.yaml", "scheduler:\n  tick: [1, 2\n")
        with pytest.raises(ConfigurationError, match="Error parsing config.yaml"):
            load_config(tmp_path)

    def test_non_mapping(self, tmp_path):
        write(tmp_path / "config.yaml", "- a\n- b\n")
        with pytest.raises(ConfigurationError, match="must contain a mapping"):
            load_config(tmp_path)


class TestServiceSettings:
    """Tests for ServiceSettings.from_config()."""

    def test_defaults(self):
        settings = ServiceSettings.from_config({})
        assert settings.state_path == ":memory:"
        assert settings.scheduler.tick_interval_s == 60
        assert settings.scheduler.max_concurrent_executions == 100
        assert settings.notifications.transport == "memory"
        assert settings.metrics.enabled is True
        assert settings.metrics.port is None
        assert settings.max_results == 10_000
        assert settings.configurations == []

    def test_values(self, tmp_path):
        settings = ServiceSettings.from_config(
            {
                "state": {"path": "state/filepoll.duckdb"},
                "scheduler": {"tick_interval_s": 5, "max_concurrent_executions": 10},
                "retry": {"max_attempts": 4, "initial_delay_s": 0.5, "max_delay_s": 2},
                "notifications": {"transport": "Webhook", "webhook": {"default_url": "https://h"}},
                "metrics": {"port": 9200},
                "secrets": {"env_prefix": "APP_"},
                "configurations": [{"configuration_id": "x"}],
            },
            project_dir=tmp_path,
        )
        assert settings.state_path == str(tmp_path / "state/filepoll.duckdb")
        assert settings.scheduler.tick_interval_s == 5
        assert settings.scheduler.max_concurrent_executions == 10
        assert settings.notifications.transport == "webhook"
        assert settings.metrics.port == 9200
        assert settings.secrets_env_prefix == "APP_"
        assert len(settings.configurations) == 1

        policy = settings.retry.policy()
        assert policy.max_attempts == 4
        assert policy.initial_delay == 0.5

    def test_absolute_state_path_kept(self, tmp_path):
        path = str(tmp_path / "abs.duckdb")
        assert ServiceSettings.from_config({"state": {"path": path}}, project_dir=Path("/elsewhere")).state_path == path

    def test_collects_range_errors(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ServiceSettings.from_config(
                {
                    "scheduler": {"tick_interval_s": 0, "max_concurrent_executions": "lots"},
                    "notifications": {"transport": "pigeon"},
                }
            )
        message = str(exc_info.value)
        assert "scheduler.tick_interval_s must be between 1 and 3600" in message
        assert "scheduler.max_concurrent_executions must be a number" in message
        assert "notifications.transport must be one of" in message

    def test_abandoned_after_must_exceed_timeout(self):
        with pytest.raises(ConfigurationError, match="abandoned_after_s must be greater"):
            ServiceSettings.from_config({"scheduler": {"execution_timeout_s": 3600, "abandoned_after_s": 600}})

    def test_webhook_needs_url(self):
        with pytest.raises(ConfigurationError, match="default_url or endpoints"):
            ServiceSettings.from_config({"notifications": {"transport": "webhook"}})

    def test_retry_delay_order(self):
        with pytest.raises(ConfigurationError, match="max_delay_s must be >="):
            ServiceSettings.from_config({"retry": {"initial_delay_s": 5, "max_delay_s": 1}})

    def test_accepts_config_object(self):
        settings = ServiceSettings.from_config(Config({"adapters": {"max_results": 50, "threads": 4}}))
        assert settings.max_results == 50
        assert settings.adapter_threads == 4
