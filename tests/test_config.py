"""Tests for Conduit config."""

import logging

import yaml

from conduit.config import (
    ConduitConfig,
    MissingToolPolicy,
    ProviderSpec,
    RetryCondition,
    RetryPolicy,
    SessionSpec,
    load_config,
)


class TestRetryPolicy:
    def test_defaults(self):
        p = RetryPolicy()
        assert p.max_attempts == 1
        assert p.condition == RetryCondition.RETRYABLE_ERRORS

    def test_none(self):
        p = RetryPolicy.none()
        assert p.max_attempts == 1
        assert p.condition == RetryCondition.NEVER

    def test_factories(self):
        assert RetryPolicy.retryable_errors(3) == RetryPolicy(3, RetryCondition.RETRYABLE_ERRORS)
        assert RetryPolicy.all_failures(4).condition == (
            RetryCondition.ALL_FAILURES_EXCEPT_CANCELLATION
        )

    def test_max_attempts_clamped(self):
        assert RetryPolicy(max_attempts=0).max_attempts == 1
        assert RetryPolicy.all_failures(-3).max_attempts == 1


class TestSessionSpec:
    def test_defaults(self):
        s = SessionSpec()
        assert s.max_tool_call_rounds == 8
        assert s.tool_retry == RetryPolicy.none()
        assert s.missing_tool_policy == MissingToolPolicy.RAISE

    def test_negative_rounds_clamped(self):
        assert SessionSpec(max_tool_call_rounds=-1).max_tool_call_rounds == 0


class TestProviderSpec:
    def test_defaults(self):
        p = ProviderSpec()
        assert p.url == "https://api.anthropic.com"
        assert p.max_retries == 3
        assert p.backoff_base == 1.0
        assert p.extra_params == {}


class TestLoadConfig:
    def test_defaults_when_no_file(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING, logger="conduit.config"):
            cfg = load_config(tmp_path / "does_not_exist.yaml")
        assert cfg == ConduitConfig()
        assert "not found" in caplog.text

    def test_load_from_yaml(self, tmp_path):
        config = {
            "provider": {
                "url": "http://localhost:8080",
                "api_key": "sk-test",
                "model": "test-model",
                "max_retries": 5,
                "backoff_base": 0.5,
                "extra_params": {"metadata": {"user_id": "u1"}},
                "unknown_key": "ignored",
            },
            "session": {
                "max_tool_call_rounds": 3,
                "missing_tool_policy": "emit_output",
                "tool_retry": {"max_attempts": 4, "condition": "all_failures_except_cancellation"},
            },
        }
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump(config))

        cfg = load_config(config_path)
        assert cfg.provider.url == "http://localhost:8080"
        assert cfg.provider.api_key == "sk-test"
        assert cfg.provider.model == "test-model"
        assert cfg.provider.max_retries == 5
        assert cfg.provider.backoff_base == 0.5
        assert cfg.provider.extra_params == {"metadata": {"user_id": "u1"}}
        assert cfg.session.max_tool_call_rounds == 3
        assert cfg.session.missing_tool_policy == MissingToolPolicy.EMIT_OUTPUT
        assert cfg.session.tool_retry == RetryPolicy.all_failures(4)

    def test_load_empty_yaml(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text("")

        assert load_config(config_path) == ConduitConfig()

    def test_unknown_enum_values_fall_back(self, tmp_path, caplog):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({
            "session": {
                "missing_tool_policy": "explode",
                "tool_retry": {"max_attempts": 2, "condition": "sometimes"},
            },
        }))

        with caplog.at_level(logging.WARNING, logger="conduit.config"):
            cfg = load_config(config_path)
        assert cfg.session.missing_tool_policy == MissingToolPolicy.RAISE
        assert cfg.session.tool_retry.condition == RetryCondition.NEVER
        assert "explode" in caplog.text
        assert "sometimes" in caplog.text

    def test_search_path(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "conduit.yaml").write_text(yaml.dump({"provider": {"model": "local-model"}}))

        assert load_config().provider.model == "local-model"
