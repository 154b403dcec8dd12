"""Tests for calwatch.toml loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from calwatch.config import ConfigError, load_config, resolve_env_vars

pytestmark = pytest.mark.unit

MINIMAL = """
[calwatch]
public_url = "https://calwatch.example.com/"

[calwatch.google]
client_id = "client-id"
client_secret = "client-secret"

[calwatch.dispatch]
url = "http://delivery:9000/"
"""


def _write(tmp_path: Path, content: str) -> Path:
    (tmp_path / "calwatch.toml").write_text(content)
    return tmp_path


class TestLoadConfig:
    def test_minimal_config_uses_defaults(self, tmp_path):
        config = load_config(_write(tmp_path, MINIMAL))

        assert config.public_url == "https://calwatch.example.com"
        assert config.dispatch.url == "http://delivery:9000"
        assert config.dispatch.timeout_s == 10.0
        assert config.host == "0.0.0.0"
        assert config.port == 8080
        assert config.db_name == "calwatch"
        assert config.db_schema is None
        assert config.renewal.interval_s == 3600.0
        assert config.renewal.horizon_s == 86400.0
        assert config.reconcile.reminder_window_s == 10800.0
        assert config.logging.level == "INFO"
        assert config.logging.format == "text"

    def test_full_config(self, tmp_path):
        content = (
            MINIMAL
            + """
[calwatch.db]
name = "calendars"
schema = "calwatch"

[calwatch.renewal]
interval_s = 600
horizon_s = 7200

[calwatch.reconcile]
reminder_window_s = 3600

[calwatch.logging]
level = "debug"
format = "JSON"
log_root = "/var/log/calwatch"
"""
        )
        config = load_config(_write(tmp_path, content))

        assert config.db_name == "calendars"
        assert config.db_schema == "calwatch"
        assert config.renewal.interval_s == 600.0
        assert config.renewal.horizon_s == 7200.0
        assert config.reconcile.reminder_window_s == 3600.0
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"
        assert config.logging.log_root == "/var/log/calwatch"

    def test_env_references_are_resolved(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GOOGLE_SECRET", "from-env")
        content = MINIMAL.replace('"client-secret"', '"${GOOGLE_SECRET}"')

        config = load_config(_write(tmp_path, content))

        assert config.google.client_secret == "from-env"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path)

    def test_invalid_toml(self, tmp_path):
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[calwatch\n"))

    def test_missing_section(self, tmp_path):
        with pytest.raises(ConfigError, match=r"Missing \[calwatch\]"):
            load_config(_write(tmp_path, "[other]\nkey = 1\n"))

    def test_missing_public_url(self, tmp_path):
        content = MINIMAL.replace('public_url = "https://calwatch.example.com/"', "")
        with pytest.raises(ConfigError, match="calwatch.public_url"):
            load_config(_write(tmp_path, content))

    def test_public_url_must_be_http(self, tmp_path):
        content = MINIMAL.replace("https://calwatch.example.com/", "ftp://calwatch")
        with pytest.raises(ConfigError, match="public_url"):
            load_config(_write(tmp_path, content))

    def test_missing_google_credentials(self, tmp_path):
        content = MINIMAL.replace('client_id = "client-id"', "")
        with pytest.raises(ConfigError, match="calwatch.google.client_id"):
            load_config(_write(tmp_path, content))

    def test_invalid_schema(self, tmp_path):
        content = MINIMAL + '\n[calwatch.db]\nschema = "bad-schema"\n'
        with pytest.raises(ConfigError, match="calwatch.db.schema"):
            load_config(_write(tmp_path, content))

    def test_non_positive_interval(self, tmp_path):
        content = MINIMAL + "\n[calwatch.renewal]\ninterval_s = 0\n"
        with pytest.raises(ConfigError, match="interval_s"):
            load_config(_write(tmp_path, content))

    def test_invalid_log_format(self, tmp_path):
        content = MINIMAL + '\n[calwatch.logging]\nformat = "xml"\n'
        with pytest.raises(ConfigError, match="logging.format"):
            load_config(_write(tmp_path, content))


class TestResolveEnvVars:
    def test_walks_nested_values(self, monkeypatch):
        monkeypatch.setenv("CALWATCH_HOST", "example.org")
        resolved = resolve_env_vars(
            {"a": ["${CALWATCH_HOST}", 1], "b": {"c": "x-${CALWATCH_HOST}"}}
        )
        assert resolved == {"a": ["example.org", 1], "b": {"c": "x-example.org"}}

    def test_reports_all_missing_variables(self, monkeypatch):
        monkeypatch.delenv("CALWATCH_MISSING_A", raising=False)
        monkeypatch.delenv("CALWATCH_MISSING_B", raising=False)
        with pytest.raises(ConfigError, match="CALWATCH_MISSING_A, CALWATCH_MISSING_B"):
            resolve_env_vars("${CALWATCH_MISSING_A}/${CALWATCH_MISSING_B}")
