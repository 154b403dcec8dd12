"""calwatch configuration loading and validation.

Reads calwatch.toml from a config directory, parses all sections, and returns
a validated CalwatchConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "calwatch.toml"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when calwatch configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [calwatch.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class GoogleConfig:
    """OAuth client credentials from [calwatch.google]."""

    client_id: str
    client_secret: str


@dataclass
class RenewalConfig:
    interval_s: float = 3600.0
    horizon_s: float = 86400.0


@dataclass
class ReconcileConfig:
    reminder_window_s: float = 10800.0


@dataclass
class DispatchConfig:
    """Downstream delivery service for reminders and invite prompts."""

    url: str
    timeout_s: float = 10.0


@dataclass
class CalwatchConfig:
    """Parsed and validated calwatch configuration."""

    public_url: str
    google: GoogleConfig
    dispatch: DispatchConfig
    host: str = "0.0.0.0"
    port: int = 8080
    db_name: str = "calwatch"
    db_schema: str | None = None
    renewal: RenewalConfig = field(default_factory=RenewalConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _require_text(section: dict[str, Any], key: str, path: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Missing required field: {path}.{key}")
    return value.strip()


def _positive_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be positive.")
    return value


def load_config(config_dir: Path) -> CalwatchConfig:
    """Load and validate a calwatch.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    # --- Resolve env var references before any validation ---
    data = resolve_env_vars(data)

    # --- [calwatch] section (required) ---
    section = data.get("calwatch")
    if not isinstance(section, dict):
        raise ConfigError("Missing [calwatch] section in config")

    public_url = _require_text(section, "public_url", "calwatch").rstrip("/")
    if not public_url.startswith(("http://", "https://")):
        raise ConfigError(f"Invalid calwatch.public_url: {public_url!r}. Expected an http(s) URL.")

    host = str(section.get("host", "0.0.0.0"))
    try:
        port = int(section.get("port", 8080))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid calwatch.port: {section.get('port')!r}") from exc

    # --- [calwatch.db] sub-section ---
    db_section = section.get("db", {})
    db_name = str(db_section.get("name", "calwatch")).strip()
    if not db_name:
        raise ConfigError("calwatch.db.name must be a non-empty string")

    db_schema: str | None = None
    db_schema_raw = db_section.get("schema")
    if db_schema_raw is not None:
        if not isinstance(db_schema_raw, str) or not db_schema_raw.strip():
            raise ConfigError("calwatch.db.schema must be a non-empty string when set")
        normalized_schema = db_schema_raw.strip()
        if _DB_SCHEMA_PATTERN.fullmatch(normalized_schema) is None:
            raise ConfigError(
                "Invalid calwatch.db.schema: "
                f"{db_schema_raw!r}. Expected a valid SQL identifier-style value."
            )
        db_schema = normalized_schema

    # --- [calwatch.google] sub-section ---
    google_section = section.get("google", {})
    google = GoogleConfig(
        client_id=_require_text(google_section, "client_id", "calwatch.google"),
        client_secret=_require_text(google_section, "client_secret", "calwatch.google"),
    )

    # --- [calwatch.renewal] sub-section ---
    renewal_section = section.get("renewal", {})
    renewal = RenewalConfig(
        interval_s=_positive_float(renewal_section, "interval_s", 3600.0, "calwatch.renewal"),
        horizon_s=_positive_float(renewal_section, "horizon_s", 86400.0, "calwatch.renewal"),
    )

    # --- [calwatch.reconcile] sub-section ---
    reconcile_section = section.get("reconcile", {})
    reconcile = ReconcileConfig(
        reminder_window_s=_positive_float(
            reconcile_section, "reminder_window_s", 10800.0, "calwatch.reconcile"
        ),
    )

    # --- [calwatch.dispatch] sub-section ---
    dispatch_section = section.get("dispatch", {})
    dispatch = DispatchConfig(
        url=_require_text(dispatch_section, "url", "calwatch.dispatch").rstrip("/"),
        timeout_s=_positive_float(dispatch_section, "timeout_s", 10.0, "calwatch.dispatch"),
    )

    # --- [calwatch.logging] sub-section ---
    logging_section = section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid calwatch.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    return CalwatchConfig(
        public_url=public_url,
        google=google,
        dispatch=dispatch,
        host=host,
        port=port,
        db_name=db_name,
        db_schema=db_schema,
        renewal=renewal,
        reconcile=reconcile,
        logging=logging_config,
    )
