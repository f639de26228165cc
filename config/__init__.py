"""Configuration management."""
import os
import yaml
from pathlib import Path

from utils.errors import ConfigError

_DEFAULT_CONFIG = Path(__file__).parent / "default_config.yaml"
DEFAULT_RULES = Path(__file__).parent / "alert_rules.yaml"

REQUIRED_SECTIONS = ["database", "logging", "rules", "scheduler", "sources", "alerts", "insights",
                     "notifications"]

ENV_OVERRIDES = {
    "INFRAWATCH_DB_PATH": ("database", "path"),
    "INFRAWATCH_LOG_LEVEL": ("logging", "level"),
    "INFRAWATCH_RULES_PATH": ("rules", "path"),
    "INFRAWATCH_MAX_CONCURRENCY": ("scheduler", "max_concurrency"),
    "INFRAWATCH_PROMETHEUS_URL": ("sources", "prometheus", "url"),
}


def load_config(path=None, environ=None):
    """Load config from YAML, merging defaults with an optional file and env overrides.

    Raises ConfigError when the result fails validation.
    """
    with open(_DEFAULT_CONFIG) as f:
        config = yaml.safe_load(f)

    if path:
        if not Path(path).exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path) as f:
                overrides = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}", [str(e)])
        if not isinstance(overrides, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        config = _deep_merge(config, overrides)

    environ = os.environ if environ is None else environ
    for env_key, config_path in ENV_OVERRIDES.items():
        val = environ.get(env_key)
        if val:
            d = config
            for k in config_path[:-1]:
                if not isinstance(d.get(k), dict):
                    d[k] = {}
                d = d[k]
            try:
                d[config_path[-1]] = int(val)
            except ValueError:
                d[config_path[-1]] = val

    _validate_config(config)
    return config


def rules_path(config):
    """Configured rule file, or the bundled example rules."""
    return Path(config.get("rules", {}).get("path") or DEFAULT_RULES)


def _deep_merge(base, override):
    """Recursively merge override into base dict."""
    result = base.copy()
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _validate_config(config):
    errors = []
    for section in REQUIRED_SECTIONS:
        if not isinstance(config.get(section), dict):
            errors.append(f"Missing required config section: {section}")
    if errors:
        raise ConfigError("Invalid configuration", errors)

    def check(section, key, minimum, number=(int, float)):
        val = config[section].get(key)
        if not isinstance(val, number) or isinstance(val, bool) or val < minimum:
            errors.append(f"{section}.{key} must be a number >= {minimum}, got {val!r}")

    check("scheduler", "max_concurrency", 1, int)
    check("scheduler", "poll_interval_seconds", 0.01)
    check("scheduler", "step_seconds", 1)
    check("scheduler", "query_timeout_seconds", 0.01)
    check("alerts", "history_noise_tolerance", 0)
    check("insights", "correlation_lookback_seconds", 0)
    check("insights", "max_workers", 1, int)
    check("notifications", "queue_size", 1, int)

    level = str(config["logging"].get("level", "INFO")).upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        errors.append(f"logging.level is not a log level: {level}")
    if errors:
        raise ConfigError("Invalid configuration", errors)
