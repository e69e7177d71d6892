import os
from dataclasses import dataclass
from typing import Any, Literal

from bill_reconciler.core import settings
from bill_reconciler.logger import get_logger
from bill_reconciler.matching.matcher import AUTO_APPLY_THRESHOLD, REVIEW_THRESHOLD

ValueType = Literal["string", "int", "float", "list"]

logger = get_logger(__name__)


@dataclass(frozen=True)
class ConfigField:
    key: str
    label: str
    description: str
    category: str
    value_type: ValueType = "string"
    sensitive: bool = False
    options: tuple[str, ...] | None = None
    min_value: float | int | None = None
    max_value: float | int | None = None
    restart_required: bool = False


CONFIG_FIELDS: tuple[ConfigField, ...] = (
    ConfigField(
        key="SUPABASE_URL",
        label="Database URL",
        description="Base URL of the hosted database (no trailing slash).",
        category="Database",
    ),
    ConfigField(
        key="SUPABASE_KEY",
        label="Database Key",
        description="Service key sent as apikey and bearer token.",
        category="Database",
        sensitive=True,
    ),
    ConfigField(
        key="OVERRIDE_STORE",
        label="Status Store",
        description="Where paid/skipped statuses are kept.",
        category="Database",
        options=settings.OVERRIDE_STORE_CHOICES,
        restart_required=True,
    ),
    ConfigField(
        key="AUTO_APPLY_THRESHOLD",
        label="Auto-apply Threshold",
        description="Score (0-100) at or above which a match is applied without review.",
        category="Matching",
        value_type="int",
        min_value=0,
        max_value=100,
    ),
    ConfigField(
        key="REVIEW_THRESHOLD",
        label="Review Threshold",
        description="Score (0-100) at or above which a match is offered for review.",
        category="Matching",
        value_type="int",
        min_value=0,
        max_value=100,
    ),
    ConfigField(
        key="CALENDAR_CACHE_TTL",
        label="Calendar Cache TTL",
        description="Seconds to cache occurrence lists. 0 disables caching.",
        category="Matching",
        value_type="float",
        min_value=0,
        restart_required=True,
    ),
    ConfigField(
        key="RECONCILE_INTERVAL_SECONDS",
        label="Reconcile Interval",
        description="Seconds between background passes. 0 disables the scheduler.",
        category="Scheduler",
        value_type="float",
        min_value=0,
    ),
    ConfigField(
        key="RECONCILE_USER_IDS",
        label="Reconcile Users",
        description="Comma-separated user ids reconciled in the background.",
        category="Scheduler",
        value_type="list",
    ),
    ConfigField(
        key="RECONCILE_LOOKBACK_DAYS",
        label="Lookback Days",
        description="Days before today covered by a background pass.",
        category="Scheduler",
        value_type="int",
        min_value=0,
    ),
    ConfigField(
        key="RECONCILE_LOOKAHEAD_DAYS",
        label="Lookahead Days",
        description="Days after today covered by a background pass.",
        category="Scheduler",
        value_type="int",
        min_value=0,
    ),
    ConfigField(
        key="DATA_DIR",
        label="Data Directory",
        description="Directory for the local status file (overrides.json).",
        category="Storage",
        restart_required=True,
    ),
    ConfigField(
        key="LOG_DIR",
        label="Log Directory",
        description="Directory for application logs (reconciler.log).",
        category="Storage",
        restart_required=True,
    ),
    ConfigField(
        key="LOG_LEVEL",
        label="Log Level",
        description="Logging verbosity for the application.",
        category="Storage",
        options=("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"),
        restart_required=True,
    ),
)

CONFIG_TEMPLATE = """# Bill reconciler configuration
# These settings only take effect when the same environment variable is not set.
# Remove the leading "#" to enable a setting here.

# Hosted database URL and service key
# SUPABASE_URL:
# SUPABASE_KEY:

# Status store: supabase, json or memory
# OVERRIDE_STORE:

# Match score thresholds (0-100)
# AUTO_APPLY_THRESHOLD:
# REVIEW_THRESHOLD:

# Occurrence list cache (seconds, 0 disables caching)
# CALENDAR_CACHE_TTL:

# Background reconciliation (interval 0 disables)
# RECONCILE_INTERVAL_SECONDS:
# RECONCILE_USER_IDS:
# RECONCILE_LOOKBACK_DAYS:
# RECONCILE_LOOKAHEAD_DAYS:

# Data directory (overrides.json)
# DATA_DIR:

# Log directory (reconciler.log)
# LOG_DIR:

# Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
# LOG_LEVEL:
"""


def get_config_keys() -> tuple[str, ...]:
    return tuple(field.key for field in CONFIG_FIELDS)


def get_config_path() -> str:
    config_path = settings.get_config_path()
    if config_path:
        return config_path
    return os.path.join(os.getcwd(), "config", settings.CONFIG_FILENAME)


def build_config_view() -> dict[str, Any]:
    """Current settings grouped by category, with secrets blanked."""
    config_path = get_config_path()
    config_values = settings.read_config_file(config_path)
    sections: dict[str, list[dict[str, Any]]] = {}

    for field in CONFIG_FIELDS:
        env_override = settings.is_env_override(field.key)
        value = os.getenv(field.key, "") if env_override else config_values.get(field.key, "")
        if field.sensitive:
            value = "********" if value else ""
        sections.setdefault(field.category, []).append({
            "key": field.key,
            "label": field.label,
            "description": field.description,
            "value": value,
            "options": field.options,
            "env_override": env_override,
            "sensitive": field.sensitive,
            "restart_required": field.restart_required,
        })

    return {
        "config_path": config_path,
        "sections": [{"name": name, "fields": fields} for name, fields in sections.items()],
    }


def _check_bounds(field: ConfigField, parsed: float) -> str | None:
    if field.min_value is not None and parsed < field.min_value:
        return f"Must be at least {field.min_value}."
    if field.max_value is not None and parsed > field.max_value:
        return f"Must be at most {field.max_value}."
    return None


def _validate_value(field: ConfigField, raw_value: str) -> tuple[str, str | None]:
    value = raw_value.strip()
    if not value:
        return "", None

    if "\n" in value or "\r" in value:
        return value, "Value must be a single line."

    if field.options:
        normalized = value.upper() if field.key == "LOG_LEVEL" else value.lower()
        if normalized not in field.options:
            return value, f"Must be one of: {', '.join(field.options)}."
        return normalized, None

    if field.value_type == "int":
        try:
            parsed_int = int(value)
        except ValueError:
            return value, "Must be a whole number."
        return str(parsed_int), _check_bounds(field, parsed_int)

    if field.value_type == "float":
        try:
            parsed_float = float(value)
        except ValueError:
            return value, "Must be a number."
        return str(parsed_float), _check_bounds(field, parsed_float)

    if field.value_type == "list":
        return ",".join(settings.parse_id_list(value)), None

    return value, None


def _effective_int(key: str, updates: dict[str, str], default: int) -> int:
    if key in updates and updates[key]:
        return int(updates[key])
    return settings.get_env_int(key, default, min_value=0)


def apply_config_updates(values: dict[str, str]) -> tuple[dict[str, str], dict[str, str]]:
    """Validate and persist updates; returns ``(errors, applied)``."""
    errors: dict[str, str] = {}
    updates: dict[str, str] = {}
    known = set(get_config_keys())

    for key in values:
        if key not in known:
            errors[key] = "Unknown setting."

    for field in CONFIG_FIELDS:
        raw_value = values.get(field.key)
        if raw_value is None:
            continue
        if settings.is_env_override(field.key):
            errors[field.key] = "Set via environment variable."
            continue

        cleaned, error = _validate_value(field, raw_value)
        if error:
            errors[field.key] = error
            continue
        updates[field.key] = cleaned

    if not errors and {"AUTO_APPLY_THRESHOLD", "REVIEW_THRESHOLD"} & updates.keys():
        auto_apply = _effective_int("AUTO_APPLY_THRESHOLD", updates, AUTO_APPLY_THRESHOLD)
        review = _effective_int("REVIEW_THRESHOLD", updates, REVIEW_THRESHOLD)
        if review > auto_apply:
            errors["REVIEW_THRESHOLD"] = "Must not be above the auto-apply threshold."

    if errors:
        return errors, {}

    _write_config_file(updates)
    _apply_runtime_overrides(updates)
    return {}, updates


def _write_config_file(updates: dict[str, str]) -> None:
    config_path = get_config_path()
    config_dir = os.path.dirname(config_path)
    if config_dir:
        os.makedirs(config_dir, exist_ok=True)

    lines: list[str]
    if os.path.exists(config_path):
        with open(config_path, encoding="utf-8") as handle:
            lines = handle.read().splitlines()
    else:
        lines = CONFIG_TEMPLATE.splitlines()

    key_indexes: dict[str, int] = {}
    for index, line in enumerate(lines):
        candidate = line.strip()
        if candidate.startswith("#"):
            candidate = candidate[1:].lstrip()
        if ":" not in candidate:
            continue
        key = candidate.split(":", 1)[0].strip()
        if key in updates and key not in key_indexes:
            key_indexes[key] = index

    for key, value in updates.items():
        new_line = f"{key}: {_format_yaml_value(value)}" if value else f"# {key}:"
        if key in key_indexes:
            lines[key_indexes[key]] = new_line
        else:
            lines.append(new_line)

    with open(config_path, "w", encoding="utf-8") as handle:
        handle.write("\n".join(lines).rstrip("\n") + "\n")
    logger.info("[CONFIG] Wrote %d setting(s) to %s.", len(updates), config_path)


def _apply_runtime_overrides(updates: dict[str, str]) -> None:
    for key, value in updates.items():
        if value:
            os.environ[key] = value
        else:
            os.environ.pop(key, None)


def apply_runtime_updates(app: Any, updates: dict[str, str]) -> None:
    if not updates:
        return
    state = getattr(app, "state", None)
    if state is None:
        return

    if {"SUPABASE_URL", "SUPABASE_KEY"} & updates.keys():
        _refresh_database(getattr(state, "database", None))

    if {"AUTO_APPLY_THRESHOLD", "REVIEW_THRESHOLD"} & updates.keys():
        _refresh_thresholds(getattr(state, "coordinator", None))

    scheduler_keys = {
        "RECONCILE_INTERVAL_SECONDS",
        "RECONCILE_USER_IDS",
        "RECONCILE_LOOKBACK_DAYS",
        "RECONCILE_LOOKAHEAD_DAYS",
    }
    if scheduler_keys & updates.keys():
        _refresh_scheduler(getattr(state, "scheduler", None))


def _refresh_database(client: Any) -> None:
    from bill_reconciler.integration.supabase import SupabaseClient

    if not isinstance(client, SupabaseClient):
        return
    client.refresh()
    logger.info("[CONFIG] Database client refreshed.")


def _refresh_thresholds(coordinator: Any) -> None:
    from bill_reconciler.services.reconciliation import ReconciliationCoordinator

    if not isinstance(coordinator, ReconciliationCoordinator):
        return
    coordinator.refresh_match_config()


def _refresh_scheduler(scheduler: Any) -> None:
    from bill_reconciler.services.scheduler import ReconciliationScheduler

    if not isinstance(scheduler, ReconciliationScheduler):
        return
    scheduler.interval_seconds = settings.get_env_float("RECONCILE_INTERVAL_SECONDS", 0.0)
    scheduler.user_ids = settings.get_env_list("RECONCILE_USER_IDS")
    scheduler.lookback_days = settings.get_env_int(
        "RECONCILE_LOOKBACK_DAYS",
        settings.DEFAULT_RECONCILE_LOOKBACK_DAYS,
        min_value=0,
    )
    scheduler.lookahead_days = settings.get_env_int(
        "RECONCILE_LOOKAHEAD_DAYS",
        settings.DEFAULT_RECONCILE_LOOKAHEAD_DAYS,
        min_value=0,
    )
    logger.info(
        "[CONFIG] Scheduler set to every %s s for %d user(s).",
        scheduler.interval_seconds,
        len(scheduler.user_ids),
    )
    scheduler.start()


def _format_yaml_value(value: str) -> str:
    if not value:
        return ""
    needs_quotes = value[:1].isspace() or value[-1:].isspace()
    if any(marker in value for marker in (":", "#", '"', "'")):
        needs_quotes = True
    if not needs_quotes:
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f"\"{escaped}\""
