"""Settings schema, validation and defaults for the ledger services."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/settings.yaml"
DATABASE_URL_ENV = "TRADELEDGER_DATABASE_URL"
IRS_WASH_SALE_WINDOW = 30

# Marks a schema section whose value in the file is not a mapping
_NOT_A_SECTION = object()


class ConfigValidationError(Exception):
    """Raised when a settings file has errors."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Configuration validation failed: {'; '.join(errors)}")


@dataclass
class ValidationResult:
    """Errors and warnings found in a settings mapping."""
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.valid


@dataclass(frozen=True)
class Setting:
    """Rules for one leaf setting."""
    type: type
    default: Any = None
    choices: Optional[tuple] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    env_var: Optional[str] = None

    def resolve_default(self) -> Any:
        if self.env_var and os.getenv(self.env_var):
            return os.getenv(self.env_var)
        return self.default

    def check(self, value: Any) -> Optional[str]:
        """Problem with ``value``, or None when it is acceptable."""
        if isinstance(value, bool) and self.type is not bool:
            return f"Expected {self.type.__name__}, got bool"
        if self.type is float and isinstance(value, int):
            value = float(value)
        if not isinstance(value, self.type):
            return f"Expected {self.type.__name__}, got {type(value).__name__}"
        if self.minimum is not None and value < self.minimum:
            return f"Value {value} is below minimum {self.minimum}"
        if self.maximum is not None and value > self.maximum:
            return f"Value {value} exceeds maximum {self.maximum}"
        if self.choices is not None and value not in self.choices:
            return f"Value must be one of {list(self.choices)}"
        return None


CONFIG_SCHEMA = {
    "database": {
        "url": Setting(str, "sqlite:///data/tradeledger.db", env_var=DATABASE_URL_ENV),
        "echo": Setting(bool, False),
    },
    "logging": {
        "level": Setting(str, "INFO", choices=("DEBUG", "INFO", "WARNING", "ERROR")),
        "file": Setting(str, "logs/tradeledger.log"),
        "json_format": Setting(bool, True),
    },
    "positions": {
        "cost_basis_method": Setting(str, "fifo", choices=("fifo", "lifo", "hifo")),
        "option_multiplier": Setting(int, 100, minimum=1, maximum=10000),
    },
    "posting": {
        # Attempts per unit of work when an account version check fails
        "max_attempts": Setting(int, 3, minimum=1, maximum=20),
        "base_delay": Setting(float, 0.05, minimum=0.0, maximum=10.0),
    },
    "wash_sale": {
        "window_days": Setting(int, IRS_WASH_SALE_WINDOW, minimum=0, maximum=90),
        "match_options_on_underlying": Setting(bool, False),
    },
    "tax": {
        "default_box": Setting(str, "A", choices=("A", "B", "C")),
    },
}


def _walk(config: dict, schema: dict, prefix: str = "") -> Iterator[tuple[str, Any, Any]]:
    """Yield ``(path, value, rules)`` for every schema entry and unknown key."""
    config = config if isinstance(config, dict) else {}
    for key, rules in schema.items():
        path = f"{prefix}{key}"
        if isinstance(rules, dict):
            section = config.get(key)
            if section is not None and not isinstance(section, dict):
                yield path, section, _NOT_A_SECTION
            else:
                yield from _walk(section or {}, rules, f"{path}.")
        else:
            yield path, config.get(key), rules
    for key in sorted(set(config) - set(schema)):
        yield f"{prefix}{key}", config[key], None


def _section(config: dict, name: str) -> dict:
    section = config.get(name)
    return section if isinstance(section, dict) else {}


class ConfigValidator:
    """Checks ledger settings against ``CONFIG_SCHEMA`` and fills in defaults."""

    def __init__(self, schema: dict = None):
        self.schema = schema or CONFIG_SCHEMA

    def validate(self, config: dict) -> ValidationResult:
        """
        Validate a settings mapping.

        Unknown keys produce warnings rather than errors, so a settings
        file shared with other tools still loads.
        """
        errors = []
        warnings = []

        for path, value, rules in _walk(config, self.schema):
            if rules is None:
                warnings.append(f"{path}: Unknown setting ignored")
                continue
            if rules is _NOT_A_SECTION:
                errors.append(f"{path}: Expected a mapping of settings")
                continue
            if value is None or value == "":
                continue
            problem = rules.check(value)
            if problem:
                errors.append(f"{path}: {problem}")

        warnings.extend(self._ledger_warnings(config or {}))

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def _ledger_warnings(self, config: dict) -> list[str]:
        warnings = []

        window = _section(config, "wash_sale").get("window_days", IRS_WASH_SALE_WINDOW)
        if window != IRS_WASH_SALE_WINDOW:
            warnings.append(
                f"wash_sale.window_days is {window}; "
                f"the IRS window is {IRS_WASH_SALE_WINDOW} days on each side of the sale"
            )

        url = _section(config, "database").get("url") or os.getenv(DATABASE_URL_ENV) or ""
        if url.startswith("sqlite") and ":memory:" in url:
            warnings.append("database.url points at an in-memory database; nothing will persist")

        return warnings

    def apply_defaults(self, config: dict) -> dict:
        """Copy of ``config`` with every missing setting filled in."""
        return self._with_defaults(config or {}, self.schema)

    def _with_defaults(self, config: dict, schema: dict) -> dict:
        result = dict(config)
        for key, rules in schema.items():
            if isinstance(rules, dict):
                result[key] = self._with_defaults(result.get(key) or {}, rules)
            elif result.get(key) is None:
                result[key] = rules.resolve_default()
        return result


def default_settings() -> dict:
    """Settings with every default applied."""
    return ConfigValidator().apply_defaults({})


def read_settings_file(config_path: str) -> dict:
    """Raw settings mapping from a YAML file."""
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        return yaml.safe_load(f) or {}


def validate_config(config_path: str = DEFAULT_CONFIG_PATH) -> ValidationResult:
    """
    Validate a settings file without applying defaults.

    Raises:
        FileNotFoundError: If the file doesn't exist
    """
    return ConfigValidator().validate(read_settings_file(config_path))


def load_and_validate_config(config_path: str = DEFAULT_CONFIG_PATH) -> dict:
    """
    Load a settings file, raising on errors.

    Returns:
        Settings with defaults applied

    Raises:
        ConfigValidationError: If validation fails
        FileNotFoundError: If the file doesn't exist
    """
    config = read_settings_file(config_path)
    validator = ConfigValidator()
    result = validator.validate(config)

    if not result.valid:
        raise ConfigValidationError(result.errors)

    for warning in result.warnings:
        logger.warning(f"Config warning: {warning}")

    return validator.apply_defaults(config)
