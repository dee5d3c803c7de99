"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before the engine starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.config import EngineConfig

logger = logging.getLogger(__name__)


# ===== Policy Schema =====
class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    engine: EngineConfig


# ===== App Schema =====
class AppInfoConfig(BaseModel):
    """Process identity"""
    name: str = Field(default="yield-lifecycle-engine", min_length=1)


class LoggingConfig(BaseModel):
    """Log level and file"""
    level: str = Field(default="INFO")
    file: str = Field(default="logs/engine.log", min_length=1)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        normalized = v.upper()
        if normalized not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level {v}")
        return normalized


class StateConfig(BaseModel):
    """Durable store location"""
    store: str = Field(default="json", pattern="^json$", description="State store backend")
    path: str = Field(default="data/engine_state.json", min_length=1)


class SourceConfig(BaseModel):
    """Opportunity source selection"""
    kind: str = Field(default="pool_cache", pattern="^(pool_cache|http)$")
    path: Optional[str] = Field(default=None, description="Pool cache file (kind=pool_cache)")
    url: Optional[str] = Field(default=None, description="Pools endpoint (kind=http)")
    protocol: str = Field(default="Orca", min_length=1)
    timeout_seconds: float = Field(default=30.0, gt=0)


class AuditConfig(BaseModel):
    enabled: bool = True
    file: str = Field(default="logs/engine_audit.jsonl", min_length=1)


class MetricsConfig(BaseModel):
    enabled: bool = False
    port: int = Field(default=9100, gt=0, lt=65536)


class ApiConfig(BaseModel):
    enabled: bool = True
    host: str = Field(default="127.0.0.1", min_length=1)
    port: int = Field(default=3001, gt=0, lt=65536)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppInfoConfig = Field(default_factory=AppInfoConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    source: SourceConfig = Field(default_factory=SourceConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    mark = getattr(error, "problem_mark", None)
    if mark is None or getattr(mark, "line", None) is None:
        return f"Malformed YAML in {file_path}: {error}"
    return (
        f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: "
        f"{getattr(error, 'problem', str(error))}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping ({e})")
    return errors


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(Path(config_dir), "policy.yaml", PolicySchema)


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(Path(config_dir), "app.yaml", AppSchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Perform logical consistency checks across configuration files.

    Detects:
    - Ticks slower than the hold period (positions would overstay by a full tick)
    - Source timeouts that would overrun the tick interval
    - HTTP source without a URL
    """
    errors = []
    config_dir = Path(config_dir)

    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))
    app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))
    engine = policy.engine

    if engine.tick_interval_minutes >= engine.hold_duration_hours * 60:
        errors.append(
            f"UNSAFE: engine.tick_interval_minutes ({engine.tick_interval_minutes:g}) is not shorter than "
            f"hold_duration_hours ({engine.hold_duration_hours:g}h). Positions would overstay their hold."
        )

    if engine.source_timeout_seconds >= engine.tick_interval_seconds:
        errors.append(
            f"UNSAFE: engine.source_timeout_seconds ({engine.source_timeout_seconds:g}s) must be shorter "
            f"than the tick interval ({engine.tick_interval_seconds:g}s)."
        )

    if app.source.kind == "http" and not app.source.url:
        errors.append("MISSING: source.url is required when source.kind=http")

    if not errors:
        logger.info("✅ Configuration sanity checks passed")
    else:
        logger.warning(f"⚠️  {len(errors)} sanity check issue(s) found")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_policy(config_path))
    all_errors.extend(validate_app(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors
