"""
Configuration Tools for Agentic Continuation Server

Handles YAML configuration cascade merge:
  1. Global defaults:  ~/.config/agentic-continuation/config.yaml
  2. Project config:   <repo>/.omc/config.yaml

Each level overrides the previous. The merged result is validated against
DEFAULT_CONFIG; problems are reported as warnings, never raised.
"""

import copy
import logging
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


FEATURE_NAMES = [
    "goal-loop",
    "work-intensity",
    "pipeline",
    "qa-cycle",
    "todo-continuation",
    "session-recovery",
    "keyword-hints",
    "delegation-audit",
]

DEFAULT_CONFIG = {
    "disabled_features": [],
    "agents": {},
    "categories": {},
    "model_mapping": {
        "tier_defaults": {
            "low": "low",
            "medium": "medium",
            "high": "high"
        },
        "debug_logging": False
    },
    "background_task": {
        "default_concurrency": 5,
        "provider_concurrency": {},
        "model_concurrency": {}
    },
    "goal_loop": {
        "max_iterations": 100,
        "completion_marker": "<promise>TASK_COMPLETE</promise>",
        "require_verification": False,
        "max_verification_attempts": 3
    },
    "work_intensity": {
        "max_reinforcements": 20
    },
    "pipeline": {
        "max_phase_retries": 3,
        "delegation_enforcement": "warn"
    },
    "qa_cycle": {
        "max_iterations": 10,
        "build_command": "make build",
        "lint_command": "make lint",
        "test_command": "make test"
    },
    "todo_continuation": {
        "countdown_seconds": 2
    },
    "recovery": {
        "abort_grace_seconds": 3.0
    }
}

# Sections whose keys are user-defined names rather than fixed settings
OPEN_SECTIONS = {
    "agents",
    "categories",
    "background_task.provider_concurrency",
    "background_task.model_concurrency",
}

ENFORCEMENT_LEVELS = ["strict", "warn", "off"]


def _validate_config(config: dict, defaults: dict, prefix: str = "") -> list[str]:
    """Validate config against defaults, returning warnings for unknown keys."""
    warnings = []
    for key, value in config.items():
        full_key = f"{prefix}.{key}" if prefix else key
        if key not in defaults:
            warnings.append(f"Unknown config key: '{full_key}'")
        elif full_key in OPEN_SECTIONS:
            if not isinstance(value, dict):
                warnings.append(
                    f"Invalid type for '{full_key}': expected dict, got {type(value).__name__}"
                )
        elif isinstance(value, dict) and isinstance(defaults.get(key), dict):
            warnings.extend(_validate_config(value, defaults[key], full_key))
        elif value is not None:
            expected_type = type(defaults.get(key))
            if expected_type is float and isinstance(value, int) and not isinstance(value, bool):
                continue
            if expected_type is not type(None) and not isinstance(value, expected_type):
                if not (expected_type == int and isinstance(value, bool)):
                    warnings.append(
                        f"Invalid type for '{full_key}': expected {expected_type.__name__}, got {type(value).__name__}"
                    )

    if not prefix:
        for feature in config.get("disabled_features") or []:
            if feature not in FEATURE_NAMES:
                warnings.append(f"Unknown feature in disabled_features: '{feature}'")
        tier_defaults = (config.get("model_mapping") or {}).get("tier_defaults") or {}
        if isinstance(tier_defaults, dict):
            for tier, model in tier_defaults.items():
                if model is None:
                    warnings.append(f"Empty value for 'model_mapping.tier_defaults.{tier}'")
        enforcement = (config.get("pipeline") or {}).get("delegation_enforcement")
        if enforcement is not None and enforcement not in ENFORCEMENT_LEVELS:
            warnings.append(
                f"Invalid pipeline.delegation_enforcement '{enforcement}'. "
                f"Must be one of: {', '.join(ENFORCEMENT_LEVELS)}"
            )
    return warnings


def _deep_merge(base: dict, override: dict) -> dict:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> Optional[dict]:
    if not path.exists():
        return None

    try:
        with open(path) as f:
            loaded = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Ignoring unreadable config {path}: {e}")
        return None

    if loaded is not None and not isinstance(loaded, dict):
        logger.warning(f"Ignoring config {path}: top level must be a mapping")
        return None
    return loaded


def _get_global_config_path() -> Path:
    return Path.home() / ".config" / "agentic-continuation" / "config.yaml"


def _get_project_config_path(project_dir: Optional[str] = None) -> Path:
    base = Path(project_dir) if project_dir else Path.cwd()
    return base / ".omc" / "config.yaml"


def config_get_effective(project_dir: Optional[str] = None) -> dict[str, Any]:
    config = copy.deepcopy(DEFAULT_CONFIG)
    warnings = []

    global_path = _get_global_config_path()
    global_config = _load_yaml(global_path)
    if global_config:
        warnings.extend(_validate_config(global_config, DEFAULT_CONFIG))
        config = _deep_merge(config, global_config)

    project_path = _get_project_config_path(project_dir)
    project_config = _load_yaml(project_path)
    if project_config:
        warnings.extend(_validate_config(project_config, DEFAULT_CONFIG))
        config = _deep_merge(config, project_config)

    sources = []
    if global_config:
        sources.append(str(global_path))
    if project_config:
        sources.append(str(project_path))

    for warning in warnings:
        logger.warning(warning)

    return {
        "config": config,
        "sources": sources,
        "warnings": warnings,
        "has_global": global_config is not None,
        "has_project": project_config is not None
    }


def _section(config: dict, name: str) -> dict[str, Any]:
    """Return a config section with defaults filled in for missing keys."""
    return _deep_merge(DEFAULT_CONFIG.get(name, {}), config.get(name) or {})


def config_is_feature_enabled(config: dict, feature: str) -> bool:
    return feature not in set(config.get("disabled_features") or [])


def config_get_goal_loop(config: dict) -> dict[str, Any]:
    section = _section(config, "goal_loop")
    section["enabled"] = config_is_feature_enabled(config, "goal-loop")
    return section


def config_get_pipeline(config: dict) -> dict[str, Any]:
    section = _section(config, "pipeline")
    section["enabled"] = config_is_feature_enabled(config, "pipeline")
    return section


def config_get_qa_cycle(config: dict) -> dict[str, Any]:
    section = _section(config, "qa_cycle")
    section["enabled"] = config_is_feature_enabled(config, "qa-cycle")
    return section


def config_get_work_intensity(config: dict) -> dict[str, Any]:
    section = _section(config, "work_intensity")
    section["enabled"] = config_is_feature_enabled(config, "work-intensity")
    return section


def config_get_todo_continuation(config: dict) -> dict[str, Any]:
    section = _section(config, "todo_continuation")
    section["enabled"] = config_is_feature_enabled(config, "todo-continuation")
    return section


def config_get_background_task(config: dict) -> dict[str, Any]:
    return _section(config, "background_task")


def config_get_model_mapping(config: dict) -> dict[str, Any]:
    return _section(config, "model_mapping")
