"""Configuration loading and typed settings for planwright runs."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml

from .errors import ConfigError

__all__ = [
    "DEFAULT_ALLOWED_COMMANDS",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "ExecutionSettings",
    "FeedbackSettings",
    "copy_config_template",
    "load_config",
    "resolve_project_root",
    "write_config",
]

DEFAULT_CONFIG_NAME = "planwright.yaml"

DEFAULT_ALLOWED_COMMANDS: List[str] = [
    "npm",
    "yarn",
    "pnpm",
    "node",
    "next",
    "npx",
    "ls",
    "cat",
    "grep",
    "find",
    "pwd",
    "head",
    "tail",
    "wc",
    "mkdir",
    "touch",
    "echo",
    "cp",
    "mv",
    "rm",
    "git",
    "java",
    "javac",
    "mvn",
    "gradle",
    "python",
    "python3",
    "pip",
    "pip3",
    "poetry",
    "go",
    "rustc",
    "cargo",
    "gcc",
    "g++",
    "clang",
    "make",
    "cmake",
    "which",
    "env",
    "curl",
    "wget",
]

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "root": ".",
    },
    "models": {
        "default": "grok-code-fast-1",
        "base_url": "https://api.x.ai/v1/chat/completions",
        "timeout": 120,
        "temperature": 0.3,
        "max_tokens": 32000,
    },
    "execution": {
        "task_delay_ms": 500,
        "max_clarification_depth": 5,
        "find_files_limit": 3,
        "analyze_files_limit": 10,
        "min_code_block_length": 10,
        "package_manager": "npm",
        "allowed_commands": list(DEFAULT_ALLOWED_COMMANDS),
        "verify_written_files": False,
        "max_fix_attempts": 3,
    },
    "feedback": {
        "max_iterations": 5,
        "min_score": 70,
        "low_quality_floor": 50,
        "abort_floor": 40,
        "abort_after_iteration": 3,
    },
    "paths": {
        "planning": "planning",
        "logs": ".planwright/logs",
    },
}


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            base[key] = _merge(current, value)
        else:
            base[key] = value
    return base


def load_config(config_path: Path | str | None) -> Dict[str, Any]:
    """Load YAML configuration and layer it over the defaults.

    A missing file yields the defaults unchanged. Malformed YAML, or a document
    that is not a mapping at the top level, raises :class:`ConfigError`.
    """
    config = copy_config_template()
    if config_path is None:
        return config
    path = Path(config_path)
    if not path.exists():
        return config

    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    return _merge(config, data)


def resolve_project_root(config: Mapping[str, Any], config_path: Path | None = None) -> Path:
    """Resolve the project root relative to the configuration file."""
    project_cfg = config.get("project") or {}
    root_value = Path(str(project_cfg.get("root") or "."))
    if root_value.is_absolute():
        return root_value
    anchor = config_path.parent if config_path is not None else Path.cwd()
    return (anchor / root_value).resolve()


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    return value if isinstance(value, Mapping) else {}


def _int(section: Mapping[str, Any], key: str, default: int, *, minimum: int = 0) -> int:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(int(value), minimum)


def _bool(section: Mapping[str, Any], key: str, default: bool) -> bool:
    value = section.get(key)
    return value if isinstance(value, bool) else default


@dataclass(slots=True)
class ExecutionSettings:
    """Knobs that bound the workflow runner and task executor."""

    task_delay_ms: int = 500
    max_clarification_depth: int = 5
    find_files_limit: int = 3
    analyze_files_limit: int = 10
    min_code_block_length: int = 10
    package_manager: str = "npm"
    allowed_commands: List[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_COMMANDS))
    verify_written_files: bool = False
    max_fix_attempts: int = 3

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ExecutionSettings":
        section = _section(config, "execution")
        defaults = cls()
        commands = section.get("allowed_commands")
        if isinstance(commands, list) and all(isinstance(item, str) for item in commands):
            allowed = list(commands)
        else:
            allowed = defaults.allowed_commands
        manager = section.get("package_manager")
        return cls(
            task_delay_ms=_int(section, "task_delay_ms", defaults.task_delay_ms),
            max_clarification_depth=_int(
                section, "max_clarification_depth", defaults.max_clarification_depth, minimum=1
            ),
            find_files_limit=_int(section, "find_files_limit", defaults.find_files_limit, minimum=1),
            analyze_files_limit=_int(
                section, "analyze_files_limit", defaults.analyze_files_limit, minimum=1
            ),
            min_code_block_length=_int(
                section, "min_code_block_length", defaults.min_code_block_length
            ),
            package_manager=manager if isinstance(manager, str) and manager else defaults.package_manager,
            allowed_commands=allowed,
            verify_written_files=_bool(section, "verify_written_files", defaults.verify_written_files),
            max_fix_attempts=_int(section, "max_fix_attempts", defaults.max_fix_attempts, minimum=1),
        )


@dataclass(slots=True)
class FeedbackSettings:
    """Stop conditions for the iterative feedback loop."""

    max_iterations: int = 5
    min_score: int = 70
    low_quality_floor: int = 50
    abort_floor: int = 40
    abort_after_iteration: int = 3

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "FeedbackSettings":
        section = _section(config, "feedback")
        defaults = cls()
        return cls(
            max_iterations=_int(section, "max_iterations", defaults.max_iterations, minimum=1),
            min_score=_int(section, "min_score", defaults.min_score),
            low_quality_floor=_int(section, "low_quality_floor", defaults.low_quality_floor),
            abort_floor=_int(section, "abort_floor", defaults.abort_floor),
            abort_after_iteration=_int(
                section, "abort_after_iteration", defaults.abort_after_iteration, minimum=1
            ),
        )
