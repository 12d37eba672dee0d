"""
Configuration Management for phaserun.

WHAT THIS FILE DOES:
-------------------
Loads and validates configuration from YAML files with sensible defaults.
Provides a clean interface for the runtime, path, phase and logging
settings used by the engine and the CLI.

CONFIG FILE LOCATION:
--------------------
Default: ~/.phaserun/config.yaml (then ./phaserun.yaml, ./phaserun.yml)

CONFIG FORMAT:
-------------
```yaml
runtime:
  binary: "claude"
  model: "opus"
  timeout_seconds: 1800
  extra_dirs: []

paths:
  workspace: "~/.phaserun/workspace"
  project: "."
  state_dir: null

projects:
  discoclaw: "~/code/discoclaw"

phases:
  max_files_per_phase: 5
  max_audit_fix_attempts: 2

logging:
  level: "INFO"
```
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml


DEFAULT_WORKSPACE_FILES = [
    "TOOLS.md",
    "AGENTS.md",
    "MEMORY.md",
    "SOUL.md",
    "IDENTITY.md",
    "USER.md",
]


# =============================================================================
# CONFIGURATION DATA CLASSES
# =============================================================================

@dataclass
class RuntimeConfig:
    """Configuration for the agent runtime."""
    binary: str = "claude"
    model: str = "opus"
    timeout_seconds: float = 1800.0
    extra_dirs: list[str] = field(default_factory=list)

    def extra_dir_paths(self) -> list[Path]:
        return [Path(d).expanduser() for d in self.extra_dirs]


@dataclass
class PathsConfig:
    """Where plans, phase state and project sources live."""
    workspace: str = "~/.phaserun/workspace"
    project: str = "."
    state_dir: Optional[str] = None  # None: next to the plan file

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace).expanduser()

    @property
    def project_path(self) -> Path:
        return Path(self.project).expanduser()

    @property
    def state_dir_path(self) -> Optional[Path]:
        return Path(self.state_dir).expanduser() if self.state_dir else None


@dataclass
class PhasesConfig:
    """Decomposition and audit settings."""
    max_files_per_phase: int = 5
    max_audit_fix_attempts: int = 2
    workspace_files: list[str] = field(default_factory=lambda: list(DEFAULT_WORKSPACE_FILES))


@dataclass
class LoggingConfig:
    level: str = "INFO"


@dataclass
class Config:
    """
    Complete configuration for phaserun.

    This is the main configuration object that holds all settings.
    It can be loaded from a YAML file or created with defaults.
    """
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    projects: dict[str, str] = field(default_factory=dict)
    phases: PhasesConfig = field(default_factory=PhasesConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def project_map(self) -> dict[str, Path]:
        """Project name -> expanded directory."""
        return {name: Path(path).expanduser() for name, path in self.projects.items()}


# =============================================================================
# DEFAULT CONFIGURATION
# =============================================================================

def get_default_config() -> Config:
    """
    Get the default configuration.

    Returns a Config that works out of the box with the `claude` CLI on
    PATH and the current directory as the project.
    """
    return Config()


# =============================================================================
# CONFIGURATION LOADING
# =============================================================================

def _parse_config(data: dict) -> Config:
    """Parse a complete configuration from dict."""
    config = get_default_config()

    if "runtime" in data:
        runtime_data = data["runtime"] or {}
        config.runtime = RuntimeConfig(
            binary=runtime_data.get("binary", "claude"),
            model=runtime_data.get("model", "opus"),
            timeout_seconds=float(runtime_data.get("timeout_seconds", 1800)),
            extra_dirs=list(runtime_data.get("extra_dirs") or []),
        )

    if "paths" in data:
        paths_data = data["paths"] or {}
        config.paths = PathsConfig(
            workspace=paths_data.get("workspace", "~/.phaserun/workspace"),
            project=paths_data.get("project", "."),
            state_dir=paths_data.get("state_dir"),
        )

    if "projects" in data:
        config.projects = {
            str(name): str(path)
            for name, path in (data["projects"] or {}).items()
        }

    if "phases" in data:
        phases_data = data["phases"] or {}
        config.phases = PhasesConfig(
            max_files_per_phase=int(phases_data.get("max_files_per_phase", 5)),
            max_audit_fix_attempts=int(phases_data.get("max_audit_fix_attempts", 2)),
            workspace_files=list(phases_data.get("workspace_files") or DEFAULT_WORKSPACE_FILES),
        )

    if "logging" in data:
        logging_data = data["logging"] or {}
        config.logging = LoggingConfig(level=str(logging_data.get("level", "INFO")).upper())

    if config.phases.max_files_per_phase < 1:
        raise ValueError("phases.max_files_per_phase must be at least 1")
    if config.phases.max_audit_fix_attempts < 0:
        raise ValueError("phases.max_audit_fix_attempts cannot be negative")

    return config


def _default_paths() -> list[Path]:
    return [
        Path.home() / ".phaserun" / "config.yaml",
        Path("./phaserun.yaml"),
        Path("./phaserun.yml"),
    ]


def load_config(path: Optional[Path] = None) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        path: Path to config file. If None, tries default locations:
              1. ~/.phaserun/config.yaml
              2. ./phaserun.yaml
              3. ./phaserun.yml
              4. Falls back to defaults

    Returns:
        Loaded configuration (or defaults if file not found)

    Raises:
        FileNotFoundError: If an explicit path does not exist
    """
    if path:
        path = Path(path).expanduser()
        if path.exists():
            return load_config_from_file(path)
        raise FileNotFoundError(f"Config file not found: {path}")

    for default_path in _default_paths():
        if default_path.exists():
            return load_config_from_file(default_path)

    return get_default_config()


def load_config_from_file(path: Path) -> Config:
    """
    Load configuration from a specific file.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If a setting is out of range
    """
    path = Path(path).expanduser()

    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    return _parse_config(data)


def save_config(config: Config, path: Path) -> None:
    """
    Save configuration to a YAML file.

    Args:
        config: Configuration to save
        path: Output path
    """
    data = {
        "runtime": {
            "binary": config.runtime.binary,
            "model": config.runtime.model,
            "timeout_seconds": config.runtime.timeout_seconds,
            "extra_dirs": list(config.runtime.extra_dirs),
        },
        "paths": {
            "workspace": config.paths.workspace,
            "project": config.paths.project,
            "state_dir": config.paths.state_dir,
        },
        "projects": dict(config.projects),
        "phases": {
            "max_files_per_phase": config.phases.max_files_per_phase,
            "max_audit_fix_attempts": config.phases.max_audit_fix_attempts,
            "workspace_files": list(config.phases.workspace_files),
        },
        "logging": {
            "level": config.logging.level,
        },
    }

    path = Path(path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
