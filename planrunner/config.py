# planrunner/config.py
"""
Configuration loaded from a YAML file.

Example planrunner.yaml:

    store_dir: ~/.planrunner
    max_fallback_plans: 50
    template_dirs: [./templates]
    generation:
      max_steps: 8
      include_docs: true
    execution:
      max_retries: 2
      step_timeout: 120

PLANRUNNER_STORE_DIR overrides store_dir from the environment.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .executor import ExecutionOptions
from .generator import GenerationOptions
from .storage import DEFAULT_MAX_FALLBACK_PLANS

logger = logging.getLogger(__name__)

STORE_DIR_ENV = "PLANRUNNER_STORE_DIR"
DEFAULT_STORE_DIR = Path("~/.planrunner")


@dataclass
class PlannerConfig:
    """Settings for the generator, the executor and plan storage."""
    store_dir: Path = DEFAULT_STORE_DIR
    max_fallback_plans: int = DEFAULT_MAX_FALLBACK_PLANS
    template_dirs: List[Path] = field(default_factory=list)
    generation: GenerationOptions = field(default_factory=GenerationOptions)
    execution: ExecutionOptions = field(default_factory=ExecutionOptions)

    @property
    def resolved_store_dir(self) -> Path:
        return Path(self.store_dir).expanduser()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlannerConfig":
        return cls(
            store_dir=Path(data.get("store_dir", DEFAULT_STORE_DIR)),
            max_fallback_plans=data.get("max_fallback_plans", DEFAULT_MAX_FALLBACK_PLANS),
            template_dirs=[Path(p) for p in data.get("template_dirs", [])],
            generation=GenerationOptions.from_dict(data.get("generation") or {}),
            execution=ExecutionOptions.from_dict(data.get("execution") or {}),
        )

    @classmethod
    def from_yaml(cls, yaml_content: str) -> "PlannerConfig":
        data = yaml.safe_load(yaml_content) or {}
        if not isinstance(data, dict):
            raise ValueError("Configuration must be a YAML mapping")
        return cls.from_dict(data)

    @classmethod
    def from_file(cls, path: Path | str) -> "PlannerConfig":
        with open(path, "r") as f:
            return cls.from_yaml(f.read())


def load_config(path: Optional[Path | str] = None, environ: Optional[Dict[str, str]] = None) -> PlannerConfig:
    """
    Load configuration from a file (if given) and apply environment overrides.

    Args:
        path: YAML config file; defaults are used when None
        environ: Environment mapping (defaults to os.environ)

    Returns:
        The merged configuration
    """
    environ = os.environ if environ is None else environ

    if path is not None:
        config = PlannerConfig.from_file(path)
        logger.debug(f"Loaded config from {path}")
    else:
        config = PlannerConfig()

    store_dir = environ.get(STORE_DIR_ENV)
    if store_dir:
        config.store_dir = Path(store_dir)

    return config
