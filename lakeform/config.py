"""
Engine configuration loading.

Precedence (lowest to highest): EngineConfig defaults, the ``engine:``
section of ``lakeform.yaml``, ``LAKEFORM_*`` environment variables, and
whatever the caller (usually the CLI) passes as overrides.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from lakeform.errors import LakeformError
from lakeform.models.engine import EngineConfig

DEFAULT_CONFIG_FILE = "lakeform.yaml"

ENV_OVERRIDES = {
    "LAKEFORM_MAX_WORKERS": "max_workers",
    "LAKEFORM_FAILURE_POLICY": "failure_policy",
    "LAKEFORM_MAX_RETRIES": "max_retries",
    "LAKEFORM_OPERATION_TIMEOUT": "operation_timeout_seconds",
    "LAKEFORM_DRIFT_SCHEDULE": "drift_schedule",
}


def read_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    """The ``engine:`` section of a config file, or {} if the file is absent."""
    path = Path(path)
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise LakeformError(f"invalid config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise LakeformError(f"config file {path} must be a mapping")
    engine = data.get("engine") or {}
    if not isinstance(engine, dict):
        raise LakeformError(f"'engine' in {path} must be a mapping")
    return engine


def load_engine_config(
    path: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> EngineConfig:
    """Build an EngineConfig from file, environment and explicit overrides."""
    environ = os.environ if environ is None else environ
    values: Dict[str, Any] = read_config_file(path or DEFAULT_CONFIG_FILE)

    for env_name, field in ENV_OVERRIDES.items():
        if environ.get(env_name):
            values[field] = environ[env_name]

    for field, value in (overrides or {}).items():
        if value is not None:
            values[field] = value

    try:
        return EngineConfig(**values)
    except ValidationError as e:
        raise LakeformError(f"invalid engine configuration: {e}") from e
