"""
Variable resolution.

Precedence, lowest to highest:
  1. the variable's declared default
  2. a variable file (YAML mapping of name -> value)
  3. environment variables named LAKEFORM_VAR_<name>

A variable with no value from any source is pending.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from lakeform.errors import ParseError
from lakeform.models.declaration import VariableDeclaration

logger = logging.getLogger(__name__)

ENV_PREFIX = "LAKEFORM_VAR_"


def load_var_file(path: Path) -> Dict[str, Any]:
    """Read a YAML variable file."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as e:
        raise ParseError(f"cannot read variable file: {e}", source=str(path)) from e
    except yaml.YAMLError as e:
        raise ParseError(f"invalid YAML in variable file: {e}", source=str(path)) from e
    if not isinstance(data, dict):
        raise ParseError("variable file must be a mapping", source=str(path))
    return data


def coerce(variable: VariableDeclaration, value: Any, origin: str) -> Any:
    """Coerce a raw value to the variable's declared type."""
    address = f"var.{variable.name}"
    kind = variable.type

    # Environment values always arrive as strings
    if isinstance(value, str) and kind in ("number", "bool", "list", "map"):
        try:
            value = yaml.safe_load(value)
        except yaml.YAMLError as e:
            raise ParseError(f"cannot parse {origin} value as {kind}", address) from e

    if kind == "string":
        if isinstance(value, (dict, list)):
            raise ParseError(f"{origin} value must be a string", address)
        return value if isinstance(value, str) else str(value)
    if kind == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ParseError(f"{origin} value must be a number", address)
        return value
    if kind == "bool":
        if not isinstance(value, bool):
            raise ParseError(f"{origin} value must be a bool", address)
        return value
    if kind == "list":
        if not isinstance(value, list):
            raise ParseError(f"{origin} value must be a list", address)
        return value
    if kind == "map":
        if not isinstance(value, dict):
            raise ParseError(f"{origin} value must be a map", address)
        return value
    raise ParseError(f"unknown variable type '{kind}'", address)


def resolve_variables(
    variables: Mapping[str, VariableDeclaration],
    var_file_values: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Tuple[Dict[str, Any], List[str]]:
    """
    Resolve every declared variable.
    Returns (values, pending_names).
    """
    if environ is None:
        environ = os.environ
    var_file_values = var_file_values or {}

    for name in var_file_values:
        if name not in variables:
            logger.warning("Variable file sets undeclared variable %r; ignoring", name)

    values: Dict[str, Any] = {}
    pending: List[str] = []
    for name, variable in variables.items():
        env_key = f"{ENV_PREFIX}{name}"
        if env_key in environ:
            values[name] = coerce(variable, environ[env_key], "environment")
        elif name in var_file_values:
            values[name] = coerce(variable, var_file_values[name], "variable file")
        elif variable.has_default:
            values[name] = (
                coerce(variable, variable.default, "default")
                if variable.default is not None else None
            )
        else:
            pending.append(name)
            logger.info("Variable %r has no value; dependent resources stay pending", name)
    return values, pending
