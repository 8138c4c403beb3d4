"""
Stack loader — turns YAML declaration documents into a DeclarationSet.

A stack is a single YAML file or a directory of them. Each document may hold:

    variables:
      project:
        type: string
        default: acme
    resources:
      aws_s3_bucket:
        bronze:
          bucket: "${var.project}-bronze"
    outputs:
      bronze_arn:
        value: "${aws_s3_bucket.bronze.arn}"
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import yaml

from lakeform.errors import ParseError, UnresolvedReferenceError
from lakeform.loader.interpolation import substitute
from lakeform.loader.variables import load_var_file, resolve_variables
from lakeform.models.declaration import (
    DeclarationSet,
    OutputDeclaration,
    ResourceDeclaration,
    VariableDeclaration,
)
from lakeform.utils.logger import register_secret

logger = logging.getLogger(__name__)

_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_KIND = re.compile(r"^[a-z][a-z0-9_]*$")
_SECTIONS = ("variables", "resources", "outputs")
_VARIABLE_TYPES = ("string", "number", "bool", "list", "map")


def stack_files(
    path: Union[str, Path],
    exclude: Iterable[Optional[Union[str, Path]]] = (),
) -> List[Path]:
    """
    YAML files making up a stack, in a stable order.
    Files in ``exclude`` (config or variable files kept in the same
    directory) are not part of the stack.
    """
    path = Path(path)
    if path.is_dir():
        skipped = {Path(p).resolve() for p in exclude if p}
        files = sorted(
            p for p in path.iterdir()
            if p.suffix in (".yaml", ".yml") and p.resolve() not in skipped
        )
        if not files:
            raise ParseError("no .yaml documents found", source=str(path))
        return files
    if not path.exists():
        raise ParseError("stack path does not exist", source=str(path))
    return [path]


def load_stack(
    path: Union[str, Path],
    var_file: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
    exclude: Iterable[Optional[Union[str, Path]]] = (),
) -> DeclarationSet:
    """Load every document of a stack and resolve its variables."""
    documents = []
    for file in stack_files(path, exclude):
        try:
            text = file.read_text(encoding="utf-8")
        except OSError as e:
            raise ParseError(f"cannot read document: {e}", source=str(file)) from e
        documents.append((str(file), text))

    var_values = load_var_file(Path(var_file)) if var_file else None
    return parse_documents(documents, var_values, environ)


def parse_documents(
    documents: List[tuple],
    var_file_values: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> DeclarationSet:
    """Parse (source, yaml_text) pairs into a DeclarationSet."""
    variables: Dict[str, VariableDeclaration] = {}
    raw_resources: List[dict] = []
    raw_outputs: Dict[str, dict] = {}

    for source, text in documents:
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ParseError(f"invalid YAML: {e}", source=source) from e
        if not isinstance(data, dict):
            raise ParseError("document must be a mapping", source=source)

        unknown = set(data) - set(_SECTIONS)
        if unknown:
            raise ParseError(
                f"unknown top-level section(s): {', '.join(sorted(unknown))}",
                source=source,
            )

        for name, spec in _mapping(data.get("variables"), "variables", source).items():
            if name in variables:
                raise ParseError("variable declared twice", f"var.{name}", source)
            variables[name] = _parse_variable(name, spec, source)

        for kind, blocks in _mapping(data.get("resources"), "resources", source).items():
            if not _KIND.match(str(kind)):
                raise ParseError(f"invalid resource kind '{kind}'", source=source)
            for name, body in _mapping(blocks, f"resources.{kind}", source).items():
                raw_resources.append(_parse_resource(kind, name, body, source))

        for name, spec in _mapping(data.get("outputs"), "outputs", source).items():
            if name in raw_outputs:
                raise ParseError("output declared twice", f"output.{name}", source)
            if not isinstance(spec, dict):
                spec = {"value": spec}
            if "value" not in spec:
                raise ParseError("output has no value", f"output.{name}", source)
            raw_outputs[name] = spec

    seen = set()
    for raw in raw_resources:
        address = f"{raw['kind']}.{raw['name']}"
        if address in seen:
            raise ParseError("resource declared twice", address, raw["source"])
        seen.add(address)

    values, pending = resolve_variables(variables, var_file_values, environ)

    resources = []
    for index, raw in enumerate(raw_resources):
        address = f"{raw['kind']}.{raw['name']}"
        attributes = substitute(raw["attributes"], _variable_resolver(address, variables, values))
        resources.append(
            ResourceDeclaration(
                kind=raw["kind"],
                name=raw["name"],
                attributes=attributes,
                depends_on=raw["depends_on"],
                index=index,
                source=raw["source"],
            )
        )

    outputs = {}
    for name, spec in raw_outputs.items():
        address = f"output.{name}"
        outputs[name] = OutputDeclaration(
            name=name,
            value=substitute(spec["value"], _variable_resolver(address, variables, values)),
            description=str(spec.get("description", "")),
            sensitive=bool(spec.get("sensitive", False)),
        )

    sensitive_values = []
    for name, variable in variables.items():
        value = values.get(name)
        if variable.sensitive and value not in (None, ""):
            sensitive_values.append(str(value))
            register_secret(str(value))

    logger.debug(
        "Loaded %d resources, %d outputs, %d variables (%d pending)",
        len(resources), len(outputs), len(variables), len(pending),
    )
    return DeclarationSet(
        resources=resources,
        outputs=outputs,
        variables=variables,
        values=values,
        pending=pending,
        sensitive_values=sensitive_values,
    )


def _mapping(value: Any, section: str, source: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ParseError(f"'{section}' must be a mapping", source=source)
    return value


def _parse_variable(name: str, spec: Any, source: str) -> VariableDeclaration:
    if not _NAME.match(str(name)):
        raise ParseError("invalid variable name", f"var.{name}", source)
    spec = spec or {}
    if not isinstance(spec, dict):
        raise ParseError("variable block must be a mapping", f"var.{name}", source)
    var_type = spec.get("type", "string")
    if var_type not in _VARIABLE_TYPES:
        raise ParseError(f"unknown variable type '{var_type}'", f"var.{name}", source)
    return VariableDeclaration(
        name=name,
        type=var_type,
        description=str(spec.get("description", "")),
        default=spec.get("default"),
        has_default="default" in spec,
        sensitive=bool(spec.get("sensitive", False)),
    )


def _parse_resource(kind: str, name: Any, body: Any, source: str) -> dict:
    address = f"{kind}.{name}"
    if not _NAME.match(str(name)):
        raise ParseError("invalid resource name", address, source)
    if body is not None and not isinstance(body, dict):
        raise ParseError("resource block must be a mapping", address, source)
    body = dict(body or {})
    depends_on = body.pop("depends_on", []) or []
    if not isinstance(depends_on, list):
        raise ParseError("depends_on must be a list", address, source)
    for dep in depends_on:
        parts = str(dep).split(".")
        if len(parts) != 2 or not all(parts):
            raise ParseError(f"depends_on entry '{dep}' is not a kind.name address", address, source)
    return {
        "kind": kind,
        "name": str(name),
        "attributes": body,
        "depends_on": [str(d) for d in depends_on],
        "source": source,
    }


def _variable_resolver(address: str, variables: Dict[str, VariableDeclaration], values: Dict[str, Any]):
    """Substitute ``var.*``; leave resource references for apply time."""

    def resolve(expression: str) -> Any:
        if not expression.startswith("var."):
            return "${" + expression + "}"
        name = expression[len("var."):]
        if name not in variables:
            raise UnresolvedReferenceError(address, expression)
        if name not in values:
            return "${pending." + name + "}"
        return values[name]

    return resolve
