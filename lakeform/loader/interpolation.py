"""
String interpolation for declaration values.

Three expression forms may appear inside ``${...}``:
  ${var.<name>}                 input variable, substituted at load time
  ${pending.<name>}             a variable that has no value yet
  ${<kind>.<name>.<attribute>}  another resource's attribute

A string that is exactly one expression evaluates to the referenced value
with its own type; anything else interpolates to a string.
"""

import re
from typing import Any, Callable, List

from lakeform.models.declaration import Reference

EXPRESSION = re.compile(r"\$\{\s*([^}]+?)\s*\}")
_REFERENCE = re.compile(r"^([A-Za-z][A-Za-z0-9_]*)\.([A-Za-z_][A-Za-z0-9_-]*)\.([A-Za-z_][A-Za-z0-9_]*)$")


class _Unknown:
    """Sentinel for values only known after apply."""

    def __repr__(self) -> str:
        return "(known after apply)"


UNKNOWN = _Unknown()


def expressions(value: Any) -> List[str]:
    """All ``${...}`` expression bodies in a (possibly nested) value."""
    found: List[str] = []
    if isinstance(value, str):
        found.extend(m.group(1) for m in EXPRESSION.finditer(value))
    elif isinstance(value, dict):
        for item in value.values():
            found.extend(expressions(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(expressions(item))
    return found


def parse_reference(expression: str) -> Reference:
    """Parse ``kind.name.attribute``. Raises ValueError on anything else."""
    match = _REFERENCE.match(expression)
    if not match or expression.startswith(("var.", "pending.")):
        raise ValueError(f"not a resource reference: {expression!r}")
    return Reference(kind=match.group(1), name=match.group(2), attribute=match.group(3))


def references(value: Any) -> List[Reference]:
    """Resource references embedded in a value, in order of appearance."""
    refs: List[Reference] = []
    for expr in expressions(value):
        if expr.startswith(("var.", "pending.")):
            continue
        try:
            ref = parse_reference(expr)
        except ValueError:
            continue
        if ref not in refs:
            refs.append(ref)
    return refs


def pending_names(value: Any) -> List[str]:
    """Names of pending variables embedded in a value."""
    names = []
    for expr in expressions(value):
        if expr.startswith("pending."):
            name = expr[len("pending."):]
            if name not in names:
                names.append(name)
    return names


def substitute(value: Any, resolve: Callable[[str], Any]) -> Any:
    """
    Replace every expression using ``resolve(expression_body)``.
    If ``resolve`` returns UNKNOWN for any expression, the enclosing
    string becomes UNKNOWN.
    """
    if isinstance(value, str):
        whole = EXPRESSION.fullmatch(value)
        if whole:
            return resolve(whole.group(1).strip())

        unknown = False

        def _replace(match: "re.Match[str]") -> str:
            nonlocal unknown
            resolved = resolve(match.group(1).strip())
            if resolved is UNKNOWN:
                unknown = True
                return ""
            return _stringify(resolved)

        result = EXPRESSION.sub(_replace, value)
        return UNKNOWN if unknown else result
    if isinstance(value, dict):
        return {k: substitute(v, resolve) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, resolve) for v in value]
    return value


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def contains_literal(value: Any, needles: List[str]) -> bool:
    """True if any string inside ``value`` contains one of ``needles``."""
    if not needles:
        return False
    if isinstance(value, str):
        return any(n and n in value for n in needles)
    if isinstance(value, dict):
        return any(contains_literal(v, needles) for v in value.values())
    if isinstance(value, list):
        return any(contains_literal(v, needles) for v in value)
    return False


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
