"""
Diff/Plan Engine.

Compares declarations with recorded state, resource by resource in
dependency order:

  not in state                      -> create
  in state, changed attributes      -> update (replace if any change is force-new)
  in state, only the hash changed   -> update with no attribute changes
  in state, nothing changed         -> noop
  in state, no longer declared      -> delete (dependents first)

A value that references a resource being created or replaced is only known
after apply, and always counts as a change. The plan is a pure function of
(state, declarations, schema registry).
"""

import logging
from typing import Any, Dict, List, Mapping, Optional, Set

from lakeform.graph.builder import DependencyGraph
from lakeform.loader.interpolation import (
    UNKNOWN,
    contains_literal,
    contains_unknown,
    parse_reference,
    pending_names,
    references,
    substitute,
)
from lakeform.models.declaration import DeclarationSet, ResourceDeclaration
from lakeform.models.plan import Action, AttributeChange, Plan, PlanNode
from lakeform.models.state import StateEntry
from lakeform.schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)


class Planner:
    """Builds plans. Holds no state between calls."""

    def __init__(self, registry: SchemaRegistry):
        self.registry = registry

    def plan(
        self,
        declarations: DeclarationSet,
        state: Mapping[str, StateEntry],
    ) -> Plan:
        """
        Plan the changes that move ``state`` to ``declarations``.
        Raises SchemaViolationError, UnresolvedReferenceError or CycleError
        before anything is planned.
        """
        self.registry.validate_all(declarations.resources)
        graph = DependencyGraph.from_declarations(declarations.resources)
        order = graph.order()

        by_address = {r.address: r for r in declarations.resources}
        nodes: Dict[str, PlanNode] = {}
        for address in order:
            nodes[address] = self._plan_resource(
                by_address[address],
                state.get(address),
                graph.dependencies(address),
                nodes,
                state,
                declarations.sensitive_values,
            )

        deletes = self._plan_deletes(set(nodes), state)
        plan = Plan(nodes=[nodes[a] for a in order] + deletes)
        logger.info("Planned %s", _format_summary(plan))
        return plan

    def plan_destroy(self, state: Mapping[str, StateEntry]) -> Plan:
        """Delete everything recorded in state, dependents first."""
        plan = Plan(nodes=self._plan_deletes(set(), state), destroy=True)
        logger.info("Planned destroy of %d resources", len(plan.nodes))
        return plan

    # --- Resources ---

    def _plan_resource(
        self,
        declaration: ResourceDeclaration,
        prior: Optional[StateEntry],
        dependencies: List[str],
        nodes: Dict[str, PlanNode],
        state: Mapping[str, StateEntry],
        sensitive_values: List[str],
    ) -> PlanNode:
        kind = declaration.kind
        desired = self.registry.with_defaults(kind, declaration.attributes)
        content_hash = declaration.content_hash()
        sensitive = self._sensitive_attributes(kind, desired, prior, sensitive_values)

        if prior is None:
            action = Action.CREATE
            changes = [
                self._change(kind, name, raw, None, nodes, state, sensitive)
                for name, raw in sorted(desired.items())
            ]
        else:
            changes = self._diff(kind, desired, prior, nodes, state, sensitive)
            if any(c.forces_replacement for c in changes):
                action = Action.REPLACE
            elif changes or prior.content_hash != content_hash:
                action = Action.UPDATE
            else:
                action = Action.NOOP

        return PlanNode(
            address=declaration.address,
            kind=kind,
            name=declaration.name,
            action=action,
            desired=desired,
            changes=changes,
            prior=prior,
            depends_on=dependencies,
            dependencies=dependencies,
            pending=pending_names(desired),
            sensitive_attributes=sorted(sensitive),
            content_hash=content_hash,
        )

    def _sensitive_attributes(
        self,
        kind: str,
        desired: Dict[str, Any],
        prior: Optional[StateEntry],
        sensitive_values: List[str],
    ) -> Set[str]:
        """Schema-sensitive attributes plus any holding a sensitive variable's value."""
        names = set(self.registry.get(kind).sensitive_attributes())
        for name, value in desired.items():
            if contains_literal(value, sensitive_values) or any(
                self.registry.is_sensitive(ref.kind, ref.attribute) for ref in references(value)
            ):
                names.add(name)
        if prior is not None:
            names.update(prior.sensitive_attributes)
        return names

    def _diff(
        self,
        kind: str,
        desired: Dict[str, Any],
        prior: StateEntry,
        nodes: Dict[str, PlanNode],
        state: Mapping[str, StateEntry],
        sensitive: Set[str],
    ) -> List[AttributeChange]:
        spec = self.registry.get(kind)
        names: Set[str] = set(desired)
        for name in prior.attributes:
            attr = spec.attributes.get(name)
            if attr is not None and not attr.computed:
                names.add(name)

        changes = []
        for name in sorted(names):
            change = self._change(
                kind, name, desired.get(name), prior.attributes.get(name),
                nodes, state, sensitive,
            )
            if change.known and change.new == change.old:
                continue
            changes.append(change)
        return changes

    def _change(
        self,
        kind: str,
        name: str,
        raw: Any,
        old: Any,
        nodes: Dict[str, PlanNode],
        state: Mapping[str, StateEntry],
        sensitive: Set[str],
    ) -> AttributeChange:
        new = self._resolve(raw, nodes, state)
        known = not contains_unknown(new)
        return AttributeChange(
            name=name,
            old=old,
            new=new if known else None,
            known=known,
            forces_replacement=self.registry.forces_replacement(kind, name),
            sensitive=name in sensitive,
        )

    def _resolve(self, value: Any, nodes: Dict[str, PlanNode], state: Mapping[str, StateEntry]) -> Any:
        """Resolve references as far as the current plan allows."""

        def lookup(expression: str) -> Any:
            if expression.startswith("pending."):
                return UNKNOWN
            ref = parse_reference(expression)
            node = nodes.get(ref.target)
            if node is None or node.action in (Action.CREATE, Action.REPLACE):
                return UNKNOWN
            change = node.change_for(ref.attribute)
            if change is not None:
                return change.new if change.known else UNKNOWN
            entry = state.get(ref.target)
            if entry is None or ref.attribute not in entry.attributes:
                return UNKNOWN
            return entry.attributes[ref.attribute]

        return substitute(value, lookup)

    # --- Deletions ---

    def _plan_deletes(self, declared: Set[str], state: Mapping[str, StateEntry]) -> List[PlanNode]:
        orphans = [a for a in sorted(state) if a not in declared]
        if not orphans:
            return []

        rank = {address: i for i, address in enumerate(orphans)}
        graph = DependencyGraph(rank, {a: state[a].dependencies for a in orphans})

        nodes = []
        for address in graph.reverse_order():
            entry = state[address]
            dependents = sorted(
                other for other, e in state.items()
                if other != address and address in e.dependencies
            )
            nodes.append(
                PlanNode(
                    address=address,
                    kind=entry.kind,
                    name=entry.name,
                    action=Action.DELETE,
                    prior=entry,
                    depends_on=dependents,
                    content_hash=entry.content_hash,
                )
            )
        return nodes


def _format_summary(plan: Plan) -> str:
    counts = plan.summary()
    return ", ".join(f"{counts[a.value]} {a.value}" for a in Action)
