"""Differ: desired graph + state -> ordered change set.

Policy per resource:
- in graph, absent from state: create
- in both, resolved attributes equal: no-op
- in both, attributes differ: update, or delete + create when a changed
  attribute is force_new in the provider schema
- in state, absent from graph: delete

Ordering: deletes of removed resources first (consumers before producers,
using the dependencies recorded in state), then the graph's nodes in
topological order. A replacement pair sits at its node's position.
A removed resource that a kept record still depends on is deleted after
the walk, once its consumers have been updated or replaced. Those deletes
and the deposed instances left by create-before-destroy replacements come
last, consumers first.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from reconciler.errors import ReferenceError
from reconciler.graph import ResourceGraph, topological_sort
from reconciler.state import StateRecord
from values import UNKNOWN, Reference, render, resolve, values_equal

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
DELETE = 'delete'
NOOP = 'no-op'

ACTIONS = (CREATE, UPDATE, DELETE, NOOP)


@dataclass
class ChangeEntry:
    """One unit of work for the executor.

    Attributes:
        id: Resource identifier
        action: create, update, delete or no-op
        type: Provider kind
        old: Last applied attributes (None for create)
        new: Desired attributes, possibly containing UNKNOWN (None for delete)
        reason: Why the entry exists beyond the plain action
        external_id: Instance the entry operates on (update/delete)
        replace: Part of a replacement
        deposed: Deletes an instance kept aside by create-before-destroy
    """
    id: str
    action: str
    type: str
    old: Optional[dict] = None
    new: Optional[dict] = None
    reason: str = ''
    external_id: Optional[str] = None
    replace: bool = False
    deposed: bool = False

    @property
    def symbol(self) -> str:
        if self.replace and not self.deposed:
            return '-/+'
        return {CREATE: '+', UPDATE: '~', DELETE: '-', NOOP: ' '}[self.action]

    def changed_attributes(self) -> list[str]:
        """Attribute names whose desired value differs from the last applied one."""
        if self.old is None or self.new is None:
            return []
        keys = set(self.old) | set(self.new)
        return sorted(k for k in keys if not values_equal(self.old.get(k), self.new.get(k)))

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'action': self.action,
            'type': self.type,
        }
        if self.old is not None:
            d['old'] = render(self.old)
        if self.new is not None:
            d['new'] = render(self.new)
        if self.reason:
            d['reason'] = self.reason
        if self.external_id is not None:
            d['external_id'] = self.external_id
        if self.replace:
            d['replace'] = True
        if self.deposed:
            d['deposed'] = True
        return d


@dataclass
class Plan:
    """Ordered change set for one run."""
    entries: list[ChangeEntry] = field(default_factory=list)
    destroy: bool = False

    @property
    def has_changes(self) -> bool:
        return any(e.action != NOOP for e in self.entries)

    def changes(self) -> list[ChangeEntry]:
        return [e for e in self.entries if e.action != NOOP]

    def counts(self) -> dict[str, int]:
        """Per-resource counts; a replacement counts once as create and once as delete."""
        counts = {CREATE: 0, UPDATE: 0, DELETE: 0, NOOP: 0}
        for entry in self.entries:
            counts[entry.action] += 1
        return counts

    def summary(self) -> str:
        counts = self.counts()
        return (f"{counts[CREATE]} to create, {counts[UPDATE]} to update, "
                f"{counts[DELETE]} to delete")

    def to_dict(self) -> dict:
        return {
            'destroy': self.destroy,
            'has_changes': self.has_changes,
            'summary': self.counts(),
            'entries': [e.to_dict() for e in self.entries],
        }


class _PlannedValues:
    """Attribute values as they will be after the plan, where known."""

    def __init__(self):
        self._values: dict[str, dict] = {}
        self._unknown: set[str] = set()

    def mark_unknown(self, resource_id: str) -> None:
        """All attributes of a resource being created or replaced are unknown."""
        self._unknown.add(resource_id)

    def set(self, resource_id: str, values: dict) -> None:
        self._values[resource_id] = values

    def lookup(self, ref: Reference) -> Any:
        if ref.target in self._unknown:
            return UNKNOWN
        values = self._values.get(ref.target)
        if values is None:
            raise ReferenceError(f"Reference {ref} resolved before its producer was planned")
        return values.get(ref.attribute)


def _known_values(record: StateRecord, desired: dict, changed: list[str], schema) -> dict:
    """Values readable from a producer being updated: changed and computed ones are unknown."""
    values = record.values()
    for name in changed:
        values[name] = UNKNOWN
    for name in schema.computed():
        values[name] = UNKNOWN
    for name, value in desired.items():
        if name not in changed:
            values[name] = value
    return values


def _uses_create_before_destroy(provider, default: bool) -> bool:
    declared = getattr(provider, 'create_before_destroy', None)
    return default if declared is None else bool(declared)


def _removal_entries(record: StateRecord, reason: str) -> list[ChangeEntry]:
    """Delete a record's deposed instances, then the record itself."""
    return _deposed_entries(record) + [ChangeEntry(
        id=record.id,
        action=DELETE,
        type=record.type,
        old=dict(record.attributes),
        external_id=record.external_id,
        reason=reason,
    )]


def _still_referenced(removed: list[str], graph: ResourceGraph,
                      state: dict[str, StateRecord]) -> set[str]:
    """Removed ids a kept record depends on, directly or through other removed ids."""
    removed_set = set(removed)
    stack = [dep for rid, record in state.items() if rid in graph
             for dep in record.dependencies if dep in removed_set]
    held: set[str] = set()
    while stack:
        rid = stack.pop()
        if rid in held:
            continue
        held.add(rid)
        stack.extend(dep for dep in state[rid].dependencies if dep in removed_set)
    return held


def _deposed_entries(record: StateRecord) -> list[ChangeEntry]:
    return [
        ChangeEntry(
            id=record.id,
            action=DELETE,
            type=record.type,
            old=dict(item.get('attributes') or {}),
            external_id=item['external_id'],
            reason='deposed by an earlier replacement',
            replace=True,
            deposed=True,
        )
        for item in record.deposed
    ]


def _reverse_dependency_order(ids: list[str], state: dict[str, StateRecord]) -> list[str]:
    """Consumers before producers according to recorded dependencies."""
    dependencies = {rid: set(state[rid].dependencies) for rid in ids}
    return list(reversed(topological_sort(ids, dependencies)))


def diff(graph: ResourceGraph, state: dict[str, StateRecord],
         create_before_destroy: bool = False) -> Plan:
    """Compare the desired graph with loaded state.

    Args:
        graph: Validated resource graph
        state: Records from StateStore.load()
        create_before_destroy: Replacement order for provider kinds that
            do not declare one

    Returns:
        Plan with entries in execution order
    """
    entries: list[ChangeEntry] = []

    removed = [rid for rid in state if rid not in graph]
    held = _still_referenced(removed, graph, state)
    for rid in _reverse_dependency_order([r for r in removed if r not in held], state):
        entries.extend(_removal_entries(state[rid], 'removed from configuration'))

    planned = _PlannedValues()
    order = graph.topological_order()
    # Deletes that must wait for the rest of the plan, by resource id
    deferred: dict[str, list[ChangeEntry]] = {}
    for rid in order:
        node = graph.get_node(rid)
        provider = graph.registry.get(node.type, rid)
        schema = provider.schema
        desired = schema.apply_defaults(
            {name: resolve(expr, planned.lookup) for name, expr in node.attributes.items()})
        record = state.get(rid)

        if record is None:
            entries.append(ChangeEntry(id=rid, action=CREATE, type=node.type, new=desired))
            planned.mark_unknown(rid)
            continue

        if record.deposed:
            deferred.setdefault(rid, []).extend(_deposed_entries(record))

        old = dict(record.attributes)
        keys = set(old) | set(desired)
        changed = sorted(k for k in keys if not values_equal(old.get(k), desired.get(k)))
        if not changed:
            entries.append(ChangeEntry(id=rid, action=NOOP, type=node.type, old=old, new=desired,
                                       external_id=record.external_id))
            planned.set(rid, record.values())
            continue

        forcing = [k for k in changed if schema.is_force_new(k)]
        if not forcing:
            entries.append(ChangeEntry(id=rid, action=UPDATE, type=node.type, old=old, new=desired,
                                       external_id=record.external_id,
                                       reason=f"changed: {', '.join(changed)}"))
            planned.set(rid, _known_values(record, desired, changed, schema))
            continue

        reason = f"replacement forced by {', '.join(forcing)}"
        planned.mark_unknown(rid)
        create = ChangeEntry(id=rid, action=CREATE, type=node.type, old=old, new=desired,
                             external_id=record.external_id, reason=reason, replace=True)
        delete = ChangeEntry(id=rid, action=DELETE, type=node.type, old=old,
                             external_id=record.external_id, reason=reason, replace=True)
        if _uses_create_before_destroy(provider, create_before_destroy):
            delete.deposed = True
            delete.reason += ' (create before destroy)'
            entries.append(create)
            deferred.setdefault(rid, []).append(delete)
        else:
            entries.extend([delete, create])

    tail = [rid for rid in state if rid in deferred or rid in held]
    for rid in _reverse_dependency_order(tail, state):
        if rid in held:
            entries.extend(_removal_entries(state[rid], 'removed from configuration'))
        else:
            entries.extend(deferred[rid])

    plan = Plan(entries=entries)
    logger.info(f"[plan] {plan.summary()}")
    return plan


def diff_destroy(state: dict[str, StateRecord]) -> Plan:
    """Plan deleting every recorded resource, consumers first.

    Deposed instances of a record are deleted just before the record itself.
    """
    entries = []
    for rid in _reverse_dependency_order(list(state), state):
        entries.extend(_removal_entries(state[rid], 'destroy'))
    plan = Plan(entries=entries, destroy=True)
    logger.info(f"[plan] {plan.summary()}")
    return plan
