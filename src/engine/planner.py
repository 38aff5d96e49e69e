"""Change set planner.

Diffs a stack against a target graph without touching any provider:

- Create: declared in the target, absent from the stack
- Update: declared properties or type changed; replacement is decided by
  the provider's oracle, and a type change always replaces
- Update (dependency replaced): references a resource being replaced
- Delete: in the stack but not the target, ordered dependents first; also
  superseded physical resources still awaiting deletion

The changeset id is derived from the target hash and the base version, so
planning the same target against the same stack version is idempotent.
"""

import logging
from typing import Optional

from common import content_hash
from engine.dependencies import reverse_batches
from engine.graph import ResourceGraph, find_references
from engine.models import ChangeSet, OperationKind, ResourceChange, Stack
from engine.providers import ProviderRegistry

logger = logging.getLogger(__name__)

REASON_NEW = "new resource"
REASON_PROPERTIES = "properties changed"
REASON_TYPE = "type changed"
REASON_DEPENDENCY = "dependency replaced"
REASON_REMOVED = "removed from template"
REASON_SUPERSEDED = "superseded by replacement"


def changeset_id_for(target_hash: str, base_version: int) -> str:
    return f"cs-{content_hash({'target': target_hash, 'base_version': base_version})[:20]}"


class ChangeSetPlanner:
    """Computes ChangeSets; consults the registry only for replacement rules."""

    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    def plan(self, stack_id: str, stack: Optional[Stack], graph: ResourceGraph) -> ChangeSet:
        """Diff the stack (None if it does not exist yet) against the target graph.

        Raises:
            ProviderError: If a changed native type has no registered provider
        """
        resources = stack.resources if stack is not None else {}
        base_version = stack.version if stack is not None else 0
        target_hash = graph.content_hash()

        changes: list[ResourceChange] = []
        replaced: set[str] = set()
        for node in graph.create_order():
            current = resources.get(node.logical_id)
            change: Optional[ResourceChange] = None

            if current is None or current.physical_id is None:
                change = ResourceChange(
                    node.logical_id, OperationKind.CREATE, node.type, REASON_NEW,
                    new_properties=node.properties,
                )
            elif current.type != node.type:
                change = self._update(current, node, REASON_TYPE, replacement=True)
            elif current.properties != node.properties:
                replacement = self.registry.is_replacement_required(
                    node.type, node.provider_kind, current.properties, node.properties)
                change = self._update(current, node, REASON_PROPERTIES, replacement)
            elif node.dependencies & replaced:
                change = self._update(
                    current, node, REASON_DEPENDENCY,
                    self._dependency_forces_replacement(node, current.properties, replaced),
                )

            if change is None:
                continue
            change.batch = node.batch
            if change.replacement:
                replaced.add(node.logical_id)
            changes.append(change)

        changes.extend(self._deletes(stack, graph))

        changeset = ChangeSet(
            changeset_id=changeset_id_for(target_hash, base_version),
            stack_id=stack_id,
            target_hash=target_hash,
            base_version=base_version,
            base_hash=stack.template_hash if stack is not None else None,
            changes=changes,
            target=graph.declarations(),
            outputs=dict(graph.outputs),
        )
        logger.debug(f"Planned {changeset.changeset_id} for {stack_id}: {changeset.summary()}")
        return changeset

    def _update(self, current, node, reason: str, replacement: bool) -> ResourceChange:
        return ResourceChange(
            node.logical_id,
            OperationKind.UPDATE,
            node.type,
            reason,
            replacement=replacement,
            physical_id=current.physical_id,
            previous_properties=current.properties,
            new_properties=node.properties,
        )

    def _dependency_forces_replacement(self, node, properties: dict, replaced: set[str]) -> bool:
        """Ask the oracle whether the keys that reference replaced resources force replacement."""
        touched = {k for k, v in properties.items() if find_references(v) & replaced}
        if not touched:
            return False
        changed = dict(properties)
        for key in touched:
            changed[key] = {'__replaced__': True}
        return self.registry.is_replacement_required(node.type, node.provider_kind, properties, changed)

    def _deletes(self, stack: Optional[Stack], graph: ResourceGraph) -> list[ResourceChange]:
        if stack is None:
            return []
        target = graph.nodes
        removed = {lid: r for lid, r in stack.resources.items() if lid not in target}
        deletes: list[ResourceChange] = []

        for retired in stack.retired:
            deletes.append(ResourceChange(
                retired.logical_id, OperationKind.DELETE, retired.type, REASON_SUPERSEDED,
                replacement=True,
                physical_id=retired.physical_id,
                previous_properties=retired.properties,
            ))

        order = reverse_batches({
            lid: [d for d in r.depends_on if d in removed] for lid, r in removed.items()
        })
        for batch_index, batch in enumerate(order):
            for logical_id in batch:
                resource = removed[logical_id]
                deletes.append(ResourceChange(
                    logical_id, OperationKind.DELETE, resource.type, REASON_REMOVED,
                    batch=batch_index,
                    physical_id=resource.physical_id,
                    previous_properties=resource.properties,
                ))
        return deletes
