"""Resource graph builder.

Turns template declarations into a dependency graph. Edges come from
explicit dependsOn lists and from symbolic references inside property bags:

    {"Ref": "Queue"}                    -> physical id of Queue
    {"Fn::GetAtt": ["Queue", "Arn"]}    -> output attribute of Queue
    {"Fn::GetAtt": "Queue.Arn"}         -> same, dotted form
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from common import content_hash
from engine.dependencies import resolve_batches
from engine.errors import DuplicateLogicalIdError, TemplateFormatError, UnresolvedReferenceError
from template import ResourceDeclaration, Template

logger = logging.getLogger(__name__)

REF = 'Ref'
GET_ATT = 'Fn::GetAtt'


def _split_get_att(value: Any) -> tuple[str, str]:
    if isinstance(value, str) and '.' in value:
        logical_id, attribute = value.split('.', 1)
        return logical_id, attribute
    if isinstance(value, list) and len(value) == 2 and all(isinstance(v, str) for v in value):
        return value[0], value[1]
    raise TemplateFormatError(f"Malformed {GET_ATT}: {value!r}")


def find_references(value: Any) -> set[str]:
    """Collect logical ids referenced anywhere inside value."""
    refs: set[str] = set()
    if isinstance(value, dict):
        if len(value) == 1 and REF in value and isinstance(value[REF], str):
            refs.add(value[REF])
        elif len(value) == 1 and GET_ATT in value:
            refs.add(_split_get_att(value[GET_ATT])[0])
        else:
            for item in value.values():
                refs |= find_references(item)
    elif isinstance(value, list):
        for item in value:
            refs |= find_references(item)
    return refs


def resolve_references(
    value: Any,
    ref: Callable[[str], Any],
    get_att: Callable[[str, str], Any],
) -> Any:
    """Return a copy of value with Ref/GetAtt expressions substituted."""
    if isinstance(value, dict):
        if len(value) == 1 and REF in value and isinstance(value[REF], str):
            return ref(value[REF])
        if len(value) == 1 and GET_ATT in value:
            return get_att(*_split_get_att(value[GET_ATT]))
        return {k: resolve_references(v, ref, get_att) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, ref, get_att) for v in value]
    return copy.deepcopy(value)


@dataclass
class GraphNode:
    """A declaration plus its dependency edges.

    Attributes:
        declaration: The template declaration
        properties: Effective property bag (overrides applied)
        dependencies: Logical ids this node is provisioned after
        dependents: Logical ids provisioned after this node
        batch: Index of the batch this node lands in
    """
    declaration: ResourceDeclaration
    properties: dict
    dependencies: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)
    batch: int = 0

    @property
    def logical_id(self) -> str:
        return self.declaration.logical_id

    @property
    def type(self) -> str:
        return self.declaration.type

    @property
    def provider_kind(self) -> str:
        return self.declaration.provider_kind

    def __repr__(self) -> str:
        return f"GraphNode({self.logical_id}, type={self.type}, batch={self.batch})"


class ResourceGraph:
    """Dependency graph built from a template's declarations.

    Construction validates identifiers and references and orders the nodes;
    it has no side effects.
    """

    def __init__(self, declarations: Iterable[ResourceDeclaration], outputs: dict | None = None):
        """Build the graph.

        Raises:
            DuplicateLogicalIdError: If two declarations share a logical id
            UnresolvedReferenceError: If a reference names an undeclared id
            CyclicDependencyError: If the edges contain a cycle
        """
        self.outputs = dict(outputs or {})
        self._nodes: dict[str, GraphNode] = {}
        self._build(list(declarations))
        self._batches = resolve_batches({lid: n.dependencies for lid, n in self._nodes.items()})
        for index, batch in enumerate(self._batches):
            for logical_id in batch:
                self._nodes[logical_id].batch = index

    @classmethod
    def from_template(cls, template: Template) -> 'ResourceGraph':
        return cls(template.resources, template.outputs)

    def _build(self, declarations: list[ResourceDeclaration]) -> None:
        for decl in declarations:
            if decl.logical_id in self._nodes:
                raise DuplicateLogicalIdError(decl.logical_id)
            self._nodes[decl.logical_id] = GraphNode(
                declaration=decl, properties=decl.properties.effective())

        for node in self._nodes.values():
            refs = find_references(node.properties) | set(node.declaration.depends_on)
            for ref in sorted(refs):
                if ref not in self._nodes:
                    raise UnresolvedReferenceError(node.logical_id, ref)
            node.dependencies = refs
            for ref in refs:
                if ref != node.logical_id:
                    self._nodes[ref].dependents.add(node.logical_id)

        for name, expr in self.outputs.items():
            for ref in sorted(find_references(expr)):
                if ref not in self._nodes:
                    raise UnresolvedReferenceError(f'output:{name}', ref)

    @property
    def nodes(self) -> dict[str, GraphNode]:
        return dict(self._nodes)

    @property
    def edges(self) -> list[tuple[str, str]]:
        """Dependency edges as (from, to): 'from' is provisioned after 'to'."""
        return sorted(
            (lid, dep) for lid, node in self._nodes.items() for dep in node.dependencies
        )

    def get_node(self, logical_id: str) -> GraphNode:
        """Get a node by logical id.

        Raises:
            KeyError: If not in the graph
        """
        return self._nodes[logical_id]

    def batches(self) -> list[list[str]]:
        return [list(b) for b in self._batches]

    def create_order(self) -> list[GraphNode]:
        """Nodes in provisioning order (dependencies first)."""
        return [self._nodes[lid] for batch in self._batches for lid in batch]

    def declarations(self) -> list[dict]:
        """Serialized declarations in provisioning order."""
        return [n.declaration.to_dict() for n in self.create_order()]

    def content_hash(self) -> str:
        """Content address of the graph: declarations plus outputs."""
        canonical = sorted(
            ({
                'logicalId': n.logical_id,
                'type': n.type,
                'properties': n.properties,
                'dependsOn': sorted(n.dependencies),
            } for n in self._nodes.values()),
            key=lambda d: d['logicalId'],
        )
        return content_hash({'resources': canonical, 'outputs': self.outputs})
