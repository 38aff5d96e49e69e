"""Template loading for stack orchestration.

Templates declare the resources of one stack. They arrive as YAML or JSON
documents in one of two shapes:

List form (canonical):
    name: web
    resources:
      - logicalId: Bucket
        type: Local::File
        properties: {FileName: bucket.txt, Content: hello}
        dependsOn: [Network]
        overrides: {Tags.owner: ops}

Mapping form (CloudFormation style):
    Resources:
      Bucket:
        Type: Local::File
        Properties: {FileName: bucket.txt}
        DependsOn: Network

Property values may reference other resources with {"Ref": "Id"} or
{"Fn::GetAtt": ["Id", "Attr"]}; the graph builder resolves those into
dependency edges.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from engine.errors import DuplicateLogicalIdError, TemplateFormatError

logger = logging.getLogger(__name__)

# Resource types with this prefix are provisioned through the callback gateway
CUSTOM_TYPE_PREFIX = 'Custom::'


def provider_kind_for(resource_type: str) -> str:
    """Return 'custom' for gateway-provisioned types, 'native' otherwise."""
    return 'custom' if resource_type.startswith(CUSTOM_TYPE_PREFIX) else 'native'


@dataclass
class RawOverride:
    """Untyped escape-hatch patch applied on top of the typed properties.

    Attributes:
        path: Dotted path into the property bag (e.g. 'Tags.owner')
        value: Value written at that path
    """
    path: str
    value: Any

    def apply(self, target: dict) -> None:
        """Write value into target at the dotted path, creating dicts as needed."""
        keys = self.path.split('.')
        node = target
        for key in keys[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[keys[-1]] = copy.deepcopy(self.value)


@dataclass
class PropertyBag:
    """Typed properties plus an ordered list of raw overrides.

    Downstream code only ever sees effective(), so overrides never need to
    be interpreted anywhere else.
    """
    values: dict = field(default_factory=dict)
    overrides: list[RawOverride] = field(default_factory=list)

    def effective(self) -> dict:
        result = copy.deepcopy(self.values)
        for override in self.overrides:
            override.apply(result)
        return result

    def to_dict(self) -> dict:
        d: dict[str, Any] = {'properties': copy.deepcopy(self.values)}
        if self.overrides:
            d['overrides'] = {o.path: copy.deepcopy(o.value) for o in self.overrides}
        return d

    @classmethod
    def from_dict(cls, properties: Optional[dict], overrides: Optional[dict] = None) -> 'PropertyBag':
        return cls(
            values=dict(properties or {}),
            overrides=[RawOverride(path=p, value=v) for p, v in (overrides or {}).items()],
        )


@dataclass
class ResourceDeclaration:
    """A single resource declared in a template.

    Attributes:
        logical_id: Author-assigned identifier, stable across updates
        type: Resource type tag (e.g. 'Local::File', 'Custom::Database')
        properties: Property bag interpreted by the provider
        depends_on: Explicit dependencies in addition to references
    """
    logical_id: str
    type: str
    properties: PropertyBag = field(default_factory=PropertyBag)
    depends_on: list[str] = field(default_factory=list)

    @property
    def provider_kind(self) -> str:
        return provider_kind_for(self.type)

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceDeclaration':
        """Create ResourceDeclaration from a list-form entry."""
        if not isinstance(data, dict):
            raise TemplateFormatError(f"Resource entry must be an object, got {type(data).__name__}")
        logical_id = data.get('logicalId')
        if not logical_id or not isinstance(logical_id, str):
            raise TemplateFormatError("Resource missing required field: logicalId")
        resource_type = data.get('type')
        if not resource_type or not isinstance(resource_type, str):
            raise TemplateFormatError(f"Resource '{logical_id}' missing required field: type")
        properties = data.get('properties') or {}
        if not isinstance(properties, dict):
            raise TemplateFormatError(f"Resource '{logical_id}' properties must be an object")
        overrides = data.get('overrides') or {}
        if not isinstance(overrides, dict):
            raise TemplateFormatError(f"Resource '{logical_id}' overrides must be an object")
        return cls(
            logical_id=logical_id,
            type=resource_type,
            properties=PropertyBag.from_dict(properties, overrides),
            depends_on=_as_list(data.get('dependsOn'), logical_id),
        )

    def to_dict(self) -> dict:
        """Convert to list-form dictionary for serialization."""
        d: dict[str, Any] = {
            'logicalId': self.logical_id,
            'type': self.type,
        }
        d.update(self.properties.to_dict())
        if self.depends_on:
            d['dependsOn'] = list(self.depends_on)
        return d


@dataclass
class Template:
    """A parsed stack template.

    Attributes:
        name: Template name (informational)
        resources: Declarations in document order (duplicates preserved so
            the graph builder can report them)
        outputs: Output name -> value expression
        description: Optional description
        source_path: Path the template was loaded from (for messages)
    """
    name: str
    resources: list[ResourceDeclaration]
    outputs: dict = field(default_factory=dict)
    description: str = ''
    source_path: Optional[Path] = None

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'description': self.description,
            'resources': [r.to_dict() for r in self.resources],
            'outputs': copy.deepcopy(self.outputs),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Template':
        """Create Template from a document in list or mapping form.

        Raises:
            TemplateFormatError: If the document shape is invalid
        """
        if not isinstance(data, dict):
            raise TemplateFormatError("Template must be an object (dict)")

        if 'resources' in data:
            entries = data['resources']
            if not isinstance(entries, list):
                raise TemplateFormatError("Template field 'resources' must be a list")
            resources = [ResourceDeclaration.from_dict(e) for e in entries]
        elif 'Resources' in data:
            resources = _from_mapping(data['Resources'])
        else:
            raise TemplateFormatError("Template missing required field: resources")

        if not resources:
            raise TemplateFormatError("Template must declare at least one resource")

        outputs = data.get('outputs', data.get('Outputs')) or {}
        if not isinstance(outputs, dict):
            raise TemplateFormatError("Template outputs must be an object")

        name = data.get('name') or (source_path.stem if source_path else 'template')
        return cls(
            name=name,
            resources=resources,
            outputs={k: _output_value(v) for k, v in outputs.items()},
            description=data.get('description', data.get('Description', '')) or '',
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'Template':
        try:
            data = _load_json(json_str)
        except json.JSONDecodeError as e:
            raise TemplateFormatError(f"Invalid template JSON: {e}")
        return cls.from_dict(data)


def _as_list(value: Any, logical_id: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise TemplateFormatError(f"Resource '{logical_id}' dependsOn must be a string or list of strings")


def _output_value(value: Any) -> Any:
    # CloudFormation wraps outputs as {Value: ..., Description: ...}
    if isinstance(value, dict) and 'Value' in value:
        return value['Value']
    return value


def _from_mapping(resources: Any) -> list[ResourceDeclaration]:
    """Convert mapping-form Resources into declarations."""
    if not isinstance(resources, dict):
        raise TemplateFormatError("Template field 'Resources' must be an object")
    declarations = []
    for logical_id, body in resources.items():
        if not isinstance(body, dict):
            raise TemplateFormatError(f"Resource '{logical_id}' must be an object")
        declarations.append(ResourceDeclaration.from_dict({
            'logicalId': logical_id,
            'type': body.get('Type'),
            'properties': body.get('Properties'),
            'dependsOn': body.get('DependsOn'),
            'overrides': body.get('Overrides'),
        }))
    return declarations


def _check_duplicate_resource_keys(text: str) -> None:
    """Reject mapping-form templates that repeat a resource key.

    safe_load keeps the last duplicate silently, which would hide a repeated
    logical id, so the Resources mapping is inspected at the node level.
    """
    root = yaml.compose(text, Loader=yaml.SafeLoader)
    if not isinstance(root, yaml.MappingNode):
        return
    for key_node, value_node in root.value:
        if key_node.value != 'Resources' or not isinstance(value_node, yaml.MappingNode):
            continue
        seen: set[str] = set()
        for resource_key, _ in value_node.value:
            if resource_key.value in seen:
                raise DuplicateLogicalIdError(resource_key.value)
            seen.add(resource_key.value)


def _load_json(text: str) -> Any:
    """Parse template JSON, rejecting a Resources object that repeats a key.

    json.loads keeps the last duplicate silently, so repeated keys are
    recorded per object while parsing.

    Raises:
        json.JSONDecodeError: If the text is not valid JSON
        DuplicateLogicalIdError: If a mapping repeats a resource key
    """
    repeated: list[tuple[dict, str]] = []

    def build(pairs: list) -> dict:
        mapping: dict = {}
        for key, value in pairs:
            if key in mapping:
                repeated.append((mapping, key))
            mapping[key] = value
        return mapping

    data = json.loads(text, object_pairs_hook=build)
    resources = data.get('Resources') if isinstance(data, dict) else None
    for mapping, key in repeated:
        if mapping is resources:
            raise DuplicateLogicalIdError(key)
    return data


class TemplateLoader:
    """Loads templates from a templates directory or explicit paths."""

    def __init__(self, templates_dir: Optional[Path] = None):
        self.templates_dir = Path(templates_dir) if templates_dir else Path.cwd()

    def list_templates(self) -> list[str]:
        """List template names (YAML and JSON files) in the templates directory."""
        if not self.templates_dir.exists():
            return []
        names = {
            f.stem for pattern in ('*.yaml', '*.yml', '*.json')
            for f in self.templates_dir.glob(pattern) if f.is_file()
        }
        return sorted(names)

    def load(self, name: str) -> Template:
        """Load template by name (without extension).

        Raises:
            TemplateFormatError: If template not found or invalid
        """
        for suffix in ('.yaml', '.yml', '.json'):
            path = self.templates_dir / f'{name}{suffix}'
            if path.exists():
                return self.load_file(path)
        available = self.list_templates()
        raise TemplateFormatError(
            f"Template '{name}' not found in {self.templates_dir}. "
            f"Available: {', '.join(available) if available else 'none'}"
        )

    def load_file(self, path: Path) -> Template:
        """Load template from a specific YAML or JSON file.

        Raises:
            TemplateFormatError: If file not found or not parseable
            DuplicateLogicalIdError: If a mapping repeats a resource key
        """
        path = Path(path)
        if not path.exists():
            raise TemplateFormatError(f"Template file not found: {path}")

        with open(path, encoding='utf-8') as f:
            text = f.read()

        if path.suffix == '.json':
            try:
                data = _load_json(text)
            except json.JSONDecodeError as e:
                raise TemplateFormatError(f"Invalid JSON in template {path}: {e}")
        else:
            try:
                _check_duplicate_resource_keys(text)
                data = yaml.safe_load(text)
            except yaml.YAMLError as e:
                raise TemplateFormatError(f"Invalid YAML in template {path}: {e}")

        logger.debug(f"Loaded template from {path}")
        return Template.from_dict(data, source_path=path)


def load_template(
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
    templates_dir: Optional[Path] = None,
) -> Template:
    """Load a template from one of several sources.

    Priority:
    1. json_str - Inline JSON
    2. file_path - Specific file path
    3. name - Named template in templates_dir

    Raises:
        TemplateFormatError: If no source given, or template invalid
    """
    if json_str:
        return Template.from_json(json_str)
    loader = TemplateLoader(templates_dir)
    if file_path:
        return loader.load_file(Path(file_path))
    if name:
        return loader.load(name)
    raise TemplateFormatError("No template source specified")
