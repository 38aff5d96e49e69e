"""Native provider adapters and the type registry.

A provider adapter implements create/update/delete/read for one family of
resource types and declares which property changes force replacement.
Adapters raise ProviderError on failure; the executor records the error in
the journal and triggers rollback.

Built-in adapters:
- InMemoryProvider: keeps resources in a dict (embedding, tests)
- LocalFileProvider: manages files below a root directory
"""

import copy
import fnmatch
import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from engine.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class ProvisionResult:
    """Result of a successful create."""
    physical_id: str
    outputs: dict = field(default_factory=dict)


@runtime_checkable
class ResourceProvider(Protocol):
    """Protocol for native provider adapters."""

    def create(self, properties: dict, idempotency_token: str) -> ProvisionResult:
        """Create the resource, or return the one already created for the token."""

    def update(self, physical_id: str, old_properties: dict, new_properties: dict) -> dict:
        """Update in place and return the new outputs."""

    def delete(self, physical_id: str) -> None:
        """Delete the resource; deleting a missing resource succeeds."""

    def read(self, physical_id: str) -> Optional[dict]:
        """Return the actual properties, or None if the resource is gone."""

    def find(self, idempotency_token: str) -> Optional[str]:
        """Return the physical id created for the token, if any."""

    def is_replacement_required(self, old_properties: dict, new_properties: dict) -> bool:
        """True if moving from old to new cannot keep the physical id."""


def changed_keys(old: dict, new: dict) -> set[str]:
    """Top-level keys whose values differ between two property bags."""
    return {k for k in set(old) | set(new) if old.get(k) != new.get(k)}


class InMemoryProvider:
    """Provider that keeps resources in memory.

    Changes to any property listed in replacement_properties force
    replacement. Thread-safe: the executor calls it from worker threads.
    """

    def __init__(self, replacement_properties: tuple[str, ...] = (), prefix: str = 'mem'):
        self.replacement_properties = tuple(replacement_properties)
        self.prefix = prefix
        self.resources: dict[str, dict] = {}
        self.tokens: dict[str, str] = {}
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def create(self, properties: dict, idempotency_token: str) -> ProvisionResult:
        with self._lock:
            self.calls.append(('create', idempotency_token))
            existing = self.tokens.get(idempotency_token)
            if existing is not None and existing in self.resources:
                logger.debug(f"Token {idempotency_token} already honoured as {existing}")
                return ProvisionResult(existing, self._outputs(existing))
            physical_id = f'{self.prefix}-{uuid.uuid4().hex[:12]}'
            self.resources[physical_id] = copy.deepcopy(properties)
            self.tokens[idempotency_token] = physical_id
            return ProvisionResult(physical_id, self._outputs(physical_id))

    def update(self, physical_id: str, old_properties: dict, new_properties: dict) -> dict:
        with self._lock:
            self.calls.append(('update', physical_id))
            if physical_id not in self.resources:
                raise ProviderError(f"Resource {physical_id} does not exist")
            self.resources[physical_id] = copy.deepcopy(new_properties)
            return self._outputs(physical_id)

    def delete(self, physical_id: str) -> None:
        with self._lock:
            self.calls.append(('delete', physical_id))
            self.resources.pop(physical_id, None)

    def read(self, physical_id: str) -> Optional[dict]:
        with self._lock:
            props = self.resources.get(physical_id)
            return copy.deepcopy(props) if props is not None else None

    def find(self, idempotency_token: str) -> Optional[str]:
        with self._lock:
            physical_id = self.tokens.get(idempotency_token)
            return physical_id if physical_id in self.resources else None

    def is_replacement_required(self, old_properties: dict, new_properties: dict) -> bool:
        return bool(changed_keys(old_properties, new_properties) & set(self.replacement_properties))

    def _outputs(self, physical_id: str) -> dict:
        return {'Id': physical_id}


class LocalFileProvider:
    """Provider managing plain files below a root directory.

    Properties:
        FileName: Path relative to root (changing it forces replacement)
        Content: File content (updated in place)

    The physical id is the absolute file path. Honoured idempotency tokens
    are kept in an index file next to the managed files.
    """

    INDEX_FILE = '.stackops-tokens.json'
    replacement_properties = ('FileName',)

    def __init__(self, root: Path):
        self.root = Path(root).resolve()
        self._lock = threading.Lock()

    def _path_for(self, properties: dict) -> Path:
        name = properties.get('FileName')
        if not name or not isinstance(name, str):
            raise ProviderError("Local::File requires a FileName property")
        path = (self.root / name).resolve()
        if self.root not in path.parents:
            raise ProviderError(f"FileName escapes provider root: {name}")
        return path

    def _load_index(self) -> dict:
        index = self.root / self.INDEX_FILE
        if not index.exists():
            return {}
        try:
            return json.loads(index.read_text(encoding='utf-8'))
        except json.JSONDecodeError as e:
            raise ProviderError(f"Corrupt token index {index}: {e}")

    def _save_index(self, data: dict) -> None:
        index = self.root / self.INDEX_FILE
        tmp = index.with_suffix('.tmp')
        tmp.write_text(json.dumps(data, indent=2), encoding='utf-8')
        os.replace(tmp, index)

    def create(self, properties: dict, idempotency_token: str) -> ProvisionResult:
        with self._lock:
            self.root.mkdir(parents=True, exist_ok=True)
            index = self._load_index()
            existing = index.get(idempotency_token)
            if existing and Path(existing).exists():
                return ProvisionResult(existing, {'Path': existing})
            path = self._path_for(properties)
            if path.exists():
                raise ProviderError(f"File already exists: {path}")
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(str(properties.get('Content', '')), encoding='utf-8')
            except OSError as e:
                raise ProviderError(f"Cannot write {path}: {e}")
            index[idempotency_token] = str(path)
            self._save_index(index)
            logger.debug(f"Created file {path}")
            return ProvisionResult(str(path), {'Path': str(path)})

    def update(self, physical_id: str, old_properties: dict, new_properties: dict) -> dict:
        path = Path(physical_id)
        if not path.exists():
            raise ProviderError(f"File {path} does not exist")
        try:
            path.write_text(str(new_properties.get('Content', '')), encoding='utf-8')
        except OSError as e:
            raise ProviderError(f"Cannot write {path}: {e}")
        return {'Path': physical_id}

    def delete(self, physical_id: str) -> None:
        try:
            Path(physical_id).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise ProviderError(f"Cannot delete {physical_id}: {e}")

    def read(self, physical_id: str) -> Optional[dict]:
        path = Path(physical_id)
        if not path.exists():
            return None
        try:
            content = path.read_text(encoding='utf-8')
        except OSError as e:
            raise ProviderError(f"Cannot read {path}: {e}")
        return {'FileName': str(path.relative_to(self.root)), 'Content': content}

    def find(self, idempotency_token: str) -> Optional[str]:
        with self._lock:
            existing = self._load_index().get(idempotency_token)
        return existing if existing and Path(existing).exists() else None

    def is_replacement_required(self, old_properties: dict, new_properties: dict) -> bool:
        return bool(changed_keys(old_properties, new_properties) & set(self.replacement_properties))


class ProviderRegistry:
    """Maps resource type patterns to provider adapters.

    Patterns use fnmatch syntax ('Local::*'); the first registered match wins.
    Custom types only declare their replacement-triggering properties, since
    their provisioning goes through the callback gateway.
    """

    def __init__(self):
        self._providers: list[tuple[str, ResourceProvider]] = []
        self._custom_replacement: dict[str, tuple[str, ...]] = {}

    def register(self, type_pattern: str, provider: ResourceProvider) -> None:
        self._providers.append((type_pattern, provider))

    def register_custom_type(self, resource_type: str, replacement_properties: tuple[str, ...] = ()) -> None:
        self._custom_replacement[resource_type] = tuple(replacement_properties)

    def get(self, resource_type: str) -> ResourceProvider:
        """Get the provider for a resource type.

        Raises:
            ProviderError: If no provider handles the type
        """
        for pattern, provider in self._providers:
            if fnmatch.fnmatchcase(resource_type, pattern):
                return provider
        raise ProviderError(f"No provider registered for resource type '{resource_type}'")

    def handles(self, resource_type: str) -> bool:
        return any(fnmatch.fnmatchcase(resource_type, p) for p, _ in self._providers)

    def is_replacement_required(self, resource_type: str, provider_kind: str,
                                old_properties: dict, new_properties: dict) -> bool:
        """Consult the provider oracle for a property change."""
        if provider_kind == 'custom':
            replacement = self._custom_replacement.get(resource_type, ())
            return bool(changed_keys(old_properties, new_properties) & set(replacement))
        return self.get(resource_type).is_replacement_required(old_properties, new_properties)


def build_registry(provider_configs: dict, custom_types: Optional[dict] = None) -> ProviderRegistry:
    """Build a registry from the 'providers' section of the engine config.

    Args:
        provider_configs: type pattern -> {kind, root?, replacement_properties?}
        custom_types: custom type -> {replacement_properties}

    Raises:
        ProviderError: If a provider kind is unknown
    """
    registry = ProviderRegistry()
    for pattern, spec in provider_configs.items():
        kind = spec.get('kind')
        if kind == 'memory':
            provider: ResourceProvider = InMemoryProvider(
                tuple(spec.get('replacement_properties', ())))
        elif kind == 'local-file':
            provider = LocalFileProvider(Path(spec.get('root', '.')))
        else:
            raise ProviderError(f"Unknown provider kind '{kind}' for '{pattern}'")
        registry.register(pattern, provider)
        logger.debug(f"Registered {kind} provider for '{pattern}'")

    for resource_type, spec in (custom_types or {}).items():
        registry.register_custom_type(
            resource_type, tuple((spec or {}).get('replacement_properties', ())))
    return registry
