"""Data model for stacks, resources, journal operations and changesets.

All records serialize to plain dicts (to_dict/from_dict) so the store and
journal can persist them as JSON.
"""

import copy
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


class StackStatus(str, Enum):
    CREATE_IN_PROGRESS = 'CREATE_IN_PROGRESS'
    CREATE_COMPLETE = 'CREATE_COMPLETE'
    UPDATE_IN_PROGRESS = 'UPDATE_IN_PROGRESS'
    UPDATE_COMPLETE = 'UPDATE_COMPLETE'
    ROLLBACK_IN_PROGRESS = 'ROLLBACK_IN_PROGRESS'
    ROLLBACK_COMPLETE = 'ROLLBACK_COMPLETE'
    DELETE_IN_PROGRESS = 'DELETE_IN_PROGRESS'
    DELETE_COMPLETE = 'DELETE_COMPLETE'
    FAILED = 'FAILED'

    @property
    def in_progress(self) -> bool:
        return self.value.endswith('_IN_PROGRESS')


class ResourceStatus(str, Enum):
    PENDING = 'Pending'
    IN_PROGRESS = 'InProgress'
    CREATING_REPLACEMENT = 'CreatingReplacement'
    AWAITING_DELETION = 'AwaitingDeletion'
    COMPLETE = 'Complete'
    FAILED = 'Failed'
    DELETE_COMPLETE = 'DeleteComplete'


class OperationKind(str, Enum):
    CREATE = 'Create'
    UPDATE = 'Update'
    DELETE = 'Delete'


class CallbackStatus(str, Enum):
    PENDING = 'Pending'
    SUCCEEDED = 'Succeeded'
    FAILED = 'Failed'
    TIMED_OUT = 'TimedOut'

    @property
    def terminal(self) -> bool:
        return self is not CallbackStatus.PENDING


# Journal phases
PHASE_APPLY = 'apply'
PHASE_CLEANUP = 'cleanup'
PHASE_ROLLBACK = 'rollback'
PHASE_DESTROY = 'destroy'
PHASE_RECONCILE = 'reconcile'

# Journal results
RESULT_PENDING = 'pending'
RESULT_SUCCESS = 'success'
RESULT_FAILED = 'failed'


@dataclass
class Resource:
    """One declared infrastructure unit tracked by a stack.

    Attributes:
        logical_id: Author-assigned identifier
        type: Resource type tag
        properties: Declared properties (may contain Ref/GetAtt expressions)
        depends_on: Logical ids this resource depends on (explicit + references)
        provider_kind: 'native' or 'custom'
        physical_id: Provider-issued handle, immutable once assigned
        applied_properties: Resolved property bag last sent to the provider
        outputs: Attributes returned by the provider
        status: Lifecycle status
        error: Last error message if failed
    """
    logical_id: str
    type: str
    properties: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    provider_kind: str = 'native'
    physical_id: Optional[str] = None
    applied_properties: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    status: ResourceStatus = ResourceStatus.PENDING
    error: Optional[str] = None

    def assign_physical_id(self, physical_id: str) -> None:
        """Record the provider handle.

        Raises:
            ValueError: If a different physical id is already assigned
        """
        if self.physical_id is not None and self.physical_id != physical_id:
            raise ValueError(
                f"Resource '{self.logical_id}' already has physical id "
                f"'{self.physical_id}'; replacement must create a new Resource"
            )
        self.physical_id = physical_id

    def replaced_by(self, physical_id: str, applied_properties: dict, outputs: dict) -> 'Resource':
        """Return the replacement Resource carrying a new physical id."""
        return replace(
            self,
            physical_id=physical_id,
            applied_properties=copy.deepcopy(applied_properties),
            outputs=dict(outputs),
            status=ResourceStatus.COMPLETE,
            error=None,
        )

    def copy(self) -> 'Resource':
        return Resource.from_dict(self.to_dict())

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'logical_id': self.logical_id,
            'type': self.type,
            'properties': copy.deepcopy(self.properties),
            'depends_on': list(self.depends_on),
            'provider_kind': self.provider_kind,
            'status': self.status.value,
            'applied_properties': copy.deepcopy(self.applied_properties),
            'outputs': copy.deepcopy(self.outputs),
        }
        if self.physical_id is not None:
            d['physical_id'] = self.physical_id
        if self.error is not None:
            d['error'] = self.error
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Resource':
        return cls(
            logical_id=data['logical_id'],
            type=data['type'],
            properties=copy.deepcopy(data.get('properties', {})),
            depends_on=list(data.get('depends_on', [])),
            provider_kind=data.get('provider_kind', 'native'),
            physical_id=data.get('physical_id'),
            applied_properties=copy.deepcopy(data.get('applied_properties', {})),
            outputs=copy.deepcopy(data.get('outputs', {})),
            status=ResourceStatus(data.get('status', ResourceStatus.PENDING.value)),
            error=data.get('error'),
        )


@dataclass
class Stack:
    """A named, versioned collection of resources forming one deployable unit."""
    stack_id: str
    status: StackStatus = StackStatus.CREATE_IN_PROGRESS
    resources: dict[str, Resource] = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)
    retired: list[Resource] = field(default_factory=list)
    version: int = 0
    template_hash: Optional[str] = None
    status_reason: Optional[str] = None
    last_run_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def set_status(self, status: StackStatus, reason: Optional[str] = None) -> None:
        self.status = status
        self.status_reason = reason
        self.updated_at = time.time()

    def snapshot(self) -> dict[str, Resource]:
        """Deep copy of the resource set, used to restore after rollback."""
        return {lid: r.copy() for lid, r in self.resources.items()}

    def retire(self, resource: Resource) -> None:
        """Keep a superseded physical resource until the commit phase deletes it."""
        resource.status = ResourceStatus.AWAITING_DELETION
        self.retired.append(resource)

    def to_dict(self) -> dict:
        return {
            'stack_id': self.stack_id,
            'status': self.status.value,
            'version': self.version,
            'template_hash': self.template_hash,
            'status_reason': self.status_reason,
            'last_run_id': self.last_run_id,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'outputs': copy.deepcopy(self.outputs),
            'resources': [r.to_dict() for r in self.resources.values()],
            'retired': [r.to_dict() for r in self.retired],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Stack':
        resources = [Resource.from_dict(r) for r in data.get('resources', [])]
        return cls(
            stack_id=data['stack_id'],
            status=StackStatus(data['status']),
            resources={r.logical_id: r for r in resources},
            retired=[Resource.from_dict(r) for r in data.get('retired', [])],
            outputs=copy.deepcopy(data.get('outputs', {})),
            version=data.get('version', 0),
            template_hash=data.get('template_hash'),
            status_reason=data.get('status_reason'),
            last_run_id=data.get('last_run_id'),
            created_at=data.get('created_at', time.time()),
            updated_at=data.get('updated_at', time.time()),
        )


@dataclass(frozen=True)
class Operation:
    """One immutable journal entry.

    Intent records (result='pending') are appended before a provider call is
    dispatched; the matching outcome record links back through intent_seq.
    """
    stack_id: str
    run_id: str
    logical_id: str
    kind: OperationKind
    phase: str
    result: str
    previous_properties: Optional[dict] = None
    new_properties: Optional[dict] = None
    physical_id: Optional[str] = None
    previous_physical_id: Optional[str] = None
    resource_type: Optional[str] = None
    batch: int = 0
    replacement: bool = False
    idempotency_token: Optional[str] = None
    intent_seq: Optional[int] = None
    inverse_of: Optional[int] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)
    seq: int = 0

    @property
    def is_intent(self) -> bool:
        return self.result == RESULT_PENDING

    @property
    def succeeded(self) -> bool:
        return self.result == RESULT_SUCCESS

    def outcome(
        self,
        result: str,
        physical_id: Optional[str] = None,
        new_properties: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> 'Operation':
        """Build the outcome record for this intent."""
        return replace(
            self,
            result=result,
            physical_id=physical_id if physical_id is not None else self.physical_id,
            new_properties=new_properties if new_properties is not None else self.new_properties,
            intent_seq=self.seq,
            error=error,
            timestamp=time.time(),
            seq=0,
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'seq': self.seq,
            'stack_id': self.stack_id,
            'run_id': self.run_id,
            'logical_id': self.logical_id,
            'kind': self.kind.value,
            'phase': self.phase,
            'result': self.result,
            'batch': self.batch,
            'timestamp': self.timestamp,
        }
        optional = {
            'previous_properties': self.previous_properties,
            'new_properties': self.new_properties,
            'physical_id': self.physical_id,
            'previous_physical_id': self.previous_physical_id,
            'resource_type': self.resource_type,
            'idempotency_token': self.idempotency_token,
            'intent_seq': self.intent_seq,
            'inverse_of': self.inverse_of,
            'error': self.error,
        }
        d.update({k: v for k, v in optional.items() if v is not None})
        if self.replacement:
            d['replacement'] = True
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'Operation':
        return cls(
            seq=data['seq'],
            stack_id=data['stack_id'],
            run_id=data['run_id'],
            logical_id=data['logical_id'],
            kind=OperationKind(data['kind']),
            phase=data['phase'],
            result=data['result'],
            previous_properties=data.get('previous_properties'),
            new_properties=data.get('new_properties'),
            physical_id=data.get('physical_id'),
            previous_physical_id=data.get('previous_physical_id'),
            resource_type=data.get('resource_type'),
            batch=data.get('batch', 0),
            replacement=data.get('replacement', False),
            idempotency_token=data.get('idempotency_token'),
            intent_seq=data.get('intent_seq'),
            inverse_of=data.get('inverse_of'),
            error=data.get('error'),
            timestamp=data.get('timestamp', 0.0),
        )


@dataclass
class ResourceChange:
    """One proposed change inside a ChangeSet."""
    logical_id: str
    action: OperationKind
    resource_type: str
    reason: str
    batch: int = 0
    replacement: bool = False
    physical_id: Optional[str] = None
    previous_properties: Optional[dict] = None
    new_properties: Optional[dict] = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'logical_id': self.logical_id,
            'action': self.action.value,
            'resource_type': self.resource_type,
            'reason': self.reason,
            'batch': self.batch,
            'replacement': self.replacement,
        }
        if self.physical_id is not None:
            d['physical_id'] = self.physical_id
        if self.previous_properties is not None:
            d['previous_properties'] = copy.deepcopy(self.previous_properties)
        if self.new_properties is not None:
            d['new_properties'] = copy.deepcopy(self.new_properties)
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceChange':
        return cls(
            logical_id=data['logical_id'],
            action=OperationKind(data['action']),
            resource_type=data['resource_type'],
            reason=data.get('reason', ''),
            batch=data.get('batch', 0),
            replacement=data.get('replacement', False),
            physical_id=data.get('physical_id'),
            previous_properties=data.get('previous_properties'),
            new_properties=data.get('new_properties'),
        )


CHANGESET_CREATED = 'CREATED'
CHANGESET_EXECUTED = 'EXECUTED'
CHANGESET_DISCARDED = 'DISCARDED'


@dataclass
class ChangeSet:
    """A proposed, unexecuted diff between a stack and a target graph.

    Attributes:
        changeset_id: Content-derived identifier
        stack_id: Stack the changeset targets
        target_hash: Content hash of the target graph
        base_version: Stack version the diff was computed against
        changes: Ordered changes (forward batches first, then deletes)
        target: Serialized target declarations (list-form dicts)
        outputs: Output expressions of the target template
        status: CREATED, EXECUTED or DISCARDED
    """
    changeset_id: str
    stack_id: str
    target_hash: str
    base_version: int
    changes: list[ResourceChange] = field(default_factory=list)
    target: list[dict] = field(default_factory=list)
    outputs: dict = field(default_factory=dict)
    base_hash: Optional[str] = None
    status: str = CHANGESET_CREATED
    created_at: float = field(default_factory=time.time)

    @property
    def is_empty(self) -> bool:
        """True when applying would change nothing, not even stack metadata."""
        return not self.changes and self.target_hash == self.base_hash

    def summary(self) -> dict[str, int]:
        counts = {k.value: 0 for k in OperationKind}
        counts['Replace'] = 0
        for change in self.changes:
            if change.replacement:
                counts['Replace'] += 1
            else:
                counts[change.action.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'changeset_id': self.changeset_id,
            'stack_id': self.stack_id,
            'target_hash': self.target_hash,
            'base_version': self.base_version,
            'base_hash': self.base_hash,
            'status': self.status,
            'created_at': self.created_at,
            'changes': [c.to_dict() for c in self.changes],
            'target': copy.deepcopy(self.target),
            'outputs': copy.deepcopy(self.outputs),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ChangeSet':
        return cls(
            changeset_id=data['changeset_id'],
            stack_id=data['stack_id'],
            target_hash=data['target_hash'],
            base_version=data['base_version'],
            base_hash=data.get('base_hash'),
            status=data.get('status', CHANGESET_CREATED),
            created_at=data.get('created_at', time.time()),
            changes=[ResourceChange.from_dict(c) for c in data.get('changes', [])],
            target=copy.deepcopy(data.get('target', [])),
            outputs=copy.deepcopy(data.get('outputs', {})),
        )


@dataclass
class ProviderCallback:
    """One outstanding (or resolved) asynchronous request to a custom provider."""
    request_id: str
    stack_id: str
    logical_id: str
    request_type: OperationKind
    issued_at: float
    timeout_at: float
    callback_token: str
    status: CallbackStatus = CallbackStatus.PENDING
    physical_id: Optional[str] = None
    output_data: dict = field(default_factory=dict)
    reason: Optional[str] = None
    resolved_at: Optional[float] = None

    def to_dict(self, include_token: bool = False) -> dict:
        d: dict[str, Any] = {
            'requestId': self.request_id,
            'stackId': self.stack_id,
            'logicalResourceId': self.logical_id,
            'requestType': self.request_type.value,
            'issuedAt': self.issued_at,
            'timeoutAt': self.timeout_at,
            'status': self.status.value,
        }
        if include_token:
            d['callbackToken'] = self.callback_token
        if self.physical_id is not None:
            d['physicalId'] = self.physical_id
        if self.output_data:
            d['outputData'] = copy.deepcopy(self.output_data)
        if self.reason is not None:
            d['reason'] = self.reason
        if self.resolved_at is not None:
            d['resolvedAt'] = self.resolved_at
        return d
