"""Resource lifecycle executor.

Drives resources through their create/update/delete state machine:

    Pending -> InProgress -> Complete | Failed
    Pending -> CreatingReplacement -> (old) AwaitingDeletion -> Complete

Batches run strictly in order; members of a batch are dispatched on a
fixed-size worker pool. Every dispatch is preceded by a journaled intent and
followed by a journaled outcome, both written from the calling thread, which
is the thread holding the stack lease.

Deletes (removed resources and superseded physical resources) are deferred
to the commit phase, which only runs after every forward batch succeeded.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from common import format_duration, idempotency_token
from engine.dependencies import reverse_batches
from engine.errors import ProviderError, ProviderTimeoutError
from engine.gateway import CustomProviderGateway
from engine.graph import GraphNode, ResourceGraph, resolve_references
from engine.journal import OperationJournal
from engine.models import (
    PHASE_APPLY,
    PHASE_CLEANUP,
    PHASE_DESTROY,
    RESULT_FAILED,
    RESULT_PENDING,
    RESULT_SUCCESS,
    CallbackStatus,
    ChangeSet,
    Operation,
    OperationKind,
    Resource,
    ResourceChange,
    ResourceStatus,
    Stack,
)
from engine.providers import ProviderRegistry
from template import provider_kind_for

logger = logging.getLogger(__name__)


@dataclass
class CallResult:
    """What a provider call returned.

    Attributes:
        physical_id: Physical id after the call
        outputs: Attributes returned by the provider (None if unchanged)
        replaced: True if an update answered with a new physical id
    """
    physical_id: Optional[str] = None
    outputs: Optional[dict] = None
    replaced: bool = False


@dataclass
class Step:
    """One provider call plus its journal intent.

    on_success runs on the calling thread after the outcome is journaled;
    on_failure runs with the error message.
    """
    intent: Operation
    call: Callable[[], CallResult]
    timeout: Optional[float] = None
    on_success: Optional[Callable[[Operation, CallResult], None]] = None
    on_failure: Optional[Callable[[str], None]] = None


@dataclass
class _Flight:
    step: Step
    intent: Operation
    deadline: Optional[float]


@dataclass
class RunResult:
    """Outcome of a forward run, commit or destroy."""
    success: bool = True
    cancelled: bool = False
    failures: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    failed_batch: Optional[int] = None

    @property
    def reason(self) -> str:
        if self.cancelled and not self.failures:
            return "Cancelled by operator"
        return "; ".join(f"{lid}: {err}" for lid, err in sorted(self.failures.items()))


class LifecycleExecutor:
    """Executes changesets, commit-phase deletes and teardowns."""

    def __init__(
        self,
        registry: ProviderRegistry,
        gateway: CustomProviderGateway,
        max_workers: int = 4,
        native_timeout: float = 300.0,
    ):
        self.registry = registry
        self.gateway = gateway
        self.max_workers = max_workers
        self.native_timeout = native_timeout

    # -- shared batch runner --------------------------------------------

    def run_batch(
        self,
        steps: list[Step],
        journal: OperationJournal,
        cancel_event: Optional[threading.Event] = None,
        stop_on_failure: bool = True,
    ) -> tuple[dict[str, str], bool]:
        """Dispatch steps concurrently and journal each outcome as it settles.

        A step is only dispatched while a worker is free, so the intent is
        journaled right before the call starts. Once cancel_event is set (or
        a step failed and stop_on_failure), no further step is dispatched;
        calls already in flight run to completion.

        Returns:
            (failures by logical id, True if dispatch stopped early)
        """
        failures: dict[str, str] = {}
        queue = deque(steps)
        in_flight: dict[Future, _Flight] = {}
        stopped = False
        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='provision')
        try:
            while queue or in_flight:
                while queue and len(in_flight) < self.max_workers:
                    if (cancel_event is not None and cancel_event.is_set()) or (stop_on_failure and failures):
                        logger.info(f"Not starting {len(queue)} remaining operation(s) in batch")
                        queue.clear()
                        stopped = True
                        break
                    step = queue.popleft()
                    intent = journal.append(step.intent)
                    deadline = time.monotonic() + step.timeout if step.timeout else None
                    in_flight[pool.submit(step.call)] = _Flight(step, intent, deadline)
                if not in_flight:
                    break

                deadlines = [f.deadline for f in in_flight.values() if f.deadline is not None]
                timeout = max(0.0, min(deadlines) - time.monotonic()) if deadlines else None
                done, _ = wait(list(in_flight), timeout=timeout, return_when=FIRST_COMPLETED)
                for future in done:
                    self._settle(in_flight.pop(future), future, journal, failures)

                now = time.monotonic()
                expired = [f for f, fl in in_flight.items() if fl.deadline is not None and fl.deadline <= now]
                for future in expired:
                    flight = in_flight.pop(future)
                    error = ProviderTimeoutError(
                        f"Provider call did not complete within {format_duration(flight.step.timeout)}",
                        flight.intent.logical_id,
                    )
                    self._record_failure(flight, str(error), journal, failures)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return failures, stopped

    def _settle(self, flight: _Flight, future: Future, journal: OperationJournal,
                failures: dict[str, str]) -> None:
        try:
            result = future.result()
        except ProviderError as e:
            self._record_failure(flight, str(e), journal, failures)
            return
        except Exception as e:
            logger.exception(f"Provider call for '{flight.intent.logical_id}' raised unexpectedly")
            self._record_failure(flight, f"{type(e).__name__}: {e}", journal, failures)
            return

        outcome = flight.intent.outcome(RESULT_SUCCESS, physical_id=result.physical_id)
        if result.replaced:
            outcome = replace(outcome, replacement=True, previous_physical_id=flight.intent.physical_id)
        outcome = journal.append(outcome)
        if flight.step.on_success is not None:
            flight.step.on_success(outcome, result)

    def _record_failure(self, flight: _Flight, error: str, journal: OperationJournal,
                        failures: dict[str, str]) -> None:
        logical_id = flight.intent.logical_id
        logger.error(f"[{flight.intent.phase}] {flight.intent.kind.value} {logical_id} failed: {error}")
        journal.append(flight.intent.outcome(RESULT_FAILED, error=error))
        failures[logical_id] = error
        if flight.step.on_failure is not None:
            flight.step.on_failure(error)

    # -- provider calls ---------------------------------------------------

    def call_create(self, stack_id: str, logical_id: str, resource_type: str,
                    properties: dict, token: str) -> Callable[[], CallResult]:
        if provider_kind_for(resource_type) == 'custom':
            return lambda: self._custom_call(
                stack_id, logical_id, OperationKind.CREATE, resource_type, properties)
        def call() -> CallResult:
            result = self.registry.get(resource_type).create(properties, token)
            return CallResult(result.physical_id, dict(result.outputs))
        return call

    def call_update(self, stack_id: str, logical_id: str, resource_type: str,
                    physical_id: str, old: dict, new: dict) -> Callable[[], CallResult]:
        if provider_kind_for(resource_type) == 'custom':
            return lambda: self._custom_call(
                stack_id, logical_id, OperationKind.UPDATE, resource_type, new, old, physical_id)
        def call() -> CallResult:
            outputs = self.registry.get(resource_type).update(physical_id, old, new)
            return CallResult(physical_id, dict(outputs) if outputs is not None else None)
        return call

    def call_delete(self, stack_id: str, logical_id: str, resource_type: str,
                    physical_id: str, properties: dict) -> Callable[[], CallResult]:
        if provider_kind_for(resource_type) == 'custom':
            return lambda: self._custom_call(
                stack_id, logical_id, OperationKind.DELETE, resource_type, properties,
                physical_id=physical_id)
        def call() -> CallResult:
            self.registry.get(resource_type).delete(physical_id)
            return CallResult(physical_id)
        return call

    def _custom_call(
        self,
        stack_id: str,
        logical_id: str,
        kind: OperationKind,
        resource_type: str,
        properties: dict,
        old_properties: Optional[dict] = None,
        physical_id: Optional[str] = None,
    ) -> CallResult:
        """Issue a gateway request and block this worker until it resolves."""
        callback = self.gateway.issue(
            stack_id, logical_id, kind, resource_type, properties,
            old_properties=old_properties,
            physical_id=physical_id,
            timeout=properties.get('ServiceTimeout'),
        )
        callback = self.gateway.wait(callback.request_id)
        if callback.status == CallbackStatus.TIMED_OUT:
            raise ProviderTimeoutError(callback.reason or "Custom provider timed out", logical_id)
        if callback.status == CallbackStatus.FAILED:
            raise ProviderError(callback.reason or "Custom provider failed", logical_id)
        new_id = callback.physical_id or physical_id
        replaced = kind == OperationKind.UPDATE and new_id != physical_id
        return CallResult(new_id, dict(callback.output_data), replaced)

    def step_timeout(self, resource_type: str) -> Optional[float]:
        """Per-call deadline; custom calls are bounded by the gateway instead."""
        return None if provider_kind_for(resource_type) == 'custom' else self.native_timeout

    # -- forward run ------------------------------------------------------

    def apply(
        self,
        stack: Stack,
        changeset: ChangeSet,
        graph: ResourceGraph,
        journal: OperationJournal,
        run_id: str,
        cancel_event: Optional[threading.Event] = None,
        checkpoint: Optional[Callable[[Stack], None]] = None,
    ) -> RunResult:
        """Run the Create/Update changes of a changeset, batch by batch.

        Stops at the first batch with a failure; the caller rolls back.
        """
        result = RunResult()
        by_batch: dict[int, list[ResourceChange]] = defaultdict(list)
        for change in changeset.changes:
            if change.action != OperationKind.DELETE:
                by_batch[change.batch].append(change)

        for batch_index in sorted(by_batch):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                break
            changes = sorted(by_batch[batch_index], key=lambda c: c.logical_id)
            logger.info(
                f"[apply] {stack.stack_id} batch {batch_index}: "
                + ", ".join(f"{c.action.value} {c.logical_id}" for c in changes)
            )
            steps = [
                self._forward_step(stack, changeset, graph.get_node(c.logical_id), c, run_id)
                for c in changes
            ]
            failures, stopped = self.run_batch(steps, journal, cancel_event)
            if checkpoint is not None:
                checkpoint(stack)
            if stopped and cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
            if failures or result.cancelled:
                result.failures.update(failures)
                result.failed_batch = batch_index
                break

        result.success = not result.failures and not result.cancelled
        return result

    def resolve_properties(self, stack: Stack, properties: dict) -> dict:
        """Substitute Ref/GetAtt expressions from the live stack.

        Raises:
            ProviderError: If a referenced resource or attribute is not available
        """
        def ref(logical_id: str) -> str:
            resource = stack.resources.get(logical_id)
            if resource is None or resource.physical_id is None:
                raise ProviderError(f"Referenced resource '{logical_id}' has no physical id")
            return resource.physical_id

        def get_att(logical_id: str, attribute: str):
            resource = stack.resources.get(logical_id)
            if resource is None or attribute not in resource.outputs:
                raise ProviderError(f"Attribute {logical_id}.{attribute} is not available")
            return resource.outputs[attribute]

        return resolve_references(properties, ref, get_att)

    def _forward_step(self, stack: Stack, changeset: ChangeSet, node: GraphNode,
                      change: ResourceChange, run_id: str) -> Step:
        logical_id = node.logical_id
        current = stack.resources.get(logical_id)
        replacement = change.replacement
        resolution_error: Optional[ProviderError] = None
        try:
            resolved = self.resolve_properties(stack, node.properties)
            if (change.action == OperationKind.UPDATE and not replacement and current is not None
                    and current.type == node.type):
                # Resolved values can force replacement even when declared values did not
                replacement = self.registry.is_replacement_required(
                    node.type, node.provider_kind, current.applied_properties, resolved)
        except ProviderError as e:
            resolved = node.properties
            resolution_error = e

        base = Operation(
            stack_id=stack.stack_id,
            run_id=run_id,
            logical_id=logical_id,
            kind=OperationKind.CREATE,
            phase=PHASE_APPLY,
            result=RESULT_PENDING,
            new_properties=resolved,
            resource_type=node.type,
            batch=change.batch,
        )

        if change.action == OperationKind.CREATE or current is None or current.physical_id is None:
            token = idempotency_token(stack.stack_id, changeset.changeset_id, logical_id, 'create')
            intent = replace(base, idempotency_token=token)
            call = self.call_create(stack.stack_id, logical_id, node.type, resolved, token)
            stack.resources[logical_id] = Resource(
                logical_id=logical_id,
                type=node.type,
                properties=node.properties,
                depends_on=sorted(node.dependencies),
                provider_kind=node.provider_kind,
                status=ResourceStatus.IN_PROGRESS,
            )
        elif replacement:
            token = idempotency_token(stack.stack_id, changeset.changeset_id, logical_id, 'replace')
            intent = replace(
                base,
                replacement=True,
                idempotency_token=token,
                previous_properties=current.applied_properties,
                previous_physical_id=current.physical_id,
            )
            call = self.call_create(stack.stack_id, logical_id, node.type, resolved, token)
            current.status = ResourceStatus.CREATING_REPLACEMENT
        else:
            intent = replace(
                base,
                kind=OperationKind.UPDATE,
                previous_properties=current.applied_properties,
                physical_id=current.physical_id,
            )
            call = self.call_update(stack.stack_id, logical_id, node.type, current.physical_id,
                                    current.applied_properties, resolved)
            current.status = ResourceStatus.IN_PROGRESS

        if resolution_error is not None:
            error = resolution_error

            def call() -> CallResult:
                raise error

        def on_success(outcome: Operation, result: CallResult) -> None:
            self._apply_success(stack, node, resolved, outcome, result)

        def on_failure(error: str) -> None:
            resource = stack.resources.get(logical_id)
            if resource is not None:
                resource.status = ResourceStatus.FAILED
                resource.error = error

        return Step(intent, call, self.step_timeout(node.type), on_success, on_failure)

    def _apply_success(self, stack: Stack, node: GraphNode, resolved: dict,
                       outcome: Operation, result: CallResult) -> None:
        logical_id = node.logical_id
        current = stack.resources[logical_id]
        if outcome.replacement:
            retired = current.copy()
            stack.retire(retired)
            new = current.replaced_by(result.physical_id, resolved, result.outputs or {})
            new.type = node.type
            new.provider_kind = node.provider_kind
            logger.info(
                f"[apply] {logical_id} replaced: {retired.physical_id} -> {new.physical_id} "
                "(old awaiting deletion)"
            )
        else:
            new = current
            new.assign_physical_id(result.physical_id)
            new.applied_properties = resolved
            if result.outputs is not None:
                new.outputs = result.outputs
            new.status = ResourceStatus.COMPLETE
            new.error = None
            logger.info(f"[apply] {outcome.kind.value} {logical_id} complete ({new.physical_id})")
        new.properties = node.properties
        new.depends_on = sorted(node.dependencies)
        stack.resources[logical_id] = new

    # -- commit phase -----------------------------------------------------

    def commit(
        self,
        stack: Stack,
        removed: list[str],
        pre_apply_dependencies: dict[str, list[str]],
        journal: OperationJournal,
        run_id: str,
        checkpoint: Optional[Callable[[Stack], None]] = None,
    ) -> RunResult:
        """Delete removed resources and superseded physical resources.

        Runs in reverse dependency order of the pre-apply graph. Failures
        are returned as warnings: the resource stays in the stack marked
        Failed so the next plan retries its delete.
        """
        targets: dict[str, list[Resource]] = defaultdict(list)
        for logical_id in removed:
            if logical_id in stack.resources:
                targets[logical_id].append(stack.resources[logical_id])
        for retired in stack.retired:
            targets[retired.logical_id].append(retired)

        result = RunResult()
        if not targets:
            return result
        order = reverse_batches({
            lid: [d for d in pre_apply_dependencies.get(lid, []) if d in targets] for lid in targets
        })
        for batch_index, batch in enumerate(order):
            steps = [
                self._delete_step(stack, resource, journal, run_id, PHASE_CLEANUP, batch_index,
                                  removed=lid in removed)
                for lid in batch for resource in targets[lid]
            ]
            failures, _ = self.run_batch(steps, journal, stop_on_failure=False)
            for lid, error in failures.items():
                warning = f"Cleanup of {lid} failed, will retry on next apply: {error}"
                logger.warning(f"[cleanup] {warning}")
                result.warnings.append(warning)
            if checkpoint is not None:
                checkpoint(stack)
        return result

    def _delete_step(self, stack: Stack, resource: Resource, journal: OperationJournal,
                     run_id: str, phase: str, batch: int, removed: bool) -> Step:
        is_retired = any(r is resource for r in stack.retired)
        intent = Operation(
            stack_id=stack.stack_id,
            run_id=run_id,
            logical_id=resource.logical_id,
            kind=OperationKind.DELETE,
            phase=phase,
            result=RESULT_PENDING,
            previous_properties=resource.applied_properties,
            physical_id=resource.physical_id,
            resource_type=resource.type,
            batch=batch,
            replacement=is_retired,
        )
        if resource.physical_id is None:
            def call() -> CallResult:
                return CallResult()
        else:
            call = self.call_delete(stack.stack_id, resource.logical_id, resource.type,
                                    resource.physical_id, resource.applied_properties)

        def on_success(outcome: Operation, result: CallResult) -> None:
            resource.status = ResourceStatus.DELETE_COMPLETE
            if is_retired:
                stack.retired = [r for r in stack.retired if r is not resource]
            elif removed or phase == PHASE_DESTROY:
                stack.resources.pop(resource.logical_id, None)
            logger.info(f"[{phase}] Deleted {resource.logical_id} ({resource.physical_id})")

        def on_failure(error: str) -> None:
            resource.status = ResourceStatus.FAILED
            resource.error = error

        return Step(intent, call, self.step_timeout(resource.type), on_success, on_failure)

    # -- teardown ---------------------------------------------------------

    def destroy(
        self,
        stack: Stack,
        journal: OperationJournal,
        run_id: str,
        checkpoint: Optional[Callable[[Stack], None]] = None,
    ) -> RunResult:
        """Delete every resource of the stack, dependents first.

        Superseded physical resources awaiting deletion go first. A failed
        delete stops teardown of the resources it depends on.
        """
        result = RunResult()
        if stack.retired:
            steps = [
                self._delete_step(stack, r, journal, run_id, PHASE_DESTROY, 0, removed=True)
                for r in list(stack.retired)
            ]
            failures, _ = self.run_batch(steps, journal, stop_on_failure=False)
            result.failures.update(failures)

        order = reverse_batches({lid: r.depends_on for lid, r in stack.resources.items()})
        for batch_index, batch in enumerate(order):
            if result.failures:
                result.failed_batch = batch_index
                break
            logger.info(f"[destroy] {stack.stack_id} batch {batch_index}: {', '.join(batch)}")
            steps = [
                self._delete_step(stack, stack.resources[lid], journal, run_id, PHASE_DESTROY,
                                  batch_index, removed=True)
                for lid in batch
            ]
            failures, _ = self.run_batch(steps, journal, stop_on_failure=False)
            result.failures.update(failures)
            if checkpoint is not None:
                checkpoint(stack)

        result.success = not result.failures
        return result
