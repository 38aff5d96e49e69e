"""Rollback coordinator.

Undoes the successful forward operations of one apply run, walking the
journal backwards batch by batch:

    Create               -> Delete the created physical resource
    Create (replacement) -> Delete the new physical resource, keep the old one
    Update               -> Update back to the previous property bag

Deletes never need inverting: they only happen in the commit phase, after
every forward batch succeeded.

A native create that failed or timed out may still have produced a
resource; its idempotency token is looked up and any orphan is deleted.
Every inverse is journaled with inverse_of, so a resumed rollback skips the
work already done. A failed inverse is terminal (fail-stop).
"""

import logging
from collections import defaultdict
from dataclasses import replace
from typing import Callable, Optional

from engine.errors import ProviderError
from engine.executor import CallResult, LifecycleExecutor, Step
from engine.journal import OperationJournal
from engine.models import (
    PHASE_APPLY,
    PHASE_ROLLBACK,
    RESULT_FAILED,
    RESULT_PENDING,
    Operation,
    OperationKind,
    ResourceStatus,
    Stack,
)
from template import provider_kind_for

logger = logging.getLogger(__name__)


class RollbackCoordinator:
    """Restores a stack to its pre-apply state after a failed run."""

    def __init__(self, executor: LifecycleExecutor):
        self.executor = executor

    def rollback(
        self,
        stack: Stack,
        journal: OperationJournal,
        run_id: str,
        snapshot: Stack,
        checkpoint: Optional[Callable[[Stack], None]] = None,
    ) -> dict[str, str]:
        """Invert the run's forward operations.

        Args:
            stack: Live stack, updated as inverses succeed
            journal: Journal of the stack
            run_id: Run to undo
            snapshot: Stack record taken before the run started

        Returns:
            Failures by logical id; empty when the stack was fully restored
        """
        inverted = journal.inverted(run_id)
        by_batch: dict[int, list[Operation]] = defaultdict(list)
        for op in journal.succeeded(run_id, PHASE_APPLY):
            if op.seq not in inverted:
                by_batch[op.batch].append(op)
        for op, physical_id in self._find_orphans(journal, run_id, inverted):
            by_batch[op.batch].append(_as_orphan(op, physical_id))

        total = sum(len(ops) for ops in by_batch.values())
        logger.info(f"[rollback] {stack.stack_id}: inverting {total} operation(s) of run {run_id}")

        for batch_index in sorted(by_batch, reverse=True):
            ops = sorted(by_batch[batch_index], key=lambda o: o.seq, reverse=True)
            logger.info(
                f"[rollback] batch {batch_index}: "
                + ", ".join(f"undo {o.kind.value} {o.logical_id}" for o in ops)
            )
            steps = [self._inverse_step(stack, op, run_id, snapshot) for op in ops]
            failures, _ = self.executor.run_batch(steps, journal, stop_on_failure=False)
            if checkpoint is not None:
                checkpoint(stack)
            if failures:
                logger.error(f"[rollback] {stack.stack_id} stopped at batch {batch_index}")
                return failures

        stack.resources = snapshot.snapshot()
        stack.retired = [r.copy() for r in snapshot.retired]
        stack.outputs = dict(snapshot.outputs)
        return {}

    def _find_orphans(self, journal: OperationJournal, run_id: str,
                      inverted: set[int]) -> list[tuple[Operation, str]]:
        """Failed native creates whose token nonetheless produced a resource."""
        orphans = []
        for op in journal.entries(run_id, PHASE_APPLY):
            if (op.result != RESULT_FAILED or op.kind != OperationKind.CREATE
                    or not op.idempotency_token or op.seq in inverted
                    or provider_kind_for(op.resource_type or '') == 'custom'):
                continue
            try:
                physical_id = self.executor.registry.get(op.resource_type or '').find(op.idempotency_token)
            except ProviderError as e:
                logger.warning(f"[rollback] Cannot look up orphan of {op.logical_id}: {e}")
                continue
            if physical_id:
                logger.warning(f"[rollback] Found orphaned {op.logical_id} ({physical_id}) from failed create")
                orphans.append((op, physical_id))
        return orphans

    def _inverse_step(self, stack: Stack, op: Operation, run_id: str, snapshot: Stack) -> Step:
        logical_id = op.logical_id
        resource_type = op.resource_type or ''
        base = Operation(
            stack_id=stack.stack_id,
            run_id=run_id,
            logical_id=logical_id,
            kind=OperationKind.DELETE,
            phase=PHASE_ROLLBACK,
            result=RESULT_PENDING,
            previous_properties=op.new_properties,
            physical_id=op.physical_id,
            resource_type=resource_type,
            batch=op.batch,
            replacement=op.replacement,
            inverse_of=op.seq,
        )

        if op.kind == OperationKind.CREATE or op.replacement:
            intent = base
            call = self.executor.call_delete(stack.stack_id, logical_id, resource_type,
                                             op.physical_id, op.new_properties or {})

            def on_success(outcome: Operation, result: CallResult) -> None:
                current = stack.resources.get(logical_id)
                if current is not None and current.physical_id == op.physical_id:
                    restored = snapshot.resources.get(logical_id)
                    if restored is not None:
                        stack.resources[logical_id] = restored.copy()
                    else:
                        stack.resources.pop(logical_id, None)
                if op.replacement:
                    stack.retired = [
                        r for r in stack.retired if r.physical_id != op.previous_physical_id
                    ]
                logger.info(f"[rollback] Deleted {logical_id} ({op.physical_id})")
        else:
            intent = replace(
                base,
                kind=OperationKind.UPDATE,
                previous_properties=op.new_properties,
                new_properties=op.previous_properties,
            )
            call = self.executor.call_update(stack.stack_id, logical_id, resource_type, op.physical_id,
                                             op.new_properties or {}, op.previous_properties or {})

            def on_success(outcome: Operation, result: CallResult) -> None:
                restored = snapshot.resources.get(logical_id)
                if restored is not None:
                    stack.resources[logical_id] = restored.copy()
                logger.info(f"[rollback] Restored {logical_id} to previous properties")

        def on_failure(error: str) -> None:
            resource = stack.resources.get(logical_id)
            if resource is not None and resource.physical_id == op.physical_id:
                resource.status = ResourceStatus.FAILED
                resource.error = f"Rollback failed: {error}"

        return Step(intent, call, self.executor.step_timeout(resource_type), on_success, on_failure)


def _as_orphan(op: Operation, physical_id: str) -> Operation:
    """Treat a failed create that left a resource behind as a create to undo."""
    return replace(op, physical_id=physical_id)
