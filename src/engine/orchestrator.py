"""Engine facade: plan, apply, destroy, drift, recover.

Every state-changing operation runs under the stack lease, so a stack has
at most one apply, rollback or destroy in flight. Templates are validated
before anything is journaled.

Apply status flow:

    CREATE/UPDATE_IN_PROGRESS -> CREATE/UPDATE_COMPLETE
                              -> ROLLBACK_IN_PROGRESS -> ROLLBACK_COMPLETE | FAILED
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from common import new_id
from config import EngineConfig
from engine.drift import DriftDetector, DriftMonitor, DriftResult
from engine.errors import (
    CallbackServerError,
    ProviderError,
    RollbackFailureError,
    StaleChangeSetError,
)
from engine.executor import LifecycleExecutor
from engine.gateway import CustomProviderGateway
from engine.graph import ResourceGraph
from engine.journal import OperationJournal
from engine.models import (
    CHANGESET_CREATED,
    CHANGESET_DISCARDED,
    CHANGESET_EXECUTED,
    PHASE_DESTROY,
    RESULT_FAILED,
    RESULT_SUCCESS,
    ChangeSet,
    Operation,
    OperationKind,
    ResourceStatus,
    Stack,
    StackStatus,
)
from engine.planner import ChangeSetPlanner
from engine.providers import ProviderRegistry, build_registry
from engine.rollback import RollbackCoordinator
from engine.store import StackStore, validate_stack_id
from server.httpd import Server, ServerManager
from template import ResourceDeclaration, Template, provider_kind_for

logger = logging.getLogger(__name__)


class Engine:
    """Orchestration engine for a store of stacks."""

    def __init__(
        self,
        store: StackStore,
        registry: ProviderRegistry,
        gateway: Optional[CustomProviderGateway] = None,
        max_workers: int = 4,
        native_timeout: float = 300.0,
        server_manager: Optional[ServerManager] = None,
    ):
        """Initialize engine.

        Args:
            store: Stack registry (records, journals, leases)
            registry: Native provider adapters and replacement rules
            gateway: Custom provider gateway (created with defaults if None)
            max_workers: Worker pool size per batch
            native_timeout: Seconds a native provider call may take
            server_manager: Starts the callback server while custom resources are in flight
        """
        self.store = store
        self.registry = registry
        self.gateway = gateway if gateway is not None else CustomProviderGateway()
        self.executor = LifecycleExecutor(registry, self.gateway, max_workers, native_timeout)
        self.rollback_coordinator = RollbackCoordinator(self.executor)
        self.planner = ChangeSetPlanner(registry)
        self.drift_detector = DriftDetector(registry)
        self.server_manager = server_manager
        self._cancel_events: dict[str, threading.Event] = {}
        self._cancel_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: EngineConfig, serve_callbacks: bool = True) -> 'Engine':
        """Build an engine from configuration.

        Raises:
            ProviderError: If a provider kind is unknown
        """
        registry = build_registry(config.providers, config.custom_types)
        gateway = CustomProviderGateway(
            default_timeout=config.callback_timeout,
            sweep_interval=config.sweep_interval,
            response_url=config.callback.response_url,
            require_token=config.callback.require_token,
        )
        server_manager = None
        if serve_callbacks:
            server_manager = ServerManager(Server(
                gateway,
                bind=config.callback.bind,
                port=config.callback.port,
                cert=config.callback.cert,
                key=config.callback.key,
                admin_token=config.callback.admin_token,
            ))
        return cls(
            StackStore(config.state_dir),
            registry,
            gateway,
            max_workers=config.max_workers,
            native_timeout=config.native_timeout,
            server_manager=server_manager,
        )

    # -- read-only operations ---------------------------------------------

    def describe(self, stack_id: str) -> Stack:
        return self.store.load(stack_id)

    def list_stacks(self) -> list[str]:
        return self.store.list_stacks()

    def plan(self, stack_id: str, template: Template) -> ChangeSet:
        """Diff a template against the stack and persist the changeset.

        Raises:
            TemplateError: If the template does not form a valid graph
        """
        validate_stack_id(stack_id)
        graph = ResourceGraph.from_template(template)
        stack = self.store.load(stack_id) if self.store.exists(stack_id) else None
        changeset = self.planner.plan(stack_id, stack, graph)
        self.store.save_changeset(changeset)
        logger.info(f"[plan] {stack_id}: {changeset.changeset_id} {changeset.summary()}")
        return changeset

    def detect_drift(self, stack_id: str) -> list[DriftResult]:
        """Compare provider state with the journal; never mutates the stack."""
        stack = self.store.load(stack_id)
        return self.drift_detector.detect(stack, self.store.journal(stack_id))

    def start_drift_monitor(
        self,
        interval: float,
        on_report: Optional[Callable[[str, list[DriftResult]], None]] = None,
    ) -> DriftMonitor:
        monitor = DriftMonitor(self.detect_drift, self.store.list_stacks, interval, on_report)
        monitor.start()
        return monitor

    def discard(self, stack_id: str, changeset_id: str) -> ChangeSet:
        """Discard a planned changeset so it can never be executed.

        Raises:
            ChangeSetNotFoundError: If the changeset does not exist
            StaleChangeSetError: If it was already executed
        """
        changeset = self.store.load_changeset(stack_id, changeset_id)
        if changeset.status == CHANGESET_EXECUTED:
            raise StaleChangeSetError(changeset_id, "already executed")
        changeset.status = CHANGESET_DISCARDED
        self.store.save_changeset(changeset)
        logger.info(f"Discarded {changeset_id} for {stack_id}")
        return changeset

    def cancel(self, stack_id: str) -> bool:
        """Stop dispatching new operations of the in-flight apply.

        Calls already dispatched finish and are journaled; rollback follows.

        Returns:
            True if an apply was in flight in this process
        """
        with self._cancel_lock:
            event = self._cancel_events.get(stack_id)
        if event is None:
            return False
        logger.info(f"Cancel requested for {stack_id}")
        event.set()
        return True

    # -- apply --------------------------------------------------------------

    def apply(self, stack_id: str, changeset_id: str) -> Stack:
        """Execute a changeset.

        Provisioning failures do not raise: they are journaled, rolled back
        and reported through the returned stack's status and status_reason.

        Raises:
            StackLockedError: If another operation holds the stack lease
            ChangeSetNotFoundError: If the changeset does not exist
            StaleChangeSetError: If the changeset cannot be executed
        """
        with self.store.lease(stack_id, 'apply'):
            changeset = self.store.load_changeset(stack_id, changeset_id)
            stack = self.store.load(stack_id) if self.store.exists(stack_id) else None
            self._check_executable(changeset, stack)

            if stack is not None and changeset.is_empty:
                changeset.status = CHANGESET_EXECUTED
                self.store.save_changeset(changeset)
                logger.info(f"[apply] {stack_id}: no changes")
                return stack

            graph = ResourceGraph(
                [ResourceDeclaration.from_dict(d) for d in changeset.target], changeset.outputs)
            first = stack is None or stack.version == 0
            if stack is None:
                stack = Stack(stack_id)
            snapshot = Stack.from_dict(stack.to_dict())
            pre_apply_dependencies = {lid: list(r.depends_on) for lid, r in stack.resources.items()}

            # The callback endpoint must be up before the stack leaves its resting state
            with self._callbacks_active(self._uses_custom(stack, changeset)):
                run_id = new_id('run')
                self.store.save_snapshot(snapshot, run_id)
                stack.last_run_id = run_id
                stack.set_status(StackStatus.CREATE_IN_PROGRESS if first else StackStatus.UPDATE_IN_PROGRESS)
                self.store.save(stack)
                changeset.status = CHANGESET_EXECUTED
                self.store.save_changeset(changeset)
                logger.info(f"[apply] {stack_id}: executing {changeset_id} as {run_id}")

                journal = self.store.journal(stack_id)
                cancel_event = self._register_cancel(stack_id)
                try:
                    result = self.executor.apply(
                        stack, changeset, graph, journal, run_id, cancel_event, self.store.save)
                    outputs: dict = {}
                    if result.success:
                        try:
                            outputs = self.executor.resolve_properties(stack, graph.outputs)
                        except ProviderError as e:
                            result.success = False
                            result.failures['outputs'] = str(e)
                    if not result.success:
                        self._roll_back(stack, journal, run_id, snapshot, result.reason)
                        return stack

                    removed = [
                        c.logical_id for c in changeset.changes
                        if c.action == OperationKind.DELETE and not c.replacement
                    ]
                    self._finalize(stack, changeset, graph, outputs, removed)
                    self._commit(stack, journal, run_id, removed, pre_apply_dependencies, first)
                finally:
                    self._unregister_cancel(stack_id)
        return stack

    def _check_executable(self, changeset: ChangeSet, stack: Optional[Stack]) -> None:
        if changeset.status != CHANGESET_CREATED:
            raise StaleChangeSetError(changeset.changeset_id, f"changeset is {changeset.status}")
        version = stack.version if stack is not None else 0
        if changeset.base_version != version:
            raise StaleChangeSetError(
                changeset.changeset_id,
                f"planned against version {changeset.base_version}, stack is at {version}",
            )
        if stack is not None and stack.status.in_progress:
            raise StaleChangeSetError(
                changeset.changeset_id,
                f"stack is {stack.status.value}; run recover first",
            )

    def _finalize(self, stack: Stack, changeset: ChangeSet, graph: ResourceGraph,
                  outputs: dict, removed: list[str]) -> None:
        """Record the committed target before the commit phase starts."""
        ordered = {}
        for node in graph.create_order():
            resource = stack.resources[node.logical_id]
            resource.properties = node.properties
            resource.depends_on = sorted(node.dependencies)
            ordered[node.logical_id] = resource
        for logical_id in removed:
            resource = stack.resources.get(logical_id)
            if resource is not None:
                resource.status = ResourceStatus.AWAITING_DELETION
                ordered[logical_id] = resource
        stack.resources = ordered
        stack.outputs = outputs
        stack.version += 1
        stack.template_hash = changeset.target_hash
        self.store.save(stack)

    def _commit(self, stack: Stack, journal: OperationJournal, run_id: str, removed: list[str],
                pre_apply_dependencies: dict[str, list[str]], first: bool) -> None:
        result = self.executor.commit(
            stack, removed, pre_apply_dependencies, journal, run_id, self.store.save)
        status = StackStatus.CREATE_COMPLETE if first else StackStatus.UPDATE_COMPLETE
        stack.set_status(status, "; ".join(result.warnings) or None)
        self.store.save(stack)
        logger.info(f"[apply] {stack.stack_id}: {status.value} (version {stack.version})")

    def _roll_back(self, stack: Stack, journal: OperationJournal, run_id: str,
                   snapshot: Stack, reason: str) -> None:
        stack.set_status(StackStatus.ROLLBACK_IN_PROGRESS, reason)
        self.store.save(stack)
        logger.warning(f"[rollback] {stack.stack_id}: rolling back run {run_id}: {reason}")

        failures = self.rollback_coordinator.rollback(stack, journal, run_id, snapshot, self.store.save)
        if failures:
            error = RollbackFailureError(stack.stack_id, failures)
            stack.set_status(StackStatus.FAILED, f"{reason}; {error}")
            logger.error(f"[rollback] {error}")
        else:
            stack.set_status(StackStatus.ROLLBACK_COMPLETE, reason)
            logger.info(f"[rollback] {stack.stack_id}: ROLLBACK_COMPLETE")
        self.store.save(stack)

    # -- destroy ------------------------------------------------------------

    def destroy(self, stack_id: str) -> Stack:
        """Delete every resource of the stack, then the stack record.

        The journal is kept. A failed delete leaves the stack FAILED.

        Raises:
            StackLockedError: If another operation holds the stack lease
            StackNotFoundError: If the stack does not exist
        """
        with self.store.lease(stack_id, 'destroy'):
            stack = self.store.load(stack_id)
            run_id = new_id('run')
            stack.last_run_id = run_id
            return self._destroy(stack, self.store.journal(stack_id), run_id)

    def _destroy(self, stack: Stack, journal: OperationJournal, run_id: str) -> Stack:
        stack.set_status(StackStatus.DELETE_IN_PROGRESS)
        self.store.save(stack)
        logger.info(f"[destroy] {stack.stack_id}: deleting {len(stack.resources)} resource(s)")

        with self._callbacks_active(self._uses_custom(stack)):
            result = self.executor.destroy(stack, journal, run_id, self.store.save)

        if result.success:
            stack.outputs = {}
            stack.set_status(StackStatus.DELETE_COMPLETE)
            self.store.delete(stack.stack_id)
            logger.info(f"[destroy] {stack.stack_id}: DELETE_COMPLETE")
        else:
            stack.set_status(StackStatus.FAILED, f"Destroy failed: {result.reason}")
            self.store.save(stack)
            logger.error(f"[destroy] {stack.stack_id}: {stack.status_reason}")
        return stack

    # -- crash recovery -----------------------------------------------------

    def recover(self, stack_id: str, retry_rollback: bool = False) -> Stack:
        """Bring an interrupted stack to a terminal state.

        Dangling intents of the last run are reconciled against the
        providers first. Then an interrupted apply is rolled back (or its
        commit phase finished if the forward run had completed), and an
        interrupted destroy is resumed. A FAILED stack is only touched when
        retry_rollback is set.

        Raises:
            StackLockedError: If another operation holds the stack lease
            StackNotFoundError: If the stack does not exist
        """
        with self.store.lease(stack_id, 'recover'):
            stack = self.store.load(stack_id)
            run_id = stack.last_run_id
            if run_id is None:
                return stack
            journal = self.store.journal(stack_id)
            destroy_run = any(e.phase == PHASE_DESTROY for e in journal.entries(run_id))

            resumable = stack.status.in_progress or (stack.status == StackStatus.FAILED and retry_rollback)
            if not resumable:
                logger.info(f"[recover] {stack_id} is {stack.status.value}; nothing to recover")
                return stack

            self._reconcile(stack, journal, run_id)

            if stack.status == StackStatus.DELETE_IN_PROGRESS or destroy_run:
                return self._destroy(stack, journal, run_id)

            snapshot = self.store.load_snapshot(stack_id, run_id)
            if snapshot is None:
                stack.set_status(StackStatus.FAILED, f"No pre-apply snapshot for run {run_id}")
                self.store.save(stack)
                return stack

            with self._callbacks_active(self._uses_custom(stack) or self._uses_custom(snapshot)):
                if stack.status != StackStatus.ROLLBACK_IN_PROGRESS and stack.version > snapshot.version:
                    logger.info(f"[recover] {stack_id}: forward run committed, finishing cleanup")
                    removed = [lid for lid, r in stack.resources.items()
                               if r.status == ResourceStatus.AWAITING_DELETION]
                    pre_apply = {lid: list(r.depends_on) for lid, r in snapshot.resources.items()}
                    self._commit(stack, journal, run_id, removed, pre_apply, snapshot.version == 0)
                else:
                    self._roll_back(stack, journal, run_id, snapshot, f"Recovered interrupted run {run_id}")
        return stack

    def _reconcile(self, stack: Stack, journal: OperationJournal, run_id: str) -> list[Operation]:
        """Settle intents that never got an outcome by re-querying providers."""
        settled = []
        for intent in journal.dangling_intents(run_id):
            outcome = self._reconcile_intent(intent)
            settled.append(journal.append(outcome))
            logger.info(
                f"[recover] {stack.stack_id}: {intent.kind.value} {intent.logical_id} "
                f"reconciled as {outcome.result}"
            )
        return settled

    def _reconcile_intent(self, intent: Operation) -> Operation:
        resource_type = intent.resource_type or ''
        if provider_kind_for(resource_type) == 'custom':
            logger.warning(f"[recover] Custom request for {intent.logical_id} interrupted; state unknown")
            return intent.outcome(RESULT_FAILED, error="Interrupted custom provider request")
        try:
            provider = self.registry.get(resource_type)
            if intent.kind == OperationKind.CREATE:
                physical_id = provider.find(intent.idempotency_token or '')
                if physical_id:
                    return intent.outcome(RESULT_SUCCESS, physical_id=physical_id)
                return intent.outcome(RESULT_FAILED, error="Interrupted before the resource was created")
            actual = provider.read(intent.physical_id or '')
            if intent.kind == OperationKind.DELETE:
                if actual is None:
                    return intent.outcome(RESULT_SUCCESS)
                return intent.outcome(RESULT_FAILED, error="Interrupted before the resource was deleted")
            expected = intent.new_properties or {}
            if actual is not None and all(actual.get(k) == v for k, v in expected.items()):
                return intent.outcome(RESULT_SUCCESS)
            return intent.outcome(RESULT_FAILED, error="Interrupted before the update was applied")
        except ProviderError as e:
            return intent.outcome(RESULT_FAILED, error=f"Reconciliation failed: {e.message}")

    # -- helpers --------------------------------------------------------------

    def _uses_custom(self, stack: Stack, changeset: Optional[ChangeSet] = None) -> bool:
        types = [r.type for r in stack.resources.values()] + [r.type for r in stack.retired]
        if changeset is not None:
            types += [c.resource_type for c in changeset.changes]
        return any(provider_kind_for(t) == 'custom' for t in types)

    @contextmanager
    def _callbacks_active(self, needed: bool) -> Iterator[None]:
        """Serve callbacks and sweep deadlines while custom requests may be in flight."""
        if not needed:
            yield
            return
        self.gateway.start_sweeper()
        if self.server_manager is not None:
            try:
                self.server_manager.ensure()
            except RuntimeError as e:
                self.gateway.stop_sweeper()
                raise CallbackServerError(f"Callback server unavailable: {e}")
        try:
            yield
        finally:
            if self.server_manager is not None:
                self.server_manager.stop()
            self.gateway.stop_sweeper()

    def _register_cancel(self, stack_id: str) -> threading.Event:
        event = threading.Event()
        with self._cancel_lock:
            self._cancel_events[stack_id] = event
        return event

    def _unregister_cancel(self, stack_id: str) -> None:
        with self._cancel_lock:
            self._cancel_events.pop(stack_id, None)

