"""Tests for engine/orchestrator.py - end-to-end stack lifecycle.

Runs the real planner, executor, journal and rollback against in-memory
providers; only provider behaviour is scripted.
"""

import sys
import threading
import time
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from conftest import BlockingProvider, SimulatedCrash, make_template, res
from engine.errors import (
    ChangeSetNotFoundError,
    CyclicDependencyError,
    DuplicateLogicalIdError,
    StackLockedError,
    StackNotFoundError,
    StaleChangeSetError,
    UnresolvedReferenceError,
)
from engine.models import (
    CHANGESET_DISCARDED,
    PHASE_APPLY,
    RESULT_FAILED,
    RESULT_PENDING,
    RESULT_SUCCESS,
    CallbackStatus,
    OperationKind,
    StackStatus,
)
from engine.orchestrator import Engine
from engine.providers import ProviderRegistry


def _apply(engine, stack_id, template):
    changeset = engine.plan(stack_id, template)
    return engine.apply(stack_id, changeset.changeset_id)


def _deletes(provider):
    return [pid for call, pid in provider.calls if call == 'delete']


def _abc(fail_c=False):
    return make_template([
        res('A', {'Value': 'a'}),
        res('B', {'Parent': {'Ref': 'A'}}),
        res('C', {'Parent': {'Ref': 'B'}, 'Fail': fail_c}),
    ])


class TestPlan:
    """Tests for changeset planning."""

    def test_plan_new_stack(self, engine, store):
        changeset = engine.plan('web', _abc())

        assert changeset.base_version == 0
        assert [(c.logical_id, c.action, c.batch) for c in changeset.changes] == [
            ('A', OperationKind.CREATE, 0),
            ('B', OperationKind.CREATE, 1),
            ('C', OperationKind.CREATE, 2),
        ]
        assert store.load_changeset('web', changeset.changeset_id).changeset_id == changeset.changeset_id

    def test_plan_is_deterministic(self, engine):
        assert engine.plan('web', _abc()).changeset_id == engine.plan('web', _abc()).changeset_id

    def test_plan_does_not_touch_providers(self, engine, provider):
        engine.plan('web', _abc())
        assert provider.calls == []

    def test_cycle_rejected_without_side_effects(self, engine, store, provider):
        template = make_template([
            res('A', {'Peer': {'Ref': 'B'}}),
            res('B', depends_on=['A']),
        ])

        with pytest.raises(CyclicDependencyError) as exc_info:
            engine.plan('web', template)

        assert set(exc_info.value.cycle) == {'A', 'B'}
        assert not store.journal('web').path.exists()
        assert store.list_changesets('web') == []
        assert provider.calls == []

    def test_duplicate_logical_id_produces_no_changeset(self, engine, store):
        template = make_template([res('A'), res('A', {'Other': 1})])

        with pytest.raises(DuplicateLogicalIdError):
            engine.plan('web', template)
        assert store.list_changesets('web') == []

    def test_unresolved_reference(self, engine):
        with pytest.raises(UnresolvedReferenceError):
            engine.plan('web', make_template([res('A', {'Peer': {'Ref': 'Ghost'}})]))

    def test_invalid_stack_id(self, engine):
        with pytest.raises(ValueError):
            engine.plan('../etc', _abc())


class TestApply:
    """Tests for forward runs."""

    def test_create_stack(self, engine, provider):
        template = make_template(
            [res('A', {'Value': 'a'}), res('B', {'Parent': {'Ref': 'A'}})],
            outputs={'BId': {'Ref': 'B'}, 'AId': {'Fn::GetAtt': ['A', 'Id']}},
        )

        stack = _apply(engine, 'web', template)

        assert stack.status == StackStatus.CREATE_COMPLETE
        assert stack.version == 1
        a, b = stack.resources['A'], stack.resources['B']
        assert b.applied_properties == {'Parent': a.physical_id}
        assert b.properties == {'Parent': {'Ref': 'A'}}
        assert stack.outputs == {'BId': b.physical_id, 'AId': a.physical_id}
        assert set(provider.resources) == {a.physical_id, b.physical_id}

    def test_batches_run_in_dependency_order(self, engine, store):
        _apply(engine, 'web', _abc())

        entries = store.journal('web').entries(phase=PHASE_APPLY)
        intent = {e.logical_id: e.seq for e in entries if e.result == RESULT_PENDING}
        outcome = {e.logical_id: e.seq for e in entries if e.result == RESULT_SUCCESS}
        assert outcome['A'] < intent['B']
        assert outcome['B'] < intent['C']

    def test_stack_record_persisted(self, engine, store):
        stack = _apply(engine, 'web', _abc())

        loaded = store.load('web')
        assert loaded.to_dict() == stack.to_dict()
        assert store.lease_owner('web') is None

    def test_round_trip_plan_is_empty(self, engine):
        stack = _apply(engine, 'web', _abc())

        changeset = engine.plan('web', _abc())
        assert changeset.changes == []
        assert changeset.is_empty
        again = engine.apply('web', changeset.changeset_id)
        assert again.version == stack.version

    def test_update_in_place(self, engine, provider):
        first = _apply(engine, 'web', make_template([res('A', {'Value': 1})]))
        pid = first.resources['A'].physical_id

        stack = _apply(engine, 'web', make_template([res('A', {'Value': 2})]))

        assert stack.status == StackStatus.UPDATE_COMPLETE
        assert stack.version == 2
        assert stack.resources['A'].physical_id == pid
        assert provider.read(pid) == {'Value': 2}

    def test_removed_resource_deleted(self, engine, provider):
        first = _apply(engine, 'web', _abc())
        c_pid = first.resources['C'].physical_id

        stack = _apply(engine, 'web', make_template([res('A', {'Value': 'a'})]))

        assert list(stack.resources) == ['A']
        assert provider.read(c_pid) is None
        assert len(provider.resources) == 1

    def test_removed_resources_deleted_dependents_first(self, engine, provider):
        first = _apply(engine, 'web', _abc())
        b_pid = first.resources['B'].physical_id
        c_pid = first.resources['C'].physical_id

        _apply(engine, 'web', make_template([res('A', {'Value': 'a'})]))

        assert _deletes(provider) == [c_pid, b_pid]

    def test_replacement_creates_before_deleting(self, engine, provider, store):
        def template(name):
            return make_template([
                res('A', {'Name': name}),
                res('B', {'Parent': {'Ref': 'A'}}),
            ])
        first = _apply(engine, 'web', template('x'))
        old_pid = first.resources['A'].physical_id
        b_pid = first.resources['B'].physical_id

        changeset = engine.plan('web', template('y'))
        change = next(c for c in changeset.changes if c.logical_id == 'A')
        assert change.replacement is True
        stack = engine.apply('web', changeset.changeset_id)

        new_pid = stack.resources['A'].physical_id
        assert new_pid != old_pid
        assert provider.read(old_pid) is None
        assert provider.read(new_pid) == {'Name': 'y'}
        # Dependent was updated in place to point at the replacement
        assert stack.resources['B'].physical_id == b_pid
        assert stack.resources['B'].applied_properties == {'Parent': new_pid}
        assert stack.retired == []

        creates = [i for i, (call, _) in enumerate(provider.calls) if call == 'create']
        delete_index = provider.calls.index(('delete', old_pid))
        assert creates[-1] < delete_index

    def test_executed_changeset_is_stale(self, engine):
        changeset = engine.plan('web', _abc())
        engine.apply('web', changeset.changeset_id)

        with pytest.raises(StaleChangeSetError):
            engine.apply('web', changeset.changeset_id)

    def test_changeset_planned_against_older_version_is_stale(self, engine):
        _apply(engine, 'web', make_template([res('A', {'Value': 1})]))
        older = engine.plan('web', make_template([res('A', {'Value': 2})]))
        _apply(engine, 'web', make_template([res('A', {'Value': 3})]))

        with pytest.raises(StaleChangeSetError, match='planned against version 1'):
            engine.apply('web', older.changeset_id)

    def test_discarded_changeset_cannot_run(self, engine):
        changeset = engine.plan('web', _abc())

        discarded = engine.discard('web', changeset.changeset_id)

        assert discarded.status == CHANGESET_DISCARDED
        with pytest.raises(StaleChangeSetError):
            engine.apply('web', changeset.changeset_id)

    def test_unknown_changeset(self, engine):
        with pytest.raises(ChangeSetNotFoundError):
            engine.apply('web', 'cs-missing')


class TestRollback:
    """Tests for failure handling during apply."""

    def test_abc_rollback_deletes_b_before_a(self, engine, provider, store):
        """C fails: B and A are deleted in that order and the stack is rolled back."""
        stack = _apply(engine, 'web', _abc(fail_c=True))

        assert stack.status == StackStatus.ROLLBACK_COMPLETE
        assert 'C' in stack.status_reason
        assert stack.resources == {}
        assert provider.resources == {}

        journal = store.journal('web')
        created = {e.logical_id: e.physical_id for e in journal.succeeded(stack.last_run_id, PHASE_APPLY)}
        assert _deletes(provider) == [created['B'], created['A']]

    def test_failed_update_restores_previous_state(self, engine, provider, store):
        v1 = make_template([res('A', {'Value': 1}), res('B', {'Value': 1}, depends_on=['A'])])
        before = _apply(engine, 'web', v1)
        a_pid = before.resources['A'].physical_id

        v2 = make_template([res('A', {'Value': 2}), res('B', {'Value': 2, 'Fail': True}, depends_on=['A'])])
        stack = _apply(engine, 'web', v2)

        assert stack.status == StackStatus.ROLLBACK_COMPLETE
        assert stack.version == 1
        assert provider.read(a_pid) == {'Value': 1}
        assert {lid: r.to_dict() for lid, r in stack.resources.items()} == \
            {lid: r.to_dict() for lid, r in before.resources.items()}
        assert stack.template_hash == before.template_hash

    def test_failed_create_with_lost_response_leaves_no_orphan(self, engine, provider):
        stack = _apply(engine, 'web', make_template([res('A', {'LoseResponse': True})]))

        assert stack.status == StackStatus.ROLLBACK_COMPLETE
        assert provider.resources == {}

    def test_rollback_failure_marks_stack_failed(self, engine, provider):
        template = make_template([
            res('A', {'FailDelete': True}),
            res('B', {'Fail': True}, depends_on=['A']),
        ])

        stack = _apply(engine, 'web', template)

        assert stack.status == StackStatus.FAILED
        assert 'E400' in stack.status_reason
        assert len(provider.resources) == 1

    def test_retry_rollback_after_fix(self, engine, provider, store):
        template = make_template([
            res('A', {'FailDelete': True}),
            res('B', {'Fail': True}, depends_on=['A']),
        ])
        _apply(engine, 'web', template)
        (a_pid,) = provider.resources
        provider.resources[a_pid]['FailDelete'] = False

        assert engine.recover('web').status == StackStatus.FAILED
        stack = engine.recover('web', retry_rollback=True)

        assert stack.status == StackStatus.ROLLBACK_COMPLETE
        assert provider.resources == {}
        assert store.load('web').status == StackStatus.ROLLBACK_COMPLETE

    def test_apply_after_rollback_starts_fresh(self, engine, provider):
        _apply(engine, 'web', _abc(fail_c=True))

        stack = _apply(engine, 'web', _abc())

        assert stack.status == StackStatus.CREATE_COMPLETE
        assert len(provider.resources) == 3

    def test_native_call_timeout_rolls_back(self, store, gateway, provider):
        """A native call past its deadline fails like a provider error."""
        blocking = BlockingProvider()
        registry = ProviderRegistry()
        registry.register('Blk::*', blocking)
        registry.register('Mem::*', provider)
        engine = Engine(store, registry, gateway, native_timeout=0.3)
        template = make_template([
            res('A', {'Value': 1}),
            res('Slow', {'Value': 2}, resource_type='Blk::Thing'),
        ])

        try:
            stack = _apply(engine, 'web', template)
        finally:
            blocking.release.set()

        assert stack.status == StackStatus.ROLLBACK_COMPLETE
        assert 'Slow: E201: Provider call did not complete within 0.3s' in stack.status_reason
        assert provider.resources == {}
        assert len(_deletes(provider)) == 1
        failed = [e for e in store.journal('web').entries(stack.last_run_id)
                  if e.result == RESULT_FAILED]
        assert [e.logical_id for e in failed] == ['Slow']


class TestCancellation:
    """Tests for operator cancellation and the stack lease."""

    @pytest.fixture
    def blocking(self):
        return BlockingProvider()

    @pytest.fixture
    def blocking_engine(self, store, gateway, provider, blocking):
        registry = ProviderRegistry()
        registry.register('Blk::*', blocking)
        registry.register('Mem::*', provider)
        return Engine(store, registry, gateway, native_timeout=10)

    def test_cancel_stops_dispatch_and_rolls_back(self, blocking_engine, blocking, provider, store):
        template = make_template([
            res('A', {'Value': 1}, resource_type='Blk::Thing'),
            res('B', {'Parent': {'Ref': 'A'}}),
        ])
        changeset = blocking_engine.plan('web', template)
        result = {}
        worker = threading.Thread(
            target=lambda: result.update(stack=blocking_engine.apply('web', changeset.changeset_id)))
        worker.start()
        try:
            assert blocking.started.wait(5)
            # Second operation on a leased stack is refused immediately
            with pytest.raises(StackLockedError):
                blocking_engine.destroy('web')
            assert blocking_engine.cancel('web') is True
        finally:
            blocking.release.set()
            worker.join(10)

        stack = result['stack']
        assert stack.status == StackStatus.ROLLBACK_COMPLETE
        assert stack.status_reason == 'Cancelled by operator'
        assert provider.calls == []
        assert blocking.resources == {}

    def test_cancel_without_run(self, engine):
        assert engine.cancel('web') is False


class TestCustomResources:
    """Tests for resources provisioned through the callback gateway."""

    def _db(self, **extra):
        props = {'ServiceToken': 'http://provider.invalid/hook', 'Engine': 'pg'}
        props.update(extra)
        return res('Db', props, resource_type='Custom::Database')

    def test_custom_create_via_callback(self, engine, dispatcher):
        dispatcher.answer = 'SUCCESS'

        stack = _apply(engine, 'web', make_template(
            [self._db()], outputs={'Url': {'Fn::GetAtt': ['Db', 'Endpoint']}}))

        assert stack.status == StackStatus.CREATE_COMPLETE
        assert stack.resources['Db'].physical_id == 'custom-Db'
        assert stack.resources['Db'].provider_kind == 'custom'
        assert stack.outputs == {'Url': 'https://db.example'}
        request = dispatcher.requests[0]
        assert request['requestType'] == 'Create'
        assert request['resourceProperties']['Engine'] == 'pg'
        assert request['callbackToken']

    def test_custom_failure_rolls_back(self, engine, dispatcher):
        dispatcher.answer = 'FAILED'

        stack = _apply(engine, 'web', make_template([self._db()]))

        assert stack.status == StackStatus.ROLLBACK_COMPLETE
        assert 'provider said no' in stack.status_reason

    def test_callback_timeout_does_not_block_other_stacks(self, engine, gateway, dispatcher, store):
        slow = engine.plan('slow', make_template([self._db(ServiceTimeout=2.0)]))
        fast = engine.plan('fast', make_template([res('A', {'Value': 1})]))
        result = {}
        worker = threading.Thread(
            target=lambda: result.update(stack=engine.apply('slow', slow.changeset_id)))
        worker.start()

        deadline = time.monotonic() + 5
        while not gateway.pending('slow') and time.monotonic() < deadline:
            time.sleep(0.01)
        assert gateway.pending('slow')

        fast_stack = engine.apply('fast', fast.changeset_id)
        assert fast_stack.status == StackStatus.CREATE_COMPLETE
        assert gateway.pending('slow'), "slow stack should still be waiting for its callback"

        worker.join(10)
        assert result['stack'].status == StackStatus.ROLLBACK_COMPLETE

        request = dispatcher.requests[0]
        assert gateway.get(request['requestId']).status == CallbackStatus.TIMED_OUT
        failed = [e for e in store.journal('slow').entries(phase=PHASE_APPLY) if e.result == RESULT_FAILED]
        assert len(failed) == 1
        assert 'did not respond' in failed[0].error

        late = gateway.handle_callback(
            {'requestId': request['requestId'], 'status': 'SUCCESS', 'physicalId': 'late'},
            request['callbackToken'],
        )
        assert late.http_status == 409
        assert gateway.get(request['requestId']).status == CallbackStatus.TIMED_OUT


class TestDestroy:
    """Tests for stack teardown."""

    def test_destroy_deletes_dependents_first(self, engine, provider, store):
        created = _apply(engine, 'web', _abc())
        pids = {lid: r.physical_id for lid, r in created.resources.items()}

        stack = engine.destroy('web')

        assert stack.status == StackStatus.DELETE_COMPLETE
        assert _deletes(provider) == [pids['C'], pids['B'], pids['A']]
        assert provider.resources == {}
        assert not store.exists('web')
        # Journal survives the stack record
        assert store.journal('web').path.exists()

    def test_destroy_failure_marks_failed(self, engine, provider, store):
        _apply(engine, 'web', make_template([
            res('A', {'Value': 1}),
            res('B', {'FailDelete': True}, depends_on=['A']),
        ]))

        stack = engine.destroy('web')

        assert stack.status == StackStatus.FAILED
        assert 'B' in stack.status_reason
        assert len(provider.resources) == 2
        assert store.load('web').status == StackStatus.FAILED

    def test_destroy_unknown_stack(self, engine):
        with pytest.raises(StackNotFoundError):
            engine.destroy('ghost')


class TestRecover:
    """Tests for recovery of interrupted runs."""

    def test_recover_rolls_back_interrupted_create(self, engine, store, registry, gateway, provider):
        """A crash mid-create leaves a dangling intent; recovery adopts and removes the resource."""
        changeset = engine.plan('web', make_template([
            res('A', {'Value': 1}),
            res('B', {'Crash': True}, depends_on=['A']),
        ]))
        with pytest.raises(SimulatedCrash):
            engine.apply('web', changeset.changeset_id)

        interrupted = store.load('web')
        assert interrupted.status == StackStatus.CREATE_IN_PROGRESS
        assert len(store.journal('web').dangling_intents(interrupted.last_run_id)) == 1
        assert len(provider.resources) == 2

        restarted = Engine(store, registry, gateway)
        stack = restarted.recover('web')

        assert stack.status == StackStatus.ROLLBACK_COMPLETE
        assert provider.resources == {}
        journal = store.journal('web')
        assert journal.dangling_intents(stack.last_run_id) == []
        reconciled = [e for e in journal.succeeded(stack.last_run_id, PHASE_APPLY) if e.logical_id == 'B']
        assert len(reconciled) == 1

    def test_recover_reclaims_empty_lease(self, engine, store):
        """A lease left empty by a crashed process does not lock the stack."""
        _apply(engine, 'web', _abc())
        (store.stack_dir('web') / 'lease').write_text('')

        stack = engine.recover('web')

        assert stack.status == StackStatus.CREATE_COMPLETE
        assert store.lease_owner('web') is None

    def test_recover_is_noop_for_complete_stack(self, engine, provider):
        stack = _apply(engine, 'web', _abc())
        calls = list(provider.calls)

        recovered = engine.recover('web')

        assert recovered.status == StackStatus.CREATE_COMPLETE
        assert recovered.version == stack.version
        assert provider.calls == calls
