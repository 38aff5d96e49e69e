"""Tests for engine/store.py - stack records, changesets and the stack lease."""

import json
import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.errors import ChangeSetNotFoundError, StackLockedError, StackNotFoundError
from engine.models import ChangeSet, Resource, Stack, StackStatus
from engine.store import StackStore, validate_stack_id


def _stack(stack_id='web'):
    stack = Stack(stack_id, status=StackStatus.CREATE_COMPLETE, version=1)
    stack.resources['A'] = Resource('A', 'Mem::Thing', {'V': 1}, physical_id='pid-a')
    return stack


class TestValidateStackId:
    """Tests for stack id validation."""

    @pytest.mark.parametrize('stack_id', ['web', 'Web-01', 'a' * 128])
    def test_valid(self, stack_id):
        assert validate_stack_id(stack_id) == stack_id

    @pytest.mark.parametrize('stack_id', ['', '1web', '../etc', 'web/db', 'web_db', 'a' * 129, None])
    def test_invalid(self, stack_id):
        with pytest.raises(ValueError):
            validate_stack_id(stack_id)


class TestStackRecords:
    """Tests for stack persistence."""

    def test_save_and_load(self, store):
        stack = _stack()
        store.save(stack)

        loaded = store.load('web')
        assert loaded.to_dict() == stack.to_dict()
        assert store.exists('web')
        assert store.list_stacks() == ['web']

    def test_load_missing(self, store):
        with pytest.raises(StackNotFoundError):
            store.load('ghost')

    def test_list_empty(self, store):
        assert store.list_stacks() == []

    def test_save_leaves_no_temp_file(self, store):
        path = store.save(_stack())
        assert [p.name for p in path.parent.iterdir()] == ['stack.json']

    def test_delete_keeps_journal(self, store):
        store.save(_stack())
        store.save_changeset(ChangeSet('cs-1', 'web', 'h', 0))
        store.journal('web').path.write_text('')

        store.delete('web')

        assert not store.exists('web')
        assert store.list_changesets('web') == []
        assert store.journal('web').path.exists()


class TestChangeSets:
    """Tests for changeset persistence."""

    def test_round_trip(self, store):
        changeset = ChangeSet('cs-1', 'web', 'hash', 3, target=[{'logicalId': 'A', 'type': 'T'}])
        store.save_changeset(changeset)

        assert store.load_changeset('web', 'cs-1').to_dict() == changeset.to_dict()

    def test_missing(self, store):
        with pytest.raises(ChangeSetNotFoundError):
            store.load_changeset('web', 'cs-ghost')

    def test_path_traversal_rejected(self, store):
        with pytest.raises(ChangeSetNotFoundError):
            store.load_changeset('web', '../stack')

    def test_list_sorted_by_creation(self, store):
        store.save_changeset(ChangeSet('cs-b', 'web', 'h2', 0, created_at=2.0))
        store.save_changeset(ChangeSet('cs-a', 'web', 'h1', 0, created_at=1.0))

        assert [c.changeset_id for c in store.list_changesets('web')] == ['cs-a', 'cs-b']


class TestSnapshots:
    """Tests for pre-apply snapshots."""

    def test_round_trip(self, store):
        store.save_snapshot(_stack(), 'run-1')
        assert store.load_snapshot('web', 'run-1').resources['A'].physical_id == 'pid-a'

    def test_missing(self, store):
        assert store.load_snapshot('web', 'run-ghost') is None


class TestLease:
    """Tests for the stack lease."""

    def test_lease_file_held_and_released(self, store):
        with store.lease('web', 'apply'):
            owner = store.lease_owner('web')
            assert owner['pid'] == os.getpid()
            assert owner['purpose'] == 'apply'
        assert store.lease_owner('web') is None

    def test_second_lease_in_process_refused(self, store):
        with store.lease('web'):
            with pytest.raises(StackLockedError, match='this process'):
                with store.lease('web'):
                    pass

    def test_leases_are_per_stack(self, store):
        with store.lease('web'):
            with store.lease('db'):
                assert store.lease_owner('db') is not None

    def test_lease_released_on_error(self, store):
        with pytest.raises(RuntimeError):
            with store.lease('web'):
                raise RuntimeError('boom')
        with store.lease('web'):
            pass

    def test_live_foreign_owner_refused(self, store):
        lease = store.stack_dir('web') / 'lease'
        lease.parent.mkdir(parents=True)
        lease.write_text(json.dumps({'pid': 4242, 'purpose': 'destroy'}))

        with patch('engine.store._process_alive', return_value=True):
            with pytest.raises(StackLockedError, match='pid 4242'):
                with store.lease('web'):
                    pass
        assert lease.exists()

    def test_stale_lease_reclaimed(self, store):
        lease = store.stack_dir('web') / 'lease'
        lease.parent.mkdir(parents=True)
        lease.write_text(json.dumps({'pid': 4242, 'purpose': 'apply'}))

        with patch('engine.store._process_alive', return_value=False):
            with store.lease('web', 'recover'):
                assert store.lease_owner('web')['purpose'] == 'recover'
        assert not lease.exists()

    @pytest.mark.parametrize('content', ['', '{"pid": 42', 'garbage', '[1, 2]', '{"purpose": "apply"}'])
    def test_unreadable_lease_reclaimed(self, store, content):
        lease = store.stack_dir('web') / 'lease'
        lease.parent.mkdir(parents=True)
        lease.write_text(content)

        with store.lease('web', 'recover'):
            assert store.lease_owner('web')['purpose'] == 'recover'
        assert not lease.exists()

    def test_lease_record_never_empty(self, store):
        with store.lease('web', 'apply'):
            assert store.lease_owner('web')['pid'] == os.getpid()
            leftovers = [p.name for p in store.stack_dir('web').iterdir() if p.suffix == '.tmp']
        assert leftovers == []
