"""Stack store and per-stack lease.

Layout under the state directory:

    stacks/<stack_id>/stack.json             current stack record
    stacks/<stack_id>/journal.jsonl          operation journal
    stacks/<stack_id>/changesets/<id>.json   planned changesets
    stacks/<stack_id>/snapshots/<run>.json   pre-apply stack records
    stacks/<stack_id>/lease                  owner of the in-flight operation

The store is injected into the engine; nothing here is process-global
except the in-process lease table.
"""

import json
import logging
import os
import re
import shutil
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from engine.errors import ChangeSetNotFoundError, StackLockedError, StackNotFoundError
from engine.journal import OperationJournal
from engine.models import ChangeSet, Stack

logger = logging.getLogger(__name__)

STACK_ID_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9-]{0,127}$')

# In-process leases, keyed by lease file path
_held_leases: dict[str, threading.Lock] = {}
_held_leases_guard = threading.Lock()


def validate_stack_id(stack_id: str) -> str:
    """Check a stack id is safe to use as a directory name.

    Raises:
        ValueError: If the id is malformed
    """
    if not isinstance(stack_id, str) or not STACK_ID_PATTERN.match(stack_id):
        raise ValueError(
            f"Invalid stack id '{stack_id}': must start with a letter and contain "
            "only letters, digits and hyphens (max 128)"
        )
    return stack_id


def _process_alive(pid: int) -> bool:
    """Check if process with given PID exists."""
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True


def _write_json(path: Path, data: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + '.tmp')
    with open(tmp, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)


class StackStore:
    """File-backed registry of stacks keyed by stack id."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def stack_dir(self, stack_id: str) -> Path:
        return self.base_dir / 'stacks' / validate_stack_id(stack_id)

    def exists(self, stack_id: str) -> bool:
        return (self.stack_dir(stack_id) / 'stack.json').exists()

    def list_stacks(self) -> list[str]:
        root = self.base_dir / 'stacks'
        if not root.is_dir():
            return []
        return sorted(p.name for p in root.iterdir() if (p / 'stack.json').exists())

    def load(self, stack_id: str) -> Stack:
        """Load a stack record.

        Raises:
            StackNotFoundError: If no record exists
        """
        path = self.stack_dir(stack_id) / 'stack.json'
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            raise StackNotFoundError(stack_id)
        return Stack.from_dict(data)

    def save(self, stack: Stack) -> Path:
        path = self.stack_dir(stack.stack_id) / 'stack.json'
        _write_json(path, stack.to_dict())
        logger.debug(f"Saved stack {stack.stack_id} ({stack.status.value}) to {path}")
        return path

    def delete(self, stack_id: str) -> None:
        """Remove the stack record, changesets and snapshots; keep the journal."""
        stack_dir = self.stack_dir(stack_id)
        (stack_dir / 'stack.json').unlink(missing_ok=True)
        for sub in ('changesets', 'snapshots'):
            shutil.rmtree(stack_dir / sub, ignore_errors=True)
        logger.debug(f"Removed stack record {stack_id}")

    def journal(self, stack_id: str) -> OperationJournal:
        return OperationJournal(stack_id, self.stack_dir(stack_id) / 'journal.jsonl')

    def save_changeset(self, changeset: ChangeSet) -> Path:
        path = self.stack_dir(changeset.stack_id) / 'changesets' / f'{changeset.changeset_id}.json'
        _write_json(path, changeset.to_dict())
        return path

    def load_changeset(self, stack_id: str, changeset_id: str) -> ChangeSet:
        """Load a changeset.

        Raises:
            ChangeSetNotFoundError: If the changeset does not exist
        """
        if not re.match(r'^[A-Za-z0-9-]+$', changeset_id or ''):
            raise ChangeSetNotFoundError(stack_id, changeset_id)
        path = self.stack_dir(stack_id) / 'changesets' / f'{changeset_id}.json'
        try:
            with open(path, encoding='utf-8') as f:
                return ChangeSet.from_dict(json.load(f))
        except FileNotFoundError:
            raise ChangeSetNotFoundError(stack_id, changeset_id)

    def list_changesets(self, stack_id: str) -> list[ChangeSet]:
        cs_dir = self.stack_dir(stack_id) / 'changesets'
        if not cs_dir.is_dir():
            return []
        changesets = []
        for path in cs_dir.glob('*.json'):
            with open(path, encoding='utf-8') as f:
                changesets.append(ChangeSet.from_dict(json.load(f)))
        return sorted(changesets, key=lambda c: c.created_at)

    def save_snapshot(self, stack: Stack, run_id: str) -> Path:
        path = self.stack_dir(stack.stack_id) / 'snapshots' / f'{run_id}.json'
        _write_json(path, stack.to_dict())
        return path

    def load_snapshot(self, stack_id: str, run_id: str) -> Optional[Stack]:
        path = self.stack_dir(stack_id) / 'snapshots' / f'{run_id}.json'
        if not path.exists():
            return None
        with open(path, encoding='utf-8') as f:
            return Stack.from_dict(json.load(f))

    def lease_owner(self, stack_id: str) -> Optional[dict]:
        """Return the current lease holder record, or None if unleased.

        An unparseable record comes back as {} and is treated as stale.
        """
        path = self.stack_dir(stack_id) / 'lease'
        try:
            owner = json.loads(path.read_text(encoding='utf-8'))
        except FileNotFoundError:
            return None
        except (UnicodeDecodeError, json.JSONDecodeError):
            return {}
        return owner if isinstance(owner, dict) else {}

    @contextmanager
    def lease(self, stack_id: str, purpose: str = 'apply') -> Iterator[None]:
        """Hold the stack lease for the duration of the block.

        Combines a non-blocking in-process lock with a lease file holding the
        owner pid. The record is written to a temp file and hard-linked into
        place, so a crash never leaves an empty lease. A lease whose pid is
        no longer alive, or whose record cannot be parsed, is reclaimed.

        Raises:
            StackLockedError: If another operation holds the lease
        """
        path = self.stack_dir(stack_id) / 'lease'
        key = str(path.resolve())
        with _held_leases_guard:
            lock = _held_leases.setdefault(key, threading.Lock())
        if not lock.acquire(blocking=False):
            raise StackLockedError(stack_id, 'this process')
        try:
            self._acquire_file(stack_id, path, purpose)
            try:
                yield
            finally:
                path.unlink(missing_ok=True)
                logger.debug(f"Released lease on {stack_id}")
        finally:
            lock.release()

    def _acquire_file(self, stack_id: str, path: Path, purpose: str) -> None:
        """Publish the lease record with a hard link so the lease is never empty."""
        path.parent.mkdir(parents=True, exist_ok=True)
        record = json.dumps({'pid': os.getpid(), 'purpose': purpose, 'acquired_at': time.time()})
        tmp = path.with_name(f'lease.{os.getpid()}.{threading.get_ident()}.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            f.write(record)
            f.flush()
            os.fsync(f.fileno())
        try:
            for _ in range(2):
                try:
                    os.link(tmp, path)
                except FileExistsError:
                    owner = self.lease_owner(stack_id)
                    if owner is None:
                        continue
                    pid = owner.get('pid')
                    if not isinstance(pid, int):
                        logger.warning(f"Reclaiming unreadable lease on {stack_id}")
                        path.unlink(missing_ok=True)
                        continue
                    if not _process_alive(pid):
                        logger.warning(f"Reclaiming stale lease on {stack_id} from dead pid {pid}")
                        path.unlink(missing_ok=True)
                        continue
                    raise StackLockedError(stack_id, f"pid {pid} ({owner.get('purpose')})")
                logger.debug(f"Acquired {purpose} lease on {stack_id}")
                return
            raise StackLockedError(stack_id)
        finally:
            tmp.unlink(missing_ok=True)
