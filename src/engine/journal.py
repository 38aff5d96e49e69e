"""Append-only operation journal.

One JSON-lines file per stack. Each append is flushed and fsync'd before
the caller dispatches the next provider call, so after a crash the file
still shows every intent and every outcome that was observed.

Only the thread holding the stack lease appends; readers get copies.
"""

import json
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Optional

from engine.models import (
    RESULT_PENDING,
    RESULT_SUCCESS,
    Operation,
    OperationKind,
)

logger = logging.getLogger(__name__)


class OperationJournal:
    """Ordered, append-only log of operations for one stack."""

    def __init__(self, stack_id: str, path: Path):
        """Open (or create) the journal at path.

        Args:
            stack_id: Stack the journal belongs to
            path: JSON-lines file; created on first append
        """
        self.stack_id = stack_id
        self.path = Path(path)
        self._entries: list[Operation] = []
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        with open(self.path, encoding='utf-8') as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    self._entries.append(Operation.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    # A torn final line is the only expected corruption
                    logger.warning(f"Ignoring unreadable journal line {lineno} in {self.path}: {e}")
        logger.debug(f"Loaded {len(self._entries)} journal entries from {self.path}")

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, operation: Operation) -> Operation:
        """Append an operation and return it with its sequence number assigned.

        Raises:
            ValueError: If the operation belongs to another stack
        """
        if operation.stack_id != self.stack_id:
            raise ValueError(
                f"Operation for stack '{operation.stack_id}' appended to journal of '{self.stack_id}'"
            )
        entry = replace(operation, seq=len(self._entries) + 1)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'a', encoding='utf-8') as f:
            f.write(json.dumps(entry.to_dict()) + '\n')
            f.flush()
            os.fsync(f.fileno())
        self._entries.append(entry)
        logger.debug(
            "[journal] %s #%d %s %s %s", self.stack_id, entry.seq,
            entry.kind.value, entry.logical_id, entry.result,
        )
        return entry

    def entries(self, run_id: Optional[str] = None, phase: Optional[str] = None) -> list[Operation]:
        return [
            e for e in self._entries
            if (run_id is None or e.run_id == run_id) and (phase is None or e.phase == phase)
        ]

    def get(self, seq: int) -> Operation:
        """Get entry by sequence number.

        Raises:
            KeyError: If no such entry
        """
        if seq < 1 or seq > len(self._entries):
            raise KeyError(seq)
        return self._entries[seq - 1]

    def outcome_for(self, intent: Operation) -> Optional[Operation]:
        for entry in self._entries[intent.seq:]:
            if entry.intent_seq == intent.seq:
                return entry
        return None

    def dangling_intents(self, run_id: str) -> list[Operation]:
        """Intents of a run with no recorded outcome (interrupted mid-call)."""
        resolved = {e.intent_seq for e in self._entries if e.intent_seq is not None}
        return [
            e for e in self._entries
            if e.run_id == run_id and e.result == RESULT_PENDING and e.seq not in resolved
        ]

    def succeeded(self, run_id: str, phase: str) -> list[Operation]:
        """Successful outcomes of a run phase, in journal order."""
        return [e for e in self.entries(run_id, phase) if e.result == RESULT_SUCCESS and e.intent_seq]

    def inverted(self, run_id: str) -> set[int]:
        """Sequence numbers of forward outcomes already undone successfully."""
        return {
            e.inverse_of for e in self._entries
            if e.run_id == run_id and e.inverse_of is not None and e.result == RESULT_SUCCESS
        }

    def last_applied_properties(self, logical_id: str) -> Optional[dict]:
        """Property bag last successfully applied to logical_id.

        Returns None when the latest successful operation was a delete, or
        when nothing was ever applied.
        """
        undone = {
            e.inverse_of for e in self._entries
            if e.inverse_of is not None and e.result == RESULT_SUCCESS
        }
        for entry in reversed(self._entries):
            if entry.logical_id != logical_id or entry.result != RESULT_SUCCESS:
                continue
            if entry.seq in undone:
                continue
            if entry.kind == OperationKind.DELETE:
                if entry.replacement:
                    # Removed a superseded physical resource, not the current one
                    continue
                return None
            return entry.new_properties
        return None
