"""Drift detection.

Re-reads each resource from its provider and compares it with the property
bag the journal last recorded as applied. Only keys the engine applied are
compared; attributes a provider adds on its own are not drift. Nothing is
mutated: query failures become advisory warnings.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from common import PeriodicTask
from engine.journal import OperationJournal
from engine.models import Stack
from engine.providers import ProviderRegistry

logger = logging.getLogger(__name__)

IN_SYNC = 'IN_SYNC'
MODIFIED = 'MODIFIED'
DELETED = 'DELETED'
UNKNOWN = 'UNKNOWN'
NOT_CHECKED = 'NOT_CHECKED'


@dataclass
class DriftResult:
    """Drift status of one resource.

    Attributes:
        logical_id: Resource logical id
        physical_id: Physical id queried
        status: IN_SYNC, MODIFIED, DELETED, UNKNOWN or NOT_CHECKED
        differences: Property -> {'expected', 'actual'} for MODIFIED
        message: Warning or explanation
    """
    logical_id: str
    physical_id: Optional[str]
    status: str
    differences: dict[str, dict[str, Any]] = field(default_factory=dict)
    message: str = ''

    @property
    def drifted(self) -> bool:
        return self.status in (MODIFIED, DELETED)

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'logical_id': self.logical_id,
            'physical_id': self.physical_id,
            'status': self.status,
        }
        if self.differences:
            d['differences'] = self.differences
        if self.message:
            d['message'] = self.message
        return d


class DriftDetector:
    """Compares provider state with the journal's last applied properties."""

    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    def detect(self, stack: Stack, journal: OperationJournal) -> list[DriftResult]:
        results = []
        for logical_id in sorted(stack.resources):
            resource = stack.resources[logical_id]
            if resource.physical_id is None:
                results.append(DriftResult(logical_id, None, NOT_CHECKED, message="No physical id"))
                continue
            if resource.provider_kind == 'custom':
                results.append(DriftResult(
                    logical_id, resource.physical_id, NOT_CHECKED,
                    message="Custom resources cannot be read back",
                ))
                continue

            expected = journal.last_applied_properties(logical_id)
            if expected is None:
                expected = resource.applied_properties

            try:
                actual = self.registry.get(resource.type).read(resource.physical_id)
            except Exception as e:
                logger.warning(f"[drift] Cannot read {logical_id} ({resource.physical_id}): {e}")
                results.append(DriftResult(logical_id, resource.physical_id, UNKNOWN, message=str(e)))
                continue

            if actual is None:
                results.append(DriftResult(logical_id, resource.physical_id, DELETED,
                                           message="Resource no longer exists"))
                continue

            differences = {
                key: {'expected': value, 'actual': actual.get(key)}
                for key, value in sorted(expected.items())
                if actual.get(key) != value
            }
            status = MODIFIED if differences else IN_SYNC
            results.append(DriftResult(logical_id, resource.physical_id, status, differences))

        drifted = [r.logical_id for r in results if r.drifted]
        if drifted:
            logger.info(f"[drift] {stack.stack_id}: drift in {', '.join(drifted)}")
        return results


class DriftMonitor:
    """Periodically runs drift detection for a set of stacks.

    Args:
        check: Callable returning drift results for a stack id
        stack_ids: Callable listing the stacks to check
        interval: Seconds between rounds
        on_report: Called with (stack_id, results) after every check
    """

    def __init__(
        self,
        check: Callable[[str], list[DriftResult]],
        stack_ids: Callable[[], Iterable[str]],
        interval: float,
        on_report: Optional[Callable[[str, list[DriftResult]], None]] = None,
    ):
        self.check = check
        self.stack_ids = stack_ids
        self.on_report = on_report
        self._task = PeriodicTask('drift-monitor', interval, self.run_once)

    def run_once(self) -> dict[str, list[DriftResult]]:
        reports = {}
        for stack_id in self.stack_ids():
            try:
                results = self.check(stack_id)
            except Exception as e:
                logger.warning(f"[drift] Check of {stack_id} failed: {e}")
                continue
            reports[stack_id] = results
            if self.on_report is not None:
                self.on_report(stack_id, results)
        return reports

    def start(self) -> None:
        self._task.start()

    def stop(self) -> None:
        self._task.stop()

    @property
    def running(self) -> bool:
        return self._task.running
