"""Common utilities shared by the engine, server and CLI."""

import hashlib
import json
import logging
import threading
import time
import uuid
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def canonical_json(data: Any) -> str:
    """Serialize data deterministically (sorted keys, no whitespace)."""
    return json.dumps(data, sort_keys=True, separators=(',', ':'), default=str)


def content_hash(data: Any) -> str:
    """Return the SHA-256 hex digest of data's canonical JSON form."""
    return hashlib.sha256(canonical_json(data).encode('utf-8')).hexdigest()


def idempotency_token(*parts: str) -> str:
    """Derive a deterministic idempotency token from its parts.

    The same parts always yield the same token, so a create retried after a
    crash reaches the provider with the token of the original attempt.
    """
    digest = hashlib.sha256('\x1f'.join(parts).encode('utf-8')).hexdigest()
    return f'tok-{digest[:32]}'


def new_id(prefix: str) -> str:
    """Generate a unique identifier with a readable prefix."""
    return f'{prefix}-{uuid.uuid4().hex[:16]}'


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return '-'
    if seconds < 60:
        return f'{seconds:.1f}s'
    minutes, secs = divmod(int(seconds), 60)
    return f'{minutes}m{secs:02d}s'


class PeriodicTask:
    """Runs a callable on a daemon thread at a fixed interval.

    Exceptions raised by the callable are logged and the loop continues;
    a failing sweep must not stop later sweeps.
    """

    def __init__(self, name: str, interval: float, func: Callable[[], Any]):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self.name = name
        self.interval = interval
        self.func = func
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.debug(f"Started periodic task '{self.name}' every {self.interval}s")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            started = time.monotonic()
            try:
                self.func()
            except Exception:
                logger.exception("Periodic task '%s' failed", self.name)
            logger.debug("Periodic task '%s' ran in %.3fs", self.name, time.monotonic() - started)
