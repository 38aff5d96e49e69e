"""Custom provider gateway.

Custom resources are provisioned by external services that answer
asynchronously. The gateway issues a request document, keeps a table of
pending callbacks, and resolves each one exactly once: from an inbound
callback (Succeeded/Failed), from a dispatch failure (Failed) or from the
deadline sweep (TimedOut).

State transitions use an injectable clock and do no network I/O; delivery
of the request document is delegated to a dispatcher (WebhookDispatcher by
default).
"""

import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional, Protocol

import requests

from common import PeriodicTask, new_id
from engine.errors import ProviderError
from engine.models import CallbackStatus, OperationKind, ProviderCallback

logger = logging.getLogger(__name__)

MAX_CALLBACK_TIMEOUT = 3600
DEFAULT_SWEEP_INTERVAL = 5.0
RESOLVED_RETENTION = 3600

STATUS_SUCCESS = 'SUCCESS'
STATUS_FAILED = 'FAILED'


class Dispatcher(Protocol):
    """Delivers a provider request document to a custom provider."""

    def dispatch(self, request: dict) -> None:
        """Send the request; raise on delivery failure."""


class WebhookDispatcher:
    """POSTs request documents to the resource's ServiceToken URL."""

    def __init__(self, timeout: float = 10.0, verify: bool = True):
        self.timeout = timeout
        self.verify = verify

    def dispatch(self, request: dict) -> None:
        url = request.get('resourceProperties', {}).get('ServiceToken')
        if not url:
            raise ProviderError(
                "Custom resource has no ServiceToken property",
                request.get('logicalResourceId'),
            )
        try:
            resp = requests.post(url, json=request, timeout=self.timeout, verify=self.verify)
        except requests.exceptions.Timeout:
            raise ProviderError(f"Timeout posting request to {url}", request.get('logicalResourceId'))
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Cannot reach {url}: {e}", request.get('logicalResourceId'))
        if not 200 <= resp.status_code < 300:
            raise ProviderError(
                f"Provider at {url} rejected request: HTTP {resp.status_code}",
                request.get('logicalResourceId'),
            )
        logger.debug(f"[gateway] Dispatched {request['requestId']} to {url}")


@dataclass
class CallbackAck:
    """Result of handling an inbound callback.

    Attributes:
        accepted: True if the callback resolved a pending request
        http_status: Status code for the HTTP endpoint
        message: Human-readable reason
    """
    accepted: bool
    http_status: int
    message: str


class CustomProviderGateway:
    """Pending table of asynchronous custom-provider requests.

    Thread-safe: worker threads issue and wait, the HTTP endpoint resolves,
    and the sweeper times out, all against the same table.
    """

    def __init__(
        self,
        dispatcher: Optional[Dispatcher] = None,
        default_timeout: float = MAX_CALLBACK_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        response_url: str = '',
        require_token: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize gateway.

        Args:
            dispatcher: Delivers request documents (WebhookDispatcher if None)
            default_timeout: Callback deadline in seconds, clamped to MAX_CALLBACK_TIMEOUT
            sweep_interval: Seconds between deadline sweeps
            response_url: URL custom providers post their callback to
            require_token: Reject callbacks that carry no token
            clock: Time source (seconds)
        """
        self.dispatcher = dispatcher if dispatcher is not None else WebhookDispatcher()
        self.default_timeout = min(float(default_timeout), MAX_CALLBACK_TIMEOUT)
        self.sweep_interval = sweep_interval
        self.response_url = response_url
        self.require_token = require_token
        self.clock = clock
        self._callbacks: dict[str, ProviderCallback] = {}
        self._events: dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[PeriodicTask] = None
        self._sweeper_refs = 0

    def _deadline(self, timeout: Optional[float]) -> float:
        limit = self.default_timeout
        if timeout is not None:
            try:
                requested = float(timeout)
            except (TypeError, ValueError):
                raise ProviderError(f"Invalid ServiceTimeout: {timeout!r}")
            if requested > 0:
                limit = min(limit, requested)
        return limit

    def issue(
        self,
        stack_id: str,
        logical_id: str,
        request_type: OperationKind,
        resource_type: str,
        properties: dict,
        old_properties: Optional[dict] = None,
        physical_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> ProviderCallback:
        """Issue a request to a custom provider.

        Records a Pending callback, then dispatches the request document. A
        dispatch failure resolves the callback Failed before returning.

        Returns:
            Copy of the callback record (Pending unless dispatch failed)
        """
        issued_at = self.clock()
        callback = ProviderCallback(
            request_id=new_id('req'),
            stack_id=stack_id,
            logical_id=logical_id,
            request_type=request_type,
            issued_at=issued_at,
            timeout_at=issued_at + self._deadline(timeout),
            callback_token=secrets.token_urlsafe(32),
        )
        request = {
            'requestId': callback.request_id,
            'requestType': request_type.value,
            'stackId': stack_id,
            'logicalResourceId': logical_id,
            'resourceType': resource_type,
            'resourceProperties': properties,
            'responseUrl': self.response_url,
            'callbackToken': callback.callback_token,
            'timeoutAt': callback.timeout_at,
        }
        if old_properties is not None:
            request['oldResourceProperties'] = old_properties
        if physical_id is not None:
            request['physicalResourceId'] = physical_id

        with self._lock:
            self._callbacks[callback.request_id] = callback
            self._events[callback.request_id] = threading.Event()
        logger.info(
            f"[gateway] Issued {request_type.value} {callback.request_id} for "
            f"{stack_id}/{logical_id} (deadline {callback.timeout_at - issued_at:.0f}s)"
        )

        try:
            self.dispatcher.dispatch(request)
        except Exception as e:
            logger.warning(f"[gateway] Dispatch of {callback.request_id} failed: {e}")
            self._resolve(callback.request_id, CallbackStatus.FAILED, reason=f"Dispatch failed: {e}")
        return self.get(callback.request_id)

    def get(self, request_id: str) -> ProviderCallback:
        """Get a copy of a callback record.

        Raises:
            KeyError: If the request id is unknown
        """
        with self._lock:
            return replace(self._callbacks[request_id])

    def pending(self, stack_id: Optional[str] = None) -> list[ProviderCallback]:
        with self._lock:
            return [
                replace(cb) for cb in self._callbacks.values()
                if cb.status == CallbackStatus.PENDING
                and (stack_id is None or cb.stack_id == stack_id)
            ]

    def _resolve(
        self,
        request_id: str,
        status: CallbackStatus,
        physical_id: Optional[str] = None,
        output_data: Optional[dict] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """Apply the single terminal transition; False if already terminal."""
        with self._lock:
            callback = self._callbacks.get(request_id)
            if callback is None or callback.status.terminal:
                return False
            callback.status = status
            callback.physical_id = physical_id
            callback.output_data = dict(output_data or {})
            callback.reason = reason
            callback.resolved_at = self.clock()
            event = self._events[request_id]
        event.set()
        logger.info(f"[gateway] {request_id} -> {status.value}" + (f" ({reason})" if reason else ""))
        return True

    def handle_callback(self, payload: dict, token: Optional[str] = None) -> CallbackAck:
        """Resolve a pending request from an inbound provider callback.

        Args:
            payload: {requestId, status, physicalId?, outputData?, reason?, callbackToken?}
            token: Token from the Authorization header (overrides the body)

        Returns:
            CallbackAck; unknown or already-resolved ids are not accepted
            and change nothing.
        """
        if not isinstance(payload, dict):
            return CallbackAck(False, 400, "Callback body must be a JSON object")
        request_id = payload.get('requestId')
        status = payload.get('status')
        if not isinstance(request_id, str) or not request_id:
            return CallbackAck(False, 400, "Missing requestId")
        if status not in (STATUS_SUCCESS, STATUS_FAILED):
            return CallbackAck(False, 400, f"Invalid status: {status!r}")
        output_data = payload.get('outputData') or {}
        if not isinstance(output_data, dict):
            return CallbackAck(False, 400, "outputData must be an object")
        physical_id = payload.get('physicalId')
        if physical_id is not None and not isinstance(physical_id, str):
            return CallbackAck(False, 400, "physicalId must be a string")

        with self._lock:
            callback = self._callbacks.get(request_id)
            expected = callback.callback_token if callback else ''
            known_status = callback.status if callback else None
            request_type = callback.request_type if callback else None
        if callback is None:
            logger.warning(f"[gateway] Discarding callback for unknown request {request_id}")
            return CallbackAck(False, 404, f"Unknown request: {request_id}")

        supplied = token if token is not None else payload.get('callbackToken')
        if supplied is None and self.require_token:
            return CallbackAck(False, 401, "Callback token required")
        if supplied is not None and not hmac.compare_digest(str(supplied), expected):
            logger.warning(f"[gateway] Rejected callback for {request_id}: invalid token")
            return CallbackAck(False, 401, "Invalid callback token")

        if known_status is not None and known_status.terminal:
            logger.info(f"[gateway] Discarding late callback for {request_id} ({known_status.value})")
            return CallbackAck(False, 409, f"Request {request_id} already {known_status.value}")

        if status == STATUS_SUCCESS:
            if request_type == OperationKind.CREATE and not physical_id:
                return CallbackAck(False, 400, "physicalId required for a successful Create")
            resolved = self._resolve(request_id, CallbackStatus.SUCCEEDED, physical_id, output_data)
        else:
            reason = payload.get('reason') or "Provider reported failure"
            resolved = self._resolve(request_id, CallbackStatus.FAILED, physical_id, output_data, str(reason))
        if not resolved:
            return CallbackAck(False, 409, f"Request {request_id} already resolved")
        return CallbackAck(True, 202, "Accepted")

    def sweep(self, now: Optional[float] = None) -> list[ProviderCallback]:
        """Time out every Pending callback whose deadline has passed.

        Also drops resolved records older than RESOLVED_RETENTION.

        Returns:
            Copies of the callbacks moved to TimedOut
        """
        now = self.clock() if now is None else now
        with self._lock:
            expired = [
                cb.request_id for cb in self._callbacks.values()
                if cb.status == CallbackStatus.PENDING and cb.timeout_at <= now
            ]
            stale = [
                cb.request_id for cb in self._callbacks.values()
                if cb.resolved_at is not None and now - cb.resolved_at > RESOLVED_RETENTION
            ]
            for request_id in stale:
                del self._callbacks[request_id]
                del self._events[request_id]

        timed_out = []
        for request_id in expired:
            if self._resolve(request_id, CallbackStatus.TIMED_OUT,
                             reason="Custom provider did not respond before the deadline"):
                timed_out.append(self.get(request_id))
        return timed_out

    def wait(self, request_id: str) -> ProviderCallback:
        """Block the calling thread until the request is terminal.

        Sweeps on its own once the deadline passes, so a silent provider
        times out even when no background sweeper runs.

        Raises:
            KeyError: If the request id is unknown
        """
        with self._lock:
            event = self._events[request_id]
            timeout_at = self._callbacks[request_id].timeout_at
        while not event.is_set():
            remaining = timeout_at - self.clock()
            if remaining <= 0:
                self.sweep()
                continue
            event.wait(min(remaining, self.sweep_interval))
        return self.get(request_id)

    def start_sweeper(self) -> None:
        """Start the background sweeper; calls nest and are reference-counted."""
        with self._lock:
            self._sweeper_refs += 1
            if self._sweeper is None:
                self._sweeper = PeriodicTask('callback-sweeper', self.sweep_interval, self.sweep)
            sweeper = self._sweeper
        sweeper.start()

    def stop_sweeper(self, force: bool = False) -> None:
        """Release one start_sweeper() reference; the last one stops the thread."""
        with self._lock:
            if self._sweeper is None:
                return
            self._sweeper_refs = 0 if force else max(0, self._sweeper_refs - 1)
            if self._sweeper_refs:
                return
            sweeper = self._sweeper
        sweeper.stop()


def send_callback(
    url: str,
    request_id: str,
    token: str,
    status: str,
    physical_id: Optional[str] = None,
    output_data: Optional[dict] = None,
    reason: Optional[str] = None,
    timeout: float = 10.0,
    verify: bool = True,
) -> tuple[int, dict]:
    """Post a callback to an engine's callback endpoint.

    Used by shell-based custom providers via `stackops callback send`.

    Returns:
        (http_status, response body)

    Raises:
        ProviderError: If the endpoint cannot be reached
    """
    body: dict = {'requestId': request_id, 'status': status}
    if physical_id:
        body['physicalId'] = physical_id
    if output_data:
        body['outputData'] = output_data
    if reason:
        body['reason'] = reason
    try:
        resp = requests.post(
            url,
            json=body,
            headers={'Authorization': f'Bearer {token}'},
            timeout=timeout,
            verify=verify,
        )
    except requests.exceptions.RequestException as e:
        raise ProviderError(f"Cannot reach callback endpoint {url}: {e}")
    try:
        data = resp.json()
    except ValueError:
        data = {'raw': resp.text}
    return resp.status_code, data
