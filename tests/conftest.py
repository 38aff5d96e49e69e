"""Shared pytest fixtures for stackops tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from engine.errors import ProviderError
from engine.gateway import CustomProviderGateway
from engine.orchestrator import Engine
from engine.providers import InMemoryProvider, ProviderRegistry
from engine.store import StackStore
from template import Template


class SimulatedCrash(BaseException):
    """Raised inside a provider call to emulate the engine process dying."""


class FlakyProvider(InMemoryProvider):
    """In-memory provider that fails on demand.

    - Fail: true in the properties makes create/update raise
    - LoseResponse: true creates the resource, then raises (lost reply)
    - Crash: true creates the resource, then raises SimulatedCrash
    - FailDelete: true makes the delete of that resource raise
    """

    def create(self, properties, idempotency_token):
        if properties.get('Fail'):
            with self._lock:
                self.calls.append(('create', idempotency_token))
            raise ProviderError("injected create failure")
        result = super().create(properties, idempotency_token)
        if properties.get('LoseResponse'):
            raise ProviderError("connection reset after create")
        if properties.get('Crash'):
            raise SimulatedCrash()
        return result

    def update(self, physical_id, old_properties, new_properties):
        if new_properties.get('Fail'):
            with self._lock:
                self.calls.append(('update', physical_id))
            raise ProviderError("injected update failure")
        return super().update(physical_id, old_properties, new_properties)

    def delete(self, physical_id):
        if (self.read(physical_id) or {}).get('FailDelete'):
            with self._lock:
                self.calls.append(('delete', physical_id))
            raise ProviderError("injected delete failure")
        super().delete(physical_id)


class BlockingProvider(InMemoryProvider):
    """Creates block until released, so tests can act while a call is in flight."""

    def __init__(self):
        super().__init__(prefix='blk')
        self.started = threading.Event()
        self.release = threading.Event()

    def create(self, properties, idempotency_token):
        self.started.set()
        self.release.wait(10)
        return super().create(properties, idempotency_token)


class RecordingDispatcher:
    """Dispatcher that records requests and optionally answers them.

    answer: None (stay silent), 'SUCCESS' or 'FAILED'
    """

    def __init__(self, answer=None, delay=0.01):
        self.answer = answer
        self.delay = delay
        self.requests: list[dict] = []
        self.gateway = None

    def dispatch(self, request):
        self.requests.append(request)
        if self.answer is None:
            return
        payload = {'requestId': request['requestId'], 'status': self.answer}
        if self.answer == 'SUCCESS':
            payload['physicalId'] = request.get('physicalResourceId') or f"custom-{request['logicalResourceId']}"
            payload['outputData'] = {'Endpoint': f"https://{request['logicalResourceId'].lower()}.example"}
        else:
            payload['reason'] = 'provider said no'
        timer = threading.Timer(
            self.delay, self.gateway.handle_callback, args=(payload, request['callbackToken']))
        timer.daemon = True
        timer.start()


def make_template(resources, outputs=None, name='test'):
    """Build a Template from list-form resource dicts."""
    data = {'name': name, 'resources': resources}
    if outputs:
        data['outputs'] = outputs
    return Template.from_dict(data)


def res(logical_id, properties=None, depends_on=None, resource_type='Mem::Thing'):
    """List-form resource entry."""
    entry = {'logicalId': logical_id, 'type': resource_type, 'properties': properties or {}}
    if depends_on:
        entry['dependsOn'] = depends_on
    return entry


@pytest.fixture
def store(tmp_path):
    return StackStore(tmp_path / 'state')


@pytest.fixture
def provider():
    return FlakyProvider(replacement_properties=('Name',))


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def gateway(dispatcher):
    gw = CustomProviderGateway(dispatcher=dispatcher, default_timeout=5, sweep_interval=0.05)
    dispatcher.gateway = gw
    yield gw
    gw.stop_sweeper(force=True)


@pytest.fixture
def registry(provider):
    reg = ProviderRegistry()
    reg.register('Mem::*', provider)
    reg.register_custom_type('Custom::Database', ('Engine',))
    return reg


@pytest.fixture
def engine(store, registry, gateway):
    return Engine(store, registry, gateway, max_workers=4, native_timeout=5)
