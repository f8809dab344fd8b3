"""Shared pytest fixtures for reconcile tests."""

import sys
import threading
import time
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from providers.base import Attribute, ResourceSchema
from providers.registry import ProviderRegistry
from providers.virtual import VirtualProvider
from reconciler.errors import ProviderError


class FakeProvider:
    """In-memory provider that records every call.

    Resources are identified in calls by their 'label' attribute so tests
    can assert on order without knowing generated external ids.
    """

    def __init__(self, kind='fake', create_before_destroy=None):
        self.kind = kind
        self.create_before_destroy = create_before_destroy
        self.schema = ResourceSchema(attributes={
            'label': Attribute(type='string'),
            'value': Attribute(),
            'size': Attribute(type='number'),
            'zone': Attribute(type='string', force_new=True),
            'arn': Attribute(type='string', computed=True),
        }, open_schema=True)
        self.calls = []
        self.resources = {}
        self.fail_on = set()
        self.delays = {}
        self._lock = threading.Lock()
        self._counter = 0

    def _enter(self, action, label):
        with self._lock:
            self.calls.append((action, label))
        if label in self.delays:
            time.sleep(self.delays[label])
        if (action, label) in self.fail_on:
            raise ProviderError(f"{action} of {label} refused", retryable=action == 'create')

    def create(self, attributes):
        label = attributes.get('label')
        self._enter('create', label)
        with self._lock:
            self._counter += 1
            external_id = f"{label or 'res'}-{self._counter}"
            self.resources[external_id] = dict(attributes)
        return external_id, {**attributes, 'arn': f'arn:fake:{external_id}'}

    def update(self, external_id, old, new):
        self._enter('update', new.get('label'))
        with self._lock:
            self.resources[external_id] = dict(new)
        return {**new, 'arn': old.get('arn')}

    def delete(self, external_id, attributes):
        self._enter('delete', attributes.get('label'))
        with self._lock:
            self.resources.pop(external_id, None)


@pytest.fixture
def fake_provider():
    """FakeProvider registered as kind 'fake'."""
    return FakeProvider()


@pytest.fixture
def registry(fake_provider):
    """Registry with the fake provider and the virtual provider."""
    return ProviderRegistry([fake_provider, VirtualProvider()])


@pytest.fixture
def make_provider():
    """Factory for additional FakeProvider instances."""
    return FakeProvider


@pytest.fixture
def write_config(tmp_path):
    """Write configuration text to a file and return its path."""
    def _write(text, name='web.yaml'):
        path = tmp_path / name
        path.write_text(text)
        return path
    return _write


@pytest.fixture
def state_path(tmp_path):
    """State file location inside tmp_path."""
    return tmp_path / 'state' / 'state.json'


@pytest.fixture(autouse=True)
def _isolate_settings(monkeypatch, tmp_path):
    """Keep RECONCILE_* variables and ./reconcile.yaml of the host out of tests."""
    for var in ('RECONCILE_SETTINGS', 'RECONCILE_STATE', 'RECONCILE_WORKERS',
                'RECONCILE_TIMEOUT', 'RECONCILE_LOCK_TIMEOUT'):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
