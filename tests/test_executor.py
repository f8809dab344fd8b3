"""Tests for reconciler.executor module.

Uses the in-memory FakeProvider to test ordering, commit-per-entry,
failure handling, resumption, timeouts and cancellation.
"""

import sys
import threading
import time
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from providers.registry import ProviderRegistry
from reconciler.differ import CREATE, DELETE, NOOP, UPDATE, diff, diff_destroy
from reconciler.errors import ApplyError, LockNotHeldError, OperationTimeout, ProviderError
from reconciler.executor import CANCELLED, COMPLETED, FAILED, PlanExecutor
from reconciler.graph import build_graph
from reconciler.state import StateStore


NETWORK_INSTANCE = """
name: web
resources:
  - type: fake
    name: n
    attributes:
      label: n
      size: 16
  - type: fake
    name: i
    attributes:
      label: i
      value: ${fake.n.id}
"""

CHAIN = """
name: chain
resources:
  - {type: fake, name: a, attributes: {label: a}}
  - {type: fake, name: b, attributes: {label: b, value: "${fake.a.id}"}}
  - {type: fake, name: c, attributes: {label: c, value: "${fake.b.id}"}}
  - {type: fake, name: d, attributes: {label: d, value: "${fake.c.id}"}}
"""

INDEPENDENT = """
name: flat
resources:
  - {type: fake, name: z, attributes: {label: z}}
  - {type: fake, name: m, attributes: {label: m}}
  - {type: fake, name: a, attributes: {label: a}}
"""


def _apply(text, registry, store, **kwargs):
    """Diff text against the store and execute the plan."""
    graph = build_graph(text, registry)
    plan = diff(graph, store.load())
    result = PlanExecutor(graph, store, registry, **kwargs).execute(plan)
    return plan, result


class TestApply:
    """End-to-end create / no-op / delete through the executor."""

    def test_first_apply(self, registry, fake_provider, state_path):
        with StateStore(state_path) as store:
            plan, result = _apply(NETWORK_INSTANCE, registry, store)
            records = store.load()

        assert [(e.action, e.id) for e in plan.entries] == [(CREATE, 'fake.n'), (CREATE, 'fake.i')]
        assert result.status == COMPLETED
        assert result.applied == ['fake.n', 'fake.i']
        assert fake_provider.calls == [('create', 'n'), ('create', 'i')]
        assert set(records) == {'fake.n', 'fake.i'}
        assert records['fake.i'].attributes['value'] == records['fake.n'].external_id
        assert records['fake.i'].dependencies == ['fake.n']
        assert records['fake.n'].computed == {'arn': f"arn:fake:{records['fake.n'].external_id}"}

    def test_second_apply_is_noop(self, registry, fake_provider, state_path):
        with StateStore(state_path) as store:
            _apply(NETWORK_INSTANCE, registry, store)
            fake_provider.calls.clear()
            plan, result = _apply(NETWORK_INSTANCE, registry, store)

        assert [(e.action, e.id) for e in plan.entries] == [(NOOP, 'fake.n'), (NOOP, 'fake.i')]
        assert fake_provider.calls == []
        assert result.success
        assert result.applied == []

    def test_removing_consumer_deletes_only_it(self, registry, fake_provider, state_path):
        with StateStore(state_path) as store:
            _apply(NETWORK_INSTANCE, registry, store)
            network_before = store.get('fake.n')
            fake_provider.calls.clear()
            reduced = NETWORK_INSTANCE.split('  - type: fake\n    name: i')[0]
            plan, result = _apply(reduced, registry, store)
            records = store.load()

        assert [(e.action, e.id) for e in plan.changes()] == [(DELETE, 'fake.i')]
        assert fake_provider.calls == [('delete', 'i')]
        assert list(records) == ['fake.n']
        assert records['fake.n'].external_id == network_before.external_id
        assert records['fake.n'].updated_at == network_before.updated_at

    def test_removed_producer_outlives_consumer_update(self, registry, fake_provider, state_path):
        standalone = """
name: web
resources:
  - type: fake
    name: i
    attributes:
      label: i
      value: standalone
"""
        with StateStore(state_path) as store:
            _apply(NETWORK_INSTANCE, registry, store)
            fake_provider.calls.clear()
            plan, result = _apply(standalone, registry, store, workers=4)
            records = store.load()

        assert [(e.action, e.id) for e in plan.entries] == [(UPDATE, 'fake.i'), (DELETE, 'fake.n')]
        assert result.success
        assert fake_provider.calls == [('update', 'i'), ('delete', 'n')]
        assert list(records) == ['fake.i']
        assert records['fake.i'].dependencies == []

    def test_update_in_place(self, registry, fake_provider, state_path):
        with StateStore(state_path) as store:
            _apply(NETWORK_INSTANCE, registry, store)
            before = store.get('fake.n')
            fake_provider.calls.clear()
            _, result = _apply(NETWORK_INSTANCE.replace('size: 16', 'size: 24'), registry, store)
            after = store.get('fake.n')

        assert result.success
        assert fake_provider.calls == [('update', 'n')]
        assert after.external_id == before.external_id
        assert after.attributes['size'] == 24
        assert after.computed['arn'] == before.computed['arn']

    def test_resolved_unchanged_update_skips_provider(self, registry, fake_provider, state_path):
        text = NETWORK_INSTANCE.replace('${fake.n.id}', '${fake.n.arn}')
        with StateStore(state_path) as store:
            _apply(text, registry, store)
            fake_provider.calls.clear()
            plan, result = _apply(text.replace('size: 16', 'size: 24'), registry, store)

        # Planned as update because n.arn was unknown at plan time
        assert [e.action for e in plan.entries] == ['update', 'update']
        assert fake_provider.calls == [('update', 'n')]
        consumer = [r for r in result.results if r.resource_id == 'fake.i'][0]
        assert consumer.provider_called is False

    def test_execute_requires_lock(self, registry, state_path):
        store = StateStore(state_path)
        graph = build_graph(NETWORK_INSTANCE, registry)
        plan = diff(graph, store.load())
        with pytest.raises(LockNotHeldError):
            PlanExecutor(graph, store, registry).execute(plan)


class TestFailure:
    """Halting on failure and idempotent resumption."""

    def test_failure_halts_and_keeps_prior_commits(self, registry, fake_provider, state_path):
        fake_provider.fail_on.add(('create', 'c'))
        with StateStore(state_path) as store:
            _, result = _apply(CHAIN, registry, store)
            records = store.load()

        assert result.status == FAILED
        assert result.failed == 'fake.c'
        assert result.applied == ['fake.a', 'fake.b']
        assert result.skipped == ['fake.d']
        assert isinstance(result.error, ApplyError)
        assert isinstance(result.error.cause, ProviderError)
        assert '[apply] fake.c:' in str(result.error)
        assert set(records) == {'fake.a', 'fake.b'}

    def test_resumption_yields_remaining_entries(self, registry, fake_provider, state_path):
        fake_provider.fail_on.add(('create', 'c'))
        with StateStore(state_path) as store:
            first_plan, _ = _apply(CHAIN, registry, store)
            fake_provider.fail_on.clear()
            fake_provider.calls.clear()
            second_plan, result = _apply(CHAIN, registry, store)

        k = [e.id for e in first_plan.entries].index('fake.c')
        expected = [(e.action, e.id) for e in first_plan.entries[k:]]
        assert [(e.action, e.id) for e in second_plan.changes()] == expected
        assert fake_provider.calls == [('create', 'c'), ('create', 'd')]
        assert result.success

    def test_unexpected_exception_wrapped(self, registry, fake_provider, state_path, monkeypatch):
        def boom(attributes):
            raise RuntimeError('provider bug')

        monkeypatch.setattr(fake_provider, 'create', boom)
        with StateStore(state_path) as store:
            _, result = _apply(NETWORK_INSTANCE, registry, store)

        assert result.status == FAILED
        assert isinstance(result.error, ApplyError)
        assert 'provider bug' in str(result.error)
        assert result.skipped == ['fake.i']

    def test_retryable_flag_reported(self, registry, fake_provider, state_path):
        fake_provider.fail_on.add(('create', 'n'))
        with StateStore(state_path) as store:
            _, result = _apply(NETWORK_INSTANCE, registry, store)
        assert result.to_dict()['retryable'] is True

    def test_in_flight_entries_finish_after_failure(self, registry, fake_provider, state_path):
        fake_provider.fail_on.add(('create', 'a'))
        fake_provider.delays['m'] = 0.3
        with StateStore(state_path) as store:
            _, result = _apply(INDEPENDENT, registry, store, workers=2)
            records = store.load()

        assert result.status == FAILED
        assert result.failed == 'fake.a'
        assert 'fake.m' in records
        assert result.skipped == ['fake.z']


class TestScheduling:
    """Ordering and parallelism."""

    def test_independent_nodes_in_lexical_order(self, registry, fake_provider, state_path):
        with StateStore(state_path) as store:
            _apply(INDEPENDENT, registry, store)
        assert fake_provider.calls == [('create', 'a'), ('create', 'm'), ('create', 'z')]

    def test_chain_order_kept_with_workers(self, registry, fake_provider, state_path):
        with StateStore(state_path) as store:
            _apply(CHAIN, registry, store, workers=4)
        assert fake_provider.calls == [('create', 'a'), ('create', 'b'), ('create', 'c'), ('create', 'd')]

    def test_independent_nodes_run_concurrently(self, registry, fake_provider, state_path):
        for label in ('a', 'm', 'z'):
            fake_provider.delays[label] = 0.3
        with StateStore(state_path) as store:
            start = time.monotonic()
            _, result = _apply(INDEPENDENT, registry, store, workers=3)
            elapsed = time.monotonic() - start
        assert result.success
        assert elapsed < 0.8

    def test_replacement_delete_first(self, registry, fake_provider, state_path):
        text = """
name: z
resources:
  - {type: fake, name: disk, attributes: {label: disk, zone: a}}
  - {type: fake, name: vm, attributes: {label: vm, value: "${fake.disk.id}"}}
"""
        with StateStore(state_path) as store:
            _apply(text, registry, store)
            old_disk = store.get('fake.disk').external_id
            fake_provider.calls.clear()
            _, result = _apply(text.replace('zone: a', 'zone: b'), registry, store)
            records = store.load()

        assert result.success
        assert fake_provider.calls == [('delete', 'disk'), ('create', 'disk'), ('update', 'vm')]
        assert records['fake.disk'].external_id != old_disk
        assert records['fake.vm'].attributes['value'] == records['fake.disk'].external_id

    def test_replacement_create_before_destroy(self, make_provider, state_path):
        provider = make_provider(create_before_destroy=True)
        registry = ProviderRegistry([provider])
        text = """
name: z
resources:
  - {type: fake, name: disk, attributes: {label: disk, zone: a}}
  - {type: fake, name: vm, attributes: {label: vm, value: "${fake.disk.id}"}}
"""
        with StateStore(state_path) as store:
            _apply(text, registry, store)
            old_disk = store.get('fake.disk').external_id
            provider.calls.clear()
            _, result = _apply(text.replace('zone: a', 'zone: b'), registry, store)
            records = store.load()

        assert result.success
        assert provider.calls == [('create', 'disk'), ('update', 'vm'), ('delete', 'disk')]
        assert old_disk not in provider.resources
        assert records['fake.disk'].deposed == []

    def test_deposed_instance_survives_failure(self, make_provider, state_path):
        provider = make_provider(create_before_destroy=True)
        registry = ProviderRegistry([provider])
        text = """
name: z
resources:
  - {type: fake, name: disk, attributes: {label: disk, zone: a}}
  - {type: fake, name: vm, attributes: {label: vm, value: "${fake.disk.id}"}}
"""
        with StateStore(state_path) as store:
            _apply(text, registry, store)
            old_disk = store.get('fake.disk').external_id
            provider.fail_on.add(('update', 'vm'))
            _, result = _apply(text.replace('zone: a', 'zone: b'), registry, store)
            assert result.status == FAILED
            assert [d['external_id'] for d in store.get('fake.disk').deposed] == [old_disk]

            provider.fail_on.clear()
            provider.calls.clear()
            plan, result = _apply(text.replace('zone: a', 'zone: b'), registry, store)

        assert [(e.action, e.id) for e in plan.changes()] == [('update', 'fake.vm'), ('delete', 'fake.disk')]
        assert result.success
        assert old_disk not in provider.resources


class TestDestroy:
    """Executing diff_destroy plans."""

    def test_destroy_chain_reverse_order(self, registry, fake_provider, state_path):
        with StateStore(state_path) as store:
            _apply(CHAIN, registry, store)
            fake_provider.calls.clear()
            plan = diff_destroy(store.load())
            result = PlanExecutor(None, store, registry).execute(plan)
            records = store.load()

        assert result.success
        assert fake_provider.calls == [('delete', 'd'), ('delete', 'c'), ('delete', 'b'), ('delete', 'a')]
        assert records == {}
        assert fake_provider.resources == {}


class TestTimeoutAndCancel:
    """Operation timeouts and cancellation."""

    def test_timeout_fails_run(self, registry, fake_provider, state_path):
        fake_provider.delays['n'] = 0.6
        with StateStore(state_path) as store:
            start = time.monotonic()
            _, result = _apply(NETWORK_INSTANCE, registry, store, timeout=0.1)
            elapsed = time.monotonic() - start
            # Late result commits while the lock is still held
            time.sleep(0.8)
            late = store.get('fake.n')

        assert result.status == FAILED
        assert result.failed == 'fake.n'
        assert isinstance(result.error, OperationTimeout)
        assert result.error.phase == 'apply'
        assert result.skipped == ['fake.i']
        assert elapsed < 0.5
        assert late is not None

    def test_settle_commits_late_result_before_release(self, registry, fake_provider, state_path):
        fake_provider.delays['n'] = 0.4
        with StateStore(state_path) as store:
            _, result = _apply(NETWORK_INSTANCE, registry, store, timeout=0.1)
            assert len(result.abandoned) == 1
            assert result.to_dict()['abandoned'] == 1
            assert result.settle(timeout=5)
        records = StateStore(state_path).load()

        assert isinstance(result.error, OperationTimeout)
        assert list(records) == ['fake.n']
        assert records['fake.n'].external_id in fake_provider.resources

    def test_resume_after_settled_timeout(self, registry, fake_provider, state_path):
        fake_provider.delays['n'] = 0.3
        with StateStore(state_path) as store:
            _, result = _apply(NETWORK_INSTANCE, registry, store, timeout=0.1)
            result.settle()
            fake_provider.delays.clear()
            plan, resumed = _apply(NETWORK_INSTANCE, registry, store)

        assert [(e.action, e.id) for e in plan.changes()] == [(CREATE, 'fake.i')]
        assert resumed.success
        assert len(fake_provider.resources) == 2

    def test_completed_run_has_nothing_to_settle(self, registry, state_path):
        with StateStore(state_path) as store:
            _, result = _apply(NETWORK_INSTANCE, registry, store, timeout=5)
        assert result.abandoned == []
        assert result.settle(timeout=0)
        assert 'abandoned' not in result.to_dict()

    def test_cancel_stops_scheduling(self, registry, fake_provider, state_path):
        fake_provider.delays['a'] = 0.3
        with StateStore(state_path) as store:
            graph = build_graph(CHAIN, registry)
            plan = diff(graph, store.load())
            executor = PlanExecutor(graph, store, registry)
            threading.Timer(0.1, executor.cancel).start()
            result = executor.execute(plan)
            records = store.load()

        assert executor.cancelled
        assert result.status == CANCELLED
        assert result.applied == ['fake.a']
        assert result.skipped == ['fake.b', 'fake.c', 'fake.d']
        assert list(records) == ['fake.a']
