"""Plan executor: applies change entries through providers.

Entries run in plan order. An entry waits for every earlier entry on the
same resource or on a resource it is linked to by a dependency (graph edge
or recorded in state), so only independent subtrees run concurrently, at
most `workers` at a time. Each successful provider call is committed to the
state store before anything that depends on it is scheduled.

On the first failure nothing new is scheduled; in-flight entries finish and
commit, and the run reports the failing id. No entry is retried.

A provider call that exceeds the timeout fails the run but keeps running in
its worker. RunResult.abandoned holds those calls; callers that wait on
RunResult.settle() before releasing the store lock get their late results
committed.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from common import EntryResult
from providers.registry import ProviderRegistry
from reconciler.differ import CREATE, DELETE, NOOP, UPDATE, ChangeEntry, Plan
from reconciler.errors import (
    ApplyError,
    LockNotHeldError,
    OperationTimeout,
    ReconcileError,
    ReferenceError,
    StateError,
)
from reconciler.graph import ResourceGraph
from reconciler.state import StateRecord, StateStore
from values import Reference, contains_unknown, resolve, values_equal

logger = logging.getLogger(__name__)

COMPLETED = 'completed'
FAILED = 'failed'
CANCELLED = 'cancelled'


@dataclass
class RunResult:
    """Outcome of executing a plan.

    Attributes:
        status: completed, failed or cancelled
        applied: Ids whose entries succeeded, in completion order
        failed: Id of the entry that failed, if any
        error: The failure (ApplyError, OperationTimeout or StateError)
        skipped: Ids of entries never started
        results: Per-entry outcomes
        abandoned: Timed-out calls still running in worker threads
    """
    status: str
    applied: list[str] = field(default_factory=list)
    failed: Optional[str] = None
    error: Optional[Exception] = None
    skipped: list[str] = field(default_factory=list)
    results: list[EntryResult] = field(default_factory=list)
    abandoned: list[Future] = field(default_factory=list, repr=False)

    @property
    def success(self) -> bool:
        return self.status == COMPLETED

    def settle(self, timeout: Optional[float] = None) -> bool:
        """Wait for abandoned calls to finish. Returns True if none is left running."""
        if not self.abandoned:
            return True
        _, not_done = wait(self.abandoned, timeout=timeout)
        return not not_done

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'status': self.status,
            'applied': self.applied,
            'failed': self.failed,
            'skipped': self.skipped,
            'results': [
                {
                    'id': r.resource_id,
                    'action': r.action,
                    'success': r.success,
                    'message': r.message,
                    'duration': round(r.duration, 3),
                }
                for r in self.results
            ],
        }
        if self.abandoned:
            d['abandoned'] = len(self.abandoned)
        if self.error is not None:
            d['error'] = str(self.error)
            cause = getattr(self.error, 'cause', None)
            d['retryable'] = bool(getattr(cause, 'retryable', False))
        return d


@dataclass
class _Job:
    """A resolved entry ready to hand to a worker."""
    index: int
    entry: ChangeEntry
    run: Callable[[], EntryResult]
    deadline: Optional[float] = None


class PlanExecutor:
    """Applies a Plan against a locked StateStore.

    Usage:
        with store:
            executor = PlanExecutor(graph, store, registry, workers=4)
            result = executor.execute(plan)
    """

    def __init__(self, graph: Optional[ResourceGraph], store: StateStore,
                 registry: ProviderRegistry, workers: int = 1,
                 timeout: Optional[float] = None):
        self.graph = graph
        self.store = store
        self.registry = registry
        self.workers = max(1, workers)
        self.timeout = timeout
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop scheduling new entries; in-flight entries finish and commit."""
        if not self._cancel.is_set():
            logger.warning("[apply] Cancellation requested, waiting for in-flight operations")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # Dependency bookkeeping

    def _related(self, records: dict[str, StateRecord]) -> dict[str, set[str]]:
        related: dict[str, set[str]] = {}

        def link(a: str, b: str) -> None:
            related.setdefault(a, set()).add(b)
            related.setdefault(b, set()).add(a)

        if self.graph is not None:
            for producer, consumer in self.graph.edges():
                link(producer, consumer)
        for record in records.values():
            for producer in record.dependencies:
                link(producer, record.id)
        return related

    def _predecessors(self, entries: list[ChangeEntry]) -> list[set[int]]:
        related = self._related(self.store.records())
        waits: list[set[int]] = []
        for i, entry in enumerate(entries):
            linked = related.get(entry.id, set())
            waits.append({
                j for j in range(i)
                if entries[j].id == entry.id or entries[j].id in linked
            })
        return waits

    # Entry preparation (main thread)

    def _lookup(self, ref: Reference) -> Any:
        record = self.store.get(ref.target)
        if record is None:
            raise ReferenceError(f"Reference {ref} to a resource with no state")
        return record.values().get(ref.attribute)

    def _desired(self, entry: ChangeEntry) -> dict:
        node = self.graph.get_node(entry.id)
        schema = self.registry.get(node.type, entry.id).schema
        desired = schema.apply_defaults(
            {name: resolve(expr, self._lookup) for name, expr in node.attributes.items()})
        if contains_unknown(desired):
            raise ReferenceError("Attributes still unknown at apply time", entry.id)
        return desired

    def _dependencies(self, resource_id: str) -> list[str]:
        return sorted(self.graph.dependencies(resource_id)) if self.graph is not None else []

    def _prepare(self, index: int, entry: ChangeEntry) -> _Job:
        """Resolve an entry against committed state and bind its operation."""
        provider = self.registry.get(entry.type, entry.id)
        record = self.store.get(entry.id)

        if entry.action == CREATE:
            desired = self._desired(entry)
            deposed = list(record.deposed) if record else []
            if entry.replace and record is not None and record.external_id == entry.external_id:
                # Old instance stays until the deferred deposed delete runs
                deposed.append({'external_id': record.external_id,
                                'attributes': {**record.attributes, **record.computed}})

            def run_create() -> EntryResult:
                external_id, attrs = provider.create(dict(desired))
                self._commit(StateRecord(
                    id=entry.id,
                    type=entry.type,
                    external_id=str(external_id),
                    attributes=desired,
                    computed={k: v for k, v in attrs.items() if k not in desired},
                    dependencies=self._dependencies(entry.id),
                    deposed=deposed,
                ), entry)
                return EntryResult(entry.id, CREATE, True, f"created {external_id}")

            return _Job(index, entry, run_create)

        if entry.action in (UPDATE, NOOP):
            if record is None:
                raise StateError(f"No state record to {entry.action}", entry.id)
            desired = self._desired(entry)
            dependencies = self._dependencies(entry.id)
            old = {**record.attributes, **record.computed}
            unchanged = all(values_equal(record.attributes.get(k), desired.get(k))
                            for k in set(record.attributes) | set(desired))

            if unchanged:
                def run_unchanged() -> EntryResult:
                    if sorted(record.dependencies) != dependencies:
                        record.dependencies = dependencies
                        self._commit(record, entry)
                    return EntryResult(entry.id, entry.action, True, 'unchanged',
                                       provider_called=False)

                return _Job(index, entry, run_unchanged)

            def run_update() -> EntryResult:
                attrs = provider.update(record.external_id, old, dict(desired))
                self._commit(StateRecord(
                    id=entry.id,
                    type=entry.type,
                    external_id=record.external_id,
                    attributes=desired,
                    computed={k: v for k, v in attrs.items() if k not in desired},
                    dependencies=dependencies,
                    deposed=list(record.deposed),
                ), entry)
                return EntryResult(entry.id, UPDATE, True, 'updated')

            return _Job(index, entry, run_update)

        if entry.action == DELETE:
            if entry.deposed:
                attributes = dict(entry.old or {})
                for item in (record.deposed if record else []):
                    if item.get('external_id') == entry.external_id:
                        attributes = dict(item.get('attributes') or {})
            elif record is not None:
                attributes = {**record.attributes, **record.computed}
            else:
                attributes = dict(entry.old or {})

            def run_delete() -> EntryResult:
                provider.delete(entry.external_id, attributes)
                if entry.deposed:
                    self._drop_deposed(entry)
                else:
                    self._remove(entry)
                return EntryResult(entry.id, DELETE, True, f"deleted {entry.external_id}")

            return _Job(index, entry, run_delete)

        raise ValueError(f"Unknown action '{entry.action}'")

    # State writes (worker threads)

    def _commit(self, record: StateRecord, entry: ChangeEntry) -> None:
        try:
            self.store.commit(record)
        except LockNotHeldError:
            logger.error(f"[apply] {entry.id}: {entry.action} finished after the run released "
                         f"the state lock; orphaned instance {record.external_id} is not in state")
            raise

    def _remove(self, entry: ChangeEntry) -> None:
        try:
            self.store.remove(entry.id)
        except LockNotHeldError:
            logger.error(f"[apply] {entry.id}: delete finished after the run released the "
                         f"state lock; state still lists {entry.external_id}")
            raise

    def _drop_deposed(self, entry: ChangeEntry) -> None:
        record = self.store.get(entry.id)
        if record is None:
            return
        record.deposed = [d for d in record.deposed if d.get('external_id') != entry.external_id]
        self._commit(record, entry)

    # Scheduling

    def _run_job(self, job: _Job) -> EntryResult:
        start = time.monotonic()
        entry = job.entry
        logger.info(f"[apply] {entry.id}: {entry.action}" + (f" ({entry.reason})" if entry.reason else ''))
        result = job.run()
        result.duration = time.monotonic() - start
        logger.info(f"[apply] {entry.id}: {result.message} ({result.duration:.1f}s)")
        return result

    @staticmethod
    def _wrap(entry: ChangeEntry, exc: BaseException) -> Exception:
        if isinstance(exc, (StateError, ApplyError, OperationTimeout)):
            return exc
        return ApplyError(entry.id, entry.action, exc)

    def execute(self, plan: Plan) -> RunResult:
        """Apply every entry of the plan.

        Requires the store lock to be held by the caller.

        Returns:
            RunResult; failures are reported in it rather than raised
        """
        if not self.store.locked:
            raise LockNotHeldError(f"State lock {self.store.lock_path} must be held to apply")

        entries = plan.entries
        waits = self._predecessors(entries)
        pending = list(range(len(entries)))
        running: dict[Future, _Job] = {}
        done: set[int] = set()
        result = RunResult(status=COMPLETED)

        logger.info(f"[apply] Executing {len(plan.changes())} change(s) with {self.workers} worker(s)")
        pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='reconcile')
        try:
            while pending or running:
                if result.error is None and not self._cancel.is_set():
                    for index in list(pending):
                        if len(running) >= self.workers:
                            break
                        if not waits[index] <= done:
                            continue
                        pending.remove(index)
                        entry = entries[index]
                        try:
                            job = self._prepare(index, entry)
                        except ReconcileError as e:
                            result.error = self._wrap(entry, e)
                            result.failed = entry.id
                            logger.error(f"{result.error}")
                            break
                        if self.timeout is not None:
                            job.deadline = time.monotonic() + self.timeout
                        running[pool.submit(self._run_job, job)] = job

                if not running:
                    break

                deadlines = [j.deadline for j in running.values() if j.deadline is not None]
                wait_for = max(0.0, min(deadlines) - time.monotonic()) if deadlines else None
                finished, _ = wait(list(running), timeout=wait_for, return_when=FIRST_COMPLETED)

                for future in finished:
                    job = running.pop(future)
                    exc = future.exception()
                    if exc is None:
                        done.add(job.index)
                        entry_result = future.result()
                        result.results.append(entry_result)
                        if job.entry.action != NOOP and job.entry.id not in result.applied:
                            result.applied.append(job.entry.id)
                        continue
                    error = self._wrap(job.entry, exc)
                    result.results.append(EntryResult(job.entry.id, job.entry.action, False, str(error)))
                    logger.error(f"{error}")
                    if result.error is None:
                        result.error = error
                        result.failed = job.entry.id

                now = time.monotonic()
                for future, job in list(running.items()):
                    if job.deadline is not None and now >= job.deadline and not future.done():
                        running.pop(future)
                        result.abandoned.append(future)
                        future.add_done_callback(self._late_result(job))
                        error = OperationTimeout(job.entry.id, self.timeout)
                        logger.error(f"{error}")
                        result.results.append(EntryResult(job.entry.id, job.entry.action, False, str(error)))
                        if result.error is None:
                            result.error = error
                            result.failed = job.entry.id
        finally:
            pool.shutdown(wait=not result.abandoned, cancel_futures=True)

        result.skipped = [entries[i].id for i in pending]
        if result.error is not None:
            result.status = FAILED
        elif self._cancel.is_set() and pending:
            result.status = CANCELLED
        logger.info(f"[apply] Run {result.status}: {len(result.applied)} applied"
                    + (f", failed: {result.failed}" if result.failed else '')
                    + (f", {len(result.skipped)} skipped" if result.skipped else ''))
        return result

    @staticmethod
    def _late_result(job: _Job) -> Callable[[Future], None]:
        def _callback(future: Future) -> None:
            exc = future.exception()
            if exc is None:
                logger.warning(f"[apply] {job.entry.id}: {job.entry.action} finished after timing out; result committed")
            else:
                logger.warning(f"[apply] {job.entry.id}: {job.entry.action} failed after timing out: {exc}")
        return _callback
