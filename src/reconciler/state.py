"""Durable state for declarative reconciliation.

Persists the last-applied attributes of every managed resource in a single
JSON document so later runs can diff against it and destroy can find
external ids without the configuration.

Document format (schema_version 1):

    {
      "schema_version": 1,
      "serial": 7,
      "lineage": "<uuid>",
      "resources": {"<type>.<name>": {...StateRecord...}},
      "outputs": {"name": value}
    }

Writes replace the whole document atomically (temp file + os.replace), so
readers never see a partial record. All writes require the exclusive lock
on '<state>.lock', which serializes whole runs against the same store.
"""

import copy
import fcntl
import json
import logging
import os
import socket
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from reconciler.errors import LockHeldError, LockNotHeldError, StateError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# Interval between lock attempts while waiting for lock_timeout
LOCK_POLL_INTERVAL = 0.1


@dataclass
class StateRecord:
    """Last-applied state of one resource.

    Attributes:
        id: Resource identifier ('<type>.<name>')
        type: Provider kind
        external_id: Identifier assigned by the provider
        attributes: Resolved input attributes as last applied
        computed: Attributes reported by the provider beyond the inputs
        dependencies: Producer ids at apply time (orders deletes once the
            resource is gone from configuration)
        deposed: Replaced instances awaiting deletion, each
            {"external_id": ..., "attributes": {...}}
        updated_at: Timestamp of the last commit
    """
    id: str
    type: str
    external_id: str
    attributes: dict = field(default_factory=dict)
    computed: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    deposed: list[dict] = field(default_factory=list)
    updated_at: Optional[float] = None

    def values(self) -> dict:
        """All readable attributes: inputs, computed and 'id'."""
        merged = dict(self.attributes)
        merged.update(self.computed)
        merged['id'] = self.external_id
        return merged

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'type': self.type,
            'external_id': self.external_id,
            'attributes': self.attributes,
            'computed': self.computed,
            'dependencies': sorted(self.dependencies),
        }
        if self.deposed:
            d['deposed'] = [dict(item) for item in self.deposed]
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'StateRecord':
        try:
            return cls(
                id=data['id'],
                type=data['type'],
                external_id=str(data['external_id']),
                attributes=dict(data.get('attributes') or {}),
                computed=dict(data.get('computed') or {}),
                dependencies=list(data.get('dependencies') or []),
                deposed=list(data.get('deposed') or []),
                updated_at=data.get('updated_at'),
            )
        except (KeyError, TypeError) as e:
            raise StateError(f"Malformed state record: {e}", data.get('id') if isinstance(data, dict) else None)


def _migrate_v0(data: dict) -> dict:
    """Version 0: a flat {id: record} map without envelope."""
    resources = {}
    for resource_id, record in data.items():
        record = dict(record)
        record.setdefault('id', resource_id)
        record.setdefault('type', resource_id.split('.', 1)[0])
        resources[resource_id] = record
    return {
        'schema_version': 1,
        'serial': 0,
        'lineage': uuid.uuid4().hex,
        'resources': resources,
        'outputs': {},
    }


# from_version -> function producing the next version's document
MIGRATIONS: dict[int, Callable[[dict], dict]] = {
    0: _migrate_v0,
}


def migrate(data: dict) -> dict:
    """Bring a raw state document up to SCHEMA_VERSION.

    Raises:
        StateError: For versions newer than supported or without a migration
    """
    version = data.get('schema_version', 0) if 'resources' in data or 'schema_version' in data else 0
    if not isinstance(version, int) or version > SCHEMA_VERSION:
        raise StateError(
            f"State schema version {version} is newer than supported ({SCHEMA_VERSION}); "
            f"upgrade the engine")
    while version < SCHEMA_VERSION:
        migration = MIGRATIONS.get(version)
        if migration is None:
            raise StateError(f"No migration from state schema version {version}")
        logger.info(f"Migrating state from schema version {version}")
        data = migration(data)
        version = data['schema_version']
    return data


class StateStore:
    """File-backed state store with an exclusive run lock.

    Usage:
        store = StateStore(path, lock_timeout=5)
        with store:             # acquire/release the lock
            records = store.load()
            store.commit(record)
    """

    def __init__(self, path: Path, lock_timeout: float = 0.0):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + '.lock')
        self.lock_timeout = lock_timeout
        self._lock_file = None
        self._write_mutex = threading.Lock()
        self._document: Optional[dict] = None

    # Locking

    @property
    def locked(self) -> bool:
        return self._lock_file is not None

    def acquire(self) -> None:
        """Take the exclusive store lock.

        Retries non-blocking flock until lock_timeout elapses.

        Raises:
            LockHeldError: If another run holds the lock
        """
        if self.locked:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = open(self.lock_path, 'a+', encoding='utf-8')
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    holder = self._read_holder(lock_file)
                    lock_file.close()
                    raise LockHeldError(str(self.lock_path), holder)
                time.sleep(LOCK_POLL_INTERVAL)

        lock_file.seek(0)
        lock_file.truncate()
        json.dump({
            'pid': os.getpid(),
            'hostname': socket.gethostname(),
            'locked_at': datetime.now(timezone.utc).isoformat(),
        }, lock_file)
        lock_file.flush()
        self._lock_file = lock_file
        logger.debug(f"Acquired state lock {self.lock_path}")

    @staticmethod
    def _read_holder(lock_file) -> dict:
        try:
            lock_file.seek(0)
            return json.loads(lock_file.read() or '{}')
        except (OSError, ValueError):
            return {}

    def release(self) -> None:
        """Release the store lock (no-op if not held)."""
        if self._lock_file is None:
            return
        lock_file, self._lock_file = self._lock_file, None
        try:
            lock_file.seek(0)
            lock_file.truncate()
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            lock_file.close()
        logger.debug(f"Released state lock {self.lock_path}")

    def __enter__(self) -> 'StateStore':
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    # Reading

    def _read_document(self) -> dict:
        if not self.path.exists():
            return {
                'schema_version': SCHEMA_VERSION,
                'serial': 0,
                'lineage': uuid.uuid4().hex,
                'resources': {},
                'outputs': {},
            }
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"State file {self.path} is not valid JSON: {e}")
        except OSError as e:
            raise StateError(f"Cannot read state file {self.path}: {e}")
        if not isinstance(data, dict):
            raise StateError(f"State file {self.path} must contain a JSON object")
        return migrate(data)

    def load(self) -> dict[str, StateRecord]:
        """Load all records from storage (empty if no state exists yet).

        Raises:
            StateError: If the document is unreadable or too new
        """
        with self._write_mutex:
            self._document = self._read_document()
            records = {
                rid: StateRecord.from_dict(raw)
                for rid, raw in self._document.get('resources', {}).items()
            }
        logger.debug(f"Loaded {len(records)} state record(s) from {self.path}")
        return records

    def records(self) -> dict[str, StateRecord]:
        """Records as of the last load or commit."""
        with self._write_mutex:
            if self._document is None:
                self._document = self._read_document()
            return {
                rid: StateRecord.from_dict(raw)
                for rid, raw in self._document.get('resources', {}).items()
            }

    def get(self, resource_id: str) -> Optional[StateRecord]:
        return self.records().get(resource_id)

    def outputs(self) -> dict:
        with self._write_mutex:
            if self._document is None:
                self._document = self._read_document()
            return copy.deepcopy(self._document.get('outputs', {}))

    @property
    def serial(self) -> int:
        with self._write_mutex:
            return (self._document or {}).get('serial', 0)

    # Writing

    def _mutate(self, change: Callable[[dict], None]) -> None:
        if not self.locked:
            raise LockNotHeldError(f"State lock {self.lock_path} not held; refusing to write")
        with self._write_mutex:
            if self._document is None:
                self._document = self._read_document()
            document = copy.deepcopy(self._document)
            change(document)
            document['serial'] = document.get('serial', 0) + 1
            self._write_document(document)
            self._document = document

    def _write_document(self, document: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f'.{self.path.name}-', suffix='.tmp', dir=self.path.parent)
        try:
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(document, f, indent=2, sort_keys=True)
                    f.write('\n')
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateError(f"Cannot write state file {self.path}: {e}")

    def commit(self, record: StateRecord) -> None:
        """Persist one record, replacing any prior record for its id.

        Raises:
            LockNotHeldError: If the store lock is not held
            StateError: If the write fails
        """
        record.updated_at = time.time()
        data = record.to_dict()

        def _put(document: dict) -> None:
            document.setdefault('resources', {})[record.id] = data

        self._mutate(_put)
        logger.debug(f"Committed state for {record.id} (external_id={record.external_id})")

    def remove(self, resource_id: str) -> None:
        """Delete one record (no-op if absent)."""
        def _drop(document: dict) -> None:
            document.setdefault('resources', {}).pop(resource_id, None)

        self._mutate(_drop)
        logger.debug(f"Removed state for {resource_id}")

    def save_outputs(self, outputs: dict) -> None:
        """Persist the outputs resolved by the last apply."""
        def _set(document: dict) -> None:
            document['outputs'] = dict(outputs)

        self._mutate(_set)
