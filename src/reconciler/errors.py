"""Error taxonomy for the reconciliation engine.

Every error carries the offending resource identifier (when one is known)
and the phase it was raised in (plan, apply, output, state), so the CLI can
report exactly where a run stopped.

Configuration errors (ParseError, ReferenceError, GraphError) are raised
before any mutation. LockHeldError fails fast without mutation. Provider
failures halt apply with all prior commits intact.
"""

from typing import Optional

from config import ConfigError


class ReconcileError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, resource_id: Optional[str] = None,
                 phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.resource_id = resource_id
        self.phase = phase

    def __str__(self) -> str:
        prefix = ''
        if self.phase:
            prefix += f'[{self.phase}] '
        if self.resource_id:
            prefix += f'{self.resource_id}: '
        return f'{prefix}{self.message}'


class ParseError(ReconcileError, ConfigError):
    """Configuration text is malformed or violates a provider schema."""

    def __init__(self, message: str, resource_id: Optional[str] = None):
        super().__init__(message, resource_id=resource_id, phase='plan')


class ReferenceError(ReconcileError):  # noqa: A001
    """An expression references a node or attribute that does not exist."""

    def __init__(self, message: str, resource_id: Optional[str] = None):
        super().__init__(message, resource_id=resource_id, phase='plan')


class GraphError(ReconcileError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        path = ' -> '.join(self.cycle + self.cycle[:1])
        super().__init__(f"Dependency cycle detected: {path}",
                         resource_id=self.cycle[0] if self.cycle else None,
                         phase='plan')


class StateError(ReconcileError):
    """The state document cannot be read, migrated or written."""

    def __init__(self, message: str, resource_id: Optional[str] = None):
        super().__init__(message, resource_id=resource_id, phase='state')


class LockHeldError(StateError):
    """Another run holds the exclusive state lock."""

    def __init__(self, lock_path: str, holder: Optional[dict] = None):
        self.lock_path = lock_path
        self.holder = holder or {}
        detail = ''
        if self.holder:
            detail = (f" (held by pid {self.holder.get('pid', '?')} on "
                      f"{self.holder.get('hostname', '?')} since "
                      f"{self.holder.get('locked_at', '?')})")
        super().__init__(f"State lock {lock_path} is held by another run{detail}")


class LockNotHeldError(StateError):
    """A write was attempted without holding the state lock."""


class ProviderError(ReconcileError):
    """A provider operation failed.

    Attributes:
        retryable: Provider's hint that re-running may succeed. The engine
            never retries on its own; the flag is surfaced to the caller.
    """

    def __init__(self, message: str, retryable: bool = False,
                 resource_id: Optional[str] = None):
        super().__init__(message, resource_id=resource_id, phase='apply')
        self.retryable = retryable


class OperationTimeout(ReconcileError):
    """A provider operation did not finish within the run timeout."""

    def __init__(self, resource_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(f"Operation timed out after {timeout:g}s",
                         resource_id=resource_id, phase='apply')


class ApplyError(ReconcileError):
    """Wraps the failure of one change entry during apply."""

    def __init__(self, resource_id: str, action: str, cause: Exception):
        self.action = action
        self.cause = cause
        super().__init__(f"{action} failed: {getattr(cause, 'message', cause)}",
                         resource_id=resource_id, phase='apply')


class OutputError(ReconcileError):
    """An output expression references an attribute that does not exist."""

    def __init__(self, message: str, output: Optional[str] = None,
                 resource_id: Optional[str] = None):
        self.output = output
        super().__init__(message, resource_id=resource_id, phase='output')
