"""Command provider: lifecycle hooks as shell commands.

Runs a shell snippet on create, optionally on update and destroy. The
environment receives RECONCILE_EXTERNAL_ID plus any configured variables.
Used for opaque post-provisioning hooks (bootstrap scripts, image builds).
"""

import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Optional

from common import TIMEOUT_RC, run_shell
from providers.base import Attribute, ResourceSchema
from reconciler.errors import ProviderError

logger = logging.getLogger(__name__)

# Captured stdout stored in state is truncated to this many characters
MAX_STDOUT = 4096


@dataclass
class CommandProvider:
    """Runs create/update/destroy commands through run_shell()."""
    kind: str = 'command'
    create_before_destroy: Optional[bool] = None
    shell: str = '/bin/sh'
    schema: ResourceSchema = field(default_factory=lambda: ResourceSchema(attributes={
        'create': Attribute(type='string', required=True, force_new=True),
        'update': Attribute(type='string'),
        'destroy': Attribute(type='string'),
        'environment': Attribute(type='map', default={}),
        'working_dir': Attribute(type='string'),
        'timeout': Attribute(type='number', default=600),
        'stdout': Attribute(type='string', computed=True),
        'exit_code': Attribute(type='number', computed=True),
    }))

    def _run(self, phase: str, script: str, external_id: str, attributes: dict) -> dict:
        env = {**os.environ, 'RECONCILE_EXTERNAL_ID': external_id}
        for key, value in (attributes.get('environment') or {}).items():
            env[str(key)] = '' if value is None else str(value)

        timeout = attributes.get('timeout') or 600
        logger.info(f"[command] Running {phase} command for {external_id}")
        rc, out, err = run_shell(
            script,
            cwd=attributes.get('working_dir') or None,
            timeout=timeout,
            env=env,
            shell=self.shell,
        )
        if rc == TIMEOUT_RC and 'timed out' in err:
            raise ProviderError(f"{phase} command timed out after {timeout}s", retryable=True)
        if rc != 0:
            detail = (err or out).strip().splitlines()[-1:] or ['no output']
            raise ProviderError(f"{phase} command exited with {rc}: {detail[0]}")

        result = dict(attributes)
        result['stdout'] = out[:MAX_STDOUT]
        result['exit_code'] = rc
        return result

    def create(self, attributes: dict) -> tuple[str, dict]:
        external_id = uuid.uuid4().hex
        return external_id, self._run('create', attributes['create'], external_id, attributes)

    def update(self, external_id: str, old: dict, new: dict) -> dict:
        script = new.get('update')
        if not script:
            result = dict(new)
            result['stdout'] = old.get('stdout', '')
            result['exit_code'] = old.get('exit_code', 0)
            return result
        return self._run('update', script, external_id, new)

    def delete(self, external_id: str, attributes: dict) -> None:
        script = attributes.get('destroy')
        if script:
            self._run('destroy', script, external_id, attributes)
