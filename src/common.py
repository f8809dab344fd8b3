"""Common utilities and types for the reconciliation engine."""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Return code reported by run_command when the timeout expires (matches coreutils timeout)
TIMEOUT_RC = 124


@dataclass
class EntryResult:
    """Outcome of applying one change entry."""
    resource_id: str
    action: str
    success: bool
    message: str = ''
    duration: float = 0.0
    provider_called: bool = True


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr).

    Returns TIMEOUT_RC when the command exceeds timeout, -1 when it could
    not be started.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout or '', result.stderr or ''
    except subprocess.TimeoutExpired:
        return TIMEOUT_RC, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, '', str(e)


def run_shell(
    script: str,
    cwd: Optional[Path] = None,
    timeout: int = 600,
    env: Optional[dict] = None,
    shell: str = '/bin/sh',
) -> tuple[int, str, str]:
    """Run a shell snippet via `shell -c`."""
    return run_command([shell, '-c', script], cwd=cwd, timeout=timeout, env=env)
