"""Local file provider.

Manages a single file on the local filesystem. The external id is the
absolute path. Changing 'path' replaces the file; content and mode are
updated in place.
"""

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from providers.base import Attribute, ResourceSchema
from reconciler.errors import ProviderError

logger = logging.getLogger(__name__)


def _parse_mode(mode: str) -> int:
    try:
        return int(str(mode), 8)
    except ValueError:
        raise ProviderError(f"Invalid file mode '{mode}': expected octal string like '0644'")


@dataclass
class FileProvider:
    """Write, rewrite and remove local files.

    Attributes:
        base_dir: Directory relative paths are resolved against (default: cwd)
    """
    kind: str = 'file'
    create_before_destroy: Optional[bool] = False
    base_dir: Optional[Path] = None
    schema: ResourceSchema = field(default_factory=lambda: ResourceSchema(attributes={
        'path': Attribute(type='string', required=True, force_new=True),
        'content': Attribute(type='string', default=''),
        'mode': Attribute(type='string', default='0644'),
        'sha256': Attribute(type='string', computed=True),
        'size': Attribute(type='number', computed=True),
    }))

    def _resolve(self, path: str) -> Path:
        p = Path(path).expanduser()
        if not p.is_absolute():
            p = (self.base_dir or Path.cwd()) / p
        return p

    def _write(self, attributes: dict) -> tuple[Path, dict]:
        path = self._resolve(attributes['path'])
        content = attributes.get('content') or ''
        mode = _parse_mode(attributes.get('mode') or '0644')
        data = content.encode('utf-8')

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=f'.{path.name}-', dir=path.parent)
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp, mode)
                os.replace(tmp, path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise ProviderError(f"Cannot write {path}: {e}")

        logger.info(f"[file] Wrote {path} ({len(data)} bytes)")
        result = dict(attributes)
        result['sha256'] = hashlib.sha256(data).hexdigest()
        result['size'] = len(data)
        return path, result

    def create(self, attributes: dict) -> tuple[str, dict]:
        path = self._resolve(attributes['path'])
        if path.exists():
            raise ProviderError(f"{path} already exists and is not managed by this state")
        path, result = self._write(attributes)
        return str(path), result

    def update(self, external_id: str, old: dict, new: dict) -> dict:
        _, result = self._write(new)
        return result

    def delete(self, external_id: str, attributes: dict) -> None:
        try:
            Path(external_id).unlink(missing_ok=True)
        except OSError as e:
            raise ProviderError(f"Cannot remove {external_id}: {e}")
        logger.info(f"[file] Removed {external_id}")
