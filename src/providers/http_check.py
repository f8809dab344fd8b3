"""HTTP readiness check provider.

Gates dependent resources and outputs on an HTTP endpoint answering with
the expected status, e.g. the single endpoint of a freshly deployed
container. Has no external effect, so delete is a no-op.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import requests
import urllib3

from providers.base import Attribute, ResourceSchema
from reconciler.errors import ProviderError

logger = logging.getLogger(__name__)

# Response body stored in state is truncated to this many characters
MAX_BODY = 1024


@dataclass
class HttpCheckProvider:
    """Polls a URL until it returns expected_status or timeout expires."""
    kind: str = 'http_check'
    create_before_destroy: Optional[bool] = True
    request_timeout: float = 10.0
    schema: ResourceSchema = field(default_factory=lambda: ResourceSchema(attributes={
        'url': Attribute(type='string', required=True, force_new=True),
        'expected_status': Attribute(type='number', default=200),
        'timeout': Attribute(type='number', default=60),
        'interval': Attribute(type='number', default=2),
        'verify_tls': Attribute(type='bool', default=True),
        'status_code': Attribute(type='number', computed=True),
        'body': Attribute(type='string', computed=True),
    }))

    def _check(self, attributes: dict) -> dict:
        url = attributes['url']
        expected = int(attributes.get('expected_status') or 200)
        timeout = float(attributes.get('timeout') or 60)
        interval = float(attributes.get('interval') or 2)
        verify = attributes.get('verify_tls', True)
        if not verify:
            # Self-signed certs on freshly provisioned hosts
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        logger.info(f"[http_check] Waiting for {url} to return {expected} (timeout {timeout:g}s)")
        start = time.time()
        last = 'no response'
        while True:
            try:
                resp = requests.get(url, timeout=min(self.request_timeout, timeout), verify=verify)
                if resp.status_code == expected:
                    logger.info(f"[http_check] {url} ready ({resp.status_code})")
                    result = dict(attributes)
                    result['status_code'] = resp.status_code
                    result['body'] = resp.text[:MAX_BODY]
                    return result
                last = f"status {resp.status_code}"
            except requests.exceptions.ConnectionError as e:
                last = f"connection error: {e}"
            except requests.exceptions.Timeout:
                last = "request timed out"

            if time.time() - start + interval > timeout:
                raise ProviderError(
                    f"{url} not ready after {timeout:g}s (last: {last})", retryable=True)
            logger.debug(f"[http_check] {url} not ready ({last}), retrying in {interval:g}s...")
            time.sleep(interval)

    def create(self, attributes: dict) -> tuple[str, dict]:
        return attributes['url'], self._check(attributes)

    def update(self, external_id: str, old: dict, new: dict) -> dict:
        return self._check(new)

    def delete(self, external_id: str, attributes: dict) -> None:
        logger.debug(f"[http_check] Forgetting {external_id}")
