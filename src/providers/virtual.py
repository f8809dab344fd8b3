"""Virtual provider: resources with no external effect.

Useful for wiring values between resources and for exercising plans.
Changing 'triggers' forces replacement.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from providers.base import Attribute, ResourceSchema

logger = logging.getLogger(__name__)


@dataclass
class VirtualProvider:
    """Stores attributes verbatim and assigns a random id."""
    kind: str = 'virtual'
    create_before_destroy: Optional[bool] = None
    schema: ResourceSchema = field(default_factory=lambda: ResourceSchema(
        attributes={'triggers': Attribute(type='map', force_new=True)},
        open_schema=True,
    ))

    def create(self, attributes: dict) -> tuple[str, dict]:
        external_id = uuid.uuid4().hex
        logger.debug(f"[virtual] create {external_id}")
        return external_id, dict(attributes)

    def update(self, external_id: str, old: dict, new: dict) -> dict:
        return dict(new)

    def delete(self, external_id: str, attributes: dict) -> None:
        logger.debug(f"[virtual] delete {external_id}")
