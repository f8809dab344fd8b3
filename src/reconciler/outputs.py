"""Output resolution after apply."""

import logging
from typing import Any

from reconciler.errors import OutputError
from reconciler.state import StateRecord
from values import Expression, Reference, resolve

logger = logging.getLogger(__name__)


def attributes_by_id(records: dict[str, StateRecord]) -> dict[str, dict]:
    """Readable attribute values of every record, keyed by resource id."""
    return {rid: record.values() for rid, record in records.items()}


def resolve_outputs(outputs: dict[str, Expression],
                    attributes: dict[str, dict]) -> dict[str, Any]:
    """Evaluate output expressions against final attribute values.

    Args:
        outputs: Output name -> expression
        attributes: Resource id -> attribute values (see attributes_by_id)

    Raises:
        OutputError: If an output references a resource or attribute that
            does not exist
    """
    resolved = {}
    for name in sorted(outputs):
        def lookup(ref: Reference, _name: str = name) -> Any:
            values = attributes.get(ref.target)
            if values is None:
                raise OutputError(f"Output '{_name}' references {ref}, but {ref.target} does not exist",
                                  output=_name, resource_id=ref.target)
            if ref.attribute not in values:
                raise OutputError(f"Output '{_name}' references {ref}, but {ref.target} has no "
                                  f"attribute '{ref.attribute}'",
                                  output=_name, resource_id=ref.target)
            return values[ref.attribute]

        resolved[name] = resolve(outputs[name], lookup)
        logger.debug(f"[output] {name} resolved")
    return resolved
