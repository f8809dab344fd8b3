"""Provider contract and attribute schemas.

A provider implements create/update/delete for one resource kind and
declares which attributes that kind accepts. The schema is checked when
the graph is built; the force_new flag on an attribute tells the differ
that changing it requires replacing the resource.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from reconciler.errors import ParseError
from values import (
    VALUE_TYPES,
    Reference,
    Template,
    is_literal,
    value_type,
)


@dataclass(frozen=True)
class Attribute:
    """Declared attribute of a resource kind.

    Attributes:
        type: One of values.VALUE_TYPES, or 'any'
        required: Must be set in configuration
        force_new: Changing the value replaces the resource
        computed: Reported by the provider; may not be set in configuration
        default: Value used when the configuration omits the attribute
    """
    type: str = 'any'
    required: bool = False
    force_new: bool = False
    computed: bool = False
    default: Any = None

    def __post_init__(self):
        if self.type != 'any' and self.type not in VALUE_TYPES:
            raise ValueError(f"Unknown attribute type '{self.type}'")


@dataclass
class ResourceSchema:
    """Attribute schema for a resource kind.

    open_schema=True accepts attributes that are not declared (typed 'any').
    'id' is always readable and maps to the external id.
    """
    attributes: dict[str, Attribute] = field(default_factory=dict)
    open_schema: bool = False

    def inputs(self) -> list[str]:
        return sorted(n for n, a in self.attributes.items() if not a.computed)

    def computed(self) -> list[str]:
        return sorted(n for n, a in self.attributes.items() if a.computed)

    def has_attribute(self, name: str) -> bool:
        """True if the attribute can be referenced on this kind."""
        return name == 'id' or name in self.attributes or self.open_schema

    def is_force_new(self, name: str) -> bool:
        attr = self.attributes.get(name)
        return attr is not None and attr.force_new

    def apply_defaults(self, values: dict) -> dict:
        """Return values with defaults filled in for omitted inputs."""
        result = dict(values)
        for name, attr in self.attributes.items():
            if not attr.computed and name not in result and attr.default is not None:
                result[name] = attr.default
        return result

    def validate(self, resource_id: str, attributes: dict) -> None:
        """Check configured attribute expressions against the schema.

        Raises:
            ParseError: On unknown, computed-only or missing required
                attributes, and on literal type mismatches
        """
        for name, expr in attributes.items():
            if name == 'id':
                raise ParseError("'id' is assigned by the provider and cannot be set", resource_id)
            attr = self.attributes.get(name)
            if attr is None:
                if self.open_schema:
                    continue
                allowed = ', '.join(self.inputs()) or 'none'
                raise ParseError(f"Unknown attribute '{name}' (allowed: {allowed})", resource_id)
            if attr.computed:
                raise ParseError(f"Attribute '{name}' is computed by the provider and cannot be set",
                                 resource_id)
            _check_type(resource_id, name, attr, expr)

        for name, attr in self.attributes.items():
            if attr.required and name not in attributes:
                raise ParseError(f"Missing required attribute '{name}'", resource_id)


def _check_type(resource_id: str, name: str, attr: Attribute, expr: Any) -> None:
    if attr.type == 'any' or isinstance(expr, Reference):
        return
    if isinstance(expr, Template):
        actual = 'string'
    elif is_literal(expr):
        actual = value_type(expr)
    else:
        # Lists/maps containing references: check the container kind only
        actual = 'list' if isinstance(expr, list) else 'map'
    if actual == 'null' and not attr.required:
        return
    if actual != attr.type:
        raise ParseError(f"Attribute '{name}' must be {attr.type}, got {actual}", resource_id)


@runtime_checkable
class Provider(Protocol):
    """Protocol for resource providers.

    Class attributes:
        kind: Resource type handled (e.g. 'file')
        schema: Declared attributes
        create_before_destroy: Replacement order for this kind, or None to
            use the engine setting
    """
    kind: str
    schema: ResourceSchema
    create_before_destroy: Optional[bool]

    def create(self, attributes: dict) -> tuple[str, dict]:
        """Create the resource. Returns (external_id, attributes)."""

    def update(self, external_id: str, old: dict, new: dict) -> dict:
        """Update in place. Returns the resulting attributes."""

    def delete(self, external_id: str, attributes: dict) -> None:
        """Delete the resource. attributes are the last applied values."""
