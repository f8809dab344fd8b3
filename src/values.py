"""Attribute value model and expressions.

Attribute values are JSON-native and tagged by kind: null, bool, number,
string, list, map. Comparison is tag-aware (True is not 1, 1 equals 1.0).

Configuration strings may embed references to other resources:

    ${<type>.<name>.<attribute>}

A string consisting of exactly one reference keeps the referenced value's
native type. Any other string containing references is a Template whose
parts are interpolated as text. '$${' produces a literal '${'.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Union

NAME_PATTERN = r'[A-Za-z_][A-Za-z0-9_-]*'

_TOKEN_RE = re.compile(r'\$\$\{|\$\{([^}]*)\}')
_REFERENCE_BODY_RE = re.compile(rf'^({NAME_PATTERN})\.({NAME_PATTERN})\.({NAME_PATTERN})$')

VALUE_TYPES = ('null', 'bool', 'number', 'string', 'list', 'map')


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '(known after apply)'

    def __bool__(self) -> bool:
        return False


UNKNOWN = _Unknown()


@dataclass(frozen=True)
class Reference:
    """Reference to one attribute of another resource node."""
    target: str
    attribute: str

    def __str__(self) -> str:
        return f'${{{self.target}.{self.attribute}}}'


@dataclass(frozen=True)
class Template:
    """String interpolation of literal text and references."""
    parts: tuple

    def __str__(self) -> str:
        return ''.join(p.replace('${', '$${') if isinstance(p, str) else str(p)
                       for p in self.parts)


Expression = Union[None, bool, int, float, str, list, dict, Reference, Template]


def value_type(value: Any) -> str:
    """Return the tag of a plain value.

    Raises:
        TypeError: If value is not JSON-native
    """
    if value is None:
        return 'null'
    if isinstance(value, bool):
        return 'bool'
    if isinstance(value, (int, float)):
        return 'number'
    if isinstance(value, str):
        return 'string'
    if isinstance(value, (list, tuple)):
        return 'list'
    if isinstance(value, dict):
        return 'map'
    raise TypeError(f"Unsupported attribute value type: {type(value).__name__}")


def values_equal(a: Any, b: Any) -> bool:
    """Tag-aware equality. UNKNOWN never equals anything."""
    if a is UNKNOWN or b is UNKNOWN:
        return False
    kind = value_type(a)
    if kind != value_type(b):
        return False
    if kind == 'list':
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if kind == 'map':
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)
    return a == b


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    return False


def parse_reference(body: str) -> Reference:
    """Parse 'type.name.attribute' into a Reference.

    Raises:
        ValueError: If body is not a well-formed reference
    """
    match = _REFERENCE_BODY_RE.match(body.strip())
    if not match:
        raise ValueError(f"Malformed reference '${{{body}}}': expected ${{type.name.attribute}}")
    kind, name, attribute = match.groups()
    return Reference(target=f'{kind}.{name}', attribute=attribute)


def _parse_string(text: str) -> Expression:
    parts: list = []
    literal = ''
    pos = 0
    for match in _TOKEN_RE.finditer(text):
        literal += text[pos:match.start()]
        pos = match.end()
        if match.group(0) == '$${':
            literal += '${'
            continue
        if literal:
            parts.append(literal)
            literal = ''
        parts.append(parse_reference(match.group(1)))
    literal += text[pos:]
    if literal:
        parts.append(literal)

    if not any(isinstance(p, Reference) for p in parts):
        return literal
    if len(parts) == 1:
        return parts[0]
    return Template(parts=tuple(parts))


def parse_expression(raw: Any) -> Expression:
    """Convert a raw configuration value into an expression tree.

    Raises:
        ValueError: On malformed references
        TypeError: On values that are not JSON-native
    """
    if isinstance(raw, str):
        return _parse_string(raw)
    if isinstance(raw, (list, tuple)):
        return [parse_expression(v) for v in raw]
    if isinstance(raw, dict):
        out = {}
        for key, v in raw.items():
            if not isinstance(key, str):
                raise TypeError(f"Map keys must be strings, got {key!r}")
            out[key] = parse_expression(v)
        return out
    value_type(raw)
    return raw


def references(expr: Expression) -> Iterator[Reference]:
    """Yield every Reference contained in an expression."""
    if isinstance(expr, Reference):
        yield expr
    elif isinstance(expr, Template):
        for part in expr.parts:
            if isinstance(part, Reference):
                yield part
    elif isinstance(expr, list):
        for item in expr:
            yield from references(item)
    elif isinstance(expr, dict):
        for item in expr.values():
            yield from references(item)


def interpolate(value: Any) -> str:
    """Render a resolved value as template text."""
    kind = value_type(value)
    if kind == 'string':
        return value
    if kind == 'null':
        return ''
    if kind in ('bool', 'list', 'map'):
        return json.dumps(value, sort_keys=True)
    return str(value)


def resolve(expr: Expression, lookup: Callable[[Reference], Any]) -> Any:
    """Evaluate an expression into a plain value.

    Args:
        expr: Expression tree from parse_expression()
        lookup: Returns the value for a Reference (possibly UNKNOWN).
            May raise KeyError for references that cannot be satisfied.

    Returns:
        Plain value; UNKNOWN where any input was unknown
    """
    if isinstance(expr, Reference):
        return lookup(expr)
    if isinstance(expr, Template):
        rendered = []
        for part in expr.parts:
            if isinstance(part, Reference):
                value = lookup(part)
                if contains_unknown(value):
                    return UNKNOWN
                rendered.append(interpolate(value))
            else:
                rendered.append(part)
        return ''.join(rendered)
    if isinstance(expr, list):
        return [resolve(item, lookup) for item in expr]
    if isinstance(expr, dict):
        return {k: resolve(v, lookup) for k, v in expr.items()}
    return expr


def is_literal(expr: Expression) -> bool:
    """True if expr contains no references."""
    return next(references(expr), None) is None


def render(expr: Expression) -> Any:
    """Convert an expression back to its configuration form (for display/JSON)."""
    if isinstance(expr, (Reference, Template)):
        return str(expr)
    if expr is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(expr, list):
        return [render(item) for item in expr]
    if isinstance(expr, dict):
        return {k: render(v) for k, v in expr.items()}
    return expr
