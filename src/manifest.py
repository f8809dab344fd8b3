"""Configuration loading and validation.

A configuration declares resources, their attributes (literals or
references to other resources' attributes) and named outputs:

    schema_version: 1
    name: web
    settings:
      workers: 2
    resources:
      - type: virtual
        name: network
        attributes:
          cidr: 10.0.0.0/16
      - type: command
        name: instance
        attributes:
          create: echo provisioning in ${virtual.network.id}
        depends_on: [virtual.network]
    outputs:
      network_id: ${virtual.network.id}

YAML is the primary format; JSON parses as a subset of YAML.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from reconciler.errors import ParseError
from values import NAME_PATTERN, Expression, parse_expression

logger = logging.getLogger(__name__)

# Supported configuration schema versions
SUPPORTED_SCHEMA_VERSIONS = {1}

_NAME_RE = re.compile(rf'^{NAME_PATTERN}$')
_RESOURCE_KEYS = {'type', 'name', 'attributes', 'depends_on'}


@dataclass
class ResourceSpec:
    """A resource as declared in configuration.

    Attributes:
        type: Resource kind (selects the provider)
        name: Name unique within the type
        attributes: Attribute name -> expression
        depends_on: Extra dependencies ('type.name') not implied by references
    """
    type: str
    name: str
    attributes: dict[str, Expression] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f'{self.type}.{self.name}'

    @classmethod
    def from_dict(cls, data: Any, index: int) -> 'ResourceSpec':
        """Create ResourceSpec from dictionary.

        Raises:
            ParseError: On missing fields, bad names or malformed expressions
        """
        if not isinstance(data, dict):
            raise ParseError(f"Resource {index} must be a mapping")
        for key in ('type', 'name'):
            if key not in data:
                raise ParseError(f"Resource {index} missing required field: {key}")
            if not isinstance(data[key], str) or not _NAME_RE.match(data[key]):
                raise ParseError(f"Resource {index} has invalid {key} {data[key]!r}")

        resource_id = f"{data['type']}.{data['name']}"
        unknown = set(data) - _RESOURCE_KEYS
        if unknown:
            raise ParseError(f"Unknown resource field(s): {', '.join(sorted(unknown))}", resource_id)

        raw_attrs = data.get('attributes') or {}
        if not isinstance(raw_attrs, dict):
            raise ParseError("'attributes' must be a mapping", resource_id)

        attributes = {}
        for name, raw in raw_attrs.items():
            if not isinstance(name, str) or not _NAME_RE.match(name):
                raise ParseError(f"Invalid attribute name {name!r}", resource_id)
            try:
                attributes[name] = parse_expression(raw)
            except (ValueError, TypeError) as e:
                raise ParseError(f"Attribute '{name}': {e}", resource_id)

        depends_on = data.get('depends_on') or []
        if not isinstance(depends_on, list) or not all(isinstance(d, str) for d in depends_on):
            raise ParseError("'depends_on' must be a list of 'type.name' strings", resource_id)

        return cls(
            type=data['type'],
            name=data['name'],
            attributes=attributes,
            depends_on=list(depends_on),
        )


@dataclass
class Configuration:
    """Parsed configuration.

    Attributes:
        schema_version: Configuration schema version
        name: Configuration name (keys the default state location)
        resources: Declared resources in file order
        outputs: Output name -> expression
        settings: Raw 'settings:' block, merged by config.load_settings()
        source_path: Path loaded from (for error messages)
    """
    schema_version: int
    name: str
    resources: list[ResourceSpec] = field(default_factory=list)
    outputs: dict[str, Expression] = field(default_factory=dict)
    settings: dict = field(default_factory=dict)
    source_path: Optional[Path] = None

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'Configuration':
        """Create Configuration from dictionary.

        Raises:
            ParseError: If the configuration is invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ParseError(
                f"Unsupported configuration schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        name = data.get('name')
        if name is None and source_path is not None:
            name = source_path.stem
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise ParseError(f"Configuration requires a valid 'name', got {name!r}")

        raw_resources = data.get('resources') or []
        if not isinstance(raw_resources, list):
            raise ParseError("'resources' must be a list")

        resources = []
        seen: set[str] = set()
        for i, raw in enumerate(raw_resources):
            spec = ResourceSpec.from_dict(raw, i)
            if spec.id in seen:
                raise ParseError("Duplicate resource identifier", spec.id)
            seen.add(spec.id)
            resources.append(spec)

        raw_outputs = data.get('outputs') or {}
        if not isinstance(raw_outputs, dict):
            raise ParseError("'outputs' must be a mapping")
        outputs = {}
        for out_name, raw in raw_outputs.items():
            if not isinstance(out_name, str) or not _NAME_RE.match(out_name):
                raise ParseError(f"Invalid output name {out_name!r}")
            try:
                outputs[out_name] = parse_expression(raw)
            except (ValueError, TypeError) as e:
                raise ParseError(f"Output '{out_name}': {e}")

        settings = data.get('settings') or {}
        if not isinstance(settings, dict):
            raise ParseError("'settings' must be a mapping")

        return cls(
            schema_version=schema_version,
            name=name,
            resources=resources,
            outputs=outputs,
            settings=settings,
            source_path=source_path,
        )


def parse_configuration(text: str, source_path: Optional[Path] = None) -> Configuration:
    """Parse configuration text (YAML or JSON).

    Raises:
        ParseError: On syntax errors or invalid structure
    """
    where = f" in {source_path}" if source_path else ''
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ParseError(f"Invalid configuration syntax{where}: {e}")

    if not isinstance(data, dict):
        raise ParseError(f"Configuration{where} must be a mapping at the top level")

    return Configuration.from_dict(data, source_path=source_path)


def load_configuration(path: Path) -> Configuration:
    """Load configuration from a file.

    Raises:
        ParseError: If file not found or invalid
    """
    path = Path(path)
    if not path.exists():
        raise ParseError(f"Configuration file not found: {path}")
    text = path.read_text(encoding='utf-8')
    logger.debug(f"Loaded configuration from {path}")
    return parse_configuration(text, source_path=path)
