"""Resource providers."""

from providers.base import Attribute, Provider, ResourceSchema
from providers.command import CommandProvider
from providers.file import FileProvider
from providers.http_check import HttpCheckProvider
from providers.virtual import VirtualProvider
from providers.registry import ProviderRegistry, default_registry

__all__ = [
    'Attribute',
    'Provider',
    'ResourceSchema',
    'CommandProvider',
    'FileProvider',
    'HttpCheckProvider',
    'VirtualProvider',
    'ProviderRegistry',
    'default_registry',
]
