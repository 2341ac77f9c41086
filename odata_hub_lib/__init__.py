"""
OData MCP Hub Library - turns OData v2/v3/v4 service metadata into MCP tools.
"""

from .models import (
    EntityProperty,
    EntityType,
    EntitySet,
    FunctionImport,
    ActionImport,
    ServiceMetadata,
    GeneratedTool,
    ToolGenConfig,
    ToolOperation
)
from .metadata_parser import MetadataParser
from .type_mapper import map_type
from .service_id import derive_service_id
from .tool_generator import ToolGenerator, generate_tools
from .client import ODataClient
from .hub import ODataHub
from .server import ODataMCPServer

__all__ = [
    'EntityProperty',
    'EntityType',
    'EntitySet',
    'FunctionImport',
    'ActionImport',
    'ServiceMetadata',
    'GeneratedTool',
    'ToolGenConfig',
    'ToolOperation',
    'MetadataParser',
    'map_type',
    'derive_service_id',
    'ToolGenerator',
    'generate_tools',
    'ODataClient',
    'ODataHub',
    'ODataMCPServer'
]
