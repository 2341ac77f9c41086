"""
Synthesizes MCP tool descriptors from parsed OData metadata.
"""

import re
import sys
import warnings
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from .constants import QUERY_FORMATS, SHORT_OPERATION_NAMES
from .errors import UnresolvedEntityTypeWarning
from .models import (
    EntitySet,
    EntityType,
    GeneratedTool,
    OperationDef,
    ServiceMetadata,
    ToolGenConfig,
    ToolGenerationResult,
    ToolOperation,
)
from .service_id import derive_service_id
from .type_mapper import map_type


def _sanitize_tool_name(name: str) -> str:
    name = re.sub(r'[^A-Za-z0-9_]', '_', name)
    return re.sub(r'_+', '_', name)


def build_tool_name(op_name: str, target_name: str, service_id: str, config: ToolGenConfig) -> str:
    """Build the tool name for an operation on a target (entity set, function or action)."""
    op = SHORT_OPERATION_NAMES.get(op_name, op_name) if config.shrink_names else op_name

    if config.tool_prefix:
        name = f"{config.tool_prefix}_{op}_{target_name}"
        if config.use_service_id:
            name += f"_{service_id}"
    elif config.tool_postfix:
        name = f"{op}_{target_name}"
        if config.use_service_id:
            name += f"_for_{service_id}"
        name += f"_{config.tool_postfix}"
    else:
        name = f"{op}_{target_name}"
        if config.use_service_id:
            name += f"_for_{service_id}"

    return _sanitize_tool_name(name[:config.max_tool_name_length])


def _make_unique(name: str, taken: Set[str], max_length: int) -> str:
    """Append a numeric suffix until the name is unused."""
    if name not in taken:
        return name
    counter = 2
    while True:
        suffix = f"_{counter}"
        candidate = _sanitize_tool_name(name[:max_length - len(suffix)] + suffix)
        if candidate not in taken:
            return candidate
        counter += 1


class ToolGenerator:
    """Builds the tool set for one OData service of one system."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Generator VERBOSE] {message}", file=sys.stderr)

    def generate(self, metadata: ServiceMetadata, system_id: str, config: ToolGenConfig,
                 service_url: Optional[str] = None,
                 taken_names: Optional[Iterable[str]] = None) -> ToolGenerationResult:
        """Generate tools for every entity set, function and action of a service.

        ``taken_names`` holds names already registered elsewhere in the hub; a
        synthesized name that clashes with one of them, or with an earlier tool of
        this pass, gets a numeric suffix.
        """
        service_id = derive_service_id(service_url or system_id)
        taken = set(taken_names or ())
        tools: List[GeneratedTool] = []
        result_warnings: List[str] = []

        def add(op: ToolOperation, op_name: str, target: str, description: str,
                schema: Dict[str, Any], **target_fields):
            base_name = build_tool_name(op_name, target, service_id, config)
            name = _make_unique(base_name, taken, config.max_tool_name_length)
            if name != base_name:
                message = f"Tool name '{base_name}' already taken, registered as '{name}'"
                result_warnings.append(message)
                self._log_verbose(message)
            taken.add(name)
            tools.append(GeneratedTool(
                name=name,
                description=description,
                operation=op,
                input_schema=schema,
                system_id=system_id,
                service_url=service_url,
                **target_fields,
            ))

        for entity_set in metadata.entity_sets:
            entity_type = metadata.find_entity_type(entity_set.entity_type)
            if entity_type is None:
                message = (f"Entity type {entity_set.entity_type} not found for entity set "
                           f"{entity_set.name}; only query tools are generated")
                warnings.warn(message, UnresolvedEntityTypeWarning, stacklevel=2)
                result_warnings.append(message)
            self._entity_set_tools(entity_set, entity_type, config, add)

        if config.is_enabled('A'):
            for operation, op_kind in self._operations(metadata):
                if operation.is_bound:
                    self._log_verbose(f"Skipping bound operation {operation.name}")
                    continue
                op_name = "func" if op_kind == ToolOperation.FUNCTION else "action"
                add(op_kind, op_name, operation.name,
                    self._operation_description(operation, op_kind),
                    self._operation_schema(operation),
                    function_name=operation.name)

        self._log_verbose(f"Generated {len(tools)} tools for system {system_id} ({service_id}).")
        return ToolGenerationResult(tools=tools, warnings=result_warnings)

    @staticmethod
    def _operations(metadata: ServiceMetadata):
        for func in metadata.functions:
            yield func, ToolOperation.FUNCTION
        for action in metadata.actions:
            yield action, ToolOperation.ACTION

    def _entity_set_tools(self, entity_set: EntitySet, entity_type: Optional[EntityType],
                          config: ToolGenConfig, add):
        name = entity_set.name

        if config.is_enabled('F'):
            add(ToolOperation.FILTER, 'filter', name,
                self._describe(f"Filter and list {name} entities with optional query parameters",
                               entity_set, entity_type),
                self._query_schema(entity_type, config), entity_set=name)

        if config.is_enabled('S') and entity_set.searchable:
            properties = {"search": {"type": "string", "description": "Search term for full-text search"}}
            properties.update(self._query_schema(entity_type, config)["properties"])
            add(ToolOperation.SEARCH, 'search', name,
                f"Search {name} entities using full-text search",
                {"type": "object", "properties": properties, "required": ["search"]},
                entity_set=name)

        keys = entity_type.get_key_properties() if entity_type is not None else []

        if config.is_enabled('G') and keys:
            properties = self._key_schema(keys)
            prefix = self._option_prefix(config)
            query_properties = self._query_schema(entity_type, config)["properties"]
            properties[f"{prefix}select"] = query_properties[f"{prefix}select"]
            properties[f"{prefix}expand"] = query_properties[f"{prefix}expand"]
            add(ToolOperation.GET, 'get', name,
                self._describe(f"Get a single {name} entity by key", entity_set, entity_type),
                {"type": "object", "properties": properties, "required": [k.name for k in keys]},
                entity_set=name)

        if config.is_enabled('F') and entity_set.countable:
            prefix = self._option_prefix(config)
            add(ToolOperation.COUNT, 'count', name,
                f"Get the count of {name} entities with optional filters",
                {
                    "type": "object",
                    "properties": {
                        f"{prefix}filter": {"type": "string", "description": "OData filter expression"},
                        f"{prefix}search": {"type": "string", "description": "Search term"},
                    },
                    "required": [],
                },
                entity_set=name)

        if entity_type is None:
            return

        if config.is_enabled('C') and entity_set.creatable:
            properties = {}
            required = []
            for prop in entity_type.properties:
                if prop.is_key and not config.create_includes_keys:
                    continue
                properties[prop.name] = map_type(prop.type, prop)
                if not prop.nullable:
                    required.append(prop.name)
            add(ToolOperation.CREATE, 'create', name, f"Create a new {name} entity",
                {"type": "object", "properties": properties, "required": required},
                entity_set=name)

        if config.is_enabled('U') and entity_set.updatable and keys:
            properties = self._key_schema(keys)
            for prop in entity_type.get_non_key_properties():
                properties[prop.name] = map_type(prop.type, prop)
            add(ToolOperation.UPDATE, 'update', name, f"Update an existing {name} entity",
                {"type": "object", "properties": properties, "required": [k.name for k in keys]},
                entity_set=name)

        if config.is_enabled('D') and entity_set.deletable and keys:
            add(ToolOperation.DELETE, 'delete', name, f"Delete a {name} entity",
                {"type": "object", "properties": self._key_schema(keys),
                 "required": [k.name for k in keys]},
                entity_set=name)

    @staticmethod
    def _option_prefix(config: ToolGenConfig) -> str:
        return "" if config.claude_code_friendly else "$"

    @staticmethod
    def _describe(base: str, entity_set: EntitySet, entity_type: Optional[EntityType]) -> str:
        description = entity_set.description or (entity_type.description if entity_type else None)
        return f"{base}. {description}" if description else base

    @staticmethod
    def _key_schema(keys) -> Dict[str, Any]:
        return {key.name: map_type(key.type, key) for key in keys}

    def _query_schema(self, entity_type: Optional[EntityType], config: ToolGenConfig) -> Dict[str, Any]:
        prefix = self._option_prefix(config)
        select_items: Dict[str, Any] = {"type": "string"}
        if entity_type is not None and entity_type.properties:
            select_items["enum"] = [prop.name for prop in entity_type.properties]
        return {
            "type": "object",
            "properties": {
                f"{prefix}filter": {
                    "type": "string",
                    "description": "OData filter expression to restrict results",
                },
                f"{prefix}select": {
                    "type": "array",
                    "items": select_items,
                    "description": "Select specific properties to return",
                },
                f"{prefix}expand": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Related entities to expand",
                },
                f"{prefix}orderby": {
                    "type": "string",
                    "description": 'Sort expression (e.g., "Name asc, ID desc")',
                },
                f"{prefix}top": {
                    "type": "integer",
                    "minimum": 1,
                    "description": "Maximum number of results to return",
                },
                f"{prefix}skip": {
                    "type": "integer",
                    "minimum": 0,
                    "description": "Number of results to skip",
                },
                f"{prefix}count": {
                    "type": "boolean",
                    "description": "Include total count in response",
                },
                f"{prefix}format": {
                    "type": "string",
                    "enum": list(QUERY_FORMATS),
                    "description": "Response format",
                },
            },
            "required": [],
        }

    @staticmethod
    def _operation_description(operation: OperationDef, op_kind: ToolOperation) -> str:
        kind = "function" if op_kind == ToolOperation.FUNCTION else "action"
        description = f"Call the {operation.name} {kind}"
        if operation.return_type:
            description += f" (returns {operation.return_type})"
        if operation.description:
            description += f". {operation.description}"
        return description

    @staticmethod
    def _operation_schema(operation: OperationDef) -> Dict[str, Any]:
        properties = {}
        required = []
        for param in operation.get_input_parameters():
            properties[param.name] = map_type(param.type, param)
            if not param.nullable:
                required.append(param.name)
        return {"type": "object", "properties": properties, "required": required}


def generate_tools(metadata: ServiceMetadata, system_id: str, config: ToolGenConfig,
                   service_url: Optional[str] = None) -> List[GeneratedTool]:
    """Generate the tool descriptors for one service, discarding warnings."""
    return ToolGenerator().generate(metadata, system_id, config, service_url=service_url).tools
