"""
Orchestrates systems, metadata refreshes and tool invocation for the OData MCP hub.
"""

import asyncio
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .auth import OAuth2TokenProvider
from .client import ODataClient
from .config import SystemConfig
from .errors import ODataHubError, ODataRequestError, ToolInvocationError
from .metadata_parser import MetadataParser
from .models import EntityType, GeneratedTool, ServiceMetadata, ToolGenConfig, ToolOperation
from .query_builder import (
    ODataRequest,
    QueryOptions,
    build_entity_request,
    build_operation_request,
    build_query_params,
    build_request,
    normalize_response,
    update_methods,
)
from .registry import ServiceSnapshot, SystemToolSet, ToolSetStore
from .service_id import derive_service_id
from .tool_generator import ToolGenerator

RefreshListener = Callable[[Optional[SystemToolSet], SystemToolSet], None]


class ODataHub:
    """Connects configured OData systems and exposes their services as tools."""

    def __init__(self, systems: List[SystemConfig], tool_config: Optional[ToolGenConfig] = None,
                 verbose: bool = False, searchable_default: bool = True,
                 client_factory: Optional[Callable[[SystemConfig], ODataClient]] = None):
        self.systems: Dict[str, SystemConfig] = {system.id: system for system in systems}
        self.tool_config = tool_config or ToolGenConfig()
        self.verbose = verbose
        self.parser = MetadataParser(verbose=verbose, searchable_default=searchable_default)
        self.generator = ToolGenerator(verbose=verbose)
        self.store = ToolSetStore()
        self._token_provider = OAuth2TokenProvider(verbose=verbose)
        self._client_factory = client_factory or (
            lambda system: ODataClient(system, token_provider=self._token_provider, verbose=verbose))
        self._clients: Dict[str, ODataClient] = {}
        self._listeners: List[RefreshListener] = []
        self._handlers = {
            ToolOperation.FILTER: self._handle_filter,
            ToolOperation.SEARCH: self._handle_filter,
            ToolOperation.COUNT: self._handle_count,
            ToolOperation.GET: self._handle_get,
            ToolOperation.CREATE: self._handle_create,
            ToolOperation.UPDATE: self._handle_update,
            ToolOperation.DELETE: self._handle_delete,
            ToolOperation.FUNCTION: self._handle_operation,
            ToolOperation.ACTION: self._handle_operation,
        }

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Hub VERBOSE] {message}", file=sys.stderr)

    def add_listener(self, listener: RefreshListener):
        """Register a callback run after every system refresh with (previous, current)."""
        self._listeners.append(listener)

    def get_client(self, system_id: str) -> ODataClient:
        if system_id not in self.systems:
            raise ToolInvocationError(f"Unknown system: {system_id}", system_id=system_id)
        if system_id not in self._clients:
            self._clients[system_id] = self._client_factory(self.systems[system_id])
        return self._clients[system_id]

    # --- Refresh ---

    def refresh_system(self, system_id: str) -> SystemToolSet:
        """Fetch, parse and generate tools for every service of a system.

        Failures are collected per service as structured errors; the new tool
        set replaces the previous one in a single swap.
        """
        client = self.get_client(system_id)
        errors: List[Dict[str, Any]] = []
        warnings: List[str] = []
        snapshots: List[ServiceSnapshot] = []

        try:
            services = client.discover_services()
        except ODataHubError as e:
            e.system_id = e.system_id or system_id
            errors.append(e.to_dict())
            services = []

        taken = set(self.store.tool_names(exclude_system=system_id))
        for service in services:
            service_url = service["url"]
            try:
                snapshot, service_warnings = self._load_service(system_id, service_url, client, taken)
            except ODataHubError as e:
                e.system_id = e.system_id or system_id
                e.service_url = e.service_url or service_url
                print(f"ERROR: Failed to load {service_url} for system {system_id}: {e.message}",
                      file=sys.stderr)
                errors.append(e.to_dict())
                continue
            snapshots.append(snapshot)
            warnings.extend(service_warnings)
            taken.update(tool.name for tool in snapshot.tools)

        tool_set = SystemToolSet(
            system_id=system_id,
            services=tuple(snapshots),
            errors=tuple(errors),
            warnings=tuple(warnings),
            refreshed_at=datetime.now(timezone.utc),
        )
        previous = self.store.replace(tool_set)
        self._log_verbose(f"System {system_id}: {len(tool_set.tools)} tools from "
                          f"{len(snapshots)} service(s), {len(errors)} error(s).")
        for listener in self._listeners:
            listener(previous, tool_set)
        return tool_set

    def _load_service(self, system_id: str, service_url: str, client: ODataClient, taken):
        raw = client.fetch_metadata(service_url)
        metadata = self.parser.parse(raw)
        result = self.generator.generate(metadata, system_id, self.tool_config,
                                         service_url=service_url, taken_names=taken)
        snapshot = ServiceSnapshot(
            service_url=service_url,
            service_id=derive_service_id(service_url),
            metadata=metadata,
            tools=tuple(result.tools),
        )
        return snapshot, result.warnings

    def refresh_all(self) -> List[SystemToolSet]:
        """Refresh every system; one failing system never blocks the others."""
        results = []
        for system_id in self.systems:
            try:
                results.append(self.refresh_system(system_id))
            except Exception as e:
                print(f"ERROR: Refresh of system {system_id} failed: {e}", file=sys.stderr)
                if self.verbose:
                    traceback.print_exc(file=sys.stderr)
                tool_set = SystemToolSet(
                    system_id=system_id,
                    errors=({"kind": "refresh_error", "message": str(e), "system_id": system_id},),
                    refreshed_at=datetime.now(timezone.utc),
                )
                previous = self.store.replace(tool_set)
                for listener in self._listeners:
                    listener(previous, tool_set)
                results.append(tool_set)
        return results

    def disconnect_system(self, system_id: str) -> Optional[SystemToolSet]:
        """Drop a system's tools and close its client; a later refresh reconnects it."""
        if system_id not in self.systems:
            raise ToolInvocationError(f"Unknown system: {system_id}", system_id=system_id)
        previous = self.store.remove(system_id)
        client = self._clients.pop(system_id, None)
        if client is not None:
            client.close()
        if previous is not None:
            empty = SystemToolSet(system_id=system_id, refreshed_at=datetime.now(timezone.utc))
            for listener in self._listeners:
                listener(previous, empty)
        self._log_verbose(f"System {system_id} disconnected.")
        return previous

    def test_connection(self, system_id: str) -> Dict[str, Any]:
        client = self.get_client(system_id)
        return {
            "system_id": system_id,
            "base_url": self.systems[system_id].base_url,
            "connected": client.test_connection(),
        }

    # --- Introspection ---

    @property
    def tools(self) -> List[GeneratedTool]:
        return [tool for tool_set in self.store.all() for tool in tool_set.tools]

    def list_systems(self) -> List[Dict[str, Any]]:
        systems = []
        for system_id, system in self.systems.items():
            info = system.summary()
            tool_set = self.store.get(system_id)
            if tool_set is None:
                info["status"] = "not_loaded"
            else:
                info["status"] = "error" if tool_set.errors and not tool_set.services else "loaded"
                info["services"] = [s.service_url for s in tool_set.services]
                info["tool_count"] = len(tool_set.tools)
                info["refreshed_at"] = tool_set.refreshed_at.isoformat()
                if tool_set.errors:
                    info["errors"] = list(tool_set.errors)
            systems.append(info)
        return systems

    def service_info(self, system_id: str, service_url: Optional[str] = None) -> Dict[str, Any]:
        """Describe the services of a system: entity sets, operations and tools."""
        tool_set = self.store.get(system_id)
        if tool_set is None:
            raise ToolInvocationError(f"System {system_id} has not been loaded", system_id=system_id)

        services = []
        for snapshot in tool_set.services:
            if service_url and snapshot.service_url != service_url.rstrip('/'):
                continue
            services.append(self._describe_service(snapshot))
        if service_url and not services:
            raise ToolInvocationError(f"Unknown service: {service_url}", system_id=system_id,
                                      service_url=service_url)
        return {
            "system": self.systems[system_id].summary(),
            "services": services,
            "errors": list(tool_set.errors),
            "warnings": list(tool_set.warnings),
        }

    @staticmethod
    def _describe_service(snapshot: ServiceSnapshot) -> Dict[str, Any]:
        metadata = snapshot.metadata
        entity_sets = {}
        for entity_set in metadata.entity_sets:
            entity_type = metadata.find_entity_type(entity_set.entity_type)
            entity_sets[entity_set.name] = {
                "entity_type": entity_set.entity_type,
                "description": entity_set.description,
                "key_properties": entity_type.key_properties if entity_type else [],
                "properties": [
                    {"name": p.name, "type": p.type, "nullable": p.nullable}
                    for p in (entity_type.properties if entity_type else [])
                ],
                "navigation_properties": [
                    n.name for n in (entity_type.navigation_properties if entity_type else [])
                ],
                "operations": {
                    "creatable": entity_set.creatable,
                    "updatable": entity_set.updatable,
                    "deletable": entity_set.deletable,
                    "searchable": entity_set.searchable,
                    "countable": entity_set.countable,
                },
            }
        return {
            "service_url": snapshot.service_url,
            "service_id": snapshot.service_id,
            "odata_version": metadata.odata_version,
            "description": metadata.service_description,
            "entity_sets": entity_sets,
            "functions": [f.name for f in metadata.functions],
            "actions": [a.name for a in metadata.actions],
            "tools": [t.name for t in snapshot.tools],
        }

    # --- Invocation ---

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Run a generated tool and return its normalized result."""
        tool = self.store.find_tool(name)
        if tool is None:
            raise ToolInvocationError(f"Unknown tool: {name}", tool=name)
        tool_set = self.store.get(tool.system_id)
        snapshot = tool_set.find_service(tool.service_url) if tool_set else None
        if snapshot is None:
            raise ToolInvocationError(f"Service for tool {name} is no longer loaded", tool=name,
                                      system_id=tool.system_id)

        handler = self._handlers[tool.operation]
        client = self.get_client(tool.system_id)
        try:
            return await asyncio.to_thread(handler, tool, snapshot.metadata, client, dict(arguments or {}))
        except ODataHubError as e:
            e.tool = e.tool or name
            e.system_id = e.system_id or tool.system_id
            e.service_url = e.service_url or tool.service_url
            raise

    @staticmethod
    def _entity_type(tool: GeneratedTool, metadata: ServiceMetadata) -> EntityType:
        entity_set = metadata.find_entity_set(tool.entity_set)
        entity_type = metadata.find_entity_type(entity_set.entity_type) if entity_set else None
        if entity_type is None:
            raise ToolInvocationError(f"Entity type for {tool.entity_set} is not known")
        return entity_type

    def _handle_filter(self, tool, metadata, client, arguments):
        options = QueryOptions.from_arguments(arguments)
        if tool.operation == ToolOperation.SEARCH and not options.search:
            raise ToolInvocationError("Missing required argument: search")
        request = build_request(tool.entity_set, options, metadata.odata_version)
        return normalize_response(client.execute(tool.service_url, request)).to_dict()

    def _handle_count(self, tool, metadata, client, arguments):
        options = QueryOptions.from_arguments(
            {k: v for k, v in arguments.items() if k.lstrip("$") in ("filter", "search")})
        request = ODataRequest(path=f"{tool.entity_set}/$count",
                               query_params=build_query_params(options, metadata.odata_version))
        raw = client.execute(tool.service_url, request)
        if isinstance(raw, str):
            try:
                return {"count": int(raw.strip())}
            except ValueError:
                raise ODataRequestError(f"Unexpected $count response: {raw[:100]}")
        if isinstance(raw, int):
            return {"count": raw}
        return normalize_response(raw).to_dict()

    def _handle_get(self, tool, metadata, client, arguments):
        request = build_entity_request(tool.entity_set, self._entity_type(tool, metadata), arguments,
                                       "GET", metadata.odata_version)
        return normalize_response(client.execute(tool.service_url, request)).to_dict()

    def _handle_create(self, tool, metadata, client, arguments):
        body = {k: v for k, v in arguments.items() if v is not None}
        request = ODataRequest(method="POST", path=tool.entity_set, body=body, modifying=True)
        return normalize_response(client.execute(tool.service_url, request)).to_dict()

    def _handle_update(self, tool, metadata, client, arguments):
        entity_type = self._entity_type(tool, metadata)
        methods = update_methods(metadata.odata_version)
        for method in methods:
            request = build_entity_request(tool.entity_set, entity_type, arguments, method,
                                           metadata.odata_version)
            try:
                return normalize_response(client.execute(tool.service_url, request)).to_dict()
            except ODataRequestError as e:
                if e.status_code != 405 or method == methods[-1]:
                    raise
                self._log_verbose(f"{method} not allowed for update, trying next method...")

    def _handle_delete(self, tool, metadata, client, arguments):
        request = build_entity_request(tool.entity_set, self._entity_type(tool, metadata), arguments,
                                       "DELETE", metadata.odata_version)
        return normalize_response(client.execute(tool.service_url, request)).to_dict()

    def _handle_operation(self, tool, metadata, client, arguments):
        operation = metadata.find_operation(tool.function_name)
        if operation is None:
            raise ToolInvocationError(f"Unknown operation: {tool.function_name}")
        request = build_operation_request(operation, arguments,
                                          tool.operation == ToolOperation.ACTION,
                                          metadata.odata_version)
        return normalize_response(client.execute(tool.service_url, request)).to_dict()
