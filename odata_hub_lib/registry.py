"""
Immutable per-system tool snapshots and the store that swaps them atomically.
"""

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict

from .models import GeneratedTool, ServiceMetadata


class ServiceSnapshot(BaseModel):
    """One service of a system: its parsed metadata and generated tools."""
    model_config = ConfigDict(frozen=True)

    service_url: str
    service_id: str
    metadata: ServiceMetadata
    tools: Tuple[GeneratedTool, ...] = ()


class SystemToolSet(BaseModel):
    """Everything a refresh of one system produced."""
    model_config = ConfigDict(frozen=True)

    system_id: str
    services: Tuple[ServiceSnapshot, ...] = ()
    errors: Tuple[Dict[str, Any], ...] = ()
    warnings: Tuple[str, ...] = ()
    refreshed_at: datetime

    @property
    def tools(self) -> List[GeneratedTool]:
        return [tool for service in self.services for tool in service.tools]

    def find_service(self, service_url: str) -> Optional[ServiceSnapshot]:
        return next((s for s in self.services if s.service_url == service_url), None)


class ToolSetStore:
    """Holds the current SystemToolSet per system.

    Writers build a complete new mapping and replace the reference under a lock;
    readers take the reference once and never observe a partial update.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._sets: Dict[str, SystemToolSet] = {}

    def replace(self, tool_set: SystemToolSet) -> Optional[SystemToolSet]:
        """Install a system's new tool set, returning the one it replaced."""
        with self._lock:
            previous = self._sets.get(tool_set.system_id)
            updated = dict(self._sets)
            updated[tool_set.system_id] = tool_set
            self._sets = updated
        return previous

    def remove(self, system_id: str) -> Optional[SystemToolSet]:
        with self._lock:
            updated = dict(self._sets)
            previous = updated.pop(system_id, None)
            self._sets = updated
        return previous

    def get(self, system_id: str) -> Optional[SystemToolSet]:
        return self._sets.get(system_id)

    def all(self) -> List[SystemToolSet]:
        return list(self._sets.values())

    def find_tool(self, name: str) -> Optional[GeneratedTool]:
        for tool_set in self._sets.values():
            for tool in tool_set.tools:
                if tool.name == name:
                    return tool
        return None

    def tool_names(self, exclude_system: Optional[str] = None) -> List[str]:
        return [
            tool.name
            for system_id, tool_set in self._sets.items()
            if system_id != exclude_system
            for tool in tool_set.tools
        ]
