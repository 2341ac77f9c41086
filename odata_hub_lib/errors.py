"""
Exception types raised by the OData MCP hub.
"""

from typing import Any, Dict, Optional


class ODataHubError(Exception):
    """Base class for all hub errors."""

    kind = "error"

    def __init__(self, message: str, system_id: Optional[str] = None,
                 service_url: Optional[str] = None, tool: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.system_id = system_id
        self.service_url = service_url
        self.tool = tool

    def to_dict(self) -> Dict[str, Any]:
        """Structured form reported back to the MCP client."""
        result = {"kind": self.kind, "message": self.message}
        if self.system_id:
            result["system_id"] = self.system_id
        if self.service_url:
            result["service_url"] = self.service_url
        if self.tool:
            result["tool"] = self.tool
        return result


class MetadataParseError(ODataHubError):
    kind = "metadata_parse_error"


class ConfigurationError(ODataHubError):
    kind = "configuration_error"


class ToolInvocationError(ODataHubError):
    kind = "tool_invocation_error"


class ODataRequestError(ODataHubError):
    kind = "odata_request_error"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.status_code is not None:
            result["status_code"] = self.status_code
        return result


class UnresolvedEntityTypeWarning(UserWarning):
    """An entity set references an entity type missing from the metadata."""
