"""
Translates tool arguments into OData requests and normalizes OData response envelopes.
"""

from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlencode
from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import QUERY_FORMATS, QUERY_OPTION_ORDER
from .errors import ToolInvocationError
from .models import EntityType, OperationDef


def encode_query_params(params):
    """Encode query parameters properly for OData compatibility.

    OData servers (especially SAP CAP backends) don't accept '+' for spaces
    in URL parameters. They require '%20' according to RFC 3986.
    """
    encoded = urlencode(params, doseq=True, safe='$')
    return encoded.replace('+', '%20')


def is_legacy_version(odata_version: Optional[str]) -> bool:
    return bool(odata_version) and odata_version[0] in ("1", "2", "3")


class ODataRequest(BaseModel):
    """A request relative to the service root, ready for the HTTP client."""
    method: str = "GET"
    path: str
    query_params: List[Tuple[str, str]] = []
    body: Optional[Dict[str, Any]] = None
    # Whether the backend may demand a CSRF token for this call
    modifying: bool = False

    @property
    def query_string(self) -> str:
        return encode_query_params(self.query_params)

    def url(self, service_url: str) -> str:
        url = f"{service_url.rstrip('/')}/{self.path.lstrip('/')}"
        if self.query_params:
            url = f"{url}?{self.query_string}"
        return url


class QueryOptions(BaseModel):
    select: Optional[List[str]] = None
    filter: Optional[str] = None
    orderby: Optional[str] = None
    top: Optional[int] = Field(default=None, ge=1)
    skip: Optional[int] = Field(default=None, ge=0)
    expand: Optional[List[str]] = None
    count: Optional[bool] = None
    search: Optional[str] = None
    format: Optional[str] = None

    @field_validator("select", "expand", mode="before")
    @classmethod
    def _split_lists(cls, value):
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("format")
    @classmethod
    def _check_format(cls, value):
        if value is not None and value not in QUERY_FORMATS:
            raise ValueError(f"format must be one of {', '.join(QUERY_FORMATS)}")
        return value

    @classmethod
    def from_arguments(cls, arguments: Dict[str, Any]) -> "QueryOptions":
        """Pick the query options out of tool arguments, with or without '$'."""
        options = {}
        for key, value in arguments.items():
            name = key[1:] if key.startswith("$") else key
            if name in QUERY_OPTION_ORDER and value is not None:
                options[name] = value
        try:
            return cls(**options)
        except ValidationError as e:
            raise ToolInvocationError(f"Invalid query options: {e}") from e


def _option_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(str(item) for item in value)
    return str(value)


def build_query_params(options: QueryOptions, odata_version: Optional[str] = None) -> List[Tuple[str, str]]:
    params = []
    for name in QUERY_OPTION_ORDER:
        value = getattr(options, name)
        if value is None:
            continue
        if name == "count" and is_legacy_version(odata_version):
            if value:
                params.append(("$inlinecount", "allpages"))
            continue
        params.append((f"${name}", _option_value(value)))
    return params


def build_request(entity_set_name: str, options, odata_version: Optional[str] = None) -> ODataRequest:
    """Build the collection query for an entity set.

    Options are appended in a fixed order (select, filter, orderby, top, skip,
    expand, count, search, format) and only when present.
    """
    if not isinstance(options, QueryOptions):
        options = QueryOptions.from_arguments(options or {})
    return ODataRequest(path=entity_set_name,
                        query_params=build_query_params(options, odata_version))


def format_literal(value: Any, edm_type: str = "Edm.String", odata_version: Optional[str] = None,
                   url_encode: bool = False) -> str:
    """Format a Python value as an OData URL literal of the given Edm type."""
    if value is None:
        return "null"
    if isinstance(value, bool) or edm_type == "Edm.Boolean":
        if isinstance(value, str):
            value = value.lower() == "true"
        return "true" if value else "false"

    legacy = is_legacy_version(odata_version)
    try:
        if edm_type in ("Edm.Int16", "Edm.Int32", "Edm.Byte", "Edm.SByte"):
            return str(int(value))
        if edm_type == "Edm.Int64":
            return f"{int(value)}L" if legacy else str(int(value))
        if edm_type in ("Edm.Decimal", "Edm.Double", "Edm.Single"):
            float(value)
    except (TypeError, ValueError) as e:
        raise ToolInvocationError(f"Invalid {edm_type} value: {value!r}") from e
    if edm_type == "Edm.Decimal":
        return f"{value}M" if legacy else str(value)
    if edm_type in ("Edm.Double", "Edm.Single"):
        return str(value)

    text = str(value)
    is_string = edm_type not in ("Edm.Guid", "Edm.DateTime", "Edm.DateTimeOffset", "Edm.Time")
    if is_string:
        text = text.replace("'", "''")
    if url_encode:
        text = quote(text, safe='')
    if edm_type == "Edm.Guid":
        return f"guid'{text}'" if legacy else text
    if edm_type in ("Edm.DateTime", "Edm.DateTimeOffset", "Edm.Time"):
        if not legacy:
            return text
        prefix = {"Edm.DateTime": "datetime", "Edm.DateTimeOffset": "datetimeoffset",
                  "Edm.Time": "time"}[edm_type]
        return f"{prefix}'{text}'"
    return f"'{text}'"


def format_key_predicate(entity_type: EntityType, key_values: Dict[str, Any],
                         odata_version: Optional[str] = None) -> str:
    """Build the key predicate string for OData URLs."""
    key_props = entity_type.get_key_properties()
    if not key_props:
        raise ToolInvocationError(f"Entity type {entity_type.name} has no defined key properties.")

    missing_keys = [prop.name for prop in key_props if key_values.get(prop.name) is None]
    if missing_keys:
        raise ToolInvocationError(f"Missing value(s) for key properties: {', '.join(missing_keys)}")

    if len(key_props) == 1:
        prop = key_props[0]
        return f"({format_literal(key_values[prop.name], prop.type, odata_version, url_encode=True)})"
    parts = [
        f"{prop.name}={format_literal(key_values[prop.name], prop.type, odata_version, url_encode=True)}"
        for prop in key_props
    ]
    return f"({','.join(parts)})"


def build_entity_request(entity_set_name: str, entity_type: EntityType, arguments: Dict[str, Any],
                         method: str = "GET", odata_version: Optional[str] = None) -> ODataRequest:
    """Request addressing one entity by key: get, update and delete."""
    key_names = set(entity_type.key_properties)
    key_values = {k: v for k, v in arguments.items() if k in key_names}
    path = f"{entity_set_name}{format_key_predicate(entity_type, key_values, odata_version)}"

    if method == "GET":
        options = QueryOptions.from_arguments(
            {k: v for k, v in arguments.items() if k.lstrip("$") in ("select", "expand")})
        return ODataRequest(path=path, query_params=build_query_params(options, odata_version))
    if method == "DELETE":
        return ODataRequest(method=method, path=path, modifying=True)

    body = {k: v for k, v in arguments.items() if k not in key_names and v is not None}
    return ODataRequest(method=method, path=path, body=body, modifying=True)


def update_methods(odata_version: Optional[str]) -> List[str]:
    """HTTP verbs to try in turn for a partial update."""
    if is_legacy_version(odata_version):
        return ["MERGE", "PUT", "PATCH"]
    return ["PATCH", "PUT"]


def build_operation_request(operation: OperationDef, arguments: Dict[str, Any], is_action: bool,
                            odata_version: Optional[str] = None) -> ODataRequest:
    """Request invoking a function import, v4 function or v4 action."""
    params = {p.name: p for p in operation.get_input_parameters()}
    unknown = [name for name in arguments if name not in params]
    if unknown:
        raise ToolInvocationError(
            f"Unknown parameter(s) for {operation.name}: {', '.join(sorted(unknown))}")
    missing = [p.name for p in params.values() if not p.nullable and arguments.get(p.name) is None]
    if missing:
        raise ToolInvocationError(
            f"Missing required parameter(s) for {operation.name}: {', '.join(missing)}")

    values = {name: value for name, value in arguments.items() if value is not None}
    if is_action:
        return ODataRequest(method="POST", path=operation.name, body=values, modifying=True)

    if is_legacy_version(odata_version):
        method = getattr(operation, "http_method", "GET")
        query = [(name, format_literal(value, params[name].type, odata_version))
                 for name, value in values.items()]
        return ODataRequest(method=method, path=operation.name, query_params=query,
                            modifying=method != "GET")

    # v4 functions take their parameters inline
    inline = ",".join(
        f"{name}={format_literal(value, params[name].type, odata_version, url_encode=True)}"
        for name, value in values.items())
    return ODataRequest(path=f"{operation.name}({inline})")


class NormalizedResult(BaseModel):
    data: Any = None
    count: Optional[int] = None
    next_link: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        # Null fields inside entities are kept
        result = {"data": self.data}
        if self.count is not None:
            result["count"] = self.count
        if self.next_link is not None:
            result["next_link"] = self.next_link
        return result


def _to_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def normalize_response(raw: Any) -> NormalizedResult:
    """Normalize v2 ``d``/``d.results`` and v4 ``value`` envelopes into one shape."""
    if isinstance(raw, dict) and "d" in raw:
        payload = raw["d"]
        if isinstance(payload, dict):
            results = payload.get("results")
            data = results if isinstance(results, list) else payload
            return NormalizedResult(data=data, count=_to_int(payload.get("__count")),
                                    next_link=payload.get("__next"))
        return NormalizedResult(data=payload)

    if isinstance(raw, dict) and "value" in raw:
        count = raw.get("@odata.count", raw.get("odata.count"))
        next_link = raw.get("@odata.nextLink", raw.get("odata.nextLink"))
        return NormalizedResult(data=raw["value"], count=_to_int(count), next_link=next_link)

    return NormalizedResult(data=raw)
