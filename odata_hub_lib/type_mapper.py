"""
Maps OData Edm types onto JSON-Schema fragments for tool input schemas.
"""

import re
from typing import Any, Dict, Optional, Union

from .constants import EDM_INTEGER_TYPES, EDM_NUMBER_TYPES
from .models import EntityProperty, FunctionParameter

_COLLECTION_PATTERN = re.compile(r'^Collection\((.+)\)$')


def _json_type(edm_type: str) -> str:
    if edm_type in EDM_INTEGER_TYPES:
        return "integer"
    if edm_type in EDM_NUMBER_TYPES:
        return "number"
    if edm_type == "Edm.Boolean":
        return "boolean"
    # Strings, dates, guids, binary and anything unrecognized
    return "string"


def map_type(edm_type: str,
             prop: Optional[Union[EntityProperty, FunctionParameter]] = None) -> Dict[str, Any]:
    """Return the JSON-Schema fragment for an Edm type.

    Without ``prop`` the fragment is just ``{"type": ...}``. With a property the
    facets it carries are applied: ``maxLength`` for strings, ``multipleOf``
    for numbers with a scale, ``default`` and a ``description``.
    """
    collection = _COLLECTION_PATTERN.match(edm_type or "")
    if collection:
        return {"type": "array", "items": map_type(collection.group(1))}

    json_type = _json_type(edm_type)
    schema: Dict[str, Any] = {"type": json_type}
    if prop is None:
        return schema

    if edm_type == "Edm.String" and prop.max_length is not None:
        schema["maxLength"] = prop.max_length
    if json_type == "number" and prop.scale is not None:
        schema["multipleOf"] = 10 ** -prop.scale
    default_value = getattr(prop, "default_value", None)
    if default_value is not None:
        schema["default"] = default_value
    schema["description"] = prop.description or f"{prop.name} property"
    return schema
