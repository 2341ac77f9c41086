"""
OData metadata parser for extracting entity types, sets, functions and actions.

Accepts both the v2/v3 (EDMX 2007/06, 2009/11) and the v4 (OASIS) dialects. Elements
are matched by local name so the many EDM namespace revisions in the wild all work.
"""

import sys
from datetime import datetime
from typing import Dict, List, Optional, Union
from lxml import etree

from .constants import (
    CAPABILITY_TERMS,
    EDM_INTEGER_TYPES,
    EDM_NUMBER_TYPES,
    EDM_V4_NAMESPACE_LEGACY,
    EDMX_V2_NAMESPACE,
    EDMX_V3_NAMESPACE,
    EDMX_V4_NAMESPACE,
    METADATA_NAMESPACE,
    SAP_NAMESPACE,
)
from .errors import MetadataParseError
from .models import (
    ActionImport,
    EntityProperty,
    EntitySet,
    EntityType,
    FunctionImport,
    FunctionParameter,
    NavigationProperty,
    OperationDef,
    ServiceMetadata,
    strip_namespace,
)


class _SkipElement(Exception):
    """Raised while reading a single element that cannot be used."""


def _local_name(element) -> str:
    return etree.QName(element).localname


def _children(element, name: str) -> List:
    return [child for child in element.iterchildren(tag=etree.Element) if _local_name(child) == name]


def _parse_int_facet(value: Optional[str]) -> Optional[int]:
    if value is None or value.lower() in ("max", "variable", "floating"):
        return None
    return int(value)


def coerce_default_value(edm_type: str, value: Optional[str]):
    """Coerce a DefaultValue attribute to the Python type of its Edm type.

    Raises ValueError for a numeric type whose default does not parse.
    """
    if value is None:
        return None
    if edm_type == "Edm.Boolean":
        return value.lower() == "true"
    if edm_type in EDM_INTEGER_TYPES:
        return int(value)
    if edm_type in EDM_NUMBER_TYPES:
        return float(value)
    return value


class MetadataParser:
    """Parses an OData $metadata document into a ServiceMetadata snapshot."""

    def __init__(self, verbose: bool = False, searchable_default: bool = True):
        self.verbose = verbose
        # Whether entity sets without a searchable annotation allow $search
        self.searchable_default = searchable_default
        self._xml_parser = etree.XMLParser(
            resolve_entities=False, no_network=True, remove_comments=True, huge_tree=False
        )

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Parser VERBOSE] {message}", file=sys.stderr)

    def parse(self, xml: Union[str, bytes]) -> ServiceMetadata:
        """Parse the OData metadata document.

        Raises MetadataParseError when the document is not well-formed XML or has
        no <Schema> element. Malformed individual elements are skipped.
        """
        raw = xml.decode('utf-8', errors='replace') if isinstance(xml, bytes) else xml
        data = xml if isinstance(xml, bytes) else xml.encode('utf-8')
        try:
            root = etree.fromstring(data, parser=self._xml_parser)
        except etree.XMLSyntaxError as e:
            raise MetadataParseError(f"Metadata is not well-formed XML: {e}") from e

        schemas = [el for el in root.iter(tag=etree.Element) if _local_name(el) == "Schema"]
        if not schemas:
            raise MetadataParseError("Metadata document contains no <Schema> element")

        version = self.detect_version(root)
        self._log_verbose(f"Detected OData version {version}, {len(schemas)} schema(s).")

        entity_types: List[EntityType] = []
        entity_sets: List[EntitySet] = []
        functions: Dict[str, FunctionImport] = {}
        actions: Dict[str, ActionImport] = {}
        targeted_annotations = self._collect_targeted_annotations(schemas)
        is_v4 = version.startswith("4")
        v4_functions: Dict[str, OperationDef] = {}
        v4_actions: Dict[str, OperationDef] = {}
        if is_v4:
            v4_functions = self._collect_v4_operations(schemas, "Function", FunctionImport)
            v4_actions = self._collect_v4_operations(schemas, "Action", ActionImport)

        for schema in schemas:
            namespace = schema.get("Namespace")
            for element in _children(schema, "EntityType"):
                entity_type = self._try(self._parse_entity_type, element, namespace)
                if entity_type is not None:
                    entity_types.append(entity_type)

            for container in _children(schema, "EntityContainer"):
                container_name = container.get("Name", "")
                for element in _children(container, "EntitySet"):
                    annotations = targeted_annotations.get(
                        f"{namespace}.{container_name}/{element.get('Name')}", [])
                    entity_set = self._try(self._parse_entity_set, element, annotations)
                    if entity_set is not None:
                        entity_sets.append(entity_set)
                if not is_v4:
                    for element in _children(container, "FunctionImport"):
                        func = self._try(self._parse_function_import, element)
                        if func is not None and func.name not in functions:
                            functions[func.name] = func
                    continue

                # v4 unbound operations are only addressable through their container import
                for element in _children(container, "FunctionImport"):
                    func = self._try(self._parse_v4_import, element, "Function", v4_functions)
                    if func is not None and func.name not in functions:
                        functions[func.name] = func
                for element in _children(container, "ActionImport"):
                    action = self._try(self._parse_v4_import, element, "Action", v4_actions)
                    if action is not None and action.name not in actions:
                        actions[action.name] = action

        # Bound operations are kept for service descriptions; they get no tool
        for func in v4_functions.values():
            if func.is_bound and func.name not in functions:
                functions[func.name] = func
        for action in v4_actions.values():
            if action.is_bound and action.name not in actions:
                actions[action.name] = action

        self._log_verbose(
            f"Parsing complete. Found {len(entity_types)} types, {len(entity_sets)} sets, "
            f"{len(functions)} functions, {len(actions)} actions.")
        return ServiceMetadata(
            entity_types=entity_types,
            entity_sets=entity_sets,
            functions=list(functions.values()),
            actions=list(actions.values()),
            odata_version=version,
            service_description=self._get_description(schemas[0]),
            raw=raw,
        )

    @staticmethod
    def detect_version(root) -> str:
        namespace = etree.QName(root).namespace or ""
        declared = root.get("Version")
        if namespace == EDMX_V2_NAMESPACE:
            return "2.0"
        if namespace == EDMX_V3_NAMESPACE:
            return "3.0"
        if namespace in (EDM_V4_NAMESPACE_LEGACY, EDMX_V4_NAMESPACE) or declared == "4.0":
            return "4.0"
        return declared or "2.0"

    def _try(self, func, element, *args):
        try:
            return func(element, *args)
        except _SkipElement as e:
            self._log_verbose(f"Skipping <{_local_name(element)} Name='{element.get('Name')}'>: {e}")
            return None

    def _get_description(self, element) -> Optional[str]:
        """Extract a human readable description from vendor or vocabulary annotations."""
        label = element.get(f"{{{SAP_NAMESPACE}}}label")
        if label:
            return label
        for annotation in _children(element, "Annotation"):
            term = annotation.get("Term", "")
            if term.endswith("Core.Description") or term.endswith("Core.LongDescription"):
                text = annotation.get("String") or (annotation.text or "").strip()
                if text:
                    return text
        for documentation in _children(element, "Documentation"):
            for tag in ("Summary", "LongDescription"):
                for child in _children(documentation, tag):
                    if child.text and child.text.strip():
                        return child.text.strip()
        return None

    def _facet(self, element, name: str) -> Optional[int]:
        """Integer facet of an element; an unusable value is dropped, not the element."""
        value = element.get(name)
        try:
            return _parse_int_facet(value)
        except ValueError:
            self._log_verbose(f"Ignoring invalid {name} '{value}' on '{element.get('Name')}'.")
            return None

    def _default_value(self, element, edm_type: str):
        value = element.get("DefaultValue")
        try:
            return coerce_default_value(edm_type, value)
        except ValueError:
            self._log_verbose(f"Ignoring DefaultValue '{value}' of '{element.get('Name')}': "
                              f"not a valid {edm_type}.")
            return None

    def _parse_property(self, element) -> EntityProperty:
        name = element.get("Name")
        edm_type = element.get("Type")
        if not name or not edm_type:
            raise _SkipElement("missing Name or Type")
        return EntityProperty(
            name=name,
            type=edm_type,
            nullable=element.get("Nullable", "true").lower() != "false",
            max_length=self._facet(element, "MaxLength"),
            precision=self._facet(element, "Precision"),
            scale=self._facet(element, "Scale"),
            default_value=self._default_value(element, edm_type),
            description=self._get_description(element),
        )

    def _parse_navigation_property(self, element) -> NavigationProperty:
        name = element.get("Name")
        if not name:
            raise _SkipElement("missing Name")
        return NavigationProperty(
            name=name,
            relationship=element.get("Relationship"),
            from_role=element.get("FromRole"),
            to_role=element.get("ToRole"),
            type=element.get("Type"),
            partner=element.get("Partner"),
            multiplicity=element.get("Multiplicity"),
        )

    def _parse_entity_type(self, element, namespace: Optional[str]) -> EntityType:
        name = element.get("Name")
        if not name:
            raise _SkipElement("missing Name")

        key_refs = []
        for key in _children(element, "Key"):
            key_refs.extend(ref.get("Name") for ref in _children(key, "PropertyRef") if ref.get("Name"))

        properties = []
        for prop_element in _children(element, "Property"):
            prop = self._try(self._parse_property, prop_element)
            if prop is not None:
                properties.append(prop)

        # Keys are all or nothing
        property_names = {prop.name for prop in properties}
        missing = [key_name for key_name in key_refs if key_name not in property_names]
        if missing:
            self._log_verbose(f"Key {', '.join(missing)} of {name} has no usable property; "
                              f"treating {name} as keyless.")
            key_refs = []
        for prop in properties:
            prop.is_key = prop.name in key_refs
        key_properties = list(key_refs)

        navigation_properties = []
        for nav_element in _children(element, "NavigationProperty"):
            nav = self._try(self._parse_navigation_property, nav_element)
            if nav is not None:
                navigation_properties.append(nav)

        return EntityType(
            name=name,
            namespace=namespace,
            properties=properties,
            key_properties=key_properties,
            navigation_properties=navigation_properties,
            description=self._get_description(element),
        )

    def _parse_entity_set(self, element, targeted_annotations: List) -> EntitySet:
        name = element.get("Name")
        entity_type = element.get("EntityType")
        if not name or not entity_type:
            raise _SkipElement("missing Name or EntityType")

        flags = {}
        for flag in ("creatable", "updatable", "deletable", "searchable", "countable"):
            value = element.get(f"{{{SAP_NAMESPACE}}}{flag}")
            if value is not None:
                flags[flag] = value.lower() != "false"

        for annotation in _children(element, "Annotation") + list(targeted_annotations):
            flags.update(self._capability_flags(annotation))

        flags.setdefault("searchable", self.searchable_default)
        return EntitySet(
            name=name,
            entity_type=entity_type,
            description=self._get_description(element),
            **flags,
        )

    def _capability_flags(self, annotation) -> Dict[str, bool]:
        """Read Org.OData.Capabilities.V1 restrictions from one annotation."""
        term = annotation.get("Term", "").rsplit(".", 1)[-1]
        if term not in CAPABILITY_TERMS:
            return {}
        flag, property_name = CAPABILITY_TERMS[term]
        for record in _children(annotation, "Record"):
            for value in _children(record, "PropertyValue"):
                if value.get("Property") != property_name:
                    continue
                literal = value.get("Bool")
                if literal is None:
                    bools = _children(value, "Bool")
                    literal = bools[0].text if bools else None
                if literal is not None:
                    return {flag: literal.strip().lower() != "false"}
        return {}

    def _collect_targeted_annotations(self, schemas) -> Dict[str, List]:
        targeted: Dict[str, List] = {}
        for schema in schemas:
            for annotations in _children(schema, "Annotations"):
                target = annotations.get("Target")
                if target:
                    targeted.setdefault(target, []).extend(_children(annotations, "Annotation"))
        return targeted

    def _parse_parameter(self, element) -> FunctionParameter:
        name = element.get("Name")
        edm_type = element.get("Type")
        if not name or not edm_type:
            raise _SkipElement("missing Name or Type")
        return FunctionParameter(
            name=name,
            type=edm_type,
            nullable=element.get("Nullable", "true").lower() != "false",
            mode=element.get("Mode", "In"),
            max_length=self._facet(element, "MaxLength"),
            precision=self._facet(element, "Precision"),
            scale=self._facet(element, "Scale"),
            description=self._get_description(element),
        )

    def _parse_parameters(self, element) -> List[FunctionParameter]:
        parameters = []
        for param_element in _children(element, "Parameter"):
            param = self._try(self._parse_parameter, param_element)
            if param is not None:
                parameters.append(param)
        return parameters

    def _parse_function_import(self, element) -> FunctionImport:
        name = element.get("Name")
        if not name:
            raise _SkipElement("missing Name")
        return FunctionImport(
            name=name,
            http_method=(element.get(f"{{{METADATA_NAMESPACE}}}HttpMethod") or "GET").upper(),
            return_type=element.get("ReturnType"),
            parameters=self._parse_parameters(element),
            description=self._get_description(element),
        )

    def _parse_v4_operation(self, element, model):
        name = element.get("Name")
        if not name:
            raise _SkipElement("missing Name")
        return_types = _children(element, "ReturnType")
        fields = dict(
            name=name,
            return_type=return_types[0].get("Type") if return_types else None,
            parameters=self._parse_parameters(element),
            is_bound=element.get("IsBound", "false").lower() == "true",
            description=self._get_description(element),
        )
        if model is ActionImport:
            return ActionImport(**fields)
        return FunctionImport(http_method="GET", **fields)
    def _collect_v4_operations(self, schemas, tag: str, model) -> Dict[str, OperationDef]:
        """Schema-level v4 Function or Action elements keyed by qualified name.

        Both the namespace and the schema alias qualify a name. An unbound
        overload takes precedence over bound ones of the same name.
        """
        operations: Dict[str, OperationDef] = {}
        for schema in schemas:
            qualifiers = [q for q in (schema.get("Namespace"), schema.get("Alias")) if q]
            for element in _children(schema, tag):
                operation = self._try(self._parse_v4_operation, element, model)
                if operation is None:
                    continue
                for qualifier in qualifiers:
                    key = f"{qualifier}.{operation.name}"
                    current = operations.get(key)
                    if current is None or (current.is_bound and not operation.is_bound):
                        operations[key] = operation
        return operations

    def _parse_v4_import(self, element, kind: str, operations: Dict[str, OperationDef]) -> OperationDef:
        name = element.get("Name")
        reference = element.get(kind)
        if not name or not reference:
            raise _SkipElement(f"missing Name or {kind}")
        operation = operations.get(reference)
        if operation is None:
            short_name = strip_namespace(reference)
            operation = next((op for op in operations.values()
                              if op.name == short_name and not op.is_bound), None)
        if operation is None or operation.is_bound:
            raise _SkipElement(f"no unbound {kind} '{reference}'")
        # The import name is the service-root path segment
        return operation.model_copy(update={
            "name": name,
            "description": self._get_description(element) or operation.description,
        })
