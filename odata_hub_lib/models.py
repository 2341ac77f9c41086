"""
Data models for OData metadata and generated MCP tool representation.
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import ALL_OPERATION_LETTERS, DEFAULT_MAX_TOOL_NAME_LENGTH, READ_OPERATION_LETTERS


def expand_operation_letters(letters: str) -> str:
    """Upper-case operation letters, expand R to its read operations and reject unknown letters."""
    letters = letters.upper()
    unknown = sorted(set(letters) - set(ALL_OPERATION_LETTERS))
    if unknown:
        raise ValueError(f"Unknown operation letters: {''.join(unknown)} (allowed: {ALL_OPERATION_LETTERS})")
    if 'R' in letters:
        letters = letters.replace('R', '') + READ_OPERATION_LETTERS
    return ''.join(sorted(set(letters)))


def strip_namespace(qualified_name: str) -> str:
    """Return the last dotted segment of a (possibly namespaced) type name."""
    return qualified_name.rsplit('.', 1)[-1]


class EntityProperty(BaseModel):
    name: str
    type: str  # OData type string (e.g., "Edm.String")
    nullable: bool = True
    is_key: bool = False
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    default_value: Optional[Any] = None
    description: Optional[str] = None


class NavigationProperty(BaseModel):
    name: str
    # v2/v3 association style
    relationship: Optional[str] = None
    from_role: Optional[str] = None
    to_role: Optional[str] = None
    # v4 style
    type: Optional[str] = None
    partner: Optional[str] = None
    multiplicity: Optional[str] = None


class EntityType(BaseModel):
    name: str
    namespace: Optional[str] = None
    properties: List[EntityProperty] = []
    key_properties: List[str] = []
    navigation_properties: List[NavigationProperty] = []
    description: Optional[str] = None

    def get_property(self, name: str) -> Optional[EntityProperty]:
        return next((prop for prop in self.properties if prop.name == name), None)

    def get_key_properties(self) -> List[EntityProperty]:
        """Key properties in declared key order."""
        keys = []
        for key_name in self.key_properties:
            prop = self.get_property(key_name)
            if prop is not None:
                keys.append(prop)
        return keys

    def get_non_key_properties(self) -> List[EntityProperty]:
        return [prop for prop in self.properties if not prop.is_key]


class EntitySet(BaseModel):
    name: str
    entity_type: str  # raw reference, possibly namespace-qualified
    creatable: bool = True
    updatable: bool = True
    deletable: bool = True
    searchable: bool = True
    countable: bool = True
    description: Optional[str] = None

    @property
    def entity_type_name(self) -> str:
        return strip_namespace(self.entity_type)


class FunctionParameter(BaseModel):
    name: str
    type: str
    nullable: bool = True
    mode: str = "In"
    max_length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    description: Optional[str] = None

    @property
    def is_input(self) -> bool:
        return self.mode in ("In", "InOut")


class OperationDef(BaseModel):
    """Common shape of function and action imports."""
    name: str
    return_type: Optional[str] = None
    parameters: List[FunctionParameter] = []
    is_bound: bool = False
    description: Optional[str] = None

    def get_input_parameters(self) -> List[FunctionParameter]:
        params = [p for p in self.parameters if p.is_input]
        # The first parameter of a bound operation is the binding target
        if self.is_bound and params:
            params = params[1:]
        return params


class FunctionImport(OperationDef):
    http_method: str = "GET"


class ActionImport(OperationDef):
    pass


class ServiceMetadata(BaseModel):
    """Immutable result of parsing one $metadata document."""
    model_config = ConfigDict(frozen=True)

    entity_types: List[EntityType] = []
    entity_sets: List[EntitySet] = []
    functions: List[FunctionImport] = []
    actions: List[ActionImport] = []
    odata_version: str = "2.0"
    service_description: Optional[str] = None
    raw: str = Field(default="", repr=False)

    def find_entity_type(self, reference: str) -> Optional[EntityType]:
        """Resolve an entity set's type reference by its unqualified name."""
        name = strip_namespace(reference)
        return next((et for et in self.entity_types if et.name == name), None)

    def find_entity_set(self, name: str) -> Optional[EntitySet]:
        return next((es for es in self.entity_sets if es.name == name), None)

    def find_operation(self, name: str) -> Optional[OperationDef]:
        for op in list(self.functions) + list(self.actions):
            if op.name == name:
                return op
        return None

    @property
    def is_v4(self) -> bool:
        return self.odata_version.startswith("4")


class ToolOperation(str, Enum):
    FILTER = "filter"
    GET = "get"
    COUNT = "count"
    SEARCH = "search"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    FUNCTION = "function"
    ACTION = "action"


class GeneratedTool(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    operation: ToolOperation
    input_schema: Dict[str, Any]
    entity_set: Optional[str] = None
    function_name: Optional[str] = None
    system_id: Optional[str] = None
    service_url: Optional[str] = None


class ToolGenConfig(BaseModel):
    enabled_operations: str = ALL_OPERATION_LETTERS
    tool_prefix: Optional[str] = None
    tool_postfix: Optional[str] = None
    use_service_id: bool = True
    shrink_names: bool = False
    max_tool_name_length: int = Field(default=DEFAULT_MAX_TOOL_NAME_LENGTH, ge=8)
    claude_code_friendly: bool = True
    create_includes_keys: bool = False

    @field_validator("enabled_operations")
    @classmethod
    def _check_operations(cls, value: str) -> str:
        expand_operation_letters(value)
        return value.upper()

    def expanded_operations(self) -> str:
        """Enabled operation letters with R expanded to its read operations."""
        return expand_operation_letters(self.enabled_operations)

    def is_enabled(self, letter: str) -> bool:
        return letter in self.expanded_operations()


class ToolGenerationResult(BaseModel):
    tools: List[GeneratedTool] = []
    warnings: List[str] = []
