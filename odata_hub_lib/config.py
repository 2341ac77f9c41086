"""
System and tool-generation configuration loaded from environment variables.
"""

import json
import os
import sys
from enum import Enum
from typing import Dict, List, Mapping, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator

from .constants import DEFAULT_MAX_TOOL_NAME_LENGTH, DEFAULT_TIMEOUT_MS, SAP_CATALOG_PATH
from .errors import ConfigurationError
from .models import ToolGenConfig


class SystemType(str, Enum):
    SAP_ONPREMISE = "sap_onpremise"
    BTP = "btp"
    GENERIC_ODATA = "generic_odata"


class AuthType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    OAUTH2 = "oauth2"


class BasicAuthConfig(BaseModel):
    username: str
    password: str
    client: Optional[str] = None  # SAP client number


class OAuth2Config(BaseModel):
    token_url: str
    client_id: str
    client_secret: str
    scope: Optional[str] = None


class SystemConfig(BaseModel):
    id: str = Field(min_length=1)
    name: str
    description: Optional[str] = None
    type: SystemType = SystemType.GENERIC_ODATA
    base_url: str
    auth_type: AuthType = AuthType.NONE
    timeout: int = Field(default=DEFAULT_TIMEOUT_MS, gt=0)  # milliseconds
    validate_ssl: bool = True
    enable_csrf: bool = False
    basic_auth: Optional[BasicAuthConfig] = None
    oauth2: Optional[OAuth2Config] = None
    discovery_url: Optional[str] = None
    custom_headers: Dict[str, str] = {}
    # Service paths (relative to base_url) or absolute service URLs
    services: List[str] = []

    @field_validator("base_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got '{value}'")
        return value.rstrip("/")

    def service_urls(self) -> List[str]:
        urls = []
        for service in self.services:
            if service.startswith(("http://", "https://")):
                urls.append(service.rstrip("/"))
            else:
                urls.append(f"{self.base_url}/{service.strip('/')}")
        return urls

    def summary(self) -> Dict[str, object]:
        """Non-secret view of the configuration."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "type": self.type.value,
            "base_url": self.base_url,
            "auth_type": self.auth_type.value,
            "enable_csrf": self.enable_csrf,
            "validate_ssl": self.validate_ssl,
        }


CUSTOM_SYSTEM_PREFIXES = ('NORTHWIND_', 'DEMO_', 'TEST_', 'DEV_', 'PROD_')
MAX_NUMBERED_SYSTEMS = 10


def parse_system_type(value: Optional[str]) -> SystemType:
    value = (value or "").lower()
    if value in ("sap_onpremise", "sap-onpremise", "sap_on_premise"):
        return SystemType.SAP_ONPREMISE
    if value in ("sap_btp", "sap-btp", "btp"):
        return SystemType.BTP
    return SystemType.GENERIC_ODATA


def parse_auth_type(value: Optional[str]) -> AuthType:
    value = (value or "").lower()
    if value == "basic":
        return AuthType.BASIC
    if value in ("oauth2", "oauth"):
        return AuthType.OAUTH2
    return AuthType.NONE


def parse_custom_headers(value: Optional[str]) -> Dict[str, str]:
    """Parse headers given as a JSON object or as "key1=value1,key2=value2"."""
    if not value:
        return {}
    try:
        parsed = json.loads(value)
        if isinstance(parsed, dict):
            return {str(k): str(v) for k, v in parsed.items()}
    except json.JSONDecodeError:
        pass
    headers = {}
    for pair in value.split(','):
        key, sep, header_value = pair.partition('=')
        if sep and key.strip() and header_value.strip():
            headers[key.strip()] = header_value.strip()
    return headers


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _parse_list(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _parse_timeout(value: Optional[str]) -> int:
    try:
        return int(value) if value else DEFAULT_TIMEOUT_MS
    except ValueError:
        raise ConfigurationError(f"Timeout must be an integer number of milliseconds, got '{value}'")


def build_system(fields: dict) -> SystemConfig:
    try:
        return SystemConfig(**fields)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration for system '{fields.get('id')}': {e}",
                                 system_id=fields.get('id')) from e


def load_system_with_prefix(environ: Mapping[str, str], prefix: str, system_id: str) -> Optional[SystemConfig]:
    base_url = environ.get(f"{prefix}BASE_URL")
    if not base_url:
        return None

    auth_type = parse_auth_type(environ.get(f"{prefix}AUTH_TYPE"))
    fields = dict(
        id=system_id,
        name=environ.get(f"{prefix}NAME") or f"System {system_id}",
        description=environ.get(f"{prefix}DESCRIPTION"),
        type=parse_system_type(environ.get(f"{prefix}TYPE")),
        base_url=base_url,
        auth_type=auth_type,
        timeout=_parse_timeout(environ.get(f"{prefix}TIMEOUT")),
        validate_ssl=environ.get(f"{prefix}VALIDATE_SSL") != 'false',
        enable_csrf=environ.get(f"{prefix}ENABLE_CSRF") == 'true',
        discovery_url=environ.get(f"{prefix}DISCOVERY_URL"),
        custom_headers=parse_custom_headers(environ.get(f"{prefix}CUSTOM_HEADERS")),
        services=_parse_list(environ.get(f"{prefix}SERVICES")),
    )

    if auth_type == AuthType.BASIC:
        username = environ.get(f"{prefix}USERNAME")
        password = environ.get(f"{prefix}PASSWORD")
        if username and password:
            fields["basic_auth"] = BasicAuthConfig(
                username=username, password=password, client=environ.get(f"{prefix}CLIENT"))
    elif auth_type == AuthType.OAUTH2:
        token_url = environ.get(f"{prefix}OAUTH_TOKEN_URL")
        client_id = environ.get(f"{prefix}OAUTH_CLIENT_ID")
        client_secret = environ.get(f"{prefix}OAUTH_CLIENT_SECRET")
        if token_url and client_id and client_secret:
            fields["oauth2"] = OAuth2Config(
                token_url=token_url, client_id=client_id, client_secret=client_secret,
                scope=environ.get(f"{prefix}OAUTH_SCOPE"))

    return build_system(fields)


def _load_single_service(environ: Mapping[str, str]) -> Optional[SystemConfig]:
    url = environ.get("ODATA_URL") or environ.get("ODATA_SERVICE_URL")
    if not url:
        return None
    username = environ.get("ODATA_USER") or environ.get("ODATA_USERNAME")
    password = environ.get("ODATA_PASS") or environ.get("ODATA_PASSWORD")
    fields = dict(id="default", name="Default OData Service", base_url=url,
                  enable_csrf=True, services=[url])
    if username and password:
        fields["auth_type"] = AuthType.BASIC
        fields["basic_auth"] = BasicAuthConfig(username=username, password=password)
    return build_system(fields)


def _load_legacy_sap(environ: Mapping[str, str]) -> Optional[SystemConfig]:
    base_url = environ.get("SAP_BASE_URL")
    username = environ.get("SAP_USERNAME")
    password = environ.get("SAP_PASSWORD")
    if not (base_url and username and password):
        return None
    return build_system(dict(
        id="legacy-sap",
        name="Legacy SAP System",
        description="Legacy SAP OData system with basic authentication",
        type=SystemType.SAP_ONPREMISE,
        base_url=base_url,
        auth_type=AuthType.BASIC,
        timeout=_parse_timeout(environ.get("SAP_TIMEOUT")),
        validate_ssl=environ.get("SAP_VALIDATE_SSL") == 'true',
        enable_csrf=environ.get("SAP_ENABLE_CSRF") == 'true',
        basic_auth=BasicAuthConfig(username=username, password=password,
                                   client=environ.get("SAP_CLIENT")),
        discovery_url=f"{base_url.rstrip('/')}{SAP_CATALOG_PATH}",
        services=_parse_list(environ.get("SAP_SERVICES")),
    ))


def _load_btp_catalog(environ: Mapping[str, str]) -> Optional[SystemConfig]:
    base_url = environ.get("CATALOG_ODATA_URL")
    token_url = environ.get("CATALOG_OAUTH_TOKEN_URL")
    client_id = environ.get("CATALOG_OAUTH_CLIENT_ID")
    client_secret = environ.get("CATALOG_OAUTH_CLIENT_SECRET")
    if not (base_url and token_url and client_id and client_secret):
        return None
    return build_system(dict(
        id="btp-catalog",
        name="SAP BTP Catalog Service",
        description="SAP Business Technology Platform catalog service with OAuth 2.0",
        type=SystemType.BTP,
        base_url=base_url,
        auth_type=AuthType.OAUTH2,
        oauth2=OAuth2Config(token_url=token_url, client_id=client_id, client_secret=client_secret,
                            scope=environ.get("CATALOG_OAUTH_SCOPE")),
    ))


def load_systems_from_env(environ: Optional[Mapping[str, str]] = None,
                          verbose: bool = False) -> List[SystemConfig]:
    """Load every configured system; invalid ones are reported and skipped."""
    environ = os.environ if environ is None else environ
    loaders = [
        lambda: _load_single_service(environ),
        lambda: _load_legacy_sap(environ),
        lambda: _load_btp_catalog(environ),
    ]
    for i in range(1, MAX_NUMBERED_SYSTEMS + 1):
        loaders.append(lambda i=i: load_system_with_prefix(environ, f"SYSTEM{i}_", f"system-{i}"))
    for prefix in CUSTOM_SYSTEM_PREFIXES:
        system_id = prefix.lower().replace('_', '')
        loaders.append(lambda p=prefix, s=system_id: load_system_with_prefix(environ, p, s))

    systems: Dict[str, SystemConfig] = {}
    for loader in loaders:
        try:
            system = loader()
        except ConfigurationError as e:
            print(f"ERROR: {e.message}", file=sys.stderr)
            continue
        if system is not None:
            if verbose:
                print(f"Loaded system configuration: {system.name} ({system.id})", file=sys.stderr)
            systems[system.id] = system
    return list(systems.values())


def load_tool_gen_config_from_env(environ: Optional[Mapping[str, str]] = None, **overrides) -> ToolGenConfig:
    """Build the tool-generation config from ODATA_* variables; keyword overrides win."""
    environ = os.environ if environ is None else environ
    fields = dict(
        enabled_operations=environ.get("ODATA_ENABLED_OPS") or "CRUDFSGA",
        tool_prefix=environ.get("ODATA_TOOL_PREFIX") or None,
        tool_postfix=environ.get("ODATA_TOOL_POSTFIX") or None,
        use_service_id=_parse_bool(environ.get("ODATA_USE_SERVICE_ID"), True),
        shrink_names=_parse_bool(environ.get("ODATA_TOOL_SHRINK"), False),
        claude_code_friendly=_parse_bool(environ.get("ODATA_CLAUDE_CODE_FRIENDLY"), True),
    )
    max_length = environ.get("ODATA_MAX_TOOL_NAME_LENGTH")
    try:
        fields["max_tool_name_length"] = int(max_length) if max_length else DEFAULT_MAX_TOOL_NAME_LENGTH
    except ValueError:
        raise ConfigurationError(f"ODATA_MAX_TOOL_NAME_LENGTH must be an integer, got '{max_length}'")
    fields.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return ToolGenConfig(**fields)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid tool generation settings: {e}") from e


def strict_search_from_env(environ: Optional[Mapping[str, str]] = None) -> bool:
    environ = os.environ if environ is None else environ
    return _parse_bool(environ.get("ODATA_STRICT_SEARCH"), False)
