#!/usr/bin/env python3
"""
OData MCP Hub - exposes one or many OData services as MCP tools.

Systems come from the command line (a single service) and from environment
variables (SAP_*, CATALOG_*, SYSTEM<N>_* and the custom prefixes), optionally
loaded from a .env file.
"""

import argparse
import os
import signal
import sys
import traceback
from dotenv import load_dotenv

from odata_hub_lib import ODataHub, ODataMCPServer
from odata_hub_lib.config import (
    AuthType,
    SystemConfig,
    build_system,
    load_systems_from_env,
    load_tool_gen_config_from_env,
    strict_search_from_env,
)
from odata_hub_lib.errors import ConfigurationError
from odata_hub_lib.models import expand_operation_letters

# Load environment variables from .env file
load_dotenv()


def apply_operation_filters(enabled: str, enable: str = None, disable: str = None) -> str:
    """Combine the --enable / --disable operation letters with the configured set."""
    try:
        letters = expand_operation_letters(enable or enabled)
        blocked = expand_operation_letters(disable or "")
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    return ''.join(c for c in letters if c not in blocked)


def build_cli_system(service_url: str, user: str = None, password: str = None) -> SystemConfig:
    fields = dict(id="default", name="Default OData Service", base_url=service_url,
                  enable_csrf=True, services=[service_url])
    if user and password:
        fields["auth_type"] = AuthType.BASIC
        fields["basic_auth"] = dict(username=user, password=password)
    return build_system(fields)


def print_trace_info(hub):
    """Print the loaded systems and every generated tool with its parameters."""
    print("=" * 80)
    print("OData MCP Hub Trace Information")
    print("=" * 80)

    config = hub.tool_config
    print(f"\nEnabled operations: {config.expanded_operations()}")
    print(f"Tool prefix: {config.tool_prefix!r}  postfix: {config.tool_postfix!r}")
    print(f"Service id in names: {config.use_service_id}  shrink: {config.shrink_names}  "
          f"max length: {config.max_tool_name_length}")

    for system in hub.list_systems():
        print(f"\nSystem {system['id']} ({system['name']}) - {system['base_url']}")
        print(f"   Status: {system['status']}, tools: {system.get('tool_count', 0)}")
        for error in system.get("errors", []):
            print(f"   ERROR [{error.get('kind')}]: {error.get('message')}")

    tools = sorted(hub.tools, key=lambda t: t.name)
    print(f"\nGenerated MCP Tools ({len(tools)} total):")
    for tool in tools:
        print(f"\n- {tool.name} [{tool.operation.value}]")
        print(f"   {tool.description}")
        required = set(tool.input_schema.get("required", []))
        for name, schema in tool.input_schema.get("properties", {}).items():
            req_str = "required" if name in required else "optional"
            print(f"      * {name}: {schema.get('type')} ({req_str})")

    print("\n" + "=" * 80)
    print("Trace complete - hub initialized but server not started")
    print("=" * 80)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="OData to MCP Hub",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )
    parser.add_argument("--service", dest="service_via_flag", help="URL of a single OData service (overrides positional argument and ODATA_URL env var)")
    parser.add_argument("service_url_pos", nargs='?', help="URL of the OData service (alternative to --service flag or env var)")
    parser.add_argument("-u", "--user", help="Username for basic authentication (overrides ODATA_USER env var)")
    parser.add_argument("-p", "--password", help="Password for basic authentication (overrides ODATA_PASS env var)")
    parser.add_argument("-v", "--verbose", "--debug", dest="verbose", action="store_true", help="Enable verbose output to stderr")

    # Tool naming options
    parser.add_argument("--tool-prefix", help="Prefix for tool names: <prefix>_<op>_<entity>_<service_id>")
    parser.add_argument("--tool-postfix", help="Postfix for tool names: <op>_<entity>_for_<service_id>_<postfix>")
    parser.add_argument("--no-service-id", action="store_true", help="Leave the derived service id out of tool names")
    parser.add_argument("--tool-shrink", action="store_true", help="Use shortened operation names (upd_, del_)")
    parser.add_argument("--max-tool-name-length", type=int, help="Maximum tool name length (default 64)")
    parser.add_argument("--dollar-params", action="store_true", help="Name query option parameters with a '$' prefix ($filter, $top, ...)")

    # Operation selection
    parser.add_argument("--enable", help="Only enable these operations: C,R,U,D,F,S,G,A (R = S+F+G), e.g. 'RA'")
    parser.add_argument("--disable", help="Disable these operations, e.g. 'CUD' for a read-only server")
    parser.add_argument("--strict-search", action="store_true", help="Only generate search tools for entity sets annotated as searchable")
    parser.add_argument("--create-includes-keys", action="store_true", help="Include key properties in create tools")

    parser.add_argument("--trace", action="store_true", help="Load all systems, print all tools and parameters, then exit")
    parser.add_argument("--transport", choices=["stdio", "http"], default="stdio", help="MCP transport")
    parser.add_argument("--http-addr", default=":8080", help="HTTP server address (used with --transport http)")

    args = parser.parse_args()

    # Priority: --service flag > Positional argument > Environment Variable > .env file
    service_url = args.service_via_flag or args.service_url_pos
    if service_url and args.verbose:
        print("[VERBOSE] Using OData service URL from the command line.", file=sys.stderr)

    try:
        systems = load_systems_from_env(verbose=args.verbose)
        if service_url:
            user = args.user or os.getenv("ODATA_USER") or os.getenv("ODATA_USERNAME")
            password = args.password or os.getenv("ODATA_PASS") or os.getenv("ODATA_PASSWORD")
            systems = [s for s in systems if s.id != "default"]
            systems.insert(0, build_cli_system(service_url, user, password))

        if not systems:
            print("ERROR: No OData system configured.", file=sys.stderr)
            print("Provide a service via --service, a positional argument or ODATA_URL, "
                  "or configure SYSTEM1_BASE_URL (and friends).", file=sys.stderr)
            parser.print_help(file=sys.stderr)
            sys.exit(1)

        base_config = load_tool_gen_config_from_env()
        tool_config = load_tool_gen_config_from_env(
            enabled_operations=apply_operation_filters(base_config.enabled_operations, args.enable, args.disable),
            tool_prefix=args.tool_prefix,
            tool_postfix=args.tool_postfix,
            use_service_id=False if args.no_service_id else None,
            shrink_names=True if args.tool_shrink else None,
            max_tool_name_length=args.max_tool_name_length,
            claude_code_friendly=False if args.dollar_params else None,
            create_includes_keys=True if args.create_includes_keys else None,
        )
    except ConfigurationError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        sys.exit(1)

    def signal_handler(sig, frame):
        print(f"\n{signal.Signals(sig).name} received, shutting down server...", file=sys.stderr)
        sys.exit(0)
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        hub = ODataHub(
            systems,
            tool_config=tool_config,
            verbose=args.verbose,
            searchable_default=not (args.strict_search or strict_search_from_env()),
        )
        server = ODataMCPServer(hub)
        hub.refresh_all()

        if args.trace:
            print_trace_info(hub)
            sys.exit(0)

        if args.transport == "http":
            host, _, port = args.http_addr.rpartition(":")
            if args.verbose:
                print(f"[VERBOSE] Starting HTTP transport on {host or '0.0.0.0'}:{port}", file=sys.stderr)
            server.run(transport="http", host=host or "0.0.0.0", port=int(port or 8080))
        else:
            server.run()
    except Exception as e:
        print(f"\n--- FATAL ERROR ---", file=sys.stderr)
        print(f"An unexpected error occurred during startup or runtime: {e}", file=sys.stderr)
        traceback.print_exc(file=sys.stderr)
        print("-------------------", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
