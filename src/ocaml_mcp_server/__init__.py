import argparse
import os

_TRANSPORT_ALIASES = {"http": "streamable-http", "streamable_http": "streamable-http"}


def main():
    parser = argparse.ArgumentParser(
        prog="ocaml-mcp-server",
        description="MCP server reporting dune build status for OCaml projects",
    )
    parser.add_argument(
        "--transport",
        type=str,
        choices=["stdio", "sse", "http", "streamable-http", "streamable_http"],
        default="stdio",
        help="How clients connect. 'http' and 'streamable_http' mean 'streamable-http'. Default: stdio.",
    )
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Bind address for network transports")
    parser.add_argument("--port", type=int, default=8000, help="Bind port for network transports")
    parser.add_argument(
        "--project-root",
        type=str,
        default=None,
        help=(
            "Directory holding dune-project. Overrides OCAML_MCP_PROJECT_ROOT; when neither "
            "is given the server searches upwards from the working directory."
        ),
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Server log level (default: FastMCP's setting)",
    )
    args = parser.parse_args()

    # The lifespan reads the environment, so set it before the server starts.
    if args.project_root:
        os.environ["OCAML_MCP_PROJECT_ROOT"] = os.path.abspath(args.project_root)

    from ocaml_mcp_server.server import logger, mcp

    mcp.settings.host = args.host
    mcp.settings.port = args.port
    if args.log_level:
        mcp.settings.log_level = args.log_level

    transport = _TRANSPORT_ALIASES.get(args.transport, args.transport)
    logger.info("Starting ocaml_mcp_server over %s", transport)
    mcp.run(transport=transport)
