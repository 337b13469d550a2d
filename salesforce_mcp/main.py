# salesforce_mcp/main.py
import argparse
import logging
import signal
import sys

from salesforce_mcp.auth.manager import AuthenticationManager
from salesforce_mcp.config import LOG_LEVELS, Settings
from salesforce_mcp.errors import ConfigurationError
from salesforce_mcp.mcp.server import mcp_server, reset_router, set_router, tool_registry
from salesforce_mcp.services.router import OperationRouter
from salesforce_mcp.services.salesforce import SessionManager

# Importing the tools package registers every @register_tool function.
import salesforce_mcp.mcp.tools  # noqa: F401

logger = logging.getLogger("salesforce_mcp")

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    # stdout is reserved for the protocol
    logging.basicConfig(stream=sys.stderr, level=logging.INFO, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


def build_router(settings: Settings) -> OperationRouter:
    auth_manager = AuthenticationManager.from_settings(settings)
    session_manager = SessionManager(auth_manager)
    return OperationRouter.from_settings(settings, session_manager)


def install_signal_handlers(router: OperationRouter) -> None:
    def _shutdown(signum, frame):
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        router.session_manager.close_session()
        reset_router()
        sys.exit(0)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="salesforce-mcp", description="Salesforce MCP server")
    parser.add_argument("--mcp-stdio", action="store_true", help="serve MCP over stdio (default)")
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, help="override SF_MCP_LOG_LEVEL")
    args = parser.parse_args(argv)

    configure_logging()
    try:
        settings = Settings.from_env()
        settings.validate_credentials()
    except ConfigurationError as e:
        logger.error("❌ Configuration error: %s", e)
        return 1
    logging.getLogger().setLevel(args.log_level or settings.log_level)

    router = build_router(settings)
    set_router(router)
    install_signal_handlers(router)

    logger.info("MCP starting (stdio), API v%s", settings.api_version)
    logger.info("Tools: %s", ", ".join(sorted(tool_registry)) or "(none)")
    try:
        mcp_server.run(transport="stdio")
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    except Exception as e:
        logger.critical("Unhandled fault: %s", e, exc_info=True)
        router.session_manager.close_session()
        return 1
    router.session_manager.close_session()
    return 0


if __name__ == "__main__":
    sys.exit(main())
