import importlib
import logging
import pkgutil

logger = logging.getLogger(__name__)

# Import every module in this package so their @register_tool functions are
# added to mcp_server. Output goes to the log, never stdout: stdout carries
# the protocol.
logger.debug("Discovering and loading tools")
for _, name, _ in pkgutil.iter_modules(__path__):
    importlib.import_module(f".{name}", __package__)
    logger.debug("Loaded tools from: %s.py", name)
