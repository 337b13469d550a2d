import logging

from salesforce_mcp.mcp.server import get_router, register_tool
from salesforce_mcp.responses import ToolContext, format_error, format_success

logger = logging.getLogger(__name__)


@register_tool
async def test_connection() -> str:
    """Verify the Salesforce connection and report which org and auth strategy are in use.

Authenticates on first use (OAuth2 refresh token preferred, username/password
as fallback). An existing session is re-validated on every call, healing an
expired token when possible. Returns the org record together with session
details and the last health-check time.

Returns:
    str: JSON envelope. ``data`` holds ``organization``, ``session``
    (instanceUrl, apiVersion, strategy, userId), ``connected``,
    ``lastHealthCheck`` and ``availableStrategies``.
"""
    context = ToolContext.create("test_connection", "connection-test")
    try:
        info = await get_router().connection_info()
        return format_success(info, context)
    except Exception as e:
        logger.error("test_connection: %s", e, exc_info=True)
        return format_error(e, context)
