import logging
from typing import List, Optional

from salesforce_mcp.mcp.server import get_router, register_tool
from salesforce_mcp.responses import ToolContext, format_error, format_success

logger = logging.getLogger(__name__)


# =============================================================================
# SOQL / SOSL
# =============================================================================

@register_tool
async def execute_soql(query: str, use_pagination: Optional[bool] = None, use_tooling_api: bool = False) -> str:
    """Execute a SOQL (or Tooling SOQL) query, fetching every page when the result set is large.

Path selection:
- A query without ``LIMIT``, or with a ``LIMIT`` above SF_BULK_QUERY_THRESHOLD
  (default 2000), follows ``nextRecordsUrl`` until the result set is exhausted.
- Any other query is a single round-trip.
- ``use_pagination`` forces one path or the other.

Salesforce ``attributes`` blocks are stripped from records, including nested
lookups.

Args:
    query: Raw SOQL string, e.g. "SELECT Id, Name FROM Account LIMIT 10".
    use_pagination: Force (True) or suppress (False) paginated fetching. Omit for automatic.
    use_tooling_api: Run against the Tooling API (ApexClass, ApexLog, EntityDefinition...).

Returns:
    str: JSON envelope; ``data`` holds totalSize, done, records, executionMethod and query.
"""
    context = ToolContext.create("execute_soql", "query-execution")
    try:
        result = await get_router().query(query, paginate=use_pagination, use_tooling_api=use_tooling_api)
        return format_success(result, context)
    except Exception as e:
        logger.error("execute_soql: %s", e, exc_info=True)
        return format_error(e, context)


@register_tool
async def execute_sosl(search: str) -> str:
    """Execute a SOSL search across multiple objects.

Args:
    search: SOSL string, e.g. "FIND {Acme} IN NAME FIELDS RETURNING Account(Id, Name), Contact(Id, Name)".
"""
    context = ToolContext.create("execute_sosl", "search-execution")
    try:
        return format_success(await get_router().search(search), context)
    except Exception as e:
        logger.error("execute_sosl: %s", e, exc_info=True)
        return format_error(e, context)


# =============================================================================
# DESCRIBE
# =============================================================================

@register_tool
async def describe_sobject(sobject_type: str, use_cache: bool = True) -> str:
    """Describe an sObject: fields, required flags, picklists, record types and child relationships.

Results are cached in-process per sObject type for one hour; cached responses
carry ``fromCache: true``.

Args:
    sobject_type: API name, e.g. "Account" or "Invoice__c".
    use_cache: Serve from (and store into) the describe cache. Defaults to True.
"""
    context = ToolContext.create("describe_sobject", "metadata-retrieval")
    try:
        return format_success(await get_router().describe(sobject_type, use_cache=use_cache), context)
    except Exception as e:
        logger.error("describe_sobject: %s", e, exc_info=True)
        return format_error(e, context)


@register_tool
async def clear_describe_cache() -> str:
    """Drop every cached describe result."""
    context = ToolContext.create("clear_describe_cache", "cache-clear")
    try:
        cleared = get_router().clear_describe_cache()
        return format_success({"entriesCleared": cleared}, context)
    except Exception as e:
        logger.error("clear_describe_cache: %s", e, exc_info=True)
        return format_error(e, context)


@register_tool
async def get_record(sobject_type: str, record_id: str, fields: Optional[List[str]] = None) -> str:
    """Fetch one record by Id.

Args:
    sobject_type: API name of the object, e.g. "Contact".
    record_id: 15 or 18 character Salesforce Id.
    fields: Field names (relationship paths allowed) to return. Omit for every accessible field.
"""
    context = ToolContext.create("get_record", "retrieve")
    try:
        return format_success(await get_router().get_record(sobject_type, record_id, fields), context)
    except Exception as e:
        logger.error("get_record: %s", e, exc_info=True)
        return format_error(e, context)
