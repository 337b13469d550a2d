import logging
from typing import Any, Dict, List, Union

from salesforce_mcp.mcp.server import get_router, register_tool
from salesforce_mcp.responses import ToolContext, format_error, format_success

logger = logging.getLogger(__name__)

Records = Union[Dict[str, Any], List[Dict[str, Any]]]


# =============================================================================
# DML TOOLS
# =============================================================================
#
# Every DML tool routes by size: one record uses the per-record endpoint, up to
# SF_BULK_DML_THRESHOLD records (default 200) use sObject Collections, and
# anything larger becomes a Bulk API job. Per-record failures are reported in
# ``errors`` unless stop_on_failure is set.

@register_tool
async def create_record(
    sobject_type: str, records: Records, all_or_none: bool = False, stop_on_failure: bool = False
) -> str:
    """Create one record or a list of records.

Required fields are not checked locally; run ``describe_sobject`` first when
unsure which fields an object requires.

Args:
    sobject_type: API name of the object, e.g. "Account".
    records: A field map, or a list of field maps.
    all_or_none: Roll back the whole collection call if any record fails (collections path only).
    stop_on_failure: Return an error for the first failed record instead of collecting failures.

Returns:
    str: JSON envelope; ``data`` holds recordCount, successCount, failureCount,
    usedBulkAPI, executionMethod (single | collection | bulk), results and errors.

Examples:
    create_record("Account", {"Name": "Acme"})
    create_record("Contact", [{"LastName": "Doe"}, {"LastName": "Roe"}])
"""
    context = ToolContext.create("create_record", "create")
    try:
        result = await get_router().create(sobject_type, records, all_or_none, stop_on_failure)
        return format_success(result, context)
    except Exception as e:
        logger.error("create_record: %s", e, exc_info=True)
        return format_error(e, context)


@register_tool
async def update_record(
    sobject_type: str, records: Records, all_or_none: bool = False, stop_on_failure: bool = False
) -> str:
    """Update one record or a list of records; every record must carry a valid Id.

If any record lacks a valid Id the whole call fails before anything is sent.

Args:
    sobject_type: API name of the object.
    records: A field map with Id, or a list of them.
    all_or_none: Roll back the whole collection call if any record fails.
    stop_on_failure: Return an error for the first failed record instead of collecting failures.
"""
    context = ToolContext.create("update_record", "update")
    try:
        result = await get_router().update(sobject_type, records, all_or_none, stop_on_failure)
        return format_success(result, context)
    except Exception as e:
        logger.error("update_record: %s", e, exc_info=True)
        return format_error(e, context)


@register_tool
async def delete_record(
    sobject_type: str,
    record_ids: Union[str, List[str]],
    all_or_none: bool = False,
    stop_on_failure: bool = False,
) -> str:
    """Delete records by Id.

Args:
    sobject_type: API name of the object.
    record_ids: One Id or a list of Ids (15 or 18 characters).
    all_or_none: Roll back the whole collection call if any delete fails.
    stop_on_failure: Return an error for the first failed delete instead of collecting failures.
"""
    context = ToolContext.create("delete_record", "delete")
    try:
        result = await get_router().delete(sobject_type, record_ids, all_or_none, stop_on_failure)
        return format_success(result, context)
    except Exception as e:
        logger.error("delete_record: %s", e, exc_info=True)
        return format_error(e, context)


@register_tool
async def upsert_record(
    sobject_type: str,
    external_id_field: str,
    records: Records,
    all_or_none: bool = False,
    stop_on_failure: bool = False,
) -> str:
    """Insert or update records matched on an external Id field.

Args:
    sobject_type: API name of the object.
    external_id_field: External Id field used for matching, e.g. "ERP_Id__c".
    records: A field map, or a list of them; each must carry the external Id field.
    all_or_none: Roll back the whole collection call if any record fails.
    stop_on_failure: Return an error for the first failed record instead of collecting failures.
"""
    context = ToolContext.create("upsert_record", "upsert")
    try:
        result = await get_router().upsert(
            sobject_type, external_id_field, records, all_or_none, stop_on_failure
        )
        return format_success(result, context)
    except Exception as e:
        logger.error("upsert_record: %s", e, exc_info=True)
        return format_error(e, context)
