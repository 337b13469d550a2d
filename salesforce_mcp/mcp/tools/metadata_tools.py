import logging
from typing import List, Optional

from salesforce_mcp.mcp.server import get_router, register_tool
from salesforce_mcp.responses import ToolContext, format_error, format_success

logger = logging.getLogger(__name__)


# =============================================================================
# METADATA REST – DEPLOY / STATUS
# =============================================================================

@register_tool
async def deploy_metadata(
    zip_base64: Optional[str] = None,
    zip_path: Optional[str] = None,
    source_dir: Optional[str] = None,
    check_only: bool = False,
    rollback_on_error: bool = True,
    ignore_warnings: bool = False,
    run_tests: Optional[List[str]] = None,
    test_level: Optional[str] = None,
) -> str:
    """Deploy a metadata package and wait for the deployment to finish.

Exactly one source must be given. The package is submitted to the Metadata
REST ``deployRequest`` endpoint and polled every 5 seconds for up to 5 minutes.
Packages larger than SF_MAX_REQUEST_SIZE are rejected before upload.

Args:
    zip_base64: Base64-encoded zip with package.xml at its root.
    zip_path: Path to a zip file on the server's filesystem.
    source_dir: Path to a metadata-format directory containing package.xml; it is zipped on the fly.
    check_only: Validate without saving any change.
    rollback_on_error: Roll back everything if any component fails. Defaults to True.
    ignore_warnings: Deploy even when warnings are reported.
    run_tests: Test classes to run (switches test level to RunSpecifiedTests).
    test_level: NoTestRun, RunSpecifiedTests, RunLocalTests or RunAllTestsInOrg.

Returns:
    str: JSON envelope; ``data`` holds success, deploymentId, status, summary,
    componentFailures and runTestResult.
"""
    context = ToolContext.create("deploy_metadata", "metadata-deployment")
    try:
        options = {
            "checkOnly": check_only,
            "rollbackOnError": rollback_on_error,
            "ignoreWarnings": ignore_warnings,
            "runTests": run_tests or [],
            "testLevel": test_level,
        }
        result = await get_router().deploy_metadata(
            zip_base64=zip_base64, zip_path=zip_path, source_dir=source_dir, options=options
        )
        return format_success(result, context)
    except Exception as e:
        logger.error("deploy_metadata: %s", e, exc_info=True)
        return format_error(e, context)


@register_tool
async def get_metadata_deploy_status(job_id: str, include_details: bool = True) -> str:
    """
    Return the status and (optional) component failures/successes for a metadata deploy job.
    """
    context = ToolContext.create("get_metadata_deploy_status", "deploy-status")
    try:
        return format_success(await get_router().get_deploy_status(job_id, include_details), context)
    except Exception as e:
        logger.error("get_metadata_deploy_status: %s", e, exc_info=True)
        return format_error(e, context)


@register_tool
async def list_metadata_types(api_version: Optional[str] = None) -> str:
    """List the metadata types the org supports (Metadata API describeMetadata).

Use it to find the right ``component_type`` and folder names before a deploy or retrieve.

Args:
    api_version: API version to describe, e.g. "59.0". Defaults to the session's version.
"""
    context = ToolContext.create("list_metadata_types", "metadata-describe")
    try:
        return format_success(await get_router().list_metadata_types(api_version), context)
    except Exception as e:
        logger.error("list_metadata_types: %s", e, exc_info=True)
        return format_error(e, context)


# =============================================================================
# SINGLE COMPONENTS
# =============================================================================

@register_tool
async def deploy_component(
    component_type: str,
    name: str,
    body: Optional[str] = None,
    file_path: Optional[str] = None,
    check_only: bool = False,
    api_version: Optional[str] = None,
) -> str:
    """Create or update one metadata component from inline source or a file.

Routing by type:
- ApexClass / ApexTrigger: an existing component is updated through a Tooling
  MetadataContainer and ContainerAsyncRequest (``check_only`` compiles without
  saving). A new component is created through the Tooling API, or validated by a
  check-only Metadata deploy when ``check_only`` is set.
- Structural types (CustomObject, Layout, PermissionSet, Flow, ...): ``body`` is
  the metadata XML file, deployed through the Metadata API.

Args:
    component_type: Metadata type, e.g. "ApexClass" or "CustomObject".
    name: Component API name, e.g. "InvoiceService" or "Invoice__c".
    body: Component source (Apex code or metadata XML).
    file_path: Read the component source from this file instead of ``body``.
    check_only: Validate without saving.
    api_version: API version for new components. Defaults to the session's version.
"""
    context = ToolContext.create("deploy_component", "component-deployment")
    try:
        result = await get_router().deploy_component(
            component_type=component_type,
            name=name,
            body=body,
            file_path=file_path,
            check_only=check_only,
            api_version=api_version,
        )
        return format_success(result, context)
    except Exception as e:
        logger.error("deploy_component: %s", e, exc_info=True)
        return format_error(e, context)


@register_tool
async def retrieve_metadata(component_type: str, name: str) -> str:
    """Read one component's source (Apex) or metadata definition (structural types) via the Tooling API.

Args:
    component_type: Metadata type, e.g. "ApexClass", "ApexTrigger", "CustomObject".
    name: Component API name.
"""
    context = ToolContext.create("retrieve_metadata", "metadata-retrieval")
    try:
        return format_success(await get_router().retrieve_metadata(component_type, name), context)
    except Exception as e:
        logger.error("retrieve_metadata: %s", e, exc_info=True)
        return format_error(e, context)
