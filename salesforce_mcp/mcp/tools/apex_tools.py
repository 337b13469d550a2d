import logging
from typing import List, Optional

from salesforce_mcp.mcp.server import get_router, register_tool
from salesforce_mcp.responses import ToolContext, format_error, format_success

logger = logging.getLogger(__name__)


@register_tool
async def execute_apex(apex_code: str, capture_debug_logs: bool = True) -> str:
    """Execute anonymous Apex and optionally return the resulting debug log.

When ``capture_debug_logs`` is set, a USER_DEBUG trace flag is created for the
running user unless one is already active, and the newest ApexLog body is
returned in ``logs``. Log capture is best effort: a failure there never fails
the execution itself.

Compile errors and uncaught exceptions are reported in the payload
(``compiled``, ``compileProblem``, ``exceptionMessage``, ``line``, ``column``),
not as an error envelope.

Args:
    apex_code: Anonymous Apex block, e.g. "System.debug('hello');".
    capture_debug_logs: Enable trace flags and return the most recent log. Defaults to True.
"""
    context = ToolContext.create("execute_apex", "apex-execution")
    try:
        result = await get_router().execute_apex(apex_code, capture_debug_logs)
        return format_success(result, context)
    except Exception as e:
        logger.error("execute_apex: %s", e, exc_info=True)
        return format_error(e, context)


@register_tool
async def run_apex_tests(
    test_classes: Optional[List[str]] = None,
    test_methods: Optional[List[str]] = None,
    include_coverage: bool = True,
) -> str:
    """Run Apex tests asynchronously and wait for the results.

The run is polled every 5 seconds for up to 5 minutes. With no classes or
methods given, every class whose name contains "Test" is run.

Args:
    test_classes: Test class names to run in full.
    test_methods: Individual methods as "ClassName.methodName".
    include_coverage: Also return org-wide code coverage aggregates. Defaults to True.

Returns:
    str: JSON envelope; ``data`` holds testRunId, status, success, totalTests,
    failures, successes, testResults and (optionally) codeCoverage/coverage.
    A run that never finishes returns a JOB_TIMEOUT error.
"""
    context = ToolContext.create("run_apex_tests", "test-execution")
    try:
        result = await get_router().run_tests(test_classes, test_methods, include_coverage)
        return format_success(result, context)
    except Exception as e:
        logger.error("run_apex_tests: %s", e, exc_info=True)
        return format_error(e, context)


@register_tool
async def get_apex_logs(
    limit: int = 10,
    user_id: Optional[str] = None,
    start_time: Optional[str] = None,
    operation: Optional[str] = None,
) -> str:
    """List recent debug logs, newest first.

Args:
    limit: Maximum number of logs to return (1-2000). Defaults to 10.
    user_id: Only logs for this user Id.
    start_time: Only logs started at or after this ISO-8601 datetime, e.g. "2024-01-31T00:00:00Z".
    operation: Only logs for this operation, e.g. "/services/data/v59.0/tooling/executeAnonymous/".
"""
    context = ToolContext.create("get_apex_logs", "log-retrieval")
    try:
        result = await get_router().get_apex_logs(limit, user_id, start_time, operation)
        return format_success(result, context)
    except Exception as e:
        logger.error("get_apex_logs: %s", e, exc_info=True)
        return format_error(e, context)
