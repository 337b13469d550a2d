"""Anonymous Apex, asynchronous test runs and debug logs."""
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from salesforce_mcp.errors import RemoteOperationError, ValidationError
from salesforce_mcp.services.polling import AsyncJobHandle, JobPoller, JobStatus
from salesforce_mcp.services.soql import is_record_id, soql_quote, strip_attributes

logger = logging.getLogger(__name__)

TEST_CLASS_PATTERN = "%Test%"
TRACE_FLAG_DURATION = timedelta(hours=1)

_CLASS_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
_DATETIME_LITERAL = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})$")

DEBUG_LEVEL = {
    "MasterLabel": "MCP Server Debug Level",
    "ApexCode": "DEBUG",
    "ApexProfiling": "INFO",
    "Callout": "INFO",
    "Database": "INFO",
    "System": "DEBUG",
    "Validation": "INFO",
    "Visualforce": "INFO",
    "Workflow": "INFO",
}


def _soql_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _position(value: Any) -> Optional[int]:
    # executeAnonymous reports -1 when there is no source position
    return value if isinstance(value, int) and value >= 0 else None


def _tooling_query(sf, soql: str) -> Dict[str, Any]:
    return sf.toolingexecute("query/", params={"q": soql})


class ApexService:
    def __init__(self, session_manager, poller: JobPoller):
        self.session_manager = session_manager
        self.poller = poller

    # ------------------------------------------------------------------
    # Anonymous Apex
    # ------------------------------------------------------------------

    async def execute_anonymous(self, apex_code: str, capture_debug_logs: bool = True) -> Dict[str, Any]:
        if not apex_code or not apex_code.strip():
            raise ValidationError("Apex code must not be empty")

        session = await self.session_manager.get_session()
        if capture_debug_logs:
            await self._enable_debug_logging(session)

        logger.info("Executing anonymous Apex (%d chars)", len(apex_code))
        result = await session.execute(
            lambda sf: sf.toolingexecute("executeAnonymous/", params={"anonymousBody": apex_code})
        )
        logger.info("Apex execution completed, success: %s", result.get("success"))

        logs: List[str] = []
        if capture_debug_logs:
            try:
                logs = await self._recent_log_bodies(session, limit=1)
            except Exception as e:
                logger.warning("Could not retrieve debug logs: %s", e)

        return {
            "success": bool(result.get("success")),
            "compiled": bool(result.get("compiled")),
            "compileProblem": result.get("compileProblem"),
            "exceptionMessage": result.get("exceptionMessage"),
            "exceptionStackTrace": result.get("exceptionStackTrace"),
            "line": _position(result.get("line")),
            "column": _position(result.get("column")),
            "logs": logs,
        }

    async def _enable_debug_logging(self, session) -> None:
        """Make sure a live USER_DEBUG trace flag exists for the session user."""
        user_id = session.user_id
        if not user_id:
            logger.warning("Could not determine user id, debug logging not enabled")
            return

        now = datetime.now(timezone.utc)
        existing_q = (
            "SELECT Id FROM TraceFlag "
            f"WHERE TracedEntityId = '{soql_quote(user_id)}' "
            f"AND ExpirationDate > {_soql_datetime(now)} LIMIT 1"
        )
        try:
            existing = await session.execute(lambda sf: _tooling_query(sf, existing_q))
            if existing.get("size", existing.get("totalSize", 0)):
                logger.debug("Trace flag already active for %s", user_id)
                return

            level = dict(DEBUG_LEVEL, DeveloperName=f"MCPServer_Debug_{int(time.time())}")
            created = await session.execute(
                lambda sf: sf.toolingexecute("sobjects/DebugLevel/", method="POST", data=level)
            )
            trace_flag = {
                "TracedEntityId": user_id,
                "DebugLevelId": created["id"],
                "LogType": "USER_DEBUG",
                "StartDate": _soql_datetime(now),
                "ExpirationDate": _soql_datetime(now + TRACE_FLAG_DURATION),
            }
            await session.execute(
                lambda sf: sf.toolingexecute("sobjects/TraceFlag/", method="POST", data=trace_flag)
            )
            logger.info("Debug logging enabled for %s", user_id)
        except Exception as e:
            logger.warning("Could not enable debug logging: %s", e)

    async def _recent_log_bodies(self, session, limit: int = 1) -> List[str]:
        user_id = session.user_id
        if not user_id:
            logger.warning("Could not determine user id, skipping log retrieval")
            return []

        logs_q = (
            f"SELECT Id FROM ApexLog WHERE LogUserId = '{soql_quote(user_id)}' "
            f"ORDER BY StartTime DESC LIMIT {int(limit)}"
        )
        result = await session.execute(lambda sf: sf.query(logs_q))
        bodies = []
        for record in result.get("records") or []:
            log_id = record.get("Id")
            try:
                body = await session.execute(
                    lambda sf: sf.toolingexecute(f"sobjects/ApexLog/{log_id}/Body/")
                )
            except Exception as e:
                logger.warning("Could not retrieve log content for %s: %s", log_id, e)
                continue
            if body:
                bodies.append(body if isinstance(body, str) else str(body))
        return bodies

    # ------------------------------------------------------------------
    # Test runs
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_method_specs(test_methods: Optional[List[str]]) -> List[tuple]:
        specs = []
        for spec in test_methods or []:
            class_name, _, method_name = spec.partition(".")
            if not (_CLASS_NAME.match(class_name) and _CLASS_NAME.match(method_name)):
                raise ValidationError(f"Test method must look like ClassName.methodName, got {spec!r}")
            specs.append((class_name, method_name))
        return specs

    async def _class_id(self, session, class_name: str) -> str:
        soql = f"SELECT Id FROM ApexClass WHERE Name = '{soql_quote(class_name)}' LIMIT 1"
        result = await session.execute(lambda sf: sf.query(soql))
        records = result.get("records") or []
        if not records:
            raise RemoteOperationError(f"Apex class not found: {class_name}", error_code="NOT_FOUND")
        return records[0]["Id"]

    async def _all_test_classes(self, session) -> List[Dict[str, Any]]:
        soql = f"SELECT Id, Name FROM ApexClass WHERE Name LIKE '{TEST_CLASS_PATTERN}' ORDER BY Name"
        result = await session.execute(lambda sf: sf.query(soql))
        return result.get("records") or []

    async def run_tests(
        self,
        test_classes: Optional[List[str]] = None,
        test_methods: Optional[List[str]] = None,
        include_coverage: bool = True,
    ) -> Dict[str, Any]:
        for class_name in test_classes or []:
            if not _CLASS_NAME.match(class_name):
                raise ValidationError(f"Invalid Apex class name: {class_name!r}")
        method_specs = self._parse_method_specs(test_methods)

        session = await self.session_manager.get_session()

        tests: List[Dict[str, Any]] = []
        for class_name in test_classes or []:
            tests.append({"classId": await self._class_id(session, class_name)})
        for class_name, method_name in method_specs:
            tests.append({
                "classId": await self._class_id(session, class_name),
                "testMethods": [method_name],
            })

        if not tests:
            logger.info("No specific tests provided, running all test classes")
            tests = [{"classId": cls["Id"]} for cls in await self._all_test_classes(session)]
            if not tests:
                raise RemoteOperationError(
                    f"No Apex test classes match '{TEST_CLASS_PATTERN}'", error_code="NO_TESTS"
                )

        logger.info("Running %d test class(es)...", len(tests))
        job_id = await session.execute(
            lambda sf: sf.toolingexecute("runTestsAsynchronous/", method="POST", data={"tests": tests})
        )
        handle = AsyncJobHandle(str(job_id).strip('"'))

        outcome = await self.poller.poll(handle, lambda jid: self._test_run_status(session, jid))
        results = await self._test_results(session, handle.job_id)

        coverage = None
        if include_coverage:
            try:
                coverage = await self._code_coverage(session)
            except Exception as e:
                logger.warning("Could not retrieve code coverage: %s", e)

        failures = sum(1 for r in results if r["outcome"] == "Fail")
        summary = {
            "testRunId": handle.job_id,
            "status": outcome.status,
            "success": outcome.status == "Completed" and failures == 0,
            "pollAttempts": outcome.attempts,
            "run": outcome.payload,
            "totalTests": len(results),
            "testsRan": len(results),
            "failures": failures,
            "successes": sum(1 for r in results if r["outcome"] == "Pass"),
            "testResults": results,
            "codeCoverage": coverage,
        }
        if coverage:
            total = sum(c["numLocations"] for c in coverage)
            covered = sum(c["numLocations"] - c["numLocationsNotCovered"] for c in coverage)
            summary["coverage"] = {
                "totalLines": total,
                "coveredLines": covered,
                "coveragePercentage": round(covered * 100 / total) if total else 0,
            }
        logger.info("Test run %s finished: %s, %d failure(s)", handle.job_id, outcome.status, failures)
        return summary

    async def _test_run_status(self, session, job_id: str) -> JobStatus:
        soql = (
            "SELECT Id, Status, ClassesCompleted, ClassesEnqueued, MethodsCompleted, "
            "MethodsEnqueued, MethodsFailed FROM ApexTestRunResult "
            f"WHERE AsyncApexJobId = '{soql_quote(job_id)}' LIMIT 1"
        )
        result = await session.execute(lambda sf: sf.query(soql))
        records = strip_attributes(result.get("records") or [])
        if not records:
            # the run result row can lag behind the job submission
            return JobStatus("Queued")
        run = records[0]
        return JobStatus(run.get("Status") or "Queued", {
            "classesCompleted": run.get("ClassesCompleted"),
            "classesEnqueued": run.get("ClassesEnqueued"),
            "methodsCompleted": run.get("MethodsCompleted"),
            "methodsEnqueued": run.get("MethodsEnqueued"),
            "methodsFailed": run.get("MethodsFailed"),
        })

    async def _test_results(self, session, job_id: str) -> List[Dict[str, Any]]:
        soql = (
            "SELECT Id, QueueItemId, StackTrace, Message, AsyncApexJobId, MethodName, Outcome, "
            "ApexClass.Id, ApexClass.Name, ApexClass.NamespacePrefix, RunTime "
            f"FROM ApexTestResult WHERE AsyncApexJobId = '{soql_quote(job_id)}' "
            "ORDER BY ApexClass.Name, MethodName"
        )
        result = await session.execute(lambda sf: sf.query(soql))
        rows = []
        for test in strip_attributes(result.get("records") or []):
            apex_class = test.get("ApexClass") or {}
            rows.append({
                "id": test.get("Id"),
                "queueItemId": test.get("QueueItemId"),
                "stackTrace": test.get("StackTrace"),
                "message": test.get("Message"),
                "asyncApexJobId": test.get("AsyncApexJobId"),
                "methodName": test.get("MethodName"),
                "outcome": test.get("Outcome"),
                "apexClass": {
                    "id": apex_class.get("Id", ""),
                    "name": apex_class.get("Name", ""),
                    "namespacePrefix": apex_class.get("NamespacePrefix"),
                },
                "runTime": test.get("RunTime"),
            })
        return rows

    async def _code_coverage(self, session) -> List[Dict[str, Any]]:
        soql = (
            "SELECT ApexClassOrTrigger.Id, ApexClassOrTrigger.Name, NumLinesCovered, "
            "NumLinesUncovered FROM ApexCodeCoverageAggregate ORDER BY ApexClassOrTrigger.Name"
        )
        result = await session.execute(lambda sf: _tooling_query(sf, soql))
        coverage = []
        for record in result.get("records") or []:
            target = record.get("ApexClassOrTrigger") or {}
            covered = record.get("NumLinesCovered") or 0
            uncovered = record.get("NumLinesUncovered") or 0
            total = covered + uncovered
            coverage.append({
                "id": target.get("Id", ""),
                "name": target.get("Name", ""),
                "numLocations": total,
                "numLocationsNotCovered": uncovered,
                "coveragePercentage": round(covered * 100 / total) if total else 0,
            })
        return coverage

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------

    async def get_logs(
        self,
        limit: int = 10,
        user_id: Optional[str] = None,
        start_time: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not 1 <= int(limit) <= 2000:
            raise ValidationError("limit must be between 1 and 2000")
        conditions = []
        if user_id:
            if not is_record_id(user_id):
                raise ValidationError(f"Invalid user Id: {user_id!r}")
            conditions.append(f"LogUserId = '{user_id}'")
        if start_time:
            if not _DATETIME_LITERAL.match(start_time):
                raise ValidationError(
                    f"start_time must be an ISO-8601 datetime such as 2024-01-31T00:00:00Z, got {start_time!r}"
                )
            conditions.append(f"StartTime >= {start_time}")
        if operation:
            conditions.append(f"Operation = '{soql_quote(operation)}'")

        soql = (
            "SELECT Id, LogUserId, LogLength, LastModifiedDate, Request, Operation, "
            "Application, Status, DurationMilliseconds, StartTime, Location FROM ApexLog"
        )
        if conditions:
            soql += " WHERE " + " AND ".join(conditions)
        soql += f" ORDER BY StartTime DESC LIMIT {int(limit)}"

        session = await self.session_manager.get_session()
        result = await session.execute(lambda sf: sf.query(soql))
        logs = [
            {
                "id": r.get("Id"),
                "logUserId": r.get("LogUserId"),
                "logLength": r.get("LogLength"),
                "lastModifiedDate": r.get("LastModifiedDate"),
                "request": r.get("Request"),
                "operation": r.get("Operation"),
                "application": r.get("Application"),
                "status": r.get("Status"),
                "durationMilliseconds": r.get("DurationMilliseconds"),
                "startTime": r.get("StartTime"),
                "location": r.get("Location"),
            }
            for r in result.get("records") or []
        ]
        logger.info("Retrieved %d debug logs", len(logs))
        return {"totalCount": result.get("totalSize", len(logs)), "logs": logs}
