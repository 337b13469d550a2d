"""Operation routing.

Every tool call lands here. The router asks the session manager for a live
session, then picks the execution path from the operation and its size:
standard vs paginated for queries, per-record vs sObject Collections vs Bulk
API for DML. Apex and metadata operations are delegated to their services.
"""
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from salesforce_mcp.config import (
    DEFAULT_BULK_DML_THRESHOLD,
    DEFAULT_BULK_QUERY_THRESHOLD,
    Settings,
)
from salesforce_mcp.errors import RemoteOperationError, ValidationError
from salesforce_mcp.services.apex import ApexService
from salesforce_mcp.services.metadata import MetadataService
from salesforce_mcp.services.polling import JobPoller
from salesforce_mcp.services.soql import (
    clean_query,
    extract_limit,
    has_limit_clause,
    is_record_id,
    soql_quote,
    strip_attributes,
)

logger = logging.getLogger(__name__)

DESCRIBE_CACHE_TTL = 60 * 60  # seconds
COLLECTION_CHUNK_SIZE = 200
ORGANIZATION_QUERY = (
    "SELECT Id, Name, OrganizationType, IsSandbox, InstanceName FROM Organization LIMIT 1"
)

_API_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
_FIELD_PATH = re.compile(r"^[A-Za-z][A-Za-z0-9_]*(?:\.[A-Za-z][A-Za-z0-9_]*)*$")

Payload = Union[Dict[str, Any], str, Sequence[Any]]


class DescribeCache:
    """In-process describe results keyed by sObject type, expired on read.

    API names are case-insensitive in Salesforce, so keys are folded to lower case.
    """

    def __init__(self, ttl: float = DESCRIBE_CACHE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key.lower())
        if entry is None:
            return None
        stored_at, data = entry
        if self._clock() - stored_at > self.ttl:
            del self._entries[key.lower()]
            return None
        return data

    def set(self, key: str, data: Dict[str, Any]) -> None:
        self._entries[key.lower()] = (self._clock(), data)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def __len__(self) -> int:
        return len(self._entries)


def _require_api_name(value: str, what: str = "sObject type") -> str:
    if not isinstance(value, str) or not _API_NAME.match(value):
        raise ValidationError(f"Invalid {what}: {value!r}")
    return value


def _as_list(payload: Payload) -> Tuple[List[Any], bool]:
    """Normalize a lone item into a one-element list; report whether it was a list."""
    if isinstance(payload, (list, tuple)):
        return list(payload), True
    return [payload], False


def _chunks(items: List[Any], size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _error_entries(errors: Any) -> List[Dict[str, Any]]:
    if not errors:
        return []
    if isinstance(errors, dict):
        errors = [errors]
    entries = []
    for err in errors:
        if isinstance(err, dict):
            entries.append({
                "statusCode": err.get("statusCode") or err.get("errorCode"),
                "message": err.get("message"),
                "fields": err.get("fields") or [],
            })
        else:
            entries.append({"statusCode": None, "message": str(err), "fields": []})
    return entries


def _normalize_result(raw: Dict[str, Any], fallback_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": raw.get("id") or raw.get("Id") or fallback_id,
        "success": bool(raw.get("success")),
        "created": raw.get("created"),
        "errors": _error_entries(raw.get("errors")),
    }


def _add_required_field_hints(operation: str, sobject_type: str, results: List[Dict[str, Any]]) -> None:
    """Point REQUIRED_FIELD_MISSING failures on inserts at describe_sobject."""
    if operation not in ("create", "upsert"):
        return
    hint = (
        f"Missing required fields for {sobject_type}. Run describe_sobject with "
        f"sobject_type={sobject_type!r} and look for fields with required=true "
        "(not nillable and not defaulted on create)."
    )
    for result in results:
        for error in result["errors"]:
            if error.get("statusCode") == "REQUIRED_FIELD_MISSING":
                error["remediation"] = hint


class OperationRouter:
    def __init__(
        self,
        session_manager,
        bulk_dml_threshold: int = DEFAULT_BULK_DML_THRESHOLD,
        bulk_query_threshold: int = DEFAULT_BULK_QUERY_THRESHOLD,
        describe_cache: Optional[DescribeCache] = None,
        apex: Optional[ApexService] = None,
        metadata: Optional[MetadataService] = None,
        poller: Optional[JobPoller] = None,
    ):
        self.session_manager = session_manager
        self.bulk_dml_threshold = bulk_dml_threshold
        self.bulk_query_threshold = bulk_query_threshold
        self.describe_cache = describe_cache or DescribeCache()
        poller = poller or JobPoller()
        self.apex = apex or ApexService(session_manager, poller)
        self.metadata = metadata or MetadataService(session_manager, poller)

    @classmethod
    def from_settings(cls, settings: Settings, session_manager, poller: Optional[JobPoller] = None) -> "OperationRouter":
        poller = poller or JobPoller()
        return cls(
            session_manager,
            bulk_dml_threshold=settings.bulk_dml_threshold,
            bulk_query_threshold=settings.bulk_query_threshold,
            apex=ApexService(session_manager, poller),
            metadata=MetadataService(
                session_manager,
                poller,
                max_request_size=settings.max_request_size,
                timeout=settings.timeout_seconds,
            ),
        )

    async def connection_info(self) -> Dict[str, Any]:
        # Forced health check, regardless of the interval
        session = await self.session_manager.ensure_healthy_session()
        result = await session.execute(lambda sf: sf.query(ORGANIZATION_QUERY))
        orgs = strip_attributes(result.get("records") or [])
        return {
            "organization": orgs[0] if orgs else None,
            "session": session.describe(),
            **self.session_manager.info(),
        }

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def should_paginate(self, query: str) -> bool:
        """No LIMIT, or a numeric LIMIT above the query threshold, means paginate."""
        if not has_limit_clause(query):
            return True
        limit = extract_limit(query)
        return limit is not None and limit > self.bulk_query_threshold

    async def query(
        self, query: str, paginate: Optional[bool] = None, use_tooling_api: bool = False
    ) -> Dict[str, Any]:
        soql = clean_query(query)
        if not soql:
            raise ValidationError("Query must not be empty")

        use_pagination = paginate if paginate is not None else self.should_paginate(soql)
        session = await self.session_manager.get_session()

        if use_pagination:
            method = "paginated"
            logger.info("Using paginated query for large result set")
            result = await self._paginated_query(session, soql, use_tooling_api)
        else:
            method = "standard"
            result = await session.execute(lambda sf: self._first_page(sf, soql, use_tooling_api))

        records = strip_attributes(result.get("records") or [])
        logger.info("Query returned %d records (%s)", len(records), method)
        return {
            "totalSize": result.get("totalSize", len(records)),
            "done": result.get("done", True),
            "records": records,
            "executionMethod": method,
            "query": soql,
        }

    @staticmethod
    def _first_page(sf, soql: str, use_tooling_api: bool) -> Dict[str, Any]:
        if use_tooling_api:
            return sf.toolingexecute("query/", params={"q": soql})
        return sf.query(soql)

    async def _paginated_query(self, session, soql: str, use_tooling_api: bool) -> Dict[str, Any]:
        try:
            page = await session.execute(lambda sf: self._first_page(sf, soql, use_tooling_api))
            records = list(page.get("records") or [])
            while not page.get("done", True) and page.get("nextRecordsUrl"):
                next_url = page["nextRecordsUrl"]
                page = await session.execute(
                    lambda sf: sf.query_more(next_url, identifier_is_url=True)
                )
                records.extend(page.get("records") or [])
                logger.debug("Fetched %d records so far", len(records))
            return {"totalSize": len(records), "done": True, "records": records}
        except RemoteOperationError as e:
            logger.warning("Paginated query failed, falling back to a single query: %s", e)
            return await session.execute(lambda sf: self._first_page(sf, soql, use_tooling_api))

    async def search(self, search: str) -> Dict[str, Any]:
        sosl = clean_query(search)
        if not sosl:
            raise ValidationError("Search must not be empty")
        session = await self.session_manager.get_session()
        result = await session.execute(lambda sf: sf.search(sosl))
        records = strip_attributes((result or {}).get("searchRecords") or [])
        return {"searchRecords": records, "totalResults": len(records), "searchQuery": sosl}

    # ------------------------------------------------------------------
    # Describe
    # ------------------------------------------------------------------

    async def describe(self, sobject_type: str, use_cache: bool = True) -> Dict[str, Any]:
        _require_api_name(sobject_type)
        if use_cache:
            cached = self.describe_cache.get(sobject_type)
            if cached is not None:
                logger.info("Returning cached describe for %s", sobject_type)
                return {**cached, "fromCache": True}

        session = await self.session_manager.get_session()
        raw = await session.execute(lambda sf: getattr(sf, sobject_type).describe())
        data = self._summarize_describe(sobject_type, raw)
        if use_cache:
            self.describe_cache.set(sobject_type, data)
        return {**data, "fromCache": False}

    @staticmethod
    def _summarize_describe(sobject_type: str, raw: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "sobjectType": sobject_type,
            "name": raw.get("name"),
            "label": raw.get("label"),
            "labelPlural": raw.get("labelPlural"),
            "keyPrefix": raw.get("keyPrefix"),
            "createable": raw.get("createable"),
            "updateable": raw.get("updateable"),
            "deletable": raw.get("deletable"),
            "queryable": raw.get("queryable"),
            "searchable": raw.get("searchable"),
            "fields": [
                {
                    "name": f.get("name"),
                    "label": f.get("label"),
                    "type": f.get("type"),
                    "length": f.get("length"),
                    "required": not f.get("nillable", True) and not f.get("defaultedOnCreate", False),
                    "unique": f.get("unique"),
                    "createable": f.get("createable"),
                    "updateable": f.get("updateable"),
                    "externalId": f.get("externalId"),
                    "picklistValues": f.get("picklistValues") or [],
                }
                for f in raw.get("fields") or []
            ],
            "recordTypeInfos": raw.get("recordTypeInfos") or [],
            "childRelationships": [
                {
                    "childSObject": rel.get("childSObject"),
                    "field": rel.get("field"),
                    "relationshipName": rel.get("relationshipName"),
                }
                for rel in raw.get("childRelationships") or []
            ],
        }

    def clear_describe_cache(self) -> int:
        cleared = self.describe_cache.clear()
        logger.info("Describe cache cleared (%d entries)", cleared)
        return cleared

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def get_record(
        self, sobject_type: str, record_id: str, fields: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        _require_api_name(sobject_type)
        if not is_record_id(record_id):
            raise ValidationError(f"Invalid record Id: {record_id!r}")
        for field in fields or []:
            if not _FIELD_PATH.match(field):
                raise ValidationError(f"Invalid field name: {field!r}")

        session = await self.session_manager.get_session()
        if fields:
            soql = (
                f"SELECT {', '.join(fields)} FROM {sobject_type} "
                f"WHERE Id = '{soql_quote(record_id)}' LIMIT 1"
            )
            result = await session.execute(lambda sf: sf.query(soql))
            records = strip_attributes(result.get("records") or [])
            record = records[0] if records else None
        else:
            record = await session.execute(lambda sf: getattr(sf, sobject_type).get(record_id))
            if isinstance(record, dict):
                record.pop("attributes", None)

        return {
            "sobjectType": sobject_type,
            "recordId": record_id,
            "fieldsRequested": len(fields) if fields else "all",
            "record": record,
        }

    async def create(self, sobject_type: str, records: Payload, all_or_none: bool = False,
                     stop_on_failure: bool = False) -> Dict[str, Any]:
        return await self._dml("create", sobject_type, records, all_or_none=all_or_none,
                               stop_on_failure=stop_on_failure)

    async def update(self, sobject_type: str, records: Payload, all_or_none: bool = False,
                     stop_on_failure: bool = False) -> Dict[str, Any]:
        return await self._dml("update", sobject_type, records, all_or_none=all_or_none,
                               stop_on_failure=stop_on_failure)

    async def delete(self, sobject_type: str, record_ids: Payload, all_or_none: bool = False,
                     stop_on_failure: bool = False) -> Dict[str, Any]:
        return await self._dml("delete", sobject_type, record_ids, all_or_none=all_or_none,
                               stop_on_failure=stop_on_failure)

    async def upsert(self, sobject_type: str, external_id_field: str, records: Payload,
                     all_or_none: bool = False, stop_on_failure: bool = False) -> Dict[str, Any]:
        return await self._dml("upsert", sobject_type, records, external_id_field=external_id_field,
                               all_or_none=all_or_none, stop_on_failure=stop_on_failure)

    def validate_dml(self, operation: str, sobject_type: str, items: List[Any],
                     external_id_field: Optional[str] = None) -> None:
        """Pre-flight checks; nothing reaches Salesforce if any item is invalid."""
        _require_api_name(sobject_type)
        if not items:
            raise ValidationError(f"No records supplied for {operation}")

        if operation == "delete":
            for index, record_id in enumerate(items):
                if not is_record_id(record_id):
                    raise ValidationError(f"Item {index}: invalid record Id {record_id!r}")
            return

        for index, record in enumerate(items):
            if not isinstance(record, dict):
                raise ValidationError(f"Item {index}: expected a record object, got {type(record).__name__}")

        if operation == "update":
            for index, record in enumerate(items):
                if not is_record_id(record.get("Id")):
                    raise ValidationError(
                        f"Item {index}: all records must have a valid Id field for update operations"
                    )
        elif operation == "upsert":
            _require_api_name(external_id_field, "external Id field")
            for index, record in enumerate(items):
                if record.get(external_id_field) in (None, ""):
                    raise ValidationError(
                        f"Item {index}: missing external Id field {external_id_field}"
                    )

    async def _dml(self, operation: str, sobject_type: str, payload: Payload,
                   external_id_field: Optional[str] = None, all_or_none: bool = False,
                   stop_on_failure: bool = False) -> Dict[str, Any]:
        items, was_list = _as_list(payload)
        self.validate_dml(operation, sobject_type, items, external_id_field)

        session = await self.session_manager.get_session()
        logger.info("Processing %d %s record(s) for %s", len(items), sobject_type, operation)

        if len(items) > self.bulk_dml_threshold:
            method = "bulk"
            logger.info("Using Bulk API for large %s operation", operation)
            results = await self._bulk(session, operation, sobject_type, items, external_id_field)
            _add_required_field_hints(operation, sobject_type, results)
            self._check_stop(operation, results, stop_on_failure)
        elif was_list and len(items) > 1:
            method = "collection"
            results = []
            for chunk in _chunks(items, COLLECTION_CHUNK_SIZE):
                chunk_results = await self._collection(
                    session, operation, sobject_type, chunk, external_id_field, all_or_none
                )
                _add_required_field_hints(operation, sobject_type, chunk_results)
                results.extend(chunk_results)
                self._check_stop(operation, results, stop_on_failure)
        else:
            method = "single"
            results = [await self._single(session, operation, sobject_type, items[0], external_id_field)]
            _add_required_field_hints(operation, sobject_type, results)
            self._check_stop(operation, results, stop_on_failure)

        failures = [r for r in results if not r["success"]]
        summary = {
            "operation": operation,
            "sobjectType": sobject_type,
            "recordCount": len(items),
            "successCount": len(results) - len(failures),
            "failureCount": len(failures),
            "usedBulkAPI": method == "bulk",
            "executionMethod": method,
            "results": results,
            "errors": [{"id": r["id"], "errors": r["errors"]} for r in failures],
        }
        if external_id_field:
            summary["externalIdField"] = external_id_field
        logger.info(
            "%s on %s finished: %d succeeded, %d failed (%s)",
            operation, sobject_type, summary["successCount"], summary["failureCount"], method,
        )
        return summary

    @staticmethod
    def _check_stop(operation: str, results: List[Dict[str, Any]], stop_on_failure: bool) -> None:
        if not stop_on_failure:
            return
        for index, result in enumerate(results):
            if result["success"]:
                continue
            first = result["errors"][0] if result["errors"] else {}
            raise RemoteOperationError(
                first.get("message") or f"{operation} failed for record {index}",
                error_code=first.get("statusCode"),
                fields=first.get("fields"),
                details={"recordIndex": index, "id": result["id"], "errors": result["errors"]},
            )

    async def _bulk(self, session, operation: str, sobject_type: str, items: List[Any],
                    external_id_field: Optional[str]) -> List[Dict[str, Any]]:
        def run(sf):
            handler = getattr(sf.bulk, sobject_type)
            if operation == "create":
                return handler.insert(items, use_serial=False)
            if operation == "update":
                return handler.update(items, use_serial=False)
            if operation == "upsert":
                return handler.upsert(items, external_id_field, use_serial=False)
            return handler.delete([{"Id": record_id} for record_id in items], use_serial=False)

        raw = await session.execute(run)
        return [_normalize_result(r) for r in raw or []]

    async def _collection(self, session, operation: str, sobject_type: str, chunk: List[Any],
                          external_id_field: Optional[str], all_or_none: bool) -> List[Dict[str, Any]]:
        if operation == "delete":
            params = {"ids": ",".join(chunk), "allOrNone": str(all_or_none).lower()}
            raw = await session.execute(
                lambda sf: sf.restful("composite/sobjects", params=params, method="DELETE")
            )
            return [_normalize_result(r, record_id) for r, record_id in zip(raw or [], chunk)]

        body = {
            "allOrNone": all_or_none,
            "records": [{"attributes": {"type": sobject_type}, **record} for record in chunk],
        }
        if operation == "create":
            path, method = "composite/sobjects", "POST"
        elif operation == "update":
            path, method = "composite/sobjects", "PATCH"
        else:
            path, method = f"composite/sobjects/{sobject_type}/{external_id_field}", "PATCH"

        raw = await session.execute(lambda sf: sf.restful(path, method=method, json=body))
        return [
            _normalize_result(r, record.get("Id"))
            for r, record in zip(raw or [], chunk)
        ]

    async def _single(self, session, operation: str, sobject_type: str, item: Any,
                      external_id_field: Optional[str]) -> Dict[str, Any]:
        record_id = item if operation == "delete" else item.get("Id")
        try:
            if operation == "create":
                raw = await session.execute(lambda sf: getattr(sf, sobject_type).create(item))
                return _normalize_result(raw)
            if operation == "update":
                fields = {k: v for k, v in item.items() if k != "Id"}
                await session.execute(lambda sf: getattr(sf, sobject_type).update(record_id, fields))
            elif operation == "delete":
                await session.execute(lambda sf: getattr(sf, sobject_type).delete(record_id))
            else:
                key = f"{external_id_field}/{item[external_id_field]}"
                fields = {k: v for k, v in item.items() if k not in ("Id", external_id_field)}
                status = await session.execute(lambda sf: getattr(sf, sobject_type).upsert(key, fields))
                return {"id": record_id, "success": True, "created": status == 201, "errors": []}
        except RemoteOperationError as e:
            logger.error("%s failed for %s: %s", operation, sobject_type, e)
            return {
                "id": record_id,
                "success": False,
                "created": None,
                "errors": [{"statusCode": e.error_code, "message": str(e), "fields": e.fields}],
            }
        return {"id": record_id, "success": True, "created": None, "errors": []}

    # ------------------------------------------------------------------
    # Apex and metadata
    # ------------------------------------------------------------------

    async def execute_apex(self, apex_code: str, capture_debug_logs: bool = True) -> Dict[str, Any]:
        return await self.apex.execute_anonymous(apex_code, capture_debug_logs)

    async def run_tests(self, test_classes: Optional[List[str]] = None,
                        test_methods: Optional[List[str]] = None,
                        include_coverage: bool = True) -> Dict[str, Any]:
        return await self.apex.run_tests(test_classes, test_methods, include_coverage)

    async def get_apex_logs(self, limit: int = 10, user_id: Optional[str] = None,
                            start_time: Optional[str] = None, operation: Optional[str] = None) -> Dict[str, Any]:
        return await self.apex.get_logs(limit, user_id, start_time, operation)

    async def deploy_metadata(self, **kwargs) -> Dict[str, Any]:
        return await self.metadata.deploy_package(**kwargs)

    async def deploy_component(self, **kwargs) -> Dict[str, Any]:
        return await self.metadata.deploy_component(**kwargs)

    async def retrieve_metadata(self, component_type: str, name: str) -> Dict[str, Any]:
        return await self.metadata.retrieve_component(component_type, name)

    async def get_deploy_status(self, job_id: str, include_details: bool = True) -> Dict[str, Any]:
        return await self.metadata.get_deploy_status(job_id, include_details)

    async def list_metadata_types(self, api_version: Optional[str] = None) -> Dict[str, Any]:
        return await self.metadata.list_metadata_types(api_version)
