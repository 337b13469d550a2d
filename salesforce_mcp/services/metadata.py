"""Metadata deployment and retrieval.

Executable components (Apex classes and triggers) go through the Tooling API
code path; structural components and whole packages go through the Metadata
REST ``deployRequest`` endpoint. Both kinds of job are awaited with the shared
:class:`~salesforce_mcp.services.polling.JobPoller`.

Metadata type listing uses the SOAP ``describeMetadata`` call.
"""
import base64
import binascii
import io
import json
import logging
import re
import time
import zipfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from lxml import etree
from simple_salesforce.metadata import SfdcMetadataApi

from salesforce_mcp.config import DEFAULT_MAX_REQUEST_SIZE
from salesforce_mcp.errors import RemoteOperationError, ValidationError
from salesforce_mcp.services.polling import AsyncJobHandle, JobPoller, JobStatus
from salesforce_mcp.services.soql import soql_quote, strip_attributes

logger = logging.getLogger(__name__)

PNS = "http://soap.sforce.com/2006/04/metadata"

# component type -> (member entity, zip folder, file suffix)
EXECUTABLE_TYPES = {
    "ApexClass": ("ApexClassMember", "classes", "cls"),
    "ApexTrigger": ("ApexTriggerMember", "triggers", "trigger"),
}

# component type -> (zip folder, file suffix)
STRUCTURAL_TYPES = {
    "CustomObject": ("objects", "object"),
    "CustomTab": ("tabs", "tab"),
    "CustomApplication": ("applications", "app"),
    "Layout": ("layouts", "layout"),
    "PermissionSet": ("permissionsets", "permissionset"),
    "Profile": ("profiles", "profile"),
    "FlexiPage": ("flexipages", "flexipage"),
    "Flow": ("flows", "flow"),
    "RemoteSiteSetting": ("remoteSiteSettings", "remoteSite"),
    "StaticResource": ("staticresources", "resource"),
}

# Tooling API field that holds the component name, when it is not DeveloperName.
_TOOLING_NAME_FIELDS = {"Layout": "Name", "Profile": "Name", "PermissionSet": "Name"}

DEPLOY_SUCCESS_STATUSES = {"Succeeded", "SucceededPartial"}
DEPLOY_OPTION_DEFAULTS = {
    "allowMissingFiles": False,
    "autoUpdatePackage": False,
    "checkOnly": False,
    "ignoreWarnings": False,
    "performRetrieve": False,
    "purgeOnDelete": False,
    "rollbackOnError": True,
    "runTests": [],
    "singlePackage": True,
    "testLevel": "NoTestRun",
}

_COMPONENT_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9_.\-]*$")
_TRIGGER_TARGET = re.compile(r"\btrigger\s+\w+\s+on\s+(\w+)", re.IGNORECASE)
_API_VERSION = re.compile(r"^\d{2,3}\.0$")


def _pretty_xml(node) -> str:
    return etree.tostring(
        node, encoding="UTF-8", xml_declaration=True, pretty_print=True
    ).decode("utf-8")


def generate_package_xml(members: List[str], metadata_type: str, api_version: str) -> str:
    """package.xml with one or more members of a single metadata type."""
    root = etree.Element(etree.QName(PNS, "Package"), nsmap={None: PNS})
    types_tag = etree.SubElement(root, etree.QName(PNS, "types"))
    for member in members:
        etree.SubElement(types_tag, etree.QName(PNS, "members")).text = member
    etree.SubElement(types_tag, etree.QName(PNS, "name")).text = metadata_type
    etree.SubElement(root, etree.QName(PNS, "version")).text = api_version
    return _pretty_xml(root)


def generate_code_meta_xml(component_type: str, api_version: str) -> str:
    """The ``-meta.xml`` companion of an Apex class or trigger."""
    root = etree.Element(etree.QName(PNS, component_type), nsmap={None: PNS})
    etree.SubElement(root, etree.QName(PNS, "apiVersion")).text = str(api_version)
    etree.SubElement(root, etree.QName(PNS, "status")).text = "Active"
    return _pretty_xml(root)


def build_component_zip(component_type: str, name: str, body: str, api_version: str) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as z:
        z.writestr("package.xml", generate_package_xml([name], component_type, api_version))
        if component_type in EXECUTABLE_TYPES:
            _, folder, suffix = EXECUTABLE_TYPES[component_type]
            z.writestr(f"{folder}/{name}.{suffix}", body)
            z.writestr(f"{folder}/{name}.{suffix}-meta.xml", generate_code_meta_xml(component_type, api_version))
        else:
            folder, suffix = STRUCTURAL_TYPES[component_type]
            z.writestr(f"{folder}/{name}.{suffix}", body)
    return buf.getvalue()


def zip_directory(source_dir: Path) -> bytes:
    """Zip a metadata-format directory that has package.xml at its root."""
    if not (source_dir / "package.xml").is_file():
        raise ValidationError(f"{source_dir} does not contain a package.xml")
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as z:
        for path in sorted(source_dir.rglob("*")):
            if path.is_file():
                z.write(path, path.relative_to(source_dir).as_posix())
    return buf.getvalue()


def deploy_status_to_job_status(result: Dict[str, Any]) -> JobStatus:
    """Map a ``deployResult`` onto the poller's terminal vocabulary."""
    status = result.get("status") or "Pending"
    if result.get("done"):
        if status in DEPLOY_SUCCESS_STATUSES:
            return JobStatus("Completed", result)
        if status in ("Canceled", "Canceling"):
            return JobStatus("Aborted", result)
        return JobStatus("Failed", result)
    return JobStatus(status, result)


def container_state_to_job_status(request: Dict[str, Any]) -> JobStatus:
    """Map a ContainerAsyncRequest ``State`` onto the poller's terminal vocabulary."""
    state = request.get("State") or "Queued"
    if state == "Completed":
        return JobStatus("Completed", request)
    if state in ("Failed", "Error", "Invalidated"):
        return JobStatus("Failed", request)
    if state == "Aborted":
        return JobStatus("Aborted", request)
    return JobStatus(state, request)


def _metadata_object_dict(obj) -> Dict[str, Any]:
    return {
        "xmlName": getattr(obj, "xmlName", None),
        "directoryName": getattr(obj, "directoryName", None),
        "suffix": getattr(obj, "suffix", None),
        "inFolder": bool(getattr(obj, "inFolder", False)),
        "metaFile": bool(getattr(obj, "metaFile", False)),
        "childXmlNames": list(getattr(obj, "childXmlNames", None) or []),
    }


class MetadataService:
    def __init__(
        self,
        session_manager,
        poller: JobPoller,
        max_request_size: int = DEFAULT_MAX_REQUEST_SIZE,
        timeout: float = 120.0,
        http: Any = requests,
    ):
        self.session_manager = session_manager
        self.poller = poller
        self.max_request_size = max_request_size
        self.timeout = timeout
        self._http = http

    def _check_size(self, size: int) -> None:
        if size > self.max_request_size:
            raise ValidationError(
                f"Payload is {size} bytes, larger than the {self.max_request_size} byte limit (SF_MAX_REQUEST_SIZE)"
            )

    # ------------------------------------------------------------------
    # Metadata REST deploy
    # ------------------------------------------------------------------

    def _submit_deploy(self, sf, zip_bytes: bytes, options: Dict[str, Any]) -> str:
        endpoint = f"{sf.base_url}metadata/deployRequest"
        headers = {
            "Authorization": f"Bearer {sf.session_id}",
            "Accept": "application/json",
        }
        files = {
            "entity_content": (None, json.dumps({"deployOptions": options}), "application/json"),
            "file": ("deploymentPackage.zip", zip_bytes, "application/zip"),
        }
        resp = self._http.post(endpoint, headers=headers, files=files, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if not data.get("id"):
            raise RemoteOperationError("Deploy response missing id", details=data)
        return data["id"]

    def _read_deploy(self, sf, job_id: str, include_details: bool = True) -> Dict[str, Any]:
        query = "?includeDetails=true" if include_details else ""
        endpoint = f"{sf.base_url}metadata/deployRequest/{job_id}{query}"
        headers = {"Authorization": f"Bearer {sf.session_id}", "Accept": "application/json"}
        resp = self._http.get(endpoint, headers=headers, timeout=self.timeout)
        resp.raise_for_status()
        payload = resp.json()
        return payload.get("deployResult", payload)

    async def deploy_zip(self, zip_bytes: bytes, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self._check_size(len(zip_bytes))
        deploy_options = dict(DEPLOY_OPTION_DEFAULTS)
        deploy_options.update({k: v for k, v in (options or {}).items() if v is not None})
        if deploy_options["runTests"] and deploy_options["testLevel"] == "NoTestRun":
            deploy_options["testLevel"] = "RunSpecifiedTests"

        session = await self.session_manager.get_session()
        logger.info("Starting metadata deployment (%d bytes, checkOnly=%s)", len(zip_bytes), deploy_options["checkOnly"])
        job_id = await session.execute(lambda sf: self._submit_deploy(sf, zip_bytes, deploy_options))
        logger.info("Deployment started, id %s", job_id)

        async def query_status(jid: str) -> JobStatus:
            result = await session.execute(lambda sf: self._read_deploy(sf, jid))
            return deploy_status_to_job_status(result)

        outcome = await self.poller.poll(AsyncJobHandle(job_id), query_status)
        result = outcome.payload or {}
        details = result.get("details") or {}
        summary = {
            "success": result.get("status") in DEPLOY_SUCCESS_STATUSES,
            "deploymentId": job_id,
            "status": result.get("status"),
            "pollAttempts": outcome.attempts,
            "summary": {
                "componentsDeployed": result.get("numberComponentsDeployed", 0),
                "componentsTotal": result.get("numberComponentsTotal", 0),
                "componentErrors": result.get("numberComponentErrors", 0),
                "testsPassed": result.get("numberTestsCompleted", 0),
                "testsTotal": result.get("numberTestsTotal", 0),
                "checkOnly": deploy_options["checkOnly"],
                "rollbackOnError": deploy_options["rollbackOnError"],
            },
            "componentFailures": details.get("componentFailures") or [],
            "runTestResult": details.get("runTestResult"),
        }
        logger.info("Deployment %s completed with status %s", job_id, summary["status"])
        return summary

    async def deploy_package(
        self,
        zip_base64: Optional[str] = None,
        zip_path: Optional[str] = None,
        source_dir: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Deploy a package from exactly one of: base64 zip, zip file, source directory."""
        sources = [s for s in (zip_base64, zip_path, source_dir) if s]
        if len(sources) != 1:
            raise ValidationError("Provide exactly one of zip_base64, zip_path or source_dir")

        if zip_base64:
            self._check_size(len(zip_base64) * 3 // 4)
            try:
                zip_bytes = base64.b64decode(zip_base64, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValidationError(f"Invalid base64 zip file: {e}") from e
        elif zip_path:
            path = Path(zip_path).expanduser()
            if not path.is_file():
                raise ValidationError(f"Zip file not found: {zip_path}")
            self._check_size(path.stat().st_size)
            zip_bytes = path.read_bytes()
        else:
            path = Path(source_dir).expanduser()
            if not path.is_dir():
                raise ValidationError(f"Source directory not found: {source_dir}")
            zip_bytes = zip_directory(path)

        if not zipfile.is_zipfile(io.BytesIO(zip_bytes)):
            raise ValidationError("Deployment payload is not a zip archive")
        return await self.deploy_zip(zip_bytes, options)

    async def get_deploy_status(self, job_id: str, include_details: bool = True) -> Dict[str, Any]:
        session = await self.session_manager.get_session()
        result = await session.execute(lambda sf: self._read_deploy(sf, job_id, include_details))
        return {
            "deploymentId": job_id,
            "done": bool(result.get("done")),
            "success": result.get("status") in DEPLOY_SUCCESS_STATUSES,
            "status": result.get("status"),
            "details": result.get("details"),
        }

    # ------------------------------------------------------------------
    # Metadata types
    # ------------------------------------------------------------------

    async def list_metadata_types(self, api_version: Optional[str] = None) -> Dict[str, Any]:
        """describeMetadata through the SOAP Metadata API, one entry per type."""
        if api_version is not None and not _API_VERSION.match(api_version):
            raise ValidationError(f"Invalid API version {api_version!r}; expected a value like '59.0'")
        session = await self.session_manager.get_session()

        def run(sf):
            if api_version is None or api_version == sf.sf_version:
                return sf.sf_version, sf.mdapi.describe_metadata()
            mdapi = SfdcMetadataApi(
                session=sf.session,
                session_id=sf.session_id,
                instance=sf.sf_instance,
                metadata_url=f"https://{sf.sf_instance}/services/Soap/m/{api_version}/",
                headers=sf.headers,
                api_version=api_version,
            )
            return api_version, mdapi.describe_metadata()

        version, result = await session.execute(run)
        types = [_metadata_object_dict(obj) for obj in getattr(result, "metadataObjects", None) or []]
        logger.info("Listed %d metadata types (API v%s)", len(types), version)
        return {
            "apiVersion": version,
            "organizationNamespace": getattr(result, "organizationNamespace", None) or "",
            "partialSaveAllowed": bool(getattr(result, "partialSaveAllowed", False)),
            "testRequired": bool(getattr(result, "testRequired", False)),
            "metadataTypeCount": len(types),
            "metadataTypes": types,
        }

    # ------------------------------------------------------------------
    # Single components
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_component(component_type: str, name: str) -> None:
        if component_type not in EXECUTABLE_TYPES and component_type not in STRUCTURAL_TYPES:
            supported = ", ".join(sorted({*EXECUTABLE_TYPES, *STRUCTURAL_TYPES}))
            raise ValidationError(f"Unsupported component type {component_type!r}. Supported: {supported}")
        if not name or not _COMPONENT_NAME.match(name):
            raise ValidationError(f"Invalid component name: {name!r}")

    async def deploy_component(
        self,
        component_type: str,
        name: str,
        body: Optional[str] = None,
        file_path: Optional[str] = None,
        check_only: bool = False,
        api_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._validate_component(component_type, name)
        if bool(body) == bool(file_path):
            raise ValidationError("Provide exactly one of body or file_path")
        if file_path:
            path = Path(file_path).expanduser()
            if not path.is_file():
                raise ValidationError(f"File not found: {file_path}")
            body = path.read_text(encoding="utf-8")
        self._check_size(len(body.encode("utf-8")))

        if component_type not in EXECUTABLE_TYPES:
            session = await self.session_manager.get_session()
            version = api_version or session.api_version
            result = await self.deploy_zip(
                build_component_zip(component_type, name, body, version), {"checkOnly": check_only}
            )
            return {"componentType": component_type, "name": name, "route": "metadata-api", **result}

        session = await self.session_manager.get_session()
        existing_id = await self._find_code_component(session, component_type, name)
        if existing_id:
            result = await self._update_code_component(session, component_type, existing_id, body, check_only)
        elif check_only:
            version = api_version or session.api_version
            result = await self.deploy_zip(
                build_component_zip(component_type, name, body, version), {"checkOnly": True}
            )
        else:
            result = await self._create_code_component(session, component_type, name, body, api_version)
        return {"componentType": component_type, "name": name, "checkOnly": check_only, **result}

    async def _find_code_component(self, session, component_type: str, name: str) -> Optional[str]:
        soql = f"SELECT Id FROM {component_type} WHERE Name = '{soql_quote(name)}' LIMIT 1"
        result = await session.execute(lambda sf: sf.toolingexecute("query/", params={"q": soql}))
        records = result.get("records") or []
        return records[0]["Id"] if records else None

    async def _create_code_component(
        self, session, component_type: str, name: str, body: str, api_version: Optional[str]
    ) -> Dict[str, Any]:
        record: Dict[str, Any] = {"Name": name, "Body": body}
        if api_version:
            record["ApiVersion"] = float(api_version)
        if component_type == "ApexTrigger":
            match = _TRIGGER_TARGET.search(body)
            if not match:
                raise ValidationError("Trigger body must declare 'trigger <Name> on <SObject>'")
            record["TableEnumOrId"] = match.group(1)

        logger.info("Creating %s %s via Tooling API", component_type, name)
        created = await session.execute(
            lambda sf: sf.toolingexecute(f"sobjects/{component_type}/", method="POST", data=record)
        )
        return {
            "route": "tooling-create",
            "success": bool(created.get("success")),
            "id": created.get("id"),
            "errors": created.get("errors") or [],
        }

    async def _update_code_component(
        self, session, component_type: str, component_id: str, body: str, check_only: bool
    ) -> Dict[str, Any]:
        member_type = EXECUTABLE_TYPES[component_type][0]
        container_name = f"mcp_{int(time.time() * 1000)}"[:32]

        container = await session.execute(
            lambda sf: sf.toolingexecute("sobjects/MetadataContainer/", method="POST", data={"Name": container_name})
        )
        container_id = container["id"]
        try:
            member = {"MetadataContainerId": container_id, "ContentEntityId": component_id, "Body": body}
            await session.execute(
                lambda sf: sf.toolingexecute(f"sobjects/{member_type}/", method="POST", data=member)
            )
            request = {"MetadataContainerId": container_id, "IsCheckOnly": check_only}
            submitted = await session.execute(
                lambda sf: sf.toolingexecute("sobjects/ContainerAsyncRequest/", method="POST", data=request)
            )
            request_id = submitted["id"]
            logger.info("ContainerAsyncRequest %s submitted (checkOnly=%s)", request_id, check_only)

            async def query_status(jid: str) -> JobStatus:
                state = await session.execute(
                    lambda sf: sf.toolingexecute(f"sobjects/ContainerAsyncRequest/{jid}/")
                )
                return container_state_to_job_status(state)

            outcome = await self.poller.poll(AsyncJobHandle(request_id), query_status)
        finally:
            try:
                await session.execute(
                    lambda sf: sf.toolingexecute(f"sobjects/MetadataContainer/{container_id}/", method="DELETE")
                )
            except Exception as e:
                logger.warning("Could not delete MetadataContainer %s: %s", container_id, e)

        payload = outcome.payload or {}
        deploy_details = payload.get("DeployDetails") or {}
        return {
            "route": "tooling-container",
            "success": outcome.status == "Completed",
            "id": component_id,
            "requestId": request_id,
            "state": payload.get("State"),
            "errorMessage": payload.get("ErrorMsg"),
            "componentFailures": deploy_details.get("componentFailures") or [],
            "pollAttempts": outcome.attempts,
        }

    async def retrieve_component(self, component_type: str, name: str) -> Dict[str, Any]:
        self._validate_component(component_type, name)
        session = await self.session_manager.get_session()

        if component_type in EXECUTABLE_TYPES:
            fields = "Id, Name, Body, ApiVersion, Status, LengthWithoutComments, LastModifiedDate"
            if component_type == "ApexTrigger":
                fields += ", TableEnumOrId"
            soql = f"SELECT {fields} FROM {component_type} WHERE Name = '{soql_quote(name)}' LIMIT 1"
            route = "tooling-code"
        else:
            name_field = _TOOLING_NAME_FIELDS.get(component_type, "DeveloperName")
            lookup = re.sub(r"__(c|mdt|e|x|b)$", "", name) if name_field == "DeveloperName" else name
            soql = (
                f"SELECT Id, FullName, Metadata FROM {component_type} "
                f"WHERE {name_field} = '{soql_quote(lookup)}' LIMIT 1"
            )
            route = "tooling-metadata"

        result = await session.execute(lambda sf: sf.toolingexecute("query/", params={"q": soql}))
        records = strip_attributes(result.get("records") or [])
        if not records:
            raise RemoteOperationError(f"{component_type} {name} not found", error_code="NOT_FOUND")
        return {"componentType": component_type, "name": name, "route": route, "component": records[0]}
