"""Tests for OperationRouter path selection and pre-flight validation."""
import pytest
from simple_salesforce.exceptions import SalesforceMalformedRequest

from salesforce_mcp.errors import RemoteOperationError, ValidationError
from salesforce_mcp.services.router import DescribeCache, OperationRouter


def _ids(n, prefix="001"):
    return [f"{prefix}{i:015d}" for i in range(n)]


def _ok(ids):
    return [{"id": i, "success": True, "errors": []} for i in ids]


@pytest.fixture
def router(session_manager, poller, fake_clock):
    return OperationRouter(session_manager, describe_cache=DescribeCache(clock=fake_clock), poller=poller)


# --- Connection ---

@pytest.mark.asyncio
async def test_connection_info_forces_health_check(router, client, session_manager):
    client.query.return_value = {"records": [{"attributes": {"type": "Organization"}, "Id": "00D000000000001AAA", "Name": "Acme"}]}

    info = await router.connection_info()

    assert session_manager.health_checks == 1
    assert session_manager.get_calls == 0
    assert info["organization"] == {"Id": "00D000000000001AAA", "Name": "Acme"}
    assert info["connected"] is True


# --- Query routing ---

@pytest.mark.parametrize("query, paginate", [
    ("SELECT Id FROM Account", True),
    ("SELECT Id FROM Account LIMIT 2001", True),
    ("SELECT Id FROM Account LIMIT 2000", False),
    ("SELECT Id FROM Account limit 10", False),
    ("SELECT Id FROM Account LIMIT :pageSize", False),
])
def test_should_paginate(router, query, paginate):
    assert router.should_paginate(query) is paginate


@pytest.mark.asyncio
async def test_paginated_query_concatenates_pages(router, client):
    client.query.return_value = {
        "totalSize": 2000,
        "done": False,
        "nextRecordsUrl": "/services/data/v59.0/query/01gD0000002HU6KIAW-1500",
        "records": [{"attributes": {"type": "Account"}, "Id": str(i)} for i in range(1500)],
    }
    client.query_more.return_value = {
        "totalSize": 2000,
        "done": True,
        "records": [{"attributes": {"type": "Account"}, "Id": str(i)} for i in range(1500, 2000)],
    }

    result = await router.query("SELECT Id FROM Account")

    assert result["executionMethod"] == "paginated"
    assert result["totalSize"] == 2000
    assert result["done"] is True
    assert len(result["records"]) == 2000
    assert "attributes" not in result["records"][0]
    client.query_more.assert_called_once_with(
        "/services/data/v59.0/query/01gD0000002HU6KIAW-1500", identifier_is_url=True
    )


@pytest.mark.asyncio
async def test_paginated_query_falls_back_to_single_fetch(router, client):
    client.query.return_value = {
        "totalSize": 3, "done": False, "nextRecordsUrl": "/next", "records": [{"Id": "1"}],
    }
    client.query_more.side_effect = SalesforceMalformedRequest(
        "https://acme/next", 400, "query", [{"message": "invalid cursor", "errorCode": "INVALID_QUERY_LOCATOR"}]
    )

    result = await router.query("SELECT Id FROM Account")

    assert client.query.call_count == 2
    assert result["records"] == [{"Id": "1"}]
    assert result["done"] is False


@pytest.mark.asyncio
async def test_standard_query_is_single_round_trip(router, client):
    client.query.return_value = {"totalSize": 1, "done": True, "records": [{"Id": "1"}]}

    result = await router.query("SELECT  Id\n FROM Account\n LIMIT 5")

    assert result["executionMethod"] == "standard"
    client.query.assert_called_once_with("SELECT Id FROM Account LIMIT 5")
    client.query_more.assert_not_called()


@pytest.mark.asyncio
async def test_forced_mode_and_tooling_api(router, client):
    client.toolingexecute.return_value = {"totalSize": 1, "done": True, "records": [{"Name": "Foo"}]}

    result = await router.query("SELECT Name FROM ApexClass", paginate=False, use_tooling_api=True)

    assert result["executionMethod"] == "standard"
    client.toolingexecute.assert_called_once_with("query/", params={"q": "SELECT Name FROM ApexClass"})
    client.query.assert_not_called()


@pytest.mark.asyncio
async def test_search(router, client):
    client.search.return_value = {"searchRecords": [{"attributes": {"type": "Account"}, "Id": "1"}]}

    result = await router.search("FIND {Acme} RETURNING Account(Id)")

    assert result["totalResults"] == 1
    assert result["searchRecords"] == [{"Id": "1"}]


# --- Describe cache ---

@pytest.mark.asyncio
async def test_describe_cache_hit_within_ttl(router, client, fake_clock):
    client.Account.describe.return_value = {
        "name": "Account", "label": "Account",
        "fields": [{"name": "Name", "nillable": False, "defaultedOnCreate": False}],
    }

    first = await router.describe("Account")
    fake_clock.advance(3599)
    second = await router.describe("Account")

    assert first["fromCache"] is False
    assert second["fromCache"] is True
    assert {k: v for k, v in first.items() if k != "fromCache"} == \
        {k: v for k, v in second.items() if k != "fromCache"}
    assert first["fields"][0]["required"] is True
    assert client.Account.describe.call_count == 1


@pytest.mark.asyncio
async def test_describe_cache_expires_after_ttl(router, client, fake_clock):
    client.Account.describe.side_effect = [{"name": "Account", "label": "Old"}, {"name": "Account", "label": "New"}]

    await router.describe("Account")
    fake_clock.advance(3601)
    refreshed = await router.describe("Account")

    assert refreshed["fromCache"] is False
    assert refreshed["label"] == "New"
    assert client.Account.describe.call_count == 2
    assert router.describe_cache.get("Account")["label"] == "New"


@pytest.mark.asyncio
async def test_describe_cache_ignores_api_name_case(router, client):
    client.Account.describe.return_value = {"name": "Account", "label": "Account"}

    await router.describe("Account")
    second = await router.describe("account")

    assert second["fromCache"] is True
    assert second["name"] == "Account"
    assert client.Account.describe.call_count == 1
    assert len(router.describe_cache) == 1


@pytest.mark.asyncio
async def test_clear_describe_cache(router, client):
    client.Contact.describe.return_value = {"name": "Contact"}
    await router.describe("Contact")

    assert router.clear_describe_cache() == 1
    assert len(router.describe_cache) == 0


# --- DML routing ---

@pytest.mark.asyncio
async def test_dml_at_threshold_uses_collections(router, client):
    records = [{"Name": f"Acme {i}"} for i in range(200)]
    client.restful.return_value = _ok(_ids(200))

    result = await router.create("Account", records)

    assert result["executionMethod"] == "collection"
    assert result["usedBulkAPI"] is False
    assert result["successCount"] == 200
    client.restful.assert_called_once()
    client.bulk.Account.insert.assert_not_called()


@pytest.mark.asyncio
async def test_dml_above_threshold_uses_bulk(router, client):
    records = [{"Name": f"Acme {i}"} for i in range(201)]
    client.bulk.Account.insert.return_value = [
        {"success": True, "created": True, "id": i, "errors": []} for i in _ids(201)
    ]

    result = await router.create("Account", records)

    assert result["executionMethod"] == "bulk"
    assert result["usedBulkAPI"] is True
    assert result["recordCount"] == 201
    client.bulk.Account.insert.assert_called_once_with(records, use_serial=False)
    client.restful.assert_not_called()


@pytest.mark.asyncio
async def test_single_record_uses_sobject_endpoint(router, client):
    client.Account.create.return_value = {"id": "001000000000001AAA", "success": True, "errors": []}

    result = await router.create("Account", {"Name": "Acme"})

    assert result["executionMethod"] == "single"
    assert result["results"][0]["id"] == "001000000000001AAA"
    client.Account.create.assert_called_once_with({"Name": "Acme"})


@pytest.mark.asyncio
async def test_update_missing_id_fails_before_any_remote_call(router, client, session_manager):
    records = [{"Id": "001000000000001AAA", "Name": "ok"}, {"Name": "no id"}]

    with pytest.raises(ValidationError, match="Item 1"):
        await router.update("Account", records)

    assert session_manager.get_calls == 0
    assert client.mock_calls == []


@pytest.mark.asyncio
async def test_delete_invalid_id_fails_before_any_remote_call(router, client, session_manager):
    with pytest.raises(ValidationError):
        await router.delete("Account", ["001000000000001AAA", "not-an-id"])

    assert session_manager.get_calls == 0
    assert client.mock_calls == []


@pytest.mark.asyncio
async def test_upsert_requires_external_id_on_every_record(router, client, session_manager):
    with pytest.raises(ValidationError, match="ERP_Id__c"):
        await router.upsert("Account", "ERP_Id__c", [{"ERP_Id__c": "A-1"}, {"Name": "missing"}])

    assert session_manager.get_calls == 0


@pytest.mark.asyncio
async def test_upsert_collection_path(router, client):
    client.restful.return_value = [
        {"id": "001000000000001AAA", "success": True, "created": True, "errors": []},
        {"id": "001000000000002AAA", "success": True, "created": False, "errors": []},
    ]

    result = await router.upsert("Account", "ERP_Id__c", [{"ERP_Id__c": "A-1"}, {"ERP_Id__c": "A-2"}])

    assert result["externalIdField"] == "ERP_Id__c"
    args, kwargs = client.restful.call_args
    assert args[0] == "composite/sobjects/Account/ERP_Id__c"
    assert kwargs["method"] == "PATCH"
    assert kwargs["json"]["records"][0]["attributes"] == {"type": "Account"}


@pytest.mark.asyncio
async def test_per_record_failures_are_collected(router, client):
    client.restful.return_value = [
        {"id": "001000000000001AAA", "success": True, "errors": []},
        {"success": False, "errors": [{"statusCode": "REQUIRED_FIELD_MISSING", "message": "Required fields are missing: [Name]", "fields": ["Name"]}]},
    ]

    result = await router.create("Account", [{"Name": "ok"}, {"Phone": "1"}])

    assert result["successCount"] == 1
    assert result["failureCount"] == 1
    assert result["errors"][0]["errors"][0]["message"] == "Required fields are missing: [Name]"


@pytest.mark.asyncio
async def test_stop_on_failure_raises_first_failure(router, client):
    client.restful.return_value = [
        {"id": "001000000000001AAA", "success": True, "errors": []},
        {"success": False, "errors": [{"statusCode": "REQUIRED_FIELD_MISSING", "message": "Required fields are missing: [Name]", "fields": ["Name"]}]},
    ]

    with pytest.raises(RemoteOperationError) as excinfo:
        await router.create("Account", [{"Name": "ok"}, {"Phone": "1"}], stop_on_failure=True)

    assert excinfo.value.error_code == "REQUIRED_FIELD_MISSING"
    assert excinfo.value.details["recordIndex"] == 1


@pytest.mark.asyncio
async def test_required_field_failures_point_at_describe(router, client):
    client.restful.return_value = [
        {"id": "001000000000001AAA", "success": True, "errors": []},
        {"success": False, "errors": [{"statusCode": "REQUIRED_FIELD_MISSING", "message": "Required fields are missing: [Name]", "fields": ["Name"]}]},
    ]

    result = await router.create("Account", [{"Name": "ok"}, {"Phone": "1"}])

    hint = result["errors"][0]["errors"][0]["remediation"]
    assert hint.startswith("Missing required fields for Account.")
    assert "describe_sobject" in hint


@pytest.mark.asyncio
async def test_required_field_hint_reaches_stop_on_failure(router, client):
    client.Contact.create.return_value = {
        "success": False,
        "errors": [{"statusCode": "REQUIRED_FIELD_MISSING", "message": "Required fields are missing: [LastName]", "fields": ["LastName"]}],
    }

    with pytest.raises(RemoteOperationError) as excinfo:
        await router.create("Contact", {"FirstName": "Ada"}, stop_on_failure=True)

    assert "describe_sobject" in excinfo.value.details["errors"][0]["remediation"]


@pytest.mark.asyncio
async def test_update_failures_carry_no_required_field_hint(router, client):
    client.restful.return_value = [
        {"id": "001000000000001AAA", "success": False, "errors": [{"statusCode": "REQUIRED_FIELD_MISSING", "message": "Required fields are missing: [Name]"}]},
        {"id": "001000000000002AAA", "success": True, "errors": []},
    ]

    result = await router.update("Account", [{"Id": "001000000000001AAA", "Name": None}, {"Id": "001000000000002AAA", "Name": "x"}])

    assert "remediation" not in result["errors"][0]["errors"][0]


@pytest.mark.asyncio
async def test_single_record_remote_failure_is_collected(router, client):
    client.Account.update.side_effect = SalesforceMalformedRequest(
        "https://acme/sobjects/Account/001000000000001AAA", 400, "Account",
        [{"message": "bad value for restricted picklist", "errorCode": "INVALID_OR_NULL_FOR_RESTRICTED_PICKLIST"}],
    )

    result = await router.update("Account", {"Id": "001000000000001AAA", "Rating": "Lukewarm"})

    assert result["failureCount"] == 1
    assert result["results"][0]["errors"][0]["statusCode"] == "INVALID_OR_NULL_FOR_RESTRICTED_PICKLIST"
    client.Account.update.assert_called_once_with("001000000000001AAA", {"Rating": "Lukewarm"})


@pytest.mark.asyncio
async def test_collection_delete_passes_ids(router, client):
    ids = _ids(3)
    client.restful.return_value = _ok(ids)

    result = await router.delete("Account", ids, all_or_none=True)

    client.restful.assert_called_once_with(
        "composite/sobjects", params={"ids": ",".join(ids), "allOrNone": "true"}, method="DELETE"
    )
    assert result["successCount"] == 3


# --- Records ---

@pytest.mark.asyncio
async def test_get_record_with_fields(router, client):
    client.query.return_value = {"records": [{"attributes": {}, "Id": "003000000000001AAA", "Email": "a@b.c"}]}

    result = await router.get_record("Contact", "003000000000001AAA", ["Id", "Email"])

    client.query.assert_called_once_with(
        "SELECT Id, Email FROM Contact WHERE Id = '003000000000001AAA' LIMIT 1"
    )
    assert result["record"] == {"Id": "003000000000001AAA", "Email": "a@b.c"}


@pytest.mark.asyncio
async def test_get_record_rejects_bad_id(router, session_manager):
    with pytest.raises(ValidationError):
        await router.get_record("Contact", "003' OR Id != '")
    assert session_manager.get_calls == 0
