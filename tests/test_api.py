"""API integration tests for the Statement Importer."""

from collections.abc import Iterator

import pytest
from conftest import OTHER_OWNER, OWNER, FakeQueue
from fastapi.testclient import TestClient

from app.core.db import Category, session_scope
from app.main import create_app

HTTP_200_OK = 200
HTTP_201_CREATED = 201
HTTP_204_NO_CONTENT = 204
HTTP_400_BAD_REQUEST = 400
HTTP_401_UNAUTHORIZED = 401
HTTP_404_NOT_FOUND = 404
HTTP_422_UNPROCESSABLE_ENTITY = 422

HEADERS = {"X-User-Id": OWNER}


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def client(settings, queue) -> Iterator[TestClient]:
    app = create_app(settings, queue=queue)
    with TestClient(app) as test_client:
        yield test_client


def _expect(response, status_code: int) -> dict:
    if response.status_code != status_code:
        msg = f"Expected status {status_code}, got {response.status_code}: {response.text}"
        raise AssertionError(msg)
    return response.json() if response.content else {}


def _create_batch(client: TestClient, total_files: int = 2) -> str:
    response = client.post("/batches", json={"import_type": "receipts", "total_files": total_files}, headers=HEADERS)
    return _expect(response, HTTP_201_CREATED)["id"]


def test_health(client, queue) -> None:
    """Test the /health endpoint returns status ok."""
    body = _expect(client.get("/health"), HTTP_200_OK)
    if body != {"status": "ok"}:
        msg = f"Expected response {{'status': 'ok'}}, got {body}"
        raise AssertionError(msg)
    if not queue.is_running or queue.handler is None:
        msg = "Expected the lifespan to attach a handler and start the queue"
        raise AssertionError(msg)


def test_scalar_docs(client) -> None:
    """Test the /scalar endpoint returns OpenAPI or Swagger docs."""
    response = client.get("/scalar")
    _expect(response, HTTP_200_OK)
    if not ("openapi" in response.text or "swagger" in response.text):
        msg = "Expected 'openapi' or 'swagger' in response text"
        raise AssertionError(msg)


def test_missing_owner_header(client) -> None:
    _expect(client.get("/batches"), HTTP_401_UNAUTHORIZED)


def test_batch_flow(client, queue) -> None:
    batch_id = _create_batch(client)
    item = client.post(
        f"/batches/{batch_id}/items",
        json={"file_name": "a.jpg", "file_url": "https://files.example.com/a.jpg", "order": 0},
        headers=HEADERS,
    )
    item_id = _expect(item, HTTP_201_CREATED)["id"]
    if [payload.item_id for payload in queue.payloads] != [item_id]:
        msg = f"Expected the item to be submitted, got {queue.payloads}"
        raise AssertionError(msg)

    _expect(client.patch(f"/items/{item_id}/status", json={"status": "processing"}, headers=HEADERS), HTTP_200_OK)
    _expect(
        client.patch(f"/items/{item_id}/status", json={"status": "completed", "document_id": "doc-1"}, headers=HEADERS),
        HTTP_200_OK,
    )
    progress = _expect(client.get(f"/batches/{batch_id}/progress", headers=HEADERS), HTTP_200_OK)
    if (progress["percentage"], progress["processed"], progress["status"]) != (50, 1, "processing"):
        msg = f"Unexpected progress {progress}"
        raise AssertionError(msg)

    summary = _expect(client.get(f"/batches/{batch_id}", headers=HEADERS), HTTP_200_OK)
    if summary["batch"]["successful_files"] != 1 or summary["items"][0]["document_id"] != "doc-1":
        msg = f"Unexpected summary {summary}"
        raise AssertionError(msg)

    page = _expect(client.get("/batches", params={"limit": 10}, headers=HEADERS), HTTP_200_OK)
    if [batch["id"] for batch in page["batches"]] != [batch_id] or page["next_cursor"] is not None:
        msg = f"Unexpected page {page}"
        raise AssertionError(msg)

    cancelled = _expect(client.post(f"/batches/{batch_id}/cancel", headers=HEADERS), HTTP_200_OK)
    if cancelled["status"] != "cancelled":
        msg = f"Expected a cancelled batch, got {cancelled}"
        raise AssertionError(msg)


def test_other_owner_gets_not_found(client) -> None:
    batch_id = _create_batch(client)
    response = client.get(f"/batches/{batch_id}/progress", headers={"X-User-Id": OTHER_OWNER})
    body = _expect(response, HTTP_404_NOT_FOUND)
    if body["code"] != "UNAUTHORIZED":
        msg = f"Unexpected error body {body}"
        raise AssertionError(msg)


def test_validation_errors(client) -> None:
    response = client.post("/batches", json={"import_type": "receipts", "total_files": 0}, headers=HEADERS)
    body = _expect(response, HTTP_400_BAD_REQUEST)
    if body["code"] != "VALIDATION_ERROR":
        msg = f"Unexpected error body {body}"
        raise AssertionError(msg)
    _expect(client.get("/batches", params={"limit": 500}, headers=HEADERS), HTTP_422_UNPROCESSABLE_ENTITY)

    batch_id = _create_batch(client, total_files=1)
    item = client.post(
        f"/batches/{batch_id}/items", json={"file_name": "a.jpg", "file_url": "https://f.example.com/a.jpg"}, headers=HEADERS
    )
    item_id = _expect(item, HTTP_201_CREATED)["id"]
    _expect(client.post(f"/items/{item_id}/retry", headers=HEADERS), HTTP_400_BAD_REQUEST)
    retried = _expect(client.post(f"/batches/{batch_id}/retry-failed", headers=HEADERS), HTTP_200_OK)
    if retried != {"success": True, "retried_count": 0, "errors": []}:
        msg = f"Unexpected bulk retry {retried}"
        raise AssertionError(msg)


def test_rules_and_categories(client) -> None:
    async def seed(session_factory) -> str:
        category = Category(name="Coffee", type="user", user_id=OWNER, usage_scope="personal", transaction_type="expense")
        async with session_scope(session_factory) as session:
            session.add(category)
        return category.id

    category_id = client.portal.call(seed, client.app.state.session_factory)

    categories = _expect(client.get("/categories", headers=HEADERS), HTTP_200_OK)
    if [category["name"] for category in categories] != ["Coffee"]:
        msg = f"Unexpected categories {categories}"
        raise AssertionError(msg)

    rule_body = {"field": "merchantName", "match_type": "contains", "value": "starbucks", "category_id": category_id}
    rule = _expect(client.post("/rules", json=rule_body, headers=HEADERS), HTTP_201_CREATED)
    bad = client.post("/rules", json={**rule_body, "match_type": "regex", "value": "(["}, headers=HEADERS)
    _expect(bad, HTTP_400_BAD_REQUEST)

    toggled = _expect(
        client.patch(f"/rules/{rule['id']}/enabled", json={"is_enabled": False}, headers=HEADERS), HTTP_200_OK
    )
    if toggled["is_enabled"] is not False:
        msg = f"Expected the rule to be disabled, got {toggled}"
        raise AssertionError(msg)
    _expect(client.delete(f"/rules/{rule['id']}", headers={"X-User-Id": OTHER_OWNER}), HTTP_404_NOT_FOUND)
    _expect(client.delete(f"/rules/{rule['id']}", headers=HEADERS), HTTP_204_NO_CONTENT)
    if _expect(client.get("/rules", headers=HEADERS), HTTP_200_OK) != []:
        msg = "Expected no rules after delete"
        raise AssertionError(msg)
