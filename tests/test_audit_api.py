"""Tests for the audit trail API endpoints."""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from apps.audit_api import main
from apps.audit_api.main import NO_MATCHES_MESSAGE, app
from packages.audit_config import AuditSettings
from packages.audit_store import AuditDatabase, ChangeKind

ORDER = "App\\Entity\\Order"
TAG = "App\\Entity\\Tag"
INVOICE = "App\\Entity\\Invoice"
ORDER_SOURCE = "audit-App-Entity-Order"
BASE = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def database(tmp_path):
    """Create temporary audit database with orders and tags."""
    database = AuditDatabase(tmp_path / "test_audit.db")
    orders = database.log(ORDER)
    tags = database.log(TAG)

    orders.append(
        "7", ChangeKind.UPDATED,
        {"status": {"old": "paid", "new": "shipped"}, "@context": {"requestId": "r-1"}},
        actor_id="42", actor_label="ops@example.com", occurred_at=BASE,
    )
    orders.append(
        "8", ChangeKind.UPDATED, {"total": {"old": 1, "new": 2}},
        actor_id="automation", actor_label="nightly-reindex", occurred_at=BASE + timedelta(minutes=5),
    )
    orders.append(
        "9", ChangeKind.REMOVED, {"class": ORDER, "label": "Order#9"},
        actor_id="42", actor_label="ops@example.com", occurred_at=BASE + timedelta(minutes=10),
    )
    tags.append(
        "3", ChangeKind.CREATED, {"class": TAG, "label": "vip", "@context": {"requestId": "r-1"}},
        actor_id="42", actor_label="ops@example.com", occurred_at=BASE + timedelta(minutes=1),
    )
    tags.append(
        "4", ChangeKind.CREATED, {"class": TAG, "label": "bulk"},
        actor_id=None, actor_label=None, occurred_at=BASE + timedelta(minutes=2),
    )
    return database


@pytest.fixture
def client(database):
    """Create test client with initialized services."""
    main.configure(AuditSettings(_env_file=None, db_path=str(database.db_path)), database)
    return TestClient(app)


class TestHealthEndpoints:
    """Test health check endpoints."""

    def test_root_endpoint(self, client):
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "Audit Trail API"
        assert data["status"] == "healthy"

    def test_health_endpoint(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["components"]["audit_database"]["entity_types"] == 2

    def test_request_id_header(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-123"})
        assert response.headers["x-request-id"] == "req-123"


class TestSourceEndpoints:
    """Test data source browsing."""

    def test_list_sources(self, client):
        response = client.get("/api/v1/audit/sources")

        assert response.status_code == 200
        sources = response.json()
        assert [s["identifier"] for s in sources] == [ORDER_SOURCE, "audit-App-Entity-Tag"]
        assert sources[0]["label"] == "Audit: Order"
        assert sources[0]["default_sort_by"] == "occurred_at"
        assert sources[0]["default_page_size"] == 50

    def test_entity_types_audited_after_startup(self, client, database):
        writer = AuditDatabase(database.db_path)
        writer.log(INVOICE).append(
            "5", ChangeKind.CREATED, {"class": INVOICE, "label": "Invoice#5", "@context": {"requestId": "r-1"}},
            actor_id="42", actor_label="ops@example.com", occurred_at=BASE,
        )

        sources = client.get("/api/v1/audit/sources").json()
        correlation = client.get("/api/v1/audit/correlation/r-1").json()

        assert [s["identifier"] for s in sources][-1] == "audit-App-Entity-Invoice"
        assert "Invoice" in [g["short_name"] for g in correlation["groups"]]
        assert client.get("/api/v1/audit/sources/audit-App-Entity-Invoice/entries").json()["total_items"] == 1

    def test_list_entries(self, client):
        response = client.get(f"/api/v1/audit/sources/{ORDER_SOURCE}/entries")

        assert response.status_code == 200
        data = response.json()
        assert data["total_items"] == 3
        assert [item["record"]["subject_id"] for item in data["items"]] == ["9", "8", "7"]
        assert data["items"][2]["preview"]["changes"][0]["field"] == "status"
        assert data["message"] is None

    def test_pagination_is_clamped(self, client):
        response = client.get(
            f"/api/v1/audit/sources/{ORDER_SOURCE}/entries", params={"page": 10, "page_size": 2}
        )

        data = response.json()
        assert data["current_page"] == 2
        assert data["total_pages"] == 2
        assert len(data["items"]) == 1

    def test_filters(self, client):
        url = f"/api/v1/audit/sources/{ORDER_SOURCE}/entries"

        hidden = client.get(url, params={"hide_system": "1"}).json()
        kinds = client.get(url, params=[("change_kind", "remove"), ("change_kind", "insert")]).json()
        dated = client.get(url, params={"from": "2024-03-10T12:04:00+00:00", "to": "2024-03-10"}).json()
        by_request = client.get(url, params={"request_id": "r-1"}).json()

        assert [i["record"]["subject_id"] for i in hidden["items"]] == ["9", "7"]
        assert [i["record"]["subject_id"] for i in kinds["items"]] == ["9"]
        assert dated["total_items"] == 2
        assert [i["record"]["subject_id"] for i in by_request["items"]] == ["7"]

    def test_search(self, client):
        response = client.get(f"/api/v1/audit/sources/{ORDER_SOURCE}/entries", params={"search": "SHIPPED"})
        assert [i["record"]["subject_id"] for i in response.json()["items"]] == ["7"]

    def test_no_matches_message(self, client):
        response = client.get(f"/api/v1/audit/sources/{ORDER_SOURCE}/entries", params={"subject_id": "404"})

        data = response.json()
        assert data["items"] == []
        assert data["current_page"] == 1
        assert data["message"] == NO_MATCHES_MESSAGE

    def test_malformed_date_is_bad_request(self, client):
        response = client.get(f"/api/v1/audit/sources/{ORDER_SOURCE}/entries", params={"from": "soon"})

        assert response.status_code == 400
        assert "Invalid date format" in response.json()["detail"]

    def test_invalid_page_size_is_bad_request(self, client):
        response = client.get(f"/api/v1/audit/sources/{ORDER_SOURCE}/entries", params={"page_size": 0})
        assert response.status_code == 400

    def test_unknown_source(self, client):
        response = client.get("/api/v1/audit/sources/audit-Nope/entries")
        assert response.status_code == 404

    def test_get_entry(self, client):
        response = client.get(f"/api/v1/audit/sources/{ORDER_SOURCE}/entries/1")

        assert response.status_code == 200
        data = response.json()
        assert data["record"]["subject_id"] == "7"
        assert data["record"]["shape"] == "field_update"
        assert data["short_name"] == "Order"
        assert data["details"]["updates"]["status"] == {"old": "paid", "new": "shipped"}
        assert data["details"]["metadata"]["@context"] == {"requestId": "r-1"}

    def test_get_unknown_entry(self, client):
        assert client.get(f"/api/v1/audit/sources/{ORDER_SOURCE}/entries/999").status_code == 404
        assert client.get(f"/api/v1/audit/sources/{ORDER_SOURCE}/entries/abc").status_code == 404


class TestCorrelationEndpoint:
    """Test /api/v1/audit/correlation/{request_id}."""

    def test_correlation(self, client):
        response = client.get("/api/v1/audit/correlation/r-1")

        assert response.status_code == 200
        data = response.json()
        assert data["total_records"] == 2
        assert [g["short_name"] for g in data["groups"]] == ["Order", "Tag"]
        assert data["message"] is None

    def test_no_matches(self, client):
        data = client.get("/api/v1/audit/correlation/unknown").json()

        assert data["groups"] == []
        assert data["message"] == NO_MATCHES_MESSAGE


class TestTimelineEndpoints:
    """Test global and actor timelines."""

    def test_global_timeline(self, client):
        response = client.get(
            "/api/v1/audit/timeline",
            params={"user": "ops@example.com", "from": "2024-03-10", "to": "2024-03-10"},
        )

        assert response.status_code == 200
        data = response.json()
        assert [e["record"]["subject_id"] for e in data["entries"]] == ["7", "3", "9"]
        assert data["include_system"] is False
        assert data["entity_types"] == {ORDER: "Order", TAG: "Tag"}
        assert data["change_kinds"] == ["insert", "remove", "update"]

    def test_include_system_defaults_to_anchor(self, client):
        params = {"user": "ops@example.com", "from": "2024-03-10", "to": "2024-03-10"}

        anchored = client.get("/api/v1/audit/timeline", params={**params, "anchor_is_system": "1"}).json()
        overridden = client.get(
            "/api/v1/audit/timeline",
            params={**params, "anchor_is_system": "1", "include_system": "0"},
        ).json()

        assert anchored["include_system"] is True
        assert [e["record"]["subject_id"] for e in anchored["entries"]] == ["7", "3", "4", "9"]
        assert overridden["include_system"] is False

    def test_timeline_filters(self, client):
        response = client.get(
            "/api/v1/audit/timeline",
            params=[
                ("user", "ops@example.com"),
                ("from", "2024-03-10"),
                ("to", "2024-03-10"),
                ("entities", ORDER),
                ("actions", "remove"),
            ],
        )

        data = response.json()
        assert [e["record"]["subject_id"] for e in data["entries"]] == ["9"]
        # Facets describe the unfiltered timeline
        assert set(data["entity_types"]) == {ORDER, TAG}

    def test_empty_timeline(self, client):
        data = client.get(
            "/api/v1/audit/timeline",
            params={"user": "nobody@example.com", "from": "2024-03-10", "to": "2024-03-10"},
        ).json()

        assert data["entries"] == []
        assert data["message"] == NO_MATCHES_MESSAGE

    def test_actor_timeline(self, client):
        response = client.get(
            "/api/v1/audit/actor-timeline",
            params={"actor": "OPS@example.com", "at": "2024-03-10T12:00:00+00:00", "window_minutes": 5},
        )

        assert response.status_code == 200
        data = response.json()
        assert [e["record"]["subject_id"] for e in data["entries"]] == ["7", "3"]

    def test_actor_timeline_bad_date(self, client):
        response = client.get("/api/v1/audit/actor-timeline", params={"at": "noon"})
        assert response.status_code == 400
