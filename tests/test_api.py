"""Tests for the FastAPI REST endpoints."""

from collections.abc import Iterator
from unittest.mock import patch

import pytest
from conftest import FakeFetcher, FakeRecognizer, RecordingNotifier
from fastapi.testclient import TestClient

from ekyc_ocr.api.app import app
from ekyc_ocr.exceptions import RecognitionFailed
from ekyc_ocr.reconciliation.service import ReconciliationService
from ekyc_ocr.records.store import InMemoryRecordStore
from ekyc_ocr.utils.config import AppConfig


@pytest.fixture
def api_service(fetcher: FakeFetcher) -> ReconciliationService:
    return ReconciliationService(
        store=InMemoryRecordStore(),
        recognizer=FakeRecognizer(),
        fetcher=fetcher,
        notifier=RecordingNotifier(),
        config=AppConfig(),
    )


@pytest.fixture
def client(api_service: ReconciliationService) -> Iterator[TestClient]:
    """Create a FastAPI test client backed by in-memory fakes."""
    with patch("ekyc_ocr.api.app._get_service", return_value=api_service):
        with TestClient(app) as test_client:
            yield test_client


def _start(client: TestClient, email: str = "asha@example.com") -> str:
    response = client.post(
        "/verifications", json={"subject_id": "user-1", "subject_email": email}
    )
    assert response.status_code == 200
    return response.json()["verification_id"]


def _upload(
    client: TestClient, vid: str, role: str = "id_front", url: str = "mem://front.png"
):
    return client.post(
        f"/verifications/{vid}/documents", json={"role": role, "document_url": url}
    )


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_returns_ok(self, client: TestClient) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert isinstance(data["tesseract_available"], bool)
        assert data["engine"] == "fake"


class TestVerificationEndpoints:
    """Tests for creating and reading verifications."""

    def test_start_verification(self, client: TestClient) -> None:
        response = client.post("/verifications", json={"subject_email": "A@B.com"})
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "Pending"
        assert data["subject_email"] == "a@b.com"
        assert data["extraction_status"] is None
        assert data["document_urls"] == {}

    def test_start_reuses_live_verification(self, client: TestClient) -> None:
        assert _start(client) == _start(client)

    def test_start_requires_identifier(self, client: TestClient) -> None:
        response = client.post("/verifications", json={})
        assert response.status_code == 400

    def test_unknown_verification(self, client: TestClient) -> None:
        response = client.get("/verifications/does-not-exist")
        assert response.status_code == 404
        assert "does-not-exist" in response.json()["detail"]

    def test_lookup_by_subject(self, client: TestClient) -> None:
        vid = _start(client)
        response = client.get(
            "/verifications", params={"subject_email": "Asha@Example.com"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["verification_id"] == vid
        assert data["status"] == "Pending"

    def test_lookup_returns_latest_after_rejection(self, client: TestClient) -> None:
        first = _start(client)
        client.post(f"/verifications/{first}/reject", json={"reason": "Blurry"})
        assert client.get(
            "/verifications", params={"subject_id": "user-1"}
        ).json()["status"] == "Rejected"

        second = _start(client)
        response = client.get("/verifications", params={"subject_id": "user-1"})
        assert response.json()["verification_id"] == second

    def test_lookup_unknown_subject(self, client: TestClient) -> None:
        response = client.get(
            "/verifications", params={"subject_email": "nobody@example.com"}
        )
        assert response.status_code == 404

    def test_lookup_requires_identifier(self, client: TestClient) -> None:
        assert client.get("/verifications").status_code == 400


class TestDocumentEndpoints:
    """Tests for document registration and background extraction."""

    def test_upload_front_runs_extraction(self, client: TestClient) -> None:
        vid = _start(client)
        response = _upload(client, vid)
        assert response.status_code == 202
        assert response.json()["extraction_status"] == "pending"

        state = client.get(f"/verifications/{vid}/extraction").json()
        assert state["extraction_status"] == "completed"
        assert state["fields"]["name"] == "Asha Rao"
        assert state["fields"]["date_of_birth"] == "01/02/1990"
        assert state["fields"]["id_number"] == "1234 5678 9012"
        assert state["manual_entry_required"] is False
        assert state["poll_interval_s"] == 3.0

    def test_upload_selfie_skips_extraction(
        self, client: TestClient, api_service: ReconciliationService
    ) -> None:
        vid = _start(client)
        response = _upload(client, vid, role="selfie", url="mem://selfie.png")
        assert response.status_code == 202
        assert response.json()["extraction_status"] is None
        assert api_service.recognizer.calls == 0

        record = client.get(f"/verifications/{vid}").json()
        assert record["document_urls"] == {"selfie": "mem://selfie.png"}

    def test_front_and_back_both_recorded(self, client: TestClient) -> None:
        vid = _start(client)
        _upload(client, vid)
        _upload(client, vid, role="id_back", url="mem://back.png")

        record = client.get(f"/verifications/{vid}").json()
        assert record["document_urls"] == {
            "id_front": "mem://front.png",
            "id_back": "mem://back.png",
        }
        documents = client.get(f"/verifications/{vid}/documents").json()
        assert [d["role"] for d in documents] == ["id_front", "id_back"]

    def test_corrupt_upload_requires_manual_entry(self, client: TestClient) -> None:
        vid = _start(client)
        _upload(client, vid, url="mem://corrupt.png")

        state = client.get(f"/verifications/{vid}/extraction").json()
        assert state["extraction_status"] == "failed"
        assert state["fields"] is None
        assert state["manual_entry_required"] is True
        assert state["error"].startswith("ImageDecodeError")

    def test_invalid_role(self, client: TestClient) -> None:
        vid = _start(client)
        response = _upload(client, vid, role="passport")
        assert response.status_code == 422

    def test_upload_to_unknown_verification(self, client: TestClient) -> None:
        assert _upload(client, "missing").status_code == 404

    def test_retry_failed_document(
        self, client: TestClient, api_service: ReconciliationService
    ) -> None:
        api_service.recognizer.script = [RecognitionFailed("engine busy")]
        vid = _start(client)
        document_id = _upload(client, vid).json()["document_id"]
        assert (
            client.get(f"/verifications/{vid}/extraction").json()["extraction_status"]
            == "failed"
        )

        response = client.post(f"/documents/{document_id}/retry")
        assert response.status_code == 202

        state = client.get(f"/verifications/{vid}/extraction").json()
        assert state["extraction_status"] == "completed"
        documents = client.get(f"/verifications/{vid}/documents").json()
        assert documents[0]["attempts"] == 2

    def test_retry_selfie_rejected(self, client: TestClient) -> None:
        vid = _start(client)
        document_id = _upload(client, vid, role="selfie", url="mem://selfie.png").json()[
            "document_id"
        ]
        assert client.post(f"/documents/{document_id}/retry").status_code == 400

    def test_retry_unknown_document(self, client: TestClient) -> None:
        assert client.post("/documents/missing/retry").status_code == 404


class TestFieldEndpoints:
    """Tests for reviewer corrections."""

    def test_edit_overrides_extraction(self, client: TestClient) -> None:
        vid = _start(client)
        _upload(client, vid)

        response = client.put(
            f"/verifications/{vid}/fields",
            json={
                "fields": {"name": "Asha R. Rao", "id_number": "1234 5678 9012"},
                "expected_version": 1,
            },
        )
        assert response.status_code == 200
        assert response.json()["is_edited"] is True

        _upload(client, vid, role="id_back", url="mem://back.png")
        state = client.get(f"/verifications/{vid}/extraction").json()
        assert state["is_edited"] is True
        assert state["fields"]["name"] == "Asha R. Rao"
        assert state["extraction_version"] == 2

    def test_stale_edit_conflict(self, client: TestClient) -> None:
        vid = _start(client)
        _upload(client, vid)

        response = client.put(
            f"/verifications/{vid}/fields",
            json={"fields": {"name": "Asha"}, "expected_version": 0},
        )
        assert response.status_code == 409
        data = response.json()
        assert data["expected_version"] == 0
        assert data["actual_version"] == 1

    def test_discard_edits(self, client: TestClient) -> None:
        vid = _start(client)
        _upload(client, vid)
        client.put(f"/verifications/{vid}/fields", json={"fields": {"name": "X"}})

        response = client.delete(f"/verifications/{vid}/fields")
        assert response.status_code == 200
        data = response.json()
        assert data["is_edited"] is False
        assert data["fields"]["name"] == "Asha Rao"


class TestOfficerEndpoints:
    """Tests for approval and rejection."""

    def test_approve(self, client: TestClient) -> None:
        vid = _start(client)
        response = client.post(f"/verifications/{vid}/approve")
        assert response.status_code == 200
        assert response.json()["status"] == "Approved"

    def test_reject_with_reason(self, client: TestClient) -> None:
        vid = _start(client)
        response = client.post(
            f"/verifications/{vid}/reject", json={"reason": "Card expired"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "Rejected"
        assert data["rejection_reason"] == "Card expired"

    def test_reject_requires_reason(self, client: TestClient) -> None:
        vid = _start(client)
        assert (
            client.post(f"/verifications/{vid}/reject", json={"reason": ""}).status_code
            == 422
        )
        assert (
            client.post(
                f"/verifications/{vid}/reject", json={"reason": "   "}
            ).status_code
            == 400
        )

    def test_closed_verification_refuses_changes(self, client: TestClient) -> None:
        vid = _start(client)
        client.post(f"/verifications/{vid}/approve")

        assert _upload(client, vid).status_code == 409
        assert (
            client.put(
                f"/verifications/{vid}/fields", json={"fields": {"name": "X"}}
            ).status_code
            == 409
        )
        assert client.post(f"/verifications/{vid}/approve").status_code == 409

    def test_new_verification_after_rejection(self, client: TestClient) -> None:
        vid = _start(client)
        client.post(f"/verifications/{vid}/reject", json={"reason": "Blurry"})
        assert _start(client) != vid

    def test_list_verifications_by_status(self, client: TestClient) -> None:
        approved, older, newest = (
            client.post("/verifications", json={"subject_email": email}).json()[
                "verification_id"
            ]
            for email in ("one@example.com", "two@example.com", "three@example.com")
        )
        client.post(f"/verifications/{approved}/approve")

        response = client.get("/officer/verifications", params={"status": "Pending"})
        assert response.status_code == 200
        assert [r["verification_id"] for r in response.json()] == [newest, older]

        response = client.get(
            "/officer/verifications", params={"status": "Pending", "limit": 1}
        )
        assert [r["verification_id"] for r in response.json()] == [newest]

    def test_list_verifications_validates_query(self, client: TestClient) -> None:
        response = client.get("/officer/verifications", params={"limit": 0})
        assert response.status_code == 422
        assert (
            client.get("/officer/verifications", params={"status": "Open"}).status_code
            == 422
        )
