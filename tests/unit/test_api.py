from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from invoice_pipeline.api.app import create_app
from invoice_pipeline.bootstrap import Services
from invoice_pipeline.credits.exceptions import UserNotFoundError
from invoice_pipeline.database.models import SessionRecord, TransactionRecord
from invoice_pipeline.lifecycle.error_codes import ErrorCode
from invoice_pipeline.lifecycle.states import SessionStatus
from invoice_pipeline.sessions.exceptions import (
    SessionError,
    SessionNotFoundError,
    SessionStateError,
    UploadRejectedError,
)
from invoice_pipeline.sessions.models import JobView, SessionCreated, SessionView
from invoice_pipeline.storage.local_adapter import LocalStorageAdapter

from tests.unit.fakes import make_settings

EXPIRES = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
HEADERS = {"X-User-Id": "7"}


def _services(storage: object | None = None) -> Services:
    return Services(
        settings=make_settings(),
        storage=storage or MagicMock(),
        session_repo=MagicMock(),
        job_repo=MagicMock(),
        ledger=MagicMock(),
        state_machine=MagicMock(),
        scheduler=MagicMock(),
        session_manager=MagicMock(),
    )


@pytest.fixture
def services() -> Services:
    return _services()


@pytest.fixture
def client(services: Services) -> TestClient:
    return TestClient(create_app(services))


class TestIdentity:
    def test_missing_user_header_is_401(self, client: TestClient) -> None:
        response = client.get("/sessions/s1")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "MISSING_USER_ID"

    def test_non_numeric_user_is_401(self, client: TestClient) -> None:
        assert client.get("/sessions/s1", headers={"X-User-Id": "abc"}).status_code == 401

    def test_unknown_user_is_rejected_before_upload(
        self, client: TestClient, services: Services
    ) -> None:
        services.ledger.balance.side_effect = UserNotFoundError("User 7 not found")

        response = client.post(
            "/sessions",
            headers=HEADERS,
            files=[("files", ("a.pdf", b"%PDF", "application/pdf"))],
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "USER_NOT_FOUND"
        services.session_manager.create_session.assert_not_called()


class TestCreateSession:
    def test_created_session_is_201(self, client: TestClient, services: Services) -> None:
        services.session_manager.create_session.return_value = SessionCreated(
            session_id="s1", total_files=2, total_pages=3, expires_at=EXPIRES
        )

        response = client.post(
            "/sessions",
            headers=HEADERS,
            data={"model_id": "prebuilt-receipt"},
            files=[
                ("files", ("a.pdf", b"%PDF-a", "application/pdf")),
                ("files", ("b.png", b"\x89PNG", "image/png")),
            ],
        )

        assert response.status_code == 201
        assert response.json() == {
            "sessionId": "s1",
            "totalFiles": 2,
            "totalPages": 3,
            "expiresAt": EXPIRES.isoformat(),
        }
        user_id, uploads = services.session_manager.create_session.call_args.args
        assert user_id == 7
        assert [(u.filename, u.content_type, u.data) for u in uploads] == [
            ("a.pdf", "application/pdf", b"%PDF-a"),
            ("b.png", "image/png", b"\x89PNG"),
        ]
        assert services.session_manager.create_session.call_args.kwargs == {
            "model_id": "prebuilt-receipt"
        }

    @pytest.mark.parametrize(
        ("code", "status"),
        [
            (ErrorCode.UNSUPPORTED_MEDIA_TYPE, 415),
            (ErrorCode.PAGE_TOO_LARGE, 413),
            (ErrorCode.EMPTY_UPLOAD, 400),
            (ErrorCode.TOO_MANY_FILES, 400),
        ],
    )
    def test_rejections_map_to_status(
        self, client: TestClient, services: Services, code: ErrorCode, status: int
    ) -> None:
        services.session_manager.create_session.side_effect = UploadRejectedError("nope", code)

        response = client.post(
            "/sessions",
            headers=HEADERS,
            files=[("files", ("a.txt", b"hello", "text/plain"))],
        )

        assert response.status_code == status
        assert response.json() == {"error": {"code": code.value, "message": "nope"}}


class TestSessionRoutes:
    def test_status_body(self, client: TestClient, services: Services) -> None:
        services.session_manager.get_status.return_value = SessionView(
            session_id="s1",
            status="PROCESSING",
            processed_pages=1,
            total_pages=2,
            percent_complete=50.0,
            expires_at=EXPIRES,
            jobs=[
                JobView(
                    id="j1",
                    status="FAILED",
                    page_number=1,
                    file_name="invoice.pdf",
                    output_file_name=None,
                    unbilled=False,
                    error_code="EXTRACTION_FAILED",
                    error_message="bad scan",
                )
            ],
        )

        body = client.get("/sessions/s1", headers=HEADERS).json()

        assert body["percentComplete"] == 50.0
        assert "error" not in body
        assert body["jobs"][0]["error"] == {"code": "EXTRACTION_FAILED", "message": "bad scan"}
        services.session_manager.get_status.assert_called_once_with("s1", 7)

    def test_unknown_session_is_404(self, client: TestClient, services: Services) -> None:
        services.session_manager.get_status.side_effect = SessionNotFoundError("Session not found")

        assert client.get("/sessions/s1", headers=HEADERS).status_code == 404

    def test_download_redirects(self, client: TestClient, services: Services) -> None:
        services.session_manager.download_url.return_value = "https://files.example/bundle.zip"

        response = client.get("/sessions/s1/download", headers=HEADERS, follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == "https://files.example/bundle.zip"

    def test_download_before_completion_is_409(
        self, client: TestClient, services: Services
    ) -> None:
        services.session_manager.download_url.side_effect = SessionStateError("still processing")

        response = client.get("/sessions/s1/download", headers=HEADERS, follow_redirects=False)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "SESSION_NOT_READY"

    def test_cancel_returns_new_status(self, client: TestClient, services: Services) -> None:
        services.session_manager.cancel_session.return_value = SessionRecord(
            id="s1",
            user_id=7,
            storage_prefix="test/7/s1",
            model_id="prebuilt-invoice",
            status=SessionStatus.CANCELLED,
            total_files=1,
            total_pages=1,
            processed_pages=0,
            expires_at=EXPIRES,
        )

        response = client.post("/sessions/s1/cancel", headers=HEADERS)

        assert response.json() == {"sessionId": "s1", "status": "CANCELLED"}

    def test_cancel_expired_is_409(self, client: TestClient, services: Services) -> None:
        services.session_manager.cancel_session.side_effect = SessionStateError(
            "Session has expired", ErrorCode.SESSION_EXPIRED
        )

        response = client.post("/sessions/s1/cancel", headers=HEADERS)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "SESSION_EXPIRED"

    def test_unclassified_session_error_is_500(
        self, client: TestClient, services: Services
    ) -> None:
        services.session_manager.get_status.side_effect = SessionError("lost track of session")

        response = client.get("/sessions/s1", headers=HEADERS)

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "SESSION_ERROR",
            "message": "lost track of session",
        }


class TestCredits:
    def test_balance_and_history(self, client: TestClient, services: Services) -> None:
        services.ledger.balance.return_value = 99
        services.ledger.history.return_value = [
            TransactionRecord(
                id=1,
                user_id=7,
                type="USAGE",
                credits=-1,
                status="COMPLETED",
                description="Processed page",
                job_id="j1",
                session_id="s1",
            )
        ]

        body = client.get("/credits?limit=1000", headers=HEADERS).json()

        assert body["balance"] == 99
        assert body["transactions"][0]["credits"] == -1
        assert body["transactions"][0]["createdAt"] is None
        services.ledger.history.assert_called_once_with(7, limit=500)


class TestFiles:
    @pytest.fixture
    def local_storage(self, tmp_path: Path) -> LocalStorageAdapter:
        return LocalStorageAdapter(tmp_path, "http://testserver/files", "secret")

    def test_signed_link_serves_file(self, local_storage: LocalStorageAdapter) -> None:
        local_storage.put("test/7/s1/bundle.zip", b"zip-bytes")
        client = TestClient(create_app(_services(local_storage)))

        response = client.get(local_storage.signed_url("test/7/s1/bundle.zip", 5))

        assert response.status_code == 200
        assert response.content == b"zip-bytes"
        assert 'filename="bundle.zip"' in response.headers["content-disposition"]

    def test_tampered_signature_is_403(self, local_storage: LocalStorageAdapter) -> None:
        local_storage.put("test/7/s1/bundle.zip", b"zip-bytes")
        client = TestClient(create_app(_services(local_storage)))
        url = local_storage.signed_url("test/7/s1/bundle.zip", 5)

        response = client.get(url.replace("bundle.zip", "report.xlsx"))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"

    def test_non_local_storage_has_no_file_route(self, client: TestClient) -> None:
        assert client.get("/files/test/7/s1/bundle.zip").status_code == 404
