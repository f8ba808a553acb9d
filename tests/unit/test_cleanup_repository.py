from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from psycopg.types.json import Jsonb

from invoice_pipeline.database.models import CleanupRecord
from invoice_pipeline.database.repositories.cleanup_repository import CleanupRepository

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _record() -> CleanupRecord:
    return CleanupRecord(
        id=None,
        trigger="sweep",
        started_at=NOW,
        completed_at=NOW,
        sessions_reaped=1,
        jobs_reaped=2,
        blobs_deleted=3,
        errors=["boom"],
        status="COMPLETED_WITH_ERRORS",
    )


def _mock_connection(mock_get_conn: MagicMock) -> tuple[MagicMock, MagicMock]:
    """Wire up a mock connection + cursor and return (mock_conn, mock_cursor)."""
    mock_cursor = MagicMock()
    mock_conn = MagicMock()
    mock_conn.cursor.return_value.__enter__ = MagicMock(return_value=mock_cursor)
    mock_conn.cursor.return_value.__exit__ = MagicMock(return_value=False)
    mock_get_conn.return_value.__enter__ = MagicMock(return_value=mock_conn)
    mock_get_conn.return_value.__exit__ = MagicMock(return_value=False)
    return mock_conn, mock_cursor


@patch("invoice_pipeline.database.repositories.cleanup_repository.get_connection")
def test_append_returns_new_id(mock_get_conn: MagicMock) -> None:
    conn, cursor = _mock_connection(mock_get_conn)
    cursor.fetchone.return_value = (12,)

    assert CleanupRepository().append(_record()) == 12
    params = cursor.execute.call_args.args[1]
    assert params[0] == "sweep"
    assert isinstance(params[6], Jsonb)
    conn.commit.assert_called_once()


@patch("invoice_pipeline.database.repositories.cleanup_repository.get_connection")
def test_append_without_returned_id_raises(mock_get_conn: MagicMock) -> None:
    conn, cursor = _mock_connection(mock_get_conn)
    cursor.fetchone.return_value = None

    with pytest.raises(RuntimeError, match="returned no id"):
        CleanupRepository().append(_record())
    conn.commit.assert_not_called()


@patch("invoice_pipeline.database.repositories.cleanup_repository.get_connection")
def test_latest_maps_rows(mock_get_conn: MagicMock) -> None:
    _conn, cursor = _mock_connection(mock_get_conn)
    cursor.fetchall.return_value = [
        {
            "id": 3,
            "trigger": "scheduled",
            "started_at": NOW,
            "completed_at": NOW,
            "sessions_reaped": 1,
            "jobs_reaped": 1,
            "blobs_deleted": 2,
            "errors": None,
            "status": "COMPLETED",
        }
    ]

    (record,) = CleanupRepository().latest(limit=1)

    assert record.id == 3
    assert record.errors == []
