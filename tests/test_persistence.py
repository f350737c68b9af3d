from datetime import date, datetime, time, timezone
from unittest.mock import MagicMock, patch

import pandas as pd
import psycopg2
import pytest

from analysis_cache import content_hash
from config import DatabaseConfig
from exceptions import PersistenceError
from models import AnalysisResult, Category, FeedbackStatus, Sentiment
from persistence import FEEDBACK_COLUMNS, PersistenceGateway, UpsertResult


@pytest.fixture
def db():
    """Patched psycopg2.connect yielding (connect, connection, cursor) mocks."""
    with patch("persistence.psycopg2.connect") as connect:
        conn = MagicMock()
        cur = MagicMock()
        conn.cursor.return_value.__enter__.return_value = cur
        connect.return_value = conn
        yield connect, conn, cur


@pytest.fixture
def gateway():
    return PersistenceGateway(DatabaseConfig(host="localhost", port=5432, database="feedback_test",
                                             user="postgres"), page_size=2)


def stored_row(record_id, day=1, sentiment="Positive", **overrides):
    row = {column: None for column in FEEDBACK_COLUMNS}
    row.update(
        id=record_id,
        user_id="u1",
        user_name="amy",
        date=pd.Timestamp(datetime(2026, 1, day, 9, 0, tzinfo=timezone.utc)),
        content=f"content of {record_id}",
        rating=3,
        category="Bug Report",
        sentiment=sentiment,
        tags=["crash"],
        ai_summary="summary" if sentiment != "Pending" else None,
        status="New",
    )
    row.update(overrides)
    return row


class TestUpsert:

    def test_upsert_reports_returned_rows(self, gateway, db, make_record):
        records = [make_record("f-1"), make_record("f-2", category=Category.UX_UI)]

        with patch("persistence.execute_values", return_value=[("f-1",), ("f-2",)]) as execute_values:
            result = gateway.upsert_many(records)

        assert result == UpsertResult(succeeded=2, failed=0)
        _, query, rows = execute_values.call_args.args[:3]
        assert "ON CONFLICT (id) DO UPDATE" in query
        assert "COALESCE(EXCLUDED.assigned_to" in query
        assert len(rows) == 2
        assert len(rows[0]) == len(FEEDBACK_COLUMNS)
        row = dict(zip(FEEDBACK_COLUMNS, rows[1]))
        assert row["id"] == "f-2"
        assert row["category"] == "UX/UI"
        assert row["sentiment"] == "Pending"
        assert row["status"] == "New"

    def test_pending_rows_keep_stored_analysis(self, gateway, db, make_record):
        with patch("persistence.execute_values", return_value=[]) as execute_values:
            gateway.upsert_many([make_record()])

        query = execute_values.call_args.args[1]
        assert "CASE WHEN EXCLUDED.sentiment = 'Pending' THEN feedback.sentiment" in query

    def test_failed_batch_counts_all_rows_as_failed(self, gateway, db, make_record):
        with patch("persistence.execute_values", side_effect=psycopg2.OperationalError("down")):
            result = gateway.upsert_many([make_record("f-1"), make_record("f-2")])

        assert result == UpsertResult(succeeded=0, failed=2)

    def test_unreachable_database_is_reported_not_raised(self, gateway, db, make_record):
        connect, _, _ = db
        connect.side_effect = psycopg2.OperationalError("no route")

        assert gateway.upsert_many([make_record()]) == UpsertResult(0, 1)

    def test_empty_upsert_skips_database(self, gateway, db):
        connect, _, _ = db

        assert gateway.upsert_many([]) == UpsertResult(0, 0)
        connect.assert_not_called()


class TestQueryRange:

    def test_pages_past_the_row_ceiling(self, gateway, db):
        _, _, cur = db
        cur.fetchone.return_value = (5,)
        pages = [
            pd.DataFrame([stored_row("f-5", 5), stored_row("f-4", 4)]),
            pd.DataFrame([stored_row("f-3", 3), stored_row("f-2", 2)]),
            pd.DataFrame([stored_row("f-1", 1)]),
        ]

        with patch("persistence.pd.read_sql_query", side_effect=pages) as read_sql:
            records, total = gateway.query_range("2026-01-01", "2026-01-07")

        assert [r.id for r in records] == ["f-5", "f-4", "f-3", "f-2", "f-1"]
        assert total == 5
        offsets = [call.kwargs["params"][-1] for call in read_sql.call_args_list]
        assert offsets == [0, 2, 4]

    def test_range_covers_whole_last_day(self, gateway, db):
        _, _, cur = db
        cur.fetchone.return_value = (0,)

        with patch("persistence.pd.read_sql_query", return_value=pd.DataFrame()) as read_sql:
            records, total = gateway.query_range("2026-01-01", "2026-01-07")

        params = read_sql.call_args.kwargs["params"]
        assert params[0] == datetime.combine(date(2026, 1, 1), time.min)
        assert params[1] == datetime.combine(date(2026, 1, 7), time.max)
        assert records == []
        assert total == 0

    def test_rows_map_back_to_records(self, gateway, db):
        _, _, cur = db
        cur.fetchone.return_value = (1,)
        frame = pd.DataFrame([stored_row("f-9", status="In Progress", assigned_to="ops",
                                         content_type=2, app_version="5.2.0")])

        with patch("persistence.pd.read_sql_query", return_value=frame):
            records, _ = gateway.query_range("2026-01-01", "2026-01-07")

        record = records[0]
        assert record.date == datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)
        assert record.sentiment == Sentiment.POSITIVE
        assert record.category == Category.BUG
        assert record.status == FeedbackStatus.IN_PROGRESS
        assert record.tags == ["crash"]
        assert record.assigned_to == "ops"
        assert record.content_type == 2
        assert record.image_url is None

    def test_single_page_mode(self, gateway, db):
        _, _, cur = db
        cur.fetchone.return_value = (45,)

        with patch("persistence.pd.read_sql_query", return_value=pd.DataFrame()) as read_sql:
            _, total = gateway.query_range("2026-01-01", "2026-01-07", fetch_all=False, page=3, page_size=20)

        assert read_sql.call_count == 1
        assert read_sql.call_args.kwargs["params"][-2:] == [20, 40]
        assert total == 45

    def test_filters(self, gateway):
        where, params = gateway._build_filters("2026-01-01", "2026-01-07", "all", "Negative", "闪退")

        assert "category" not in where
        assert "sentiment = %s" in where
        assert "ILIKE" in where
        assert params[2:] == ["Negative", "%闪退%", "%闪退%"]

    def test_content_type_and_tag_filters(self, gateway):
        where, params = gateway._build_filters("2026-01-01", "2026-01-07", content_type=0, tags=("封号", "审核"))

        assert "content_type = %s" in where
        assert "tags && %s" in where
        assert params[2:] == [0, ["封号", "审核"]]

    def test_filters_reach_both_queries(self, gateway, db):
        _, _, cur = db
        cur.fetchone.return_value = (0,)

        with patch("persistence.pd.read_sql_query", return_value=pd.DataFrame()) as read_sql:
            gateway.query_range("2026-01-01", "2026-01-07", content_type=2, tags=["crash"])

        count_sql, count_params = cur.execute.call_args.args
        assert "tags && %s" in count_sql
        assert count_params[2:] == [2, ["crash"]]
        assert read_sql.call_args.kwargs["params"][2:4] == [2, ["crash"]]

    def test_pages_are_ordered_with_an_id_tiebreaker(self, gateway, db):
        _, _, cur = db
        cur.fetchone.return_value = (0,)

        with patch("persistence.pd.read_sql_query", return_value=pd.DataFrame()) as read_sql:
            gateway.query_range("2026-01-01", "2026-01-07")

        assert "ORDER BY date DESC, id DESC LIMIT %s OFFSET %s" in read_sql.call_args.args[0]

    def test_database_error_raises_persistence_error(self, gateway, db):
        _, _, cur = db
        cur.execute.side_effect = psycopg2.OperationalError("gone")

        with pytest.raises(PersistenceError):
            gateway.query_range("2026-01-01", "2026-01-07")


class TestFeedbackRows:

    def test_get_by_id(self, gateway, db):
        _, _, cur = db
        cur.fetchone.return_value = stored_row("f-1")

        record = gateway.get_feedback_by_id("f-1")

        assert record.id == "f-1"
        assert cur.execute.call_args.args[1] == ("f-1",)

    def test_get_by_id_missing(self, gateway, db):
        _, _, cur = db
        cur.fetchone.return_value = None

        assert gateway.get_feedback_by_id("f-404") is None

    def test_update_rejects_unknown_fields(self, gateway):
        with pytest.raises(ValueError):
            gateway.update_feedback("f-1", content="rewritten")

    def test_update_sends_enum_values(self, gateway, db):
        _, _, cur = db
        cur.fetchone.return_value = stored_row("f-1", status="Resolved")

        record = gateway.update_feedback("f-1", status=FeedbackStatus.RESOLVED)

        assert record.status == FeedbackStatus.RESOLVED
        assert cur.execute.call_args.args[1] == ["Resolved", "f-1"]

    def test_stats(self, gateway, db):
        _, _, cur = db
        cur.fetchone.side_effect = [(120,), (80,)]

        assert gateway.get_stats() == {'total_feedback': 120, 'cached_analyses': 80}


class TestAnalysisCacheMirror:

    def test_read_skips_pending_and_unknown_rows(self, gateway, db):
        _, _, cur = db
        cur.fetchall.return_value = [
            (content_hash("crash"), "Negative", "Bug Report", ["crash"], "Crashes"),
            (content_hash("pending"), "Pending", "Unclassified", [], None),
            ("unrelated-hash", "Positive", "Other", [], "x"),
        ]

        found = gateway.get_cached_analyses(["crash", "pending"])

        assert list(found) == ["crash"]
        assert found["crash"].sentiment == Sentiment.NEGATIVE
        assert found["crash"].summary == "Crashes"

    def test_write_dedupes_by_hash(self, gateway, db):
        result = AnalysisResult(sentiment=Sentiment.POSITIVE, category=Category.OTHER, tags=["a"], summary="s")

        with patch("persistence.execute_values") as execute_values:
            gateway.set_cached_analyses([("same", result), ("same", result), ("other", result)])

        rows = execute_values.call_args.args[2]
        assert len(rows) == 2
        assert rows[0] == (content_hash("same"), "Positive", "Other", ["a"], "s")

    def test_write_failure_raises(self, gateway, db):
        result = AnalysisResult(sentiment=Sentiment.POSITIVE, category=Category.OTHER)

        with patch("persistence.execute_values", side_effect=psycopg2.OperationalError("down")):
            with pytest.raises(PersistenceError):
                gateway.set_cached_analysis("text", result)
