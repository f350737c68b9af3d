import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Dict, Iterable, List, Optional, Tuple, Union

import pandas as pd
import psycopg2
from psycopg2.extras import RealDictCursor, execute_values

from analysis_cache import content_hash
from config import ANALYSIS_CACHE_TABLE, FEEDBACK_TABLE, DatabaseConfig
from date_chunker import to_date
from exceptions import PersistenceError
from models import AnalysisResult, Category, FeedbackRecord, Sentiment

logger = logging.getLogger(__name__)

STORE_PAGE_SIZE = 1000  # Per-request row ceiling of the store

FEEDBACK_COLUMNS = [
    'id', 'user_id', 'user_name', 'user_avatar', 'date', 'content', 'rating',
    'category', 'sentiment', 'tags', 'ai_summary', 'status', 'assigned_to',
    'type', 'image_url', 'moments_text', 'user_type', 'content_type', 'app_version'
]

# Columns an upsert must not downgrade from an enriched row back to Pending
ANALYSIS_COLUMNS = ['category', 'sentiment', 'tags', 'ai_summary']

UPDATABLE_FIELDS = {'status', 'assigned_to', 'category', 'sentiment', 'tags', 'ai_summary'}


@dataclass
class UpsertResult:
    succeeded: int
    failed: int


class PersistenceGateway:
    """Read/write contract to the Postgres store: feedback rows plus the analysis-cache mirror."""

    def __init__(self, config: DatabaseConfig, page_size: int = STORE_PAGE_SIZE):
        self.config = config
        self.page_size = page_size

    def get_connection(self):
        """Get database connection."""
        try:
            return psycopg2.connect(
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password
            )
        except psycopg2.Error as e:
            logger.error(f"Database connection failed: {e}")
            raise PersistenceError(f"Database connection failed: {e}") from e

    @contextmanager
    def _transaction(self):
        """Connection scoped to one transaction; closed afterwards."""
        conn = self.get_connection()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Feedback rows
    # ------------------------------------------------------------------

    def upsert_many(self, records: List[FeedbackRecord]) -> UpsertResult:
        """Idempotent upsert by id. A failed batch is reported as entirely failed."""
        if not records:
            return UpsertResult(0, 0)

        columns = ', '.join(FEEDBACK_COLUMNS)
        updates = []
        for column in FEEDBACK_COLUMNS[1:]:
            if column in ANALYSIS_COLUMNS:
                updates.append(
                    f"{column} = CASE WHEN EXCLUDED.sentiment = '{Sentiment.PENDING.value}' "
                    f"THEN {FEEDBACK_TABLE}.{column} ELSE EXCLUDED.{column} END"
                )
            elif column == 'assigned_to':
                updates.append(f"assigned_to = COALESCE(EXCLUDED.assigned_to, {FEEDBACK_TABLE}.assigned_to)")
            else:
                updates.append(f"{column} = EXCLUDED.{column}")
        updates.append("updated_at = NOW()")

        query = f"""
            INSERT INTO {FEEDBACK_TABLE} ({columns}) VALUES %s
            ON CONFLICT (id) DO UPDATE SET {', '.join(updates)}
            RETURNING id
        """
        rows = [self._to_row(record) for record in records]

        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    returned = execute_values(cur, query, rows, page_size=500, fetch=True)
        except (psycopg2.Error, PersistenceError) as e:
            logger.error(f"Upsert of {len(records)} feedback rows failed: {e}")
            return UpsertResult(0, len(records))

        succeeded = len(returned or [])
        return UpsertResult(succeeded, len(records) - succeeded)

    def query_range(self, date_from: Union[str, date], date_to: Union[str, date],
                    fetch_all: bool = True, page: int = 1, page_size: int = 20,
                    category: Optional[str] = None, sentiment: Optional[str] = None,
                    search: Optional[str] = None, content_type: Optional[int] = None,
                    tags: Optional[List[str]] = None) -> Tuple[List[FeedbackRecord], int]:
        """Feedback dated within [date_from, end of date_to], newest first, plus the total count.

        With fetch_all the store's row ceiling is paged through internally.
        """
        where, params = self._build_filters(date_from, date_to, category, sentiment, search, content_type, tags)
        # id breaks ties so OFFSET pages never overlap
        base_query = f"SELECT * FROM {FEEDBACK_TABLE} WHERE {where} ORDER BY date DESC, id DESC LIMIT %s OFFSET %s"

        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT COUNT(*) FROM {FEEDBACK_TABLE} WHERE {where}", params)
                    total = cur.fetchone()[0]

                if not fetch_all:
                    offset = (max(page, 1) - 1) * page_size
                    df = pd.read_sql_query(base_query, conn, params=params + [page_size, offset])
                    return self._from_frame(df), total

                frames = []
                offset = 0
                while True:
                    df = pd.read_sql_query(base_query, conn, params=params + [self.page_size, offset])
                    frames.append(df)
                    logger.debug(f"Fetched page at offset {offset}: {len(df)} rows")
                    if len(df) < self.page_size:
                        break
                    offset += self.page_size
        except (psycopg2.Error, pd.errors.DatabaseError) as e:
            logger.error(f"Range query {date_from}..{date_to} failed: {e}")
            raise PersistenceError(f"Range query failed: {e}") from e

        records = [record for df in frames for record in self._from_frame(df)]
        logger.info(f"📥 Fetched {len(records):,} stored feedback rows for {date_from}..{date_to}")
        return records, max(total, len(records))

    def get_feedback_by_id(self, feedback_id: str) -> Optional[FeedbackRecord]:
        """One feedback row by id, or None."""
        try:
            with self._transaction() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(f"SELECT * FROM {FEEDBACK_TABLE} WHERE id = %s", (feedback_id,))
                    row = cur.fetchone()
        except psycopg2.Error as e:
            raise PersistenceError(f"Lookup of {feedback_id} failed: {e}") from e

        return self._from_row(dict(row)) if row else None

    def update_feedback(self, feedback_id: str, **updates) -> Optional[FeedbackRecord]:
        """Apply triage/analysis edits to one row."""
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if not updates:
            return self.get_feedback_by_id(feedback_id)

        assignments = ', '.join(f"{field} = %s" for field in updates)
        values = [getattr(value, 'value', value) for value in updates.values()]

        try:
            with self._transaction() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(
                        f"UPDATE {FEEDBACK_TABLE} SET {assignments}, updated_at = NOW() WHERE id = %s RETURNING *",
                        values + [feedback_id]
                    )
                    row = cur.fetchone()
        except psycopg2.Error as e:
            logger.error(f"Update of {feedback_id} failed: {e}")
            raise PersistenceError(f"Update of {feedback_id} failed: {e}") from e

        return self._from_row(dict(row)) if row else None

    def get_stats(self) -> Dict[str, int]:
        """Row counts of the feedback and analysis-cache tables."""
        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"SELECT COUNT(*) FROM {FEEDBACK_TABLE}")
                    total_feedback = cur.fetchone()[0]
                    cur.execute(f"SELECT COUNT(*) FROM {ANALYSIS_CACHE_TABLE}")
                    cached_analyses = cur.fetchone()[0]
        except psycopg2.Error as e:
            raise PersistenceError(f"Stats query failed: {e}") from e

        return {'total_feedback': total_feedback, 'cached_analyses': cached_analyses}

    # ------------------------------------------------------------------
    # Analysis cache mirror
    # ------------------------------------------------------------------

    def get_cached_analysis(self, text: str) -> Optional[AnalysisResult]:
        return self.get_cached_analyses([text]).get(text)

    def set_cached_analysis(self, text: str, result: AnalysisResult):
        self.set_cached_analyses([(text, result)])

    def get_cached_analyses(self, texts: Iterable[str]) -> Dict[str, AnalysisResult]:
        """Stored verdicts for the given texts, keyed by text. Pending rows are skipped."""
        hash_to_text = {content_hash(text): text for text in texts}
        if not hash_to_text:
            return {}

        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"SELECT content_hash, sentiment, category, tags, summary "
                        f"FROM {ANALYSIS_CACHE_TABLE} WHERE content_hash = ANY(%s)",
                        (list(hash_to_text.keys()),)
                    )
                    rows = cur.fetchall()
        except psycopg2.Error as e:
            raise PersistenceError(f"Analysis cache read failed: {e}") from e

        results = {}
        for hash_key, sentiment, category, tags, summary in rows:
            text = hash_to_text.get(hash_key)
            if text is None or sentiment == Sentiment.PENDING.value:
                continue
            try:
                results[text] = AnalysisResult(
                    sentiment=Sentiment(sentiment),
                    category=Category(category),
                    tags=tags or [],
                    summary=summary or ''
                )
            except ValueError as e:
                logger.warning(f"Ignoring invalid cached analysis {hash_key}: {e}")

        return results

    def set_cached_analyses(self, pairs: List[Tuple[str, AnalysisResult]]):
        """Upsert verdicts by content hash."""
        if not pairs:
            return

        rows = {}
        for text, result in pairs:
            rows[content_hash(text)] = (
                content_hash(text), result.sentiment.value, result.category.value,
                list(result.tags), result.summary
            )

        query = f"""
            INSERT INTO {ANALYSIS_CACHE_TABLE} (content_hash, sentiment, category, tags, summary)
            VALUES %s
            ON CONFLICT (content_hash) DO UPDATE SET
                sentiment = EXCLUDED.sentiment,
                category = EXCLUDED.category,
                tags = EXCLUDED.tags,
                summary = EXCLUDED.summary
        """

        try:
            with self._transaction() as conn:
                with conn.cursor() as cur:
                    execute_values(cur, query, list(rows.values()))
        except psycopg2.Error as e:
            raise PersistenceError(f"Analysis cache write failed: {e}") from e

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _build_filters(self, date_from, date_to, category=None, sentiment=None, search=None,
                       content_type=None, tags=None) -> Tuple[str, list]:
        clauses = ["date >= %s", "date <= %s"]
        params = [
            datetime.combine(to_date(date_from), time.min),
            datetime.combine(to_date(date_to), time.max),  # Whole last day
        ]

        if category and category != 'all':
            clauses.append("category = %s")
            params.append(category)
        if sentiment and sentiment != 'all':
            clauses.append("sentiment = %s")
            params.append(sentiment)
        if search:
            clauses.append("(content ILIKE %s OR user_name ILIKE %s)")
            params.extend([f"%{search}%", f"%{search}%"])
        if content_type is not None:
            clauses.append("content_type = %s")
            params.append(content_type)
        if tags:
            clauses.append("tags && %s")  # Any overlap
            params.append(list(tags))

        return " AND ".join(clauses), params

    def _to_row(self, record: FeedbackRecord) -> tuple:
        data = record.model_dump(mode='python')
        row = []
        for column in FEEDBACK_COLUMNS:
            value = data[column]
            row.append(getattr(value, 'value', value))
        return tuple(row)

    def _from_frame(self, df: pd.DataFrame) -> List[FeedbackRecord]:
        if df.empty:
            return []
        return [self._from_row(row) for row in df.to_dict('records')]

    def _from_row(self, row: dict) -> FeedbackRecord:
        data = {}
        for column in FEEDBACK_COLUMNS:
            value = row.get(column)
            if isinstance(value, (list, tuple)):
                value = list(value)
            elif pd.isna(value):
                value = None
            elif isinstance(value, pd.Timestamp):
                value = value.to_pydatetime()
            elif hasattr(value, 'item') and not isinstance(value, str):
                value = value.item()  # numpy scalar
            data[column] = value

        data['tags'] = data['tags'] or []
        return FeedbackRecord.model_validate({k: v for k, v in data.items() if v is not None})
