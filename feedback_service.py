import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Set, Tuple, Union

from analysis_cache import ContentAnalysisCache
from batch_analyzer import AnalysisProvider, BatchAnalyzer
from batch_runner import ConcurrentBatchRunner
from config import (PipelineConfig, UpstreamConfig, load_database_config,
                    load_pipeline_config, load_upstream_config)
from date_chunker import DateChunk, split_date_range, to_date
from exceptions import FeedbackPipelineError, UpstreamTransportError
from feedback_normalizer import FeedbackNormalizer, deduplicate_items
from models import AnalysisResult, FeedbackRecord, default_analysis
from persistence import PersistenceGateway, UpsertResult
from query_cache import QueryResultCache, make_query_key
from upstream_fetcher import UpstreamFetcher

logger = logging.getLogger(__name__)

DateLike = Union[str, date]

WEEK_DAYS = 7


@dataclass
class QueryResult:
    """Enriched, date-descending records plus where they were served from."""
    records: List[FeedbackRecord]
    source: str  # 'memory', 'database' or 'upstream'
    ai_analyzed: bool = False


@dataclass
class RefreshResult:
    success: bool
    count: int = 0
    error: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None


def sort_by_date(records: List[FeedbackRecord]) -> List[FeedbackRecord]:
    return sorted(records, key=lambda record: (record.date, record.id), reverse=True)


class FeedbackService:
    """Ingestion-cache-enrichment pipeline for date-range feedback queries.

    Query flow: query cache -> persistent store (warm cache) -> upstream fetch in chunks
    -> dedup -> normalize -> batch AI analysis -> sort -> background upsert -> query cache.
    """

    def __init__(self,
                 fetcher: UpstreamFetcher,
                 upstream_config: UpstreamConfig,
                 pipeline_config: PipelineConfig,
                 provider: Optional[AnalysisProvider] = None,
                 gateway: Optional[PersistenceGateway] = None,
                 query_cache: Optional[QueryResultCache] = None,
                 analysis_cache: Optional[ContentAnalysisCache] = None):
        self.fetcher = fetcher
        self.upstream_config = upstream_config
        self.pipeline_config = pipeline_config
        self.gateway = gateway
        self.normalizer = FeedbackNormalizer()

        self.query_cache = query_cache or QueryResultCache(
            max_entries=pipeline_config.query_cache_size,
            ttl_seconds=pipeline_config.query_cache_ttl_seconds
        )
        self.analysis_cache = analysis_cache or ContentAnalysisCache(
            max_size=pipeline_config.analysis_cache_size,
            ttl_hours=pipeline_config.analysis_cache_ttl_hours,
            store=gateway
        )

        self.fetch_runner = ConcurrentBatchRunner(upstream_config.concurrency, name="fetch")
        self.analysis_runner = ConcurrentBatchRunner(pipeline_config.analysis_concurrency, name="analysis")
        self.batch_analyzer = None
        if provider is not None:
            self.batch_analyzer = BatchAnalyzer(
                provider,
                self.analysis_cache,
                chunk_size=pipeline_config.analysis_chunk_size,
                runner=self.analysis_runner,
                mirror=self._mirror_in_background
            )

        # Fire-and-forget persistence runs here, off the query path
        self.background = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="persist")
        self._pending_writes: Set[concurrent.futures.Future] = set()
        self._pending_lock = threading.Lock()

        # Single-flight registry: one in-progress load per (range, require_ai)
        self._inflight: Dict[Tuple[str, bool], concurrent.futures.Future] = {}
        self._inflight_lock = threading.Lock()

        logger.info(f"🚀 Initialized feedback service:")
        logger.info(f"  Upstream: {upstream_config.base_url}")
        logger.info(f"  Chunk size: {upstream_config.max_days_per_chunk} days, fetch concurrency: {upstream_config.concurrency}")
        logger.info(f"  AI analysis: {'enabled' if provider else 'disabled'} "
                    f"(chunk {pipeline_config.analysis_chunk_size}, concurrency {pipeline_config.analysis_concurrency})")
        logger.info(f"  Persistence: {'enabled' if gateway else 'disabled'}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def close(self):
        self.background.shutdown(wait=True)
        self.fetch_runner.shutdown()
        self.analysis_runner.shutdown()
        self.fetcher.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_feedback(self, date_from: DateLike, date_to: DateLike,
                     require_ai: Optional[bool] = None) -> QueryResult:
        """Enriched feedback for an inclusive date range, newest first.

        Raises UpstreamError when the upstream fetch has to run and fails.
        """
        require_ai = self._resolve_require_ai(require_ai)
        key = make_query_key(date_from, date_to)

        cached = self.query_cache.get_entry(key, require_ai=require_ai)
        if cached is not None:
            logger.info(f"✅ Query cache hit for {key} ({len(cached.data)} items)")
            return QueryResult(cached.data, 'memory', cached.ai_analyzed)

        flight_key = (key, require_ai)
        with self._inflight_lock:
            future = self._inflight.get(flight_key)
            is_leader = future is None
            if is_leader:
                future = concurrent.futures.Future()
                self._inflight[flight_key] = future

        if not is_leader:
            logger.info(f"Joining in-flight query for {key}")
            return future.result()

        try:
            result = self._load(date_from, date_to, key, require_ai)
            future.set_result(result)
            return result
        except BaseException as e:
            future.set_exception(e)
            raise
        finally:
            with self._inflight_lock:
                self._inflight.pop(flight_key, None)

    def force_refresh(self, date_from: DateLike, date_to: DateLike) -> RefreshResult:
        """Bypass both caches and rebuild the range from upstream. Reports failure instead of raising."""
        date_from, date_to = to_date(date_from), to_date(date_to)
        require_ai = self.batch_analyzer is not None

        try:
            records = self._fetch_and_process(date_from, date_to, require_ai)
        except FeedbackPipelineError as e:
            logger.error(f"❌ Force refresh {date_from}..{date_to} failed: {e}")
            return RefreshResult(False, 0, str(e), date_from.isoformat(), date_to.isoformat())

        self.query_cache.set(make_query_key(date_from, date_to), records, ai_analyzed=require_ai)
        return RefreshResult(True, len(records), None, date_from.isoformat(), date_to.isoformat())

    def refresh_in_weeks(self, date_from: DateLike, date_to: DateLike,
                         pause_seconds: float = 1.0) -> List[RefreshResult]:
        """Force-refresh a long range one week at a time, pausing between weeks."""
        weeks = split_date_range(date_from, date_to, WEEK_DAYS)
        logger.info(f"Refreshing {len(weeks)} weekly chunks from {date_from} to {date_to}")

        results = []
        for i, week in enumerate(weeks, 1):
            logger.info(f"📅 Week {i}/{len(weeks)}: {week.date_from} to {week.date_to}")
            results.append(self.force_refresh(week.date_from, week.date_to))
            if pause_seconds and i < len(weeks):
                time.sleep(pause_seconds)

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"Weekly refresh complete: {succeeded}/{len(results)} weeks, "
                    f"{sum(r.count for r in results):,} items")
        return results

    def wait_for_background(self, timeout: Optional[float] = None):
        """Block until queued persistence writes finish."""
        with self._pending_lock:
            pending = list(self._pending_writes)
        concurrent.futures.wait(pending, timeout=timeout)

    def get_cache_stats(self) -> Dict[str, Dict[str, any]]:
        return {
            'query_cache': self.query_cache.get_stats(),
            'analysis_cache': self.analysis_cache.get_stats()
        }

    # ------------------------------------------------------------------
    # Pipeline stages
    # ------------------------------------------------------------------

    def _resolve_require_ai(self, require_ai: Optional[bool]) -> bool:
        if require_ai is None:
            require_ai = self.pipeline_config.require_ai
        if require_ai and self.batch_analyzer is None:
            logger.warning("AI analysis requested but no provider is configured; serving unenriched data")
            return False
        return require_ai

    def _load(self, date_from: DateLike, date_to: DateLike, key: str, require_ai: bool) -> QueryResult:
        stored = self._load_from_store(date_from, date_to)
        if stored:
            pending = sum(1 for record in stored if record.needs_analysis)
            if not (require_ai and pending):
                records = sort_by_date(stored)
                self.query_cache.set(key, records, ai_analyzed=pending == 0)
                logger.info(f"💾 Served {len(records)} items for {key} from the database")
                return QueryResult(records, 'database', pending == 0)
            logger.info(f"{pending}/{len(stored)} stored items still need analysis, refreshing from upstream")

        records = self._fetch_and_process(date_from, date_to, require_ai)
        self.query_cache.set(key, records, ai_analyzed=require_ai)
        return QueryResult(records, 'upstream', require_ai)

    def _load_from_store(self, date_from: DateLike, date_to: DateLike) -> List[FeedbackRecord]:
        if self.gateway is None:
            return []
        try:
            records, _ = self.gateway.query_range(date_from, date_to, fetch_all=True)
            return records
        except FeedbackPipelineError as e:
            logger.warning(f"Database warm cache unavailable, falling back to upstream: {e}")
            return []

    def _fetch_and_process(self, date_from: DateLike, date_to: DateLike, require_ai: bool) -> List[FeedbackRecord]:
        start_time = time.time()

        chunks = split_date_range(date_from, date_to, self.upstream_config.max_days_per_chunk)
        if not chunks:
            logger.warning(f"Empty date range {date_from}..{date_to}")
            return []

        raw_items = self._fetch_chunks(chunks)
        unique_items = deduplicate_items(raw_items)
        records = self.normalizer.normalize_items(unique_items)
        logger.info(f"📥 Fetched {len(raw_items):,} items in {len(chunks)} chunks, "
                    f"{len(unique_items):,} unique, {len(records):,} normalized")

        if require_ai and records:
            records = self._enrich(records)

        records = sort_by_date(records)
        self._persist_in_background(records)

        logger.info(f"✅ Processed {len(records):,} items for {date_from}..{date_to} "
                    f"in {time.time() - start_time:.2f}s")
        return records

    def _fetch_chunks(self, chunks: List[DateChunk]) -> List[dict]:
        """Fetch every chunk; any failure aborts the whole query."""
        outcomes = self.fetch_runner.run(chunks, self._fetch_chunk_with_retry)

        failures = [outcome for outcome in outcomes if not outcome.ok]
        if failures:
            for outcome in failures:
                logger.error(f"💥 Chunk {outcome.item.date_from}..{outcome.item.date_to} failed: {outcome.error}")
            raise failures[0].error

        raw_items = []
        for outcome in outcomes:
            raw_items.extend(outcome.result)
        return raw_items

    def _fetch_chunk_with_retry(self, chunk: DateChunk) -> List[dict]:
        max_retries = self.upstream_config.max_retries
        for attempt in range(max_retries + 1):
            try:
                return self.fetcher.fetch_chunk(chunk)
            except UpstreamTransportError as e:
                if attempt >= max_retries:
                    raise
                wait_time = self.upstream_config.retry_delay * (attempt + 1)
                logger.warning(f"❌ Chunk {chunk.date_from}..{chunk.date_to} attempt {attempt + 1} failed: {e}; "
                               f"retrying in {wait_time:.1f}s")
                time.sleep(wait_time)

    def _enrich(self, records: List[FeedbackRecord]) -> List[FeedbackRecord]:
        analyses = self.batch_analyzer.analyze_in_batch(
            [(record.id, record.content) for record in records],
            on_progress=self._log_progress
        )
        fallback = default_analysis()
        return [record.with_analysis(analyses.get(record.id, fallback)) for record in records]

    def _log_progress(self, completed: int, total: int):
        logger.info(f"📊 Analysis progress: {completed}/{total} ({completed / max(1, total) * 100:.1f}%)")

    # ------------------------------------------------------------------
    # Background persistence
    # ------------------------------------------------------------------

    def _submit_background(self, fn, *args) -> concurrent.futures.Future:
        future = self.background.submit(fn, *args)
        with self._pending_lock:
            self._pending_writes.add(future)
        future.add_done_callback(self._forget_background)
        return future

    def _forget_background(self, future: concurrent.futures.Future):
        with self._pending_lock:
            self._pending_writes.discard(future)

    def _persist_in_background(self, records: List[FeedbackRecord]):
        if self.gateway is None or not records:
            return
        future = self._submit_background(self.gateway.upsert_many, records)
        future.add_done_callback(self._log_persist_outcome)

    def _log_persist_outcome(self, future: concurrent.futures.Future):
        error = future.exception()
        if error is not None:
            logger.error(f"💥 Background persistence failed: {error}")
            return
        result: UpsertResult = future.result()
        if result.failed:
            logger.warning(f"💾 Persisted {result.succeeded} items, {result.failed} failed")
        else:
            logger.info(f"💾 Persisted {result.succeeded} items")

    def _mirror_in_background(self, pairs: List[Tuple[str, AnalysisResult]]):
        if self.gateway is None or not pairs:
            return
        self._submit_background(self.analysis_cache.mirror_to_store, pairs)


def create_service_from_env() -> FeedbackService:
    """Build the service from environment variables."""
    from llm_client import create_client_from_env

    upstream_config = load_upstream_config()
    pipeline_config = load_pipeline_config()

    provider = None
    try:
        provider = create_client_from_env()
    except ValueError as e:
        logger.warning(f"AI analysis disabled: {e}")

    gateway = None
    db_config = load_database_config()
    if db_config is not None:
        gateway = PersistenceGateway(db_config)
    else:
        logger.warning("DB_NAME not set; persistence disabled")

    return FeedbackService(
        UpstreamFetcher(upstream_config),
        upstream_config,
        pipeline_config,
        provider=provider,
        gateway=gateway
    )
