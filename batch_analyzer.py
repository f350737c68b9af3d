import logging
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from analysis_cache import ContentAnalysisCache
from batch_runner import BatchOutcome, ConcurrentBatchRunner
from models import EMPTY_CONTENT_ANALYSIS, AnalysisResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
MirrorCallback = Callable[[List[Tuple[str, AnalysisResult]]], None]


class AnalysisProvider(Protocol):
    def analyze_feedback_batch(self, contents: List[str]) -> List[AnalysisResult]:
        ...


class BatchAnalyzer:
    """Resolves AI verdicts for (id, content) pairs with one provider call per chunk.

    Ids the provider could not resolve are absent from the returned map; callers apply
    models.default_analysis() for them.
    """

    def __init__(self, provider: AnalysisProvider, cache: ContentAnalysisCache,
                 chunk_size: int = 30, concurrency: int = 10,
                 runner: Optional[ConcurrentBatchRunner] = None,
                 mirror: Optional[MirrorCallback] = None):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.provider = provider
        self.cache = cache
        self.chunk_size = chunk_size
        self._owns_runner = runner is None
        self.runner = runner or ConcurrentBatchRunner(concurrency, name="analysis")
        self.mirror = mirror or cache.mirror_to_store

    def close(self):
        if self._owns_runner:
            self.runner.shutdown()

    def analyze_in_batch(self, items: Sequence[Tuple[str, str]],
                         on_progress: Optional[ProgressCallback] = None) -> Dict[str, AnalysisResult]:
        results: Dict[str, AnalysisResult] = {}
        pending: Dict[str, List[str]] = {}  # content -> ids still unresolved
        total = len(items)

        # Step 1: blank content and in-memory cache
        for item_id, content in items:
            if not content or not content.strip():
                results[item_id] = EMPTY_CONTENT_ANALYSIS
                continue
            if content in pending:
                pending[content].append(item_id)
                continue
            cached = self.cache.get(content)
            if cached is not None:
                results[item_id] = cached
            else:
                pending[content] = [item_id]

        # Step 1b: persistent mirror for what memory missed
        if pending:
            warmed = self.cache.warm_from_store(pending.keys())
            for content, result in warmed.items():
                for item_id in pending.pop(content, []):
                    results[item_id] = result

        logger.info(f"[AI Analysis] Cache hit: {len(results)}/{total}, "
                    f"need to analyze: {sum(len(ids) for ids in pending.values())} "
                    f"({len(pending)} distinct)")

        if not pending:
            if on_progress:
                on_progress(total, total)
            return results

        # Step 2: split distinct uncached contents into chunks
        contents = list(pending.keys())
        chunks = [contents[i:i + self.chunk_size] for i in range(0, len(contents), self.chunk_size)]
        logger.info(f"[AI Analysis] Processing {len(chunks)} chunks with concurrency {self.runner.max_workers}")

        completed = len(results)

        def on_window_complete(outcomes: List[BatchOutcome]):
            nonlocal completed
            new_pairs = []

            for outcome in outcomes:
                if not outcome.ok:
                    logger.error(f"[AI Analysis] Chunk {outcome.index + 1}/{len(chunks)} failed, "
                                 f"{len(outcome.item)} items left unresolved: {outcome.error}")
                    continue

                # Step 4: zip back by position; a short response leaves the tail unresolved
                for content, result in zip(outcome.item, outcome.result):
                    self.cache.set(content, result)
                    new_pairs.append((content, result))
                    for item_id in pending[content]:
                        results[item_id] = result
                        completed += 1

            self.mirror(new_pairs)
            if on_progress:
                on_progress(completed, total)

        # Step 3: one provider call per chunk, bounded concurrency
        self.runner.run(chunks, self.provider.analyze_feedback_batch, on_window_complete)

        unresolved = total - len(results)
        if unresolved:
            logger.warning(f"[AI Analysis] {unresolved}/{total} items left without analysis")

        return results
