"""Batch jobs: coverage orchestration and detail backfill."""

from aggregator.pipeline.backfill import AdaptiveConcurrency, BackfillWorker
from aggregator.pipeline.orchestrator import (
    CoverageOrchestrator,
    candidate_terms,
    order_leaves,
    summarize_counts,
    term_batch_size,
)
from aggregator.pipeline.progress import ProgressStore
from aggregator.pipeline.taxonomy import flatten_leaves, load_taxonomy

__all__ = [
    "AdaptiveConcurrency",
    "BackfillWorker",
    "CoverageOrchestrator",
    "ProgressStore",
    "candidate_terms",
    "flatten_leaves",
    "load_taxonomy",
    "order_leaves",
    "summarize_counts",
    "term_batch_size",
]
