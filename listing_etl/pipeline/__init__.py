"""Discovery-to-enrichment pipeline with queue-based orchestration.

- Deduplication store and work queue (in-memory or Postgres)
- Retry policy with exponential backoff
- Enrichment workers and the run coordinator
- Operator CLI
"""

from .coordinator import Coordinator, DiscoverySummary, EnrichmentSummary, PipelineSummary, QueueStats
from .queue import InMemoryQueue, PostgresQueue, QueueCounts
from .retry import RetryDecision, RetryPolicy
from .worker import Worker, WorkerConfig

__all__ = [
    "Coordinator",
    "DiscoverySummary",
    "EnrichmentSummary",
    "PipelineSummary",
    "QueueStats",
    "InMemoryQueue",
    "PostgresQueue",
    "QueueCounts",
    "RetryDecision",
    "RetryPolicy",
    "Worker",
    "WorkerConfig",
]
