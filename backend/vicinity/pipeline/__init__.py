from .aggregation import AttributeAggregator, aggregate_reviews
from .extraction import ExtractionOutcome, ReviewExtractor
from .jobs import InMemoryJobQueue, Job, JobQueue, Lease, RedisJobQueue, get_job_queue, set_job_queue
from .worker import PipelineMonitor, WorkerPool

__all__ = [
    "AttributeAggregator",
    "ExtractionOutcome",
    "InMemoryJobQueue",
    "Job",
    "JobQueue",
    "Lease",
    "PipelineMonitor",
    "RedisJobQueue",
    "ReviewExtractor",
    "WorkerPool",
    "aggregate_reviews",
    "get_job_queue",
    "set_job_queue",
]
