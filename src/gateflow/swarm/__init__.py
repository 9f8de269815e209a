from gateflow.swarm.backend import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    ExecutionBackend,
    RetryPolicy,
    SessionProgress,
)
from gateflow.swarm.concurrency import ConcurrencyManager
from gateflow.swarm.scheduler import SwarmScheduler, UnknownBatchError
from gateflow.swarm.staleness import StalenessDetector

__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ConcurrencyManager",
    "ExecutionBackend",
    "RetryPolicy",
    "SessionProgress",
    "StalenessDetector",
    "SwarmScheduler",
    "UnknownBatchError",
]
