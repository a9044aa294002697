"""Job execution: the CRM event processor and the worker pool."""

from dealhook.worker.pool import Worker, WorkerPool
from dealhook.worker.processor import CRMEventProcessor

__all__ = ["CRMEventProcessor", "Worker", "WorkerPool"]
