"""Service construction and teardown.

Entry points (the FastAPI lifespan, the worker CLI) call build_services()
once and close() on shutdown. Nothing in the package holds a connection at
module level.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import redis

from dealhook.config import Settings
from dealhook.downstream.brevo import BrevoEmailDispatcher
from dealhook.downstream.meta_capi import MetaConversionsDispatcher
from dealhook.downstream.protocol import DispatcherDock
from dealhook.providers.crm import CRMProvider
from dealhook.providers.registry import ProviderRegistry
from dealhook.queue.crm import CRM_WEBHOOK_QUEUE, crm_job_options
from dealhook.queue.jobs import DispatchQueue
from dealhook.queue.memory import InMemoryDispatchQueue
from dealhook.queue.redis_queue import RedisDispatchQueue
from dealhook.receipts.postgres import PostgresReceiptStore
from dealhook.receipts.store import InMemoryReceiptStore, ReceiptStore
from dealhook.worker.pool import WorkerPool
from dealhook.worker.processor import CRMEventProcessor

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    receipts: ReceiptStore
    queue: DispatchQueue
    registry: ProviderRegistry
    dock: DispatcherDock
    processor: CRMEventProcessor

    def worker_pool(self, concurrency: int | None = None) -> WorkerPool:
        return WorkerPool(
            self.queue,
            self.receipts,
            self.processor,
            concurrency=concurrency or self.settings.worker_concurrency,
        )

    def close(self) -> None:
        for name, closer in (
            ("dispatchers", self.dock.close),
            ("queue", self.queue.close),
            ("receipt store", self.receipts.close),
        ):
            try:
                closer()
            except Exception:
                logger.warning("Error closing %s", name, exc_info=True)


def build_receipt_store(settings: Settings) -> ReceiptStore:
    if settings.receipt_backend == "memory":
        logger.warning("Using in-memory receipt store — receipts are lost on restart")
        return InMemoryReceiptStore()
    store = PostgresReceiptStore(settings.database_url)
    store.init_schema()
    return store


def build_queue(settings: Settings) -> DispatchQueue:
    if settings.queue_backend == "memory":
        logger.warning("Using in-memory dispatch queue — jobs are lost on restart")
        return InMemoryDispatchQueue(CRM_WEBHOOK_QUEUE, lease_seconds=settings.queue_lease_seconds)
    client = redis.from_url(settings.redis_url, decode_responses=True)
    return RedisDispatchQueue(client, CRM_WEBHOOK_QUEUE, lease_seconds=settings.queue_lease_seconds)


def build_dock(settings: Settings) -> DispatcherDock:
    dock = DispatcherDock()
    dock.register(
        MetaConversionsDispatcher(
            access_token=settings.meta_access_token,
            pixel_id=settings.meta_pixel_id,
            api_version=settings.meta_api_version,
            base_url=settings.meta_base_url,
            event_source_url=settings.base_url,
            timeout=settings.downstream_timeout,
        )
    )
    dock.register(
        BrevoEmailDispatcher(
            api_key=settings.brevo_api_key,
            sender_email=settings.brevo_sender_email,
            sender_name=settings.brevo_sender_name,
            base_url=settings.brevo_base_url,
            timeout=settings.downstream_timeout,
        )
    )
    return dock


def build_services(
    settings: Settings,
    *,
    receipts: ReceiptStore | None = None,
    queue: DispatchQueue | None = None,
    dock: DispatcherDock | None = None,
) -> Services:
    """Wire up the pipeline. Explicit arguments override the configured backends."""
    receipts = receipts if receipts is not None else build_receipt_store(settings)
    queue = queue if queue is not None else build_queue(settings)
    dock = dock if dock is not None else build_dock(settings)
    registry = ProviderRegistry([CRMProvider(queue, crm_job_options(settings))])
    return Services(
        settings=settings,
        receipts=receipts,
        queue=queue,
        registry=registry,
        dock=dock,
        processor=CRMEventProcessor(dock),
    )
