"""Dispatcher protocol and dock: isolated fan-out to downstream integrations.

- Each dispatcher handles one ActionKind and implements send()
- DispatcherDock routes every action to the dispatchers for its kind
- Dispatchers run in parallel; an exception in one becomes a failed
  DispatchResult and never reaches the caller or the other dispatchers
- Circuit breaker per dispatcher: after ``max_failures`` consecutive
  failures (across jobs) calls are skipped until ``circuit_reset_seconds``
  have passed. Then a single trial call goes through while the window is
  pushed out again for everyone else; its outcome closes or re-opens the
  circuit
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from dealhook.downstream.models import (
    ActionKind,
    DispatchReport,
    DispatchResult,
    DownstreamAction,
)

logger = logging.getLogger(__name__)


class DispatcherStatus(str, Enum):
    ACTIVE = "active"
    DEGRADED = "degraded"  # circuit open
    DISABLED = "disabled"  # not configured


@runtime_checkable
class Dispatcher(Protocol):
    """Protocol for downstream integrations."""

    @property
    def dispatcher_id(self) -> str:
        ...

    @property
    def action_kind(self) -> ActionKind:
        """The kind of action this dispatcher performs."""
        ...

    @property
    def is_configured(self) -> bool:
        """Whether credentials are present. Unconfigured dispatchers are skipped."""
        ...

    def send(self, action: DownstreamAction) -> DispatchResult:
        ...


@dataclass
class DispatcherConfig:
    dispatcher: Dispatcher
    status: DispatcherStatus = DispatcherStatus.ACTIVE
    failure_count: int = 0
    last_failure: float = 0.0
    circuit_open_until: float = 0.0
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class DispatcherDock:
    """Registry and parallel dispatcher for downstream integrations."""

    def __init__(
        self,
        max_failures: int = 5,
        circuit_reset_seconds: float = 300.0,
        max_workers: int = 4,
    ) -> None:
        self._dispatchers: dict[str, DispatcherConfig] = {}
        self._lock = threading.Lock()
        self._max_failures = max_failures
        self._circuit_reset_seconds = circuit_reset_seconds
        self._max_workers = max_workers
        self._dispatch_count = 0

    def register(self, dispatcher: Dispatcher) -> None:
        if not dispatcher.is_configured:
            logger.warning(
                "Dispatcher %s not configured — registering as disabled",
                dispatcher.dispatcher_id,
            )
            status = DispatcherStatus.DISABLED
        else:
            status = DispatcherStatus.ACTIVE
        self._dispatchers[dispatcher.dispatcher_id] = DispatcherConfig(
            dispatcher=dispatcher, status=status
        )
        logger.info(
            "Dispatcher registered: %s (%s) status=%s",
            dispatcher.dispatcher_id,
            dispatcher.action_kind.value,
            status.value,
        )

    def get(self, dispatcher_id: str) -> DispatcherConfig | None:
        return self._dispatchers.get(dispatcher_id)

    # ── Circuit breaker ──────────────────────────────────────────────────

    def _skip_reason(self, config: DispatcherConfig) -> str:
        """Reason to skip this dispatcher now, or '' to call it. Caller holds the lock."""
        if config.status == DispatcherStatus.DISABLED:
            return "not configured"
        if config.status == DispatcherStatus.DEGRADED:
            now = time.time()
            if now < config.circuit_open_until:
                return "circuit open"
            # Half-open: this caller is the trial, the rest wait out a new window
            config.circuit_open_until = now + self._circuit_reset_seconds
        return ""

    def _record_failure(self, config: DispatcherConfig) -> None:
        config.failure_count += 1
        config.failed += 1
        config.last_failure = time.time()
        if config.failure_count >= self._max_failures:
            config.status = DispatcherStatus.DEGRADED
            config.circuit_open_until = time.time() + self._circuit_reset_seconds
            logger.warning(
                "Dispatcher %s circuit opened — %d consecutive failures, retry after %ds",
                config.dispatcher.dispatcher_id,
                config.failure_count,
                self._circuit_reset_seconds,
            )

    def _record_success(self, config: DispatcherConfig) -> None:
        config.sent += 1
        if config.failure_count > 0:
            config.failure_count = 0
            if config.status == DispatcherStatus.DEGRADED:
                config.status = DispatcherStatus.ACTIVE
                logger.info("Dispatcher %s circuit closed — recovered", config.dispatcher.dispatcher_id)

    # ── Dispatch ─────────────────────────────────────────────────────────

    def _invoke(self, config: DispatcherConfig, action: DownstreamAction) -> DispatchResult:
        dispatcher = config.dispatcher
        did = dispatcher.dispatcher_id
        with self._lock:
            reason = self._skip_reason(config)
            if reason:
                config.skipped += 1
        if reason:
            logger.warning("Dispatcher %s skipped for %s (%s)", did, action.job_id, reason)
            return DispatchResult(
                success=False, dispatcher_id=did, action=action.name, error=reason, skipped=True
            )

        try:
            result = dispatcher.send(action)
        except Exception as e:
            logger.exception("Dispatcher %s raised for job %s", did, action.job_id)
            result = DispatchResult(success=False, dispatcher_id=did, action=action.name, error=str(e))

        with self._lock:
            if result.success:
                self._record_success(config)
            else:
                self._record_failure(config)
        if not result.success:
            logger.warning(
                "Dispatcher %s failed %s for job %s: %s", did, action.name, action.job_id, result.error
            )
        return result

    def dispatch(self, job_id: str, actions: list[DownstreamAction]) -> DispatchReport:
        """Run every action through its dispatchers. Never raises."""
        with self._lock:
            self._dispatch_count += 1
        calls = [
            (config, action)
            for action in actions
            for config in self._dispatchers.values()
            if config.dispatcher.action_kind == action.kind
        ]
        report = DispatchReport(job_id=job_id)
        if not calls:
            return report
        if len(calls) == 1:
            report.results.append(self._invoke(*calls[0]))
            return report

        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(calls))) as pool:
            futures = [pool.submit(self._invoke, config, action) for config, action in calls]
            report.results.extend(f.result() for f in futures)
        return report

    def status(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total_dispatchers": len(self._dispatchers),
                "dispatch_count": self._dispatch_count,
                "dispatchers": {
                    did: {
                        "action": cfg.dispatcher.action_kind.value,
                        "status": cfg.status.value,
                        "failure_count": cfg.failure_count,
                        "sent": cfg.sent,
                        "failed": cfg.failed,
                        "skipped": cfg.skipped,
                    }
                    for did, cfg in self._dispatchers.items()
                },
            }

    def close(self) -> None:
        for config in self._dispatchers.values():
            close = getattr(config.dispatcher, "close", None)
            if callable(close):
                close()
