"""Downstream integrations and the isolated fan-out dock."""

from dealhook.downstream.models import (
    ActionKind,
    Customer,
    DealSnapshot,
    DispatchReport,
    DispatchResult,
    DownstreamAction,
    PropertyInfo,
)
from dealhook.downstream.protocol import Dispatcher, DispatcherDock, DispatcherStatus

__all__ = [
    "ActionKind",
    "Customer",
    "DealSnapshot",
    "Dispatcher",
    "DispatcherDock",
    "DispatcherStatus",
    "DispatchReport",
    "DispatchResult",
    "DownstreamAction",
    "PropertyInfo",
]
