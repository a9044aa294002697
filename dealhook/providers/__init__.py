"""Per-source webhook adapters."""

from dealhook.providers.base import InboundRequest, Provider
from dealhook.providers.crm import CRMProvider
from dealhook.providers.registry import ProviderRegistry

__all__ = ["CRMProvider", "InboundRequest", "Provider", "ProviderRegistry"]
