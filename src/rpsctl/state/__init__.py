"""Read-only view of the per-site instances present on the host."""
from __future__ import annotations

from .registry import InstanceRegistry, InstanceSummary, ServiceStateQuery, list_sites

__all__ = ["InstanceRegistry", "InstanceSummary", "ServiceStateQuery", "list_sites"]
