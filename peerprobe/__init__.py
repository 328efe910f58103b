"""Reachability and interference probing for overlay peers and plain hosts."""

from .models import (
    CheckKind,
    CumulativeEndpointResult,
    EndpointDescriptor,
    ProtocolClass,
    RunConfig,
    RunSummary,
    TargetResult,
)
from .orchestrator import CancellationToken, CheckOrchestrator

__version__ = "0.3.0"

__all__ = [
    "CancellationToken",
    "CheckKind",
    "CheckOrchestrator",
    "CumulativeEndpointResult",
    "EndpointDescriptor",
    "ProtocolClass",
    "RunConfig",
    "RunSummary",
    "TargetResult",
]
