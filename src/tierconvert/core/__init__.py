"""Capability probing and tier orchestration."""

from tierconvert.core.capability import (
    BackendCapability,
    CapabilityAssessment,
    CapabilityProbe,
    CapabilityProvider,
    RuntimeCapabilityProvider,
    StaticCapabilityProvider,
)
from tierconvert.core.orchestrator import (
    AttemptRecord,
    FallbackTransition,
    OrchestratorState,
    TierOrchestrator,
    UserFeedback,
    create_orchestrator,
)

__all__ = [
    # Capability
    "BackendCapability",
    "CapabilityAssessment",
    "CapabilityProbe",
    "CapabilityProvider",
    "RuntimeCapabilityProvider",
    "StaticCapabilityProvider",
    # Orchestration
    "AttemptRecord",
    "FallbackTransition",
    "OrchestratorState",
    "TierOrchestrator",
    "UserFeedback",
    "create_orchestrator",
]
