"""Pydantic schemas: external signals and incident DTOs."""

from app.schemas.incident import (
    EvidenceDraft,
    IncidentDraft,
    IncidentRead,
    ValidationResult,
)
from app.schemas.signals import (
    DeployStatusSignal,
    EcsStoppedSignal,
    RunnerSignal,
    SignalModel,
    VerificationSignal,
)

__all__ = [
    "DeployStatusSignal",
    "EcsStoppedSignal",
    "EvidenceDraft",
    "IncidentDraft",
    "IncidentRead",
    "RunnerSignal",
    "SignalModel",
    "ValidationResult",
    "VerificationSignal",
]
