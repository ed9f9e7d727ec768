"""SQLAlchemy models."""

from app.models.incident import Incident
from app.models.incident_event import IncidentEvent
from app.models.incident_evidence import IncidentEvidence
from app.models.incident_link import IncidentLink
from app.models.remediation_audit_event import RemediationAuditEvent
from app.models.remediation_run import RemediationRun
from app.models.remediation_step import RemediationStep
from app.models.stop_decision_audit import StopDecisionAudit

__all__ = [
    "Incident",
    "IncidentEvent",
    "IncidentEvidence",
    "IncidentLink",
    "RemediationAuditEvent",
    "RemediationRun",
    "RemediationStep",
    "StopDecisionAudit",
]
