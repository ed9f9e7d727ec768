"""Stop/escalation rules for automated CI reruns."""

from app.stop_decision.schemas import StopDecision, StopDecisionContext
from app.stop_decision.service import evaluate_stop_decision

__all__ = ["StopDecision", "StopDecisionContext", "evaluate_stop_decision"]
