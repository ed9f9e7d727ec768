"""Bundled remediation playbooks."""

from app.remediation.playbooks.redeploy_lkg import REDEPLOY_LKG_PLAYBOOK
from app.remediation.playbooks.rerun_verification import RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK
from app.remediation.playbooks.service_health_reset import SERVICE_HEALTH_RESET_PLAYBOOK

__all__ = [
    "REDEPLOY_LKG_PLAYBOOK",
    "RERUN_POST_DEPLOY_VERIFICATION_PLAYBOOK",
    "SERVICE_HEALTH_RESET_PLAYBOOK",
]
