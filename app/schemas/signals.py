"""External failure signals accepted by the incident mappers.

Signals arrive as JSON from pollers and webhooks with camelCase keys; models accept
either camelCase or snake_case. Timestamps are kept as the ISO 8601 strings the
producer sent, so incident keys built from them stay byte-identical.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Bounds keep mapped incident keys and titles within their 512 character columns.
MAX_LABEL = 64
MAX_IDENTIFIER = 128
MAX_ARN = 256


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp (``Z`` suffix accepted)."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _require_iso8601(value: str) -> str:
    try:
        parse_timestamp(value)
    except ValueError as exc:
        raise ValueError("must be an ISO 8601 timestamp") from exc
    return value


class SignalModel(BaseModel):
    """Base for signal payloads: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )


class StatusReason(SignalModel):
    code: str
    severity: str
    message: str


class DeployStatusSignal(SignalModel):
    """Deploy status change for an environment (GREEN / YELLOW / RED)."""

    env: str = Field(..., min_length=1, max_length=MAX_LABEL)
    status: Literal["GREEN", "YELLOW", "RED"]
    changed_at: str = Field(..., max_length=MAX_LABEL)
    signals: dict[str, Any]
    reasons: list[StatusReason] = Field(default_factory=list)
    deploy_id: str | None = Field(None, max_length=MAX_IDENTIFIER)

    @field_validator("changed_at")
    @classmethod
    def check_changed_at(cls, value: str) -> str:
        return _require_iso8601(value)


class FailedVerificationStep(SignalModel):
    id: str
    title: str
    error: str | None = None


class VerificationSignal(SignalModel):
    """Post-deploy verification run outcome."""

    run_id: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER)
    playbook_id: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER)
    playbook_version: str = Field(..., min_length=1, max_length=MAX_LABEL)
    env: str = Field(..., min_length=1, max_length=MAX_LABEL)
    status: str = Field(..., min_length=1, max_length=MAX_LABEL)
    completed_at: str = Field(..., max_length=MAX_LABEL)
    deploy_id: str | None = Field(None, max_length=MAX_IDENTIFIER)
    report_hash: str | None = Field(None, max_length=MAX_IDENTIFIER)
    failed_steps: list[FailedVerificationStep] | None = None

    @field_validator("completed_at")
    @classmethod
    def check_completed_at(cls, value: str) -> str:
        return _require_iso8601(value)


class EcsContainer(SignalModel):
    name: str
    exit_code: int | None = None
    reason: str | None = None


class EcsStoppedSignal(SignalModel):
    """ECS task stopped event."""

    cluster: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER)
    task_arn: str = Field(..., min_length=1, max_length=MAX_ARN)
    stopped_at: str = Field(..., max_length=MAX_LABEL)
    task_definition: str | None = None
    stopped_reason: str | None = None
    exit_code: int | None = None
    last_status: str | None = None
    containers: list[EcsContainer] | None = None

    @field_validator("stopped_at")
    @classmethod
    def check_stopped_at(cls, value: str) -> str:
        return _require_iso8601(value)


class RunnerSignal(SignalModel):
    """GitHub Actions step conclusion."""

    run_id: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER)
    step_name: str = Field(..., min_length=1, max_length=MAX_IDENTIFIER)
    conclusion: str = Field(..., min_length=1, max_length=MAX_LABEL)
    completed_at: str = Field(..., max_length=MAX_LABEL)
    run_url: str | None = None
    error_message: str | None = None
    job_name: str | None = None
    workflow_name: str | None = Field(None, max_length=MAX_IDENTIFIER)
    repository: str | None = None
    ref: str | None = None

    @field_validator("completed_at")
    @classmethod
    def check_completed_at(cls, value: str) -> str:
        return _require_iso8601(value)
