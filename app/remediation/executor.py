"""Playbook executor: gating, run idempotency and the generic step loop.

Order of checks for one request:

1. Incident must exist (INCIDENT_NOT_FOUND).
2. Governance is required: no lawbook means no run at all (LAWBOOK_NOT_CONFIGURED).
3. run_key = hash(incident_key, playbook_id, inputs_hash). An existing non-skipped run for
   the key is returned as-is; no step runs again.
4. Lawbook remediation gates (policy, ROLLBACK_DEPLOY restriction, evidence kinds required
   for the incident category); a DENY is persisted as a SKIPPED run (LAWBOOK_DENIED).
5. Required evidence; anything missing is persisted as a SKIPPED run (EVIDENCE_MISSING).
6. The PLANNED run is claimed with INSERT ... ON CONFLICT DO NOTHING on run_key. A racing
   loser returns the winner's run. A SKIPPED run is re-claimed with a conditional UPDATE.
7. Steps run strictly in order; the first failure aborts the run. A step whose idempotency
   key is malformed fails with INVALID_IDEMPOTENCY_KEY before it executes.

Step outputs are sanitized once here, before they are persisted, threaded into later
steps or returned.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.canonical import content_hash
from app.db.upsert import conflict_insert
from app.governance.gates import gate_idempotency_key_format, gate_playbook_allowed
from app.governance.snapshot import (
    LAWBOOK_NOT_CONFIGURED,
    GovernanceSnapshot,
    LawbookNotConfiguredError,
    load_governance,
)
from app.incidents import store
from app.models.incident import Incident
from app.models.remediation_audit_event import RemediationAuditEvent
from app.models.remediation_run import RemediationRun
from app.models.remediation_step import RemediationStep
from app.remediation.adapters import RemediationAdapters
from app.remediation.contracts import (
    EVIDENCE_MISSING,
    EXECUTION_ERROR,
    FAILED,
    INCIDENT_NOT_FOUND,
    INVALID_IDEMPOTENCY_KEY,
    LAWBOOK_DENIED,
    PLANNED,
    RUNNING,
    SKIPPED,
    SUCCEEDED,
    PlaybookDefinition,
    RunRequest,
    RunResult,
    StepContext,
    StepDefinition,
    StepOutcome,
    StepResult,
    compute_inputs_hash,
    compute_run_key,
)
from app.remediation.policies import default_idempotency_key
from app.remediation.sanitize import redact_text, sanitize_redact

logger = logging.getLogger(__name__)

IDEMPOTENT_MESSAGE = "Existing run returned (idempotent)"

_POPULATE = {"populate_existing": True}


def execute_playbook_by_id(
    db: Session,
    request: RunRequest,
    adapters: RemediationAdapters,
    governance: GovernanceSnapshot | None = None,
    now: datetime | None = None,
) -> RunResult:
    """Resolve request.playbook_id in the registry and execute it.

    Raises:
        ValueError: If the playbook id is not registered.
    """
    from app.remediation.registry import get_playbook

    return execute_playbook(db, request, get_playbook(request.playbook_id), adapters, governance, now)


def execute_playbook(
    db: Session,
    request: RunRequest,
    playbook: PlaybookDefinition,
    adapters: RemediationAdapters,
    governance: GovernanceSnapshot | None = None,
    now: datetime | None = None,
) -> RunResult:
    """Execute playbook against the incident named by request.

    Args:
        db: Session; committed at each run/step transition.
        request: Incident reference, playbook id and inputs.
        playbook: Playbook definition to run.
        adapters: External adapters available to steps.
        governance: Snapshot to gate with. Loaded (and required) when None.
        now: Logical time for gates and frequency buckets (defaults to current UTC time).

    Returns:
        RunResult. Expected failures (gates, step errors, storage errors) are reported
        in the result, never raised.

    Raises:
        ValueError: If request names neither incident_id nor incident_key.
    """
    if request.incident_id is None and not request.incident_key:
        raise ValueError("RunRequest requires incident_id or incident_key")
    now = now or datetime.now(UTC)
    try:
        return _execute(db, request, playbook, adapters, governance, now)
    except Exception as exc:
        db.rollback()
        logger.exception(
            "Playbook execution failed: playbook=%s incident_id=%s incident_key=%s",
            playbook.id,
            request.incident_id,
            request.incident_key,
        )
        return RunResult(
            status=FAILED,
            playbook_id=playbook.id,
            incident_id=request.incident_id,
            error={"code": EXECUTION_ERROR, "message": redact_text(str(exc))},
        )


def _load_incident(db: Session, request: RunRequest) -> Incident | None:
    if request.incident_id is not None:
        return store.get_incident(db, request.incident_id)
    return store.get_incident_by_key(db, request.incident_key)


def _execute(
    db: Session,
    request: RunRequest,
    playbook: PlaybookDefinition,
    adapters: RemediationAdapters,
    governance: GovernanceSnapshot | None,
    now: datetime,
) -> RunResult:
    incident = _load_incident(db, request)
    if incident is None:
        return RunResult(
            status=FAILED,
            playbook_id=playbook.id,
            incident_id=request.incident_id,
            error={
                "code": INCIDENT_NOT_FOUND,
                "message": f"Incident {request.incident_id or request.incident_key} not found",
            },
        )

    try:
        if governance is None:
            governance = load_governance(required=True)
        elif not governance.is_configured:
            raise LawbookNotConfiguredError()
    except LawbookNotConfiguredError as exc:
        logger.warning("Remediation refused: playbook=%s %s", playbook.id, exc)
        return RunResult(
            status=FAILED,
            playbook_id=playbook.id,
            incident_id=incident.id,
            error={"code": LAWBOOK_NOT_CONFIGURED, "message": str(exc)},
        )

    inputs_hash = compute_inputs_hash(request.inputs)
    run_key = compute_run_key(incident.incident_key, playbook.id, inputs_hash)
    key_verdict = gate_idempotency_key_format(run_key)
    if not key_verdict.allowed:
        raise ValueError(f"Invalid run_key format: {key_verdict.reasons[0].message}")

    existing = db.scalars(select(RemediationRun).where(RemediationRun.run_key == run_key)).first()
    if existing is not None and existing.status != SKIPPED:
        logger.info("Existing run returned: run_key=%s run_id=%s", run_key, existing.id)
        return _run_result(existing, message=IDEMPOTENT_MESSAGE)

    base = {
        "run_key": run_key,
        "incident_id": incident.id,
        "playbook_id": playbook.id,
        "playbook_version": playbook.version,
        "lawbook_version": governance.lawbook_version,
        "inputs_hash": inputs_hash,
    }

    evidence = store.list_evidence(db, incident.id)
    prior_runs, last_run_at = _prior_runs(db, incident.id)
    verdict = gate_playbook_allowed(
        governance,
        playbook.id,
        playbook.action_types,
        prior_runs=prior_runs,
        last_run_at=last_run_at,
        now=now,
        incident_category=(incident.classification or {}).get("category"),
        evidence_kinds=sorted({e.kind for e in evidence}),
    )
    if not verdict.allowed:
        return _skip(
            db,
            base,
            now,
            {
                "skip_reason": LAWBOOK_DENIED,
                "message": "; ".join(r.message for r in verdict.reasons),
                "gate": verdict.to_dict(),
            },
        )

    missing = [p.describe() for p in playbook.required_evidence if not p.is_satisfied(evidence)]
    if missing:
        return _skip(
            db,
            base,
            now,
            {
                "skip_reason": EVIDENCE_MISSING,
                "missing_evidence": missing,
                "message": f"Required evidence missing for playbook {playbook.id}",
            },
        )

    resolved_inputs = {
        **request.inputs,
        "incident_id": incident.id,
        "incident_key": incident.incident_key,
    }
    planned = {
        "playbook_id": playbook.id,
        "playbook_version": playbook.version,
        "steps": [
            {
                "step_id": s.step_id,
                "action_type": s.action_type,
                "description": s.description,
                "resolved_inputs": _redact_inputs(resolved_inputs),
            }
            for s in playbook.steps
        ],
    }
    run, claimed = _claim_run(db, base, planned, now)
    if not claimed:
        db.commit()
        logger.info("Concurrent run won for run_key=%s run_id=%s", run_key, run.id)
        return _run_result(run, message=IDEMPOTENT_MESSAGE)
    _audit(db, run, "PLANNED", {"playbook_id": playbook.id, "inputs_hash": inputs_hash})

    run.status = RUNNING
    db.flush()
    _audit(db, run, "STATUS_UPDATED", {"status": RUNNING})
    db.commit()
    logger.info(
        "Remediation run started: run_id=%s playbook=%s incident=%s",
        run.id,
        playbook.id,
        incident.incident_key,
    )

    return _run_steps(
        db,
        run,
        playbook,
        incident,
        evidence,
        dict(resolved_inputs),
        governance,
        adapters,
        now,
    )


def _prior_runs(db: Session, incident_id: int) -> tuple[int, datetime | None]:
    count, last = db.execute(
        select(func.count(RemediationRun.id), func.max(RemediationRun.created_at)).where(
            RemediationRun.incident_id == incident_id,
            RemediationRun.status != SKIPPED,
        )
    ).one()
    return count, last


def _skip(
    db: Session,
    base: dict[str, Any],
    now: datetime,
    result_json: dict[str, Any],
) -> RunResult:
    """Persist (or refresh) a SKIPPED run for base["run_key"]."""
    stmt = conflict_insert(db, RemediationRun).values(
        **base,
        status=SKIPPED,
        planned_json=None,
        result_json=result_json,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["run_key"],
        set_={
            "result_json": stmt.excluded.result_json,
            "lawbook_version": stmt.excluded.lawbook_version,
            "updated_at": now,
        },
        where=RemediationRun.status == SKIPPED,
    )
    run = db.scalars(stmt.returning(RemediationRun), execution_options=_POPULATE).first()
    if run is None:
        # A concurrent executor claimed the key between our lookup and this write.
        run = db.scalars(
            select(RemediationRun).where(RemediationRun.run_key == base["run_key"])
        ).one()
        db.commit()
        return _run_result(run, message=IDEMPOTENT_MESSAGE)
    _audit(db, run, "SKIPPED", result_json)
    db.commit()
    logger.info(
        "Remediation run skipped: run_id=%s playbook=%s reason=%s",
        run.id,
        run.playbook_id,
        result_json["skip_reason"],
    )
    return _run_result(run)


def _claim_run(
    db: Session,
    base: dict[str, Any],
    planned: dict[str, Any],
    now: datetime,
) -> tuple[RemediationRun, bool]:
    """Create the PLANNED run for the key, or re-claim a SKIPPED one.

    Returns:
        (run, claimed). claimed is False when another executor already owns the key.
    """
    insert_stmt = (
        conflict_insert(db, RemediationRun)
        .values(
            **base,
            status=PLANNED,
            planned_json=planned,
            result_json=None,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["run_key"])
        .returning(RemediationRun)
    )
    run = db.scalars(insert_stmt, execution_options=_POPULATE).first()
    if run is not None:
        return run, True

    reclaim_stmt = (
        update(RemediationRun)
        .where(RemediationRun.run_key == base["run_key"], RemediationRun.status == SKIPPED)
        .values(
            status=PLANNED,
            lawbook_version=base["lawbook_version"],
            planned_json=planned,
            result_json=None,
            created_at=now,
            updated_at=now,
        )
        .returning(RemediationRun)
    )
    run = db.scalars(reclaim_stmt, execution_options=_POPULATE).first()
    if run is not None:
        logger.info("Skipped run re-claimed: run_id=%s run_key=%s", run.id, run.run_key)
        return run, True

    winner = db.scalars(
        select(RemediationRun).where(RemediationRun.run_key == base["run_key"])
    ).one()
    return winner, False


def _redact_inputs(inputs: dict[str, Any]) -> dict[str, Any]:
    # incident_id/incident_key are identifiers, not secrets; keep them readable.
    identity = {k: inputs[k] for k in ("incident_id", "incident_key") if k in inputs}
    rest = {k: v for k, v in inputs.items() if k not in identity}
    return {**sanitize_redact(rest), **identity}


def _step_key(step: StepDefinition, ctx: StepContext) -> str:
    if step.idempotency_key is not None:
        return step.idempotency_key(ctx)
    return default_idempotency_key(step.action_type, ctx)


def _succeeded_step(db: Session, idempotency_key: str) -> RemediationStep | None:
    return db.scalars(
        select(RemediationStep)
        .where(
            RemediationStep.idempotency_key == idempotency_key,
            RemediationStep.status == SUCCEEDED,
        )
        .order_by(RemediationStep.id.desc())
        .limit(1)
    ).first()


def _run_steps(
    db: Session,
    run: RemediationRun,
    playbook: PlaybookDefinition,
    incident: Incident,
    evidence: list,
    inputs: dict[str, Any],
    governance: GovernanceSnapshot,
    adapters: RemediationAdapters,
    now: datetime,
) -> RunResult:
    started = time.monotonic()
    run_id = run.id
    incident_id = incident.id
    incident_key = incident.incident_key
    outcomes: list[StepOutcome] = []
    error: dict[str, Any] | None = None

    for step in playbook.steps:
        ctx = StepContext(
            incident_id=incident_id,
            incident_key=incident_key,
            run_id=run_id,
            lawbook_version=governance.lawbook_version,
            evidence=evidence,
            inputs=dict(inputs),
            governance=governance,
            adapters=adapters,
            db=db,
            now=now,
        )
        key = _step_key(step, ctx)
        key_verdict = gate_idempotency_key_format(key)
        prior = _succeeded_step(db, key) if key_verdict.allowed else None

        row = RemediationStep(
            run_id=run_id,
            step_id=step.step_id,
            action_type=step.action_type,
            status=RUNNING,
            idempotency_key=key[:512],
            input_json=_redact_inputs(ctx.inputs),
            started_at=datetime.now(UTC),
        )
        db.add(row)
        db.flush()
        _audit(db, run, "STEP_STARTED", {"action_type": step.action_type}, step_id=step.step_id)
        db.commit()

        reused = prior is not None
        if not key_verdict.allowed:
            result = StepResult.fail(
                INVALID_IDEMPOTENCY_KEY,
                f"Invalid idempotency key for step {step.step_id}: {key_verdict.reasons[0].message}",
            )
        elif reused:
            logger.info(
                "Idempotent skip: step=%s idempotency_key=%s step_row_id=%s",
                step.step_id,
                key,
                prior.id,
            )
            result = StepResult.ok(prior.output_json)
        else:
            try:
                result = step.execute(ctx)
            except Exception as exc:
                db.rollback()
                logger.exception("Step raised: run_id=%s step=%s", run_id, step.step_id)
                result = StepResult.fail(EXECUTION_ERROR, str(exc))

        output = sanitize_redact(result.output) if result.output is not None else None
        step_error = sanitize_redact(result.error.to_dict()) if result.error is not None else None
        row.status = SUCCEEDED if result.success else FAILED
        row.output_json = output
        row.error_json = step_error
        row.finished_at = datetime.now(UTC)
        db.flush()
        _audit(
            db,
            run,
            "STEP_FINISHED",
            {"status": row.status, "reused": reused, "error": step_error},
            step_id=step.step_id,
        )
        if result.success and step.action_type == "UPDATE_INCIDENT_STATUS" and not reused:
            _audit(db, run, "STATUS_UPDATED", {"incident_id": incident_id, **(output or {})})
        db.commit()

        outcomes.append(
            StepOutcome(
                step_id=step.step_id,
                action_type=step.action_type,
                status=row.status,
                idempotency_key=key,
                output=output,
                error=step_error,
                reused=reused,
            )
        )
        if not result.success:
            error = step_error
            logger.warning(
                "Remediation step failed: run_id=%s step=%s code=%s",
                run_id,
                step.step_id,
                step_error.get("code") if step_error else None,
            )
            break
        if step.output_name:
            inputs[step.output_name] = output

    success_count = sum(1 for o in outcomes if o.status == SUCCEEDED)
    failed_count = sum(1 for o in outcomes if o.status == FAILED)
    result_json: dict[str, Any] = {
        "total_steps": len(playbook.steps),
        "success_count": success_count,
        "failed_count": failed_count,
        "duration_ms": int((time.monotonic() - started) * 1000),
    }
    if error is not None:
        result_json["error"] = error

    run.status = FAILED if error is not None else SUCCEEDED
    run.result_json = result_json
    run.updated_at = datetime.now(UTC)
    db.flush()
    _audit(db, run, "FAILED" if error is not None else "COMPLETED", result_json)
    db.commit()
    logger.info(
        "Remediation run finished: run_id=%s playbook=%s status=%s steps=%s/%s",
        run_id,
        playbook.id,
        run.status,
        success_count,
        len(playbook.steps),
    )

    result = _run_result(run)
    result.steps = outcomes
    return result


def _audit(
    db: Session,
    run: RemediationRun,
    event_type: str,
    payload: dict[str, Any],
    step_id: str | None = None,
) -> None:
    """Append one audit event in a savepoint. Failures are logged, never raised."""
    payload = sanitize_redact(payload)
    try:
        with db.begin_nested():
            db.add(
                RemediationAuditEvent(
                    run_id=run.id,
                    incident_id=run.incident_id,
                    step_id=step_id,
                    event_type=event_type,
                    payload=payload,
                    payload_hash=content_hash(payload),
                    lawbook_version=run.lawbook_version,
                )
            )
    except SQLAlchemyError:
        logger.warning(
            "Remediation audit write failed: run_id=%s event=%s",
            run.id,
            event_type,
            exc_info=True,
        )


def _run_result(run: RemediationRun, message: str | None = None) -> RunResult:
    result_json = run.result_json or {}
    steps = [
        StepOutcome(
            step_id=s.step_id,
            action_type=s.action_type,
            status=s.status,
            idempotency_key=s.idempotency_key,
            output=s.output_json,
            error=s.error_json,
        )
        for s in run.steps
    ]
    return RunResult(
        status=run.status,
        run_id=run.id,
        run_key=run.run_key,
        playbook_id=run.playbook_id,
        incident_id=run.incident_id,
        skip_reason=result_json.get("skip_reason") if run.status == SKIPPED else None,
        missing_evidence=list(result_json.get("missing_evidence") or []),
        steps=steps,
        result=run.result_json,
        error=result_json.get("error") if run.status == FAILED else None,
        message=message or result_json.get("message"),
        lawbook_version=run.lawbook_version,
    )
