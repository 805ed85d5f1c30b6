"""Operator commands over the distribution engine.

preview_command    scope -> summary
initiate_command   scope + confirm flag -> job id + queued count
status_query       job id or scope -> counts by outcome
retry_command      job id -> re-queued count (zero when nothing qualifies)
trigger_command    batch size -> run result, or an already-running signal

Inputs are validated with pydantic before anything touches the database;
validation failures surface as ``InvalidArgument``.
"""
from __future__ import annotations

import logging
from uuid import UUID

from pydantic import BaseModel, Field, ValidationError, model_validator
from sqlalchemy.orm import Session

from report_dispatch.core.errors import InvalidArgument, NothingToRetry
from report_dispatch.core.settings import Settings, get_settings
from report_dispatch.distribution.orchestrator import DistributionOrchestrator
from report_dispatch.distribution.scheduler import DispatchScheduler
from report_dispatch.distribution.scope import DistributionScope, ScopeSource, SqlScopeSource

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ScopeRequest(BaseModel):
    class_section_id: UUID
    academic_year_id: UUID

    def to_scope(self) -> DistributionScope:
        return DistributionScope(self.class_section_id, self.academic_year_id)


class InitiateRequest(ScopeRequest):
    initiated_by: str = Field(min_length=1)
    confirm: bool = False


class StatusRequest(BaseModel):
    job_id: UUID | None = None
    class_section_id: UUID | None = None
    academic_year_id: UUID | None = None

    @model_validator(mode="after")
    def job_or_scope(self):
        has_scope = self.class_section_id is not None and self.academic_year_id is not None
        if self.job_id is None and not has_scope:
            raise ValueError("Provide either job_id or class_section_id and academic_year_id")
        return self


class RetryRequest(BaseModel):
    job_id: UUID
    actor: str = Field(default="system", min_length=1)


class TriggerRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1)


def _parse(model: type[BaseModel], **data) -> BaseModel:
    try:
        return model(**data)
    except ValidationError as exc:
        raise InvalidArgument(str(exc)) from exc


def _orchestrator(
    db_session: Session,
    settings: Settings | None,
    scope_source: ScopeSource | None,
) -> DistributionOrchestrator:
    return DistributionOrchestrator(
        db_session,
        scope_source or SqlScopeSource(db_session),
        settings or get_settings(),
    )


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def preview_command(
    db_session: Session,
    class_section_id,
    academic_year_id,
    settings: Settings | None = None,
    scope_source: ScopeSource | None = None,
) -> dict:
    request = _parse(ScopeRequest, class_section_id=class_section_id, academic_year_id=academic_year_id)
    preview = _orchestrator(db_session, settings, scope_source).preview(request.to_scope())
    return preview.as_dict()


def initiate_command(
    db_session: Session,
    class_section_id,
    academic_year_id,
    initiated_by: str,
    confirm: bool = False,
    settings: Settings | None = None,
    scope_source: ScopeSource | None = None,
) -> dict:
    request = _parse(
        InitiateRequest,
        class_section_id=class_section_id,
        academic_year_id=academic_year_id,
        initiated_by=initiated_by,
        confirm=confirm,
    )
    result = _orchestrator(db_session, settings, scope_source).initiate(
        request.to_scope(), request.initiated_by, confirm=request.confirm
    )
    return result.as_dict()


def status_query(
    db_session: Session,
    job_id=None,
    class_section_id=None,
    academic_year_id=None,
    settings: Settings | None = None,
) -> dict:
    """Job status when *job_id* is given, otherwise the scope's distribution stats."""
    request = _parse(
        StatusRequest,
        job_id=job_id,
        class_section_id=class_section_id,
        academic_year_id=academic_year_id,
    )
    orchestrator = _orchestrator(db_session, settings, None)
    if request.job_id is not None:
        return orchestrator.status(request.job_id)
    return orchestrator.scope_status(
        DistributionScope(request.class_section_id, request.academic_year_id)
    )


def retry_command(
    db_session: Session,
    job_id,
    actor: str = "system",
    settings: Settings | None = None,
) -> dict:
    request = _parse(RetryRequest, job_id=job_id, actor=actor)
    try:
        result = _orchestrator(db_session, settings, None).retry_failed(request.job_id, request.actor)
    except NothingToRetry as exc:
        logger.info("Retry requested for job %s: %s", request.job_id, exc)
        return {"batch_job_id": str(request.job_id), "retried": exc.retried, "message": str(exc)}
    return {"batch_job_id": str(result.batch_job_id), "retried": result.retried, "message": result.message}


def trigger_command(scheduler: DispatchScheduler, batch_size: int | None = None) -> dict:
    request = _parse(TriggerRequest, batch_size=batch_size)
    return scheduler.trigger(request.batch_size).as_dict()
