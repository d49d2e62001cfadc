"""
Enrichment routes.

The HTTP surface the browser front-end uses to start, watch, cancel and
restart enrichment jobs. Callers are identified by `userId`; jobs, limits
and cooldowns are resolved through the caller's quota key.
"""

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from crm_enricher.auth.verify import auth_dependency, require_caller
from crm_enricher.features.enrichment.api.schemas import (
    CancelProcessingRequest,
    ConflictResponse,
    CooldownResponse,
    CooldownStatusView,
    DailyLimitsResponse,
    HumanPatternsResponse,
    JobStatusResponse,
    JobView,
    LimitInfo,
    MessageResponse,
    PatternView,
    RestartAfterCancelRequest,
    RestartProcessingRequest,
    StartProcessingRequest,
    StartProcessingResponse,
    UserJobResponse,
)
from crm_enricher.features.enrichment.domain import (
    ACTIVE_STATUSES,
    CooldownNotFoundError,
    EnrichmentError,
    InvalidJobTransitionError,
    Job,
    JobConflictError,
    JobItem,
    JobNotFoundError,
    JobStatus,
    NoItemsError,
    Session,
)
from crm_enricher.features.enrichment.engine import EnrichmentEngine, get_engine
from crm_enricher.features.enrichment.services import CollaboratorError, quota_key_for
from crm_enricher.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["enrichment"])


def _error_response(operation: str, error: Exception) -> JSONResponse:
    """Map engine errors to structured JSON responses."""
    if isinstance(error, JobConflictError):
        body = ConflictResponse(
            message=error.message,
            job_id=error.job_id,
            can_resume=error.can_resume,
            cooldown_active=error.cooldown_active,
            cooldown_days_left=error.cooldown_days_left,
        )
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT, content=body.model_dump(mode="json", by_alias=True)
        )

    if isinstance(error, JobNotFoundError | CooldownNotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, InvalidJobTransitionError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, NoItemsError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(error, CollaboratorError):
        code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(error, EnrichmentError):
        code = status.HTTP_400_BAD_REQUEST
    else:
        logger.error(
            f"Enrichment {operation} failed",
            error=str(error),
            error_type=type(error).__name__,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": f"Failed to {operation}", "error": str(error)},
        )

    logger.info(f"Enrichment {operation} rejected", status_code=code, reason=str(error))
    return JSONResponse(status_code=code, content={"success": False, "message": str(error)})


async def _quota_key(engine: EnrichmentEngine, user_id: str) -> str:
    return await engine.sessions.quota_key_for_caller(user_id)


async def _limit_info(engine: EnrichmentEngine, quota_key: str) -> LimitInfo:
    snapshot = await engine.rate_limiter.limit_status(quota_key)
    days_left = await engine.cooldown.days_remaining(quota_key)
    return LimitInfo(**snapshot, cooldown_active=days_left > 0, cooldown_days_left=days_left)


async def _has_live_worker(engine: EnrichmentEngine, job_id: str) -> bool:
    if engine.pool.is_running(job_id):
        return True
    return await engine.store.lease_holder(job_id) is not None


async def _load_items(
    engine: EnrichmentEngine, body: StartProcessingRequest, session: Session
) -> list[JobItem]:
    if body.contacts is not None:
        return [contact.to_item() for contact in body.contacts]
    return await engine.crm_reader.list_items(session)


async def _start_worker(engine: EnrichmentEngine, job: Job) -> Job:
    job = await engine.lifecycle.transition_to_processing(job.job_id)
    engine.pool.spawn(job.job_id)
    return job


@router.post("/start-processing", response_model=StartProcessingResponse)
async def start_processing(
    body: StartProcessingRequest,
    engine: EnrichmentEngine = Depends(get_engine),
    claims: dict | None = Depends(auth_dependency),
):
    """Create a job for the caller's organization, or join and resume the existing one."""
    require_caller(body.user_id, claims)
    try:
        session = await engine.sessions.upsert_session(body.user_id, **body.session_fields())
        quota_key = quota_key_for(body.user_id, session.crm_url)

        current = await engine.lifecycle.get_current_job(quota_key)
        has_active = current is not None and current.status in ACTIVE_STATUSES
        if has_active or await engine.cooldown.is_blocked(quota_key):
            # No new job can come out of this call, so skip reading contacts
            items = []
        else:
            items = await _load_items(engine, body, session)

        job = await engine.lifecycle.create_or_attach(quota_key, body.user_id, items)
        attached = current is not None and current.job_id == job.job_id

        if job.status == JobStatus.PROCESSING and await _has_live_worker(engine, job.job_id):
            raise JobConflictError(
                "Processing is already running for this organization",
                job_id=job.job_id,
                can_resume=True,
            )

        job = await _start_worker(engine, job)
        limit_info = await _limit_info(engine, quota_key)

        return StartProcessingResponse(
            message="Joined existing job" if attached else "Processing started",
            job_id=job.job_id,
            status=job.status.value,
            total_contacts=job.total_items,
            processed_count=job.processed_count,
            attached=attached,
            limit_info=limit_info,
            job=JobView.from_job(job),
        )
    except Exception as e:
        return _error_response("start processing", e)


@router.get("/job-status/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    job_id: str,
    engine: EnrichmentEngine = Depends(get_engine),
    claims: dict | None = Depends(auth_dependency),
):
    """Poll one job."""
    try:
        job = await engine.lifecycle.get_job(job_id)
        if claims is not None and claims.get("sub") not in job.participant_ids:
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content={"success": False, "message": "Not a participant of this job"},
            )
        return JobStatusResponse(job=JobView.from_job(job))
    except Exception as e:
        return _error_response("get job status", e)


@router.get("/user-job/{user_id}", response_model=UserJobResponse)
async def get_user_job(
    user_id: str,
    engine: EnrichmentEngine = Depends(get_engine),
    claims: dict | None = Depends(auth_dependency),
):
    """Resolve the caller's current job through their quota key."""
    require_caller(user_id, claims)
    try:
        job = await engine.lifecycle.get_current_job(await _quota_key(engine, user_id))
        return UserJobResponse(
            can_resume=job is not None and job.status in ACTIVE_STATUSES,
            job=JobView.from_job(job) if job else None,
        )
    except Exception as e:
        return _error_response("get user job", e)


@router.get("/human-patterns", response_model=HumanPatternsResponse)
async def get_human_patterns(engine: EnrichmentEngine = Depends(get_engine)):
    """Current pattern and the full configured table."""
    patterns = engine.patterns
    now = engine.rate_limiter.now_fn()
    next_active = patterns.next_active_pattern(now)
    return HumanPatternsResponse(
        timezone=str(patterns.zone),
        current_pattern=PatternView.from_pattern(patterns.current_pattern(now)),
        next_active_pattern=next_active[0].name if next_active else None,
        next_active_start=next_active[1] if next_active else None,
        all_patterns=[PatternView.from_pattern(p) for p in patterns.all_patterns()],
    )


@router.get("/daily-limits/{user_id}", response_model=DailyLimitsResponse)
async def get_daily_limits(
    user_id: str,
    engine: EnrichmentEngine = Depends(get_engine),
    claims: dict | None = Depends(auth_dependency),
):
    """Counters, limits and whether an item could be processed right now."""
    require_caller(user_id, claims)
    try:
        return DailyLimitsResponse(limits=await _limit_info(engine, await _quota_key(engine, user_id)))
    except Exception as e:
        return _error_response("get daily limits", e)


@router.get("/user-cooldown/{user_id}", response_model=CooldownResponse)
async def get_user_cooldown(
    user_id: str,
    engine: EnrichmentEngine = Depends(get_engine),
    claims: dict | None = Depends(auth_dependency),
):
    require_caller(user_id, claims)
    try:
        cooldown = await engine.cooldown.status(await _quota_key(engine, user_id))
        return CooldownResponse(cooldown_status=CooldownStatusView(**cooldown))
    except Exception as e:
        return _error_response("get cooldown", e)


@router.post("/restart-processing/{user_id}", response_model=MessageResponse)
async def restart_processing(
    user_id: str,
    body: RestartProcessingRequest | None = None,
    engine: EnrichmentEngine = Depends(get_engine),
    claims: dict | None = Depends(auth_dependency),
):
    """Override the cooldown so a new job may start; history is kept."""
    require_caller(user_id, claims)
    try:
        reason = body.reason if body else RestartProcessingRequest().reason
        await engine.cooldown.override(await _quota_key(engine, user_id), reason, caller_id=user_id)
        return MessageResponse(message="Cooldown overridden, processing can be started again")
    except Exception as e:
        return _error_response("override cooldown", e)


@router.post("/cancel-processing/{user_id}", response_model=MessageResponse)
async def cancel_processing(
    user_id: str,
    body: CancelProcessingRequest | None = None,
    engine: EnrichmentEngine = Depends(get_engine),
    claims: dict | None = Depends(auth_dependency),
):
    """Cancel the caller's current job; progress is preserved."""
    require_caller(user_id, claims)
    try:
        quota_key = await _quota_key(engine, user_id)
        job = await engine.lifecycle.get_current_job(quota_key)
        if job is None:
            raise JobNotFoundError(f"current job for {quota_key}")

        reason = body.reason if body else CancelProcessingRequest().reason
        job = await engine.lifecycle.cancel(job.job_id, reason)
        return MessageResponse(message="Processing cancelled", job=JobView.from_job(job))
    except Exception as e:
        return _error_response("cancel processing", e)


@router.post("/restart-after-cancel/{user_id}", response_model=MessageResponse)
async def restart_after_cancel(
    user_id: str,
    body: RestartAfterCancelRequest | None = None,
    engine: EnrichmentEngine = Depends(get_engine),
    claims: dict | None = Depends(auth_dependency),
):
    """Start a fresh job from a cancelled or failed one and begin processing."""
    require_caller(user_id, claims)
    try:
        quota_key = await _quota_key(engine, user_id)
        old = await engine.lifecycle.get_current_job(quota_key)
        if old is None:
            raise JobNotFoundError(f"current job for {quota_key}")

        reset = body.reset_contacts if body else False
        job = await engine.lifecycle.restart(old.job_id, user_id, reset_items=reset)
        job = await _start_worker(engine, job)
        return MessageResponse(message="Processing restarted", job=JobView.from_job(job))
    except Exception as e:
        return _error_response("restart processing", e)


@router.post("/reset-processing/{user_id}", response_model=MessageResponse)
async def reset_processing(
    user_id: str,
    engine: EnrichmentEngine = Depends(get_engine),
    claims: dict | None = Depends(auth_dependency),
):
    """
    Full reset: delete the cooldown and prepare a fresh job with every
    contact pending. The job starts on the next start-processing call.
    """
    require_caller(user_id, claims)
    try:
        quota_key = await _quota_key(engine, user_id)
        current = await engine.lifecycle.get_current_job(quota_key)
        items = None
        if current is None:
            session = await engine.sessions.get_session(user_id)
            if session is None:
                raise NoItemsError(quota_key)
            items = await engine.crm_reader.list_items(session)

        job = await engine.lifecycle.reset_all(quota_key, user_id, items=items)
        return MessageResponse(message="Processing reset", job=JobView.from_job(job))
    except Exception as e:
        return _error_response("reset processing", e)
