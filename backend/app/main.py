from __future__ import annotations

import asyncio
import math
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    Response,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, StreamingResponse

from backend.app.auth import AuthContext, require_roles
from backend.app.models import (
    ActivityCreateRequest,
    ActivityRecord,
    AnalysisFailedRequest,
    AnalysisResultRequest,
    AnalysisStartedRequest,
    AutoScanConfigResponse,
    DiagnosticsReport,
    FeedbackReceivedRequest,
    InAppNotificationRecord,
    JobCaptureRequest,
    JobCaptureResponse,
    JobRecord,
    JobStatusChangeRequest,
    JobTimelineResponse,
    JourneyActionResponse,
    MilestoneCompletedRequest,
    NotificationHistoryResponse,
    NotificationPreferenceRecord,
    NotificationPreferenceUpdateRequest,
    NotificationTestRequest,
    NotificationTestResponse,
    PaymentReceivedRequest,
    PipelineRow,
    PipelineStatsResponse,
    ProjectStatusChangeRequest,
    ProposalGeneratedRequest,
    ProposalStatusChangeRequest,
)
from backend.app.observability import MetricsRegistry, configure_logging, observe_request
from backend.app.persistence import DatabasePersistence
from backend.app.services.channels import build_providers
from backend.app.services.diagnostics import DiagnosticsService
from backend.app.services.event_bus import EventBus
from backend.app.services.journey import JourneyService
from backend.app.services.ledger import ActivityLedger
from backend.app.services.notifications import NotificationDispatcher
from backend.app.services.pipeline import PipelineAggregator
from backend.app.services.preferences import PreferenceStore, PreferenceValidationError
from backend.app.services.realtime import SSE_HEADERS, RealtimeStreamManager
from backend.app.settings import Settings, load_settings
from backend.app.store import InMemoryStore, StoreNotFoundError

ANY_ROLE = ("freelancer", "admin", "service")
USER_ROLES = ("freelancer", "admin")


def create_app() -> FastAPI:
    configure_logging()
    settings = load_settings()
    persistence = (
        DatabasePersistence(
            settings.database_url, encryption_key=settings.credentials_encryption_key
        )
        if settings.persistence_enabled
        else None
    )
    store = InMemoryStore(persistence=persistence)
    metrics = MetricsRegistry()
    bus = EventBus()
    ledger = ActivityLedger(store)
    preferences = PreferenceStore(store)
    dispatcher = NotificationDispatcher(
        store=store,
        preferences=preferences,
        providers=build_providers(settings, store=store, bus=bus),
        metrics=metrics,
        timeout_seconds=settings.channel_timeout_seconds,
        concurrency=settings.notification_concurrency,
    )
    dispatcher.attach(bus)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        dispatcher.bind_loop(asyncio.get_running_loop())
        try:
            yield
        finally:
            await dispatcher.drain()
            dispatcher.bind_loop(None)

    app = FastAPI(title="Bid Buddy Journey API", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.store = store
    app.state.metrics = metrics
    app.state.bus = bus
    app.state.ledger = ledger
    app.state.preferences = preferences
    app.state.dispatcher = dispatcher
    app.state.journey = JourneyService(store=store, ledger=ledger, bus=bus)
    app.state.pipeline = PipelineAggregator(store=store, ledger=ledger)
    app.state.diagnostics = DiagnosticsService(
        store=store,
        preferences=preferences,
        dispatcher=dispatcher,
        log_window=settings.diagnostics_log_window,
    )
    app.state.streams = RealtimeStreamManager(
        bus,
        heartbeat_seconds=settings.sse_heartbeat_seconds,
        queue_size=settings.sse_queue_size,
        metrics=metrics,
    )

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        return await observe_request(request, call_next, metrics=app.state.metrics)

    app.include_router(build_router())
    return app


def get_store(request: Request) -> InMemoryStore:
    return request.app.state.store


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_metrics(request: Request) -> MetricsRegistry:
    return request.app.state.metrics


def get_journey(request: Request) -> JourneyService:
    return request.app.state.journey


def get_pipeline(request: Request) -> PipelineAggregator:
    return request.app.state.pipeline


def get_preferences(request: Request) -> PreferenceStore:
    return request.app.state.preferences


def get_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.dispatcher


def get_diagnostics(request: Request) -> DiagnosticsService:
    return request.app.state.diagnostics


def get_streams(request: Request) -> RealtimeStreamManager:
    return request.app.state.streams


def _not_found(exc: StoreNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


def _settle_notifications(request: Request, background_tasks: BackgroundTasks) -> None:
    # Deliveries scheduled by the bus finish after the response is sent.
    background_tasks.add_task(get_dispatcher(request).drain)


def _action_response(
    request: Request, context: AuthContext, job_id: str, activity: Optional[ActivityRecord]
) -> JourneyActionResponse:
    return JourneyActionResponse(
        job_id=job_id,
        activity_id=activity.id if activity else None,
        current_phase=get_pipeline(request).current_phase(job_id, context.tenant_id),
    )


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @router.get("/health/ready")
    def readiness(request: Request) -> dict[str, str]:
        settings = get_settings(request)
        persistence = getattr(request.app.state.store, "persistence", None)
        if settings.persistence_enabled and persistence and not persistence.ping():
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="database unavailable",
            )
        return {"status": "ready"}

    @router.get("/metrics", response_class=PlainTextResponse)
    def metrics(request: Request) -> Response:
        registry = get_metrics(request)
        return PlainTextResponse(registry.to_prometheus())

    # Journey

    @router.post("/jobs", response_model=JobCaptureResponse)
    async def capture_job(
        payload: JobCaptureRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JobCaptureResponse:
        job, activity = get_journey(request).capture_job(context.tenant_id, payload)
        _settle_notifications(request, background_tasks)
        return JobCaptureResponse(
            job_id=job.id,
            activity_id=activity.id,
            current_phase=activity.phase,
        )

    @router.get("/jobs/{job_id}", response_model=JobRecord)
    def get_job(
        job_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JobRecord:
        try:
            return get_store(request).get_job(job_id, context.tenant_id)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.post("/jobs/{job_id}/status", response_model=JourneyActionResponse)
    async def change_job_status(
        job_id: str,
        payload: JobStatusChangeRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JourneyActionResponse:
        try:
            activity = get_journey(request).on_job_status_changed(
                context.tenant_id, job_id, payload.new_status
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return _action_response(request, context, job_id, activity)

    @router.post("/jobs/{job_id}/proposal-status", response_model=JourneyActionResponse)
    async def change_proposal_status(
        job_id: str,
        payload: ProposalStatusChangeRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JourneyActionResponse:
        try:
            activity = get_journey(request).on_proposal_status_changed(
                context.tenant_id, job_id, payload
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return _action_response(request, context, job_id, activity)

    @router.post("/jobs/{job_id}/proposals", response_model=JourneyActionResponse)
    async def proposal_generated(
        job_id: str,
        payload: ProposalGeneratedRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JourneyActionResponse:
        try:
            activity = get_journey(request).on_proposal_generated(
                context.tenant_id, job_id, payload
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        _settle_notifications(request, background_tasks)
        return _action_response(request, context, job_id, activity)

    @router.post("/jobs/{job_id}/project-status", response_model=JourneyActionResponse)
    async def change_project_status(
        job_id: str,
        payload: ProjectStatusChangeRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JourneyActionResponse:
        try:
            activity = get_journey(request).on_project_status_changed(
                context.tenant_id, job_id, payload
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return _action_response(request, context, job_id, activity)

    @router.post("/jobs/{job_id}/analysis/start", response_model=JourneyActionResponse)
    async def analysis_started(
        job_id: str,
        payload: AnalysisStartedRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JourneyActionResponse:
        try:
            get_journey(request).on_analysis_started(
                context.tenant_id, job_id, payload.analysis_id
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return _action_response(request, context, job_id, None)

    @router.post("/jobs/{job_id}/analysis", response_model=JourneyActionResponse)
    async def analysis_completed(
        job_id: str,
        payload: AnalysisResultRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JourneyActionResponse:
        try:
            activity = get_journey(request).on_analysis_completed(
                context.tenant_id, job_id, payload
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        _settle_notifications(request, background_tasks)
        return _action_response(request, context, job_id, activity)

    @router.post("/jobs/{job_id}/analysis/failed", response_model=JourneyActionResponse)
    async def analysis_failed(
        job_id: str,
        payload: AnalysisFailedRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JourneyActionResponse:
        try:
            get_journey(request).on_analysis_failed(
                context.tenant_id, job_id, payload.error, payload.analysis_id
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return _action_response(request, context, job_id, None)

    @router.post("/jobs/{job_id}/milestones", response_model=JourneyActionResponse)
    async def milestone_completed(
        job_id: str,
        payload: MilestoneCompletedRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JourneyActionResponse:
        try:
            activity = get_journey(request).on_milestone_completed(
                context.tenant_id, job_id, payload
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return _action_response(request, context, job_id, activity)

    @router.post("/jobs/{job_id}/payments", response_model=JourneyActionResponse)
    async def payment_received(
        job_id: str,
        payload: PaymentReceivedRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JourneyActionResponse:
        try:
            activity = get_journey(request).on_payment_received(
                context.tenant_id, job_id, payload
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return _action_response(request, context, job_id, activity)

    @router.post("/jobs/{job_id}/feedback", response_model=JourneyActionResponse)
    async def feedback_received(
        job_id: str,
        payload: FeedbackReceivedRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JourneyActionResponse:
        try:
            activity = get_journey(request).on_feedback_received(
                context.tenant_id, job_id, payload
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return _action_response(request, context, job_id, activity)

    @router.post("/jobs/{job_id}/activities", response_model=JourneyActionResponse)
    async def log_activity(
        job_id: str,
        payload: ActivityCreateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JourneyActionResponse:
        try:
            activity = get_journey(request).log_activity(context.tenant_id, job_id, payload)
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc
        return _action_response(request, context, job_id, activity)

    @router.get("/jobs/{job_id}/timeline", response_model=JobTimelineResponse)
    def job_timeline(
        job_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> JobTimelineResponse:
        pipeline = get_pipeline(request)
        entries = pipeline.get_job_timeline(job_id, context.tenant_id)
        if not entries and get_store(request).find_job(job_id, context.tenant_id) is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"job not found: {job_id}"
            )
        return JobTimelineResponse(
            job_id=job_id,
            current_phase=entries[-1].activity.phase if entries else None,
            entries=entries,
        )

    @router.get("/pipeline", response_model=list[PipelineRow])
    def pipeline_overview(
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> list[PipelineRow]:
        return get_pipeline(request).get_pipeline(context.tenant_id)

    @router.get("/pipeline/stats", response_model=PipelineStatsResponse)
    def pipeline_stats(
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> PipelineStatsResponse:
        return get_pipeline(request).get_stats(context.tenant_id)

    # Realtime

    @router.get("/events/stream")
    async def event_stream(
        request: Request,
        context: AuthContext = Depends(require_roles(*USER_ROLES)),
    ) -> StreamingResponse:
        return StreamingResponse(
            get_streams(request).stream(context.tenant_id, context.user_id),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    # Notifications

    @router.get("/notifications/preferences", response_model=NotificationPreferenceRecord)
    def read_preferences(
        request: Request,
        context: AuthContext = Depends(require_roles(*USER_ROLES)),
    ) -> NotificationPreferenceRecord:
        return get_preferences(request).get_or_create(context.tenant_id, context.user_id)

    @router.put("/notifications/preferences", response_model=NotificationPreferenceRecord)
    def update_preferences(
        payload: NotificationPreferenceUpdateRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*USER_ROLES)),
    ) -> NotificationPreferenceRecord:
        try:
            return get_preferences(request).update(context.tenant_id, context.user_id, payload)
        except PreferenceValidationError as exc:
            raise HTTPException(
                status_code=422, detail=str(exc)
            ) from exc

    @router.get("/notifications/history", response_model=NotificationHistoryResponse)
    def notification_history(
        request: Request,
        page: int = Query(default=1, ge=1),
        page_size: int = Query(default=20, ge=1, le=50),
        context: AuthContext = Depends(require_roles(*USER_ROLES)),
    ) -> NotificationHistoryResponse:
        logs = get_store(request).list_notification_logs(
            context.tenant_id, user_id=context.user_id
        )
        start = (page - 1) * page_size
        return NotificationHistoryResponse(
            items=logs[start : start + page_size],
            page=page,
            page_size=page_size,
            total=len(logs),
            total_pages=math.ceil(len(logs) / page_size),
        )

    @router.post("/notifications/test", response_model=NotificationTestResponse)
    async def send_test_notification(
        payload: NotificationTestRequest,
        request: Request,
        context: AuthContext = Depends(require_roles(*USER_ROLES)),
    ) -> NotificationTestResponse:
        result = await get_dispatcher(request).send_test(
            tenant_id=context.tenant_id,
            user_id=context.user_id,
            channel=payload.channel,
        )
        return NotificationTestResponse(
            channel=result.channel,
            success=result.success,
            error=result.error,
            subscription_stale=result.subscription_stale,
        )

    @router.get("/notifications/diagnostics", response_model=DiagnosticsReport)
    def notification_diagnostics(
        request: Request,
        context: AuthContext = Depends(require_roles(*USER_ROLES)),
    ) -> DiagnosticsReport:
        return get_diagnostics(request).diagnose(context.tenant_id, context.user_id)

    @router.get("/notifications/inbox", response_model=list[InAppNotificationRecord])
    def notification_inbox(
        request: Request,
        unread_only: bool = False,
        limit: int = Query(default=50, ge=1, le=200),
        context: AuthContext = Depends(require_roles(*USER_ROLES)),
    ) -> list[InAppNotificationRecord]:
        return get_store(request).list_in_app_notifications(
            context.tenant_id, context.user_id, unread_only=unread_only, limit=limit
        )

    @router.post(
        "/notifications/inbox/{notification_id}/read",
        response_model=InAppNotificationRecord,
    )
    def mark_notification_read(
        notification_id: str,
        request: Request,
        context: AuthContext = Depends(require_roles(*USER_ROLES)),
    ) -> InAppNotificationRecord:
        try:
            return get_store(request).mark_in_app_notification_read(
                context.tenant_id, context.user_id, notification_id
            )
        except StoreNotFoundError as exc:
            raise _not_found(exc) from exc

    @router.get("/extension/auto-scan-config", response_model=AutoScanConfigResponse)
    def auto_scan_config(
        request: Request,
        context: AuthContext = Depends(require_roles(*ANY_ROLE)),
    ) -> AutoScanConfigResponse:
        return get_preferences(request).auto_scan_config(context.tenant_id, context.user_id)

    return router
