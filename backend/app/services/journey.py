from __future__ import annotations

import logging
from typing import Optional

from backend.app.models import (
    ActivityCreateRequest,
    ActivityLoggedPayload,
    ActivityMetadata,
    ActivityRecord,
    AnalysisCompletePayload,
    AnalysisFailedPayload,
    AnalysisMetadata,
    AnalysisResultRequest,
    AnalysisStartedPayload,
    FeedbackMetadata,
    FeedbackReceivedRequest,
    JobCapturedPayload,
    JobCaptureRequest,
    JobRecord,
    JobStatus,
    JobStatusChangedPayload,
    JourneyPhase,
    MilestoneCompletedRequest,
    MilestoneMetadata,
    PaymentMetadata,
    PaymentReceivedRequest,
    ProjectMetadata,
    ProjectStatus,
    ProjectStatusChangeRequest,
    ProposalGeneratedPayload,
    ProposalGeneratedRequest,
    ProposalStatus,
    ProposalStatusChangedPayload,
    ProposalStatusChangeRequest,
    SourceMetadata,
    StatusChangeMetadata,
)
from backend.app.services.event_bus import (
    ACTIVITY_LOGGED,
    ANALYSIS_COMPLETE,
    ANALYSIS_FAILED,
    ANALYSIS_STARTED,
    JOB_CAPTURED,
    JOB_STATUS_CHANGED,
    PROPOSAL_GENERATED,
    PROPOSAL_STATUS_CHANGED,
    EventBus,
)
from backend.app.services.ledger import ActivityLedger
from backend.app.store import InMemoryStore

logger = logging.getLogger("bid_buddy.journey")

JOB_STATUS_PHASE: dict[JobStatus, JourneyPhase] = {
    JobStatus.new: JourneyPhase.discovered,
    JobStatus.analyzed: JourneyPhase.analyzed,
    JobStatus.shortlisted: JourneyPhase.shortlisted,
    JobStatus.bidding: JourneyPhase.proposal_drafted,
    JobStatus.bid_sent: JourneyPhase.proposal_sent,
    JobStatus.interviewing: JourneyPhase.interviewing,
    JobStatus.accepted: JourneyPhase.won,
    JobStatus.rejected: JourneyPhase.lost,
    JobStatus.expired: JourneyPhase.expired,
    JobStatus.skipped: JourneyPhase.skipped,
    JobStatus.flagged: JourneyPhase.discovered,
}

PROPOSAL_STATUS_PHASE: dict[ProposalStatus, JourneyPhase] = {
    ProposalStatus.draft: JourneyPhase.proposal_drafted,
    ProposalStatus.review: JourneyPhase.proposal_drafted,
    ProposalStatus.ready: JourneyPhase.proposal_drafted,
    ProposalStatus.sent: JourneyPhase.proposal_sent,
    ProposalStatus.viewed: JourneyPhase.proposal_sent,
    ProposalStatus.shortlisted: JourneyPhase.interviewing,
    ProposalStatus.accepted: JourneyPhase.won,
    ProposalStatus.rejected: JourneyPhase.lost,
    ProposalStatus.withdrawn: JourneyPhase.skipped,
}

PROPOSAL_JOB_STATUS: dict[ProposalStatus, JobStatus] = {
    ProposalStatus.draft: JobStatus.bidding,
    ProposalStatus.sent: JobStatus.bid_sent,
    ProposalStatus.shortlisted: JobStatus.interviewing,
    ProposalStatus.accepted: JobStatus.accepted,
    ProposalStatus.rejected: JobStatus.rejected,
}

PROJECT_STATUS_PHASE: dict[ProjectStatus, JourneyPhase] = {
    ProjectStatus.pending: JourneyPhase.won,
    ProjectStatus.active: JourneyPhase.project_started,
    ProjectStatus.completed: JourneyPhase.project_delivered,
    ProjectStatus.cancelled: JourneyPhase.lost,
}

# Linear part of the job status chain; automatic changes only move forward along it.
JOB_STATUS_CHAIN: tuple[JobStatus, ...] = (
    JobStatus.new,
    JobStatus.analyzed,
    JobStatus.shortlisted,
    JobStatus.bidding,
    JobStatus.bid_sent,
    JobStatus.interviewing,
    JobStatus.accepted,
)


def should_advance(current: JobStatus, target: JobStatus) -> bool:
    if current not in JOB_STATUS_CHAIN or target not in JOB_STATUS_CHAIN:
        return False
    return JOB_STATUS_CHAIN.index(target) > JOB_STATUS_CHAIN.index(current)


def _humanize(value: str) -> str:
    return value.replace("_", " ").lower()


class JourneyService:
    """Translates business status changes into ledger rows and realtime events."""

    def __init__(self, *, store: InMemoryStore, ledger: ActivityLedger, bus: EventBus) -> None:
        self._store = store
        self._ledger = ledger
        self._bus = bus

    def capture_job(
        self, tenant_id: str, request: JobCaptureRequest
    ) -> tuple[JobRecord, ActivityRecord]:
        job = self._store.create_job(tenant_id, request)
        activity = self._log(
            job,
            phase=JourneyPhase.discovered,
            title="Job discovered",
            description=f'"{job.title}" captured from {job.source}.',
            metadata=SourceMetadata(source=job.source),
        )
        self._bus.emit(
            JOB_CAPTURED,
            JobCapturedPayload(
                job_id=job.id,
                title=job.title,
                source=job.source,
                category=job.category,
                skills_required=job.skills_required,
                job_url=job.job_url,
                match_percentage=request.match_percentage,
                user_id=request.user_id,
            ),
            tenant_id=tenant_id,
        )
        return job, activity

    def on_job_status_changed(
        self, tenant_id: str, job_id: str, new_status: JobStatus
    ) -> ActivityRecord:
        job = self._store.get_job(job_id, tenant_id)
        old_status = job.status
        job = self._store.update_job_status(job_id, new_status)
        phase = JOB_STATUS_PHASE[new_status]
        activity = self._log(
            job,
            phase=phase,
            title=f"Status → {new_status.value.replace('_', ' ')}",
            description=f'Job "{job.title}" moved from {old_status.value} to {new_status.value}.',
            metadata=StatusChangeMetadata(
                subject="job", old_status=old_status.value, new_status=new_status.value
            ),
        )
        self._bus.emit(
            JOB_STATUS_CHANGED,
            JobStatusChangedPayload(
                job_id=job.id,
                old_status=old_status.value,
                new_status=new_status.value,
                phase=phase,
            ),
            tenant_id=tenant_id,
        )
        return activity

    def on_proposal_status_changed(
        self, tenant_id: str, job_id: str, request: ProposalStatusChangeRequest
    ) -> Optional[ActivityRecord]:
        job = self._store.get_job(job_id, tenant_id)
        activity = None
        phase = PROPOSAL_STATUS_PHASE.get(request.new_status)
        if phase is not None:
            activity = self._log(
                job,
                phase=phase,
                title=f"Proposal {_humanize(request.new_status.value)}",
                description=f'Proposal for "{job.title}" moved to {request.new_status.value}.',
                metadata=StatusChangeMetadata(
                    subject="proposal",
                    old_status=request.old_status.value if request.old_status else None,
                    new_status=request.new_status.value,
                ),
                proposal_id=request.proposal_id,
            )

        target = PROPOSAL_JOB_STATUS.get(request.new_status)
        if target is not None and should_advance(job.status, target):
            self._store.update_job_status(job.id, target)
            logger.info(
                "job_status_advanced job_id=%s status=%s proposal_status=%s",
                job.id,
                target.value,
                request.new_status.value,
            )

        self._bus.emit(
            PROPOSAL_STATUS_CHANGED,
            ProposalStatusChangedPayload(
                job_id=job.id,
                proposal_id=request.proposal_id,
                old_status=request.old_status.value if request.old_status else None,
                new_status=request.new_status.value,
            ),
            tenant_id=tenant_id,
        )
        return activity

    def on_proposal_generated(
        self, tenant_id: str, job_id: str, request: ProposalGeneratedRequest
    ) -> ActivityRecord:
        job = self._store.get_job(job_id, tenant_id)
        activity = self._log(
            job,
            phase=JourneyPhase.proposal_drafted,
            title="Proposal generated",
            description=f'AI drafted a proposal for "{job.title}".',
            proposal_id=request.proposal_id,
        )
        self._bus.emit(
            PROPOSAL_GENERATED,
            ProposalGeneratedPayload(
                job_id=job.id,
                proposal_id=request.proposal_id,
                title=job.title,
                category=job.category,
                match_percentage=request.match_percentage,
                user_id=request.user_id,
            ),
            tenant_id=tenant_id,
        )
        return activity

    def on_project_status_changed(
        self, tenant_id: str, job_id: str, request: ProjectStatusChangeRequest
    ) -> Optional[ActivityRecord]:
        job = self._store.get_job(job_id, tenant_id)
        phase = PROJECT_STATUS_PHASE.get(request.new_status)
        if phase is None:
            return None
        return self._log(
            job,
            phase=phase,
            title=f"Project {_humanize(request.new_status.value)}",
            description=f'Project "{request.project_title}" moved to {request.new_status.value}.',
            metadata=ProjectMetadata(project_title=request.project_title),
            project_id=request.project_id,
        )

    def on_analysis_started(
        self, tenant_id: str, job_id: str, analysis_id: Optional[str] = None
    ) -> None:
        job = self._store.get_job(job_id, tenant_id)
        self._bus.emit(
            ANALYSIS_STARTED,
            AnalysisStartedPayload(job_id=job.id, analysis_id=analysis_id),
            tenant_id=tenant_id,
        )

    def on_analysis_completed(
        self, tenant_id: str, job_id: str, request: AnalysisResultRequest
    ) -> ActivityRecord:
        job = self._store.get_job(job_id, tenant_id)
        if should_advance(job.status, JobStatus.analyzed):
            job = self._store.update_job_status(job.id, JobStatus.analyzed)
        activity = self._log(
            job,
            phase=JourneyPhase.analyzed,
            title="AI analysis complete",
            description=f"Fit score {request.fit_score:g}%. Recommendation: {request.recommendation}.",
            metadata=AnalysisMetadata(
                analysis_id=request.analysis_id,
                fit_score=request.fit_score,
                recommendation=request.recommendation,
            ),
        )
        self._bus.emit(
            ANALYSIS_COMPLETE,
            AnalysisCompletePayload(
                job_id=job.id,
                analysis_id=request.analysis_id,
                fit_score=request.fit_score,
                recommendation=request.recommendation,
                matched_skills=request.matched_skills,
                title=job.title,
                category=job.category,
                user_id=request.user_id,
            ),
            tenant_id=tenant_id,
        )
        return activity

    def on_analysis_failed(
        self, tenant_id: str, job_id: str, error: str, analysis_id: Optional[str] = None
    ) -> None:
        job = self._store.get_job(job_id, tenant_id)
        logger.warning("analysis_failed job_id=%s error=%s", job.id, error)
        self._bus.emit(
            ANALYSIS_FAILED,
            AnalysisFailedPayload(job_id=job.id, analysis_id=analysis_id, error=error),
            tenant_id=tenant_id,
        )

    def on_milestone_completed(
        self, tenant_id: str, job_id: str, request: MilestoneCompletedRequest
    ) -> ActivityRecord:
        job = self._store.get_job(job_id, tenant_id)
        description = (
            f"${request.amount:,.2f} milestone approved."
            if request.amount
            else f'Milestone "{request.milestone_title}" approved.'
        )
        return self._log(
            job,
            phase=JourneyPhase.milestone_completed,
            title=f"Milestone completed: {request.milestone_title}",
            description=description,
            metadata=MilestoneMetadata(
                milestone_title=request.milestone_title, amount=request.amount
            ),
            project_id=request.project_id,
        )

    def on_payment_received(
        self, tenant_id: str, job_id: str, request: PaymentReceivedRequest
    ) -> ActivityRecord:
        job = self._store.get_job(job_id, tenant_id)
        currency = request.currency.upper()
        return self._log(
            job,
            phase=JourneyPhase.payment_received,
            title="Payment received",
            description=f"{request.amount:,.2f} {currency} received.",
            metadata=PaymentMetadata(amount=request.amount, currency=currency),
            project_id=request.project_id,
        )

    def on_feedback_received(
        self, tenant_id: str, job_id: str, request: FeedbackReceivedRequest
    ) -> ActivityRecord:
        job = self._store.get_job(job_id, tenant_id)
        return self._log(
            job,
            phase=JourneyPhase.feedback_received,
            title=f"Client feedback: {request.rating}/5",
            description=request.comment,
            metadata=FeedbackMetadata(rating=request.rating, comment=request.comment),
            project_id=request.project_id,
        )

    def log_activity(
        self, tenant_id: str, job_id: str, request: ActivityCreateRequest
    ) -> ActivityRecord:
        job = self._store.get_job(job_id, tenant_id)
        return self._log(
            job,
            phase=request.phase,
            title=request.title,
            description=request.description,
            metadata=request.metadata,
            proposal_id=request.proposal_id,
            project_id=request.project_id,
        )

    def _log(
        self,
        job: JobRecord,
        *,
        phase: JourneyPhase,
        title: str,
        description: Optional[str] = None,
        metadata: Optional[ActivityMetadata] = None,
        proposal_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> ActivityRecord:
        activity = self._ledger.append(
            tenant_id=job.tenant_id,
            job_id=job.id,
            phase=phase,
            title=title,
            description=description,
            metadata=metadata,
            proposal_id=proposal_id,
            project_id=project_id,
        )
        self._bus.emit(
            ACTIVITY_LOGGED,
            ActivityLoggedPayload(
                job_id=job.id, activity_id=activity.id, phase=activity.phase, title=activity.title
            ),
            tenant_id=job.tenant_id,
        )
        return activity
