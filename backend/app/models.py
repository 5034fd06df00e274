from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JourneyPhase(str, Enum):
    discovered = "DISCOVERED"
    analyzed = "ANALYZED"
    shortlisted = "SHORTLISTED"
    proposal_drafted = "PROPOSAL_DRAFTED"
    proposal_sent = "PROPOSAL_SENT"
    interviewing = "INTERVIEWING"
    offer_received = "OFFER_RECEIVED"
    won = "WON"
    project_started = "PROJECT_STARTED"
    milestone_completed = "MILESTONE_COMPLETED"
    project_delivered = "PROJECT_DELIVERED"
    payment_received = "PAYMENT_RECEIVED"
    feedback_received = "FEEDBACK_RECEIVED"
    lost = "LOST"
    skipped = "SKIPPED"
    expired = "EXPIRED"


SUCCESS_PATH: tuple[JourneyPhase, ...] = (
    JourneyPhase.discovered,
    JourneyPhase.analyzed,
    JourneyPhase.shortlisted,
    JourneyPhase.proposal_drafted,
    JourneyPhase.proposal_sent,
    JourneyPhase.interviewing,
    JourneyPhase.offer_received,
    JourneyPhase.won,
    JourneyPhase.project_started,
    JourneyPhase.milestone_completed,
    JourneyPhase.project_delivered,
    JourneyPhase.payment_received,
    JourneyPhase.feedback_received,
)

TERMINAL_FAILURES: frozenset[JourneyPhase] = frozenset(
    {JourneyPhase.lost, JourneyPhase.skipped, JourneyPhase.expired}
)

PHASE_LABELS: dict[JourneyPhase, str] = {
    JourneyPhase.discovered: "Discovered",
    JourneyPhase.analyzed: "AI Analyzed",
    JourneyPhase.shortlisted: "Shortlisted",
    JourneyPhase.proposal_drafted: "Proposal Drafted",
    JourneyPhase.proposal_sent: "Proposal Sent",
    JourneyPhase.interviewing: "Interviewing",
    JourneyPhase.offer_received: "Offer Received",
    JourneyPhase.won: "Won",
    JourneyPhase.project_started: "Project Started",
    JourneyPhase.milestone_completed: "Milestone Completed",
    JourneyPhase.project_delivered: "Delivered",
    JourneyPhase.payment_received: "Payment Received",
    JourneyPhase.feedback_received: "Feedback Received",
    JourneyPhase.lost: "Lost",
    JourneyPhase.skipped: "Skipped",
    JourneyPhase.expired: "Expired",
}


def phase_rank(phase: JourneyPhase) -> int:
    """Funnel position of a phase. Terminal failures rank as the funnel entry."""
    if phase in TERMINAL_FAILURES:
        return 0
    return SUCCESS_PATH.index(phase)


class JobStatus(str, Enum):
    new = "NEW"
    analyzed = "ANALYZED"
    shortlisted = "SHORTLISTED"
    bidding = "BIDDING"
    bid_sent = "BID_SENT"
    interviewing = "INTERVIEWING"
    accepted = "ACCEPTED"
    rejected = "REJECTED"
    expired = "EXPIRED"
    skipped = "SKIPPED"
    flagged = "FLAGGED"


class ProposalStatus(str, Enum):
    draft = "DRAFT"
    review = "REVIEW"
    ready = "READY"
    sent = "SENT"
    viewed = "VIEWED"
    shortlisted = "SHORTLISTED"
    accepted = "ACCEPTED"
    rejected = "REJECTED"
    withdrawn = "WITHDRAWN"


class ProjectStatus(str, Enum):
    pending = "PENDING"
    active = "ACTIVE"
    completed = "COMPLETED"
    cancelled = "CANCELLED"


class NotificationChannel(str, Enum):
    desktop = "DESKTOP"
    sms = "SMS"
    whatsapp = "WHATSAPP"
    in_app = "IN_APP"


class DeliveryStatus(str, Enum):
    sent = "sent"
    failed = "failed"


# Activity metadata, discriminated on ``kind``.


class StatusChangeMetadata(BaseModel):
    kind: Literal["status_change"] = "status_change"
    subject: Literal["job", "proposal", "project"]
    old_status: Optional[str] = None
    new_status: str


class SourceMetadata(BaseModel):
    kind: Literal["source"] = "source"
    source: str


class AnalysisMetadata(BaseModel):
    kind: Literal["analysis"] = "analysis"
    analysis_id: Optional[str] = None
    fit_score: float = Field(ge=0, le=100)
    recommendation: Optional[str] = None


class MilestoneMetadata(BaseModel):
    kind: Literal["milestone"] = "milestone"
    milestone_title: str
    amount: Optional[float] = None


class PaymentMetadata(BaseModel):
    kind: Literal["payment"] = "payment"
    amount: float
    currency: str = "USD"


class FeedbackMetadata(BaseModel):
    kind: Literal["feedback"] = "feedback"
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class ProjectMetadata(BaseModel):
    kind: Literal["project"] = "project"
    project_title: str


class GenericMetadata(BaseModel):
    kind: Literal["generic"] = "generic"
    data: dict[str, Any] = Field(default_factory=dict)


ActivityMetadata = Annotated[
    Union[
        StatusChangeMetadata,
        SourceMetadata,
        AnalysisMetadata,
        MilestoneMetadata,
        PaymentMetadata,
        FeedbackMetadata,
        ProjectMetadata,
        GenericMetadata,
    ],
    Field(discriminator="kind"),
]


class ActivityRecord(BaseModel):
    id: str
    tenant_id: str
    job_id: str
    proposal_id: Optional[str] = None
    project_id: Optional[str] = None
    phase: JourneyPhase
    title: str
    description: Optional[str] = None
    metadata: ActivityMetadata = Field(default_factory=GenericMetadata)
    sequence: int = 0
    created_at_utc: datetime


class JobRecord(BaseModel):
    id: str
    tenant_id: str
    title: str
    status: JobStatus = JobStatus.new
    source: str = "manual"
    job_url: Optional[str] = None
    category: Optional[str] = None
    skills_required: list[str] = Field(default_factory=list)
    created_at_utc: datetime
    updated_at_utc: datetime


class PushSubscriptionKeys(BaseModel):
    p256dh: str = Field(min_length=1)
    auth: str = Field(min_length=1)


class PushSubscription(BaseModel):
    endpoint: str = Field(min_length=12, max_length=2048)
    keys: PushSubscriptionKeys
    expiration_time: Optional[int] = None

    @model_validator(mode="after")
    def validate_endpoint(self) -> "PushSubscription":
        if not self.endpoint.startswith("https://"):
            raise ValueError("push subscription endpoint must be an https url")
        return self


PHONE_PATTERN = r"^[0-9 ()-]{6,20}$"
COUNTRY_CODE_PATTERN = r"^\+?[0-9]{1,4}$"


class NotificationPreferenceRecord(BaseModel):
    id: str
    tenant_id: str
    user_id: str
    is_enabled: bool = True
    auto_scan_enabled: bool = False
    scan_interval_minutes: int = Field(default=10, ge=1, le=60)
    min_match_percentage: int = Field(default=80, ge=0, le=100)
    categories: list[str] = Field(default_factory=list)
    target_skills: list[str] = Field(default_factory=list)
    desktop_enabled: bool = False
    push_subscription: Optional[PushSubscription] = None
    sms_enabled: bool = False
    sms_phone_number: Optional[str] = None
    sms_country_code: Optional[str] = None
    whatsapp_enabled: bool = False
    whatsapp_phone_number: Optional[str] = None
    whatsapp_country_code: Optional[str] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class NotificationPreferenceUpdateRequest(BaseModel):
    is_enabled: Optional[bool] = None
    auto_scan_enabled: Optional[bool] = None
    scan_interval_minutes: Optional[int] = Field(default=None, ge=1, le=60)
    min_match_percentage: Optional[int] = Field(default=None, ge=0, le=100)
    categories: Optional[list[Annotated[str, Field(min_length=1, max_length=120)]]] = None
    target_skills: Optional[list[Annotated[str, Field(min_length=1, max_length=120)]]] = None
    desktop_enabled: Optional[bool] = None
    push_subscription: Optional[PushSubscription] = None
    sms_enabled: Optional[bool] = None
    sms_phone_number: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    sms_country_code: Optional[str] = Field(default=None, pattern=COUNTRY_CODE_PATTERN)
    whatsapp_enabled: Optional[bool] = None
    whatsapp_phone_number: Optional[str] = Field(default=None, pattern=PHONE_PATTERN)
    whatsapp_country_code: Optional[str] = Field(default=None, pattern=COUNTRY_CODE_PATTERN)


class AutoScanConfigResponse(BaseModel):
    enabled: bool
    interval_minutes: int = Field(serialization_alias="intervalMinutes")
    categories: list[str]
    target_skills: list[str] = Field(serialization_alias="targetSkills")
    min_match_percentage: int = Field(serialization_alias="minMatchPercentage")


class NotificationLogRecord(BaseModel):
    id: str
    tenant_id: str
    user_id: Optional[str] = None
    job_id: Optional[str] = None
    event: Optional[str] = None
    channel: NotificationChannel
    title: str
    body: str
    match_percentage: Optional[float] = None
    status: DeliveryStatus
    error_message: Optional[str] = None
    subscription_stale: bool = False
    correlation_id: str
    sent_at_utc: Optional[datetime] = None
    created_at_utc: datetime


class NotificationHistoryResponse(BaseModel):
    items: list[NotificationLogRecord]
    page: int
    page_size: int
    total: int
    total_pages: int


class InAppNotificationRecord(BaseModel):
    id: str
    tenant_id: str
    user_id: str
    title: str
    body: str
    job_id: Optional[str] = None
    href: Optional[str] = None
    read: bool = False
    created_at_utc: datetime


class NotificationTestRequest(BaseModel):
    channel: NotificationChannel


class NotificationTestResponse(BaseModel):
    channel: NotificationChannel
    success: bool
    error: Optional[str] = None
    subscription_stale: bool = False


class PreferenceSummary(BaseModel):
    is_enabled: bool
    min_match_percentage: int
    categories: list[str]
    desktop_enabled: bool
    has_push_subscription: bool
    sms_enabled: bool
    has_sms_phone: bool
    whatsapp_enabled: bool
    has_whatsapp_phone: bool


class DiagnosticsReport(BaseModel):
    user_id: str
    preferences: Optional[PreferenceSummary] = None
    provider_health: dict[str, bool]
    recent_notifications: list[NotificationLogRecord]
    issues: list[str]


# Journey requests and responses.


class JobCaptureRequest(BaseModel):
    title: str = Field(min_length=2, max_length=300)
    source: str = Field(default="extension", min_length=2, max_length=60)
    job_url: Optional[str] = Field(default=None, max_length=2048)
    category: Optional[str] = Field(default=None, max_length=120)
    skills_required: list[str] = Field(default_factory=list)
    match_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    user_id: Optional[str] = None


class JobStatusChangeRequest(BaseModel):
    new_status: JobStatus


class ProposalStatusChangeRequest(BaseModel):
    proposal_id: str = Field(min_length=1, max_length=120)
    old_status: Optional[ProposalStatus] = None
    new_status: ProposalStatus


class ProposalGeneratedRequest(BaseModel):
    proposal_id: str = Field(min_length=1, max_length=120)
    match_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    user_id: Optional[str] = None


class ProjectStatusChangeRequest(BaseModel):
    project_id: str = Field(min_length=1, max_length=120)
    project_title: str = Field(min_length=1, max_length=300)
    old_status: Optional[ProjectStatus] = None
    new_status: ProjectStatus


class AnalysisStartedRequest(BaseModel):
    analysis_id: Optional[str] = None


class AnalysisResultRequest(BaseModel):
    analysis_id: Optional[str] = None
    fit_score: float = Field(ge=0, le=100)
    recommendation: str = Field(min_length=1, max_length=40)
    matched_skills: list[str] = Field(default_factory=list)
    user_id: Optional[str] = None


class AnalysisFailedRequest(BaseModel):
    analysis_id: Optional[str] = None
    error: str = Field(min_length=1, max_length=500)


class MilestoneCompletedRequest(BaseModel):
    project_id: str = Field(min_length=1, max_length=120)
    milestone_title: str = Field(min_length=1, max_length=200)
    amount: Optional[float] = Field(default=None, ge=0)


class PaymentReceivedRequest(BaseModel):
    project_id: Optional[str] = None
    amount: float = Field(gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)


class FeedbackReceivedRequest(BaseModel):
    project_id: Optional[str] = None
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = Field(default=None, max_length=2000)


class ActivityCreateRequest(BaseModel):
    phase: JourneyPhase
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    proposal_id: Optional[str] = None
    project_id: Optional[str] = None
    metadata: ActivityMetadata = Field(default_factory=GenericMetadata)


class JourneyActionResponse(BaseModel):
    job_id: str
    activity_id: Optional[str] = None
    current_phase: Optional[JourneyPhase] = None


class JobCaptureResponse(BaseModel):
    job_id: str
    activity_id: str
    current_phase: JourneyPhase


class PipelineJobSummary(BaseModel):
    title: str
    status: JobStatus
    source: str
    category: Optional[str] = None
    job_url: Optional[str] = None
    skills_required: list[str] = Field(default_factory=list)


class PipelineRow(BaseModel):
    job_id: str
    current_phase: JourneyPhase
    last_activity_at_utc: datetime
    job: Optional[PipelineJobSummary] = None


class ConversionRates(BaseModel):
    discovered_to_proposal: int
    proposal_to_won: int
    won_to_delivered: int


class PipelineStatsResponse(BaseModel):
    total_jobs: int
    phase_counts: dict[str, int]
    conversion_rates: ConversionRates


class TimelineEntry(BaseModel):
    activity: ActivityRecord
    phase_label: str
    phase_order: int
    is_terminal: bool


class JobTimelineResponse(BaseModel):
    job_id: str
    current_phase: Optional[JourneyPhase] = None
    entries: list[TimelineEntry]


# Realtime event payloads.


class JobCapturedPayload(BaseModel):
    job_id: str
    title: str
    source: str
    category: Optional[str] = None
    skills_required: list[str] = Field(default_factory=list)
    job_url: Optional[str] = None
    match_percentage: Optional[float] = None
    user_id: Optional[str] = None


class JobStatusChangedPayload(BaseModel):
    job_id: str
    old_status: Optional[str] = None
    new_status: str
    phase: Optional[JourneyPhase] = None


class AnalysisStartedPayload(BaseModel):
    job_id: str
    analysis_id: Optional[str] = None


class AnalysisCompletePayload(BaseModel):
    job_id: str
    analysis_id: Optional[str] = None
    fit_score: float
    recommendation: str
    matched_skills: list[str] = Field(default_factory=list)
    title: Optional[str] = None
    category: Optional[str] = None
    user_id: Optional[str] = None


class AnalysisFailedPayload(BaseModel):
    job_id: str
    analysis_id: Optional[str] = None
    error: str


class ProposalGeneratedPayload(BaseModel):
    job_id: str
    proposal_id: str
    title: Optional[str] = None
    category: Optional[str] = None
    match_percentage: Optional[float] = None
    user_id: Optional[str] = None


class ProposalStatusChangedPayload(BaseModel):
    job_id: str
    proposal_id: str
    old_status: Optional[str] = None
    new_status: str


class ActivityLoggedPayload(BaseModel):
    job_id: str
    activity_id: str
    phase: JourneyPhase
    title: str


class JobMatchAlertPayload(BaseModel):
    notification_id: str
    user_id: str
    job_id: Optional[str] = None
    title: str
    body: str
    href: Optional[str] = None


class ConnectedPayload(BaseModel):
    connection_id: str


class HeartbeatPayload(BaseModel):
    connection_id: Optional[str] = None


class RealtimeEvent(BaseModel):
    id: str
    event: str = Field(pattern=r"^[a-z]+:[A-Za-z]+$")
    tenant_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
