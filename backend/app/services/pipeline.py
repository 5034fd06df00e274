from __future__ import annotations

from typing import Optional

from backend.app.models import (
    PHASE_LABELS,
    SUCCESS_PATH,
    TERMINAL_FAILURES,
    ConversionRates,
    JourneyPhase,
    PipelineJobSummary,
    PipelineRow,
    PipelineStatsResponse,
    TimelineEntry,
    phase_rank,
)
from backend.app.services.ledger import ActivityLedger
from backend.app.store import InMemoryStore

CONVERSION_PAIRS: dict[str, tuple[JourneyPhase, JourneyPhase]] = {
    "discovered_to_proposal": (JourneyPhase.discovered, JourneyPhase.proposal_sent),
    "proposal_to_won": (JourneyPhase.proposal_sent, JourneyPhase.won),
    "won_to_delivered": (JourneyPhase.won, JourneyPhase.project_delivered),
}


def conversion_rate(reached: int, entered: int) -> int:
    """Percentage rounded half-up; 0 when nothing entered the stage."""
    if entered <= 0:
        return 0
    return (200 * reached + entered) // (2 * entered)


TIMELINE_ORDER: tuple[JourneyPhase, ...] = SUCCESS_PATH + (
    JourneyPhase.lost,
    JourneyPhase.skipped,
    JourneyPhase.expired,
)


def timeline_order(phase: JourneyPhase) -> int:
    return TIMELINE_ORDER.index(phase)


class PipelineAggregator:
    def __init__(self, *, store: InMemoryStore, ledger: ActivityLedger) -> None:
        self._store = store
        self._ledger = ledger

    def current_phase(self, job_id: str, tenant_id: Optional[str] = None) -> Optional[JourneyPhase]:
        latest = self._ledger.latest_for_job(job_id, tenant_id)
        return latest.phase if latest else None

    def get_pipeline(self, tenant_id: str) -> list[PipelineRow]:
        rows: list[PipelineRow] = []
        for job_id, activity in self._ledger.latest_by_tenant(tenant_id).items():
            job = self._store.find_job(job_id, tenant_id)
            summary = (
                PipelineJobSummary(
                    title=job.title,
                    status=job.status,
                    source=job.source,
                    category=job.category,
                    job_url=job.job_url,
                    skills_required=job.skills_required,
                )
                if job
                else None
            )
            rows.append(
                PipelineRow(
                    job_id=job_id,
                    current_phase=activity.phase,
                    last_activity_at_utc=activity.created_at_utc,
                    job=summary,
                )
            )
        rows.sort(key=lambda row: row.last_activity_at_utc, reverse=True)
        return rows

    def get_stats(self, tenant_id: str) -> PipelineStatsResponse:
        pipeline = self.get_pipeline(tenant_id)
        phase_counts = {phase.value: 0 for phase in JourneyPhase}
        for row in pipeline:
            phase_counts[row.current_phase.value] += 1

        ranks = [phase_rank(row.current_phase) for row in pipeline]
        rates: dict[str, int] = {}
        for name, (source, target) in CONVERSION_PAIRS.items():
            entered = sum(1 for rank in ranks if rank >= phase_rank(source))
            reached = sum(1 for rank in ranks if rank >= phase_rank(target))
            rates[name] = conversion_rate(reached, entered)

        return PipelineStatsResponse(
            total_jobs=len(pipeline),
            phase_counts=phase_counts,
            conversion_rates=ConversionRates(**rates),
        )

    def get_job_timeline(self, job_id: str, tenant_id: Optional[str] = None) -> list[TimelineEntry]:
        return [
            TimelineEntry(
                activity=activity,
                phase_label=PHASE_LABELS[activity.phase],
                phase_order=timeline_order(activity.phase),
                is_terminal=activity.phase in TERMINAL_FAILURES,
            )
            for activity in self._ledger.list_by_job(job_id, tenant_id)
        ]
