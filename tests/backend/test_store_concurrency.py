from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from backend.app.models import JourneyPhase
from backend.app.services.ledger import ActivityLedger
from backend.app.services.pipeline import PipelineAggregator
from backend.app.store import InMemoryStore


def test_activity_append_and_read_concurrent() -> None:
    store = InMemoryStore()
    ledger = ActivityLedger(store)
    pipeline = PipelineAggregator(store=store, ledger=ledger)
    read_errors: list[Exception] = []

    def writer(index: int) -> None:
        ledger.append(
            tenant_id="t1",
            job_id=f"job_{index % 30}",
            phase=JourneyPhase.analyzed if index % 2 else JourneyPhase.discovered,
            title=f"Activity {index}",
        )

    def reader() -> None:
        for _ in range(200):
            try:
                pipeline.get_stats("t1")
            except Exception as exc:  # pragma: no cover - regression trap
                read_errors.append(exc)

    with ThreadPoolExecutor(max_workers=10) as executor:
        futures = [executor.submit(writer, i) for i in range(300)]
        futures.extend(executor.submit(reader) for _ in range(4))
        for future in futures:
            future.result()

    assert not read_errors
    sequences = [record.sequence for record in store.list_activities(tenant_id="t1")]
    assert sorted(sequences) == list(range(1, 301))
    assert pipeline.get_stats("t1").total_jobs == 30
