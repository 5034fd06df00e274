from __future__ import annotations


def build_capture_payload(**overrides) -> dict:
    payload = {
        "title": "FastAPI backend for marketplace",
        "source": "extension",
        "job_url": "https://www.upwork.com/jobs/~01abc",
        "category": "Web Development",
        "skills_required": ["python", "fastapi", "postgres"],
        "match_percentage": 92,
    }
    payload.update(overrides)
    return payload


def capture(client, **overrides) -> str:
    response = client.post("/jobs", json=build_capture_payload(**overrides))
    assert response.status_code == 200
    assert response.json()["current_phase"] == "DISCOVERED"
    return response.json()["job_id"]


def test_capture_validation(client) -> None:
    response = client.post("/jobs", json=build_capture_payload(match_percentage=140))
    assert response.status_code == 422


def test_full_job_journey(client) -> None:
    job_id = capture(client)

    started = client.post(f"/jobs/{job_id}/analysis/start", json={"analysis_id": "an_1"})
    assert started.status_code == 200
    assert started.json()["activity_id"] is None

    steps = [
        (
            f"/jobs/{job_id}/analysis",
            {"analysis_id": "an_1", "fit_score": 86, "recommendation": "BID", "matched_skills": ["python"]},
            "ANALYZED",
        ),
        (f"/jobs/{job_id}/proposals", {"proposal_id": "prop_1"}, "PROPOSAL_DRAFTED"),
        (
            f"/jobs/{job_id}/proposal-status",
            {"proposal_id": "prop_1", "old_status": "DRAFT", "new_status": "SENT"},
            "PROPOSAL_SENT",
        ),
        (
            f"/jobs/{job_id}/proposal-status",
            {"proposal_id": "prop_1", "old_status": "SENT", "new_status": "ACCEPTED"},
            "WON",
        ),
        (
            f"/jobs/{job_id}/project-status",
            {"project_id": "proj_1", "project_title": "Marketplace API", "new_status": "ACTIVE"},
            "PROJECT_STARTED",
        ),
        (
            f"/jobs/{job_id}/milestones",
            {"project_id": "proj_1", "milestone_title": "Auth module", "amount": 750},
            "MILESTONE_COMPLETED",
        ),
        (
            f"/jobs/{job_id}/project-status",
            {
                "project_id": "proj_1",
                "project_title": "Marketplace API",
                "old_status": "ACTIVE",
                "new_status": "COMPLETED",
            },
            "PROJECT_DELIVERED",
        ),
        (f"/jobs/{job_id}/payments", {"project_id": "proj_1", "amount": 1500}, "PAYMENT_RECEIVED"),
        (f"/jobs/{job_id}/feedback", {"project_id": "proj_1", "rating": 5, "comment": "Great"}, "FEEDBACK_RECEIVED"),
    ]
    for path, body, phase in steps:
        response = client.post(path, json=body)
        assert response.status_code == 200, path
        assert response.json()["current_phase"] == phase

    job = client.get(f"/jobs/{job_id}")
    assert job.status_code == 200
    assert job.json()["status"] == "ACCEPTED"

    timeline = client.get(f"/jobs/{job_id}/timeline")
    assert timeline.status_code == 200
    body = timeline.json()
    assert body["current_phase"] == "FEEDBACK_RECEIVED"
    assert [entry["activity"]["phase"] for entry in body["entries"]] == [
        "DISCOVERED",
        "ANALYZED",
        "PROPOSAL_DRAFTED",
        "PROPOSAL_SENT",
        "WON",
        "PROJECT_STARTED",
        "MILESTONE_COMPLETED",
        "PROJECT_DELIVERED",
        "PAYMENT_RECEIVED",
        "FEEDBACK_RECEIVED",
    ]
    assert body["entries"][6]["activity"]["metadata"] == {
        "kind": "milestone",
        "milestone_title": "Auth module",
        "amount": 750.0,
    }

    stats = client.get("/pipeline/stats").json()
    assert stats["total_jobs"] == 1
    assert stats["phase_counts"]["FEEDBACK_RECEIVED"] == 1
    assert stats["conversion_rates"] == {
        "discovered_to_proposal": 100,
        "proposal_to_won": 100,
        "won_to_delivered": 100,
    }


def test_sent_proposal_moves_job_to_bid_sent(client) -> None:
    job_id = capture(client)
    response = client.post(
        f"/jobs/{job_id}/proposal-status",
        json={"proposal_id": "prop_2", "new_status": "SENT"},
    )
    assert response.status_code == 200
    assert client.get(f"/jobs/{job_id}").json()["status"] == "BID_SENT"

    # A later draft never moves the job backwards.
    client.post(f"/jobs/{job_id}/proposal-status", json={"proposal_id": "prop_3", "new_status": "DRAFT"})
    assert client.get(f"/jobs/{job_id}").json()["status"] == "BID_SENT"


def test_pipeline_lists_jobs_newest_activity_first(client) -> None:
    first = capture(client, title="Older job")
    second = capture(client, title="Newer job")
    client.post(f"/jobs/{first}/status", json={"new_status": "REJECTED"})

    rows = client.get("/pipeline").json()
    assert [row["job_id"] for row in rows] == [first, second]
    assert rows[0]["current_phase"] == "LOST"
    assert rows[0]["job"]["title"] == "Older job"

    stats = client.get("/pipeline/stats").json()
    assert stats["total_jobs"] == 2
    assert sum(stats["phase_counts"].values()) == 2
    assert stats["conversion_rates"]["discovered_to_proposal"] == 0


def test_manual_activity_and_phase_validation(client) -> None:
    job_id = capture(client)
    ok = client.post(
        f"/jobs/{job_id}/activities",
        json={"phase": "SHORTLISTED", "title": "Shortlisted by client"},
    )
    assert ok.status_code == 200
    assert ok.json()["current_phase"] == "SHORTLISTED"

    bad = client.post(f"/jobs/{job_id}/activities", json={"phase": "HIRED", "title": "nope"})
    assert bad.status_code == 422


def test_unknown_jobs_return_404(client) -> None:
    assert client.get("/jobs/job_missing").status_code == 404
    assert client.get("/jobs/job_missing/timeline").status_code == 404
    assert client.post("/jobs/job_missing/status", json={"new_status": "ANALYZED"}).status_code == 404
    assert client.post(
        "/jobs/job_missing/analysis", json={"fit_score": 50, "recommendation": "SKIP"}
    ).status_code == 404
    assert client.post(
        "/jobs/job_missing/activities", json={"phase": "SHORTLISTED", "title": "Orphan"}
    ).status_code == 404
    # Nothing reached the ledger for the unknown job.
    assert client.get("/pipeline").json() == []


def test_capture_notifies_opted_in_user(client) -> None:
    assert client.get("/notifications/preferences").status_code == 200

    capture(client, match_percentage=91.6)

    history = client.get("/notifications/history")
    assert history.status_code == 200
    body = history.json()
    assert body["total"] == 1
    assert body["total_pages"] == 1
    item = body["items"][0]
    assert item["channel"] == "IN_APP"
    assert item["status"] == "sent"
    assert item["title"] == "92% Match: FastAPI backend for marketplace"

    inbox = client.get("/notifications/inbox").json()
    assert len(inbox) == 1
    marked = client.post(f"/notifications/inbox/{inbox[0]['id']}/read")
    assert marked.status_code == 200
    assert marked.json()["read"] is True
    assert client.get("/notifications/inbox?unread_only=true").json() == []
    assert client.post("/notifications/inbox/inapp_missing/read").status_code == 404

    metrics = client.get("/metrics").text
    assert 'bid_buddy_notification_deliveries_total{channel="IN_APP",status="sent"} 1' in metrics


def test_low_match_capture_is_not_notified(client) -> None:
    client.put("/notifications/preferences", json={"min_match_percentage": 95})
    capture(client, match_percentage=70)
    assert client.get("/notifications/history").json()["total"] == 0


def test_history_paging_bounds(client) -> None:
    assert client.get("/notifications/history?page=0").status_code == 422
    assert client.get("/notifications/history?page_size=51").status_code == 422
    empty = client.get("/notifications/history?page=3").json()
    assert empty["items"] == []
    assert empty["total_pages"] == 0


def test_test_notification_reports_channel_failure(client) -> None:
    response = client.post("/notifications/test", json={"channel": "SMS"})
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "No phone number configured for SMS notifications."

    history = client.get("/notifications/history").json()
    assert history["items"][0]["event"] == "notification:test"
    assert history["items"][0]["status"] == "failed"


def test_diagnostics_report(client) -> None:
    before = client.get("/notifications/diagnostics").json()
    assert before["preferences"] is None
    assert before["issues"][0].startswith("No notification preferences")

    client.put("/notifications/preferences", json={"desktop_enabled": True})
    after = client.get("/notifications/diagnostics").json()
    assert after["preferences"]["desktop_enabled"] is True
    assert after["preferences"]["has_push_subscription"] is False
    assert after["provider_health"]["DESKTOP"] is False
    assert any("no push subscription" in issue for issue in after["issues"])
    assert any("VAPID" in issue for issue in after["issues"])
