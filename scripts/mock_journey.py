from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request

CATEGORIES = ["Web Development", "Data Science", "Mobile Apps", "DevOps"]
SKILLS = [
    ["python", "fastapi", "postgres"],
    ["pandas", "sql", "airflow"],
    ["flutter", "firebase"],
    ["terraform", "aws", "docker"],
]

# Calls replayed after capture, one more per job, so the pipeline ends up spread out.
JOURNEY_STEPS = [
    ("analysis", {"fit_score": 84, "recommendation": "BID", "matched_skills": ["python"]}),
    ("proposals", {"proposal_id": "prop_mock"}),
    ("proposal-status", {"proposal_id": "prop_mock", "old_status": "DRAFT", "new_status": "SENT"}),
    ("proposal-status", {"proposal_id": "prop_mock", "old_status": "SENT", "new_status": "ACCEPTED"}),
    ("project-status", {"project_id": "proj_mock", "project_title": "Mock project", "new_status": "ACTIVE"}),
    ("milestones", {"project_id": "proj_mock", "milestone_title": "First milestone", "amount": 250}),
    (
        "project-status",
        {
            "project_id": "proj_mock",
            "project_title": "Mock project",
            "old_status": "ACTIVE",
            "new_status": "COMPLETED",
        },
    ),
    ("payments", {"project_id": "proj_mock", "amount": 500}),
    ("feedback", {"project_id": "proj_mock", "rating": 5, "comment": "Mock client was happy"}),
]


def post_json(url: str, payload: dict, token: str | None) -> tuple[int, str]:
    body = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    request = urllib.request.Request(url, data=body, method="POST")
    request.add_header("Content-Type", "application/json")
    if token:
        request.add_header("Authorization", f"Bearer {token}")
    try:
        with urllib.request.urlopen(request, timeout=15) as response:
            return response.status, response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode("utf-8")


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed a local Bid Buddy API with mock job journeys.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--start-index", type=int, default=1)
    parser.add_argument("--match", type=float, default=88.0)
    parser.add_argument("--token", default="")
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    token = args.token.strip() or None
    for index in range(args.start_index, args.start_index + args.count):
        slot = index % len(CATEGORIES)
        status_code, response = post_json(
            f"{base_url}/jobs",
            {
                "title": f"Mock job {index}",
                "source": "mock",
                "job_url": f"https://example.com/jobs/{index}",
                "category": CATEGORIES[slot],
                "skills_required": SKILLS[slot],
                "match_percentage": args.match,
            },
            token,
        )
        print(f"{status_code} capture {response}")
        if status_code != 200:
            return 1
        job_id = json.loads(response)["job_id"]

        for path, payload in JOURNEY_STEPS[: index % (len(JOURNEY_STEPS) + 1)]:
            status_code, response = post_json(f"{base_url}/jobs/{job_id}/{path}", payload, token)
            print(f"{status_code} {job_id} {path} {response}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
