from __future__ import annotations

from typing import Any

API = "/api/v1"


def auth(user) -> dict[str, str]:
    """Bearer header for a user; tests run with the trusted verifier."""
    email = user if isinstance(user, str) else user.email
    return {"Authorization": f"Bearer {email}"}


def assert_error(
    response, status_code: int, code: str, message_contains: str | None = None
) -> None:
    assert response.status_code == status_code, response.text
    payload = response.json()
    assert "error" in payload
    assert payload["error"]["code"] == code
    if message_contains is not None:
        assert message_contains in payload["error"]["message"]


def create_project(
    client,
    executor,
    requested_amount: Any = "50000000",
    reviewer=None,
    final_approver=None,
    name: str = "Smart Factory MVP",
):
    payload: dict[str, Any] = {
        "name": name,
        "description": "Pilot line automation",
        "requested_amount": str(requested_amount),
    }
    if reviewer is not None:
        payload["reviewer_id"] = reviewer.id
    if final_approver is not None:
        payload["final_approver_user_id"] = final_approver.id
    return client.post(f"{API}/projects", json=payload, headers=auth(executor))


def create_route(client, admin, amount_threshold, reviewers, final_approver):
    return client.put(
        f"{API}/approval-routes",
        json={
            "amount_threshold": str(amount_threshold),
            "reviewer_ids": [r.id for r in reviewers],
            "final_approver_user_id": final_approver.id,
        },
        headers=auth(admin),
    )


def submit(client, project_id: int, executor):
    return client.post(f"{API}/projects/{project_id}/submit", headers=auth(executor))


def resubmit(client, project_id: int, executor, note: str | None):
    return client.post(
        f"{API}/projects/{project_id}/resubmit",
        json={"supplementary_note": note},
        headers=auth(executor),
    )


def reviewer_approve(client, project_id: int, reviewer, comment: str | None = None):
    return client.post(
        f"{API}/projects/{project_id}/reviews/approve",
        json={"comment": comment},
        headers=auth(reviewer),
    )


def reviewer_reject(client, project_id: int, reviewer, comment: str | None):
    return client.post(
        f"{API}/projects/{project_id}/reviews/reject",
        json={"comment": comment},
        headers=auth(reviewer),
    )


def final_approve(client, project_id: int, approver, comment: str | None = None):
    return client.post(
        f"{API}/projects/{project_id}/final/approve",
        json={"comment": comment},
        headers=auth(approver),
    )


def final_reject(client, project_id: int, approver, comment: str | None):
    return client.post(
        f"{API}/projects/{project_id}/final/reject",
        json={"comment": comment},
        headers=auth(approver),
    )


def approval_status(client, project_id: int, user):
    return client.get(f"{API}/projects/{project_id}/approval-status", headers=auth(user))


def create_kpi_report(client, project_id: int, executor, report_type: str, **fields):
    payload: dict[str, Any] = {"report_type": report_type, **fields}
    return client.post(
        f"{API}/projects/{project_id}/kpi-reports", json=payload, headers=auth(executor)
    )


def upsert_budget_entry(client, project_id: int, executor, year: int, month: int, **amounts):
    payload: dict[str, Any] = {"year": year, "month": month}
    payload.update({k: str(v) for k, v in amounts.items()})
    return client.put(
        f"{API}/projects/{project_id}/budget/entries", json=payload, headers=auth(executor)
    )


def submitted_project(client, executor, reviewers, final_approver, requested_amount="50000000"):
    """Create a project with one explicit reviewer or a matching route, then submit it."""
    reviewer = reviewers[0] if len(reviewers) == 1 else None
    response = create_project(
        client,
        executor,
        requested_amount=requested_amount,
        reviewer=reviewer,
        final_approver=final_approver,
    )
    assert response.status_code == 201, response.text
    project_id = response.json()["id"]
    response = submit(client, project_id, executor)
    assert response.status_code == 200, response.text
    return project_id


def approved_project(client, executor, reviewer, final_approver, requested_amount="50000000"):
    project_id = submitted_project(
        client, executor, [reviewer], final_approver, requested_amount=requested_amount
    )
    assert reviewer_approve(client, project_id, reviewer).status_code == 200
    response = final_approve(client, project_id, final_approver)
    assert response.status_code == 200, response.text
    return project_id
