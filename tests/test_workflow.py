"""Tests for the application review workflow.

Submission, reviewer votes, final approval gating, rejection and resubmission.
"""

import pytest

from tests.helpers import (
    API,
    approval_status,
    assert_error,
    auth,
    create_project,
    create_route,
    final_approve,
    final_reject,
    resubmit,
    reviewer_approve,
    reviewer_reject,
    submit,
    submitted_project,
)


@pytest.fixture
def two_reviewer_route(client, admin, reviewer, second_reviewer, final_approver):
    response = create_route(client, admin, 0, [reviewer, second_reviewer], final_approver)
    assert response.status_code == 200, response.text
    return response.json()


@pytest.fixture
def two_reviewer_project(client, executor, two_reviewer_route, reviewer, second_reviewer, final_approver):
    return submitted_project(client, executor, [reviewer, second_reviewer], final_approver)


class TestSubmission:
    """Scenario: Executor submits a draft application."""

    def test_submit_moves_draft_to_submitted(self, client, executor, reviewer, final_approver):
        project = create_project(client, executor, reviewer=reviewer, final_approver=final_approver).json()
        assert project["application_status"] == "draft"

        response = submit(client, project["id"], executor)
        assert response.status_code == 200
        data = response.json()
        assert data["application_status"] == "submitted"
        assert data["reviewer_ids"] == [reviewer.id]
        assert data["final_approver_user_id"] == final_approver.id
        assert data["submitted_at"] is not None

    def test_submit_without_reviewer_fails(self, client, executor, final_approver):
        project = create_project(client, executor, final_approver=final_approver).json()
        response = submit(client, project["id"], executor)
        assert_error(response, 400, "validation_error", "reviewer")

    def test_submit_with_zero_amount_fails(self, client, executor, reviewer, final_approver, db_session):
        project = create_project(client, executor, reviewer=reviewer, final_approver=final_approver).json()
        # Amounts are validated on create, so force a zero amount on the row
        from proposals.models import Project

        row = db_session.get(Project, project["id"])
        row.requested_amount = 0
        db_session.commit()

        response = submit(client, project["id"], executor)
        assert_error(response, 400, "validation_error", "greater than 0")

    def test_create_with_zero_amount_fails(self, client, executor):
        response = create_project(client, executor, requested_amount="0")
        assert_error(response, 400, "validation_error")

    def test_only_executor_can_submit(self, client, executor, reviewer, final_approver):
        project = create_project(client, executor, reviewer=reviewer, final_approver=final_approver).json()
        response = submit(client, project["id"], reviewer)
        assert_error(response, 403, "forbidden")

    def test_submit_twice_is_invalid_state(self, client, executor, reviewer, final_approver):
        project_id = submitted_project(client, executor, [reviewer], final_approver)
        response = submit(client, project_id, executor)
        assert_error(response, 409, "invalid_state")

    def test_submit_uses_route_over_explicit_reviewer(
        self, client, executor, reviewer, second_reviewer, final_approver, two_reviewer_route
    ):
        project = create_project(client, executor, reviewer=reviewer, final_approver=final_approver).json()
        data = submit(client, project["id"], executor).json()
        assert data["reviewer_ids"] == sorted([reviewer.id, second_reviewer.id])

    def test_submit_notifies_each_reviewer(
        self, client, dispatcher, two_reviewer_project, reviewer, second_reviewer
    ):
        assert dispatcher.templates_for(reviewer.email) == ["review_requested"]
        assert dispatcher.templates_for(second_reviewer.email) == ["review_requested"]

    def test_draft_can_be_edited_but_submitted_cannot(self, client, executor, reviewer, final_approver):
        project = create_project(client, executor, reviewer=reviewer, final_approver=final_approver).json()
        response = client.patch(
            f"{API}/projects/{project['id']}",
            json={"name": "Renamed"},
            headers=auth(executor),
        )
        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"

        submit(client, project["id"], executor)
        response = client.patch(
            f"{API}/projects/{project['id']}",
            json={"name": "Again"},
            headers=auth(executor),
        )
        assert_error(response, 409, "invalid_state")


class TestReviewerVotes:
    """Scenario: Assigned reviewers approve or reject."""

    def test_partial_approval_keeps_submitted(self, client, two_reviewer_project, reviewer, executor):
        response = reviewer_approve(client, two_reviewer_project, reviewer, "Looks good")
        assert response.status_code == 200
        assert response.json()["application_status"] == "submitted"

        status = approval_status(client, two_reviewer_project, executor).json()
        assert status["approval_summary"]["approved_count"] == 1
        assert status["approval_summary"]["pending_count"] == 1
        assert status["approval_summary"]["all_reviewers_approved"] is False

    def test_unassigned_user_cannot_vote(self, client, two_reviewer_project, final_approver):
        response = reviewer_approve(client, two_reviewer_project, final_approver)
        assert_error(response, 403, "forbidden")

    def test_voting_twice_is_rejected_regardless_of_value(self, client, two_reviewer_project, reviewer):
        assert reviewer_approve(client, two_reviewer_project, reviewer).status_code == 200

        response = reviewer_approve(client, two_reviewer_project, reviewer)
        assert_error(response, 409, "already_voted")

        response = reviewer_reject(client, two_reviewer_project, reviewer, "Changed my mind")
        assert_error(response, 409, "already_voted")

    def test_rejection_requires_comment(self, client, two_reviewer_project, reviewer):
        response = reviewer_reject(client, two_reviewer_project, reviewer, "")
        assert_error(response, 400, "validation_error", "comment")

        response = reviewer_reject(client, two_reviewer_project, reviewer, "   ")
        assert_error(response, 400, "validation_error")

        response = reviewer_reject(client, two_reviewer_project, reviewer, None)
        assert_error(response, 400, "validation_error")

    def test_first_rejection_rejects_immediately(
        self, client, two_reviewer_project, reviewer, second_reviewer, executor
    ):
        response = reviewer_reject(client, two_reviewer_project, reviewer, "Market too small")
        assert response.status_code == 200
        data = response.json()
        assert data["application_status"] == "rejected"
        assert data["rejection_reason"] == "Market too small"
        assert data["rejected_by_user_id"] == reviewer.id

        status = approval_status(client, two_reviewer_project, executor).json()
        assert status["approval_summary"]["pending_count"] == 1
        assert status["approval_summary"]["rejected_count"] == 1

    def test_vote_after_rejection_is_invalid_state(
        self, client, two_reviewer_project, reviewer, second_reviewer
    ):
        reviewer_reject(client, two_reviewer_project, reviewer, "No")
        response = reviewer_approve(client, two_reviewer_project, second_reviewer)
        assert_error(response, 409, "invalid_state")

    def test_revote_after_own_rejection_is_already_voted(self, client, two_reviewer_project, reviewer):
        reviewer_reject(client, two_reviewer_project, reviewer, "No")
        response = reviewer_approve(client, two_reviewer_project, reviewer)
        assert_error(response, 409, "already_voted")

    def test_revote_after_final_approval_is_already_voted(
        self, client, executor, reviewer, final_approver
    ):
        project_id = submitted_project(client, executor, [reviewer], final_approver)
        reviewer_approve(client, project_id, reviewer)
        final_approve(client, project_id, final_approver)
        response = reviewer_reject(client, project_id, reviewer, "Second thoughts")
        assert_error(response, 409, "already_voted")

    def test_unassigned_reject_without_comment_is_forbidden(
        self, client, two_reviewer_project, final_approver
    ):
        response = reviewer_reject(client, two_reviewer_project, final_approver, "")
        assert_error(response, 403, "forbidden")

    def test_vote_on_draft_is_invalid_state(self, client, executor, reviewer, final_approver, db_session):
        project = create_project(client, executor, reviewer=reviewer, final_approver=final_approver).json()
        # Assign the reviewer without submitting
        from proposals.models import Project, ProjectReviewer

        row = db_session.get(Project, project["id"])
        row.reviewers.append(ProjectReviewer(reviewer_id=reviewer.id))
        db_session.commit()

        response = reviewer_approve(client, project["id"], reviewer)
        assert_error(response, 409, "invalid_state")

    def test_final_approver_notified_when_all_reviewers_approve(
        self, client, dispatcher, two_reviewer_project, reviewer, second_reviewer, final_approver
    ):
        reviewer_approve(client, two_reviewer_project, reviewer)
        assert "final_approval_requested" not in dispatcher.templates_for(final_approver.email)

        reviewer_approve(client, two_reviewer_project, second_reviewer)
        assert dispatcher.templates_for(final_approver.email) == ["final_approval_requested"]


class TestFinalDecision:
    """Scenario: Final approver decides after all reviewers approved."""

    def test_final_approve_before_all_reviewers_fails(
        self, client, two_reviewer_project, reviewer, second_reviewer, final_approver
    ):
        reviewer_approve(client, two_reviewer_project, reviewer)
        response = final_approve(client, two_reviewer_project, final_approver)
        assert_error(response, 412, "precondition_failed", "Not all reviewers approved")
        assert response.json()["error"]["meta"]["reviewer_ids"] == [second_reviewer.id]

    def test_final_approve_with_no_votes_fails(self, client, two_reviewer_project, final_approver):
        response = final_approve(client, two_reviewer_project, final_approver)
        assert_error(response, 412, "precondition_failed")

    def test_final_approve_after_all_reviewers(
        self, client, two_reviewer_project, reviewer, second_reviewer, final_approver, executor
    ):
        reviewer_approve(client, two_reviewer_project, reviewer)
        reviewer_approve(client, two_reviewer_project, second_reviewer)

        response = final_approve(client, two_reviewer_project, final_approver, "Go ahead")
        assert response.status_code == 200
        data = response.json()
        assert data["application_status"] == "approved"
        assert data["status"] == "active"
        assert data["project_phase"] == "mvp_development"
        assert data["final_approved_at"] is not None
        assert data["final_approval_comment"] == "Go ahead"

        status = approval_status(client, two_reviewer_project, executor).json()
        assert status["final_approval_status"] == "approved"

    def test_only_final_approver_can_decide(
        self, client, two_reviewer_project, reviewer, second_reviewer, executor
    ):
        reviewer_approve(client, two_reviewer_project, reviewer)
        reviewer_approve(client, two_reviewer_project, second_reviewer)
        assert_error(final_approve(client, two_reviewer_project, reviewer), 403, "forbidden")
        assert_error(final_approve(client, two_reviewer_project, executor), 403, "forbidden")

    def test_final_reject_requires_comment(self, client, two_reviewer_project, final_approver):
        response = final_reject(client, two_reviewer_project, final_approver, "")
        assert_error(response, 400, "validation_error")

    def test_non_approver_reject_without_comment_is_forbidden(
        self, client, two_reviewer_project, reviewer
    ):
        response = final_reject(client, two_reviewer_project, reviewer, "")
        assert_error(response, 403, "forbidden")

    def test_final_reject_records_authoritative_reason(
        self, client, two_reviewer_project, reviewer, final_approver, executor
    ):
        reviewer_approve(client, two_reviewer_project, reviewer, "Fine by me")
        response = final_reject(client, two_reviewer_project, final_approver, "Budget freeze")
        assert response.status_code == 200
        data = response.json()
        assert data["application_status"] == "rejected"
        assert data["final_approval_comment"] == "Budget freeze"
        assert data["rejection_reason"] == "Budget freeze"

        status = approval_status(client, two_reviewer_project, executor).json()
        assert status["final_approval_status"] == "rejected"
        assert status["reviewers"][0]["review_comment"] == "Fine by me"

    def test_final_approve_on_approved_is_invalid_state(
        self, client, executor, reviewer, final_approver
    ):
        project_id = submitted_project(client, executor, [reviewer], final_approver)
        reviewer_approve(client, project_id, reviewer)
        final_approve(client, project_id, final_approver)
        response = final_approve(client, project_id, final_approver)
        assert_error(response, 409, "invalid_state")


class TestResubmission:
    """Scenario: Executor resubmits a rejected application."""

    def test_resubmit_clears_all_votes(
        self, client, two_reviewer_project, reviewer, second_reviewer, executor
    ):
        reviewer_approve(client, two_reviewer_project, reviewer)
        reviewer_reject(client, two_reviewer_project, second_reviewer, "Needs a risk section")

        response = resubmit(client, two_reviewer_project, executor, "Added risk section")
        assert response.status_code == 200
        data = response.json()
        assert data["application_status"] == "draft"
        assert data["review_round"] == 2
        assert data["rejection_reason"] is None
        assert data["supplementary_note"] == "Added risk section"

        response = submit(client, two_reviewer_project, executor)
        assert response.status_code == 200
        status = approval_status(client, two_reviewer_project, executor).json()
        assert status["approval_summary"]["pending_count"] == 2
        assert status["approval_summary"]["approved_count"] == 0

        # Previous voters can vote again in the new round
        assert reviewer_approve(client, two_reviewer_project, reviewer).status_code == 200

    def test_resubmit_requires_note(self, client, two_reviewer_project, reviewer, executor):
        reviewer_reject(client, two_reviewer_project, reviewer, "No")
        response = resubmit(client, two_reviewer_project, executor, " ")
        assert_error(response, 400, "validation_error")

    def test_resubmit_only_from_rejected(self, client, two_reviewer_project, executor):
        response = resubmit(client, two_reviewer_project, executor, "More material")
        assert_error(response, 409, "invalid_state")

    def test_only_executor_can_resubmit(self, client, two_reviewer_project, reviewer):
        reviewer_reject(client, two_reviewer_project, reviewer, "No")
        response = resubmit(client, two_reviewer_project, reviewer, "Trying")
        assert_error(response, 403, "forbidden")


class TestPendingReviews:
    """Scenario: Reviewers and final approvers see what waits on them."""

    def test_pending_list_follows_votes(
        self, client, two_reviewer_project, reviewer, second_reviewer, final_approver
    ):
        def pending(user):
            response = client.get(f"{API}/projects/pending-reviews", headers=auth(user))
            assert response.status_code == 200
            return [p["id"] for p in response.json()]

        assert pending(reviewer) == [two_reviewer_project]
        assert pending(final_approver) == []

        reviewer_approve(client, two_reviewer_project, reviewer)
        assert pending(reviewer) == []

        reviewer_approve(client, two_reviewer_project, second_reviewer)
        assert pending(final_approver) == [two_reviewer_project]
