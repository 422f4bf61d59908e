import random

import pytest

import accounts
import dashboard
import exam_flow


def _take(code, student, seed=1):
    """Sit a test answering 'A' to every question."""
    store = exam_flow.AnswerMappingStore()
    exam_flow.validate_test_code(code["code"], student)
    paper = exam_flow.deliver_test(code["code"], student, store, rng=random.Random(seed))
    answers = {str(q["id"]): "A" for q in paper["questions"]}
    return exam_flow.submit_test(code["code"], answers, 120, student, store)


@pytest.mark.parametrize("completed, activated, rate", [(0, 0, 0.0), (1, 3, 33.3), (4, 4, 100.0)])
def test_completion_rate(completed, activated, rate):
    assert dashboard.completion_rate(completed, activated) == rate


def test_empty_dashboard(app_module):
    stats = dashboard.admin_stats()
    assert stats["total_questions"] == 0
    assert stats["total_test_codes"] == 0
    assert stats["average_score"] == 0.0
    assert stats["completion_rate"] == 0.0
    assert stats["most_active_subject"] is None
    assert stats["total_admins"] == 1


def test_admin_stats_counts(scope, add_questions, make_code, make_user, admin):
    add_questions(scope, 6)
    first = make_code(scope)
    make_code(scope)
    make_code(scope, activated=False)
    teacher = make_user("teacher")
    accounts.create_assignment({"teacher_id": teacher["id"], **vars(scope)}, admin)
    _take(first, make_user("student"))

    stats = dashboard.admin_stats()
    assert stats["total_questions"] == 6
    assert stats["total_test_codes"] == 3
    assert stats["active_test_codes"] == 2
    assert stats["inactive_test_codes"] == 1
    assert stats["used_test_codes"] == 1
    assert stats["total_teachers"] == 1
    assert stats["total_students"] == 1
    assert stats["total_assignments"] == 1
    assert stats["recent_tests"] == 1
    assert stats["tests_today"] == 1
    assert stats["activated_test_codes"] == 2
    assert stats["completed_tests"] == 1
    assert stats["completion_rate"] == 50.0
    assert stats["most_active_subject"] == "Mathematics"
    assert stats["most_active_subject_count"] == 6
    assert 0.0 <= stats["average_score"] <= 100.0


def test_average_score_uses_each_results_maximum(scope, add_questions, make_code, make_user):
    add_questions(scope, 5)
    code = make_code(scope, score_per_question=4)
    result = _take(code, make_user("student"))
    expected = round(result["score"] / result["max_possible_score"] * 100, 1)
    assert dashboard.admin_stats()["average_score"] == expected


def test_teacher_stats(scope, make_user, admin, add_questions):
    teacher = make_user("teacher")
    accounts.create_assignment({"teacher_id": teacher["id"], **vars(scope)}, admin)
    add_questions(scope, 2, teacher_id=teacher["id"])
    add_questions(scope, 3)
    stats = dashboard.teacher_stats(teacher["id"])
    assert stats["total_questions"] == 2
    assert stats["assignments_count"] == 1
    assert len(stats["recent_questions"]) == 2


def test_dashboard_routes(client, admin, make_user, headers_for):
    resp = client.get("/admin/dashboard-stats", headers=headers_for(admin))
    assert resp.status_code == 200
    assert "completion_rate" in resp.get_json()["data"]

    teacher = make_user("teacher")
    resp = client.get("/teacher/dashboard-stats", headers=headers_for(teacher))
    assert resp.get_json()["data"]["total_questions"] == 0
