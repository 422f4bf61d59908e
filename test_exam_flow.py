import random
from datetime import datetime, timedelta

import pytest

import code_issuance
import db
import exam_flow
from responses import BadRequest, Conflict, NotFound, ValidationFailed


@pytest.fixture
def store():
    return exam_flow.AnswerMappingStore(grace_minutes=30)


@pytest.fixture
def student(make_user):
    return make_user("student", "bola", class_level="JSS1")


def _fetch_one(query, params=()):
    with db.db_connection() as conn:
        c = conn.cursor()
        db.db_execute(c, query, params)
        return c.fetchone()


def _correct_shown_answers(paper):
    """Map each delivered question to the shown label holding the right option text."""
    answers = {}
    for question in paper["questions"]:
        row = _fetch_one("SELECT * FROM questions WHERE id = ?", (question["id"],))
        correct_text = row[f"option_{row['correct_answer'].lower()}"]
        for label in exam_flow.ANSWER_LABELS:
            if question[f"option_{label.lower()}"] == correct_text:
                answers[str(question["id"])] = label
    return answers


def _sit(code, student, store, seed=7):
    exam_flow.validate_test_code(code["code"], student)
    return exam_flow.deliver_test(code["code"], student, store, rng=random.Random(seed))


# ---------------------------------------------------------------- validation


def test_unknown_code_is_not_found(app_module, student):
    with pytest.raises(NotFound):
        exam_flow.validate_test_code("NOPE42", student)


def test_blank_code_is_a_validation_error(app_module, student):
    with pytest.raises(ValidationFailed):
        exam_flow.validate_test_code("   ", student)


def test_inactive_code_is_rejected(scope, add_questions, make_code, admin, student):
    add_questions(scope, 5)
    code = make_code(scope)
    code_issuance.set_test_code_flags(code["id"], admin, is_active=False)
    with pytest.raises(BadRequest, match="not active"):
        exam_flow.validate_test_code(code["code"], student)


def test_unactivated_code_is_rejected(scope, add_questions, make_code, student):
    add_questions(scope, 5)
    code = make_code(scope, activated=False)
    with pytest.raises(BadRequest, match="not been activated"):
        exam_flow.validate_test_code(code["code"], student)


def test_expired_code_is_rejected(scope, add_questions, make_code, student):
    add_questions(scope, 5)
    code = make_code(scope, expires_at="2099-01-01 00:00:00")
    with pytest.raises(BadRequest, match="expired"):
        exam_flow.validate_test_code(code["code"], student, now=datetime(2100, 1, 1))


def test_code_in_use_by_another_student_conflicts(scope, add_questions, make_code, make_user, student):
    add_questions(scope, 5)
    code = make_code(scope)
    exam_flow.validate_test_code(code["code"], student)
    with pytest.raises(Conflict, match="another student"):
        exam_flow.validate_test_code(code["code"], make_user("student"))


def test_used_code_conflicts(scope, add_questions, make_code, make_user, student, store):
    add_questions(scope, 5)
    code = make_code(scope)
    paper = _sit(code, student, store)
    exam_flow.submit_test(code["code"], _correct_shown_answers(paper), 600, student, store)
    with pytest.raises(Conflict, match="already been used"):
        exam_flow.validate_test_code(code["code"], make_user("student"))


def test_insufficient_pool_is_rejected(scope, add_questions, make_code, student):
    ids = add_questions(scope, 5)
    code = make_code(scope)
    with db.db_connection(commit=True) as conn:
        db.db_execute(conn.cursor(), "DELETE FROM questions WHERE id = ?", (ids[0],))
    with pytest.raises(BadRequest, match="Insufficient questions"):
        exam_flow.validate_test_code(code["code"], student)


def test_second_test_in_same_scope_conflicts(scope, add_questions, make_code, student, store):
    add_questions(scope, 5)
    first = make_code(scope)
    second = make_code(scope)
    paper = _sit(first, student, store)
    exam_flow.submit_test(first["code"], _correct_shown_answers(paper), 600, student, store)
    with pytest.raises(Conflict, match="already taken a test"):
        exam_flow.validate_test_code(second["code"], student)


def test_validation_claims_code_and_allows_resume(scope, add_questions, make_code, student):
    add_questions(scope, 5)
    code = make_code(scope)
    info = exam_flow.validate_test_code(code["code"].lower(), student)
    assert info["question_count"] == 5
    assert info["subject"] == "Mathematics"

    row = _fetch_one("SELECT status, used_by, used_at FROM test_codes WHERE id = ?", (code["id"],))
    assert row["status"] == "using"
    assert row["used_by"] == student["id"]
    assert row["used_at"]

    assert exam_flow.validate_test_code(code["code"], student)["code"] == code["code"]


# ---------------------------------------------------------------- delivery


def test_shuffle_keeps_option_text_paired_with_stored_label():
    question = {
        "id": 1, "question_text": "Pick", "question_type": "multiple_choice",
        "option_a": "alpha", "option_b": "beta", "option_c": "gamma", "option_d": "delta",
        "correct_answer": "C",
    }
    shown, mapping = exam_flow.shuffle_options(question, random.Random(3))
    assert sorted(mapping) == ["A", "B", "C", "D"]
    assert sorted(mapping.values()) == ["A", "B", "C", "D"]
    for label, stored in mapping.items():
        assert shown[f"option_{label.lower()}"] == question[f"option_{stored.lower()}"]
    assert "correct_answer" not in shown


def test_true_false_shuffle_stays_within_two_options():
    question = {
        "id": 2, "question_text": "Water is wet.", "question_type": "true_false",
        "option_a": "True", "option_b": "False", "option_c": None, "option_d": None,
        "correct_answer": "A",
    }
    for seed in range(5):
        shown, mapping = exam_flow.shuffle_options(question, random.Random(seed))
        assert sorted(mapping) == ["A", "B"]
        assert shown["option_c"] is None
        assert shown["option_d"] is None
        assert {shown["option_a"], shown["option_b"]} == {"True", "False"}


def test_select_questions_draws_distinct_pool_members(scope, add_questions):
    pool = set(add_questions(scope, 8))
    with db.db_connection() as conn:
        chosen = exam_flow.select_questions_with_cursor(conn.cursor(), scope, 5, random.Random(1))
    ids = [q["id"] for q in chosen]
    assert len(ids) == 5
    assert len(set(ids)) == 5
    assert set(ids) <= pool


def test_deliver_requires_own_claim(scope, add_questions, make_code, make_user, student, store):
    add_questions(scope, 5)
    code = make_code(scope)
    with pytest.raises(Conflict):
        exam_flow.deliver_test(code["code"], student, store)
    exam_flow.validate_test_code(code["code"], student)
    with pytest.raises(Conflict):
        exam_flow.deliver_test(code["code"], make_user("student"), store)


def test_deliver_hides_answers_and_saves_mapping(scope, add_questions, make_code, student, store):
    add_questions(scope, 7)
    code = make_code(scope)
    paper = _sit(code, student, store)
    assert len(paper["questions"]) == 5
    assert all("correct_answer" not in q for q in paper["questions"])

    with db.db_connection() as conn:
        mapping = store.load_with_cursor(conn.cursor(), code["id"], student["id"])
    assert set(mapping) == {q["id"] for q in paper["questions"]}


def test_mapping_expires_after_ttl(scope, add_questions, make_code, student, store):
    add_questions(scope, 5)
    code = make_code(scope)
    now = datetime(2030, 5, 1, 9, 0, 0)
    with db.db_connection(commit=True) as conn:
        store.save_with_cursor(conn.cursor(), code["id"], student["id"], {1: {"A": "B"}}, 30, now)
    ttl = store.ttl_for(30)
    assert timedelta(minutes=63) <= ttl < timedelta(minutes=63, seconds=1)
    with db.db_connection() as conn:
        c = conn.cursor()
        assert store.load_with_cursor(c, code["id"], student["id"], now + ttl - timedelta(seconds=1)) == {1: {"A": "B"}}
        assert store.load_with_cursor(c, code["id"], student["id"], now + ttl) is None


# ---------------------------------------------------------------- submission


def test_all_correct_submission_scores_full_marks(scope, add_questions, make_code, student, store):
    add_questions(scope, 6)
    code = make_code(scope, score_per_question=2)
    paper = _sit(code, student, store)
    result = exam_flow.submit_test(code["code"], _correct_shown_answers(paper), 900, student, store)

    assert result["score"] == 10
    assert result["max_possible_score"] == 10
    assert result["correct_answers"] == 5
    assert result["percentage"] == 100.0
    assert result["passed"] is True
    assert result["mapping_fallback_used"] is False

    code_row = _fetch_one("SELECT is_used, status FROM test_codes WHERE id = ?", (code["id"],))
    assert code_row["is_used"] == 1
    assert code_row["status"] == "used"
    assert _fetch_one("SELECT COUNT(*) FROM answer_mappings")[0] == 0
    assert _fetch_one("SELECT COUNT(*) FROM test_answers")[0] == 5


def test_unanswered_questions_count_as_wrong(scope, add_questions, make_code, student, store):
    add_questions(scope, 5)
    code = make_code(scope)
    paper = _sit(code, student, store)
    answers = _correct_shown_answers(paper)
    first_two = dict(list(answers.items())[:2])
    result = exam_flow.submit_test(code["code"], first_two, 300, student, store)
    assert result["score"] == 2
    assert result["percentage"] == 40.0
    assert result["passed"] is False


def test_answers_outside_the_paper_are_ignored(scope, add_questions, make_code, student, store):
    extra = add_questions(scope, 5)
    code = make_code(scope, total_questions=3)
    paper = _sit(code, student, store)
    delivered = {q["id"] for q in paper["questions"]}
    outsider = next(qid for qid in extra if qid not in delivered)
    answers = _correct_shown_answers(paper)
    answers[str(outsider)] = "A"
    result = exam_flow.submit_test(code["code"], answers, 300, student, store)
    assert result["score"] == 3
    assert outsider not in {item["question_id"] for item in result["breakdown"]}


def test_option_not_offered_is_rejected(scope, add_questions, make_code, student, store):
    add_questions(scope, 5, question_type="true_false")
    code = make_code(scope)
    paper = _sit(code, student, store)
    answers = {str(paper["questions"][0]["id"]): "D"}
    with pytest.raises(ValidationFailed):
        exam_flow.submit_test(code["code"], answers, 300, student, store)


def test_time_limit_allows_ten_percent_grace(scope, add_questions, make_code, student, store):
    add_questions(scope, 5)
    code = make_code(scope, duration_minutes=30)
    paper = _sit(code, student, store)
    answers = _correct_shown_answers(paper)
    with pytest.raises(BadRequest, match="Test time exceeded"):
        exam_flow.submit_test(code["code"], answers, 1981, student, store)
    assert _fetch_one("SELECT COUNT(*) FROM test_results")[0] == 0
    result = exam_flow.submit_test(code["code"], answers, 1980, student, store)
    assert result["time_taken"] == 1980


def test_fractional_time_taken_is_truncated_to_whole_seconds(scope, add_questions, make_code, student, store):
    add_questions(scope, 5)
    code = make_code(scope, duration_minutes=30)
    paper = _sit(code, student, store)
    result = exam_flow.submit_test(code["code"], _correct_shown_answers(paper), 1799.5, student, store)
    assert result["time_taken"] == 1799
    assert result["score"] == 5
    row = _fetch_one("SELECT time_taken FROM test_results WHERE id = ?", (result["result_id"],))
    assert row["time_taken"] == 1799


@pytest.mark.parametrize("value, expected", [
    (1800.0, 1800), ("1799.9", 1799), ("45", 45), (0, 0),
    (-1, None), (-0.5, None), ("soon", None), (None, None), (float("inf"), None), (float("nan"), None),
])
def test_parse_seconds(value, expected):
    assert exam_flow.parse_seconds(value) == expected


def test_non_numeric_or_negative_time_is_a_validation_error(app_module, student, store):
    for bad in ("abc", -5):
        with pytest.raises(ValidationFailed) as exc:
            exam_flow.submit_test("ABC123", {}, bad, student, store)
        assert "time_taken" in exc.value.errors


def test_submit_without_claim_conflicts(scope, add_questions, make_code, student, store):
    add_questions(scope, 5)
    code = make_code(scope)
    with pytest.raises(Conflict):
        exam_flow.submit_test(code["code"], {}, 60, student, store)


def test_missing_mapping_falls_back_to_stored_labels(scope, add_questions, make_code, student, store):
    ids = add_questions(scope, 5)
    code = make_code(scope, total_questions=3)
    exam_flow.validate_test_code(code["code"], student)
    answers = {}
    for qid in ids:
        row = _fetch_one("SELECT correct_answer FROM questions WHERE id = ?", (qid,))
        answers[str(qid)] = row["correct_answer"]

    result = exam_flow.submit_test(code["code"], answers, 120, student, store)
    assert result["mapping_fallback_used"] is True
    assert len(result["breakdown"]) == 3
    assert result["score"] == 3


def test_fallback_ignores_questions_outside_the_pool(scope, add_questions, make_code, student, store):
    add_questions(scope, 5)
    code = make_code(scope, total_questions=3)
    exam_flow.validate_test_code(code["code"], student)
    result = exam_flow.submit_test(code["code"], {"999999": "A"}, 120, student, store)
    assert result["mapping_fallback_used"] is True
    assert result["breakdown"] == []
    assert result["score"] == 0


def test_failed_submission_rolls_back_everything(monkeypatch, scope, add_questions, make_code, student, store):
    add_questions(scope, 5)
    code = make_code(scope)
    paper = _sit(code, student, store)

    def explode(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "discard_with_cursor", explode)
    with pytest.raises(RuntimeError):
        exam_flow.submit_test(code["code"], _correct_shown_answers(paper), 300, student, store)

    assert _fetch_one("SELECT COUNT(*) FROM test_results")[0] == 0
    assert _fetch_one("SELECT COUNT(*) FROM test_answers")[0] == 0
    row = _fetch_one("SELECT is_used, status FROM test_codes WHERE id = ?", (code["id"],))
    assert row["is_used"] == 0
    assert row["status"] == "using"


def test_second_submission_conflicts(scope, add_questions, make_code, student, store):
    add_questions(scope, 5)
    code = make_code(scope)
    paper = _sit(code, student, store)
    answers = _correct_shown_answers(paper)
    exam_flow.submit_test(code["code"], answers, 300, student, store)
    with pytest.raises(Conflict):
        exam_flow.submit_test(code["code"], answers, 300, student, store)
    assert _fetch_one("SELECT COUNT(*) FROM test_results")[0] == 1


def test_second_claimed_code_in_same_scope_cannot_be_submitted(scope, add_questions, make_code, student, store):
    add_questions(scope, 5)
    first = make_code(scope)
    second = make_code(scope)
    first_paper = _sit(first, student, store)
    second_paper = _sit(second, student, store, seed=11)

    exam_flow.submit_test(first["code"], _correct_shown_answers(first_paper), 300, student, store)
    with pytest.raises(Conflict, match="already taken a test") as exc:
        exam_flow.submit_test(second["code"], _correct_shown_answers(second_paper), 300, student, store)
    assert exc.value.status_code == 409

    assert _fetch_one("SELECT COUNT(*) FROM test_results WHERE student_id = ?", (student["id"],))[0] == 1
    row = _fetch_one("SELECT is_used, status FROM test_codes WHERE id = ?", (second["id"],))
    assert row["is_used"] == 0
    assert row["status"] == "using"


def test_parse_answers_rejects_bad_labels():
    assert exam_flow.parse_answers({"4": " b ", "5": ""}) == {4: "B"}
    with pytest.raises(ValidationFailed):
        exam_flow.parse_answers({"4": "E"})
    with pytest.raises(ValidationFailed):
        exam_flow.parse_answers({"four": "A"})
    with pytest.raises(ValidationFailed):
        exam_flow.parse_answers(["A"])


# ---------------------------------------------------------------- cancel & results


def test_cancel_releases_claim(scope, add_questions, make_code, make_user, student, store):
    add_questions(scope, 5)
    code = make_code(scope)
    _sit(code, student, store)

    with pytest.raises(BadRequest):
        exam_flow.cancel_test_code(code["code"], make_user("student"), store)

    assert exam_flow.cancel_test_code(code["code"], student, store)["status"] == "active"
    row = _fetch_one("SELECT status, used_by FROM test_codes WHERE id = ?", (code["id"],))
    assert row["status"] == "active"
    assert row["used_by"] is None
    assert _fetch_one("SELECT COUNT(*) FROM answer_mappings")[0] == 0

    other = make_user("student")
    assert exam_flow.validate_test_code(code["code"], other)["code"] == code["code"]


@pytest.mark.parametrize("percentage, grade", [
    (100, "A"), (90, "A"), (89.99, "B"), (80, "B"), (70, "C"), (60, "D"), (59.5, "F"), (0, "F"),
])
def test_grade_boundaries(percentage, grade):
    assert exam_flow.grade_for(percentage) == grade


def test_percentage_of_handles_zero_max():
    assert exam_flow.percentage_of(3, 0) == 0.0
    assert exam_flow.percentage_of(2, 3) == 66.67


def test_results_and_tests_listing(scope, add_questions, make_code, make_user, student, store):
    add_questions(scope, 5)
    taken = make_code(scope)
    untouched = make_code(scope)
    paper = _sit(taken, student, store)
    exam_flow.submit_test(taken["code"], _correct_shown_answers(paper), 300, student, store)

    results = exam_flow.list_student_results(student["id"])
    assert len(results) == 1
    assert results[0]["grade"] == "A"
    assert results[0]["subject_name"] == "Mathematics"

    tests = exam_flow.list_student_tests(student["id"])
    assert [t["code"] for t in tests] == [taken["code"]]
    assert tests[0]["completed"] is True
    assert untouched["code"] not in {t["code"] for t in tests}

    listing = exam_flow.list_results({"class_level": "JSS1"})
    assert listing["total"] == 1
    assert exam_flow.list_results({"student_id": make_user("student")["id"]})["total"] == 0
