import random

import pytest

import accounts
import exam_flow
import question_bank
from question_bank import QuestionFilters
from responses import BadRequest, Conflict, Forbidden, NotFound, ValidationFailed


def _question(scope_payload, scope, **extra):
    data = scope_payload(
        scope,
        question_text="What is 3 x 4?",
        option_a="7",
        option_b="12",
        option_c="34",
        option_d="1",
        correct_answer="b",
    )
    data.update(extra)
    return data


@pytest.fixture
def teacher(make_user, admin, scope):
    user = make_user("teacher", "mrs_ade")
    accounts.create_assignment({"teacher_id": user["id"], **vars(scope)}, admin)
    return user


def test_validate_multiple_choice_requires_all_options():
    cleaned, errors = question_bank.validate_question({
        "question_text": "  Spaces   collapse ", "option_a": "x", "option_b": "y", "correct_answer": "a",
    })
    assert cleaned["question_text"] == "Spaces collapse"
    assert cleaned["correct_answer"] == "A"
    assert set(errors) == {"option_c", "option_d"}


def test_validate_true_false_limits_answers():
    cleaned, errors = question_bank.validate_question({
        "question_text": "Fish swim.", "option_a": "True", "option_b": "False",
        "option_c": "ignored", "question_type": "true_false", "correct_answer": "C",
    })
    assert cleaned["option_c"] is None
    assert "correct_answer" in errors


def test_validate_infers_true_false_for_two_option_rows():
    cleaned, errors = question_bank.validate_question(
        {"question_text": "Fish swim.", "option_a": "True", "option_b": "False", "correct_answer": "A"},
        infer_type=True,
    )
    assert errors == {}
    assert cleaned["question_type"] == "true_false"


def test_validate_rejects_unknown_type():
    _cleaned, errors = question_bank.validate_question({"question_text": "Q", "question_type": "essay"})
    assert "question_type" in errors


def test_filters_build_parameterised_where_clause():
    where, params = QuestionFilters(subject_id=2, class_level="SS1", search="Cell").where_clause("q")
    assert where == "WHERE q.subject_id = ? AND q.class_level = ? AND LOWER(q.question_text) LIKE ?"
    assert params == [2, "SS1", "%cell%"]
    assert QuestionFilters().where_clause() == ("", [])


def test_filters_from_args_reject_bad_numbers():
    with pytest.raises(ValidationFailed):
        QuestionFilters.from_args({"subject_id": "maths"})
    filters = QuestionFilters.from_args({"class_level": " jss2 ", "type": "TRUE_FALSE"})
    assert filters.class_level == "JSS2"
    assert filters.question_type == "true_false"


def test_teacher_creates_question_in_assigned_scope(teacher, scope, scope_payload):
    question = question_bank.create_question(_question(scope_payload, scope), teacher)
    assert question["teacher_id"] == teacher["id"]
    assert question["correct_answer"] == "B"
    assert question["subject_name"] == "Mathematics"


def test_teacher_cannot_write_outside_assignment(make_user, scope, scope_payload):
    stranger = make_user("teacher")
    with pytest.raises(Forbidden):
        question_bank.create_question(_question(scope_payload, scope), stranger)


def test_unknown_scope_is_rejected(admin, scope, scope_payload):
    data = _question(scope_payload, scope, class_level="PRIMARY9")
    with pytest.raises(ValidationFailed) as exc:
        question_bank.create_question(data, admin)
    assert "class_level" in exc.value.errors


def test_missing_scope_and_fields_are_reported_together(admin):
    with pytest.raises(ValidationFailed) as exc:
        question_bank.create_question({"question_text": ""}, admin)
    assert {"subject_id", "class_level", "term_id", "session_id", "question_text"} <= set(exc.value.errors)


def test_teachers_only_see_their_own_questions(teacher, make_user, admin, scope, scope_payload, add_questions):
    question_bank.create_question(_question(scope_payload, scope), teacher)
    add_questions(scope, 3)

    mine = question_bank.list_questions(QuestionFilters(), teacher)
    assert mine["pagination"]["total"] == 1

    everything = question_bank.list_questions(QuestionFilters(), admin, page=1, limit=2)
    assert everything["pagination"] == {"page": 1, "limit": 2, "total": 4, "pages": 2}
    assert len(everything["questions"]) == 2

    other = make_user("teacher")
    assert question_bank.count_questions(QuestionFilters(), other) == 0
    with pytest.raises(NotFound):
        question_bank.get_question(mine["questions"][0]["id"], other)


def test_update_question_revalidates(teacher, scope, scope_payload):
    question = question_bank.create_question(_question(scope_payload, scope), teacher)
    updated = question_bank.update_question(question["id"], {"correct_answer": "d"}, teacher)
    assert updated["correct_answer"] == "D"
    with pytest.raises(ValidationFailed):
        question_bank.update_question(question["id"], {"option_c": ""}, teacher)


def test_answered_question_is_locked(scope, add_questions, make_code, make_user, admin):
    add_questions(scope, 5)
    code = make_code(scope)
    student = make_user("student")
    store = exam_flow.AnswerMappingStore()
    exam_flow.validate_test_code(code["code"], student)
    paper = exam_flow.deliver_test(code["code"], student, store, rng=random.Random(2))
    answers = {str(q["id"]): "A" for q in paper["questions"]}
    exam_flow.submit_test(code["code"], answers, 100, student, store)

    answered = paper["questions"][0]["id"]
    with pytest.raises(Conflict):
        question_bank.update_question(answered, {"question_text": "Changed"}, admin)
    with pytest.raises(Conflict):
        question_bank.delete_question(answered, admin)


def test_delete_question(teacher, scope, scope_payload):
    question = question_bank.create_question(_question(scope_payload, scope), teacher)
    question_bank.delete_question(question["id"], teacher)
    with pytest.raises(NotFound):
        question_bank.get_question(question["id"], teacher)


def test_bulk_create_skips_invalid_items(teacher, scope, scope_payload):
    items = [
        _question(scope_payload, scope),
        {"question_text": "Broken", "option_a": "x"},
        "not an object",
        _question(scope_payload, scope, question_text="Another"),
    ]
    summary = question_bank.bulk_create_questions(items, scope, teacher)
    assert summary["created_count"] == 2
    assert summary["skipped_count"] == 2
    assert summary["errors"][0].startswith("Question 2:")
    assert summary["errors"][1] == "Question 3: must be an object."


def test_bulk_create_requires_a_list(teacher, scope):
    with pytest.raises(ValidationFailed):
        question_bank.bulk_create_questions([], scope, teacher)


def test_parse_csv_numbers_rows_by_line():
    content = "\n".join([
        "question_text,option_a,option_b,option_c,option_d,correct_answer",
        "Q1,a,b,c,d,A",
        ",,,,,",
        "Q3,a,b,c,d,Z",
        "Q4,True,False,,,B",
    ])
    valid, rejected, fieldnames, total = question_bank.parse_questions_csv(content)
    assert total == 3
    assert [q["question_text"] for q in valid] == ["Q1", "Q4"]
    assert valid[1]["question_type"] == "true_false"
    assert len(rejected) == 1
    assert rejected[0][1].startswith("Row 4:")
    assert fieldnames[0] == "question_text"


def test_parse_csv_row_numbers_survive_blank_lines_and_multiline_cells():
    content = "\n".join([
        "question_text,option_a,option_b,option_c,option_d,correct_answer",
        "Q1,a,b,c,d,A",
        "",
        "Q4,a,b,c,d,Z",
        '"Multi',
        'line",a,b,c,d,B',
        "Q7,a,b,c,d,Z",
    ])
    valid, rejected, _fieldnames, total = question_bank.parse_questions_csv(content)
    assert total == 4
    assert [q["question_text"] for q in valid] == ["Q1", "Multi line"]
    assert [message.split(":")[0] for _row, message in rejected] == ["Row 4", "Row 7"]
    assert rejected[1][0]["question_text"] == "Q7"


def test_parse_csv_flags_rows_with_extra_cells():
    content = "question_text,option_a,option_b,option_c,option_d,correct_answer\nQ1,a,b,c,d,A,extra\n"
    valid, rejected, _fieldnames, total = question_bank.parse_questions_csv(content)
    assert valid == [] and total == 1
    assert rejected[0][1] == "Row 2: too many columns."


def test_parse_csv_requires_headers():
    with pytest.raises(BadRequest, match="missing required column"):
        question_bank.parse_questions_csv("question_text,option_a\nQ,a\n")
    with pytest.raises(BadRequest):
        question_bank.parse_questions_csv("")


def test_csv_error_export_is_private_to_uploader():
    token = question_bank._store_csv_error_export("question_text,error\n", owner_id=11)
    assert question_bank.get_csv_error_export(token, 11).startswith("question_text")
    with pytest.raises(NotFound):
        question_bank.get_csv_error_export(token, 12)
    with pytest.raises(NotFound):
        question_bank.get_csv_error_export("missing", 11)


def test_question_stats_for_teacher(teacher, scope, scope_payload):
    question_bank.create_question(_question(scope_payload, scope), teacher)
    stats = question_bank.question_stats(teacher["id"])
    assert stats["total_questions"] == 1
    assert stats["subjects_count"] == 1
    assert stats["this_week"] == 1
    assert stats["recent_questions"][0]["subject_name"] == "Mathematics"


def test_admin_question_routes(client, admin, headers_for, scope, scope_payload):
    headers = headers_for(admin)
    resp = client.post("/admin/questions", headers=headers, json=_question(scope_payload, scope))
    assert resp.status_code == 201
    question_id = resp.get_json()["data"]["id"]

    resp = client.get(f"/admin/questions?subject_id={scope.subject_id}&class_level=jss1", headers=headers)
    assert resp.get_json()["data"]["pagination"]["total"] == 1

    resp = client.get("/admin/questions/count", headers=headers)
    assert resp.get_json()["data"]["count"] == 1

    resp = client.put(f"/admin/questions/{question_id}", headers=headers, json={"correct_answer": "C"})
    assert resp.get_json()["data"]["correct_answer"] == "C"

    resp = client.delete(f"/admin/questions/{question_id}", headers=headers)
    assert resp.status_code == 200
    assert client.get(f"/admin/questions/{question_id}", headers=headers).status_code == 404
