"""
Student test flow: validate a code, deliver questions, submit and score.

The per-student option shuffle is remembered in ``AnswerMappingStore`` so
grading can translate the labels the student saw back to the stored ones.
The store is passed in by the caller rather than read from request state.
"""

import json
import logging
import math
import random
from datetime import datetime, timedelta

import activity
from catalog import Scope
from code_issuance import STATUS_ACTIVE, STATUS_USED, STATUS_USING
from db import (
    IntegrityErrors,
    db_connection,
    db_execute,
    db_executemany,
    format_timestamp,
    insert_returning_id,
    now_str,
    parse_timestamp,
    row_to_dict,
    rows_to_dicts,
)
from question_bank import ANSWER_LABELS, TRUE_FALSE, count_pool_with_cursor
from responses import BadRequest, Conflict, NotFound, ValidationFailed
from validators import safe_int

TIME_GRACE_FACTOR = 1.1
GRADE_BOUNDARIES = ((90, 'A'), (80, 'B'), (70, 'C'), (60, 'D'))


class AnswerMappingStore:
    """Expiring (test_code_id, student_id) -> {question_id: {shown: stored}} entries.

    Backed by the answer_mappings table so every worker process sees the
    same entry. Entries live for the test duration plus the 10% grace and
    ``grace_minutes`` on top.
    """

    def __init__(self, grace_minutes=30):
        self.grace_minutes = grace_minutes

    def ttl_for(self, duration_minutes):
        return timedelta(minutes=duration_minutes * TIME_GRACE_FACTOR + self.grace_minutes)

    def save_with_cursor(self, c, test_code_id, student_id, mapping, duration_minutes, now=None):
        now = now or datetime.now()
        payload = json.dumps({str(qid): labels for qid, labels in mapping.items()})
        db_execute(
            c,
            '''INSERT INTO answer_mappings (test_code_id, student_id, mapping, expires_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(test_code_id, student_id) DO UPDATE SET
                 mapping = excluded.mapping,
                 expires_at = excluded.expires_at''',
            (test_code_id, student_id, payload, now_str(now + self.ttl_for(duration_minutes))),
        )

    def load_with_cursor(self, c, test_code_id, student_id, now=None):
        """Return the mapping with int question ids, or None if missing or expired."""
        db_execute(
            c,
            'SELECT mapping, expires_at FROM answer_mappings WHERE test_code_id = ? AND student_id = ?',
            (test_code_id, student_id),
        )
        row = c.fetchone()
        if not row:
            return None
        if parse_timestamp(row['expires_at']) <= (now or datetime.now()):
            return None
        return {int(qid): labels for qid, labels in json.loads(row['mapping']).items()}

    def discard_with_cursor(self, c, test_code_id, student_id):
        db_execute(
            c,
            'DELETE FROM answer_mappings WHERE test_code_id = ? AND student_id = ?',
            (test_code_id, student_id),
        )


def normalize_code(code):
    return (code or '').strip().upper()


def grade_for(percentage):
    for boundary, grade in GRADE_BOUNDARIES:
        if percentage >= boundary:
            return grade
    return 'F'


def percentage_of(score, max_score):
    if not max_score:
        return 0.0
    return round(score / max_score * 100, 2)


def _scope_of(code_row):
    return Scope(code_row['subject_id'], code_row['class_level'], code_row['term_id'], code_row['session_id'])


def _load_code_with_cursor(c, code):
    db_execute(
        c,
        '''SELECT tc.*, s.name AS subject_name
           FROM test_codes tc JOIN subjects s ON s.id = tc.subject_id
           WHERE tc.code = ?''',
        (code,),
    )
    row = c.fetchone()
    if not row:
        raise NotFound('Invalid test code.')
    return row_to_dict(row)


def _is_expired(code_row, now):
    expires_at = parse_timestamp(code_row['expires_at'])
    return bool(expires_at and expires_at < now)


def _is_used(code_row):
    return bool(code_row['is_used']) or code_row['status'] == STATUS_USED


def _ensure_not_taken_with_cursor(c, code_row, student_id):
    db_execute(
        c,
        'SELECT 1 FROM test_results WHERE test_code_id = ? AND student_id = ? LIMIT 1',
        (code_row['id'], student_id),
    )
    if c.fetchone():
        raise Conflict('You have already taken this test.')
    db_execute(
        c,
        '''SELECT 1 FROM test_results
           WHERE student_id = ? AND subject_id = ? AND class_level = ? AND term_id = ? AND session_id = ?
           LIMIT 1''',
        (student_id,) + _scope_of(code_row).as_params(),
    )
    if c.fetchone():
        raise Conflict('You have already taken a test for this subject, class, term and session.')


def _ensure_pool_with_cursor(c, code_row):
    available = count_pool_with_cursor(c, _scope_of(code_row))
    if available < code_row['total_questions']:
        raise BadRequest(
            f"Insufficient questions available for this test. "
            f"Required: {code_row['total_questions']}, available: {available}."
        )


def _test_metadata(code_row):
    return {
        'test_id': code_row['id'],
        'code': code_row['code'],
        'title': code_row['title'],
        'subject': code_row['subject_name'],
        'class_level': code_row['class_level'],
        'duration_minutes': code_row['duration_minutes'],
        'question_count': code_row['total_questions'],
        'test_type': code_row['test_type'],
    }


def validate_test_code(code, student, now=None):
    """Run the ordered eligibility checks and claim the code for ``student``."""
    code = normalize_code(code)
    if not code:
        raise ValidationFailed('Test code is required.', errors={'test_code': 'Required.'})
    now = now or datetime.now()
    student_id = student['id']
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        row = _load_code_with_cursor(c, code)
        if not row['is_active']:
            raise BadRequest('This test code is not active.')
        if not row['is_activated']:
            raise BadRequest('This test code has not been activated yet. Please contact your administrator.')
        if _is_used(row):
            raise Conflict('This test code has already been used and is permanently deactivated.')
        if row['status'] == STATUS_USING and row['used_by'] != student_id:
            raise Conflict('This test code is currently in use by another student.')
        if _is_expired(row, now):
            raise BadRequest('This test code has expired.')
        _ensure_not_taken_with_cursor(c, row, student_id)
        _ensure_pool_with_cursor(c, row)

        if row['status'] != STATUS_USING:
            db_execute(
                c,
                '''UPDATE test_codes SET status = ?, used_by = ?, used_at = ?
                   WHERE id = ? AND status = ? AND is_used = 0''',
                (STATUS_USING, student_id, now_str(now), row['id'], STATUS_ACTIVE),
            )
            if c.rowcount == 0:
                raise Conflict('This test code is no longer available.')
            logging.info("Test code %s claimed by student %s", code, student_id)
    return _test_metadata(row)


def select_questions_with_cursor(c, scope, count, rng):
    """Pick ``count`` pool questions uniformly at random, without replacement."""
    db_execute(
        c,
        '''SELECT id FROM questions
           WHERE subject_id = ? AND class_level = ? AND term_id = ? AND session_id = ?''',
        scope.as_params(),
    )
    pool_ids = sorted(int(r['id']) for r in c.fetchall())
    if len(pool_ids) < count:
        raise BadRequest(f'Insufficient questions available. Required: {count}, available: {len(pool_ids)}.')
    chosen = rng.sample(pool_ids, count)
    placeholders = ', '.join('?' for _ in chosen)
    db_execute(
        c,
        f'''SELECT id, question_text, option_a, option_b, option_c, option_d, correct_answer, question_type
            FROM questions WHERE id IN ({placeholders})''',
        chosen,
    )
    by_id = {int(r['id']): row_to_dict(r) for r in c.fetchall()}
    return [by_id[qid] for qid in chosen]


def shuffle_options(question, rng):
    """Return (displayed question, {shown label: stored label})."""
    labels = ('A', 'B') if question['question_type'] == TRUE_FALSE else tuple(
        label for label in ANSWER_LABELS if question[f'option_{label.lower()}'] not in (None, '')
    )
    stored = list(labels)
    rng.shuffle(stored)
    mapping = dict(zip(labels, stored))
    shown = {
        'id': question['id'],
        'question_text': question['question_text'],
        'question_type': question['question_type'],
    }
    for label in ANSWER_LABELS:
        source = mapping.get(label)
        shown[f'option_{label.lower()}'] = question[f'option_{source.lower()}'] if source else None
    return shown, mapping


def deliver_test(code, student, store, rng=None, now=None):
    """Return the question paper for a code the student has claimed."""
    code = normalize_code(code)
    if not code:
        raise ValidationFailed('Test code is required.', errors={'code': 'Required.'})
    rng = rng or random.SystemRandom()
    now = now or datetime.now()
    student_id = student['id']
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        row = _load_code_with_cursor(c, code)
        if not row['is_active'] or not row['is_activated']:
            raise BadRequest('This test is not available.')
        if _is_used(row):
            raise Conflict('This test code has already been used and is permanently deactivated.')
        if row['status'] != STATUS_USING or row['used_by'] != student_id:
            raise Conflict('This test code has not been validated by you or was validated by another student.')
        if _is_expired(row, now):
            raise BadRequest('This test code has expired.')
        _ensure_not_taken_with_cursor(c, row, student_id)

        questions = select_questions_with_cursor(c, _scope_of(row), row['total_questions'], rng)
        paper = []
        mapping = {}
        for question in questions:
            shown, labels = shuffle_options(question, rng)
            paper.append(shown)
            mapping[question['id']] = labels
        store.save_with_cursor(c, row['id'], student_id, mapping, row['duration_minutes'], now)

    logging.info("Test %s delivered to student %s (%s questions)", code, student_id, len(paper))
    return {
        'id': row['id'],
        'code': row['code'],
        'title': row['title'],
        'subject': row['subject_name'],
        'class_level': row['class_level'],
        'test_type': row['test_type'],
        'duration_minutes': row['duration_minutes'],
        'questions': paper,
    }


def parse_answers(answers):
    """Normalise {question_id: label} from JSON; blank answers are dropped."""
    if not isinstance(answers, dict):
        raise ValidationFailed('Answers must be an object mapping question ids to A-D.',
                               errors={'answers': 'Invalid format.'})
    parsed = {}
    errors = {}
    for raw_qid, raw_label in answers.items():
        qid = safe_int(raw_qid)
        if qid is None:
            errors[str(raw_qid)] = 'Question id must be a number.'
            continue
        label = (str(raw_label) if raw_label is not None else '').strip().upper()
        if not label:
            continue
        if label not in ANSWER_LABELS:
            errors[str(raw_qid)] = 'Answer must be A, B, C or D.'
            continue
        parsed[qid] = label
    if errors:
        raise ValidationFailed('Invalid answers.', errors=errors)
    return parsed


def _answer_keys_with_cursor(c, question_ids):
    if not question_ids:
        return {}
    placeholders = ', '.join('?' for _ in question_ids)
    db_execute(
        c,
        f'SELECT id, correct_answer FROM questions WHERE id IN ({placeholders})',
        list(question_ids),
    )
    return {int(r['id']): r['correct_answer'] for r in c.fetchall()}


def grade_with_mapping(answers, mapping, keys):
    """Grade shown labels through the stored shuffle; answers outside the paper are ignored."""
    graded = []
    errors = {}
    for qid, shown_label in sorted(answers.items()):
        labels = mapping.get(qid)
        if labels is None:
            continue
        stored_label = labels.get(shown_label)
        if stored_label is None:
            errors[str(qid)] = f'Option {shown_label} was not offered for this question.'
            continue
        graded.append({
            'question_id': qid,
            'selected_answer': stored_label,
            'is_correct': stored_label == keys.get(qid),
        })
    if errors:
        raise ValidationFailed('Invalid answers.', errors=errors)
    return graded


def grade_without_mapping(answers, pool_keys, limit):
    """Fallback: compare labels straight against the stored key.

    Only correct if the options were shown unshuffled. Restricted to pool
    questions and capped at the paper length.
    """
    graded = []
    for qid in sorted(answers):
        if qid not in pool_keys:
            continue
        if len(graded) >= limit:
            break
        graded.append({
            'question_id': qid,
            'selected_answer': answers[qid],
            'is_correct': answers[qid] == pool_keys[qid],
        })
    return graded


def _pool_keys_with_cursor(c, scope, question_ids):
    if not question_ids:
        return {}
    placeholders = ', '.join('?' for _ in question_ids)
    db_execute(
        c,
        f'''SELECT id, correct_answer FROM questions
            WHERE subject_id = ? AND class_level = ? AND term_id = ? AND session_id = ?
              AND id IN ({placeholders})''',
        list(scope.as_params()) + list(question_ids),
    )
    return {int(r['id']): r['correct_answer'] for r in c.fetchall()}


def parse_seconds(value):
    """Whole seconds from an int, float or numeric string; None if unusable."""
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return int(seconds)


def submit_test(code, answers, time_taken, student, store, now=None, audit=None):
    """Score a submission and retire the code, all in one transaction."""
    code = normalize_code(code)
    errors = {}
    if not code:
        errors['test_code'] = 'Test code is required.'
    if answers is None:
        errors['answers'] = 'Answers are required.'
    seconds = parse_seconds(time_taken)
    if seconds is None:
        errors['time_taken'] = 'Time taken must be a non-negative number of seconds.'
    if errors:
        raise ValidationFailed('Missing required fields.', errors=errors)
    answers = parse_answers(answers)
    now = now or datetime.now()
    student_id = student['id']

    try:
        with db_connection(commit=True) as conn:
            c = conn.cursor()
            row = _load_code_with_cursor(c, code)
            if not row['is_active'] or not row['is_activated'] or _is_expired(row, now):
                raise BadRequest('This test is no longer available.')
            if _is_used(row):
                raise Conflict('This test code has already been used.')
            if row['status'] != STATUS_USING or row['used_by'] != student_id:
                raise Conflict('This test code has not been validated by you.')
            _ensure_not_taken_with_cursor(c, row, student_id)
            if seconds > row['duration_minutes'] * 60 * TIME_GRACE_FACTOR:
                raise BadRequest('Test time exceeded.')

            mapping = store.load_with_cursor(c, row['id'], student_id, now)
            fallback_used = mapping is None
            if fallback_used:
                logging.warning(
                    "No answer mapping for code %s / student %s; grading against stored labels.",
                    code, student_id,
                )
                pool_keys = _pool_keys_with_cursor(c, _scope_of(row), list(answers))
                graded = grade_without_mapping(answers, pool_keys, row['total_questions'])
            else:
                keys = _answer_keys_with_cursor(c, list(mapping))
                graded = grade_with_mapping(answers, mapping, keys)

            correct = sum(1 for item in graded if item['is_correct'])
            score = correct * row['score_per_question']
            max_score = row['total_questions'] * row['score_per_question']
            result_id = insert_returning_id(
                c,
                '''INSERT INTO test_results
                   (test_code_id, student_id, subject_id, class_level, term_id, session_id,
                    score, total_questions, max_score, time_taken, submitted_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (row['id'], student_id) + _scope_of(row).as_params() + (
                    score, row['total_questions'], max_score, seconds, now_str(now)),
            )
            if graded:
                db_executemany(
                    c,
                    '''INSERT INTO test_answers (result_id, question_id, selected_answer, is_correct)
                       VALUES (?, ?, ?, ?)''',
                    [(result_id, g['question_id'], g['selected_answer'], 1 if g['is_correct'] else 0)
                     for g in graded],
                )
            db_execute(
                c,
                '''UPDATE test_codes SET is_used = 1, status = ?, used_by = ?, used_at = ?
                   WHERE id = ? AND is_used = 0''',
                (STATUS_USED, student_id, now_str(now), row['id']),
            )
            if c.rowcount == 0:
                raise Conflict('This test code has already been used.')
            store.discard_with_cursor(c, row['id'], student_id)
            activity.log_activity_with_cursor(
                c, student_id, activity.TEST_COMPLETED,
                f"Completed test {code}: {score}/{max_score}", audit, now,
            )
    except IntegrityErrors:
        raise Conflict('You have already submitted this test.')

    percentage = percentage_of(score, max_score)
    logging.info(
        "Submission: code %s student %s score %s/%s in %ss%s",
        code, student_id, score, max_score, seconds, ' (fallback grading)' if fallback_used else '',
    )
    return {
        'result_id': result_id,
        'score': score,
        'max_possible_score': max_score,
        'total_questions': row['total_questions'],
        'correct_answers': correct,
        'percentage': percentage,
        'score_display': f'{score}/{max_score}',
        'time_taken': seconds,
        'passed': percentage >= row['pass_score'],
        'mapping_fallback_used': fallback_used,
        'breakdown': graded,
    }


def cancel_test_code(code, student, store, audit=None):
    """Release a claimed but unsubmitted code back to 'active'."""
    code = normalize_code(code)
    if not code:
        raise ValidationFailed('Test code is required.', errors={'test_code': 'Required.'})
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''UPDATE test_codes SET status = ?, used_by = NULL, used_at = NULL
               WHERE code = ? AND status = ? AND used_by = ? AND is_used = 0''',
            (STATUS_ACTIVE, code, STATUS_USING, student['id']),
        )
        if c.rowcount == 0:
            raise BadRequest('Test code not found or cannot be cancelled.')
        db_execute(c, 'SELECT id FROM test_codes WHERE code = ?', (code,))
        store.discard_with_cursor(c, c.fetchone()['id'], student['id'])
        activity.log_activity_with_cursor(
            c, student['id'], activity.TEST_CODE_RELEASED, f"Released test code {code}", audit,
        )
    logging.info("Test code %s released by student %s", code, student['id'])
    return {'code': code, 'status': STATUS_ACTIVE}


RESULT_SELECT = '''SELECT r.id, r.test_code_id, r.student_id, r.score, r.total_questions, r.max_score,
                          r.time_taken, r.submitted_at, r.class_level,
                          tc.code, tc.title, tc.test_type, tc.pass_score, tc.duration_minutes,
                          s.name AS subject_name, t.name AS term_name, se.name AS session_name,
                          u.full_name AS student_name, u.matric_number
                   FROM test_results r
                   JOIN test_codes tc ON tc.id = r.test_code_id
                   JOIN subjects s ON s.id = r.subject_id
                   JOIN terms t ON t.id = r.term_id
                   JOIN sessions se ON se.id = r.session_id
                   JOIN users u ON u.id = r.student_id'''


def _present_result(row):
    result = row_to_dict(row)
    result['submitted_at'] = format_timestamp(result['submitted_at'])
    result['max_possible_score'] = result['max_score']
    result['percentage'] = percentage_of(result['score'], result['max_score'])
    result['grade'] = grade_for(result['percentage'])
    result['passed'] = result['percentage'] >= result['pass_score']
    return result


def list_student_results(student_id, limit=50):
    limit = max(1, min(safe_int(limit, 50), 200))
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'{RESULT_SELECT} WHERE r.student_id = ? ORDER BY r.submitted_at DESC, r.id DESC LIMIT ?',
            (student_id, limit),
        )
        return [_present_result(r) for r in c.fetchall()]


def list_results(scope_filters, limit=100, offset=0):
    """Admin view of all results, optionally narrowed by any scope column."""
    clauses = []
    params = []
    for name in ('subject_id', 'class_level', 'term_id', 'session_id', 'student_id'):
        value = scope_filters.get(name)
        if value is not None:
            clauses.append(f'r.{name} = ?')
            params.append(value)
    where = ('WHERE ' + ' AND '.join(clauses)) if clauses else ''
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, f'SELECT COUNT(*) FROM test_results r {where}', params)
        total = int(c.fetchone()[0])
        db_execute(
            c,
            f'{RESULT_SELECT} {where} ORDER BY r.submitted_at DESC, r.id DESC LIMIT ? OFFSET ?',
            params + [limit, offset],
        )
        results = [_present_result(r) for r in c.fetchall()]
    return {'results': results, 'total': total, 'limit': limit, 'offset': offset}


def list_student_tests(student_id):
    """Codes this student has claimed or completed; unclaimed codes are never listed."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT tc.id, tc.code, tc.title, tc.test_type, tc.class_level, tc.duration_minutes,
                      tc.total_questions, tc.status, tc.used_at, tc.expires_at, s.name AS subject_name,
                      r.id AS result_id
               FROM test_codes tc
               JOIN subjects s ON s.id = tc.subject_id
               LEFT JOIN test_results r ON r.test_code_id = tc.id AND r.student_id = ?
               WHERE tc.used_by = ?
               ORDER BY tc.used_at DESC, tc.id DESC''',
            (student_id, student_id),
        )
        tests = rows_to_dicts(c.fetchall())
    for test in tests:
        test['completed'] = test['result_id'] is not None
        test['used_at'] = format_timestamp(test['used_at'])
        test['expires_at'] = format_timestamp(test['expires_at'])
    return tests
