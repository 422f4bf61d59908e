"""
Question bank: validation, filtered listing, CRUD and bulk uploads.

Teachers only see and edit their own questions and may only write into a
subject/class/term/session they are assigned to. Admins can do anything.
"""

import csv
import logging
import secrets
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from io import StringIO

from auth import Role
from catalog import Scope, ensure_scope_with_cursor, parse_scope
from db import (
    db_connection,
    db_execute,
    db_executemany,
    format_timestamp,
    insert_returning_id,
    now_str,
    row_to_dict,
    rows_to_dicts,
)
from responses import BadRequest, Conflict, Forbidden, NotFound, ValidationFailed

MULTIPLE_CHOICE = 'multiple_choice'
TRUE_FALSE = 'true_false'
QUESTION_TYPES = (MULTIPLE_CHOICE, TRUE_FALSE)
ANSWER_LABELS = ('A', 'B', 'C', 'D')
OPTION_FIELDS = ('option_a', 'option_b', 'option_c', 'option_d')
CSV_HEADERS = ('question_text', 'option_a', 'option_b', 'option_c', 'option_d', 'correct_answer')
CSV_TEMPLATE_ROWS = (
    ('What is 2 + 2?', '3', '4', '5', '6', 'B'),
    ('The sun rises in the east.', 'True', 'False', '', '', 'A'),
)
MAX_CSV_BYTES = 5 * 1024 * 1024
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

# Short-lived in-memory store for CSV rows rejected during upload.
CSV_ERROR_EXPORTS = {}


@dataclass
class QuestionFilters:
    """Optional filters for question queries; each set field adds one clause."""
    subject_id: int = None
    class_level: str = None
    term_id: int = None
    session_id: int = None
    question_type: str = None
    teacher_id: int = None
    search: str = None

    @classmethod
    def for_scope(cls, scope, **extra):
        return cls(
            subject_id=scope.subject_id,
            class_level=scope.class_level,
            term_id=scope.term_id,
            session_id=scope.session_id,
            **extra,
        )

    @classmethod
    def from_args(cls, args):
        def as_int(name):
            raw = (args.get(name) or '').strip()
            if not raw:
                return None
            try:
                return int(raw)
            except ValueError:
                raise ValidationFailed(f'{name} must be a number.', errors={name: 'Must be a number.'})

        question_type = (args.get('question_type') or args.get('type') or '').strip().lower() or None
        if question_type and question_type not in QUESTION_TYPES:
            raise ValidationFailed('Invalid question type.', errors={'question_type': 'Unknown type.'})
        return cls(
            subject_id=as_int('subject_id'),
            class_level=(args.get('class_level') or '').strip().upper() or None,
            term_id=as_int('term_id'),
            session_id=as_int('session_id'),
            question_type=question_type,
            teacher_id=as_int('teacher_id'),
            search=(args.get('search') or '').strip() or None,
        )

    def where_clause(self, alias='q'):
        """Return (sql, params); sql is '' when no filter is set."""
        clauses = []
        params = []
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == 'search':
                clauses.append(f'LOWER({alias}.question_text) LIKE ?')
                params.append(f'%{value.lower()}%')
            else:
                clauses.append(f'{alias}.{f.name} = ?')
                params.append(value)
        if not clauses:
            return '', []
        return 'WHERE ' + ' AND '.join(clauses), params


def _is_admin(user):
    return Role.parse(user['role']) is Role.ADMIN


def _clean(value):
    return ' '.join(str(value).split()) if value is not None else ''


def validate_question(data, infer_type=False):
    """Return (cleaned, errors) for one question's text, options and answer.

    With ``infer_type`` a missing question_type is taken as true_false when
    options C and D are both empty.
    """
    errors = {}
    cleaned = {'question_text': _clean(data.get('question_text'))}
    for name in OPTION_FIELDS:
        cleaned[name] = _clean(data.get(name)) or None

    question_type = _clean(data.get('question_type')).lower()
    if not question_type:
        if infer_type and not cleaned['option_c'] and not cleaned['option_d']:
            question_type = TRUE_FALSE
        else:
            question_type = MULTIPLE_CHOICE
    cleaned['question_type'] = question_type
    answer = _clean(data.get('correct_answer')).upper()
    cleaned['correct_answer'] = answer

    if not cleaned['question_text']:
        errors['question_text'] = 'Question text is required.'
    if question_type not in QUESTION_TYPES:
        errors['question_type'] = 'Question type must be multiple_choice or true_false.'
        return cleaned, errors
    if not cleaned['option_a']:
        errors['option_a'] = 'Option A is required.'
    if not cleaned['option_b']:
        errors['option_b'] = 'Option B is required.'

    if question_type == TRUE_FALSE:
        cleaned['option_c'] = None
        cleaned['option_d'] = None
        if answer not in ('A', 'B'):
            errors['correct_answer'] = 'Correct answer must be A or B for true/false questions.'
    else:
        if not cleaned['option_c']:
            errors['option_c'] = 'Option C is required for multiple choice questions.'
        if not cleaned['option_d']:
            errors['option_d'] = 'Option D is required for multiple choice questions.'
        if answer not in ANSWER_LABELS:
            errors['correct_answer'] = 'Correct answer must be A, B, C or D.'
    return cleaned, errors


def teacher_is_assigned_with_cursor(c, teacher_id, scope):
    db_execute(
        c,
        '''SELECT 1 FROM teacher_assignments
           WHERE teacher_id = ? AND subject_id = ? AND class_level = ? AND term_id = ? AND session_id = ?
           LIMIT 1''',
        (teacher_id,) + scope.as_params(),
    )
    return c.fetchone() is not None


def _check_write_scope_with_cursor(c, user, scope):
    ensure_scope_with_cursor(c, scope)
    if not _is_admin(user) and not teacher_is_assigned_with_cursor(c, user['id'], scope):
        raise Forbidden('You are not assigned to this subject, class, term and session.')


def _insert_question_with_cursor(c, cleaned, scope, teacher_id):
    return insert_returning_id(
        c,
        '''INSERT INTO questions
           (subject_id, class_level, term_id, session_id, question_text,
            option_a, option_b, option_c, option_d, correct_answer, question_type, teacher_id, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
        scope.as_params() + (
            cleaned['question_text'],
            cleaned['option_a'],
            cleaned['option_b'],
            cleaned['option_c'],
            cleaned['option_d'],
            cleaned['correct_answer'],
            cleaned['question_type'],
            teacher_id,
            now_str(),
        ),
    )


def _owner_id(user):
    return None if _is_admin(user) else user['id']


def create_question(data, user):
    errors = {}
    scope = parse_scope(data, errors)
    cleaned, question_errors = validate_question(data)
    errors.update(question_errors)
    if errors:
        raise ValidationFailed('Invalid question.', errors=errors)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _check_write_scope_with_cursor(c, user, scope)
        question_id = _insert_question_with_cursor(c, cleaned, scope, _owner_id(user))
    logging.info("Question %s created by %s", question_id, user['username'])
    return get_question(question_id, user)


QUESTION_SELECT = '''SELECT q.id, q.subject_id, q.class_level, q.term_id, q.session_id, q.question_text,
                            q.option_a, q.option_b, q.option_c, q.option_d, q.correct_answer,
                            q.question_type, q.teacher_id, q.created_at,
                            s.name AS subject_name, t.name AS term_name, se.name AS session_name,
                            u.full_name AS teacher_name
                     FROM questions q
                     JOIN subjects s ON s.id = q.subject_id
                     JOIN terms t ON t.id = q.term_id
                     JOIN sessions se ON se.id = q.session_id
                     LEFT JOIN users u ON u.id = q.teacher_id'''


def _present(row):
    question = row_to_dict(row)
    question['created_at'] = format_timestamp(question.get('created_at'))
    return question


def _load_owned_with_cursor(c, question_id, user):
    db_execute(c, QUESTION_SELECT + ' WHERE q.id = ?', (question_id,))
    row = c.fetchone()
    if not row or (not _is_admin(user) and row['teacher_id'] != user['id']):
        raise NotFound('Question not found.')
    return row


def get_question(question_id, user):
    with db_connection() as conn:
        return _present(_load_owned_with_cursor(conn.cursor(), question_id, user))


def list_questions(filters, user, page=1, limit=DEFAULT_PAGE_SIZE):
    """Return {questions, pagination}; teachers are always limited to their own rows."""
    if not _is_admin(user):
        filters.teacher_id = user['id']
    page = max(1, int(page or 1))
    limit = max(1, min(int(limit or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE))
    where, params = filters.where_clause('q')
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, f'SELECT COUNT(*) FROM questions q {where}', params)
        total = int(c.fetchone()[0])
        db_execute(
            c,
            f'{QUESTION_SELECT} {where} ORDER BY q.created_at DESC, q.id DESC LIMIT ? OFFSET ?',
            params + [limit, (page - 1) * limit],
        )
        questions = [_present(r) for r in c.fetchall()]
    return {
        'questions': questions,
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'pages': (total + limit - 1) // limit,
        },
    }


def count_questions_with_cursor(c, filters):
    where, params = filters.where_clause('q')
    db_execute(c, f'SELECT COUNT(*) FROM questions q {where}', params)
    return int(c.fetchone()[0])


def count_pool_with_cursor(c, scope):
    return count_questions_with_cursor(c, QuestionFilters.for_scope(scope))


def count_questions(filters, user):
    if not _is_admin(user):
        filters.teacher_id = user['id']
    with db_connection() as conn:
        return count_questions_with_cursor(conn.cursor(), filters)


def _ensure_unanswered_with_cursor(c, question_id, action):
    db_execute(c, 'SELECT 1 FROM test_answers WHERE question_id = ? LIMIT 1', (question_id,))
    if c.fetchone():
        raise Conflict(f'Cannot {action} this question because students have already answered it.')


def update_question(question_id, data, user):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        existing = row_to_dict(_load_owned_with_cursor(c, question_id, user))
        _ensure_unanswered_with_cursor(c, question_id, 'edit')
        merged = dict(existing)
        merged.update({k: v for k, v in data.items() if k in existing})
        errors = {}
        scope = parse_scope(merged, errors)
        cleaned, question_errors = validate_question(merged)
        errors.update(question_errors)
        if errors:
            raise ValidationFailed('Invalid question.', errors=errors)
        if scope != Scope(existing['subject_id'], existing['class_level'], existing['term_id'], existing['session_id']):
            _check_write_scope_with_cursor(c, user, scope)
        db_execute(
            c,
            '''UPDATE questions
               SET subject_id = ?, class_level = ?, term_id = ?, session_id = ?, question_text = ?,
                   option_a = ?, option_b = ?, option_c = ?, option_d = ?,
                   correct_answer = ?, question_type = ?
               WHERE id = ?''',
            scope.as_params() + (
                cleaned['question_text'],
                cleaned['option_a'],
                cleaned['option_b'],
                cleaned['option_c'],
                cleaned['option_d'],
                cleaned['correct_answer'],
                cleaned['question_type'],
                question_id,
            ),
        )
    logging.info("Question %s updated by %s", question_id, user['username'])
    return get_question(question_id, user)


def delete_question(question_id, user):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_owned_with_cursor(c, question_id, user)
        _ensure_unanswered_with_cursor(c, question_id, 'delete')
        db_execute(c, 'DELETE FROM questions WHERE id = ?', (question_id,))
    logging.info("Question %s deleted by %s", question_id, user['username'])


def question_stats(teacher_id=None):
    """Totals for a teacher's questions (or all questions when teacher_id is None)."""
    filters = QuestionFilters(teacher_id=teacher_id)
    where, params = filters.where_clause('q')
    week_ago = now_str(datetime.now() - timedelta(days=7))
    recent_where = f'{where} AND' if where else 'WHERE'
    with db_connection() as conn:
        c = conn.cursor()
        total = count_questions_with_cursor(c, filters)
        db_execute(c, f'SELECT COUNT(DISTINCT q.subject_id) FROM questions q {where}', params)
        subjects_count = int(c.fetchone()[0])
        db_execute(c, f'SELECT COUNT(*) FROM questions q {recent_where} q.created_at >= ?', params + [week_ago])
        this_week = int(c.fetchone()[0])
        db_execute(
            c,
            f'''SELECT q.id, q.question_text, q.question_type, q.class_level, q.created_at, s.name AS subject_name
                FROM questions q JOIN subjects s ON s.id = q.subject_id
                {where} ORDER BY q.created_at DESC, q.id DESC LIMIT 5''',
            params,
        )
        recent = rows_to_dicts(c.fetchall())
    for item in recent:
        item['created_at'] = format_timestamp(item['created_at'])
    return {
        'total_questions': total,
        'subjects_count': subjects_count,
        'this_week': this_week,
        'recent_questions': recent,
    }


def _insert_valid_rows(user, scope, valid):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _check_write_scope_with_cursor(c, user, scope)
        teacher_id = _owner_id(user)
        for cleaned in valid:
            _insert_question_with_cursor(c, cleaned, scope, teacher_id)


def _format_row_errors(label, errors):
    return f"{label}: " + '; '.join(errors.values())


def bulk_create_questions(items, scope, user):
    """Create many questions from JSON; invalid items are reported and skipped."""
    if not isinstance(items, list) or not items:
        raise ValidationFailed('questions must be a non-empty list.')
    valid = []
    errors = []
    for idx, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            errors.append(f'Question {idx}: must be an object.')
            continue
        cleaned, item_errors = validate_question(item)
        if item_errors:
            errors.append(_format_row_errors(f'Question {idx}', item_errors))
            continue
        valid.append(cleaned)
    if valid:
        _insert_valid_rows(user, scope, valid)
    logging.info("Bulk create by %s: %s created, %s skipped", user['username'], len(valid), len(errors))
    return {
        'created_count': len(valid),
        'skipped_count': len(items) - len(valid),
        'total_rows': len(items),
        'errors': errors,
    }


def parse_questions_csv(content):
    """Parse CSV text into (valid, rejected, fieldnames, total_rows).

    ``rejected`` holds (row_dict, error_string) pairs. The row number in each
    message is the file line the record starts on, so it stays right across
    blank lines and quoted cells that span several lines.
    """
    reader = csv.reader(StringIO(content))
    header = next(reader, None)
    if not header or not any(h.strip() for h in header):
        raise BadRequest('CSV is empty or has no header row.')
    fieldnames = [h for h in header if h]
    headers = {h.strip().lower(): h for h in fieldnames}
    missing = [h for h in CSV_HEADERS if h not in headers]
    if missing:
        raise BadRequest(f"CSV is missing required column(s): {', '.join(missing)}.")
    has_type_col = 'question_type' in headers

    valid = []
    rejected = []
    total_rows = 0
    start = reader.line_num + 1
    for cells in reader:
        line_no, start = start, reader.line_num + 1
        if not any(cell.strip() for cell in cells):
            continue
        row = dict(zip(header, cells))
        total_rows += 1
        if len(cells) > len(header):
            rejected.append((row, f'Row {line_no}: too many columns.'))
            continue
        values = {name: (row.get(headers[name]) or '') for name in CSV_HEADERS}
        if has_type_col:
            values['question_type'] = row.get(headers['question_type']) or ''
        cleaned, errors = validate_question(values, infer_type=True)
        if errors:
            rejected.append((row, _format_row_errors(f'Row {line_no}', errors)))
            continue
        valid.append(cleaned)
    return valid, rejected, fieldnames, total_rows


def upload_questions_csv(file_storage, scope, user):
    """Import a CSV of questions into one scope with partial success."""
    if not file_storage or not (file_storage.filename or '').lower().endswith('.csv'):
        raise BadRequest('Please upload a valid CSV file (.csv).')
    raw = file_storage.read(MAX_CSV_BYTES + 1)
    if len(raw) > MAX_CSV_BYTES:
        raise BadRequest('CSV file is too large. Maximum size is 5MB.')
    try:
        content = raw.decode('utf-8-sig')
    except UnicodeDecodeError:
        raise BadRequest('CSV must be UTF-8 encoded.')

    valid, rejected, fieldnames, total_rows = parse_questions_csv(content)
    if valid:
        _insert_valid_rows(user, scope, valid)
    else:
        with db_connection() as conn:
            _check_write_scope_with_cursor(conn.cursor(), user, scope)

    errors = [message for _row, message in rejected]
    error_token = ''
    if rejected:
        error_token = _store_csv_error_export(_rejected_rows_csv(fieldnames, rejected), user['id'])
    logging.info(
        "CSV upload by %s: %s created, %s skipped of %s rows",
        user['username'], len(valid), len(rejected), total_rows,
    )
    return {
        'created_count': len(valid),
        'skipped_count': len(rejected),
        'total_rows': total_rows,
        'errors': errors,
        'error_token': error_token,
    }


def _rejected_rows_csv(fieldnames, rejected):
    output = StringIO()
    writer = csv.DictWriter(output, fieldnames=list(fieldnames) + ['error'], extrasaction='ignore')
    writer.writeheader()
    for row, message in rejected:
        row_out = {h: row.get(h, '') for h in fieldnames}
        row_out['error'] = message
        writer.writerow(row_out)
    return output.getvalue()


def csv_template():
    output = StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_HEADERS)
    writer.writerows(CSV_TEMPLATE_ROWS)
    return output.getvalue()


def _cleanup_csv_error_exports():
    cutoff = datetime.now() - timedelta(minutes=30)
    stale_tokens = [tok for tok, item in CSV_ERROR_EXPORTS.items() if item['created_at'] < cutoff]
    for tok in stale_tokens:
        CSV_ERROR_EXPORTS.pop(tok, None)
    if len(CSV_ERROR_EXPORTS) > 100:
        oldest = sorted(CSV_ERROR_EXPORTS.items(), key=lambda kv: kv[1]['created_at'])
        for tok, _item in oldest[:len(CSV_ERROR_EXPORTS) - 100]:
            CSV_ERROR_EXPORTS.pop(tok, None)


def _store_csv_error_export(content, owner_id):
    _cleanup_csv_error_exports()
    token = secrets.token_urlsafe(18)
    CSV_ERROR_EXPORTS[token] = {
        'content': content,
        'owner_id': owner_id,
        'created_at': datetime.now(),
    }
    return token


def get_csv_error_export(token, owner_id):
    _cleanup_csv_error_exports()
    item = CSV_ERROR_EXPORTS.get((token or '').strip())
    if not item or item['owner_id'] != owner_id:
        raise NotFound('Error export link expired. Re-run upload to generate it again.')
    return item['content']
