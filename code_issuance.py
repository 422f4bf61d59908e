"""
Test-code issuance: single codes, batches and activation.

A code moves active -> using (claimed by a student) -> used. Activation is
a separate admin switch (is_activated) that must be on before a student can
claim the code. Nothing here ever clears is_used.
"""

import logging
import secrets
import string
from dataclasses import dataclass, fields
from datetime import datetime

from catalog import ensure_scope_with_cursor, parse_scope
from db import (
    db_connection,
    db_execute,
    format_timestamp,
    insert_returning_id,
    now_str,
    row_to_dict,
)
from question_bank import count_pool_with_cursor
from responses import BadRequest, Conflict, NotFound, ValidationFailed
from validators import future_timestamp, int_in_range, parse_bool

TEST_TYPES = ('First CA', 'Second CA', 'Examination')
CODE_ALPHABET = string.ascii_uppercase + string.digits
BATCH_CODE_LENGTH = 8
SINGLE_CODE_LENGTH = 6
MAX_CODE_ATTEMPTS = 50
MAX_CODES_PER_BATCH = 100
RECENT_CODES_LIMIT = 10

STATUS_ACTIVE = 'active'
STATUS_USING = 'using'
STATUS_USED = 'used'


def generate_code(length=BATCH_CODE_LENGTH):
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def generate_unique_code_with_cursor(c, length=BATCH_CODE_LENGTH):
    """Draw random codes until one is not in test_codes (uncommitted rows included)."""
    for _ in range(MAX_CODE_ATTEMPTS):
        code = generate_code(length)
        db_execute(c, 'SELECT 1 FROM test_codes WHERE code = ?', (code,))
        if not c.fetchone():
            return code
    raise RuntimeError(f'Could not generate a unique test code after {MAX_CODE_ATTEMPTS} attempts.')


def validate_code_settings(data, partial=False, errors=None):
    """Validate the shared test settings; returns (scope, settings).

    With ``partial`` only the keys present in data are checked and scope is None.
    Problems found earlier by the caller can be passed in ``errors`` so they are
    reported together with these.
    """
    errors = {} if errors is None else errors
    settings = {}
    scope = None
    if not partial:
        scope = parse_scope(data, errors)

    if not partial or 'title' in data:
        title = ' '.join(str(data.get('title') or '').split())
        if not title:
            errors['title'] = 'Title is required.'
        settings['title'] = title
    if not partial or 'test_type' in data:
        test_type = (data.get('test_type') or 'Examination').strip()
        if test_type not in TEST_TYPES:
            errors['test_type'] = f"Test type must be one of: {', '.join(TEST_TYPES)}."
        settings['test_type'] = test_type
    if not partial or 'duration_minutes' in data:
        settings['duration_minutes'] = int_in_range(data, 'duration_minutes', 5, 180, errors, label='Duration')
    if not partial or 'total_questions' in data:
        settings['total_questions'] = int_in_range(data, 'total_questions', 1, 100, errors, label='Question count')
    if not partial or 'pass_score' in data:
        settings['pass_score'] = int_in_range(data, 'pass_score', 0, 100, errors, default=50, label='Pass score')
    if not partial or 'score_per_question' in data:
        settings['score_per_question'] = int_in_range(
            data, 'score_per_question', 1, None, errors, default=1, label='Score per question')
    if not partial or 'expires_at' in data:
        expires_at = future_timestamp(data, 'expires_at', datetime.now(), errors)
        settings['expires_at'] = now_str(expires_at) if expires_at else None

    if errors:
        raise ValidationFailed('Invalid test settings.', errors=errors)
    return scope, settings


def ensure_pool_with_cursor(c, scope, total_questions):
    available = count_pool_with_cursor(c, scope)
    if available < total_questions:
        raise BadRequest(
            f'Insufficient questions: {total_questions} required but only {available} available '
            'for this subject, class, term and session.'
        )
    return available


def _present_code(row):
    code = row_to_dict(row)
    for key in ('is_active', 'is_activated', 'is_used'):
        if key in code:
            code[key] = bool(code[key])
    for key in ('used_at', 'expires_at', 'created_at'):
        if key in code:
            code[key] = format_timestamp(code[key])
    return code


def _insert_code_with_cursor(c, code, title, scope, settings, created_by, batch_id=None, is_activated=0):
    return insert_returning_id(
        c,
        '''INSERT INTO test_codes
           (code, title, subject_id, class_level, term_id, session_id, test_type, duration_minutes,
            total_questions, pass_score, score_per_question, is_active, is_activated, is_used, status,
            expires_at, batch_id, created_by, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, 0, ?, ?, ?, ?, ?)''',
        (code, title) + scope.as_params() + (
            settings['test_type'],
            settings['duration_minutes'],
            settings['total_questions'],
            settings['pass_score'],
            settings['score_per_question'],
            is_activated,
            STATUS_ACTIVE,
            settings['expires_at'],
            batch_id,
            created_by,
            now_str(),
        ),
    )


# ---------------------------------------------------------------- batches

@dataclass
class BatchFilters:
    subject_id: int = None
    class_level: str = None
    term_id: int = None
    session_id: int = None
    is_active: bool = None

    @classmethod
    def from_args(cls, args):
        def as_int(name):
            raw = (args.get(name) or '').strip()
            return int(raw) if raw.isdigit() else None

        return cls(
            subject_id=as_int('subject_id'),
            class_level=(args.get('class_level') or '').strip().upper() or None,
            term_id=as_int('term_id'),
            session_id=as_int('session_id'),
            is_active=parse_bool(args.get('is_active')),
        )

    def where_clause(self, alias='b'):
        clauses = []
        params = []
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            clauses.append(f'{alias}.{f.name} = ?')
            params.append(int(value) if isinstance(value, bool) else value)
        if not clauses:
            return '', []
        return 'WHERE ' + ' AND '.join(clauses), params


def create_batch(data, user):
    """Create a batch and its codes in one transaction."""
    errors = {}
    code_count = int_in_range(data, 'code_count', 1, MAX_CODES_PER_BATCH, errors, label='Code count')
    scope, settings = validate_code_settings(data, errors=errors)

    with db_connection(commit=True) as conn:
        c = conn.cursor()
        ensure_scope_with_cursor(c, scope)
        ensure_pool_with_cursor(c, scope, settings['total_questions'])
        batch_id = insert_returning_id(
            c,
            '''INSERT INTO test_code_batches
               (title, subject_id, class_level, term_id, session_id, test_type, duration_minutes,
                total_questions, pass_score, score_per_question, code_count, is_active,
                expires_at, created_by, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)''',
            (settings['title'],) + scope.as_params() + (
                settings['test_type'],
                settings['duration_minutes'],
                settings['total_questions'],
                settings['pass_score'],
                settings['score_per_question'],
                code_count,
                settings['expires_at'],
                user['id'],
                now_str(),
            ),
        )
        codes = []
        for i in range(1, code_count + 1):
            code = generate_unique_code_with_cursor(c, BATCH_CODE_LENGTH)
            code_id = _insert_code_with_cursor(
                c, code, f"{settings['title']} - Code {i}", scope, settings, user['id'], batch_id=batch_id)
            codes.append({'id': code_id, 'code': code})

    logging.info("Batch %s created by %s with %s code(s)", batch_id, user['username'], code_count)
    return {'batch_id': batch_id, 'code_count': code_count, 'codes': codes}


BATCH_SELECT = '''SELECT b.id, b.title, b.subject_id, b.class_level, b.term_id, b.session_id, b.test_type,
                         b.duration_minutes, b.total_questions, b.pass_score, b.score_per_question,
                         b.code_count, b.is_active, b.expires_at, b.created_by, b.created_at,
                         s.name AS subject_name, t.name AS term_name, se.name AS session_name,
                         (SELECT COUNT(*) FROM test_codes tc WHERE tc.batch_id = b.id AND tc.is_used = 1) AS used_codes,
                         (SELECT COUNT(*) FROM test_codes tc WHERE tc.batch_id = b.id AND tc.is_activated = 1) AS activated_codes
                  FROM test_code_batches b
                  JOIN subjects s ON s.id = b.subject_id
                  JOIN terms t ON t.id = b.term_id
                  JOIN sessions se ON se.id = b.session_id'''


def _present_batch(row):
    batch = row_to_dict(row)
    batch['is_active'] = bool(batch['is_active'])
    batch['expires_at'] = format_timestamp(batch['expires_at'])
    batch['created_at'] = format_timestamp(batch['created_at'])
    return batch


def list_batches(filters, limit=50, offset=0):
    where, params = filters.where_clause('b')
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, f'SELECT COUNT(*) FROM test_code_batches b {where}', params)
        total = int(c.fetchone()[0])
        db_execute(
            c,
            f'{BATCH_SELECT} {where} ORDER BY b.created_at DESC, b.id DESC LIMIT ? OFFSET ?',
            params + [limit, offset],
        )
        batches = [_present_batch(r) for r in c.fetchall()]
    return {'batches': batches, 'total': total, 'limit': limit, 'offset': offset}


def _load_batch_with_cursor(c, batch_id):
    db_execute(c, BATCH_SELECT + ' WHERE b.id = ?', (batch_id,))
    row = c.fetchone()
    if not row:
        raise NotFound('Batch not found.')
    return row


def get_batch(batch_id):
    with db_connection() as conn:
        return _present_batch(_load_batch_with_cursor(conn.cursor(), batch_id))


def list_batch_codes(batch_id):
    with db_connection() as conn:
        c = conn.cursor()
        _load_batch_with_cursor(c, batch_id)
        db_execute(
            c,
            f'''{CODE_SELECT} WHERE tc.batch_id = ? ORDER BY tc.id''',
            (batch_id,),
        )
        return [_present_code(r) for r in c.fetchall()]


def set_batch_activation(batch_id, is_active, user):
    """Switch every code in the batch on or off with a single UPDATE."""
    flag = 1 if is_active else 0
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_batch_with_cursor(c, batch_id)
        db_execute(
            c,
            'UPDATE test_codes SET is_activated = ?, is_active = ? WHERE batch_id = ?',
            (flag, flag, batch_id),
        )
        codes_updated = c.rowcount
        db_execute(c, 'UPDATE test_code_batches SET is_active = ? WHERE id = ?', (flag, batch_id))
    logging.info(
        "Batch %s %s by %s (%s codes)",
        batch_id, 'activated' if is_active else 'deactivated', user['username'], codes_updated,
    )
    return {'batch_id': batch_id, 'is_active': bool(is_active), 'codes_updated': codes_updated}


def delete_batch(batch_id, user):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_batch_with_cursor(c, batch_id)
        db_execute(
            c,
            '''SELECT COUNT(*) FROM test_codes tc
               WHERE tc.batch_id = ?
                 AND (tc.is_used = 1 OR tc.status = ?
                      OR EXISTS (SELECT 1 FROM test_results r WHERE r.test_code_id = tc.id))''',
            (batch_id, STATUS_USING),
        )
        in_use = int(c.fetchone()[0])
        if in_use:
            raise Conflict(f'Cannot delete batch: {in_use} code(s) have been used or are in use.')
        db_execute(c, 'DELETE FROM answer_mappings WHERE test_code_id IN (SELECT id FROM test_codes WHERE batch_id = ?)',
                   (batch_id,))
        db_execute(c, 'DELETE FROM test_codes WHERE batch_id = ?', (batch_id,))
        db_execute(c, 'DELETE FROM test_code_batches WHERE id = ?', (batch_id,))
    logging.info("Batch %s deleted by %s", batch_id, user['username'])


# ---------------------------------------------------------------- single codes

@dataclass
class CodeFilters:
    subject_id: int = None
    class_level: str = None
    batch_id: int = None
    is_active: bool = None
    is_activated: bool = None
    is_used: bool = None
    code: str = None

    @classmethod
    def from_args(cls, args):
        def as_int(name):
            raw = (args.get(name) or '').strip()
            return int(raw) if raw.isdigit() else None

        return cls(
            subject_id=as_int('subject_id'),
            class_level=(args.get('class_level') or '').strip().upper() or None,
            batch_id=as_int('batch_id'),
            is_active=parse_bool(args.get('is_active')),
            is_activated=parse_bool(args.get('is_activated')),
            is_used=parse_bool(args.get('is_used')),
            code=(args.get('code') or '').strip().upper() or None,
        )

    def where_clause(self, alias='tc'):
        clauses = []
        params = []
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == 'code':
                clauses.append(f'{alias}.code LIKE ?')
                params.append(f'%{value}%')
            else:
                clauses.append(f'{alias}.{f.name} = ?')
                params.append(int(value) if isinstance(value, bool) else value)
        if not clauses:
            return '', []
        return 'WHERE ' + ' AND '.join(clauses), params


CODE_SELECT = '''SELECT tc.id, tc.code, tc.title, tc.subject_id, tc.class_level, tc.term_id, tc.session_id,
                        tc.test_type, tc.duration_minutes, tc.total_questions, tc.pass_score,
                        tc.score_per_question, tc.is_active, tc.is_activated, tc.is_used, tc.status,
                        tc.used_by, tc.used_at, tc.expires_at, tc.batch_id, tc.created_by, tc.created_at,
                        s.name AS subject_name, u.full_name AS used_by_name
                 FROM test_codes tc
                 JOIN subjects s ON s.id = tc.subject_id
                 LEFT JOIN users u ON u.id = tc.used_by'''


def create_test_code(data, user):
    scope, settings = validate_code_settings(data)
    is_activated = 1 if parse_bool(data.get('is_activated'), False) else 0
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        ensure_scope_with_cursor(c, scope)
        ensure_pool_with_cursor(c, scope, settings['total_questions'])
        code = generate_unique_code_with_cursor(c, SINGLE_CODE_LENGTH)
        code_id = _insert_code_with_cursor(
            c, code, settings['title'], scope, settings, user['id'], is_activated=is_activated)
    logging.info("Test code %s created by %s", code, user['username'])
    return get_test_code(code_id)


def list_test_codes(filters, limit=50, offset=0, recent=False):
    if recent:
        limit, offset = RECENT_CODES_LIMIT, 0
    where, params = filters.where_clause('tc')
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, f'SELECT COUNT(*) FROM test_codes tc {where}', params)
        total = int(c.fetchone()[0])
        db_execute(
            c,
            f'{CODE_SELECT} {where} ORDER BY tc.created_at DESC, tc.id DESC LIMIT ? OFFSET ?',
            params + [limit, offset],
        )
        codes = [_present_code(r) for r in c.fetchall()]
    return {'test_codes': codes, 'total': total, 'limit': limit, 'offset': offset}


def _load_code_with_cursor(c, code_id):
    db_execute(c, CODE_SELECT + ' WHERE tc.id = ?', (code_id,))
    row = c.fetchone()
    if not row:
        raise NotFound('Test code not found.')
    return row


def get_test_code(code_id):
    with db_connection() as conn:
        return _present_code(_load_code_with_cursor(conn.cursor(), code_id))


def update_test_code(code_id, data, user):
    _scope, settings = validate_code_settings(data, partial=True)
    if not settings:
        raise ValidationFailed('No updatable fields supplied.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        existing = _load_code_with_cursor(c, code_id)
        if existing['is_used']:
            raise Conflict('Cannot modify a test code that has already been used.')
        if 'total_questions' in settings:
            scope = parse_scope(row_to_dict(existing))
            ensure_pool_with_cursor(c, scope, settings['total_questions'])
        assignments = ', '.join(f'{name} = ?' for name in settings)
        db_execute(
            c,
            f'UPDATE test_codes SET {assignments} WHERE id = ?',
            list(settings.values()) + [code_id],
        )
    logging.info("Test code %s updated by %s: %s", code_id, user['username'], ', '.join(settings))
    return get_test_code(code_id)


def set_test_code_flags(code_id, user, is_active=None, is_activated=None):
    """Toggle is_active and/or is_activated; is_used is never touched."""
    updates = {}
    if is_active is not None:
        updates['is_active'] = 1 if is_active else 0
    if is_activated is not None:
        updates['is_activated'] = 1 if is_activated else 0
    if not updates:
        raise ValidationFailed('Provide is_active and/or is_activated as booleans.')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        _load_code_with_cursor(c, code_id)
        assignments = ', '.join(f'{name} = ?' for name in updates)
        db_execute(c, f'UPDATE test_codes SET {assignments} WHERE id = ?', list(updates.values()) + [code_id])
    logging.info("Test code %s flags set by %s: %s", code_id, user['username'], updates)
    return get_test_code(code_id)


def delete_test_code(code_id, user):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        existing = _load_code_with_cursor(c, code_id)
        db_execute(c, 'SELECT COUNT(*) FROM test_results WHERE test_code_id = ?', (code_id,))
        if int(c.fetchone()[0]) or existing['is_used']:
            raise Conflict('Cannot delete a test code that has submissions.')
        if existing['status'] == STATUS_USING:
            raise Conflict('Cannot delete a test code while a student is taking it.')
        db_execute(c, 'DELETE FROM answer_mappings WHERE test_code_id = ?', (code_id,))
        db_execute(c, 'DELETE FROM test_codes WHERE id = ?', (code_id,))
    logging.info("Test code %s (%s) deleted by %s", code_id, existing['code'], user['username'])
