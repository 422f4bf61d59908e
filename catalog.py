"""Subjects, terms, sessions and class levels."""

import logging
from dataclasses import dataclass

from db import IntegrityErrors, db_connection, db_execute, insert_returning_id, rows_to_dicts
from responses import Conflict, ValidationFailed
from validators import safe_int

LOOKUP_TYPES = ('terms', 'sessions', 'subjects', 'class_levels')


@dataclass(frozen=True)
class Scope:
    """A question pool: one subject, class level, term and session."""
    subject_id: int
    class_level: str
    term_id: int
    session_id: int

    def as_params(self):
        return (self.subject_id, self.class_level, self.term_id, self.session_id)


def parse_scope(data, errors=None):
    """Read subject_id/class_level/term_id/session_id out of a request mapping.

    Collects field errors into ``errors`` when given, otherwise raises.
    """
    own_errors = {}
    subject_id = safe_int(data.get('subject_id'))
    term_id = safe_int(data.get('term_id'))
    session_id = safe_int(data.get('session_id'))
    class_level = (data.get('class_level') or '').strip().upper()
    if not subject_id:
        own_errors['subject_id'] = 'Subject is required.'
    if not class_level:
        own_errors['class_level'] = 'Class level is required.'
    if not term_id:
        own_errors['term_id'] = 'Term is required.'
    if not session_id:
        own_errors['session_id'] = 'Session is required.'
    if own_errors:
        if errors is None:
            raise ValidationFailed('Invalid scope.', errors=own_errors)
        errors.update(own_errors)
        return None
    return Scope(subject_id, class_level, term_id, session_id)


def ensure_scope_with_cursor(c, scope):
    """Raise ValidationFailed unless every part of the scope exists and is active."""
    errors = {}
    checks = (
        ('subject_id', 'SELECT 1 FROM subjects WHERE id = ? AND is_active = 1', scope.subject_id, 'Unknown subject.'),
        ('class_level', 'SELECT 1 FROM class_levels WHERE name = ? AND is_active = 1', scope.class_level, 'Unknown class level.'),
        ('term_id', 'SELECT 1 FROM terms WHERE id = ? AND is_active = 1', scope.term_id, 'Unknown term.'),
        ('session_id', 'SELECT 1 FROM sessions WHERE id = ? AND is_active = 1', scope.session_id, 'Unknown session.'),
    )
    for field, query, value, message in checks:
        db_execute(c, query, (value,))
        if not c.fetchone():
            errors[field] = message
    if errors:
        raise ValidationFailed('Invalid subject, class, term or session.', errors=errors)


def _lookup_with_cursor(c, lookup_type):
    if lookup_type == 'terms':
        db_execute(c, 'SELECT id, name, display_order FROM terms WHERE is_active = 1 ORDER BY display_order, id')
    elif lookup_type == 'sessions':
        db_execute(c, 'SELECT id, name, is_current FROM sessions WHERE is_active = 1 ORDER BY name DESC')
    elif lookup_type == 'subjects':
        db_execute(c, 'SELECT id, name, code, description FROM subjects WHERE is_active = 1 ORDER BY name')
    else:
        db_execute(
            c,
            '''SELECT name, display_name, level_type, display_order FROM class_levels
               WHERE is_active = 1 ORDER BY display_order, name''',
        )
    rows = rows_to_dicts(c.fetchall())
    if lookup_type == 'sessions':
        for row in rows:
            row['is_current'] = bool(row['is_current'])
    return rows


def lookup(lookup_type=None):
    """Return one lookup list, or all of them keyed by type when none is given."""
    lookup_type = (lookup_type or '').strip().lower()
    if lookup_type and lookup_type not in LOOKUP_TYPES:
        raise ValidationFailed(f"Invalid lookup type. Use one of: {', '.join(LOOKUP_TYPES)}.")
    with db_connection() as conn:
        c = conn.cursor()
        if lookup_type:
            return _lookup_with_cursor(c, lookup_type)
        return {t: _lookup_with_cursor(c, t) for t in LOOKUP_TYPES}


def create_subject(name, code='', description=''):
    name = ' '.join((name or '').split())
    if not name:
        raise ValidationFailed('Subject name is required.', errors={'name': 'Required.'})
    try:
        with db_connection(commit=True) as conn:
            c = conn.cursor()
            subject_id = insert_returning_id(
                c,
                'INSERT INTO subjects (name, code, description) VALUES (?, ?, ?)',
                (name, (code or '').strip().upper() or None, (description or '').strip() or None),
            )
    except IntegrityErrors:
        raise Conflict(f'Subject "{name}" already exists.')
    logging.info("Subject created: %s", name)
    return {'id': subject_id, 'name': name}


def create_session(name, is_current=False):
    name = (name or '').strip()
    if not name:
        raise ValidationFailed('Session name is required.', errors={'name': 'Required.'})
    try:
        with db_connection(commit=True) as conn:
            c = conn.cursor()
            if is_current:
                db_execute(c, 'UPDATE sessions SET is_current = 0')
            session_id = insert_returning_id(
                c,
                'INSERT INTO sessions (name, is_current) VALUES (?, ?)',
                (name, 1 if is_current else 0),
            )
    except IntegrityErrors:
        raise Conflict(f'Session "{name}" already exists.')
    logging.info("Session created: %s (current=%s)", name, bool(is_current))
    return {'id': session_id, 'name': name, 'is_current': bool(is_current)}
