"""Teacher and student accounts, and teacher assignments."""

import logging

from auth import MIN_PASSWORD_LENGTH, Role, hash_password, public_user
from catalog import ensure_scope_with_cursor, parse_scope
from db import (
    IntegrityErrors,
    db_connection,
    db_execute,
    format_timestamp,
    insert_returning_id,
    now_str,
    rows_to_dicts,
)
from responses import Conflict, NotFound, ValidationFailed
from validators import is_valid_email, parse_bool


def _validate_account(data, partial=False, student=False):
    """Return (fields, errors) for a teacher or student payload."""
    errors = {}
    fields = {}
    if not partial:
        username = (data.get('username') or '').strip().lower()
        if not username:
            errors['username'] = 'Username is required.'
        elif len(username) < 3:
            errors['username'] = 'Username must be at least 3 characters.'
        fields['username'] = username
    if not partial or 'full_name' in data:
        full_name = ' '.join(str(data.get('full_name') or '').split())
        if not full_name:
            errors['full_name'] = 'Full name is required.'
        fields['full_name'] = full_name
    if 'email' in data or (not partial and not student):
        email = (data.get('email') or '').strip().lower()
        if email and not is_valid_email(email):
            errors['email'] = 'Invalid email format.'
        elif not email and not student:
            errors['email'] = 'Email is required.'
        fields['email'] = email or None
    if not partial or data.get('password'):
        password = data.get('password') or ''
        if len(password) < MIN_PASSWORD_LENGTH:
            errors['password'] = f'Password must be at least {MIN_PASSWORD_LENGTH} characters.'
        else:
            fields['password_hash'] = hash_password(password)
    if partial and 'is_active' in data:
        is_active = parse_bool(data.get('is_active'))
        if is_active is None:
            errors['is_active'] = 'is_active must be a boolean.'
        else:
            fields['is_active'] = 1 if is_active else 0
    if student:
        if not partial:
            matric = (data.get('matric_number') or '').strip().upper()
            if not matric:
                errors['matric_number'] = 'Matric number is required.'
            fields['matric_number'] = matric
        if not partial or 'class_level' in data:
            class_level = (data.get('class_level') or '').strip().upper()
            if not class_level:
                errors['class_level'] = 'Class level is required.'
            fields['class_level'] = class_level
    return fields, errors


def _class_level_exists_with_cursor(c, class_level):
    db_execute(c, 'SELECT 1 FROM class_levels WHERE name = ? AND is_active = 1', (class_level,))
    return c.fetchone() is not None


def _create_user(role, fields):
    try:
        with db_connection(commit=True) as conn:
            c = conn.cursor()
            if fields.get('class_level') and not _class_level_exists_with_cursor(c, fields['class_level']):
                raise ValidationFailed('Invalid class level.', errors={'class_level': 'Unknown class level.'})
            columns = list(fields) + ['role', 'is_active', 'created_at']
            values = list(fields.values()) + [role.value, 1, now_str()]
            user_id = insert_returning_id(
                c,
                f"INSERT INTO users ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                values,
            )
    except IntegrityErrors:
        raise Conflict('Username, email or matric number already exists.')
    logging.info("%s account created: %s", role.value.capitalize(), fields['username'])
    return user_id


def _update_user(user_id, role, fields):
    if not fields:
        raise ValidationFailed('No updatable fields supplied.')
    try:
        with db_connection(commit=True) as conn:
            c = conn.cursor()
            _load_user_with_cursor(c, user_id, role)
            if fields.get('class_level') and not _class_level_exists_with_cursor(c, fields['class_level']):
                raise ValidationFailed('Invalid class level.', errors={'class_level': 'Unknown class level.'})
            assignments = ', '.join(f'{name} = ?' for name in fields)
            db_execute(c, f'UPDATE users SET {assignments} WHERE id = ?', list(fields.values()) + [user_id])
    except IntegrityErrors:
        raise Conflict('Email or matric number already in use.')
    logging.info("%s account %s updated: %s", role.value.capitalize(), user_id,
                 ', '.join(k for k in fields if k != 'password_hash'))


def _load_user_with_cursor(c, user_id, role):
    db_execute(
        c,
        '''SELECT id, username, role, full_name, email, matric_number, class_level, is_active,
                  last_login_at, created_at
           FROM users WHERE id = ? AND role = ?''',
        (user_id, role.value),
    )
    row = c.fetchone()
    if not row:
        raise NotFound(f'{role.value.capitalize()} not found.')
    return row


def get_user(user_id, role):
    with db_connection() as conn:
        return public_user(_load_user_with_cursor(conn.cursor(), user_id, role))


# ---------------------------------------------------------------- teachers

def list_teachers():
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT u.id, u.username, u.full_name, u.email, u.is_active, u.last_login_at, u.created_at,
                      (SELECT COUNT(*) FROM teacher_assignments ta WHERE ta.teacher_id = u.id) AS assignment_count,
                      (SELECT COUNT(*) FROM questions q WHERE q.teacher_id = u.id) AS question_count
               FROM users u WHERE u.role = ?
               ORDER BY u.full_name, u.id''',
            (Role.TEACHER.value,),
        )
        return [public_user(r) for r in c.fetchall()]


def create_teacher(data):
    fields, errors = _validate_account(data)
    if errors:
        raise ValidationFailed('Invalid teacher details.', errors=errors)
    return get_user(_create_user(Role.TEACHER, fields), Role.TEACHER)


def update_teacher(teacher_id, data):
    fields, errors = _validate_account(data, partial=True)
    if errors:
        raise ValidationFailed('Invalid teacher details.', errors=errors)
    _update_user(teacher_id, Role.TEACHER, fields)
    return get_user(teacher_id, Role.TEACHER)


def delete_teacher(teacher_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        row = _load_user_with_cursor(c, teacher_id, Role.TEACHER)
        db_execute(c, 'SELECT COUNT(*) FROM questions WHERE teacher_id = ?', (teacher_id,))
        owned = int(c.fetchone()[0])
        if owned:
            raise Conflict(f'Cannot delete teacher: they own {owned} question(s). Deactivate the account instead.')
        db_execute(c, 'DELETE FROM teacher_assignments WHERE teacher_id = ?', (teacher_id,))
        db_execute(c, 'DELETE FROM users WHERE id = ?', (teacher_id,))
    logging.info("Teacher account deleted: %s", row['username'])


# ---------------------------------------------------------------- students

def list_students(search=None, class_level=None, limit=100, offset=0):
    clauses = ['u.role = ?']
    params = [Role.STUDENT.value]
    if search:
        clauses.append('(LOWER(u.full_name) LIKE ? OR LOWER(u.username) LIKE ? OR LOWER(u.matric_number) LIKE ?)')
        needle = f'%{search.strip().lower()}%'
        params.extend([needle, needle, needle])
    if class_level:
        clauses.append('u.class_level = ?')
        params.append(class_level.strip().upper())
    where = 'WHERE ' + ' AND '.join(clauses)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, f'SELECT COUNT(*) FROM users u {where}', params)
        total = int(c.fetchone()[0])
        db_execute(
            c,
            f'''SELECT u.id, u.username, u.full_name, u.email, u.matric_number, u.class_level,
                       u.is_active, u.last_login_at, u.created_at,
                       (SELECT COUNT(*) FROM test_results r WHERE r.student_id = u.id) AS tests_taken
                FROM users u {where}
                ORDER BY u.full_name, u.id LIMIT ? OFFSET ?''',
            params + [limit, offset],
        )
        students = [public_user(r) for r in c.fetchall()]
    return {'students': students, 'total': total, 'limit': limit, 'offset': offset}


def create_student(data):
    fields, errors = _validate_account(data, student=True)
    if errors:
        raise ValidationFailed('Invalid student details.', errors=errors)
    return get_user(_create_user(Role.STUDENT, fields), Role.STUDENT)


def update_student(student_id, data):
    fields, errors = _validate_account(data, partial=True, student=True)
    if errors:
        raise ValidationFailed('Invalid student details.', errors=errors)
    _update_user(student_id, Role.STUDENT, fields)
    return get_user(student_id, Role.STUDENT)


def delete_student(student_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        row = _load_user_with_cursor(c, student_id, Role.STUDENT)
        db_execute(c, 'SELECT COUNT(*) FROM test_results WHERE student_id = ?', (student_id,))
        if int(c.fetchone()[0]):
            raise Conflict('Cannot delete student with test results. Deactivate the account instead.')
        db_execute(c, 'SELECT COUNT(*) FROM test_codes WHERE used_by = ?', (student_id,))
        if int(c.fetchone()[0]):
            raise Conflict('Cannot delete student while a test code is claimed by them.')
        db_execute(c, 'DELETE FROM answer_mappings WHERE student_id = ?', (student_id,))
        db_execute(c, 'DELETE FROM users WHERE id = ?', (student_id,))
    logging.info("Student account deleted: %s", row['username'])


# ---------------------------------------------------------------- assignments

ASSIGNMENT_SELECT = '''SELECT ta.id, ta.teacher_id, ta.subject_id, ta.class_level, ta.term_id, ta.session_id,
                              ta.created_at, u.full_name AS teacher_name, u.username AS teacher_username,
                              s.name AS subject_name, t.name AS term_name, se.name AS session_name
                       FROM teacher_assignments ta
                       JOIN users u ON u.id = ta.teacher_id
                       JOIN subjects s ON s.id = ta.subject_id
                       JOIN terms t ON t.id = ta.term_id
                       JOIN sessions se ON se.id = ta.session_id'''


def list_assignments(teacher_id=None):
    where, params = ('WHERE ta.teacher_id = ?', (teacher_id,)) if teacher_id else ('', ())
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'{ASSIGNMENT_SELECT} {where} ORDER BY u.full_name, s.name, ta.class_level, ta.id',
            params,
        )
        assignments = rows_to_dicts(c.fetchall())
    for item in assignments:
        item['created_at'] = format_timestamp(item['created_at'])
    return assignments


def create_assignment(data, admin):
    errors = {}
    scope = parse_scope(data, errors)
    try:
        teacher_id = int(data.get('teacher_id'))
    except (TypeError, ValueError):
        teacher_id = None
        errors['teacher_id'] = 'Teacher is required.'
    if errors:
        raise ValidationFailed('Invalid assignment.', errors=errors)
    try:
        with db_connection(commit=True) as conn:
            c = conn.cursor()
            db_execute(c, 'SELECT role, is_active FROM users WHERE id = ?', (teacher_id,))
            row = c.fetchone()
            if not row or row['role'] != Role.TEACHER.value or not row['is_active']:
                raise ValidationFailed('Selected user is not an active teacher.',
                                       errors={'teacher_id': 'Not an active teacher.'})
            ensure_scope_with_cursor(c, scope)
            assignment_id = insert_returning_id(
                c,
                '''INSERT INTO teacher_assignments
                   (teacher_id, subject_id, class_level, term_id, session_id, assigned_by, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)''',
                (teacher_id,) + scope.as_params() + (admin['id'], now_str()),
            )
    except IntegrityErrors:
        raise Conflict('This teacher is already assigned to that subject, class, term and session.')
    logging.info("Assignment %s created for teacher %s by %s", assignment_id, teacher_id, admin['username'])
    return {'id': assignment_id, 'teacher_id': teacher_id, **vars(scope)}


def delete_assignment(assignment_id, admin):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'SELECT teacher_id, subject_id, class_level, term_id, session_id FROM teacher_assignments WHERE id = ?',
            (assignment_id,),
        )
        row = c.fetchone()
        if not row:
            raise NotFound('Assignment not found.')
        db_execute(
            c,
            '''SELECT COUNT(*) FROM questions
               WHERE teacher_id = ? AND subject_id = ? AND class_level = ? AND term_id = ? AND session_id = ?''',
            (row['teacher_id'], row['subject_id'], row['class_level'], row['term_id'], row['session_id']),
        )
        owned = int(c.fetchone()[0])
        if owned:
            raise Conflict(f'Cannot remove assignment: the teacher has {owned} question(s) in this scope.')
        db_execute(c, 'DELETE FROM teacher_assignments WHERE id = ?', (assignment_id,))
    logging.info("Assignment %s removed by %s", assignment_id, admin['username'])
