"""Authentication: roles, bearer tokens, password hashing and login lockout."""

import logging
import os
from datetime import datetime, timedelta
from enum import Enum
from functools import wraps

from flask import current_app, g, request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from werkzeug.security import check_password_hash, generate_password_hash

from db import db_connection, db_execute, now_str, parse_timestamp, row_to_dict, format_timestamp
from responses import Forbidden, Unauthorized, ValidationFailed

TOKEN_SALT = 'cbt-auth-token'
DEFAULT_TOKEN_MAX_AGE = 24 * 60 * 60
LOGIN_MAX_ATTEMPTS = 4
LOGIN_LOCK_MINUTES = 15
MIN_PASSWORD_LENGTH = 6


class Role(str, Enum):
    STUDENT = 'student'
    TEACHER = 'teacher'
    ADMIN = 'admin'

    @classmethod
    def parse(cls, value):
        try:
            return cls((value or '').strip().lower())
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}") from None


def hash_password(password):
    return generate_password_hash(password)


def check_password(hashed, password):
    return check_password_hash(hashed, password)


def _serializer():
    return URLSafeTimedSerializer(current_app.secret_key, salt=TOKEN_SALT)


def issue_token(user):
    role = Role.parse(user['role'])
    return _serializer().dumps({'uid': int(user['id']), 'role': role.value})


def load_token(token):
    """Return the token payload or raise Unauthorized."""
    max_age = current_app.config.get('TOKEN_MAX_AGE', DEFAULT_TOKEN_MAX_AGE)
    try:
        return _serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        raise Unauthorized('Session expired. Please login again.')
    except BadSignature:
        raise Unauthorized('Invalid authentication token.')


def public_user(row):
    """User fields safe to send to the client."""
    user = row_to_dict(row) if not isinstance(row, dict) else dict(row)
    user.pop('password_hash', None)
    user['is_active'] = bool(user.get('is_active'))
    for key in ('last_login_at', 'created_at'):
        if key in user:
            user[key] = format_timestamp(user[key])
    return user


USER_COLUMNS = '''id, username, password_hash, role, full_name, email, matric_number,
                  class_level, is_active, last_login_at, created_at'''


def get_user_by_id(user_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, f'SELECT {USER_COLUMNS} FROM users WHERE id = ?', (user_id,))
        return row_to_dict(c.fetchone())


def find_login_user(identifier):
    """Look a user up by username, email or matric number (case-insensitive)."""
    identifier = (identifier or '').strip().lower()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'''SELECT {USER_COLUMNS} FROM users
                WHERE LOWER(username) = ? OR LOWER(email) = ?
                   OR (role = 'student' AND LOWER(matric_number) = ?)
                ORDER BY id LIMIT 1''',
            (identifier, identifier, identifier),
        )
        return row_to_dict(c.fetchone())


def get_client_ip():
    """Best-effort client IP extraction."""
    trust_proxy = os.environ.get('TRUST_PROXY_HEADERS', '').strip().lower() in ('1', 'true', 'yes')
    xff = (request.headers.get('X-Forwarded-For') or '').strip()
    if trust_proxy and xff:
        for part in xff.split(','):
            ip = (part or '').strip()
            if ip:
                return ip
    return (request.remote_addr or '').strip() or 'unknown'


def _attempt_key(endpoint, username, ip_address):
    return (
        (endpoint or '').strip().lower(),
        (username or '').strip().lower(),
        (ip_address or '').strip(),
    )


def is_login_blocked(endpoint, username, ip_address):
    """Return (blocked, wait_minutes)."""
    purge_old_login_attempts()
    key = _attempt_key(endpoint, username, ip_address)
    now = datetime.now()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT failures, locked_until FROM login_attempts
               WHERE endpoint = ? AND username = ? AND ip_address = ?
               LIMIT 1''',
            key,
        )
        row = c.fetchone()
    if not row:
        return False, 0
    locked_until = parse_timestamp(row['locked_until'])
    if locked_until and locked_until > now:
        remaining = (locked_until - now).total_seconds()
        return True, max(1, int(remaining // 60) + (1 if remaining % 60 else 0))
    return False, 0


def register_failed_login(endpoint, username, ip_address):
    """Track a failed login and lock after LOGIN_MAX_ATTEMPTS."""
    purge_old_login_attempts()
    key = _attempt_key(endpoint, username, ip_address)
    now = datetime.now()
    window_start = now - timedelta(minutes=LOGIN_LOCK_MINUTES)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT failures, last_failed_at, locked_until FROM login_attempts
               WHERE endpoint = ? AND username = ? AND ip_address = ?
               LIMIT 1''',
            key,
        )
        row = c.fetchone()
        if not row:
            db_execute(
                c,
                '''INSERT INTO login_attempts
                   (endpoint, username, ip_address, failures, first_failed_at, last_failed_at, locked_until)
                   VALUES (?, ?, ?, 1, ?, ?, NULL)''',
                key + (now_str(now), now_str(now)),
            )
            return
        last_failed_at = parse_timestamp(row['last_failed_at'])
        current_locked_until = parse_timestamp(row['locked_until'])
        if current_locked_until and current_locked_until > now:
            return
        if not last_failed_at or last_failed_at < window_start:
            failures = 1
        else:
            failures = int(row['failures'] or 0) + 1
        locked_until = None
        if failures >= LOGIN_MAX_ATTEMPTS:
            locked_until = now_str(now + timedelta(minutes=LOGIN_LOCK_MINUTES))
            logging.warning("Login locked for %s from %s after %s failures.", key[1], key[2], failures)
        db_execute(
            c,
            '''UPDATE login_attempts
               SET failures = ?,
                   first_failed_at = CASE WHEN ? = 1 THEN ? ELSE first_failed_at END,
                   last_failed_at = ?, locked_until = ?
               WHERE endpoint = ? AND username = ? AND ip_address = ?''',
            (failures, failures, now_str(now), now_str(now), locked_until) + key,
        )


def clear_failed_login(endpoint, username, ip_address):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''DELETE FROM login_attempts
               WHERE endpoint = ? AND username = ? AND ip_address = ?''',
            _attempt_key(endpoint, username, ip_address),
        )


def purge_old_login_attempts():
    """Delete stale login-attempt rows to keep table size small."""
    cutoff = now_str(datetime.now() - timedelta(days=7))
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''DELETE FROM login_attempts
               WHERE (locked_until IS NOT NULL AND locked_until < ?)
                  OR (locked_until IS NULL AND last_failed_at IS NOT NULL AND last_failed_at < ?)''',
            (cutoff, cutoff),
        )


def update_login_timestamp(user_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'UPDATE users SET last_login_at = ? WHERE id = ?', (now_str(), user_id))


def authenticate(identifier, password, role=None, ip_address='unknown'):
    """Check credentials and return (token, public user).

    ``role`` is optional; when given it must match the stored role.
    """
    identifier = (identifier or '').strip()
    if not identifier or not password:
        raise ValidationFailed('Identifier and password are required.')
    requested_role = None
    if role:
        try:
            requested_role = Role.parse(role)
        except ValueError:
            raise ValidationFailed('Invalid role.', errors={'role': 'Must be student, teacher or admin.'})

    blocked, wait_minutes = is_login_blocked('login', identifier, ip_address)
    if blocked:
        raise Unauthorized(f'Too many failed login attempts. Try again in about {wait_minutes} minute(s).')

    user = find_login_user(identifier)
    if not user or not check_password(user['password_hash'], password):
        register_failed_login('login', identifier, ip_address)
        raise Unauthorized('Invalid credentials.')
    try:
        stored_role = Role.parse(user['role'])
    except ValueError:
        logging.warning("User %s has an unknown role %r.", user['username'], user['role'])
        raise Forbidden('Invalid account role configuration. Contact system administrator.')
    if requested_role and requested_role is not stored_role:
        register_failed_login('login', identifier, ip_address)
        raise Unauthorized('Invalid credentials.')
    if not user['is_active']:
        raise Forbidden('Account is deactivated. Contact administrator.')

    update_login_timestamp(user['id'])
    clear_failed_login('login', identifier, ip_address)
    logging.info("Login: %s (%s)", user['username'], stored_role.value)
    return issue_token(user), public_user(user)


def bearer_token():
    header = (request.headers.get('Authorization') or '').strip()
    if header.lower().startswith('bearer '):
        return header[7:].strip()
    return ''


def current_user_from_request():
    token = bearer_token()
    if not token:
        raise Unauthorized()
    payload = load_token(token)
    user = get_user_by_id(payload.get('uid'))
    if not user or not user['is_active']:
        raise Unauthorized('Account not found or deactivated.')
    return user


def require_role(*roles):
    """Gate a route to the given roles; sets g.current_user and g.role."""
    allowed = frozenset(Role(r) for r in roles)

    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = current_user_from_request()
            try:
                role = Role.parse(user['role'])
            except ValueError:
                raise Forbidden('Invalid account role configuration.')
            if allowed and role not in allowed:
                raise Forbidden(f"This action requires {' or '.join(sorted(r.value for r in allowed))} access.")
            g.current_user = user
            g.role = role
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def change_password(user_id, current_password, new_password):
    if not current_password or not new_password:
        raise ValidationFailed('Current and new password are required.')
    if len(new_password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f'Password must be at least {MIN_PASSWORD_LENGTH} characters.',
                               errors={'new_password': 'Too short.'})
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT password_hash FROM users WHERE id = ?', (user_id,))
        row = c.fetchone()
        if not row or not check_password(row['password_hash'], current_password):
            raise Unauthorized('Current password is incorrect.')
        db_execute(c, 'UPDATE users SET password_hash = ? WHERE id = ?', (hash_password(new_password), user_id))
    logging.info("Password changed for user id %s", user_id)


def create_default_admin(username, password):
    """Ensure the bootstrap admin exists; never reset or escalate an existing account."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, role FROM users WHERE LOWER(username) = LOWER(?)', (username,))
        row = c.fetchone()
        if not row:
            db_execute(
                c,
                '''INSERT INTO users (username, password_hash, role, full_name, is_active, created_at)
                   VALUES (?, ?, ?, ?, 1, ?)''',
                (username, hash_password(password), Role.ADMIN.value, 'System Administrator', now_str()),
            )
            logging.info("Admin user created: %s", username)
        elif row['role'] != Role.ADMIN.value:
            logging.warning(
                "ADMIN_USERNAME '%s' exists with role '%s'; skipping automatic role escalation.",
                username,
                row['role'],
            )
