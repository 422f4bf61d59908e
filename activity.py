"""
Stored audit trail of user actions (logins, test completions, admin changes).

Rows are written with the request's client IP and user agent and can be
browsed by admins with ``ActivityFilters``.
"""

import logging
from dataclasses import dataclass, fields
from datetime import datetime, timedelta

from db import db_connection, db_execute, format_timestamp, now_str, parse_timestamp, rows_to_dicts
from responses import ValidationFailed
from validators import safe_int

LOGIN = 'User Login'
PASSWORD_CHANGED = 'Password Changed'
TEST_CODE_ACCESSED = 'Test Code Accessed'
TEST_COMPLETED = 'Test Completed'
TEST_CODE_RELEASED = 'Test Code Released'
TEST_CODES_GENERATED = 'Test Codes Generated'
BATCH_ACTIVATED = 'Test Code Activated (Batch)'
BATCH_DEACTIVATED = 'Test Code Deactivated (Batch)'
QUESTIONS_UPLOADED = 'Questions Uploaded'

MAX_USER_AGENT = 255


@dataclass(frozen=True)
class AuditContext:
    """Where a request came from."""
    ip_address: str = None
    user_agent: str = None


def log_activity_with_cursor(c, user_id, action, details='', audit=None, now=None):
    audit = audit or AuditContext()
    db_execute(
        c,
        '''INSERT INTO activity_logs (user_id, action, details, ip_address, user_agent, created_at)
           VALUES (?, ?, ?, ?, ?, ?)''',
        (
            user_id,
            action,
            details or '',
            audit.ip_address,
            (audit.user_agent or '')[:MAX_USER_AGENT] or None,
            now_str(now),
        ),
    )


def log_activity(user_id, action, details='', audit=None, now=None):
    with db_connection(commit=True) as conn:
        log_activity_with_cursor(conn.cursor(), user_id, action, details, audit, now)
    logging.info("Activity: user %s %s %s", user_id, action, details)


def _day(args, name):
    raw = (args.get(name) or '').strip()
    if not raw:
        return None
    try:
        value = parse_timestamp(raw)
    except ValueError:
        raise ValidationFailed(f'{name} must be a date (YYYY-MM-DD).', errors={name: 'Invalid date.'})
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass
class ActivityFilters:
    user_id: int = None
    action: str = None
    date_from: datetime = None
    date_to: datetime = None

    @classmethod
    def from_args(cls, args):
        raw_user = (args.get('user_id') or '').strip()
        user_id = safe_int(raw_user)
        if raw_user and user_id is None:
            raise ValidationFailed('user_id must be a number.', errors={'user_id': 'Must be a number.'})
        return cls(
            user_id=user_id,
            action=(args.get('action') or '').strip() or None,
            date_from=_day(args, 'date_from'),
            date_to=_day(args, 'date_to'),
        )

    def where_clause(self, alias='al'):
        """Return (sql, params); date_to includes the whole day."""
        clauses = []
        params = []
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == 'action':
                clauses.append(f'LOWER({alias}.action) LIKE ?')
                params.append(f'%{value.lower()}%')
            elif f.name == 'date_from':
                clauses.append(f'{alias}.created_at >= ?')
                params.append(now_str(value))
            elif f.name == 'date_to':
                clauses.append(f'{alias}.created_at < ?')
                params.append(now_str(value + timedelta(days=1)))
            else:
                clauses.append(f'{alias}.{f.name} = ?')
                params.append(value)
        if not clauses:
            return '', []
        return 'WHERE ' + ' AND '.join(clauses), params


def list_activity(filters, limit=50, offset=0):
    """Newest first, with the distinct action names for building filters."""
    where, params = filters.where_clause('al')
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, f'SELECT COUNT(*) FROM activity_logs al {where}', params)
        total = int(c.fetchone()[0])
        db_execute(
            c,
            f'''SELECT al.id, al.user_id, al.action, al.details, al.ip_address, al.user_agent, al.created_at,
                       u.username, u.full_name, u.role
                FROM activity_logs al
                LEFT JOIN users u ON u.id = al.user_id
                {where}
                ORDER BY al.created_at DESC, al.id DESC LIMIT ? OFFSET ?''',
            params + [limit, offset],
        )
        logs = rows_to_dicts(c.fetchall())
        db_execute(c, 'SELECT DISTINCT action FROM activity_logs ORDER BY action')
        actions = [r['action'] for r in c.fetchall()]
    for log in logs:
        log['created_at'] = format_timestamp(log['created_at'])
    return {'logs': logs, 'actions': actions, 'total': total, 'limit': limit, 'offset': offset}
