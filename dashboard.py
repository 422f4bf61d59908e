"""Read-only aggregate statistics for the admin and teacher dashboards."""

from datetime import datetime, timedelta

from auth import Role
from db import db_connection, db_execute, now_str
from question_bank import question_stats


def _scalar(c, query, params=None):
    db_execute(c, query, params)
    row = c.fetchone()
    return row[0] if row and row[0] is not None else 0


def completion_rate(completed, activated):
    if not activated:
        return 0.0
    return round(completed / activated * 100, 1)


def admin_stats(now=None):
    """Counters for the admin dashboard, computed fresh on every call."""
    now = now or datetime.now()
    today_start = now_str(now.replace(hour=0, minute=0, second=0, microsecond=0))
    week_ago = now_str(now - timedelta(days=7))
    with db_connection() as conn:
        c = conn.cursor()
        stats = {
            'total_questions': int(_scalar(c, 'SELECT COUNT(*) FROM questions')),
            'total_test_codes': int(_scalar(c, 'SELECT COUNT(*) FROM test_codes')),
            'active_test_codes': int(_scalar(
                c, 'SELECT COUNT(*) FROM test_codes WHERE is_active = 1 AND is_activated = 1')),
            'used_test_codes': int(_scalar(c, 'SELECT COUNT(*) FROM test_codes WHERE is_used = 1')),
            'total_assignments': int(_scalar(c, 'SELECT COUNT(*) FROM teacher_assignments')),
            'recent_tests': int(_scalar(c, 'SELECT COUNT(*) FROM test_results WHERE submitted_at >= ?', (week_ago,))),
            'tests_today': int(_scalar(c, 'SELECT COUNT(*) FROM test_results WHERE submitted_at >= ?', (today_start,))),
        }
        stats['inactive_test_codes'] = stats['total_test_codes'] - stats['active_test_codes']

        for role, key in ((Role.TEACHER, 'total_teachers'), (Role.STUDENT, 'total_students'), (Role.ADMIN, 'total_admins')):
            stats[key] = int(_scalar(
                c, 'SELECT COUNT(*) FROM users WHERE role = ? AND is_active = 1', (role.value,)))

        average = _scalar(
            c,
            '''SELECT AVG(CAST(score AS REAL) / max_score) FROM test_results WHERE max_score > 0''',
        )
        stats['average_score'] = round(float(average) * 100, 1)

        db_execute(
            c,
            '''SELECT s.name, COUNT(q.id) AS question_count
               FROM subjects s JOIN questions q ON q.subject_id = s.id
               GROUP BY s.id, s.name
               ORDER BY question_count DESC, s.name
               LIMIT 1''',
        )
        top = c.fetchone()
        stats['most_active_subject'] = top['name'] if top else None
        stats['most_active_subject_count'] = int(top['question_count']) if top else 0

        db_execute(
            c,
            '''SELECT COUNT(tc.id) AS activated, COUNT(r.id) AS completed
               FROM test_codes tc
               LEFT JOIN test_results r ON r.test_code_id = tc.id
               WHERE tc.is_activated = 1''',
        )
        row = c.fetchone()
        stats['activated_test_codes'] = int(row['activated'] or 0)
        stats['completed_tests'] = int(row['completed'] or 0)
        stats['completion_rate'] = completion_rate(stats['completed_tests'], stats['activated_test_codes'])
    return stats


def teacher_stats(teacher_id):
    stats = question_stats(teacher_id)
    with db_connection() as conn:
        c = conn.cursor()
        stats['assignments_count'] = int(_scalar(
            c, 'SELECT COUNT(*) FROM teacher_assignments WHERE teacher_id = ?', (teacher_id,)))
    return stats
