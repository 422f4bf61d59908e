"""
Database access for the CBT portal.

PostgreSQL (psycopg2, DictCursor) is the production backend. A sqlite:///
URL is accepted for local development and the test suite; queries are
written with ``?`` placeholders and adapted per backend.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime

import psycopg2
from psycopg2.extras import DictCursor

DATABASE_URL = ''

IntegrityErrors = (sqlite3.IntegrityError, psycopg2.IntegrityError)

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'

DEFAULT_TERMS = ('First Term', 'Second Term', 'Third Term')
DEFAULT_CLASS_LEVELS = (
    ('JSS1', 'JSS 1', 'junior'),
    ('JSS2', 'JSS 2', 'junior'),
    ('JSS3', 'JSS 3', 'junior'),
    ('SS1', 'SS 1', 'senior'),
    ('SS2', 'SS 2', 'senior'),
    ('SS3', 'SS 3', 'senior'),
)
DEFAULT_SUBJECTS = (
    ('English Language', 'ENG'),
    ('Mathematics', 'MTH'),
    ('Basic Science', 'BSC'),
    ('Civic Education', 'CVE'),
    ('Biology', 'BIO'),
    ('Chemistry', 'CHM'),
    ('Physics', 'PHY'),
    ('Economics', 'ECO'),
)


def configure(url):
    """Point the module at a database. Must be called before get_db()."""
    global DATABASE_URL
    url = (url or '').strip()
    if not url.startswith(('postgres://', 'postgresql://', 'sqlite:///')):
        raise RuntimeError(
            "Unsupported DATABASE_URL. Use a postgresql:// connection string "
            "(or sqlite:///path for local development)."
        )
    DATABASE_URL = url


def is_sqlite(url=None):
    return (url or DATABASE_URL).startswith('sqlite:///')


def _sqlite_path(url):
    return url[len('sqlite:///'):]


def _adapt_query(query):
    if is_sqlite():
        return query
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    if params is None:
        cursor.execute(_adapt_query(query))
    else:
        cursor.execute(_adapt_query(query), params)
    return cursor


def db_executemany(cursor, query, seq_of_params):
    cursor.executemany(_adapt_query(query), seq_of_params)
    return cursor


def get_db():
    """Open a connection whose rows support access by column name."""
    if not DATABASE_URL:
        raise RuntimeError("DATABASE_URL is not configured.")
    if is_sqlite():
        conn = sqlite3.connect(_sqlite_path(DATABASE_URL), timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        return conn
    return psycopg2.connect(DATABASE_URL, cursor_factory=DictCursor, connect_timeout=10)


@contextmanager
def db_connection(commit=False):
    """Yield a connection; commit on clean exit when asked, roll back on error."""
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def insert_returning_id(cursor, query, params):
    """Run an INSERT ... RETURNING id and hand back the new id."""
    db_execute(cursor, query + ' RETURNING id', params)
    # Drain the cursor so sqlite finishes the statement before commit.
    rows = cursor.fetchall()
    return rows[0][0]


def row_to_dict(row):
    if row is None:
        return None
    return {key: row[key] for key in row.keys()}


def rows_to_dicts(rows):
    return [row_to_dict(r) for r in rows]


def now_str(moment=None):
    return (moment or datetime.now()).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value):
    """Accept datetimes from psycopg2 and strings from sqlite."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip().replace('T', ' ')
    if text.endswith('Z'):
        text = text[:-1]
    for fmt in (TIMESTAMP_FORMAT, '%Y-%m-%d %H:%M:%S.%f', '%Y-%m-%d %H:%M', '%Y-%m-%d'):
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise ValueError(f"Unrecognised timestamp: {value!r}")


def format_timestamp(value):
    ts = parse_timestamp(value)
    return ts.strftime(TIMESTAMP_FORMAT) if ts else None


def schema_statements(dialect='postgresql'):
    """CREATE TABLE/INDEX statements shared by init_db() and the Alembic migration."""
    pk = 'INTEGER PRIMARY KEY AUTOINCREMENT' if dialect == 'sqlite' else 'SERIAL PRIMARY KEY'
    return [
        f'''CREATE TABLE IF NOT EXISTS users (
                id {pk},
                username TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'student',
                full_name TEXT NOT NULL DEFAULT '',
                email TEXT UNIQUE,
                matric_number TEXT UNIQUE,
                class_level TEXT,
                is_active INTEGER NOT NULL DEFAULT 1,
                last_login_at TIMESTAMP,
                created_at TIMESTAMP NOT NULL
            )''',
        f'''CREATE TABLE IF NOT EXISTS subjects (
                id {pk},
                name TEXT UNIQUE NOT NULL,
                code TEXT,
                description TEXT,
                is_active INTEGER NOT NULL DEFAULT 1
            )''',
        f'''CREATE TABLE IF NOT EXISTS terms (
                id {pk},
                name TEXT UNIQUE NOT NULL,
                display_order INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1
            )''',
        f'''CREATE TABLE IF NOT EXISTS sessions (
                id {pk},
                name TEXT UNIQUE NOT NULL,
                is_current INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1
            )''',
        f'''CREATE TABLE IF NOT EXISTS class_levels (
                id {pk},
                name TEXT UNIQUE NOT NULL,
                display_name TEXT NOT NULL,
                level_type TEXT NOT NULL DEFAULT 'junior',
                display_order INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1
            )''',
        f'''CREATE TABLE IF NOT EXISTS questions (
                id {pk},
                subject_id INTEGER NOT NULL REFERENCES subjects(id),
                class_level TEXT NOT NULL,
                term_id INTEGER NOT NULL REFERENCES terms(id),
                session_id INTEGER NOT NULL REFERENCES sessions(id),
                question_text TEXT NOT NULL,
                option_a TEXT NOT NULL,
                option_b TEXT NOT NULL,
                option_c TEXT,
                option_d TEXT,
                correct_answer TEXT NOT NULL,
                question_type TEXT NOT NULL DEFAULT 'multiple_choice',
                teacher_id INTEGER REFERENCES users(id),
                created_at TIMESTAMP NOT NULL
            )''',
        '''CREATE INDEX IF NOT EXISTS idx_questions_scope
               ON questions (subject_id, class_level, term_id, session_id)''',
        f'''CREATE TABLE IF NOT EXISTS test_code_batches (
                id {pk},
                title TEXT NOT NULL,
                subject_id INTEGER NOT NULL REFERENCES subjects(id),
                class_level TEXT NOT NULL,
                term_id INTEGER NOT NULL REFERENCES terms(id),
                session_id INTEGER NOT NULL REFERENCES sessions(id),
                test_type TEXT NOT NULL DEFAULT 'Examination',
                duration_minutes INTEGER NOT NULL,
                total_questions INTEGER NOT NULL,
                pass_score INTEGER NOT NULL DEFAULT 50,
                score_per_question INTEGER NOT NULL DEFAULT 1,
                code_count INTEGER NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 0,
                expires_at TIMESTAMP,
                created_by INTEGER REFERENCES users(id),
                created_at TIMESTAMP NOT NULL
            )''',
        f'''CREATE TABLE IF NOT EXISTS test_codes (
                id {pk},
                code TEXT UNIQUE NOT NULL,
                title TEXT NOT NULL,
                subject_id INTEGER NOT NULL REFERENCES subjects(id),
                class_level TEXT NOT NULL,
                term_id INTEGER NOT NULL REFERENCES terms(id),
                session_id INTEGER NOT NULL REFERENCES sessions(id),
                test_type TEXT NOT NULL DEFAULT 'Examination',
                duration_minutes INTEGER NOT NULL,
                total_questions INTEGER NOT NULL,
                pass_score INTEGER NOT NULL DEFAULT 50,
                score_per_question INTEGER NOT NULL DEFAULT 1,
                is_active INTEGER NOT NULL DEFAULT 1,
                is_activated INTEGER NOT NULL DEFAULT 0,
                is_used INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'active',
                used_by INTEGER REFERENCES users(id),
                used_at TIMESTAMP,
                expires_at TIMESTAMP,
                batch_id INTEGER REFERENCES test_code_batches(id),
                created_by INTEGER REFERENCES users(id),
                created_at TIMESTAMP NOT NULL
            )''',
        '''CREATE INDEX IF NOT EXISTS idx_test_codes_batch ON test_codes (batch_id)''',
        f'''CREATE TABLE IF NOT EXISTS test_results (
                id {pk},
                test_code_id INTEGER NOT NULL REFERENCES test_codes(id),
                student_id INTEGER NOT NULL REFERENCES users(id),
                subject_id INTEGER NOT NULL,
                class_level TEXT NOT NULL,
                term_id INTEGER NOT NULL,
                session_id INTEGER NOT NULL,
                score INTEGER NOT NULL,
                total_questions INTEGER NOT NULL,
                max_score INTEGER NOT NULL,
                time_taken INTEGER NOT NULL,
                submitted_at TIMESTAMP NOT NULL,
                UNIQUE (student_id, test_code_id),
                UNIQUE (student_id, subject_id, class_level, term_id, session_id)
            )''',
        f'''CREATE TABLE IF NOT EXISTS test_answers (
                id {pk},
                result_id INTEGER NOT NULL REFERENCES test_results(id) ON DELETE CASCADE,
                question_id INTEGER NOT NULL REFERENCES questions(id),
                selected_answer TEXT,
                is_correct INTEGER NOT NULL DEFAULT 0
            )''',
        '''CREATE INDEX IF NOT EXISTS idx_test_answers_question ON test_answers (question_id)''',
        f'''CREATE TABLE IF NOT EXISTS teacher_assignments (
                id {pk},
                teacher_id INTEGER NOT NULL REFERENCES users(id),
                subject_id INTEGER NOT NULL REFERENCES subjects(id),
                class_level TEXT NOT NULL,
                term_id INTEGER NOT NULL REFERENCES terms(id),
                session_id INTEGER NOT NULL REFERENCES sessions(id),
                assigned_by INTEGER REFERENCES users(id),
                created_at TIMESTAMP NOT NULL,
                UNIQUE (teacher_id, subject_id, class_level, term_id, session_id)
            )''',
        f'''CREATE TABLE IF NOT EXISTS answer_mappings (
                id {pk},
                test_code_id INTEGER NOT NULL REFERENCES test_codes(id) ON DELETE CASCADE,
                student_id INTEGER NOT NULL REFERENCES users(id),
                mapping TEXT NOT NULL,
                expires_at TIMESTAMP NOT NULL,
                UNIQUE (test_code_id, student_id)
            )''',
        f'''CREATE TABLE IF NOT EXISTS login_attempts (
                id {pk},
                endpoint TEXT NOT NULL,
                username TEXT NOT NULL,
                ip_address TEXT NOT NULL,
                failures INTEGER NOT NULL DEFAULT 0,
                first_failed_at TIMESTAMP,
                last_failed_at TIMESTAMP,
                locked_until TIMESTAMP,
                UNIQUE (endpoint, username, ip_address)
            )''',
    ] + activity_log_statements(dialect)


def activity_log_statements(dialect='postgresql'):
    """The audit trail table; rows outlive deleted users with user_id NULLed."""
    pk = 'INTEGER PRIMARY KEY AUTOINCREMENT' if dialect == 'sqlite' else 'SERIAL PRIMARY KEY'
    return [
        f'''CREATE TABLE IF NOT EXISTS activity_logs (
                id {pk},
                user_id INTEGER REFERENCES users(id) ON DELETE SET NULL,
                action TEXT NOT NULL,
                details TEXT,
                ip_address TEXT,
                user_agent TEXT,
                created_at TIMESTAMP NOT NULL
            )''',
        '''CREATE INDEX IF NOT EXISTS idx_activity_logs_created ON activity_logs (created_at)''',
        '''CREATE INDEX IF NOT EXISTS idx_activity_logs_user ON activity_logs (user_id)''',
    ]


def seed_reference_data_with_cursor(c):
    for order, name in enumerate(DEFAULT_TERMS, start=1):
        db_execute(
            c,
            '''INSERT INTO terms (name, display_order) VALUES (?, ?)
               ON CONFLICT(name) DO NOTHING''',
            (name, order),
        )
    for order, (name, display_name, level_type) in enumerate(DEFAULT_CLASS_LEVELS, start=1):
        db_execute(
            c,
            '''INSERT INTO class_levels (name, display_name, level_type, display_order)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(name) DO NOTHING''',
            (name, display_name, level_type, order),
        )
    for name, code in DEFAULT_SUBJECTS:
        db_execute(
            c,
            '''INSERT INTO subjects (name, code) VALUES (?, ?)
               ON CONFLICT(name) DO NOTHING''',
            (name, code),
        )


def init_db():
    """Create all tables if missing and seed terms, class levels and subjects."""
    dialect = 'sqlite' if is_sqlite() else 'postgresql'
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for statement in schema_statements(dialect):
            db_execute(c, statement)
        seed_reference_data_with_cursor(c)
    logging.info("Database schema ensured (%s).", dialect)
