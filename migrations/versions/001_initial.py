"""Initial schema creation for the CBT portal.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

from db import DEFAULT_CLASS_LEVELS, DEFAULT_SUBJECTS, DEFAULT_TERMS, schema_statements


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None

TABLES = (
    'activity_logs',
    'login_attempts',
    'answer_mappings',
    'teacher_assignments',
    'test_answers',
    'test_results',
    'test_codes',
    'test_code_batches',
    'questions',
    'class_levels',
    'sessions',
    'terms',
    'subjects',
    'users',
)


def upgrade() -> None:
    """Create all tables and indexes, then seed terms, class levels and subjects."""
    for statement in schema_statements('postgresql'):
        op.execute(statement)

    for order, name in enumerate(DEFAULT_TERMS, start=1):
        op.execute(
            sa.text('INSERT INTO terms (name, display_order) VALUES (:name, :display_order) '
                    'ON CONFLICT (name) DO NOTHING').bindparams(name=name, display_order=order)
        )
    for order, (name, display_name, level_type) in enumerate(DEFAULT_CLASS_LEVELS, start=1):
        op.execute(
            sa.text('INSERT INTO class_levels (name, display_name, level_type, display_order) '
                    'VALUES (:name, :display_name, :level_type, :display_order) '
                    'ON CONFLICT (name) DO NOTHING').bindparams(
                name=name, display_name=display_name, level_type=level_type, display_order=order)
        )
    for name, code in DEFAULT_SUBJECTS:
        op.execute(
            sa.text('INSERT INTO subjects (name, code) VALUES (:name, :code) '
                    'ON CONFLICT (name) DO NOTHING').bindparams(name=name, code=code)
        )


def downgrade() -> None:
    """Drop all tables (destructive)."""
    for table in TABLES:
        op.execute(f'DROP TABLE IF EXISTS {table} CASCADE')
