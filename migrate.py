"""
Run database migrations without starting the web server.

Usage:
  python migrate.py            # upgrade to head
  python migrate.py <revision> # upgrade (or downgrade) to a specific revision

Applies the Alembic scripts under migrations/ against DATABASE_URL.
"""

import os
import sys

from alembic import command
from alembic.config import Config
from dotenv import load_dotenv

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')


def alembic_config(database_url):
    cfg = Config()
    cfg.set_main_option('script_location', MIGRATIONS_DIR)
    cfg.set_main_option('sqlalchemy.url', database_url)
    return cfg


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    load_dotenv()
    database_url = (os.environ.get('DATABASE_URL') or '').strip()
    if not database_url.startswith(('postgres://', 'postgresql://')):
        print("✗ DATABASE_URL must be a postgresql:// connection string.", file=sys.stderr)
        return 1

    target = argv[0] if argv else 'head'
    cfg = alembic_config(database_url)
    try:
        print(f"Applying database migrations (target: {target})...")
        if target.startswith('-') or target == 'base':
            command.downgrade(cfg, target)
        else:
            command.upgrade(cfg, target)
        print("✓ Migrations completed successfully.")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
