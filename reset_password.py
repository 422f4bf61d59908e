"""
Reset one account's password from the command line.

Usage:
  RESET_USERNAME=jdoe RESET_PASSWORD=... python reset_password.py

Matches the username case-insensitively. Also clears any login lockout for
that username so the new password works straight away.
"""

import os

from dotenv import load_dotenv

import db
from auth import MIN_PASSWORD_LENGTH, hash_password


def reset_password(username, raw_password):
    """Return the number of accounts updated (0 or 1)."""
    if len(raw_password) < MIN_PASSWORD_LENGTH:
        raise RuntimeError(f"RESET_PASSWORD must be at least {MIN_PASSWORD_LENGTH} characters.")
    with db.db_connection(commit=True) as conn:
        c = conn.cursor()
        db.db_execute(
            c,
            'UPDATE users SET password_hash = ? WHERE LOWER(username) = LOWER(?)',
            (hash_password(raw_password), username),
        )
        updated = int(c.rowcount or 0)
        if updated:
            db.db_execute(c, 'DELETE FROM login_attempts WHERE username = LOWER(?)', (username,))
    return updated


def main():
    load_dotenv()
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    username = (os.getenv("RESET_USERNAME") or "").strip()
    raw_password = os.getenv("RESET_PASSWORD") or ""

    if not database_url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    if not username:
        raise RuntimeError("RESET_USERNAME is required.")
    if not raw_password:
        raise RuntimeError("RESET_PASSWORD is required.")

    db.configure(database_url)
    if reset_password(username, raw_password):
        print(f"Password reset successfully for {username}.")
    else:
        print(f"No user found for {username}.")


if __name__ == "__main__":
    main()
