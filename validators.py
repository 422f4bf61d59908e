"""Small input coercion helpers shared by the service modules."""

import re

from db import parse_timestamp

EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


def safe_int(value, default=None):
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default


def parse_bool(value, default=None):
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    text = str(value or '').strip().lower()
    if text in ('1', 'true', 'yes', 'on'):
        return True
    if text in ('0', 'false', 'no', 'off'):
        return False
    return default


def is_valid_email(value):
    return bool(EMAIL_RE.match((value or '').strip()))


def int_in_range(data, name, low, high, errors, default=None, label=None):
    """Read data[name] as an int within [low, high], recording a message in errors."""
    label = label or name.replace('_', ' ').capitalize()
    raw = data.get(name)
    if raw is None or raw == '':
        if default is None:
            errors[name] = f'{label} is required.'
        return default
    value = safe_int(raw)
    if value is None or value < low or (high is not None and value > high):
        bound = f'between {low} and {high}' if high is not None else f'at least {low}'
        errors[name] = f'{label} must be {bound}.'
        return None
    return value


def future_timestamp(data, name, now, errors):
    """Parse an optional timestamp that must lie after ``now``."""
    raw = data.get(name)
    if raw is None or str(raw).strip() == '':
        return None
    try:
        value = parse_timestamp(raw)
    except ValueError:
        errors[name] = 'Invalid date format. Use YYYY-MM-DD HH:MM:SS.'
        return None
    if value <= now:
        errors[name] = 'Expiry date must be in the future.'
        return None
    return value
