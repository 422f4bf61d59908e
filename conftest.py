import importlib
import sys

import pytest

import auth
import catalog
import code_issuance
import db

ADMIN_PASSWORD = "supersecurepassword"


@pytest.fixture
def app_module(monkeypatch, tmp_path):
    monkeypatch.setenv("SECRET_KEY", "x" * 40)
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cbt.db'}")
    monkeypatch.setenv("ADMIN_USERNAME", "admin")
    monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setenv("RUN_STARTUP_DDL", "1")
    monkeypatch.setenv("RUN_STARTUP_BOOTSTRAP", "1")
    for name in ("ALLOW_INSECURE_DEFAULTS", "APP_DEBUG", "LOG_FILE", "CORS_ALLOWED_ORIGINS",
                 "TRUST_PROXY_HEADERS", "TOKEN_MAX_AGE"):
        monkeypatch.delenv(name, raising=False)

    if "cbt_portal" in sys.modules:
        mod = importlib.reload(sys.modules["cbt_portal"])
    else:
        mod = importlib.import_module("cbt_portal")
    mod.app.config["TESTING"] = True
    return mod


@pytest.fixture
def client(app_module):
    return app_module.app.test_client()


@pytest.fixture
def admin(app_module):
    return auth.find_login_user("admin")


@pytest.fixture
def make_user(app_module):
    counter = {"n": 0}

    def _make_user(role, username=None, password="password123", **extra):
        counter["n"] += 1
        username = username or f"{role}{counter['n']}"
        with db.db_connection(commit=True) as conn:
            c = conn.cursor()
            user_id = db.insert_returning_id(
                c,
                '''INSERT INTO users
                   (username, password_hash, role, full_name, email, matric_number, class_level, is_active, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                (
                    username,
                    auth.hash_password(password),
                    role,
                    extra.get("full_name", username.title()),
                    extra.get("email"),
                    extra.get("matric_number"),
                    extra.get("class_level"),
                    extra.get("is_active", 1),
                    db.now_str(),
                ),
            )
        return auth.get_user_by_id(user_id)

    return _make_user


@pytest.fixture
def headers_for(app_module):
    def _headers(user):
        with app_module.app.app_context():
            token = auth.issue_token(user)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture
def scope(app_module):
    session = catalog.create_session("2025/2026", is_current=True)
    with db.db_connection() as conn:
        c = conn.cursor()
        db.db_execute(c, "SELECT id FROM subjects WHERE name = ?", ("Mathematics",))
        subject_id = c.fetchone()["id"]
        db.db_execute(c, "SELECT id FROM terms WHERE name = ?", ("First Term",))
        term_id = c.fetchone()["id"]
    return catalog.Scope(subject_id, "JSS1", term_id, session["id"])


@pytest.fixture
def add_questions(app_module):
    def _add(scope, count, question_type="multiple_choice", teacher_id=None):
        labels = ("A", "B") if question_type == "true_false" else ("A", "B", "C", "D")
        ids = []
        with db.db_connection(commit=True) as conn:
            c = conn.cursor()
            for i in range(count):
                ids.append(db.insert_returning_id(
                    c,
                    '''INSERT INTO questions
                       (subject_id, class_level, term_id, session_id, question_text, option_a, option_b,
                        option_c, option_d, correct_answer, question_type, teacher_id, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
                    scope.as_params() + (
                        f"Question {i + 1}?",
                        f"a{i}",
                        f"b{i}",
                        None if question_type == "true_false" else f"c{i}",
                        None if question_type == "true_false" else f"d{i}",
                        labels[i % len(labels)],
                        question_type,
                        teacher_id,
                        db.now_str(),
                    ),
                ))
        return ids

    return _add


@pytest.fixture
def scope_payload():
    def _payload(scope, **extra):
        data = {
            "subject_id": scope.subject_id,
            "class_level": scope.class_level,
            "term_id": scope.term_id,
            "session_id": scope.session_id,
        }
        data.update(extra)
        return data

    return _payload


@pytest.fixture
def make_code(admin, scope_payload):
    def _make_code(scope, activated=True, **settings):
        data = scope_payload(
            scope,
            title=settings.pop("title", "Maths CA"),
            duration_minutes=settings.pop("duration_minutes", 30),
            total_questions=settings.pop("total_questions", 5),
            is_activated=activated,
            **settings,
        )
        return code_issuance.create_test_code(data, admin)

    return _make_code
