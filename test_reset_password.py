import pytest

import auth
import reset_password


def test_reset_password_updates_hash_and_clears_lockout(app_module, make_user):
    make_user("teacher", "forgetful")
    for _ in range(auth.LOGIN_MAX_ATTEMPTS):
        auth.register_failed_login("login", "forgetful", "10.0.0.1")
    assert auth.is_login_blocked("login", "forgetful", "10.0.0.1")[0] is True

    assert reset_password.reset_password("Forgetful", "brand-new-pass") == 1
    assert auth.is_login_blocked("login", "forgetful", "10.0.0.1") == (False, 0)
    user = auth.find_login_user("forgetful")
    assert auth.check_password(user["password_hash"], "brand-new-pass")


def test_reset_password_unknown_user(app_module):
    assert reset_password.reset_password("ghost", "brand-new-pass") == 0


def test_reset_password_rejects_short_password(app_module):
    with pytest.raises(RuntimeError):
        reset_password.reset_password("admin", "123")


def test_main_requires_username(monkeypatch, app_module):
    monkeypatch.delenv("RESET_USERNAME", raising=False)
    monkeypatch.setenv("RESET_PASSWORD", "whatever1")
    monkeypatch.setattr(reset_password, "load_dotenv", lambda: None)
    with pytest.raises(RuntimeError, match="RESET_USERNAME"):
        reset_password.main()


def test_main_resets_from_environment(monkeypatch, app_module, make_user, capsys):
    make_user("student", "sade")
    monkeypatch.setenv("RESET_USERNAME", "sade")
    monkeypatch.setenv("RESET_PASSWORD", "another-pass")
    monkeypatch.setattr(reset_password, "load_dotenv", lambda: None)
    reset_password.main()
    assert "Password reset successfully for sade." in capsys.readouterr().out
    assert auth.check_password(auth.find_login_user("sade")["password_hash"], "another-pass")
