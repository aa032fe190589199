"""Tests for scripts/bootstrap_admin.py."""

import importlib.util
from pathlib import Path

import pytest

from consoleauth.service.codec import encode
from consoleauth.service.errors import WeakPassword
from consoleauth.service.login_flow import LoginAttempt, LoginState
from consoleauth.service.password_policy import PasswordPolicy

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture(scope="module")
def bootstrap():
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestBootstrapAdmin:
    async def test_creates_account_that_must_rotate(self, bootstrap, runtime):
        result = bootstrap.bootstrap_admin("Root@Example.com", store=runtime.store)

        assert result["status"] == "created"
        assert result["email"] == "root@example.com"
        assert PasswordPolicy().violations(result["temporary_password"]) == []
        user = runtime.store.get_user(result["user_id"])
        assert user.must_change_password is True

        outcome = await runtime.login.submit(
            LoginAttempt(
                email=encode("root@example.com"),
                password=encode(result["temporary_password"]),
            )
        )
        assert outcome.state is LoginState.FORCED_PASSWORD_CHANGE

    def test_supplied_password_must_satisfy_policy(self, bootstrap, runtime):
        with pytest.raises(WeakPassword):
            bootstrap.bootstrap_admin("root@example.com", password="weak", store=runtime.store)
        assert runtime.store.get_user_by_email("root@example.com") is None

    async def test_reset_existing_account(self, bootstrap, runtime, create_admin, enable_mfa):
        user = create_admin(is_active=False)
        await enable_mfa(user.id)
        runtime.store.create_session(user.id)

        result = bootstrap.bootstrap_admin(
            user.email,
            password="Temp-Passw0rd!x",
            role="super_admin",
            unblock=True,
            reset_mfa=True,
            store=runtime.store,
        )

        assert result["status"] == "reset"
        assert result["user_id"] == user.id
        refreshed = runtime.store.get_user(user.id)
        assert refreshed.is_active is True
        assert refreshed.role == "super_admin"
        assert refreshed.must_change_password is True
        assert runtime.store.get_user_mfa_secret(user.id) is None
        assert runtime.store.revoke_user_sessions(user.id) == 0
        assert runtime.verifier.verify(user.email, "Temp-Passw0rd!x").id == user.id

    def test_dry_run_changes_nothing(self, bootstrap, runtime):
        result = bootstrap.bootstrap_admin("root@example.com", dry_run=True, store=runtime.store)
        assert result["status"] == "dry_run"
        assert runtime.store.get_user_by_email("root@example.com") is None


class TestMain:
    def test_creates_account_in_shared_root(self, bootstrap, capsys, tmp_path, monkeypatch):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "cli"))
        monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
        from consoleauth.config import reset_settings_cache
        from consoleauth.storage.memory import MemoryStore

        reset_settings_cache()
        assert bootstrap.main(["--email", "cli@example.com"]) == 0

        out = capsys.readouterr().out
        assert "Admin account created." in out
        assert "Temporary password:" in out
        store = MemoryStore(fs_root=str(tmp_path / "cli"))
        assert store.get_user_by_email("cli@example.com").must_change_password is True

    def test_missing_email(self, bootstrap, capsys, monkeypatch):
        monkeypatch.delenv("ADMIN_EMAIL", raising=False)
        assert bootstrap.main([]) == 1
        assert "--email" in capsys.readouterr().out

    def test_weak_password_reported(self, bootstrap, capsys):
        assert bootstrap.main(["--email", "cli@example.com", "--password", "weak"]) == 1
        out = capsys.readouterr().out
        assert "must be at least 12 characters" in out
