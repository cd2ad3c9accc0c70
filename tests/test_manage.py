"""
tests/test_manage.py -- Tests for the manage.py admin CLI and core/config.py.

Covers:
  - create-user registers an account from TRUSTAUTH_PASSWORD
  - create-user reports duplicates with a non-zero exit
  - unlock clears lock + counter; unknown email exits 1
  - purge-tokens runs housekeeping against the given database
  - Settings: SECRET_KEY policy and cross-field checks
"""

from __future__ import annotations

import io

import pytest

import manage
from auth.lockout import LockoutPolicy
from auth.store import UserStore, create_auth_engine
from core.config import Settings


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cli.db'}"


@pytest.fixture
def piped_password(monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO(""))
    monkeypatch.setenv("TRUSTAUTH_PASSWORD", "correct123")


def _store(db_url: str) -> UserStore:
    return UserStore(create_auth_engine(db_url), LockoutPolicy(5))


class TestCreateUser:
    def test_creates_account(self, db_url, piped_password, capsys) -> None:
        code = manage.main(["--db-url", db_url, "create-user", "--username", "ops", "--email", "Ops@X.com", "--role", "1", "--role", "2"])
        assert code == 0
        assert "Created user" in capsys.readouterr().out
        store = _store(db_url)
        user = store.get_by_email("ops@x.com")
        store.close()
        assert user.username == "ops"
        assert user.role_ids == [1, 2]

    def test_duplicate_exits_nonzero(self, db_url, piped_password, capsys) -> None:
        args = ["--db-url", db_url, "create-user", "--username", "ops", "--email", "ops@x.com", "--role", "1"]
        assert manage.main(args) == 0
        assert manage.main(args) == 1
        assert "already exists" in capsys.readouterr().out

    def test_missing_password(self, db_url, monkeypatch) -> None:
        monkeypatch.setattr("sys.stdin", io.StringIO(""))
        monkeypatch.delenv("TRUSTAUTH_PASSWORD", raising=False)
        assert manage.main(["--db-url", db_url, "create-user", "--username", "ops", "--email", "ops@x.com", "--role", "1"]) == 1


class TestUnlock:
    def test_unlocks_account(self, db_url, piped_password) -> None:
        manage.main(["--db-url", db_url, "create-user", "--username", "ops", "--email", "ops@x.com", "--role", "1"])
        store = _store(db_url)
        uid = store.get_by_email("ops@x.com").id
        for _ in range(5):
            store.record_failed_login(uid)
        assert store.get_by_id(uid).is_locked

        assert manage.main(["--db-url", db_url, "unlock", "ops@x.com"]) == 0
        user = store.get_by_id(uid)
        store.close()
        assert not user.is_locked
        assert user.failed_login_attempts == 0

    def test_unknown_email(self, db_url) -> None:
        assert manage.main(["--db-url", db_url, "unlock", "nobody@x.com"]) == 1


def test_purge_tokens(db_url, capsys) -> None:
    assert manage.main(["--db-url", db_url, "purge-tokens"]) == 0
    assert "Purged 0 spent reset tokens" in capsys.readouterr().out


class TestSettings:
    def test_production_requires_secret_key(self) -> None:
        with pytest.raises(ValueError, match="SECRET_KEY is required"):
            Settings(debug=False, secret_key="")

    def test_debug_generates_secret_key(self) -> None:
        assert len(Settings(debug=True, secret_key="").secret_key) >= 32

    def test_short_secret_key_rejected(self) -> None:
        with pytest.raises(ValueError, match="at least 32"):
            Settings(debug=True, secret_key="too-short")

    def test_refresh_must_outlive_access(self) -> None:
        with pytest.raises(ValueError, match="REFRESH_TOKEN_EXPIRE_SECONDS"):
            Settings(debug=True, access_token_expire_seconds=600, refresh_token_expire_seconds=600)
