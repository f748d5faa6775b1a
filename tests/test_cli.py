"""
tests/test_cli.py -- Tests for the operator commands in main.py.

getpass is patched with a scripted answer list; each test points
--database-url at its own SQLite file.
"""

from __future__ import annotations

import getpass

import pytest

import main as cli
from auth.models import Role
from auth.store import UserStore
from conftest import STRONG_PASSWORD


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'cli.db'}"


def _answers(monkeypatch, *answers: str) -> None:
    replies = iter(answers)
    monkeypatch.setattr(getpass, "getpass", lambda prompt="": next(replies))


def _create_admin(db_url: str, email: str = "root@example.com") -> int:
    return cli.main(
        ["--database-url", db_url, "create-admin", "--email", email, "--first-name", "Ada", "--last-name", "Admin"]
    )


def test_create_admin(db_url, monkeypatch, capsys) -> None:
    _answers(monkeypatch, STRONG_PASSWORD, STRONG_PASSWORD)
    assert _create_admin(db_url) == 0
    assert "Admin created: root@example.com" in capsys.readouterr().out

    store = UserStore(db_url)
    user = store.get_by_email("root@example.com")
    store.close()
    assert user.role is Role.ADMIN
    assert user.is_email_verified
    assert user.password_hash != STRONG_PASSWORD


def test_create_admin_password_mismatch(db_url, monkeypatch, capsys) -> None:
    _answers(monkeypatch, STRONG_PASSWORD, "Different1!")
    assert _create_admin(db_url) == 1
    assert "do not match" in capsys.readouterr().out


def test_create_admin_weak_password(db_url, monkeypatch, capsys) -> None:
    _answers(monkeypatch, "weak", "weak")
    assert _create_admin(db_url) == 1
    assert "at least 8" in capsys.readouterr().out


def test_create_admin_duplicate(db_url, monkeypatch, capsys) -> None:
    _answers(monkeypatch, STRONG_PASSWORD, STRONG_PASSWORD, STRONG_PASSWORD, STRONG_PASSWORD)
    assert _create_admin(db_url) == 0
    assert _create_admin(db_url) == 1
    assert "already registered" in capsys.readouterr().out


def test_purge_tokens(db_url, capsys) -> None:
    assert cli.main(["--database-url", db_url, "purge-tokens"]) == 0
    assert "Purged 0" in capsys.readouterr().out


def test_no_command_prints_help(capsys) -> None:
    assert cli.main([]) == 1
    assert "create-admin" in capsys.readouterr().out
