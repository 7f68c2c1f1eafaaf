"""
tests/test_cli.py -- The operator CLI in main.py against a temporary database.
"""

from __future__ import annotations

import pytest

import main
from core.config import get_settings


@pytest.fixture(autouse=True)
def temp_database(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_create_and_list_users(capsys) -> None:
    assert main.main(["create-user", "Jefe@Obra.example", "--role", "lider de obra", "--password", "Pw#12345"]) == 0
    assert main.main(["list-users"]) == 0
    out = capsys.readouterr().out
    assert "jefe@obra.example" in out
    assert "lider de obra" in out


def test_duplicate_user_fails(capsys) -> None:
    assert main.main(["create-user", "a@x.com", "--password", "Pw#12345"]) == 0
    assert main.main(["create-user", "A@x.com", "--password", "Pw#12345"]) == 1
    assert "already exists" in capsys.readouterr().out


def test_short_password_refused() -> None:
    assert main.main(["create-user", "a@x.com", "--password", "short"]) == 2


def test_deactivate_unknown_user(capsys) -> None:
    assert main.main(["deactivate", "ghost@x.com"]) == 1
    assert "No such user" in capsys.readouterr().out


def test_unlock_and_purge(capsys) -> None:
    assert main.main(["unlock", "a@x.com"]) == 0
    assert main.main(["purge"]) == 0
    assert "Purged 0" in capsys.readouterr().out


def test_no_command_prints_help(capsys) -> None:
    assert main.main([]) == 0
    assert "usage" in capsys.readouterr().out.lower()
