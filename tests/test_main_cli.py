from pathlib import Path

import pytest

import main
from blogapi.database import Database
from main import _parse_args


def test_default_command_invokes_serve() -> None:
    args = _parse_args([])
    assert args.command == "serve"


def test_default_command_accepts_options_without_subcommand() -> None:
    args = _parse_args(["--host", "127.0.0.1", "--port", "8080"])
    assert args.command == "serve"
    assert args.host == "127.0.0.1"
    assert args.port == 8080


def test_purge_orphans_subcommand_accepts_dry_run() -> None:
    args = _parse_args(["purge-orphans", "--dry-run", "--config", "blog.yaml"])
    assert args.command == "purge-orphans"
    assert args.dry_run is True
    assert args.config == "blog.yaml"


def test_config_may_precede_the_subcommand() -> None:
    args = _parse_args(["--config", "blog.yaml", "users"])
    assert args.command == "users"
    assert args.config == "blog.yaml"


def test_config_alone_implies_serve() -> None:
    args = _parse_args(["--config=blog.yaml", "--port", "8080"])
    assert args.command == "serve"
    assert args.config == "blog.yaml"
    assert args.port == 8080


def test_subcommand_without_config_uses_default() -> None:
    args = _parse_args(["users"])
    assert args.command == "users"
    assert args.config is None


def test_serve_refuses_to_start_without_secret(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("CLERK_WEBHOOK_SECRET", raising=False)
    monkeypatch.setenv("BLOG_DB_PATH", str(tmp_path / "blog.sqlite3"))

    with pytest.raises(SystemExit):
        main.main(["serve", "--config", str(tmp_path / "missing.yaml")])


def test_purge_orphans_command(tmp_path: Path, monkeypatch, capsys) -> None:
    db_path = tmp_path / "blog.sqlite3"
    monkeypatch.setenv("BLOG_DB_PATH", str(db_path))
    database = Database(db_path)
    database.initialize()
    database.create_post(404, title="Lost", slug="lost", content="...")

    config = str(tmp_path / "missing.yaml")
    assert main.main(["purge-orphans", "--dry-run", "--config", config]) == 0
    assert "Found 1 orphaned post(s)" in capsys.readouterr().out
    assert main.main(["purge-orphans", "--config", config]) == 0
    assert "Deleted 1 orphaned post(s)" in capsys.readouterr().out
    assert database.list_posts() == []


def test_users_command_lists_synchronised_users(tmp_path: Path, monkeypatch, capsys) -> None:
    db_path = tmp_path / "blog.sqlite3"
    monkeypatch.setenv("BLOG_DB_PATH", str(db_path))
    database = Database(db_path)
    database.initialize()
    database.upsert_user("user_abc", username="writer", email=None, image_url=None)

    assert main.main(["users", "--config", str(tmp_path / "missing.yaml")]) == 0
    output = capsys.readouterr().out
    assert "1 user(s) found" in output
    assert "user_abc" in output
