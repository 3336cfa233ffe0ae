"""Tests for the typer CLI, with storage served by an httpx mock transport."""

from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest
from typer.testing import CliRunner

from designlib import cli
from designlib.config import ENV_KEY
from designlib.database import Database
from designlib.ingest.storage import StorageClient

from conftest import add_variation

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_key(monkeypatch):
    monkeypatch.setenv(ENV_KEY, "test-key")
    with patch("designlib.config.keyring.get_password", return_value=None):
        yield


@pytest.fixture
def images(tmp_path):
    files = []
    for name in ("front.png", "back.png"):
        path = tmp_path / name
        path.write_bytes(b"\x89PNG" + bytes(60))
        files.append(path)
    return files


@pytest.fixture
def mock_storage(monkeypatch):
    """Route StorageClient through a mock transport; collect PUT bodies."""
    uploads: dict[str, bytes] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            object_path = request.url.path.split("/design-variations/", 1)[1]
            return httpx.Response(200, json={"url": f"/object/upload/sign/design-variations/{object_path}?token=t"})
        object_path = request.url.path.split("/design-variations/", 1)[1]
        uploads[object_path] = request.content
        return httpx.Response(200, json={"Key": object_path})

    def _factory(config):
        return StorageClient(config, transport=httpx.MockTransport(handler))

    monkeypatch.setattr(cli, "StorageClient", _factory)
    return uploads


class TestInit:
    def test_creates_project_design_version(self, tmp_path):
        db_path = tmp_path / "d.db"
        result = runner.invoke(
            cli.app, ["init", "--db", str(db_path), "--project", "Spring", "--design", "Poster"]
        )
        assert result.exit_code == 0, result.output
        assert "version 1" in result.output
        assert db_path.exists()


class TestAddVariations:
    def test_uploads_and_links(self, seeded_db, images, mock_storage):
        result = runner.invoke(
            cli.app,
            ["add-variations", seeded_db.version_id, *map(str, images), "--db", str(seeded_db.db_path)],
        )
        assert result.exit_code == 0, result.output
        assert "2 of 2 succeeded" in result.output

        with Database(seeded_db.db_path) as db:
            rows = db.get_variations(seeded_db.version_id)
        assert [r["variation_letter"] for r in rows] == ["A", "B"]
        assert {r["file_path"] for r in rows} == set(mock_storage)

    def test_dry_run_previews_labels(self, seeded_db, images):
        add_variation(seeded_db.db_path, seeded_db.version_id, "A")
        result = runner.invoke(
            cli.app,
            ["add-variations", seeded_db.version_id, *map(str, images),
             "--db", str(seeded_db.db_path), "--dry-run"],
        )
        assert result.exit_code == 0, result.output
        assert "front.png" in result.output
        with Database(seeded_db.db_path) as db:
            assert len(db.get_variations(seeded_db.version_id)) == 1

    def test_missing_file(self, seeded_db, tmp_path):
        result = runner.invoke(
            cli.app,
            ["add-variations", seeded_db.version_id, str(tmp_path / "nope.png"),
             "--db", str(seeded_db.db_path)],
        )
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_unknown_version(self, seeded_db, images, mock_storage):
        result = runner.invoke(
            cli.app,
            ["add-variations", "missing", str(images[0]), "--db", str(seeded_db.db_path)],
        )
        assert result.exit_code == 1
        assert "Unknown version" in result.output

    def test_failed_upload_exits_nonzero(self, seeded_db, images, monkeypatch):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(403, text="denied")
            return httpx.Response(200)

        monkeypatch.setattr(
            cli, "StorageClient",
            lambda config: StorageClient(config, transport=httpx.MockTransport(handler)),
        )
        result = runner.invoke(
            cli.app,
            ["add-variations", seeded_db.version_id, str(images[0]), "--db", str(seeded_db.db_path)],
        )
        assert result.exit_code == 1
        assert "0 of 1 succeeded, 1 failed" in result.output


class TestAddVersionAndReplace:
    def test_add_version(self, seeded_db, images, mock_storage):
        result = runner.invoke(
            cli.app,
            ["add-version", seeded_db.design_id, str(images[0]), "--db", str(seeded_db.db_path)],
        )
        assert result.exit_code == 0, result.output
        assert "Version 2" in result.output

    def test_replace(self, seeded_db, images, mock_storage):
        add_variation(seeded_db.db_path, seeded_db.version_id, "A")
        result = runner.invoke(
            cli.app,
            ["replace", "existing-A", str(images[1]), "--db", str(seeded_db.db_path)],
        )
        assert result.exit_code == 0, result.output
        with Database(seeded_db.db_path) as db:
            row = db.get_variations(seeded_db.version_id)[0]
        assert row["file_path"].endswith("/existing-A/back.png")


class TestStatusAndConfig:
    def test_status_lists_variations(self, seeded_db):
        add_variation(seeded_db.db_path, seeded_db.version_id, "A")
        result = runner.invoke(
            cli.app, ["status", seeded_db.version_id, "--db", str(seeded_db.db_path)]
        )
        assert result.exit_code == 0, result.output
        assert "Pending Feedback" in result.output
        assert "unlinked" in result.output

    def test_status_missing_db(self, tmp_path):
        result = runner.invoke(cli.app, ["status", "v1", "--db", str(tmp_path / "none.db")])
        assert result.exit_code == 1

    def test_config_show_masks_key(self, tmp_path):
        result = runner.invoke(cli.app, ["config", "show", "--config", str(tmp_path / "c.json")])
        assert result.exit_code == 0, result.output
        assert "test-key" not in result.output
        assert "set" in result.output

    def test_config_set_key(self):
        with patch("designlib.config.keyring.set_password") as set_password:
            result = runner.invoke(cli.app, ["config", "set-key", "abc"])
        assert result.exit_code == 0
        set_password.assert_called_once_with("designlib-storage", "service_key", "abc")
