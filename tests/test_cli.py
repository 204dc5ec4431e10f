"""Tests for the typer CLI."""

import io
import zipfile
from pathlib import Path

from PIL import Image
from typer.testing import CliRunner

import main
from shelfscan.classifier import LibraryType
from shelfscan.config import write_default_config

runner = CliRunner()


def _create_minimal_cbz(path: Path) -> None:
    img = Image.new("RGB", (10, 10), color="red")
    img_bytes = io.BytesIO()
    img.save(img_bytes, format="PNG")
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("page001.png", img_bytes.getvalue())


def test_parse_command_prints_fields():
    result = runner.invoke(main.app, ["parse", "Series_c012.5.cbz"])
    assert result.exit_code == 0
    assert "12.5" in result.output
    assert "Series" in result.output


def test_parse_rejects_unknown_type():
    result = runner.invoke(main.app, ["parse", "a.cbz", "--type", "podcast"])
    assert result.exit_code == 1
    assert "[ERROR]" in result.output


def test_init_writes_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.ini"
    monkeypatch.setattr("main.DEFAULT_CONFIG_PATH", config_path)
    result = runner.invoke(main.app, ["init", "--library", str(tmp_path / "lib"), "--name", "Comics", "--type", "comic"])
    assert result.exit_code == 0
    assert "[OK]" in result.output
    assert "[library:Comics]" in config_path.read_text(encoding="utf-8")


def test_scan_and_stats(tmp_path, monkeypatch):
    monkeypatch.setattr("main.setup_logging", lambda *args, **kwargs: None)
    library = tmp_path / "lib"
    _create_minimal_cbz(library / "SeriesA" / "SeriesA v01.cbz")
    config_path = write_default_config(tmp_path / "config.ini", library, "Manga", LibraryType.MANGA)

    result = runner.invoke(main.app, ["scan", "--config", str(config_path)])
    assert result.exit_code == 0, result.output

    result = runner.invoke(main.app, ["stats", "--config", str(config_path)])
    assert result.exit_code == 0
    assert "1 series" in result.output


def test_scan_unknown_library(tmp_path, monkeypatch):
    monkeypatch.setattr("main.setup_logging", lambda *args, **kwargs: None)
    config_path = write_default_config(tmp_path / "config.ini", tmp_path / "lib", "Manga")
    result = runner.invoke(main.app, ["scan", "--config", str(config_path), "--library", "Nope"])
    assert result.exit_code == 1


def test_missing_config_exits(tmp_path):
    result = runner.invoke(main.app, ["stats", "--config", str(tmp_path / "missing.ini")])
    assert result.exit_code == 1
    assert "config.ini not found" in result.output


def test_reset_requires_confirm():
    result = runner.invoke(main.app, ["reset"])
    assert result.exit_code == 1
    assert "--confirm" in result.output
