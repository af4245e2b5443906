"""Tests for the folio command line, run against a temporary project."""

import json
from pathlib import Path

import pytest

from conftest import make_pdf
from folio.cli import main


@pytest.fixture
def project(tmp_path: Path, monkeypatch) -> Path:
    """Project root with an offline scraper configuration."""
    dot = tmp_path / ".folio"
    dot.mkdir()
    (dot / "config.yaml").write_text("scrapers: [pdf]\nchunk_size: 5\n")
    monkeypatch.setenv("FOLIO_ROOT", str(tmp_path))
    return tmp_path


def first_id(output: str) -> str:
    return output.strip().splitlines()[0].split()[0]


class TestCommands:
    def test_init(self, project, capsys):
        assert main(["init"]) == 0
        out = capsys.readouterr().out
        assert "Papers: 0" in out
        assert (project / ".folio" / "catalog.db").exists()

    def test_import_list_tag_delete(self, project, tmp_path, capsys):
        pdf = make_pdf(tmp_path / "inbox" / "scan.pdf", "Body text", title="Quantum Dots")

        assert main(["import", str(pdf)]) == 0
        out = capsys.readouterr().out
        assert "Quantum Dots" in out
        assert "1 of 1 file(s) imported" in out
        assert not pdf.exists()
        [stored] = list((project / ".folio" / "library").iterdir())
        assert stored.name.startswith("quantum-dots_")

        assert main(["list"]) == 0
        out = capsys.readouterr().out
        assert "1 paper(s)" in out
        paper_id = first_id(out)

        assert main(["tag", paper_id[:6], "--name", "reading"]) == 0
        assert "Tag 'reading' added to 1 paper(s)" in capsys.readouterr().out

        assert main(["list", "--tag", "reading"]) == 0
        assert "[reading]" in capsys.readouterr().out

        assert main(["delete", paper_id]) == 0
        assert "Deleted 1 paper(s)" in capsys.readouterr().out
        assert list((project / ".folio" / "library").iterdir()) == []

    def test_import_with_tag(self, project, tmp_path, capsys):
        pdf = make_pdf(tmp_path / "inbox" / "a.pdf", title="Photonic Lattices")
        assert main(["import", str(pdf), "--tag", "to-read"]) == 0
        assert "[to-read]" in capsys.readouterr().out

    def test_advanced_list(self, project, tmp_path, capsys):
        main(["import", str(make_pdf(tmp_path / "inbox" / "a.pdf", title="Photonic Lattices"))])
        capsys.readouterr()
        assert main(["list", "--mode", "advanced", "--search", "addTime < [1 DAYS]"]) == 0
        assert "1 paper(s)" in capsys.readouterr().out

    def test_list_json(self, project, tmp_path, capsys):
        main(["import", str(make_pdf(tmp_path / "inbox" / "a.pdf", title="Photonic Lattices")), "--tag", "x"])
        capsys.readouterr()
        assert main(["list", "--json"]) == 0
        [paper] = json.loads(capsys.readouterr().out)
        assert paper["title"] == "Photonic Lattices"
        assert paper["tags"][0]["name"] == "x"
        assert paper["add_time"].endswith("+00:00")

    def test_unknown_id(self, project, capsys):
        assert main(["delete", "nope"]) == 1
        assert "matches no paper" in capsys.readouterr().err

    def test_rescrape_force_then_not_due(self, project, tmp_path, capsys):
        main(["import", str(make_pdf(tmp_path / "inbox" / "a.pdf", title="Photonic Lattices"))])
        assert main(["rescrape", "--force"]) == 0
        assert main(["rescrape"]) == 1
        assert "Rescrape skipped" in capsys.readouterr().out

    def test_migrate_missing_source(self, project, capsys):
        assert main(["migrate"]) == 1
        assert "does not exist" in capsys.readouterr().err

    def test_invalid_config(self, project, capsys):
        (project / ".folio" / "config.yaml").write_text("chunk_size: [\n")
        assert main(["list"]) == 2
        assert "Invalid YAML" in capsys.readouterr().err

    def test_log_file_written(self, project):
        import folio.cli

        folio.cli._file_handler = None
        main(["init"])
        assert (project / ".folio" / "folio.log").exists()
