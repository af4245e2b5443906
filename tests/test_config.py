"""Tests for folio.config — YAML config loading, validation, and defaults."""

from pathlib import Path

import pytest
import yaml

from folio.config import (
    _DEFAULT_CONFIG,
    FolioConfig,
    config_path,
    create_default,
    load_config,
)
from folio.errors import ConfigError


class TestCreateDefault:
    def test_creates_file(self, tmp_path):
        p = create_default(tmp_path / ".folio")
        assert p == config_path(tmp_path / ".folio")
        assert "library_dir:" in p.read_text()

    def test_does_not_overwrite(self, tmp_path):
        dot = tmp_path / ".folio"
        dot.mkdir()
        (dot / "config.yaml").write_text("chunk_size: 5\n")
        create_default(dot)
        assert (dot / "config.yaml").read_text() == "chunk_size: 5\n"

    def test_default_text_matches_dataclass(self):
        data = yaml.safe_load(_DEFAULT_CONFIG)
        defaults = FolioConfig()
        for key, value in data.items():
            assert getattr(defaults, key) == value, key


class TestLoadConfig:
    def test_missing_returns_defaults(self, tmp_path):
        cfg = load_config(tmp_path / ".folio")
        assert cfg == FolioConfig()
        assert cfg.chunk_size == 20
        assert cfg.preprint_venues == ["arXiv", "openreview"]

    def test_starter_file_loads(self, tmp_path):
        dot = tmp_path / ".folio"
        create_default(dot)
        cfg = load_config(dot)
        assert cfg.rescrape_period_days == 7
        assert len(cfg.sha256) == 64

    def test_overrides(self, tmp_path):
        dot = tmp_path / ".folio"
        dot.mkdir()
        (dot / "config.yaml").write_text(
            "chunk_size: 5\nmax_workers: 2\nscrapers: [pdf]\nrescrape_tolerance_secs: 0\n"
        )
        cfg = load_config(dot)
        assert (cfg.chunk_size, cfg.max_workers, cfg.scrapers) == (5, 2, ["pdf"])
        assert cfg.rescrape_tolerance_secs == 0

    def test_invalid_yaml(self, tmp_path):
        dot = tmp_path / ".folio"
        dot.mkdir()
        (dot / "config.yaml").write_text("chunk_size: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(dot)

    def test_not_a_mapping(self, tmp_path):
        dot = tmp_path / ".folio"
        dot.mkdir()
        (dot / "config.yaml").write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(dot)

    @pytest.mark.parametrize(
        "text, match",
        [
            ("chunk_size: lots\n", "must be a number"),
            ("max_workers: 0\n", "must be positive"),
            ("scrapers: pdf\n", "must be a list"),
        ],
    )
    def test_bad_values(self, tmp_path, text, match):
        dot = tmp_path / ".folio"
        dot.mkdir()
        (dot / "config.yaml").write_text(text)
        with pytest.raises(ConfigError, match=match):
            load_config(dot)


def test_resolve_relative_and_absolute(tmp_path):
    cfg = FolioConfig()
    assert cfg.resolve(tmp_path, "lib") == tmp_path / "lib"
    assert cfg.resolve(tmp_path, "/abs/lib") == Path("/abs/lib")
