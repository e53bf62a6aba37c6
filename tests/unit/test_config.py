"""Settings tree: environment overrides and fallbacks."""

from __future__ import annotations

from pathlib import Path

from folio.config import Config


def test_environment_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("FOLIO_LOCALE", "vi")
    monkeypatch.setenv("FOLIO_CODE_PREFIX", "JNL")
    monkeypatch.setenv("FOLIO_DATA", str(tmp_path))
    monkeypatch.setenv("FOLIO_QUORUM", "3")
    monkeypatch.setenv("FOLIO_RESERVE_CAPACITY", "off")

    cfg = Config()
    assert cfg.locale == "vi"
    assert cfg.code_prefix == "JNL"
    assert cfg.db_path == Path(tmp_path) / "folio.db"
    assert cfg.workflow.quorum == 3
    assert cfg.workflow.reserve_capacity_on_invite is False


def test_malformed_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("FOLIO_QUORUM", "two")
    monkeypatch.setenv("FOLIO_MAX_CONCURRENT_REVIEWS", "")
    cfg = Config()
    assert cfg.workflow.quorum == 2
    assert cfg.workflow.default_max_concurrent_reviews == 5


def test_top_level_fields():
    assert set(Config.model_fields) == {
        "locale", "code_prefix", "data_dir", "db_filename", "workflow", "deadlines", "security", "server",
    }
