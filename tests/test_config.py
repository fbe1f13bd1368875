import os
import pytest

import crawler.config as config_mod
from crawler.config import load_config


def _clear_env(keys):
    for k in keys:
        os.environ.pop(k, None)


@pytest.fixture(autouse=True)
def _tmp_paths(monkeypatch, tmp_path):
    # load_config creates its directories; keep them out of the project tree
    data = tmp_path / "data"
    monkeypatch.setattr(config_mod, "PROJECT_ROOT", tmp_path)
    monkeypatch.setattr(config_mod, "DATA_DIR", data)
    monkeypatch.setattr(config_mod, "DATA_SOURCES_DIR", data / "data_sources")
    monkeypatch.setattr(config_mod, "SIGNALS_DIR", data / "signals")
    monkeypatch.setattr(config_mod, "DB_PATH", data / "crawler.sqlite3")
    monkeypatch.setattr(config_mod, "SOURCES_CSV", data / "sources.csv")
    monkeypatch.setattr(config_mod, "LOG_FILE", tmp_path / "logs" / "crawler.log")
    return tmp_path


def test_load_config_defaults(monkeypatch, tmp_path):
    _clear_env([
        "MAX_JOBS_PER_SOURCE",
        "MAX_PARALLEL_SOURCES",
        "CYCLE_DELAY_SECONDS",
        "MAX_URL_CORRECTION_ATTEMPTS",
        "MAX_RETRY_COUNT",
        "MAX_PAGINATION_SEEDS",
        "PAGINATION_PRIORITY",
        "SPA_SLUGS",
        "STOP_POLL_INTERVAL_MS",
        "ADVISOR_ENABLED",
        "BLOCK_HEAVY_RESOURCES",
        "PROXY_SERVER",
    ])

    cfg = load_config()

    assert cfg.max_jobs_per_source == 5000
    assert cfg.max_parallel_sources == 3
    assert cfg.max_url_correction_attempts == 5
    assert cfg.max_retry_count == 3
    assert cfg.max_pagination_seeds == 30
    assert cfg.pagination_priority == 75
    assert cfg.spa_slugs == ("wellfound",)
    assert cfg.stop_poll_interval_ms < 1000
    assert cfg.advisor_enabled is True
    assert cfg.block_heavy_resources is False
    assert cfg.proxy_server is None

    # directories were created under the patched root
    assert cfg.data_sources_dir == tmp_path / "data" / "data_sources"
    assert cfg.data_sources_dir.is_dir()
    assert cfg.signals_dir.is_dir()
    assert cfg.log_file.parent.is_dir()


def test_env_overrides_are_clamped(monkeypatch):
    monkeypatch.setenv("MAX_PARALLEL_SOURCES", "500")
    monkeypatch.setenv("MAX_PAGINATION_SEEDS", "100")
    monkeypatch.setenv("STOP_POLL_INTERVAL_MS", "5000")
    monkeypatch.setenv("MAX_JOBS_PER_SOURCE", "0")

    cfg = load_config()
    assert cfg.max_parallel_sources == 32
    assert cfg.max_pagination_seeds == 30
    assert cfg.stop_poll_interval_ms == 999
    assert cfg.max_jobs_per_source == 1


def test_bad_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("MAX_RETRY_COUNT", "three")
    monkeypatch.setenv("CYCLE_DELAY_SECONDS", "soon")
    cfg = load_config()
    assert cfg.max_retry_count == 3
    assert cfg.cycle_delay_seconds == 10.0


def test_toggles_and_csv_lists(monkeypatch):
    monkeypatch.setenv("ADVISOR_ENABLED", "off")
    monkeypatch.setenv("BLOCK_HEAVY_RESOURCES", "yes")
    monkeypatch.setenv("SPA_SLUGS", "wellfound, ,otta ")
    monkeypatch.setenv("PROXY_SERVER", "http://127.0.0.1:3128")

    cfg = load_config()
    assert cfg.advisor_enabled is False
    assert cfg.block_heavy_resources is True
    assert cfg.spa_slugs == ("wellfound", "otta")
    assert cfg.proxy_server == "http://127.0.0.1:3128"
