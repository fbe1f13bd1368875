from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

from .utils import getenv_bool, getenv_csv, getenv_float, getenv_int, getenv_str

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
DATA_DIR: Path = PROJECT_ROOT / "data"
LOG_DIR: Path = PROJECT_ROOT / "logs"

DATA_SOURCES_DIR: Path = DATA_DIR / "data_sources"
SIGNALS_DIR: Path = DATA_DIR / "signals"
DB_PATH: Path = DATA_DIR / "crawler.sqlite3"
SOURCES_CSV: Path = DATA_DIR / "sources.csv"
LOG_FILE: Path = LOG_DIR / "crawler.log"


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    env: Literal["dev", "staging", "prod"]

    # Orchestration
    max_jobs_per_source: int
    max_parallel_sources: int
    cycle_delay_seconds: float

    # Planner limits
    max_depth: int
    max_url_correction_attempts: int
    max_retry_count: int
    max_zero_job_visits: int
    max_pagination_seeds: int
    pagination_priority: int
    retry_wait_default_ms: int

    # Visit timing (jittered, ms)
    settle_min_ms: int
    settle_max_ms: int
    hydration_min_ms: int
    hydration_max_ms: int
    spa_slugs: tuple[str, ...]
    large_raw_threshold_chars: int

    # Browser
    nav_timeout_ms: int
    navigation_wait_until: Literal["load", "domcontentloaded", "networkidle", "commit"]
    user_agent: str
    proxy_server: Optional[str]
    browser_slow_mo_ms: int
    browser_args_extra: tuple[str, ...]
    page_close_timeout_ms: int
    block_heavy_resources: bool

    # Human-in-the-loop / cancellation
    human_wait_timeout_seconds: float
    stop_poll_interval_ms: int

    # Advisory (Ollama)
    advisor_enabled: bool
    ollama_base_url: str
    ollama_model: str
    advisor_timeout_seconds: float

    # HTTP capabilities
    resolver_timeout_ms: int
    validator_timeout_ms: int
    retry_max_attempts: int
    retry_initial_delay_ms: int
    retry_max_delay_ms: int
    retry_jitter_ms: int

    # Persistence / observability
    max_captures_per_source: int
    event_buffer_size: int

    # Paths
    project_root: Path
    data_dir: Path
    data_sources_dir: Path
    signals_dir: Path
    db_path: Path
    sources_csv: Path
    log_file: Path


# ---------- Loader ----------
def load_config() -> Config:
    cfg = Config(
        env=getenv_str("APP_ENV", "dev"),

        max_jobs_per_source=getenv_int("MAX_JOBS_PER_SOURCE", 5000, 1, 1_000_000),
        max_parallel_sources=getenv_int("MAX_PARALLEL_SOURCES", 3, 1, 32),
        cycle_delay_seconds=getenv_float("CYCLE_DELAY_SECONDS", 10.0, 0.0, 3600.0),

        max_depth=getenv_int("MAX_DEPTH", 999, 0, 10_000),
        max_url_correction_attempts=getenv_int("MAX_URL_CORRECTION_ATTEMPTS", 5, 0, 50),
        max_retry_count=getenv_int("MAX_RETRY_COUNT", 3, 0, 20),
        max_zero_job_visits=getenv_int("MAX_ZERO_JOB_VISITS", 15, 1, 10_000),
        max_pagination_seeds=getenv_int("MAX_PAGINATION_SEEDS", 30, 0, 30),
        pagination_priority=getenv_int("PAGINATION_PRIORITY", 75, 0, 100),
        retry_wait_default_ms=getenv_int("RETRY_WAIT_DEFAULT_MS", 10_000, 0, 600_000),

        # settle time is jittered per visit
        settle_min_ms=getenv_int("SETTLE_MIN_MS", 3500, 0, 60_000),
        settle_max_ms=getenv_int("SETTLE_MAX_MS", 7000, 0, 60_000),
        hydration_min_ms=getenv_int("HYDRATION_MIN_MS", 5000, 0, 60_000),
        hydration_max_ms=getenv_int("HYDRATION_MAX_MS", 12000, 0, 60_000),
        spa_slugs=getenv_csv("SPA_SLUGS", "wellfound"),
        large_raw_threshold_chars=getenv_int("LARGE_RAW_THRESHOLD_CHARS", 50_000, 1000, 10_000_000),

        nav_timeout_ms=getenv_int("NAV_TIMEOUT_MS", 45_000, 5000, 180_000),
        navigation_wait_until=getenv_str("NAV_WAIT_UNTIL", "domcontentloaded"),
        user_agent=getenv_str(
            "SCRAPER_USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36"
        ),
        proxy_server=getenv_str("PROXY_SERVER", "") or None,
        browser_slow_mo_ms=getenv_int("BROWSER_SLOW_MO_MS", 0, 0, 5000),
        browser_args_extra=getenv_csv("BROWSER_ARGS_EXTRA", ""),
        page_close_timeout_ms=getenv_int("PAGE_CLOSE_TIMEOUT_MS", 1500, 100, 30_000),
        block_heavy_resources=getenv_bool("BLOCK_HEAVY_RESOURCES", False),

        human_wait_timeout_seconds=getenv_float("HUMAN_WAIT_TIMEOUT_SECONDS", 300.0, 1.0, 3600.0),
        # must stay sub-second so stop requests are honoured promptly
        stop_poll_interval_ms=getenv_int("STOP_POLL_INTERVAL_MS", 250, 10, 999),

        advisor_enabled=getenv_bool("ADVISOR_ENABLED", True),
        ollama_base_url=getenv_str("OLLAMA_BASE_URL", "http://localhost:11434"),
        ollama_model=getenv_str("OLLAMA_MODEL", "qwen2.5:14b-instruct-q4_K_M"),
        advisor_timeout_seconds=getenv_float("ADVISOR_TIMEOUT_SECONDS", 30.0, 1.0, 300.0),

        resolver_timeout_ms=getenv_int("RESOLVER_TIMEOUT_MS", 8000, 1000, 60_000),
        validator_timeout_ms=getenv_int("VALIDATOR_TIMEOUT_MS", 15_000, 1000, 60_000),
        retry_max_attempts=getenv_int("RETRY_MAX_ATTEMPTS", 3, 1, 10),
        retry_initial_delay_ms=getenv_int("RETRY_INITIAL_DELAY_MS", 500, 50, 10_000),
        retry_max_delay_ms=getenv_int("RETRY_MAX_DELAY_MS", 5000, 100, 60_000),
        retry_jitter_ms=getenv_int("RETRY_JITTER_MS", 300, 0, 2000),

        max_captures_per_source=getenv_int("MAX_CAPTURES_PER_SOURCE", 30, 1, 10_000),
        event_buffer_size=getenv_int("EVENT_BUFFER_SIZE", 500, 10, 100_000),

        project_root=PROJECT_ROOT,
        data_dir=DATA_DIR,
        data_sources_dir=DATA_SOURCES_DIR,
        signals_dir=SIGNALS_DIR,
        db_path=DB_PATH,
        sources_csv=SOURCES_CSV,
        log_file=LOG_FILE,
    )

    for p in (cfg.data_dir, cfg.data_sources_dir, cfg.signals_dir, cfg.log_file.parent):
        p.mkdir(parents=True, exist_ok=True)
    return cfg
