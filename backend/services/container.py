"""
Service Container
Builds the pipeline once at process start.

The container is stored on `app.state.services` and handed to route
handlers through a dependency; nothing is created at import time.
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from alerts import AlertEngine, build_rules, default_rules
from config import AppConfig
from core.cache import RecordCache
from core.detector import ChangeDetector
from core.exceptions import PersistenceError
from db import MemoryOnlyStore, RecordStore, SQLiteStore
from .events import EventBus
from .poller import Poller
from .source import FileMakerClient, RecordSource


@dataclass
class PipelineServices:
    """Everything the API needs, owned for the lifetime of the process"""
    config: AppConfig
    cache: RecordCache
    detector: ChangeDetector
    engine: AlertEngine
    events: EventBus
    poller: Optional[Poller] = None
    source: Optional[RecordSource] = None

    def start(self) -> None:
        if self.poller is not None:
            self.poller.start()

    def close(self) -> None:
        if self.poller is not None:
            self.poller.stop()
        self.cache.close()


def _build_store(config: AppConfig) -> RecordStore:
    if not config.cache.persist:
        return MemoryOnlyStore()
    try:
        return SQLiteStore(config.cache.db_path)
    except PersistenceError as e:
        logger.warning(f"{e.message}; cache will run memory-only")
        return MemoryOnlyStore()


def _build_source(config: AppConfig) -> Optional[RecordSource]:
    src = config.source
    if not (src.host and src.database and src.username and src.password):
        logger.warning("FileMaker source not configured (FILEMAKER_HOST/DATABASE/USERNAME/PASSWORD); polling disabled")
        return None
    return FileMakerClient(
        host=src.host,
        database=src.database,
        username=src.username,
        password=src.password,
        layout=src.layout,
        timeout=src.timeout_sec,
        lookback_days=src.lookback_days,
        job_types=src.job_types,
    )


def build_services(config: Optional[AppConfig] = None,
                   source: Optional[RecordSource] = None) -> PipelineServices:
    """
    Wire cache → detector, alert engine, event bus and poller.

    Args:
        config: Application config (defaults read from the environment)
        source: Overrides the FileMaker client (tests, other upstreams)
    """
    config = config or AppConfig()

    cache = RecordCache(
        store=_build_store(config),
        ttl_sec=config.cache.ttl_ms / 1000.0,
        max_size=config.cache.max_size,
    )
    removed = cache.clean_old_history(config.cache.history_days)
    if removed:
        logger.info(f"Pruned {removed} change history rows older than {config.cache.history_days} days")

    try:
        rules = build_rules(config.alerts.in_progress_hours, config.alerts.rules_file)
    except (OSError, ValueError) as e:
        logger.error(f"Could not load rules file {config.alerts.rules_file}: {e}; using built-in rules")
        rules = default_rules(config.alerts.in_progress_hours)

    engine = AlertEngine(
        rules=rules,
        dedup_window_sec=config.alerts.dedup_window_ms / 1000.0,
        history_size=config.alerts.history_size,
    )
    detector = ChangeDetector(cache)
    events = EventBus()

    if source is None:
        source = _build_source(config)

    poller = None
    if source is not None and config.polling.enabled:
        poller = Poller(
            source,
            engine,
            detector,
            events=events,
            interval_sec=config.polling.interval_ms / 1000.0,
            batch_size=config.polling.batch_size,
            health_threshold=config.polling.health_threshold,
        )

    logger.info(
        f"Pipeline ready: {len(rules)} rules, cache {'durable' if cache.durable else 'memory-only'}, "
        f"polling {'configured' if poller else 'disabled'}"
    )
    return PipelineServices(
        config=config,
        cache=cache,
        detector=detector,
        engine=engine,
        events=events,
        poller=poller,
        source=source,
    )
