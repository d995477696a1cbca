from __future__ import annotations

import logging

from trackwell.core.config import Settings, get_settings
from trackwell.core.events import WILDCARD, InternalEvent
from trackwell.crm.persistence import SqlAlchemyStateRepository
from trackwell.crm.service import TrackerCore
from trackwell.directory import UserDirectory
from trackwell.logging import configure_logging
from trackwell.metrics import generate_metrics_payload, metrics_content_type
from trackwell.otel import setup_otel

logger = logging.getLogger("trackwell.lifecycle")


def _on_tracker_event(event: InternalEvent) -> None:
    logger.debug("tracker.event", extra={"event_type": event.name})


def create_core(directory: UserDirectory, settings: Settings | None = None) -> TrackerCore:
    """Build a ready-to-use tracker with logging, tracing and optional persistence wired in."""

    resolved = settings or get_settings()
    configure_logging(resolved.log_level)
    setup_otel(resolved.app_name.lower(), resolved.otel_enabled)

    if resolved.persistence_enabled:
        repository = SqlAlchemyStateRepository.from_url(resolved.database_url)
        core = TrackerCore.from_repository(repository, directory, settings=resolved)
    else:
        core = TrackerCore(directory, settings=resolved)

    core.bus.subscribe(WILDCARD, _on_tracker_event)
    logger.info(
        "tracker.started",
        extra={"status": f"env={resolved.app_env} persistence={resolved.persistence_enabled}"},
    )
    return core


def metrics_snapshot(settings: Settings | None = None) -> tuple[bytes, str] | None:
    resolved = settings or get_settings()
    if not resolved.metrics_enabled:
        return None
    return generate_metrics_payload(), metrics_content_type()
