"""
Server daemon main loop for the PlanetPlant watering system.

Runs on a single asyncio event loop:
1. **Ingestion**: paho-mqtt delivers device messages from its network thread
   into the loop; the TelemetryIngestor updates the registry and store.
2. **Automation loop**: every AUTOMATION_INTERVAL_S evaluates every plant and
   requests the waterings that are due.
3. **Monitor loop**: every MONITOR_INTERVAL_S marks silent devices offline
   and refreshes the health file.
4. **API**: the FastAPI app served by uvicorn on API_PORT.

Each loop is resilient: an exception in one iteration is logged and does not
crash the loop or affect the others. Graceful shutdown on SIGTERM/SIGINT
sets a shared asyncio.Event; running waterings are then committed, pending
store writes drained, and ``server/status`` set to offline.

CHANGELOG:
- 2026-10-18: Serve the API from the daemon process (STORY-018)
- 2026-10-18: Initial creation (STORY-016)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from server.src.health import HealthWriter
from server.src.runtime import ServerRuntime

if TYPE_CHECKING:
    from server.src.automation import WateringAutomation
    from server.src.config import ServerSettings
    from server.src.monitor import StalenessMonitor

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging(level: int = logging.INFO) -> None:
    """Configure structured JSON logging for the server daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible fingerprint of a secret for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def _masked_url(url: str) -> str:
    """Hide the password part of a connection URL."""
    if not url or "@" not in url or "://" not in url:
        return url or "disabled"
    scheme, rest = url.split("://", 1)
    creds, host = rest.rsplit("@", 1)
    user = creds.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: ServerSettings) -> None:
    """Log a config summary at startup, masking secrets."""
    logger.info(
        "Server starting with config: "
        "mqtt=%s:%s, mqtt_client_id=%s, mqtt_password_masked=%s, "
        "database_url=%s, redis_url=%s, config_db_path=%s, "
        "api=%s:%s, api_tokens_masked=%s, "
        "enable_scheduler=%s, automation_interval_s=%s, monitor_interval_s=%s, "
        "offline_threshold_s=%s, reading_stale_s=%s, ack_timeout_s=%s, timezone=%s",
        settings.mqtt_host,
        settings.mqtt_port,
        settings.mqtt_client_id,
        _masked_token(settings.mqtt_password),
        _masked_url(settings.database_url),
        _masked_url(settings.redis_url),
        settings.config_db_path,
        settings.api_host,
        settings.api_port,
        _masked_token(settings.api_tokens),
        settings.enable_scheduler,
        settings.automation_interval_s,
        settings.monitor_interval_s,
        settings.offline_threshold_s,
        settings.reading_stale_s,
        settings.ack_timeout_s,
        settings.timezone,
    )


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


async def _automation_once(
    *,
    automation: WateringAutomation,
    health: HealthWriter | None,
) -> None:
    """Execute a single automation tick.

    Catches all exceptions so that the caller's loop is never broken.
    """
    try:
        await automation.tick()
    except Exception:
        automation.stats.errors += 1
        logger.error("Automation tick error", exc_info=True)

    if health is not None:
        try:
            health.record_automation()
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)


async def _monitor_once(
    *,
    monitor: StalenessMonitor,
    runtime: ServerRuntime,
) -> None:
    """Execute a single staleness sweep and refresh the health file."""
    try:
        monitor.sweep(runtime.clock())
    except Exception:
        logger.error("Staleness sweep error", exc_info=True)

    if runtime.health is not None:
        try:
            runtime.refresh_health()
            runtime.health.record_sweep()
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _automation_loop(
    *,
    runtime: ServerRuntime,
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run automation ticks until shutdown_event is set.

    The first tick runs after one interval, giving devices time to report.
    """
    if not runtime.automation.enabled:
        logger.info("Automation disabled (ENABLE_SCHEDULER=false)")
        return
    logger.info("Automation loop started (interval=%ss)", interval_s)
    while not shutdown_event.is_set():
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)
        if shutdown_event.is_set():
            break
        await _automation_once(automation=runtime.automation, health=runtime.health)
    logger.info("Automation loop stopped")


async def _monitor_loop(
    *,
    runtime: ServerRuntime,
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run staleness sweeps until shutdown_event is set."""
    logger.info("Monitor loop started (interval=%ss)", interval_s)
    while not shutdown_event.is_set():
        await _monitor_once(monitor=runtime.monitor, runtime=runtime)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)
    logger.info("Monitor loop stopped")


# ---------------------------------------------------------------------------
# Concurrent runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run_loops(
    *,
    runtime: ServerRuntime,
    automation_interval_s: float,
    monitor_interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run the automation and monitor loops concurrently until shutdown.

    After both loops stop, running waterings are committed and pending
    store writes are drained before returning.
    """
    logger.info("Starting automation and monitor loops")

    await asyncio.gather(
        _automation_loop(
            runtime=runtime,
            interval_s=automation_interval_s,
            shutdown_event=shutdown_event,
        ),
        _monitor_loop(
            runtime=runtime,
            interval_s=monitor_interval_s,
            shutdown_event=shutdown_event,
        ),
    )

    logger.info("Committing %d running watering(s)", runtime.coordinator.running)
    await runtime.coordinator.aclose()
    await runtime.flush()
    logger.info("Shutdown complete")


async def _serve_api(server: object, shutdown_event: asyncio.Event) -> None:
    """Serve the API until it exits or shutdown is requested."""

    async def _stop_on_shutdown() -> None:
        await shutdown_event.wait()
        server.should_exit = True  # type: ignore[attr-defined]

    stopper = asyncio.create_task(_stop_on_shutdown())
    try:
        await server.serve()  # type: ignore[attr-defined]
    except Exception:
        logger.error("API server failed", exc_info=True)
    finally:
        stopper.cancel()
        shutdown_event.set()


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run loops and API.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    configure_logging()

    import uvicorn

    from server.src.api.main import create_app
    from server.src.cache.redis_client import HistoryCache
    from server.src.config import ServerSettings
    from server.src.config_store import PlantConfigStore
    from server.src.db.session import dispose_engine, init_engine
    from server.src.store import InMemoryTimeSeriesStore, SqlTimeSeriesStore
    from server.src.transport import MqttTransport

    settings = ServerSettings()
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    if settings.database_url:
        store = SqlTimeSeriesStore(init_engine(settings.database_url))
    else:
        logger.warning("DATABASE_URL not set, keeping history in memory only")
        store = InMemoryTimeSeriesStore()

    transport = MqttTransport(
        settings.mqtt_host,
        settings.mqtt_port,
        client_id=settings.mqtt_client_id,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        keepalive_s=settings.mqtt_keepalive_s,
    )

    async with PlantConfigStore(settings.config_db_path) as config_store:
        runtime = ServerRuntime.build(
            settings,
            transport=transport,
            store=store,
            config_store=config_store,
            cache=HistoryCache(settings.redis_url, ttl_s=settings.cache_ttl_s),
            health=HealthWriter(settings.health_path),
        )
        await runtime.load_plants()
        runtime.attach_transport()
        await transport.start()

        server = uvicorn.Server(
            uvicorn.Config(
                create_app(runtime),
                host=settings.api_host,
                port=settings.api_port,
                log_config=None,
            )
        )
        try:
            await asyncio.gather(
                run_loops(
                    runtime=runtime,
                    automation_interval_s=settings.automation_interval_s,
                    monitor_interval_s=settings.monitor_interval_s,
                    shutdown_event=shutdown_event,
                ),
                _serve_api(server, shutdown_event),
            )
        finally:
            await transport.stop()
            if settings.database_url:
                await dispose_engine()


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event."""
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the server daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
