"""
Foldwatch - Main Application Entry Point

Keeps the relay connection alive on a background thread and serves the
latest aggregate snapshot over a local read-only HTTP API.

Security Notes:
- Binds to 127.0.0.1 only (no external access)
- The private key is loaded once and never leaves memory
- Session keys are destroyed when their connection ends
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from account_client import AccountPoller
from aggregator.snapshot_store import SnapshotStore
from aggregator.state import StateAggregator
from api import snapshot
from api.dependencies import get_snapshot_store
from config import Settings, settings
from key_store import initialize_keypair
from relay_client.backoff import ReconnectPolicy
from relay_client.client import RelayClient, report_key_error
from relay_client.exceptions import KeyMaterialError
from relay_client.transport import websocket_factory
from relay_client.worker import RelayWorker

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


def build_relay_worker(config: Settings, store: SnapshotStore) -> Optional[RelayWorker]:
    """
    Load the key pair and wire up the relay client.

    Returns None (after publishing a KEY_ERROR status) when the key
    material is unusable.
    """
    try:
        keypair = initialize_keypair(config)
    except KeyMaterialError as e:
        report_key_error(store, e)
        return None

    aggregator = StateAggregator(
        keypair.machine_id,
        store,
        stale_after=config.stale_after_seconds,
        prune_after=config.prune_after_seconds,
    )
    policy = ReconnectPolicy(
        initial_delay=config.reconnect_initial_delay,
        multiplier=config.reconnect_multiplier,
        max_delay=config.reconnect_max_delay,
        jitter=config.reconnect_jitter,
        max_attempts=config.reconnect_max_attempts,
        max_elapsed=config.reconnect_max_elapsed,
    )
    client = RelayClient(
        keypair,
        aggregator,
        websocket_factory(config.relay_url, origin=config.relay_origin),
        policy=policy,
        handshake_timeout=config.handshake_timeout,
        sweep_interval=config.sweep_interval,
        on_persistent_failure=lambda status: logger.error(
            "Relay connection gave up (%s): %s",
            status.reason.value if status.reason else "unknown",
            status.message,
        ),
    )
    return RelayWorker(client)


def build_account_poller(config: Settings, store: SnapshotStore) -> Optional[AccountPoller]:
    if not config.fah_username:
        logger.info("No fah_username configured, account stats disabled")
        return None
    return AccountPoller(
        store,
        config.fah_username,
        base_url=config.stats_url,
        interval=config.account_poll_interval,
        timeout=config.http_timeout,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    logger.info("Binding to %s:%d (localhost only)", settings.host, settings.port)

    store = get_snapshot_store()

    worker = build_relay_worker(settings, store)
    if worker is not None:
        worker.start()
        logger.info("Relay worker started for %s", settings.relay_url)

    poller = build_account_poller(settings, store)
    poller_task = asyncio.create_task(poller.run()) if poller is not None else None

    yield

    logger.info("Shutting down %s", settings.app_name)

    if poller is not None:
        poller.stop()
        await poller_task

    if worker is not None:
        await asyncio.to_thread(worker.stop)


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Relay telemetry client status API",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan,
)

app.include_router(snapshot.router, prefix="/api/v1", tags=["Snapshot"])


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": settings.app_version,
        "relay_state": get_snapshot_store().latest().status.state.value,
    }


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
