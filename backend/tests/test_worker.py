import asyncio
import time

from aggregator.state import StateAggregator
from relay_client.client import RelayClient
from relay_client.models import ConnectionState
from relay_client.transport import Transport
from relay_client.worker import RelayWorker


class SilentTransport(Transport):
    """Connects, then never delivers anything."""

    async def connect(self):
        pass

    async def send(self, text):
        pass

    async def recv(self):
        await asyncio.Event().wait()

    async def close(self):
        pass


def wait_for_state(client, state, timeout=2.0):
    deadline = time.monotonic() + timeout
    while client.state != state:
        assert time.monotonic() < deadline, f"client never reached {state}"
        time.sleep(0.005)


class TestRelayWorker:

    def test_runs_client_on_own_thread_and_stops(self, keypair, snapshot_store):
        aggregator = StateAggregator(keypair.machine_id, snapshot_store)
        client = RelayClient(keypair, aggregator, SilentTransport, handshake_timeout=30.0)
        worker = RelayWorker(client)

        worker.start()
        wait_for_state(client, ConnectionState.AWAITING_SESSION_KEY)
        assert snapshot_store.latest().status.state == ConnectionState.AWAITING_SESSION_KEY

        worker.stop(timeout=2.0)

        assert not worker.is_alive()
        assert worker.result.state == ConnectionState.DISCONNECTED
        assert snapshot_store.latest().status.state == ConnectionState.DISCONNECTED

    def test_stop_is_idempotent(self, keypair, snapshot_store):
        aggregator = StateAggregator(keypair.machine_id, snapshot_store)
        client = RelayClient(keypair, aggregator, SilentTransport)
        worker = RelayWorker(client)

        worker.start()
        wait_for_state(client, ConnectionState.AWAITING_SESSION_KEY)
        worker.stop(timeout=2.0)
        worker.stop(timeout=2.0)

        assert not worker.is_alive()
