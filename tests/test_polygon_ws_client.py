import asyncio
import json

import pytest
from websockets.asyncio.server import serve

from quotefeed.infrastructure.polygon import polygon_ws_client
from quotefeed.infrastructure.polygon.polygon_ws_client import PolygonWSClient, PolygonWSError


async def wait_until(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class FakePolygon:
    """Minimal Polygon socket: auth handshake, records client actions."""

    def __init__(self, accept_key="secret", drop_first_connection=False):
        self.accept_key = accept_key
        self.drop_first_connection = drop_first_connection
        self.actions = []
        self.connections = []

    async def handler(self, ws):
        self.connections.append(ws)
        await ws.send(json.dumps([{"ev": "status", "status": "connected", "message": "Connected Successfully"}]))
        async for raw in ws:
            msg = json.loads(raw)
            self.actions.append(msg)
            if msg.get("action") != "auth":
                continue
            if msg.get("params") != self.accept_key:
                await ws.send(json.dumps([{"ev": "status", "status": "auth_failed", "message": "authentication failed"}]))
                continue
            await ws.send(json.dumps([{"ev": "status", "status": "auth_success", "message": "authenticated"}]))
            if self.drop_first_connection and len(self.connections) == 1:
                await ws.close()
                return

    def subscribes(self):
        return [a["params"] for a in self.actions if a.get("action") == "subscribe"]


def make_client(url, key="secret"):
    return PolygonWSClient(
        key,
        url,
        heartbeat_interval_sec=30,
        auth_timeout_sec=2,
        initial_backoff_sec=0.05,
        max_reconnect_backoff_sec=0.1,
    )


def test_start_without_key_raises():
    async def main():
        client = make_client("ws://127.0.0.1:1", key="")
        with pytest.raises(PolygonWSError):
            await client.start()

    asyncio.run(main())


def test_unknown_channel_raises():
    async def main():
        client = make_client("ws://127.0.0.1:1")
        with pytest.raises(PolygonWSError):
            await client.subscribe("Q", ["AAPL"])

    asyncio.run(main())


def test_pending_subscriptions_sent_after_auth_and_trades_dispatched():
    async def main():
        fake = FakePolygon()
        async with serve(fake.handler, "127.0.0.1", 0) as server:
            port = list(server.sockets)[0].getsockname()[1]
            client = make_client(f"ws://127.0.0.1:{port}")
            ticks, prices = [], []
            client.on_trade(ticks.append)
            client.on_price(lambda s, p, t: prices.append((s, p, t)))

            await client.subscribe_for_timeframe(["AAPL", "MSFT"], "1m")
            assert client.pending_params() == ["T.AAPL", "T.MSFT", "AM.AAPL", "AM.MSFT"]

            await client.start()
            await client.wait_until_connected(timeout=3)
            await wait_until(lambda: fake.subscribes())
            assert fake.actions[0] == {"action": "auth", "params": "secret"}
            assert fake.subscribes() == ["T.AAPL,T.MSFT,AM.AAPL,AM.MSFT"]

            await fake.connections[-1].send(json.dumps([{"ev": "T", "sym": "AAPL", "p": 190.25, "s": 5, "t": 1_000}]))
            await wait_until(lambda: ticks)
            assert ticks[0].price == 190.25
            assert prices == [("AAPL", 190.25, 1_000)]

            await client.subscribe_agg_second(["NVDA"])
            await wait_until(lambda: len(fake.subscribes()) == 2)
            assert fake.subscribes()[-1] == "A.NVDA"

            await client.unsubscribe_symbols(["MSFT"])
            await wait_until(lambda: any(a.get("action") == "unsubscribe" for a in fake.actions))
            assert "T.MSFT" not in client.pending_params()

            await client.stop()
            assert not client.is_connected

    asyncio.run(main())


def test_aggregate_frames_reach_bar_listeners():
    async def main():
        fake = FakePolygon()
        async with serve(fake.handler, "127.0.0.1", 0) as server:
            port = list(server.sockets)[0].getsockname()[1]
            client = make_client(f"ws://127.0.0.1:{port}")
            bars, prices = [], []
            client.on_bar(bars.append)
            client.on_price(lambda s, p, t: prices.append(p))
            await client.start()
            await client.wait_until_connected(timeout=3)

            frame = [{"ev": "AM", "sym": "AAPL", "o": 1, "h": 2, "l": 0.5, "c": 1.5, "v": 100, "s": 60_000, "e": 120_000}]
            await fake.connections[-1].send(json.dumps(frame))
            await wait_until(lambda: bars)
            assert bars[0].close == 1.5 and bars[0].timeframe == "1m"
            assert prices == [1.5]
            await client.stop()

    asyncio.run(main())


def test_auth_failure_never_connects():
    async def main():
        fake = FakePolygon(accept_key="other")
        async with serve(fake.handler, "127.0.0.1", 0) as server:
            port = list(server.sockets)[0].getsockname()[1]
            client = make_client(f"ws://127.0.0.1:{port}")
            await client.start()
            await wait_until(lambda: len(fake.connections) >= 2)
            assert not client.is_connected
            assert client.connection_count == 0
            await client.stop()

    asyncio.run(main())


def test_reconnects_and_replays_subscriptions():
    async def main():
        fake = FakePolygon(drop_first_connection=True)
        async with serve(fake.handler, "127.0.0.1", 0) as server:
            port = list(server.sockets)[0].getsockname()[1]
            client = make_client(f"ws://127.0.0.1:{port}")
            await client.subscribe_trades(["AAPL"])
            await client.start()

            await wait_until(lambda: client.connection_count >= 2 and client.is_connected)
            # the first connection is dropped right after auth, so any subscribe seen came from a reconnect
            await wait_until(lambda: "T.AAPL" in fake.subscribes())
            assert len(fake.connections) >= 2
            await client.stop()

    asyncio.run(main())


def test_null_aggregate_fields_do_not_drop_the_connection():
    async def main():
        fake = FakePolygon()
        async with serve(fake.handler, "127.0.0.1", 0) as server:
            port = list(server.sockets)[0].getsockname()[1]
            client = make_client(f"ws://127.0.0.1:{port}")
            bars, ticks = [], []
            client.on_bar(bars.append)
            client.on_trade(ticks.append)
            await client.start()
            await client.wait_until_connected(timeout=3)

            ws = fake.connections[-1]
            await ws.send(json.dumps([{"ev": "AM", "sym": "AAPL", "o": None, "v": None, "c": 1.0, "s": 60_000}]))
            await ws.send(json.dumps([{"ev": "T", "sym": "AAPL", "p": 2.0, "s": None, "t": 61_000}]))
            await wait_until(lambda: ticks)

            assert bars[0].open == 1.0 and bars[0].volume == 0.0
            assert ticks[0].price == 2.0
            assert client.connection_count == 1
            assert len(fake.connections) == 1
            await client.stop()

    asyncio.run(main())


@pytest.mark.parametrize(
    "rand, expected",
    [
        (0.0, [0.5, 1.0, 2.0, 3.0, 3.0]),
        (1.0, [0.65, 1.3, 2.6, 3.0, 3.0]),
    ],
)
def test_reconnect_delay_doubles_with_bounded_jitter_and_cap(monkeypatch, rand, expected):
    monkeypatch.setattr(polygon_ws_client.random, "random", lambda: rand)
    client = PolygonWSClient("secret", initial_backoff_sec=0.5, max_reconnect_backoff_sec=3.0)

    delays = [client._next_reconnect_delay() for _ in range(5)]

    assert delays == pytest.approx(expected)
