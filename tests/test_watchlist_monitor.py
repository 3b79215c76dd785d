import asyncio

from quotefeed.models.market_models import Quote
from quotefeed.services.realtime.watchlist_monitor import WatchlistMonitor


class FakeFetcher:
    def __init__(self, prices=None, delay=0.0, fail_chunks=()):
        self.prices = dict(prices or {})
        self.delay = delay
        self.fail_chunks = set(fail_chunks)
        self.calls = []

    async def safe_fetch_bulk_quotes(self, symbols):
        self.calls.append(list(symbols))
        await asyncio.sleep(self.delay)
        return {s: Quote(symbol=s, last=self.prices[s]) for s in symbols if s in self.prices}

    async def fetch_and_cache_bulk_quotes(self, symbols):
        if len(self.calls) in self.fail_chunks:
            self.calls.append(list(symbols))
            raise RuntimeError("provider down")
        return await self.safe_fetch_bulk_quotes(symbols)


class FakePolygon:
    def __init__(self, has_api_key=True, fail=False):
        self.has_api_key = has_api_key
        self.is_running = False
        self.fail = fail
        self.subscribed = []
        self.cleared = 0
        self.listeners = []

    async def start(self):
        self.is_running = True

    async def clear_all(self):
        self.cleared += 1

    async def subscribe_trades(self, symbols):
        if self.fail:
            raise RuntimeError("socket down")
        self.subscribed.append(("T", list(symbols)))

    async def subscribe_agg_second(self, symbols):
        self.subscribed.append(("A", list(symbols)))

    def on_price(self, listener):
        self.listeners.append(listener)
        return lambda: self.listeners.remove(listener)

    def emit(self, symbol, price):
        for listener in list(self.listeners):
            listener(symbol, price, 0)


def test_preload_in_chunks_skips_failed_chunk():
    fetcher = FakeFetcher({s: 1.0 for s in "ABCDE"}, fail_chunks={1})
    monitor = WatchlistMonitor(fetcher, chunk_size=2, chunk_delay_sec=0)
    asyncio.run(monitor.preload(list("ABCDE")))
    assert fetcher.calls == [["A", "B"], ["C", "D"], ["E"]]
    assert monitor.get_last_prices() == {"A": 1.0, "B": 1.0, "E": 1.0}


def test_realtime_notifies_throttled_on_meaningful_moves():
    async def main():
        polygon = FakePolygon()
        monitor = WatchlistMonitor(FakeFetcher(), polygon, throttle_sec=0.05)
        calls = []
        await monitor.start(["AAPL", "MSFT"], lambda: calls.append(1))
        assert monitor.is_realtime_active()
        assert polygon.subscribed == [("T", ["AAPL", "MSFT"]), ("A", ["AAPL", "MSFT"])]

        polygon.emit("AAPL", 100.0)
        polygon.emit("AAPL", 100.5)
        polygon.emit("NVDA", 5.0)
        await asyncio.sleep(0.12)
        after_first = len(calls)

        polygon.emit("AAPL", 100.50001)
        await asyncio.sleep(0.12)
        prices = monitor.get_last_prices()
        await monitor.stop()
        return after_first, len(calls), prices, monitor, polygon

    after_first, total, prices, monitor, polygon = asyncio.run(main())
    assert after_first == 1
    assert total == 1
    assert prices == {"AAPL": 100.5}
    assert not monitor.is_realtime_active()
    assert polygon.listeners == []


def test_realtime_failure_does_not_poll():
    async def main():
        fetcher = FakeFetcher({"AAPL": 1.0})
        monitor = WatchlistMonitor(fetcher, FakePolygon(fail=True), poll_interval_sec=0.01)
        await monitor.start(["AAPL"])
        await asyncio.sleep(0.05)
        active = monitor.is_realtime_active()
        await monitor.stop()
        return active, fetcher.calls

    active, calls = asyncio.run(main())
    assert not active
    assert calls == []


def test_polling_without_polygon():
    async def main():
        fetcher = FakeFetcher({"AAPL": 1.0})
        monitor = WatchlistMonitor(fetcher, FakePolygon(has_api_key=False), poll_interval_sec=0.01)
        calls = []
        await monitor.start(["AAPL"], lambda: calls.append(1))
        await asyncio.sleep(0.1)
        await monitor.stop()
        return calls, fetcher.calls

    calls, fetches = asyncio.run(main())
    assert len(fetches) >= 2
    assert calls == [1]


def test_polls_never_overlap():
    async def main():
        fetcher = FakeFetcher({"AAPL": 1.0}, delay=0.05)
        monitor = WatchlistMonitor(fetcher)
        monitor._watchlist = ["AAPL"]
        return await asyncio.gather(monitor.poll_once(), monitor.poll_once()), fetcher.calls

    results, calls = asyncio.run(main())
    assert sorted(results) == [False, True]
    assert len(calls) == 1


def test_callback_errors_are_logged_not_raised():
    monitor = WatchlistMonitor(FakeFetcher())
    seen = []

    def boom():
        raise RuntimeError("ui gone")

    monitor.add_callback(boom)
    monitor.add_callback(lambda: seen.append(1))
    monitor.add_callback(boom)
    monitor._notify()
    assert seen == [1]
    monitor.remove_callback(boom)
    monitor._notify()
    assert seen == [1, 1]
