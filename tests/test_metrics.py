import json

from quotefeed.services.monitoring.metrics import FeedMetrics
from quotefeed.services.monitoring.metrics_store import read_metrics, write_metrics


def test_record_price_updates_snapshot():
    metrics = FeedMetrics(provider="polygon", symbols=["AAPL"])
    metrics.record_price("AAPL", 190.0, 1_000)
    metrics.record_price("AAPL", 191.0, 2_000)
    snap = metrics.to_dict()
    assert snap["ticks_received"] == 2
    assert snap["last_prices"] == {"AAPL": 191.0}
    assert snap["last_tick_ms"] == 2_000


def test_metrics_file_roundtrip(tmp_path):
    path = tmp_path / "nested" / "metrics.json"
    assert read_metrics(path)["connected"] is False
    write_metrics(FeedMetrics(connected=True).to_dict(), path)
    assert read_metrics(path)["connected"] is True
    assert json.loads(path.read_text(encoding="utf-8"))["reconnects"] == 0
    assert not path.with_suffix(".tmp").exists()
