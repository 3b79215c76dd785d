"""Quote cache: memory map backed by the SQLite key-value store.

Entries younger than the memory TTL are fresh; entries younger than the
storage TTL are still served (cold starts). Persistence is best effort.
Streamed prices land in memory on every tick but reach SQLite at most once
per `persist_interval_sec` per symbol; `flush` writes whatever is pending.
"""

from __future__ import annotations

import time
from typing import Callable, Dict, Iterable, Optional, Set, Tuple

from quotefeed.infrastructure.logging.logging import get_logger
from quotefeed.infrastructure.storage.sqlite_repository import SQLiteRepository
from quotefeed.models.market_models import Quote

KEY_PREFIX = "quote:"


class QuoteCache:
    def __init__(
        self,
        repo: Optional[SQLiteRepository] = None,
        *,
        memory_ttl_sec: float = 30.0,
        storage_ttl_sec: float = 600.0,
        persist_interval_sec: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._log = get_logger("quote_cache")
        self._repo = repo
        self._memory_ttl = memory_ttl_sec
        self._storage_ttl = storage_ttl_sec
        self._persist_interval = persist_interval_sec
        self._clock = clock
        self._entries: Dict[str, Tuple[Quote, float]] = {}
        self._storage_loaded = False
        self._persisted_at: Dict[str, float] = {}
        self._dirty: Set[str] = set()

    def _load_storage(self) -> None:
        if self._storage_loaded:
            return
        self._storage_loaded = True
        if self._repo is None:
            return
        try:
            for key, value, saved_at in self._repo.kv_items(KEY_PREFIX):
                symbol = key[len(KEY_PREFIX):]
                # Memory entries written before the lazy load are newer
                self._entries.setdefault(symbol, (Quote.from_dict(value), saved_at))
        except Exception as e:
            self._log.warning("quote_storage_load_failed", error=str(e))

    def _persist(self, quotes: Iterable[Quote], saved_at: float) -> None:
        if self._repo is None:
            return
        try:
            for q in quotes:
                self._repo.kv_set(KEY_PREFIX + q.symbol, q.to_dict(), saved_at=saved_at)
                self._persisted_at[q.symbol] = saved_at
                self._dirty.discard(q.symbol)
        except Exception as e:
            self._log.warning("quote_persist_failed", error=str(e))

    def save_quotes(self, quotes: Dict[str, Quote]) -> None:
        self._load_storage()
        now = self._clock()
        for q in quotes.values():
            self._entries[q.symbol] = (q, now)
        self._persist(quotes.values(), now)

    def get_cached_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        self._load_storage()
        now = self._clock()
        out: Dict[str, Quote] = {}
        for s in symbols:
            entry = self._entries.get(s)
            if entry is None:
                continue
            quote, saved_at = entry
            if now - saved_at < self._storage_ttl:
                out[s] = quote
        return out

    def is_fresh(self, symbol: str) -> bool:
        self._load_storage()
        entry = self._entries.get(symbol)
        return entry is not None and self._clock() - entry[1] < self._memory_ttl

    def record_price(self, symbol: str, price: float, ts_ms: int) -> None:
        """Price listener: a tick carries no change information, so change is zero."""
        quote = Quote(symbol=symbol, last=price, change=0.0, change_percent=0.0, updated=int(ts_ms) // 1000)
        self._load_storage()
        now = self._clock()
        self._entries[symbol] = (quote, now)
        last = self._persisted_at.get(symbol)
        if last is not None and now - last < self._persist_interval:
            self._dirty.add(symbol)
            return
        self._persist([quote], now)

    def flush(self) -> None:
        """Write streamed prices still waiting for their persist window."""
        pending = [self._entries[s] for s in sorted(self._dirty) if s in self._entries]
        self._dirty.clear()
        for quote, saved_at in pending:
            self._persist([quote], saved_at)

    def clear(self) -> None:
        self._entries.clear()
        self._dirty.clear()
        self._persisted_at.clear()
        if self._repo is not None:
            try:
                self._repo.kv_delete_prefix(KEY_PREFIX)
            except Exception as e:
                self._log.warning("quote_storage_clear_failed", error=str(e))

    def __len__(self) -> int:
        return len(self._entries)
