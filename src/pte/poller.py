from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from .dedupe import DEFAULT_IDENTITY_CAPACITY, DedupeStrategy, check_marker_kind, filter_batch
from .errors import ConfigurationError, FetchError, PollingError
from .fetchers.base import FetchContext, ItemFetcher
from .models import Marker, PollResult, TimeMarker, TriggerInstance, to_epoch_ms, utc_now
from .state.store import CursorStore


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PollEngine:
    """
    单个轮询周期的编排：
    CursorStore.load -> ItemFetcher.fetch -> DedupeStrategy -> CursorStore.save

    不跨周期缓存 marker，每个周期都从 store 重新读取，进程重启后依然正确。
    save 是周期的最后一步：fetch 失败时不会写入；save 失败时整个周期失败，
    调用方不能把本周期的条目视为已交付（宁可下个周期重复，也不丢条目）。
    """

    fetcher: ItemFetcher
    strategy: DedupeStrategy
    capacity: int = DEFAULT_IDENTITY_CAPACITY
    clock: Callable[[], datetime] = field(default=utc_now)

    def __post_init__(self) -> None:
        if not isinstance(self.strategy, DedupeStrategy):
            self.strategy = DedupeStrategy.parse(self.strategy)
        if self.capacity < 1:
            raise ConfigurationError(f"identity capacity must be >= 1, got {self.capacity}")

    def poll(self, instance: TriggerInstance, store: CursorStore, *, persist: bool = True) -> PollResult:
        """
        执行一个轮询周期。

        persist=False 时只走完整的 fetch + filter，不写回 marker（用于 test 预览）。
        """
        key = instance.instance_key()
        start_t = time.monotonic()

        previous = store.load(key)
        check_marker_kind(self.strategy, previous)
        batch = self._fetch(instance, previous)
        items, marker = filter_batch(self.strategy, previous, batch, capacity=self.capacity)

        if marker is None:
            # 首次运行且批次为空：以当前时间作为基线，避免之后每个周期都被当作首次运行
            marker = TimeMarker(epoch_ms=to_epoch_ms(self.clock()))

        if persist and (previous is None or marker != previous):
            store.save(key, marker)

        logger.debug(
            "poll done: instance_key=%s strategy=%s fetched=%d new=%d persisted=%s duration_ms=%d",
            key,
            self.strategy.value,
            len(batch),
            len(items),
            persist,
            int((time.monotonic() - start_t) * 1000),
        )
        return PollResult(items=tuple(items), marker=marker, previous=previous, fetched=len(batch))

    def _fetch(self, instance: TriggerInstance, previous: Marker | None) -> list:
        context = FetchContext(instance=instance, previous=previous, clock=self.clock)
        try:
            result = self.fetcher.fetch(context)
        except PollingError:
            raise
        except Exception as e:  # noqa: BLE001
            raise FetchError(f"{type(e).__name__}: {e}") from e
        return list(result.items)
