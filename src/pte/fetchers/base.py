from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol

from ..models import Marker, RawItem, TimeMarker, TriggerInstance, utc_now


@dataclass(frozen=True, slots=True)
class FetchContext:
    """
    一次拉取的上下文：实例（含 props/auth）、上一个 marker、可注入的时钟。
    """

    instance: TriggerInstance
    previous: Marker | None
    clock: Callable[[], datetime] = field(default=utc_now)

    @property
    def last_epoch_ms(self) -> int | None:
        """时间策略下上一次见过的最大时间，供连接器缩小查询窗口。"""
        if isinstance(self.previous, TimeMarker):
            return self.previous.epoch_ms
        return None


@dataclass(frozen=True, slots=True)
class FetchResult:
    items: list[RawItem]


class ItemFetcher(Protocol):
    """
    连接器拉取接口：给定上下文返回当前批次的原始条目。

    约定：
    - 失败直接抛异常，由 PollEngine 统一包装为 FetchError
    - 不需要自行去重，可以返回与上次重叠的条目
    """

    def fetch(self, context: FetchContext) -> FetchResult: ...
