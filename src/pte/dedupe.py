from __future__ import annotations

from enum import Enum
from typing import Iterable

from .errors import ConfigurationError, FetchError
from .models import IdentityMarker, Marker, RawItem, TimeMarker


DEFAULT_IDENTITY_CAPACITY = 1000


class DedupeStrategy(str, Enum):
    """
    去重策略：
    - TIMEBASED：按条目时间戳，marker 为已见过的最大 epoch 毫秒
    - IDENTITY：按条目 id，marker 为有界的最近已见 id 集合

    数据源无法保证时间戳严格递增时（同一时刻可能产生多条）应使用 IDENTITY。
    """

    TIMEBASED = "timebased"
    IDENTITY = "identity"

    @classmethod
    def parse(cls, value: str) -> DedupeStrategy:
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(f"unknown dedupe strategy: {value!r}") from None


def filter_timebased(
    previous: TimeMarker | None,
    batch: Iterable[RawItem],
) -> tuple[list[RawItem], TimeMarker | None]:
    """
    时间策略：epoch_ms 严格大于 previous 的条目为新条目。

    与 previous 相等的条目视为已见并丢弃。previous 为空（首次运行）时整批都是新的。
    返回的新条目按时间升序（同一时间保持原批次顺序）；
    下一个 marker 为 batch ∪ {previous} 中的最大时间，空批次时保持不变。
    """
    items = list(batch)
    for it in items:
        if it.epoch_ms is None:
            raise FetchError(f"item without epoch_ms under timebased strategy: {it.data!r}")

    last = previous.epoch_ms if previous is not None else None
    fresh = [it for it in items if last is None or it.epoch_ms > last]
    fresh.sort(key=lambda it: it.epoch_ms)

    newest = max((it.epoch_ms for it in items), default=None)
    if newest is None or (last is not None and newest <= last):
        return fresh, previous
    return fresh, TimeMarker(epoch_ms=newest)


def filter_identity(
    previous: IdentityMarker | None,
    batch: Iterable[RawItem],
    *,
    capacity: int = DEFAULT_IDENTITY_CAPACITY,
) -> tuple[list[RawItem], IdentityMarker]:
    """
    身份策略：item_id 不在已记忆集合中的条目为新条目，输出保持批次顺序。

    新 id 追加到集合末尾；超过 capacity 后按插入顺序淘汰最旧的 id。
    """
    if capacity < 1:
        raise ConfigurationError(f"identity capacity must be >= 1, got {capacity}")

    remembered = list(previous.ids) if previous is not None else []
    seen = set(remembered)
    fresh: list[RawItem] = []
    for it in batch:
        if it.item_id is None:
            raise FetchError(f"item without item_id under identity strategy: {it.data!r}")
        if it.item_id in seen:
            continue
        seen.add(it.item_id)
        remembered.append(it.item_id)
        fresh.append(it)

    if len(remembered) > capacity:
        remembered = remembered[len(remembered) - capacity :]
    return fresh, IdentityMarker(ids=tuple(remembered))


def check_marker_kind(strategy: DedupeStrategy, previous: Marker | None) -> None:
    """marker 类型必须与策略一致（策略在实例启用期间被修改时会出现不一致）。"""
    expected = TimeMarker if strategy is DedupeStrategy.TIMEBASED else IdentityMarker
    if previous is not None and not isinstance(previous, expected):
        raise ConfigurationError(f"marker kind {previous.kind!r} does not match strategy {strategy.value!r}")


def filter_batch(
    strategy: DedupeStrategy,
    previous: Marker | None,
    batch: Iterable[RawItem],
    *,
    capacity: int = DEFAULT_IDENTITY_CAPACITY,
) -> tuple[list[RawItem], Marker | None]:
    """按策略分派到具体的过滤函数；marker 类型与策略不一致时报配置错误。"""
    check_marker_kind(strategy, previous)
    if strategy is DedupeStrategy.TIMEBASED:
        return filter_timebased(previous, batch)
    return filter_identity(previous, batch, capacity=capacity)
