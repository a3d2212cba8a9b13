from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from .errors import ConfigurationError, InvalidStateError
from .models import PollResult, RawItem, TriggerInstance
from .poller import PollEngine
from .state.memory_store import MemoryCursorStore
from .state.store import CursorStore


logger = logging.getLogger(__name__)

DEFAULT_TEST_SAMPLE_SIZE = 5


class _InstanceLocks:
    """
    按 instance_key 分配的互斥锁；不同实例之间互不阻塞。

    锁按引用计数登记：最后一个持有者或等待者离开后即移除该条目，
    注册表大小只与当前正在执行的实例数相关。
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._guard:
                _, users = self._locks[key]
                if users == 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class LifecycleManager:
    """
    触发器实例的生命周期：test / on_enable / on_disable / run。

    状态由 CursorStore 推导：store 中存在该实例的 marker 即为 enabled，否则为 absent。
    同一实例的 on_enable / run / on_disable 通过实例级互斥锁串行执行，防止两个并发 run
    读到同一个旧 marker 后各自推进，导致落败方拉取到的条目被静默丢弃。
    """

    def __init__(self, store: CursorStore, *, test_sample_size: int = DEFAULT_TEST_SAMPLE_SIZE) -> None:
        if test_sample_size < 1:
            raise ConfigurationError(f"test_sample_size must be >= 1, got {test_sample_size}")
        self.store = store
        self.test_sample_size = test_sample_size
        self._locks = _InstanceLocks()

    @contextmanager
    def _serialized(self, instance: TriggerInstance) -> Iterator[str]:
        key = instance.instance_key()
        with self._locks.hold(key):
            yield key

    def is_enabled(self, instance: TriggerInstance) -> bool:
        return self.store.load(instance.instance_key()) is not None

    def on_enable(self, instance: TriggerInstance, engine: PollEngine) -> PollResult:
        """
        启用实例：执行一次引导拉取，只建立基线 marker，不输出历史积压。

        对已启用的实例再次调用会用新的基线整体替换旧 marker；引导拉取失败时旧 marker 保持不变。
        """
        with self._serialized(instance) as key:
            result = engine.poll(instance, MemoryCursorStore(), persist=False)
            self.store.save(key, result.marker)
            logger.info(
                "trigger enabled: instance_key=%s strategy=%s baseline_items=%d",
                key,
                engine.strategy.value,
                result.fetched,
            )
            return PollResult(items=(), marker=result.marker, previous=None, fetched=result.fetched)

    def on_disable(self, instance: TriggerInstance) -> None:
        with self._serialized(instance) as key:
            if not self.store.delete(key):
                raise InvalidStateError(f"trigger is not enabled: instance_key={key}")
            logger.info("trigger disabled: instance_key=%s", key)

    def run(self, instance: TriggerInstance, engine: PollEngine) -> list[RawItem]:
        """执行一个轮询周期，返回本周期的新条目（有序）。"""
        with self._serialized(instance) as key:
            if self.store.load(key) is None:
                raise InvalidStateError(f"trigger is not enabled: instance_key={key}")
            result = engine.poll(instance, self.store)
            if result.items:
                logger.info("trigger run: instance_key=%s new_items=%d fetched=%d", key, len(result.items), result.fetched)
            return list(result.items)

    def test(
        self,
        instance: TriggerInstance,
        engine: PollEngine,
        *,
        sample_size: int | None = None,
    ) -> list[RawItem]:
        """
        样例数据预览：在一次性的内存 marker 上下文中跑完整的 fetch + filter，
        按首次运行语义返回输出顺序中最后（最新）的 test_sample_size 条；
        真实持久化的 marker 不受影响。sample_size 可覆盖默认的 test_sample_size。
        """
        n = self.test_sample_size if sample_size is None else sample_size
        if n < 1:
            raise ConfigurationError(f"test_sample_size must be >= 1, got {n}")
        result = engine.poll(instance, MemoryCursorStore(), persist=False)
        return list(result.items[-n:])
