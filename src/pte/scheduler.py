from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime

from .config import EngineConfig
from .errors import ConfigurationError, InvalidStateError, PollingError
from .fetchers import build_fetcher
from .http_utils import HttpClient
from .lifecycle import LifecycleManager
from .models import PollResult, RawItem, TriggerInstance, utc_now
from .poller import PollEngine
from .state.sqlite_store import SqliteCursorStore


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TriggerBinding:
    """配置中的一个触发器：实例 + 对应的 PollEngine。"""

    name: str
    instance: TriggerInstance
    engine: PollEngine
    test_sample_size: int | None = None


@dataclass(slots=True)
class TriggerRunReport:
    name: str
    instance_key: str
    items: tuple[RawItem, ...]
    error: str | None
    error_type: str | None
    skipped: bool
    duration_ms: int


@dataclass(slots=True)
class CycleReport:
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    triggers: tuple[TriggerRunReport, ...]
    items_emitted: int
    errors: int
    skipped: int


@dataclass(slots=True)
class _Backoff:
    consecutive_failures: int = 0
    skip_remaining: int = 0


@dataclass(slots=True)
class Scheduler:
    """
    外部调度层：每个周期对所有已启用的实例调用 LifecycleManager.run。

    - 不同实例在线程池中并行执行；同一实例每个周期最多执行一次
    - 单个实例失败只记录日志与报告，实例保持 enabled，marker 保持上次成功值
    - 连续失败 n 次后跳过接下来 min(2^(n-1) - 1, max_skip_cycles) 个周期；
      不可重试的错误直接跳过 max_skip_cycles 个周期
    """

    manager: LifecycleManager
    bindings: tuple[TriggerBinding, ...]
    max_workers: int = 4
    max_skip_cycles: int = 8
    _backoff: dict[str, _Backoff] = field(default_factory=dict)
    _backoff_lock: threading.Lock = field(default_factory=threading.Lock)

    def binding(self, name: str) -> TriggerBinding:
        for b in self.bindings:
            if b.name == name:
                return b
        raise ConfigurationError(f"unknown trigger: {name}")

    def enable(self, name: str) -> PollResult:
        b = self.binding(name)
        result = self.manager.on_enable(b.instance, b.engine)
        with self._backoff_lock:
            self._backoff.pop(b.name, None)
        return result

    def disable(self, name: str) -> None:
        b = self.binding(name)
        self.manager.on_disable(b.instance)
        with self._backoff_lock:
            self._backoff.pop(b.name, None)

    def test(self, name: str) -> list[RawItem]:
        b = self.binding(name)
        return self.manager.test(b.instance, b.engine, sample_size=b.test_sample_size)

    def run_once(self) -> CycleReport:
        """
        执行一个调度周期。

        执行顺序：
        - 跳过退避中的实例
        - 线程池并行执行 run，未启用的实例记为 skipped
        - 汇总每个实例的结果与错误
        """
        started_at = utc_now()
        start_t = time.monotonic()

        due: list[TriggerBinding] = []
        reports: list[TriggerRunReport] = []
        for b in self.bindings:
            if self._consume_skip(b.name):
                reports.append(
                    TriggerRunReport(
                        name=b.name,
                        instance_key=b.instance.instance_key(),
                        items=(),
                        error=None,
                        error_type=None,
                        skipped=True,
                        duration_ms=0,
                    )
                )
                continue
            due.append(b)

        if due:
            with ThreadPoolExecutor(max_workers=max(1, min(self.max_workers, len(due)))) as pool:
                reports.extend(pool.map(self._run_binding, due))

        finished_at = utc_now()
        return CycleReport(
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int((time.monotonic() - start_t) * 1000),
            triggers=tuple(reports),
            items_emitted=sum(len(r.items) for r in reports),
            errors=sum(1 for r in reports if r.error is not None),
            skipped=sum(1 for r in reports if r.skipped),
        )

    def _run_binding(self, b: TriggerBinding) -> TriggerRunReport:
        key = b.instance.instance_key()
        start_t = time.monotonic()
        try:
            items = self.manager.run(b.instance, b.engine)
        except InvalidStateError:
            logger.debug("trigger not enabled, skipped: name=%s instance_key=%s", b.name, key)
            return TriggerRunReport(
                name=b.name,
                instance_key=key,
                items=(),
                error=None,
                error_type=None,
                skipped=True,
                duration_ms=int((time.monotonic() - start_t) * 1000),
            )
        except PollingError as e:
            skip = self._record_failure(b.name, retryable=e.retryable)
            if e.retryable:
                logger.warning(
                    "trigger run failed: name=%s instance_key=%s error=%s: %s skip_cycles=%d",
                    b.name,
                    key,
                    type(e).__name__,
                    e,
                    skip,
                )
            else:
                logger.error(
                    "trigger run failed (not retryable): name=%s instance_key=%s error=%s: %s skip_cycles=%d",
                    b.name,
                    key,
                    type(e).__name__,
                    e,
                    skip,
                )
            return TriggerRunReport(
                name=b.name,
                instance_key=key,
                items=(),
                error=f"{type(e).__name__}: {e}",
                error_type=type(e).__name__,
                skipped=False,
                duration_ms=int((time.monotonic() - start_t) * 1000),
            )
        except Exception as e:  # noqa: BLE001
            skip = self._record_failure(b.name, retryable=True)
            logger.exception("trigger run crashed: name=%s instance_key=%s skip_cycles=%d", b.name, key, skip)
            return TriggerRunReport(
                name=b.name,
                instance_key=key,
                items=(),
                error=f"{type(e).__name__}: {e}",
                error_type=type(e).__name__,
                skipped=False,
                duration_ms=int((time.monotonic() - start_t) * 1000),
            )

        with self._backoff_lock:
            self._backoff.pop(b.name, None)
        return TriggerRunReport(
            name=b.name,
            instance_key=key,
            items=tuple(items),
            error=None,
            error_type=None,
            skipped=False,
            duration_ms=int((time.monotonic() - start_t) * 1000),
        )

    def _consume_skip(self, name: str) -> bool:
        with self._backoff_lock:
            state = self._backoff.get(name)
            if state is None or state.skip_remaining <= 0:
                return False
            state.skip_remaining -= 1
            return True

    def _record_failure(self, name: str, *, retryable: bool) -> int:
        with self._backoff_lock:
            state = self._backoff.setdefault(name, _Backoff())
            state.consecutive_failures += 1
            if retryable:
                skip = min(2 ** (state.consecutive_failures - 1) - 1, self.max_skip_cycles)
            else:
                skip = self.max_skip_cycles
            state.skip_remaining = skip
            return skip


def build_scheduler(config: EngineConfig, *, http: HttpClient | None = None) -> Scheduler:
    """
    根据配置构建 Scheduler。

    统一在这里做“配置 -> 实例”的装配；凭据只通过环境变量读取，避免落盘。
    """
    http = http or HttpClient()
    store = SqliteCursorStore(config.sqlite_path)
    store.ensure_schema()

    bindings: list[TriggerBinding] = []
    for t in config.triggers:
        instance = TriggerInstance(
            block=t.block,
            trigger=t.trigger,
            props=t.props,
            auth=config.resolve_env(t.auth_env),
            instance_id=t.instance_id,
        )
        engine = PollEngine(
            fetcher=build_fetcher(t.fetcher, http=http),
            strategy=t.strategy,
            capacity=t.capacity,
        )
        bindings.append(
            TriggerBinding(name=t.name, instance=instance, engine=engine, test_sample_size=t.test_sample_size)
        )

    return Scheduler(
        manager=LifecycleManager(store),
        bindings=tuple(bindings),
        max_workers=config.max_workers,
        max_skip_cycles=config.max_skip_cycles,
    )
