from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any, Mapping

from .dedupe import DEFAULT_IDENTITY_CAPACITY, DedupeStrategy
from .errors import ConfigurationError
from .fetchers import RECOMMENDED_STRATEGIES
from .lifecycle import DEFAULT_TEST_SAMPLE_SIZE
from .models import TriggerInstance


def _require_dict(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ConfigurationError(f"Expected object at {where}, got {type(value).__name__}")
    return value


def _require_list(value: Any, *, where: str) -> list[Any]:
    if not isinstance(value, list):
        raise ConfigurationError(f"Expected array at {where}, got {type(value).__name__}")
    return value


def _get_int(d: Mapping[str, Any], key: str, default: int, *, where: str, minimum: int | None = None) -> int:
    v = d.get(key, default)
    if isinstance(v, bool) or not isinstance(v, int):
        raise ConfigurationError(f"Expected integer at {where}.{key}, got {v!r}")
    if minimum is not None and v < minimum:
        raise ConfigurationError(f"{where}.{key} must be >= {minimum}, got {v}")
    return v


def _get_str(d: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    v = d.get(key, default)
    if v is None:
        return None
    return str(v)


def _require_str(d: Mapping[str, Any], key: str, *, where: str) -> str:
    v = _get_str(d, key)
    if not v or not v.strip():
        raise ConfigurationError(f"Missing required string at {where}.{key}")
    return v.strip()


@dataclass(frozen=True, slots=True)
class TriggerConfig:
    """
    单个触发器实例的配置。

    name：
      - 配置内唯一，CLI 通过 --trigger 选择
    block / trigger：
      - 所属连接器与触发器名，参与 instance_key 指纹
    fetcher：
      - 连接器拉取实现的注册名（见 pte.fetchers.FETCHER_FACTORIES）
    strategy：
      - timebased / identity；省略时取连接器推荐的策略（见 pte.fetchers.RECOMMENDED_STRATEGIES）
    capacity：
      - identity 策略下记忆的 id 上限，超出后按插入顺序淘汰最旧的
    auth_env：
      - 凭据所在的环境变量名（可选），凭据不落盘
    """

    name: str
    block: str
    trigger: str
    fetcher: str
    strategy: DedupeStrategy
    props: Mapping[str, Any] = field(default_factory=dict)
    auth_env: str | None = None
    instance_id: str | None = None
    capacity: int = DEFAULT_IDENTITY_CAPACITY
    test_sample_size: int = DEFAULT_TEST_SAMPLE_SIZE


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """
    引擎总配置。

    poll_interval_seconds:
      - daemon 模式下两次周期之间的间隔
    max_workers:
      - 同一周期内并行轮询的实例数上限
    max_skip_cycles:
      - 连续失败后最多跳过的周期数
    sqlite_path:
      - SQLite marker 存储路径
    """

    poll_interval_seconds: int
    max_workers: int
    max_skip_cycles: int
    sqlite_path: str
    triggers: tuple[TriggerConfig, ...]

    def resolve_env(self, env_name: str | None) -> str | None:
        if not env_name:
            return None
        return os.environ.get(env_name)


def _parse_trigger(raw: Any, *, where: str) -> TriggerConfig:
    t = _require_dict(raw, where=where)
    props = _require_dict(t.get("props", {}), where=f"{where}.props")
    block = _require_str(t, "block", where=where)
    trigger = _require_str(t, "trigger", where=where)
    fetcher = _require_str(t, "fetcher", where=where)
    # 未显式给出 strategy 时使用连接器推荐的策略
    strategy_name = _get_str(t, "strategy") or RECOMMENDED_STRATEGIES.get(fetcher)
    if not strategy_name:
        raise ConfigurationError(f"Missing required string at {where}.strategy")
    strategy = DedupeStrategy.parse(strategy_name)
    return TriggerConfig(
        name=_get_str(t, "name") or f"{block}.{trigger}",
        block=block,
        trigger=trigger,
        fetcher=fetcher,
        strategy=strategy,
        props=dict(props),
        auth_env=_get_str(t, "auth_env"),
        instance_id=_get_str(t, "instance_id"),
        capacity=_get_int(t, "capacity", DEFAULT_IDENTITY_CAPACITY, where=where, minimum=1),
        test_sample_size=_get_int(t, "test_sample_size", DEFAULT_TEST_SAMPLE_SIZE, where=where, minimum=1),
    )


def _reject_shared_instance_keys(triggers: tuple[TriggerConfig, ...]) -> None:
    # 每个实例独占一个 marker：instance_key 相同的两个触发器会互相推进或覆盖对方的基线
    owners: dict[str, str] = {}
    for t in triggers:
        key = TriggerInstance(block=t.block, trigger=t.trigger, props=t.props, instance_id=t.instance_id).instance_key()
        if key in owners:
            raise ConfigurationError(
                f"triggers {owners[key]!r} and {t.name!r} share instance_key {key!r}; "
                "give one of them a distinct instance_id"
            )
        owners[key] = t.name


def parse_config(raw: Any) -> EngineConfig:
    root = _require_dict(raw, where="$")
    state = _require_dict(root.get("state", {}), where="$.state")
    sqlite_path = str(state.get("sqlite_path") or "./pte_state.sqlite3")

    triggers = tuple(
        _parse_trigger(t, where=f"$.triggers[{i}]")
        for i, t in enumerate(_require_list(root.get("triggers", []), where="$.triggers"))
    )
    names = [t.name for t in triggers]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ConfigurationError(f"duplicate trigger names: {', '.join(dupes)}")
    _reject_shared_instance_keys(triggers)

    return EngineConfig(
        poll_interval_seconds=_get_int(root, "poll_interval_seconds", 300, where="$", minimum=1),
        max_workers=_get_int(root, "max_workers", 4, where="$", minimum=1),
        max_skip_cycles=_get_int(root, "max_skip_cycles", 8, where="$", minimum=0),
        sqlite_path=sqlite_path,
        triggers=triggers,
    )


def load_config(config_path: str) -> EngineConfig:
    """
    使用 JSON 作为配置落地形式，避免引入第三方 YAML 解析依赖。

    JSON 顶层结构（示意）：
    {
      "poll_interval_seconds": 300,
      "max_workers": 4,
      "state": { "sqlite_path": "./pte_state.sqlite3" },
      "triggers": [
        { "name": "gh", "block": "github", "trigger": "new_issue",
          "fetcher": "github_issues", "strategy": "identity",
          "props": { "repo": "a/b" }, "auth_env": "GITHUB_TOKEN" }
      ]
    }
    """
    try:
        with open(config_path, "rb") as f:
            raw = json.loads(f.read().decode("utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"cannot read config {config_path}: {e}") from e
    return parse_config(raw)
