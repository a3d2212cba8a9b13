from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, Mapping

from .errors import StoreError


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def parse_rfc3339_datetime(value: str) -> datetime:
    """
    解析常见的 RFC3339/ISO8601 时间串为带 tzinfo 的 datetime。

    兼容：
    - 2026-02-10T12:34:56Z
    - 2026-02-10T12:34:56+00:00
    - 2026-02-10T12:34:56.123Z
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return int(dt.timestamp() * 1000)


@dataclass(frozen=True, slots=True)
class TriggerInstance:
    """
    一个已配置的触发器实例（block + trigger + 配置 + 鉴权上下文）。

    instance_key 是 CursorStore 中的主键：
    - 显式给出 instance_id 时直接使用
    - 否则由 block/trigger/props 生成稳定指纹；auth 不参与，轮换凭据不会重置基线
    """

    block: str
    trigger: str
    props: Mapping[str, Any] = field(default_factory=dict)
    auth: Any = None
    instance_id: str | None = None

    def instance_key(self) -> str:
        if self.instance_id:
            return self.instance_id
        stable = {
            "block": self.block,
            "trigger": self.trigger,
            "props": dict(self.props),
        }
        payload = json.dumps(stable, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return f"{self.block}:{self.trigger}:{digest[:16]}"


@dataclass(frozen=True, slots=True)
class RawItem:
    """
    连接器拉取到的一条记录。

    data 为连接器原样提供的负载；epoch_ms / item_id 是去重用的归一化字段，
    时间策略依赖 epoch_ms，身份策略依赖 item_id。
    """

    data: Any
    epoch_ms: int | None = None
    item_id: str | None = None

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "data": self.data,
            "epoch_ms": self.epoch_ms,
            "item_id": self.item_id,
        }


@dataclass(frozen=True, slots=True)
class TimeMarker:
    epoch_ms: int
    kind: Literal["timebased"] = "timebased"


@dataclass(frozen=True, slots=True)
class IdentityMarker:
    # 按插入顺序保存，最旧的在前
    ids: tuple[str, ...] = ()
    kind: Literal["identity"] = "identity"


Marker = TimeMarker | IdentityMarker


@dataclass(frozen=True, slots=True)
class PollResult:
    """
    一个轮询周期的结果：本周期判定为新的条目（有序）以及下一个 marker。
    """

    items: tuple[RawItem, ...]
    marker: Marker | None
    previous: Marker | None
    fetched: int

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "items": [it.to_json_dict() for it in self.items],
            "marker": marker_to_dict(self.marker) if self.marker is not None else None,
            "previous": marker_to_dict(self.previous) if self.previous is not None else None,
            "fetched": self.fetched,
        }


def marker_to_dict(marker: Marker) -> dict[str, Any]:
    if isinstance(marker, TimeMarker):
        return {"kind": marker.kind, "epoch_ms": marker.epoch_ms}
    return {"kind": marker.kind, "ids": list(marker.ids)}


def marker_to_json(marker: Marker) -> str:
    return json.dumps(marker_to_dict(marker), ensure_ascii=False, separators=(",", ":"))


def marker_from_json(value: str) -> Marker:
    """
    反序列化持久化的 marker。无法识别的内容视为存储损坏，抛 StoreError。
    """
    try:
        obj = json.loads(value)
    except (TypeError, ValueError) as e:
        raise StoreError(f"corrupt marker payload: {value!r}") from e
    if not isinstance(obj, dict):
        raise StoreError(f"corrupt marker payload: {value!r}")

    kind = obj.get("kind")
    if kind == "timebased" and isinstance(obj.get("epoch_ms"), int):
        return TimeMarker(epoch_ms=obj["epoch_ms"])
    if kind == "identity" and isinstance(obj.get("ids"), list):
        return IdentityMarker(ids=tuple(str(x) for x in obj["ids"]))
    raise StoreError(f"unknown marker payload: {value!r}")
