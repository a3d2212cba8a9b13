from __future__ import annotations

from typing import Protocol

from ..models import Marker


class CursorStore(Protocol):
    """
    marker 持久化接口（纯存储，不含去重逻辑）：
    - 以 instance_key 为主键，每个触发器实例一条 marker
    - save 对同 key 的并发 load 原子可见（不会读到写了一半的 marker）
    - 任何后端 I/O 失败统一抛 StoreError
    """

    def ensure_schema(self) -> None: ...

    def load(self, instance_key: str) -> Marker | None: ...

    def save(self, instance_key: str, marker: Marker) -> None: ...

    def delete(self, instance_key: str) -> bool: ...
