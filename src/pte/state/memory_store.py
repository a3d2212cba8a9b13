from __future__ import annotations

import threading

from ..models import Marker


class MemoryCursorStore:
    """
    纯内存 CursorStore：进程退出即丢失。

    用途：
    - test 操作的一次性上下文（不影响真实持久化的 marker）
    - 单元测试
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._markers: dict[str, Marker] = {}

    def ensure_schema(self) -> None:
        return None

    def load(self, instance_key: str) -> Marker | None:
        with self._lock:
            return self._markers.get(instance_key)

    def save(self, instance_key: str, marker: Marker) -> None:
        with self._lock:
            self._markers[instance_key] = marker

    def delete(self, instance_key: str) -> bool:
        with self._lock:
            return self._markers.pop(instance_key, None) is not None
