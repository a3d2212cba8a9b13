"""
Polling Trigger Engine (pte)

按计划轮询外部数据源，并保证数据源产生的每个逻辑条目只进入输出流一次：
相邻两次轮询必然有重叠，由持久化的 marker 与去重策略（时间 / 身份）消除重复。
"""

from .dedupe import DedupeStrategy, filter_batch, filter_identity, filter_timebased
from .errors import ConfigurationError, FetchError, InvalidStateError, PollingError, StoreError
from .lifecycle import LifecycleManager
from .models import IdentityMarker, Marker, PollResult, RawItem, TimeMarker, TriggerInstance
from .poller import PollEngine

__all__ = [
    "ConfigurationError",
    "DedupeStrategy",
    "FetchError",
    "IdentityMarker",
    "InvalidStateError",
    "LifecycleManager",
    "Marker",
    "PollEngine",
    "PollResult",
    "PollingError",
    "RawItem",
    "StoreError",
    "TimeMarker",
    "TriggerInstance",
    "filter_batch",
    "filter_identity",
    "filter_timebased",
]
