from __future__ import annotations


class PollingError(Exception):
    """
    引擎对外暴露的错误基类。

    retryable 表示调度层是否可以在下一个周期原样重试：
    - FetchError / StoreError：可重试，marker 保持上一次成功的值
    - InvalidStateError / ConfigurationError：不可重试，属于调用方或配置问题
    """

    retryable: bool = False


class FetchError(PollingError):
    """ItemFetcher 拉取失败（网络/API 异常或返回不符合约定）。"""

    retryable = True


class StoreError(PollingError):
    """CursorStore 读写失败。"""

    retryable = True


class InvalidStateError(PollingError):
    """在不支持该操作的状态下调用（例如未 enable 就 run）。"""


class ConfigurationError(PollingError):
    """实例配置非法，在任何 I/O 之前即可发现。"""
