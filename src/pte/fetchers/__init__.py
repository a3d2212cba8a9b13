from __future__ import annotations

from typing import Callable

from ..errors import ConfigurationError
from ..http_utils import HttpClient
from .base import FetchContext, FetchResult, ItemFetcher
from .github import GitHubIssuesFetcher
from .huggingface import HuggingFaceModelsFetcher


FETCHER_FACTORIES: dict[str, Callable[[HttpClient], ItemFetcher]] = {
    "github_issues": lambda http: GitHubIssuesFetcher(http=http),
    "huggingface_models": lambda http: HuggingFaceModelsFetcher(http=http),
}

# 各连接器推荐的去重策略；updated_at 只有秒级精度，同一秒内的两次更新只能靠 "<id>@<版本>" 区分
RECOMMENDED_STRATEGIES: dict[str, str] = {
    "github_issues": "identity",
    "huggingface_models": "identity",
}


def build_fetcher(name: str, *, http: HttpClient) -> ItemFetcher:
    """按配置中的名字选择连接器实现。"""
    factory = FETCHER_FACTORIES.get(name)
    if factory is None:
        known = ", ".join(sorted(FETCHER_FACTORIES))
        raise ConfigurationError(f"unknown fetcher {name!r}; known fetchers: {known}")
    return factory(http)


__all__ = [
    "FETCHER_FACTORIES",
    "FetchContext",
    "FetchResult",
    "GitHubIssuesFetcher",
    "HuggingFaceModelsFetcher",
    "ItemFetcher",
    "RECOMMENDED_STRATEGIES",
    "build_fetcher",
]
