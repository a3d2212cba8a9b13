from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Mapping

from ..errors import ConfigurationError
from ..http_utils import HttpClient, parse_link_header, with_query_params
from ..models import RawItem, parse_rfc3339_datetime, to_epoch_ms
from .base import FetchContext, FetchResult


def _truncate(text: str, limit: int = 400) -> str:
    text = (text or "").strip()
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


@dataclass(slots=True)
class GitHubIssuesFetcher:
    """
    拉取某个 GitHub Repo 的 Issues（不含 PR）。推荐搭配 identity 策略。

    props：
    - repo：形如 "owner/repo"
    auth：GitHub Token（可选，不配置则匿名访问，易触发限流）

    epoch_ms 取 updated_at；item_id 为 "<id>@<updated_at>"，同一 issue 每次更新视为新条目。
    updated_at 只有秒级精度：时间策略下，与 marker 同一秒、但在上次轮询之后发生的更新会被丢弃，
    identity 策略则按 item_id 判断，不受影响。

    翻页顺序：
    - 有时间 marker：按 updated_at 升序，并用 since 收窄窗口；超过 max_pages 被截断时，
      marker 只推进到本周期实际看到的最后一条，剩余的更新在下个周期继续拉取
    - 其他情况：按 updated_at 降序，只看最近的 max_pages 页
    """

    http: HttpClient
    max_pages: int = 10

    def _headers(self, token: str | None) -> Mapping[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _first_page_url(self, repo: str, last_epoch_ms: int | None) -> str:
        params = {
            "state": "all",
            "sort": "updated",
            "direction": "desc",
            "per_page": "100",
        }
        if last_epoch_ms is not None:
            since = datetime.fromtimestamp(last_epoch_ms / 1000, tz=UTC)
            params["direction"] = "asc"
            params["since"] = since.isoformat().replace("+00:00", "Z")
        return with_query_params(f"https://api.github.com/repos/{repo}/issues", params)

    def fetch(self, context: FetchContext) -> FetchResult:
        repo = str(context.instance.props.get("repo") or "").strip()
        if "/" not in repo:
            raise ConfigurationError(f"github_issues requires props.repo like 'owner/repo', got {repo!r}")
        token = context.instance.auth if isinstance(context.instance.auth, str) else None

        items: list[RawItem] = []
        next_url: str | None = self._first_page_url(repo, context.last_epoch_ms)
        pages = 0
        while next_url and pages < self.max_pages:
            pages += 1
            resp = self.http.get(next_url, headers=self._headers(token))
            data = resp.json()
            if not isinstance(data, list):
                raise ValueError(f"GitHub API expected list, got {type(data)}: {resp.url}")
            for it in data:
                if not isinstance(it, dict) or "pull_request" in it:
                    continue
                item = self._to_item(repo, it)
                if item is not None:
                    items.append(item)
            next_url = parse_link_header(resp.header("Link") or "").get("next")

        return FetchResult(items=items)

    def _to_item(self, repo: str, it: Mapping[str, Any]) -> RawItem | None:
        updated_at_s = it.get("updated_at")
        if not isinstance(updated_at_s, str):
            return None
        updated_at = parse_rfc3339_datetime(updated_at_s)
        issue_id = str(it.get("id") or it.get("number") or it.get("url") or "")
        return RawItem(
            data={
                "repo": repo,
                "number": it.get("number"),
                "title": str(it.get("title") or ""),
                "summary": _truncate(str(it.get("body") or "")),
                "state": str(it.get("state") or ""),
                "url": str(it.get("html_url") or it.get("url") or ""),
                "updated_at": updated_at.isoformat(),
            },
            epoch_ms=to_epoch_ms(updated_at),
            item_id=f"{issue_id}@{updated_at_s}",
        )
