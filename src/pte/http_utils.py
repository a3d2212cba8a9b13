from __future__ import annotations

import json
import re
import ssl
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Mapping


_LINK_PART = re.compile(r'\s*<([^>]*)>\s*((?:;[^,]*)?)')
_REL_PARAM = re.compile(r';\s*rel\s*=\s*"?([^";]+)"?')


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    url: str
    headers: Mapping[str, str]
    body: bytes

    def header(self, name: str) -> str | None:
        """按名字读取响应头（大小写不敏感）。"""
        lowered = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lowered:
                return v
        return None

    def json(self) -> Any:
        try:
            return json.loads(self.body.decode("utf-8"))
        except ValueError as e:
            raise ValueError(f"invalid JSON body from {self.url}: {e}") from e


class HttpClient:
    """
    连接器使用的 HTTP 客户端（仅依赖标准库），每次 get 只发一次请求。

    429/5xx、连接失败等错误原样抛出，由 PollEngine 包装为 FetchError；
    跨周期的重试与退避只在调度层进行，请求不会在持有实例锁时反复 sleep。
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        user_agent: str = "polling-trigger-engine/0",
        verify_ssl: bool = True,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent
        self._ssl_context = ssl.create_default_context() if verify_ssl else ssl._create_unverified_context()

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> HttpResponse:
        req = urllib.request.Request(url=url, headers={"User-Agent": self._user_agent, **(headers or {})})
        with urllib.request.urlopen(req, timeout=self._timeout_seconds, context=self._ssl_context) as resp:
            return HttpResponse(
                status=resp.status,
                url=resp.geturl(),
                headers=dict(resp.headers.items()),
                body=resp.read(),
            )


def parse_link_header(link_value: str) -> dict[str, str]:
    """
    解析 RFC 8288 Link 头，返回 rel -> url 映射；rel 可以包含多个以空格分隔的值。

    <https://...?page=2>; rel="next", <https://...?page=9>; rel="last"
    """
    result: dict[str, str] = {}
    for part in link_value.split(","):
        m = _LINK_PART.match(part)
        if not m:
            continue
        url, params = m.groups()
        rel = _REL_PARAM.search(params)
        if rel:
            for name in rel.group(1).split():
                result.setdefault(name, url)
    return result


def with_query_params(url: str, params: Mapping[str, str | None]) -> str:
    """把 params 合并进 url 的查询串；值为 None 的参数不出现在结果里。"""
    parts = urllib.parse.urlsplit(url)
    query = dict(urllib.parse.parse_qsl(parts.query, keep_blank_values=True))
    for k, v in params.items():
        if v is not None:
            query[k] = v
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))
