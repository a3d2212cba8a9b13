from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from ..errors import ConfigurationError
from ..http_utils import HttpClient, with_query_params
from ..models import RawItem, parse_rfc3339_datetime, to_epoch_ms
from .base import FetchContext, FetchResult


@dataclass(slots=True)
class HuggingFaceModelsFetcher:
    """
    拉取 HuggingFace 某个组织/用户最近修改的模型，适用于身份策略。

    Hub 的 lastModified 可能在同一时刻出现多条，因此用 "<modelId>@<sha>" 作为 item_id，
    每次模型提交（sha 变化）都会被视为新条目。只取第一页（按 lastModified 倒序）。
    """

    http: HttpClient
    limit: int = 100

    def _headers(self, token: str | None) -> Mapping[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def fetch(self, context: FetchContext) -> FetchResult:
        org = str(context.instance.props.get("org") or "").strip()
        if not org:
            raise ConfigurationError("huggingface_models requires props.org")
        token = context.instance.auth if isinstance(context.instance.auth, str) else None

        url = with_query_params(
            "https://huggingface.co/api/models",
            {
                "author": org,
                "sort": "lastModified",
                "direction": "-1",
                "limit": str(self.limit),
                "full": "true",
            },
        )
        resp = self.http.get(url, headers=self._headers(token))
        data = resp.json()
        if isinstance(data, dict) and isinstance(data.get("models"), list):
            data = data["models"]
        if not isinstance(data, list):
            raise ValueError(f"HuggingFace API expected list, got {type(data)}: {resp.url}")

        items: list[RawItem] = []
        for it in data:
            if not isinstance(it, dict):
                continue
            item = self._to_item(org, it)
            if item is not None:
                items.append(item)
        # 接口按时间倒序返回，翻转后按发生顺序输出
        items.reverse()
        return FetchResult(items=items)

    def _to_item(self, org: str, it: Mapping[str, Any]) -> RawItem | None:
        model_id = str(it.get("modelId") or it.get("id") or "")
        if not model_id:
            return None
        sha = str(it.get("sha") or "")
        last_modified_s = it.get("lastModified") or it.get("last_modified")
        epoch_ms = None
        if isinstance(last_modified_s, str):
            epoch_ms = to_epoch_ms(parse_rfc3339_datetime(last_modified_s))
        return RawItem(
            data={
                "org": org,
                "model_id": model_id,
                "sha": sha,
                "pipeline_tag": it.get("pipeline_tag"),
                "url": f"https://huggingface.co/{model_id}",
                "last_modified": last_modified_s,
            },
            epoch_ms=epoch_ms,
            item_id=f"{model_id}@{sha}" if sha else model_id,
        )
