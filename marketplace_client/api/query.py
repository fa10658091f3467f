# marketplace_client/api/query.py
from __future__ import annotations

import asyncio
from typing import Any, Dict, Hashable, Iterable, Optional, Sequence, Tuple

from marketplace_client.api.client import ApiClient, QueryFn, UnauthorizedBehavior

QueryKey = Tuple[Hashable, ...]


def _key(query_key: Sequence[Any]) -> QueryKey:
    return tuple(query_key)


class QueryClient:
    """
    Key-based 快取，預設行為與前端 queryClient 相同：
      - staleTime = Infinity：取過一次就不再自動重抓，除非 invalidate
      - retry = False：失敗直接丟出，不重試
    相同 key 同時間只會有一個請求在飛。
    """

    def __init__(self, query_fn: QueryFn):
        self._query_fn = query_fn
        self._cache: Dict[QueryKey, Any] = {}
        self._inflight: Dict[QueryKey, asyncio.Task] = {}
        # 每次 invalidate 就遞增；請求回來時 generation 不同代表結果已過期
        self._generation: Dict[QueryKey, int] = {}

    @classmethod
    def for_client(cls, client: ApiClient, on_401: UnauthorizedBehavior = "throw") -> "QueryClient":
        return cls(client.get_query_fn(on_401=on_401))

    def _forget_inflight(self, key: QueryKey, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def fetch_query(self, query_key: Sequence[Any], *, force: bool = False) -> Any:
        key = _key(query_key)
        if not force and key in self._cache:
            return self._cache[key]

        generation = self._generation.get(key, 0)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._query_fn(list(key)))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget_inflight(k, t))

        data = await asyncio.shield(task)
        if self._generation.get(key, 0) == generation:
            self._cache[key] = data
        return data

    def get_query_data(self, query_key: Sequence[Any]) -> Optional[Any]:
        return self._cache.get(_key(query_key))

    def set_query_data(self, query_key: Sequence[Any], data: Any) -> None:
        self._cache[_key(query_key)] = data

    def _invalidate(self, keys: Iterable[QueryKey]) -> None:
        for k in keys:
            self._generation[k] = self._generation.get(k, 0) + 1
            self._inflight.pop(k, None)

    def invalidate_queries(self, prefix: Optional[Sequence[Any]] = None) -> int:
        """移除所有以 prefix 開頭的 key；prefix=None 清空全部。回傳移除的快取數量。"""
        p = _key(prefix) if prefix is not None else ()
        matched = [k for k in set(self._cache) | set(self._inflight) if k[: len(p)] == p]
        self._invalidate(matched)
        stale = [k for k in matched if k in self._cache]
        for k in stale:
            del self._cache[k]
        return len(stale)

    def clear(self) -> None:
        self._invalidate(list(self._inflight))
        self._cache.clear()
