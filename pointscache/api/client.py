"""
Async JSON client whose reads go through the request cache.
GETs are keyed by (method, path, params), coalesced while in flight and cached on
success; writes invalidate the cache tags they affect.
"""

import logging
from typing import Any, Iterable

import httpx

from pointscache.api.errors import ApiRateLimited, error_for_status
from pointscache.cache.request_cache import RequestCache

logger = logging.getLogger(__name__)


class CachedApiClient:
    def __init__(
        self,
        base_url: str,
        cache: RequestCache,
        *,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache = cache

        if timeout is None:
            # Connect timeout is short to fail fast
            timeout = httpx.Timeout(connect=5.0, read=30.0, write=10.0, pool=10.0)
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json", **(headers or {})},
            timeout=timeout,
            follow_redirects=True,
        )

    async def close(self):
        await self.client.aclose()

    def cache_key(self, method: str, path: str, params: dict[str, Any] | None = None) -> str:
        return self.cache.generate_key(
            {"method": method, "path": path, "params": params or {}}
        )

    async def get_json(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        ttl: float | None = None,
        tags: Iterable[str] | None = None,
        use_cache: bool = True,
    ) -> Any | None:
        """
        GET path and decode JSON. Returns None on 404 (never cached).
        With use_cache=False the request is still coalesced but not stored.
        """
        key = self.cache_key("GET", path, params)

        async def fetch():
            return await self._request("GET", path, params=params)

        if not use_cache:
            return await self.cache.dedupe(key, fetch)
        return await self.cache.get_or_fetch(key, fetch, ttl=ttl, tags=tags)

    async def post_json(
        self,
        path: str,
        payload: Any,
        *,
        invalidate_tags: Iterable[str] = (),
    ) -> Any | None:
        result = await self._request("POST", path, json=payload)
        tags = list(invalidate_tags)
        if tags:
            cleared = self.cache.clear_by_tags(tags)
            logger.debug(f"POST {path} invalidated {cleared} cache entries for tags {tags}")
        return result

    async def _request(self, method, path, *, params=None, json=None):
        request = self.client.build_request(method, path, params=params, json=json)
        try:
            response = await self.client.send(request)
        except httpx.TransportError as e:
            logger.error(f"Transport error on {method} {path}: {e}")
            raise

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise self._to_api_error(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _to_api_error(response: httpx.Response):
        error_cls = error_for_status(response.status_code)
        kwargs = dict(
            message=response.reason_phrase or "Request failed",
            status_code=response.status_code,
            method=response.request.method,
            url=str(response.request.url),
            request_id=response.headers.get("x-request-id"),
        )
        if error_cls is ApiRateLimited:
            retry_after = response.headers.get("Retry-After")
            try:
                kwargs["retry_after_s"] = float(retry_after) if retry_after else None
            except ValueError:
                logger.warning(f"Failed to parse Retry-After: {retry_after}")
        return error_cls(**kwargs)
