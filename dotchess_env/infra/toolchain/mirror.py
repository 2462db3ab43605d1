"""crates 镜像探测：在 cargo install 之前确认包索引可达。"""

from __future__ import annotations

import logging
import time

import httpx

logger = logging.getLogger(__name__)


class MirrorUnreachableError(RuntimeError):
    """包镜像不可达。"""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"package mirror unreachable ({url}): {reason}")
        self.url = url
        self.reason = reason


class MirrorProbe:
    """crates 索引同步 HTTP 探测器。"""

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._url = url
        self._closed = False
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds),
            follow_redirects=True,
            transport=transport,
        )

    @property
    def url(self) -> str:
        return self._url

    def close(self) -> None:
        """关闭底层 HTTP 客户端连接池。"""
        if self._closed:
            return
        self._client.close()
        self._closed = True

    def check(self) -> None:
        """请求索引配置文件，失败时抛出 MirrorUnreachableError。"""
        if self._closed:
            raise RuntimeError("MirrorProbe is already closed")
        started = time.perf_counter()
        try:
            response = self._client.get(self._url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            status_code = None
            if isinstance(exc, httpx.HTTPStatusError):
                status_code = exc.response.status_code
            logger.error(
                "mirror probe failed",
                extra={
                    "event": "mirror.probe.failed",
                    "op": self._url,
                    "duration_ms": duration_ms,
                    "status_code": status_code,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            raise MirrorUnreachableError(self._url, str(exc) or type(exc).__name__) from exc
        logger.info(
            "mirror probe succeeded",
            extra={
                "event": "mirror.probe.succeeded",
                "op": self._url,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "status_code": response.status_code,
            },
        )
