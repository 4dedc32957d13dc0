"""
支付渠道 HTTP 客户端基类。

- 统一 30 秒超时，每次请求使用独立的 httpx.Client
- 仅 GET 请求在网络错误 / 5xx / 429 时按 [0.5, 1, 2] 秒退避重试，POST 不重试
- 响应归一化为 GatewayResult(success, data|error, status_code)
- 各渠道子类实现鉴权头、成功判定和错误信息提取
"""

import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from app.services.errors import AuthenticationError, ProviderApiError

logger = logging.getLogger(__name__)


@dataclass
class GatewayResult:
    """渠道调用结果。"""
    success: bool
    data: Any = None
    error: str | None = None
    status_code: int | None = None
    details: Any = None

    def raise_for_error(self) -> "GatewayResult":
        """失败时抛出对应异常，成功时返回自身。"""
        if self.success:
            return self
        if self.status_code in (401, 403):
            raise AuthenticationError(self.error or "渠道鉴权失败")
        raise ProviderApiError(
            self.error or "渠道请求失败", status_code=self.status_code, details=self.details,
        )


class GatewayHttpClient:
    """渠道 REST 客户端基类。"""

    provider = "base"
    TIMEOUT = 30
    RETRY_INTERVALS = [0.5, 1, 2]  # 秒，仅用于 GET
    IDEMPOTENCY_HEADER: str | None = None

    def base_url(self) -> str:
        raise NotImplementedError

    def _auth_headers(self, auth_token: str | None = None) -> dict:
        raise NotImplementedError

    def _is_success(self, status_code: int, body) -> bool:
        return 200 <= status_code < 300

    def _unwrap(self, body):
        return body

    def _extract_error(self, body, status_code: int) -> str:
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"HTTP {status_code}"

    def request(
        self,
        endpoint: str,
        method: str = "GET",
        body: dict | None = None,
        auth_token: str | None = None,
        params: dict | None = None,
        form: bool = False,
        authenticated: bool = True,
        idempotency_key: str | None = None,
        extra_headers: dict | None = None,
    ) -> GatewayResult:
        """
        调用渠道 API。

        Args:
            endpoint: 以 / 开头的路径或完整 URL。
            method: HTTP 方法。
            body: 请求体；form=True 时按表单编码，否则 JSON。
            auth_token: 覆盖默认凭证（如商家 OAuth 令牌）。
            authenticated: False 时不附加鉴权头（OAuth 换取令牌接口）。
            idempotency_key: 非幂等 POST 的幂等键，写入渠道约定的请求头。

        Returns:
            GatewayResult，不会因渠道错误抛出异常。
        """
        method = method.upper()
        url = endpoint if endpoint.startswith("http") else self.base_url() + endpoint

        headers = {"Accept": "application/json"}
        if authenticated:
            try:
                headers.update(self._auth_headers(auth_token))
            except AuthenticationError as e:
                logger.error("%s 鉴权失败: %s", self.provider, e)
                return GatewayResult(success=False, error=str(e), status_code=401)
        if idempotency_key and self.IDEMPOTENCY_HEADER:
            headers[self.IDEMPOTENCY_HEADER] = idempotency_key
        if extra_headers:
            headers.update(extra_headers)

        kwargs: dict = {"headers": headers}
        if params:
            kwargs["params"] = params
        if body is not None:
            if form:
                kwargs["data"] = body
                headers["Content-Type"] = "application/x-www-form-urlencoded"
            else:
                kwargs["json"] = body
                headers["Content-Type"] = "application/json"

        max_attempts = len(self.RETRY_INTERVALS) + 1 if method == "GET" else 1
        resp = None
        for attempt in range(max_attempts):
            try:
                with httpx.Client(timeout=self.TIMEOUT) as client:
                    resp = client.request(method, url, **kwargs)
            except httpx.HTTPError as e:
                if attempt < max_attempts - 1:
                    logger.warning(
                        "%s 请求异常，%.1f 秒后重试 (%s %s): %s",
                        self.provider, self.RETRY_INTERVALS[attempt], method, endpoint, e,
                    )
                    time.sleep(self.RETRY_INTERVALS[attempt])
                    continue
                logger.error("%s 请求失败 (%s %s): %s", self.provider, method, endpoint, e)
                return GatewayResult(success=False, error=f"请求失败: {e}")

            retryable = resp.status_code >= 500 or resp.status_code == 429
            if retryable and attempt < max_attempts - 1:
                logger.warning(
                    "%s 返回 HTTP %d，%.1f 秒后重试 (%s %s)",
                    self.provider, resp.status_code, self.RETRY_INTERVALS[attempt], method, endpoint,
                )
                time.sleep(self.RETRY_INTERVALS[attempt])
                continue
            break

        try:
            payload = resp.json()
        except ValueError:
            payload = {}

        if self._is_success(resp.status_code, payload):
            return GatewayResult(
                success=True, data=self._unwrap(payload), status_code=resp.status_code,
            )

        error = self._extract_error(payload, resp.status_code)
        logger.error(
            "%s API 错误 (%s %s, HTTP %d): %s",
            self.provider, method, endpoint, resp.status_code, error,
        )
        return GatewayResult(
            success=False, error=error, status_code=resp.status_code, details=payload,
        )
