"""
HTTP Request Executor

VTID: VTID-01204

Issues exactly one HTTP request per invocation and records status, headers,
body and round-trip time. No retries: a task that wants retries declares
more steps.

Action Type: HTTP_REQUEST
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from ..errors import ActionFailedError, ActionTimeoutError
from ..main import GlobalConfig
from .base import BaseExecutor

logger = logging.getLogger(__name__)

DEFAULT_EXPECTED_STATUS = [200, 201]


class HttpRequestExecutor(BaseExecutor):
    """
    Executor for single-shot HTTP requests.

    Parameters:
        url: absolute URL, or relative to globalConfiguration.baseUrl
        method: HTTP method
        headers: request headers
        body: request body (non-string bodies are sent as JSON)
        params: query parameters
        expectedStatus: status codes that count as success (default [200, 201])
        followRedirects: follow redirects (default False)
        timeout: milliseconds
    """

    name = "http"

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def action_types(self) -> List[str]:
        return ["HTTP_REQUEST"]

    async def execute(
        self,
        parameters: Dict[str, Any],
        global_config: GlobalConfig,
    ) -> Dict[str, Any]:
        self.require(parameters, "url", "method")

        method = str(parameters["method"]).upper()
        url = self._resolve_url(str(parameters["url"]), global_config.base_url)
        expected = parameters.get("expectedStatus") or DEFAULT_EXPECTED_STATUS
        if isinstance(expected, int):
            expected = [expected]
        headers = {str(k): str(v) for k, v in (parameters.get("headers") or {}).items()}
        timeout = self.timeout_seconds(parameters, global_config)

        request_kwargs: Dict[str, Any] = {"headers": headers}
        if parameters.get("params"):
            request_kwargs["params"] = parameters["params"]

        body = parameters.get("body")
        if body is not None:
            if isinstance(body, (str, bytes)):
                request_kwargs["content"] = body
            else:
                request_kwargs["json"] = body

        payload: Dict[str, Any] = {
            "url": url,
            "method": method,
            "expected_status": expected,
        }

        logger.info(f"{method} {url}")
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(
                timeout=timeout,
                transport=self._transport,
                follow_redirects=bool(parameters.get("followRedirects", False)),
            ) as client:
                response = await client.request(method, url, **request_kwargs)
        except httpx.TimeoutException as e:
            payload["response_time_ms"] = int((time.monotonic() - start) * 1000)
            raise ActionTimeoutError(
                f"HTTP request timeout after {int(timeout * 1000)}ms: {type(e).__name__}",
                data=payload,
            )
        except httpx.HTTPError as e:
            payload["response_time_ms"] = int((time.monotonic() - start) * 1000)
            payload["transport_error"] = f"{type(e).__name__}: {e}"
            raise ActionFailedError(f"HTTP transport error: {e}", data=payload)

        payload.update({
            "status": response.status_code,
            "reason": response.reason_phrase,
            "headers": dict(response.headers),
            "body": self._parse_body(response),
            "response_time_ms": int((time.monotonic() - start) * 1000),
        })

        if response.status_code not in expected:
            raise ActionFailedError(
                f"HTTP {response.status_code} {response.reason_phrase}. "
                f"Expected: {', '.join(str(s) for s in expected)}",
                data=payload,
            )

        return payload

    @staticmethod
    def _resolve_url(url: str, base_url: Optional[str]) -> str:
        if base_url and not url.lower().startswith(("http://", "https://")):
            return base_url.rstrip("/") + "/" + url.lstrip("/")
        return url

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except (json.JSONDecodeError, ValueError):
                logger.debug("Response declared JSON but did not parse; keeping text")
        return response.text
