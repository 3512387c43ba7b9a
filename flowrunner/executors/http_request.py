"""HTTP request action."""

import base64
import json
import time
from typing import Any, Dict, Mapping, Optional

import httpx

from ..core.exceptions import ExecutorError
from ..core.logging import get_logger
from ..models.core import ActionResult, NodeType
from .base import ActionExecutor, require_fields
from .ssrf import SSRFGuard

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _parse_json_field(value: Any, field: str) -> Dict[str, Any]:
    """Headers/query params may arrive as a dict or, after templating, as a JSON string."""
    if value is None or value == "":
        return {}
    if isinstance(value, dict):
        return {str(key): str(item) for key, item in value.items()}
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            raise ExecutorError(f"Field '{field}' is not valid JSON", error_category="validation")
        if isinstance(parsed, dict):
            return {str(key): str(item) for key, item in parsed.items()}
    raise ExecutorError(f"Field '{field}' must be an object", error_category="validation")


def _apply_auth(headers: Dict[str, str], auth: Optional[Dict[str, Any]]) -> None:
    if not auth:
        return
    auth_type = str(auth.get("type", "")).lower()
    if auth_type == "basic":
        raw = f"{auth.get('username', '')}:{auth.get('password', '')}".encode("utf-8")
        headers["Authorization"] = "Basic " + base64.b64encode(raw).decode("ascii")
    elif auth_type == "bearer":
        headers["Authorization"] = f"Bearer {auth.get('token', '')}"
    elif auth_type == "api_key":
        header_name = auth.get("headerName") or "X-API-Key"
        headers[header_name] = str(auth.get("value") or auth.get("apiKey") or "")
    elif auth_type not in ("", "none"):
        raise ExecutorError(f"Unsupported auth type '{auth_type}'", error_category="validation")


def _has_header(headers: Dict[str, str], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


class HttpRequestExecutor(ActionExecutor):
    """Performs an outbound HTTP request behind the SSRF guard.

    2xx and 3xx responses are successes (redirects are not followed, so a
    redirect cannot be used to reach an internal address).
    """

    node_type = NodeType.HTTP_REQUEST

    def __init__(self, guard: Optional[SSRFGuard] = None, timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 transport: Optional[httpx.BaseTransport] = None):
        self.guard = guard or SSRFGuard()
        self.timeout = timeout
        self._transport = transport

    def preflight(self, config: Dict[str, Any]) -> Optional[ActionResult]:
        return require_fields(config, "url")

    def execute(self, config: Dict[str, Any], context: Mapping[str, Any]) -> ActionResult:
        url = str(config["url"]).strip()
        method = str(config.get("method") or "GET").upper()
        headers = _parse_json_field(config.get("headers"), "headers")
        params = _parse_json_field(config.get("queryParams"), "queryParams")
        _apply_auth(headers, config.get("auth"))

        timeout = self.timeout
        if config.get("timeoutSeconds") not in (None, ""):
            try:
                # node-level override may shorten, never extend, the bound
                timeout = min(float(config["timeoutSeconds"]), self.timeout)
            except (TypeError, ValueError):
                raise ExecutorError("Field 'timeoutSeconds' must be a number", error_category="validation")

        self.guard.check(url)

        request_kwargs: Dict[str, Any] = {"headers": headers, "params": params or None}
        body = config.get("body")
        if body not in (None, "") and method in BODY_METHODS:
            if isinstance(body, (dict, list)):
                request_kwargs["content"] = json.dumps(body)
            else:
                request_kwargs["content"] = str(body)
            if not _has_header(headers, "Content-Type"):
                headers["Content-Type"] = "application/json"

        logger.info(f"HTTP {method} {url}")
        started = time.monotonic()
        try:
            with httpx.Client(timeout=timeout, transport=self._transport, follow_redirects=False) as client:
                response = client.request(method, url, **request_kwargs)
        except httpx.TimeoutException:
            logger.warning(f"HTTP {method} {url} timed out after {timeout}s")
            return ActionResult.fail("Request timeout", category="timeout",
                                     data={"timeoutSeconds": timeout})
        except httpx.RequestError as e:
            return ActionResult.fail(f"Request failed: {e}", category="network")
        duration_ms = int((time.monotonic() - started) * 1000)

        response_body = self._parse_body(response)
        data = {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "body": response_body,
            "durationMs": duration_ms,
        }
        if 200 <= response.status_code < 400:
            return ActionResult.ok(data)
        return ActionResult.fail(
            f"HTTP {response.status_code}: {response.reason_phrase}",
            category="http",
            data={"status": response.status_code, "statusText": response.reason_phrase, "body": response_body}
        )

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except ValueError:
                return response.text
        return response.text
