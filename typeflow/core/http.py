"""HTTP helper for node execution.

All requests carry a timeout and can be cancelled: cancel() closes the
underlying requests.Session, so in-flight calls fail fast and later calls
raise RequestCancelledError. Credential authentication always replaces a
caller-supplied Authorization header.
"""

from __future__ import annotations

import base64
import json
import logging
import threading
from typing import Any

import requests
from pydantic import BaseModel, Field
from requests.exceptions import RequestException, Timeout

from typeflow.core.errors import HttpRequestError, HttpTimeoutError, RequestCancelledError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class RequestOptions(BaseModel):
    """Options accepted by HttpHelper.request()."""

    url: str = ""
    base_url: str | None = None
    method: str = "GET"
    headers: dict[str, Any] = Field(default_factory=dict)
    qs: dict[str, Any] = Field(default_factory=dict)
    body: Any = None
    raw_body: bool = False  # Send body as-is instead of JSON-encoding it
    json_response: bool = Field(default=True, alias="json")
    ignore_http_status_errors: bool = False
    return_full_response: bool = False
    timeout: float | None = None

    model_config = {"populate_by_name": True}


def build_url(base_url: str | None, url: str) -> str:
    if not base_url or url.startswith(("http://", "https://")):
        return url
    if not url:
        return base_url
    return f"{base_url.rstrip('/')}/{url.lstrip('/')}"


def apply_credentials(
    data: dict[str, Any], headers: dict[str, Any], qs: dict[str, Any]
) -> None:
    """Apply credential data to headers / query string in place.

    api_key goes to the "api_key" query parameter (or to api_key_header when
    set), token / access_token becomes a Bearer header, and username +
    password becomes Basic auth.
    """
    api_key = data.get("api_key", data.get("apiKey"))
    token = data.get("token", data.get("access_token", data.get("accessToken")))
    username = data.get("username")
    password = data.get("password")

    authorization: str | None = None
    if token:
        authorization = f"Bearer {token}"
    elif username is not None and password is not None:
        encoded = base64.b64encode(f"{username}:{password}".encode()).decode("ascii")
        authorization = f"Basic {encoded}"

    if authorization is not None:
        for key in [k for k in headers if k.lower() == "authorization"]:
            del headers[key]
        headers["Authorization"] = authorization

    if api_key:
        header_name = data.get("api_key_header")
        if header_name:
            for key in [k for k in headers if k.lower() == str(header_name).lower()]:
                del headers[key]
            headers[header_name] = api_key
        else:
            qs["api_key"] = api_key


class HttpHelper:
    """Timeout-bounded, cancellable HTTP client shared by one session or run.

    Usage:
        helper = HttpHelper(timeout=10)
        data = helper.request({"url": "https://api.example.com/users", "qs": {"limit": 5}})
        helper.cancel()  # from another thread on terminate
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        cancel_event: threading.Event | None = None,
        session: requests.Session | None = None,
    ):
        self.timeout = timeout
        self.cancel_event = cancel_event or threading.Event()
        self._session = session or requests.Session()
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Cancel in-flight and future requests and release pooled connections."""
        self.cancel_event.set()
        self.close()

    def close(self) -> None:
        with self._lock:
            self._session.close()

    def request(
        self,
        options: RequestOptions | dict[str, Any],
        credentials: dict[str, Any] | None = None,
    ) -> Any:
        """Perform one request.

        Args:
            options: RequestOptions or an equivalent dict
            credentials: credential data to authenticate with

        Returns:
            Parsed JSON (or text) body, or {status_code, headers, body} when
            return_full_response is set.

        Raises:
            HttpRequestError: non-2xx status (unless ignored) or transport error
            HttpTimeoutError: request exceeded its timeout
            RequestCancelledError: helper was cancelled
        """
        if not isinstance(options, RequestOptions):
            options = RequestOptions.model_validate(options)
        if self.cancelled:
            raise RequestCancelledError("Request cancelled before it was sent")

        method = options.method.upper()
        url = build_url(options.base_url, options.url)
        if not url:
            raise HttpRequestError("Request URL is empty", method=method)

        headers = {k: str(v) for k, v in options.headers.items() if v is not None}
        qs = {k: v for k, v in options.qs.items() if v is not None}
        if credentials:
            apply_credentials(credentials, headers, qs)

        data: Any = None
        if options.body is not None and method not in ("GET", "HEAD"):
            if options.raw_body or isinstance(options.body, bytes):
                data = options.body
            else:
                data = json.dumps(options.body)
                if not any(k.lower() == "content-type" for k in headers):
                    headers["Content-Type"] = "application/json"

        timeout = options.timeout or self.timeout
        logger.debug(f"HTTP {method} {url}")
        try:
            response = self._session.request(
                method=method,
                url=url,
                params=qs or None,
                data=data,
                headers=headers,
                timeout=timeout,
            )
        except Timeout as e:
            raise HttpTimeoutError(
                f"Request timed out after {timeout}s", timeout=timeout, url=url, method=method
            ) from e
        except RequestException as e:
            if self.cancelled:
                raise RequestCancelledError(f"Request to {url} was cancelled") from e
            raise HttpRequestError(f"Request failed: {e}", url=url, method=method) from e

        if self.cancelled:
            raise RequestCancelledError(f"Request to {url} was cancelled")

        if not (200 <= response.status_code < 300) and not options.ignore_http_status_errors:
            raise HttpRequestError(
                f"HTTP {response.status_code} {response.reason or ''}".rstrip()
                + f" for {method} {url}",
                status_code=response.status_code,
                response_body=response.text[:1000] if response.text else None,
                url=url,
                method=method,
            )

        body = self._parse_body(response, options.json_response)
        if options.return_full_response:
            return {
                "status_code": response.status_code,
                "headers": dict(response.headers),
                "body": body,
            }
        return body

    def _parse_body(self, response: requests.Response, as_json: bool) -> Any:
        if not response.content:
            return None
        if as_json:
            try:
                return response.json()
            except ValueError:
                pass
        return response.text
