"""Endpoint clients for aumai-qmgateway.

One client binds one configured :class:`~aumai_qmgateway.models.Endpoint`
to an authenticated ``httpx.AsyncClient`` and a
:class:`~aumai_qmgateway.circuit_breaker.CircuitBreaker`.  REST and SOAP
endpoints share the :class:`EndpointClient` contract; each rejects the
other's call style as a usage error.
"""

from __future__ import annotations

import abc
import asyncio
import base64
import re
from collections.abc import Mapping
from typing import Any
from xml.sax.saxutils import escape

import httpx
import structlog

from aumai_qmgateway.circuit_breaker import CircuitBreaker
from aumai_qmgateway.errors import ErrorKind, GatewayError
from aumai_qmgateway.models import (
    ApiKeyCredentials,
    BasicCredentials,
    BearerCredentials,
    CircuitState,
    Credentials,
    Endpoint,
    TransportKind,
    WsSecurityCredentials,
)

logger = structlog.get_logger(__name__)

DEFAULT_API_VERSION = "v1"
VERSION_HEADER = "X-API-Version"
VERSION_PATH = "/api/version"

# Upstream statuses that indicate a transient gateway condition.
_TRANSIENT_STATUSES = frozenset({502, 503, 504})

_XML_NAME = re.compile(r"^[A-Za-z_][\w.\-]*(:[A-Za-z_][\w.\-]*)?$")


def build_auth_headers(credentials: Credentials) -> dict[str, str]:
    """Derive outbound HTTP auth headers from the active credential variant.

    WS-Security credentials produce no HTTP header; they travel inside the
    SOAP envelope instead.
    """
    if isinstance(credentials, BasicCredentials):
        raw = f"{credentials.username}:{credentials.password}".encode()
        return {"Authorization": f"Basic {base64.b64encode(raw).decode('ascii')}"}
    if isinstance(credentials, BearerCredentials):
        return {"Authorization": f"Bearer {credentials.token}"}
    if isinstance(credentials, ApiKeyCredentials):
        return {credentials.header: credentials.api_key}
    return {}


def major_version(version: str) -> str:
    """Return the major component of *version* (text before the first dot)."""
    return version.split(".", 1)[0]


class EndpointClient(abc.ABC):
    """Contract shared by the REST and SOAP endpoint clients."""

    transport_kind: TransportKind

    def __init__(
        self,
        endpoint: Endpoint,
        credentials: Credentials,
        breaker: CircuitBreaker,
        *,
        fallback_version: str = DEFAULT_API_VERSION,
        transport: httpx.AsyncBaseTransport | None = None,
        extra_headers: Mapping[str, str] | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.credentials = credentials
        self.breaker = breaker
        self._fallback_version = fallback_version
        self._detected_version: str | None = None
        self._version_lock = asyncio.Lock()

        headers = build_auth_headers(credentials)
        headers.update(extra_headers or {})
        self._http = httpx.AsyncClient(
            base_url=endpoint.base_url,
            timeout=endpoint.timeout_ms / 1000,
            headers=headers,
            transport=transport,
            event_hooks={
                "request": [self._add_version_header],
                "response": [self._capture_version_header],
            },
        )

    @property
    def name(self) -> str:
        return self.endpoint.name

    @property
    def circuit_state(self) -> CircuitState:
        return self.breaker.state

    @property
    def detected_version(self) -> str | None:
        return self._detected_version

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    @abc.abstractmethod
    async def get(self, path: str, params: Mapping[str, Any] | None = None) -> Any: ...

    @abc.abstractmethod
    async def post(self, path: str, payload: Any = None) -> Any: ...

    @abc.abstractmethod
    async def put(self, path: str, payload: Any = None) -> Any: ...

    @abc.abstractmethod
    async def delete(self, path: str) -> Any: ...

    @abc.abstractmethod
    async def call(self, action: str, body: Mapping[str, Any]) -> Any: ...

    # ------------------------------------------------------------------
    # Versioning
    # ------------------------------------------------------------------

    async def detect_version(self) -> str:
        """Return the endpoint's API version, detecting it once per client."""
        if self._detected_version is not None:
            return self._detected_version
        async with self._version_lock:
            if self._detected_version is None:
                probed = await self._probe_version()
                self._detected_version = probed or self._configured_version()
                logger.info(
                    "api_version_detected",
                    endpoint=self.name,
                    version=self._detected_version,
                    probed=probed is not None,
                )
        return self._detected_version

    async def negotiate_version(self, supported_versions: list[str]) -> str:
        """Pick a version both sides support.

        Returns the detected version when it is supported (or nothing is
        declared), otherwise the first supported version sharing its major
        component.  Without a match the detected version is returned and a
        warning is logged.
        """
        detected = await self.detect_version()
        if not supported_versions or detected in supported_versions:
            return detected

        detected_major = major_version(detected)
        for candidate in supported_versions:
            if major_version(candidate) == detected_major:
                logger.info(
                    "version_negotiated", endpoint=self.name, detected=detected, using=candidate
                )
                return candidate

        logger.warning(
            "version_negotiation_failed",
            endpoint=self.name,
            detected=detected,
            supported=supported_versions,
        )
        return detected

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _configured_version(self) -> str:
        return self.endpoint.api_version or self._fallback_version

    async def _probe_version(self) -> str | None:
        return None

    async def _add_version_header(self, request: httpx.Request) -> None:
        if self._detected_version is not None:
            request.headers[VERSION_HEADER] = self._detected_version

    async def _capture_version_header(self, response: httpx.Response) -> None:
        version = response.headers.get(VERSION_HEADER)
        if version and self._detected_version is None:
            self._detected_version = version
            logger.info("api_version_detected", endpoint=self.name, version=version, probed=False)

    def _usage_error(self, message: str) -> GatewayError:
        return GatewayError.validation(f"endpoint '{self.name}': {message}")

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one HTTP request and translate failures into gateway errors."""
        try:
            response = await self._http.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise _status_error(exc.response) from exc
        except httpx.TransportError as exc:
            raise GatewayError.upstream(
                f"network error calling endpoint '{self.name}': {exc!s}",
                details={"error_type": type(exc).__name__},
                retryable=True,
            ) from exc
        return response


class RestEndpointClient(EndpointClient):
    """JSON-over-HTTP client; every verb goes through the circuit breaker."""

    transport_kind = TransportKind.REST

    async def get(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        query = {key: value for key, value in (params or {}).items() if value is not None}
        return await self._request("GET", path, params=query or None)

    async def post(self, path: str, payload: Any = None) -> Any:
        return await self._request("POST", path, json=payload)

    async def put(self, path: str, payload: Any = None) -> Any:
        return await self._request("PUT", path, json=payload)

    async def delete(self, path: str) -> Any:
        return await self._request("DELETE", path)

    async def call(self, action: str, body: Mapping[str, Any]) -> Any:
        raise self._usage_error("SOAP-style call() is not supported on a REST endpoint")

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        async def send() -> Any:
            response = await self._send(method, path, **kwargs)
            return _decode_body(response)

        return await self.breaker.execute(send)

    async def _probe_version(self) -> str | None:
        try:
            response = await self._http.get(VERSION_PATH)
            response.raise_for_status()
            version = response.json().get("version")
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("version_probe_failed", endpoint=self.name, error=str(exc))
            return None
        return version if isinstance(version, str) and version else None


class SoapEndpointClient(EndpointClient):
    """SOAP client exposing a single ``call(action, body)`` operation."""

    transport_kind = TransportKind.SOAP

    def __init__(
        self,
        endpoint: Endpoint,
        credentials: Credentials,
        breaker: CircuitBreaker,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            endpoint,
            credentials,
            breaker,
            extra_headers={"Content-Type": "text/xml; charset=utf-8"},
            **kwargs,
        )

    async def get(self, path: str, params: Mapping[str, Any] | None = None) -> Any:
        raise self._usage_error("GET is not supported on a SOAP endpoint - use call()")

    async def post(self, path: str, payload: Any = None) -> Any:
        raise self._usage_error("POST is not supported on a SOAP endpoint - use call()")

    async def put(self, path: str, payload: Any = None) -> Any:
        raise self._usage_error("PUT is not supported on a SOAP endpoint - use call()")

    async def delete(self, path: str) -> Any:
        raise self._usage_error("DELETE is not supported on a SOAP endpoint - use call()")

    async def call(self, action: str, body: Mapping[str, Any]) -> str:
        """Post a SOAP envelope for *action* and return the raw response text."""
        envelope = self.build_envelope(action, body)

        async def send() -> str:
            response = await self._send(
                "POST", "", content=envelope, headers={"SOAPAction": f'"{action}"'}
            )
            return response.text

        return await self.breaker.execute(send)

    def build_envelope(self, action: str, body: Mapping[str, Any]) -> str:
        for tag in (action, *body.keys()):
            if not _XML_NAME.match(tag):
                raise self._usage_error(f"'{tag}' is not a valid XML element name")

        body_xml = "".join(
            f"<{key}>{escape(str(value))}</{key}>" for key, value in body.items()
        )
        return (
            '<?xml version="1.0" encoding="utf-8"?>'
            '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
            f"<soap:Header>{self._security_header()}</soap:Header>"
            f"<soap:Body><{action}>{body_xml}</{action}></soap:Body>"
            "</soap:Envelope>"
        )

    def _security_header(self) -> str:
        if not isinstance(self.credentials, WsSecurityCredentials):
            return ""
        return (
            '<wsse:Security xmlns:wsse="http://docs.oasis-open.org/wss/2004/01/'
            'oasis-200401-wss-wssecurity-secext-1.0.xsd">'
            "<wsse:UsernameToken>"
            f"<wsse:Username>{escape(self.credentials.username)}</wsse:Username>"
            f"<wsse:Password>{escape(self.credentials.password)}</wsse:Password>"
            "</wsse:UsernameToken>"
            "</wsse:Security>"
        )


def build_client(
    endpoint: Endpoint,
    credentials: Credentials,
    breaker: CircuitBreaker,
    *,
    fallback_version: str = DEFAULT_API_VERSION,
    transport: httpx.AsyncBaseTransport | None = None,
) -> EndpointClient:
    """Create the client implementation matching ``endpoint.transport``."""
    client_cls: type[EndpointClient]
    if endpoint.transport is TransportKind.SOAP:
        client_cls = SoapEndpointClient
    else:
        client_cls = RestEndpointClient
    return client_cls(
        endpoint,
        credentials,
        breaker,
        fallback_version=fallback_version,
        transport=transport,
    )


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _status_error(response: httpx.Response) -> GatewayError:
    status = response.status_code
    body = _decode_body(response)
    if status == 401:
        return GatewayError.authentication("authentication failed - credentials may be expired")
    if status == 404:
        return GatewayError(
            ErrorKind.NOT_FOUND,
            f"resource not found: {response.request.url.path}",
            status_code=404,
            details=body,
        )
    message = None
    if isinstance(body, dict):
        message = body.get("message")
    return GatewayError.upstream(
        message or f"upstream returned HTTP {status}",
        status_code=status,
        details=body,
        retryable=status in _TRANSIENT_STATUSES,
    )


__all__ = [
    "DEFAULT_API_VERSION",
    "EndpointClient",
    "RestEndpointClient",
    "SoapEndpointClient",
    "build_auth_headers",
    "build_client",
    "major_version",
]
