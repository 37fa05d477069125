"""Multi-endpoint connector for aumai-qmgateway."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import structlog

from aumai_qmgateway.circuit_breaker import CircuitBreaker
from aumai_qmgateway.client import EndpointClient, build_client
from aumai_qmgateway.config import GatewayConfig
from aumai_qmgateway.errors import GatewayError
from aumai_qmgateway.models import CircuitState, Endpoint

logger = structlog.get_logger(__name__)

TransportFactory = Callable[[Endpoint], httpx.AsyncBaseTransport | None]


class Connector:
    """Registry of named :class:`~aumai_qmgateway.client.EndpointClient` objects.

    One client (with its own circuit breaker) is built per configured
    endpoint, in configuration order.  A non-default endpoint that fails to
    build is logged and skipped; failing to build the default endpoint is
    fatal.

    Example::

        connector = Connector(config)
        client = connector.fallback_to_secondary("primary")
        lots = await client.get("/api/lots")

    Args:
        config: Validated gateway configuration.
        transport_factory: Optional hook returning an httpx transport per
                           endpoint (used to plug in mock transports).
        clock: Time source handed to each circuit breaker.
    """

    def __init__(
        self,
        config: GatewayConfig,
        transport_factory: TransportFactory | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._config = config
        self._clients: dict[str, EndpointClient] = {}
        breaker_settings = config.security.circuit_breaker
        default_name = config.backend.default_endpoint

        for endpoint in config.backend.endpoints:
            breaker_kwargs = {} if clock is None else {"clock": clock}
            try:
                breaker = CircuitBreaker(
                    endpoint.name,
                    failure_threshold=breaker_settings.failure_threshold,
                    reset_timeout_ms=breaker_settings.reset_timeout_ms,
                    enabled=breaker_settings.enabled,
                    **breaker_kwargs,
                )
                client = build_client(
                    endpoint,
                    config.backend.credentials,
                    breaker,
                    fallback_version=config.backend.version_negotiation.fallback_version,
                    transport=transport_factory(endpoint) if transport_factory else None,
                )
            except Exception as exc:
                logger.error("client_init_failed", endpoint=endpoint.name, error=str(exc))
                if endpoint.name == default_name:
                    raise GatewayError.validation(
                        f"default endpoint client '{default_name}' could not be initialized: {exc}"
                    ) from exc
                continue
            self._clients[endpoint.name] = client

        if default_name not in self._clients:
            raise GatewayError.validation(
                f"default endpoint client '{default_name}' not initialized"
            )
        self._default = self._clients[default_name]

    @property
    def default_client(self) -> EndpointClient:
        return self._default

    def names(self) -> list[str]:
        """Registered endpoint names in registration order."""
        return list(self._clients)

    def get_client(self, name: str | None = None) -> EndpointClient:
        """Return the client for *name*, or the default.

        An unknown *name* falls back to the default client with a warning;
        this never raises.
        """
        if name is None:
            return self._default
        client = self._clients.get(name)
        if client is None:
            logger.warning(
                "endpoint_not_found_using_default", requested=name, default=self._default.name
            )
            return self._default
        return client

    def fallback_to_secondary(self, name: str) -> EndpointClient:
        """Return *name*'s client, or the first healthy alternative if its circuit is open."""
        primary = self._clients.get(name)
        if primary is not None and primary.circuit_state is CircuitState.OPEN:
            for other_name, client in self._clients.items():
                if other_name != name and client.circuit_state is not CircuitState.OPEN:
                    logger.info("endpoint_failover", from_endpoint=name, to_endpoint=other_name)
                    return client
        return primary if primary is not None else self._default

    async def negotiate_version(self, name: str | None = None) -> str:
        """Negotiate (or merely detect) the API version of an endpoint."""
        client = self.get_client(name)
        negotiation = self._config.backend.version_negotiation
        if negotiation.enabled:
            return await client.negotiate_version(negotiation.supported_versions)
        return await client.detect_version()

    async def detect_versions(self) -> dict[str, str | None]:
        """Warm up version detection on every client; failures are logged."""
        versions: dict[str, str | None] = {}
        for name, client in self._clients.items():
            try:
                versions[name] = await client.detect_version()
            except Exception as exc:
                logger.warning("version_detection_failed", endpoint=name, error=str(exc))
                versions[name] = None
        return versions

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()


__all__ = ["Connector", "TransportFactory"]
