import io
import gzip
from urllib.request import getproxies

import urllib3
import certifi

from crumbtrail.utils import Dsn, logger, capture_internal_exceptions, json_dumps
from crumbtrail.worker import BackgroundWorker

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any, Callable, Dict, Optional, Type, Union

    from urllib3.poolmanager import PoolManager, ProxyManager

    from crumbtrail._types import Event


class Transport:
    """Baseclass for all transports.

    A transport delivers finished events. It owns whatever buffering it
    needs; the client hands every event over exactly once and never retries.
    """

    parsed_dsn: "Optional[Dsn]" = None

    def __init__(self, options: "Optional[Dict[str, Any]]" = None) -> None:
        self.options = options
        dsn = options.get("dsn") if options else None
        self.parsed_dsn = Dsn(dsn) if dsn else None

    def send(self, event: "Event") -> None:
        """
        This gets invoked with the event dictionary when an event should
        be delivered.
        """
        raise NotImplementedError()

    def flush(
        self,
        timeout: float,
        callback: "Optional[Callable[[int, float], Any]]" = None,
    ) -> None:
        """Wait `timeout` seconds for the current events to be sent out."""

    def kill(self) -> None:
        """Forcefully kills the transport."""


def _is_no_proxy_host(parsed_dsn: Dsn) -> bool:
    no_proxy = getproxies().get("no")
    if not no_proxy:
        return False
    hosts = (host.strip() for host in no_proxy.split(","))
    return any(
        host and (parsed_dsn.host.endswith(host) or parsed_dsn.netloc.endswith(host))
        for host in hosts
    )


def _select_proxy(
    parsed_dsn: Dsn, http_proxy: "Optional[str]", https_proxy: "Optional[str]"
) -> "Optional[str]":
    """
    An explicit option wins over the environment. An empty string disables
    the proxy of that scheme. The HTTP proxy is also used for HTTPS when no
    HTTPS proxy is configured.
    """
    from_env = not _is_no_proxy_host(parsed_dsn)

    if parsed_dsn.scheme == "https" and https_proxy != "":
        proxy = https_proxy or (from_env and getproxies().get("https"))
        if proxy:
            return proxy

    if http_proxy != "":
        proxy = http_proxy or (from_env and getproxies().get("http"))
        if proxy:
            return proxy

    return None


def _gzipped_json(event: "Event") -> bytes:
    body = io.BytesIO()
    with gzip.GzipFile(fileobj=body, mode="w") as f:
        f.write(json_dumps(event))
    return body.getvalue()


class HttpTransport(Transport):
    """The default HTTP transport.

    Events are posted, gzipped, to the store endpoint of the DSN from a
    background thread. Failed deliveries are logged and not retried.
    """

    def __init__(self, options: "Dict[str, Any]") -> None:
        from crumbtrail.consts import VERSION

        Transport.__init__(self, options)
        assert self.parsed_dsn is not None
        self._worker = BackgroundWorker(queue_size=options["transport_queue_size"])
        self._auth = self.parsed_dsn.to_auth("crumbtrail.python/%s" % VERSION)
        self._pool = self._make_pool(
            _select_proxy(self.parsed_dsn, options["http_proxy"], options["https_proxy"]),
            options["ca_certs"],
        )

    def _make_pool(
        self, proxy: "Optional[str]", ca_certs: "Optional[Any]"
    ) -> "Union[PoolManager, ProxyManager]":
        opts = {
            "num_pools": 2,
            "cert_reqs": "CERT_REQUIRED",
            "ca_certs": ca_certs or certifi.where(),
        }
        if proxy:
            return urllib3.ProxyManager(proxy, **opts)
        return urllib3.PoolManager(**opts)

    def _headers(self) -> "Dict[str, str]":
        return {
            "Content-Type": "application/json",
            "Content-Encoding": "gzip",
            "User-Agent": str(self._auth.client),
            "X-Sentry-Auth": self._auth.to_header(),
        }

    def _send_event(self, event: "Event") -> None:
        assert self.parsed_dsn is not None
        logger.debug(
            "Sending event, type:%s level:%s event_id:%s project:%s host:%s",
            event.get("type") or "null",
            event.get("level") or "null",
            event.get("event_id") or "null",
            self.parsed_dsn.project_id,
            self.parsed_dsn.host,
        )

        response = self._pool.request(
            "POST",
            self._auth.store_api_url,
            body=_gzipped_json(event),
            headers=self._headers(),
        )
        try:
            if not 200 <= response.status < 300:
                logger.error(
                    "Unexpected status code: %s (body: %s)",
                    response.status,
                    response.data,
                )
        finally:
            response.close()

    def send(self, event: "Event") -> None:
        def deliver() -> None:
            with capture_internal_exceptions():
                self._send_event(event)

        if not self._worker.submit(deliver):
            logger.debug(
                "Transport queue full, dropping event %s", event.get("event_id")
            )

    def flush(
        self,
        timeout: float,
        callback: "Optional[Callable[[int, float], Any]]" = None,
    ) -> None:
        logger.debug("Flushing HTTP transport")
        self._worker.flush(timeout, callback)

    def kill(self) -> None:
        logger.debug("Killing HTTP transport")
        self._worker.kill()


class _FunctionTransport(Transport):
    """Hands every event to a plain callable."""

    def __init__(self, func: "Callable[[Event], None]") -> None:
        Transport.__init__(self)
        self._func = func

    def send(self, event: "Event") -> None:
        self._func(event)


def make_transport(options: "Dict[str, Any]") -> "Optional[Transport]":
    """
    Builds the transport of a client from the ``transport`` option: an
    instance is used as is, a callable is wrapped, and a Transport subclass
    (``HttpTransport`` when unset) is instantiated when a DSN is configured.
    """
    ref_transport = options["transport"]

    if isinstance(ref_transport, Transport):
        return ref_transport

    if ref_transport is None:
        transport_cls: "Type[Transport]" = HttpTransport
    elif isinstance(ref_transport, type) and issubclass(ref_transport, Transport):
        transport_cls = ref_transport
    elif callable(ref_transport):
        return _FunctionTransport(ref_transport)
    else:
        raise TypeError("Invalid transport %r" % (ref_transport,))

    if not options["dsn"]:
        return None
    return transport_cls(options)
