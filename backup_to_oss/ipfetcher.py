"""
Public IP discovery.

The backup host's public address is recorded in snapshot manifests so a
restore can tell which machine produced an object. Several lookup
services are tried in order; each gets a few attempts.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
TIMEOUT_SECONDS = 10.0


class IPFetchError(Exception):
    """No service returned a public IP."""

    pass


def _text(response: httpx.Response) -> str:
    return response.text.strip()


def _json_object(value: Any) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"expected a JSON object, got {type(value).__name__}")
    return value


def _httpbin(response: httpx.Response) -> str:
    return str(_json_object(response.json()).get("origin", "")).strip()


def _adspower(response: httpx.Response) -> str:
    data = _json_object(response.json()).get("data") or {}
    return str(_json_object(data).get("ip", "")).strip()


SERVICES: list[tuple[str, str, Callable[[httpx.Response], str]]] = [
    ("ipinfo.io", "https://ipinfo.io/ip", _text),
    ("httpbin.org", "https://httpbin.org/ip", _httpbin),
    ("ip.sb", "http://ip.sb", _text),
    ("ip-scan.adspower.net", "https://ip-scan.adspower.net/sys/config/ip/get-visitor-ip", _adspower),
]


class PublicIPFetcher:
    """Fetches the public IP from the first service that answers.

    Attributes:
        max_retries: Attempts per service
        timeout: Per-request timeout in seconds

    Example:
        >>> ip = PublicIPFetcher().fetch()
    """

    def __init__(
        self,
        max_retries: int = MAX_RETRIES,
        timeout: float = TIMEOUT_SECONDS,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep

    def fetch(self) -> str:
        """Return the public IP.

        Raises:
            IPFetchError: If every service fails
        """
        logger.debug("Fetching public IP")
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            for name, url, extract in SERVICES:
                try:
                    ip = self._fetch_one(client, url, extract)
                except (httpx.HTTPError, ValueError) as e:
                    logger.debug(
                        "Public IP service failed, trying next",
                        extra={"service": name, "error": str(e)},
                    )
                    continue
                if ip:
                    logger.info("Fetched public IP", extra={"service": name, "ip": ip})
                    return ip
                logger.debug("Public IP service returned nothing", extra={"service": name})

        raise IPFetchError("All services failed to return a public IP")

    def _fetch_one(
        self,
        client: httpx.Client,
        url: str,
        extract: Callable[[httpx.Response], str],
    ) -> str:
        for attempt in range(self.max_retries):
            last = attempt == self.max_retries - 1
            try:
                response = client.get(url)
            except httpx.TransportError:
                if last:
                    raise
                self._sleep(self.sleep_duration(attempt))
                continue

            if response.status_code != httpx.codes.OK:
                if last:
                    raise httpx.HTTPStatusError(
                        f"HTTP status: {response.status_code}",
                        request=response.request,
                        response=response,
                    )
                self._sleep(self.sleep_duration(attempt))
                continue

            # A body that is not the expected JSON fails the service at once
            ip = extract(response)
            if ip:
                return ip

        return ""

    @staticmethod
    def sleep_duration(attempt: int) -> float:
        """Back-off before the next attempt: 2s plus 100ms per attempt."""
        return 2.0 + attempt * 0.1
