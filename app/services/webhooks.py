"""Outbound calls to the user's workflow engine webhooks, with a bounded timeout and operator hints."""

import os
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import httpx

from app.core.config import get_settings
from app.core.exceptions import BadRequestError, UpstreamTimeoutError, UpstreamUnreachableError
from app.core.logging import get_logger

log = get_logger(__name__)

LOOPBACK_HOSTS = ("localhost", "127.0.0.1")
DOCKER_HOST = "host.docker.internal"


def running_in_docker() -> bool:
    override = get_settings().running_in_docker
    if override is not None:
        return override
    return os.path.exists("/.dockerenv")


def _is_loopback(url: str) -> bool:
    return (urlsplit(url).hostname or "") in LOOPBACK_HOSTS


def normalize_webhook_url(url: str) -> str:
    """Inside a container, loopback points at the container itself; route to the host instead."""
    if not url or not running_in_docker() or not _is_loopback(url):
        return url
    parts = urlsplit(url)
    netloc = DOCKER_HOST + (f":{parts.port}" if parts.port else "")
    if parts.username:
        netloc = f"{parts.username}{':' + parts.password if parts.password else ''}@{netloc}"
    normalized = urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
    log.info("webhook_url_normalized", original=url, normalized=normalized)
    return normalized


def connectivity_hint(url: str) -> str:
    if _is_loopback(url):
        return (
            f'The webhook URL uses a loopback address. If this server runs in Docker, replace "localhost" '
            f'with "{DOCKER_HOST}" or the host IP in your workflow engine webhook preference.'
        )
    return "Check that the workflow engine is running and that the webhook URL is reachable from this server."


class WebhookDispatcher:
    """POSTs JSON to workflow engine webhooks. transport is injectable for tests."""

    def __init__(self, timeout_seconds: float | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.timeout_seconds = timeout_seconds or get_settings().webhook_timeout_seconds
        self.transport = transport

    async def post(self, url: str, payload: dict[str, Any], purpose: str = "webhook") -> Any:
        if not url:
            raise BadRequestError("Webhook URL is not configured")
        target = normalize_webhook_url(url)
        log.info("webhook_dispatch", purpose=purpose, url=target)
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.post(target, json=payload)
        except httpx.TimeoutException as e:
            log.warning("webhook_timeout", purpose=purpose, url=target, timeout_seconds=self.timeout_seconds)
            raise UpstreamTimeoutError(
                "Timed out waiting for the workflow engine",
                hint=(
                    f"The workflow engine did not respond within {self.timeout_seconds:g} seconds. "
                    "Check that it is running and healthy."
                ),
                details={"timeout_seconds": self.timeout_seconds, "webhook_url": url},
            ) from e
        except httpx.TransportError as e:
            log.warning("webhook_unreachable", purpose=purpose, url=target, error=repr(e))
            raise UpstreamUnreachableError(
                "Could not connect to the workflow engine",
                hint=connectivity_hint(url),
                details={"webhook_url": url},
            ) from e

        if response.is_error:
            log.warning("webhook_rejected", purpose=purpose, url=target, status_code=response.status_code)
            raise UpstreamUnreachableError(
                f"Workflow engine answered HTTP {response.status_code}",
                hint="The webhook was reached but refused the request. Check the workflow engine logs.",
                details={"webhook_url": url, "status_code": response.status_code, "body": response.text[:500]},
            )
        try:
            return response.json()
        except ValueError:
            return {}
