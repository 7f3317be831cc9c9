"""Network egress policy for tools that reach external hosts.

The reference ``http`` tool fetches through ``AllowlistedFetcher`` so a
workflow can only talk to hosts the operator allowlisted. The same host
matching (exact names, ``*.`` wildcards and CIDR blocks) backs the
security audit's blocked-domain check.
"""
from __future__ import annotations

import ipaddress
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import urlparse

import httpx

from stepflow.logging import get_logger

if TYPE_CHECKING:
    from stepflow.config import Settings

logger = get_logger(__name__)


class SandboxError(Exception):
    """Raised when a tool request violates the egress policy."""


@dataclass
class ToolNetworkPolicy:
    """Network egress policy for tool execution.

    Attributes:
        allowlist: Allowed target host patterns (hostname, wildcard, or CIDR)
        proxy_url: Optional HTTP proxy all tool fetches must use
        connect_timeout: Connection timeout in seconds
        total_timeout: Total request timeout in seconds
    """

    allowlist: list[str] = field(default_factory=list)
    proxy_url: Optional[str] = None
    connect_timeout: float = 10.0
    total_timeout: float = 30.0


def _normalize_hosts(entries: Sequence[str] | None) -> list[str]:
    normalized: list[str] = []
    for entry in entries or []:
        stripped = entry.strip().lower()
        if stripped:
            normalized.append(stripped)
    return normalized


def build_tool_network_policy(
    *,
    allowlist: Sequence[str] | None,
    proxy_url: Optional[str],
    connect_timeout: float = 10.0,
    total_timeout: float = 30.0,
) -> ToolNetworkPolicy:
    """Create a normalized ToolNetworkPolicy from raw values."""

    return ToolNetworkPolicy(
        allowlist=_normalize_hosts(list(allowlist or [])),
        proxy_url=proxy_url,
        connect_timeout=connect_timeout,
        total_timeout=total_timeout,
    )


def policy_from_settings(settings: "Settings") -> ToolNetworkPolicy:
    return build_tool_network_policy(
        allowlist=settings.tool_network_allowlist,
        proxy_url=settings.tool_network_proxy_url,
        connect_timeout=settings.tool_fetch_connect_timeout,
        total_timeout=settings.tool_fetch_timeout,
    )


def host_matches(host: str, patterns: Sequence[str]) -> bool:
    """Check ``host`` against exact names, ``*.suffix`` wildcards and CIDRs.

    A wildcard also matches the bare domain, so ``*.ngrok.io`` covers
    ``ngrok.io`` and ``abc.ngrok.io``.
    """
    if not host:
        return False
    lowered = host.lower().rstrip(".")
    for entry in patterns:
        candidate = entry.lower()
        if candidate.startswith("*."):
            if lowered.endswith(candidate[1:]) or lowered == candidate[2:]:
                return True
        elif lowered == candidate:
            return True
        elif "/" in candidate:
            try:
                net = ipaddress.ip_network(candidate, strict=False)
                ip_obj = ipaddress.ip_address(lowered)
            except ValueError:
                continue
            if ip_obj in net:
                return True
    return False


def url_host(url: str) -> Optional[str]:
    """Hostname of ``url`` or None when it has none."""
    try:
        return urlparse(url).hostname
    except ValueError:
        return None


class AllowlistedFetcher:
    """HTTP client enforcing tool network allowlist and proxy requirements."""

    def __init__(self, policy: ToolNetworkPolicy, transport: Optional[httpx.BaseTransport] = None):
        self.policy = policy
        self._transport = transport

    def check(self, url: str) -> str:
        host = url_host(url)
        if not host:
            raise SandboxError("URL is missing host for tool fetch")

        if not self.policy.allowlist:
            raise SandboxError("Tool network allowlist is empty; outbound fetch blocked")

        if not host_matches(host, self.policy.allowlist):
            raise SandboxError(f"Target host '{host}' is not allowlisted for tool fetch")
        return host

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        content: Any = None,
    ) -> httpx.Response:
        host = self.check(url)
        timeout = httpx.Timeout(self.policy.total_timeout, connect=self.policy.connect_timeout)
        client_kwargs: dict[str, Any] = {"timeout": timeout, "follow_redirects": False}
        if self._transport is not None:
            client_kwargs["transport"] = self._transport
        elif self.policy.proxy_url:
            client_kwargs["proxy"] = self.policy.proxy_url
        try:
            with httpx.Client(**client_kwargs) as client:
                return client.request(
                    method,
                    url,
                    headers=headers,
                    params=params,
                    json=json,
                    content=content,
                )
        except httpx.TimeoutException as exc:
            logger.warning("tool_fetch_timeout", host=host, method=method)
            raise SandboxError("tool fetch timed out") from exc
        except httpx.HTTPError as exc:
            raise SandboxError(f"tool fetch failed: {exc}") from exc


__all__ = [
    "SandboxError",
    "ToolNetworkPolicy",
    "build_tool_network_policy",
    "policy_from_settings",
    "host_matches",
    "url_host",
    "AllowlistedFetcher",
]
