"""Pre-signature checks for inbound Stripe webhooks: rate limit and source IP."""

import time

from fastapi import Request

from toolmeter.core.exceptions import WebhookValidationError
from toolmeter.monitoring.alerts import security_event

_LOCALHOST = frozenset({"127.0.0.1", "::1", "localhost"})


class WebhookGuard:
    """Fixed-window per-IP rate limit plus an optional Stripe IP allowlist."""

    def __init__(
        self,
        allowed_ips: list[str],
        *,
        allowlist_enabled: bool = True,
        allow_localhost: bool = False,
        rate_limit: int = 100,
        window_seconds: float = 60.0,
        trusted_proxies: list[str] | None = None,
        clock=time.monotonic,
    ):
        self.allowed_ips = frozenset(allowed_ips)
        self.trusted_proxies = frozenset(trusted_proxies or ())
        self.allowlist_enabled = allowlist_enabled
        self.allow_localhost = allow_localhost
        self.rate_limit = rate_limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, tuple[int, float]] = {}  # ip -> (count, window_resets_at)

    def client_ip(self, request: Request) -> str:
        """Address of the caller.

        Forwarding headers are only honoured when the direct peer is a trusted
        proxy; x-forwarded-for is read right to left, skipping trusted hops.
        """
        peer = request.client.host if request.client else "unknown"
        if peer not in self.trusted_proxies:
            return peer

        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
            for hop in reversed(hops):
                if hop not in self.trusted_proxies:
                    return hop
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
        return peer

    async def check(self, request: Request) -> str:
        """Run both checks; return the client IP or raise WebhookValidationError."""
        ip = self.client_ip(request)
        await self.check_rate(ip)
        await self.check_source(ip)
        return ip

    async def check_rate(self, ip: str) -> None:
        now = self._clock()
        self._evict_expired(now)
        count, resets_at = self._windows.get(ip, (0, now + self.window_seconds))
        if count >= self.rate_limit:
            await security_event("rate_limit", "medium", ip_address=ip, endpoint="stripe_webhook")
            raise WebhookValidationError(429, "Too many webhook requests")
        self._windows[ip] = (count + 1, resets_at)

    async def check_source(self, ip: str) -> None:
        if not self.allowlist_enabled:
            return
        if self.allow_localhost and ip in _LOCALHOST:
            return
        if ip not in self.allowed_ips:
            await security_event("auth_failure", "high", ip_address=ip, reason="untrusted_webhook_source")
            raise WebhookValidationError(403, "Untrusted webhook source")

    def _evict_expired(self, now: float) -> None:
        expired = [ip for ip, (_, resets_at) in self._windows.items() if resets_at <= now]
        for ip in expired:
            del self._windows[ip]
