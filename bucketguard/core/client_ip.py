"""Client address extraction for per-address rate limiting."""

from typing import Any


def get_client_ip(request: Any) -> str:
    """Get the client address from request metadata.

    Works with any Starlette/ASGI-shaped request object: ``request.headers``
    must support ``.get()`` and ``request.client`` may carry a ``host``.

    Priority:
    1. X-Real-IP header (set by a trusted proxy)
    2. Left-most entry of X-Forwarded-For (the originating client)
    3. The transport peer address

    Returns:
        The client address, or an empty string if none is present.
    """
    headers = getattr(request, "headers", None) or {}

    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    client = getattr(request, "client", None)
    host = getattr(client, "host", None) if client is not None else None
    return host or ""
