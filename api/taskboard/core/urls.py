import ipaddress
from urllib.parse import urlparse

BLOCKED_HOSTNAMES = {"localhost", "0.0.0.0", "metadata.google.internal"}
BLOCKED_HOST_SUFFIXES = (".localhost", ".internal", ".local")


def is_internal_host(hostname: str) -> bool:
    host = hostname.strip().lower().rstrip(".")
    if not host or host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_HOST_SUFFIXES):
        return True

    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        return False
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_unspecified
        or address.is_multicast
    )


def callback_url_error(raw_url: str) -> str | None:
    """Reason a callback URL is unacceptable, or None when it is safe to store.

    Hostnames are checked as written; they are never resolved.
    """
    try:
        parsed = urlparse(raw_url.strip())
        hostname = parsed.hostname
    except ValueError:
        return "callback_url must be a valid URL"

    if not parsed.scheme or not hostname:
        return "callback_url must be a valid URL"
    if parsed.scheme.lower() != "https":
        return "callback_url must use HTTPS"
    if is_internal_host(hostname):
        return "callback_url cannot point to internal addresses"
    return None


def result_url_error(raw_url: str) -> str | None:
    try:
        parsed = urlparse(raw_url.strip())
        hostname = parsed.hostname
    except ValueError:
        return "result_url must be a valid URL"

    if not parsed.scheme or not hostname:
        return "result_url must be a valid URL"
    if parsed.scheme.lower() not in {"http", "https"}:
        return "result_url must be HTTP or HTTPS"
    return None
