"""URL validation used before any outbound image request.

Host checks are lexical: the hostname string is compared against blocked
literals and, when it is an IP literal, against blocked ranges. Numeric IPv4
shorthand (`0`, `0x7f.1`, `2852039166`, octal parts) is canonicalised the way
the system resolver reads it before the range check. No DNS resolution
happens here.
"""

from __future__ import annotations

import ipaddress
import re
import socket
from urllib.parse import urljoin, urlsplit, urlunsplit

from utils.errors import ValidationError

BLOCKED_HOSTNAMES = {
    "0.0.0.0",
    "::",
    "[::]",
    "169.254.169.254",
    "metadata.google.internal",
}
LOCAL_HOSTNAMES = {"127.0.0.1", "localhost"}
ASSET_PORT = 9000
ASSET_FALLBACK_PORT = 8000
NUMERIC_HOST_RE = re.compile(r"^(0x[0-9a-f]*|[0-9]+)(\.(0x[0-9a-f]*|[0-9]+)){0,3}$")


def canonical_ipv4(host: str) -> ipaddress.IPv4Address | None:
    """Read a numeric IPv4 host in any inet_aton form, or return None."""
    if not NUMERIC_HOST_RE.match(host):
        return None
    try:
        return ipaddress.IPv4Address(socket.inet_aton(host))
    except OSError:
        return None


def is_blocked_host(hostname: str | None) -> bool:
    """Return True when the hostname must never be fetched."""
    host = (hostname or "").strip().lower().rstrip(".")
    if not host:
        return True
    if host in BLOCKED_HOSTNAMES:
        return True
    try:
        address = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        address = canonical_ipv4(host)
        if address is None:
            return False
    if address.version == 4:
        if str(address) == "255.255.255.255":
            return True
        first, second = address.packed[0], address.packed[1]
        return first == 0 or (first == 169 and second == 254)
    mapped = address.ipv4_mapped
    if mapped is not None:
        return str(mapped) == "0.0.0.0"
    return address.is_unspecified


def is_local_host(hostname: str | None) -> bool:
    return (hostname or "").lower() in LOCAL_HOSTNAMES


def normalize_http_url(raw: str | None) -> str:
    """Validate an image URL and return its canonical string form.

    Raises:
        ValidationError: Empty/invalid URL, non-http(s) scheme, embedded
            credentials, or a blocked host.
    """
    text = (raw or "").strip()
    if not text:
        raise ValidationError("imageUrl must not be empty.", code="MISSING_IMAGE_URL")
    try:
        parts = urlsplit(text)
        hostname = parts.hostname
        port = parts.port
    except ValueError as exc:
        raise ValidationError("imageUrl is not a valid URL.", code="INVALID_IMAGE_URL") from exc

    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        raise ValidationError("imageUrl only supports http/https.", code="INVALID_IMAGE_PROTOCOL")
    if not parts.netloc:
        raise ValidationError("imageUrl is not a valid URL.", code="INVALID_IMAGE_URL")
    if parts.username or parts.password:
        raise ValidationError("imageUrl must not contain a username or password.", code="UNSAFE_IMAGE_URL")
    if is_blocked_host(hostname):
        raise ValidationError("imageUrl points to a restricted address.", status=403, code="BLOCKED_IMAGE_HOST")

    host = hostname or ""
    if ":" in host:
        host = f"[{host}]"
    default_port = 80 if scheme == "http" else 443
    netloc = host if port in (None, default_port) else f"{host}:{port}"
    return urlunsplit((scheme, netloc, parts.path or "/", parts.query, ""))


def resolve_redirect(location: str, current_url: str) -> str:
    """Resolve a Location header against the current URL and re-validate it."""
    return normalize_http_url(urljoin(current_url, location))


def with_port(url: str, port: int) -> str:
    parts = urlsplit(url)
    host = parts.hostname or ""
    return urlunsplit((parts.scheme, f"{host}:{port}", parts.path, parts.query, parts.fragment))


def build_candidate_urls(origin_url: str) -> list[str]:
    """Return the origin URL plus an alternate-port candidate for local assets.

    Local OpenAI-compatible backends sometimes report file URLs on the asset
    port while the files are actually served on the API port.
    """
    candidates = [origin_url]
    parts = urlsplit(origin_url)
    if is_local_host(parts.hostname) and parts.port == ASSET_PORT:
        candidates.append(with_port(origin_url, ASSET_FALLBACK_PORT))
    return list(dict.fromkeys(candidates))
