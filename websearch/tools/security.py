"""URL and response guards against SSRF and unsafe content.

Only literal IP addresses are checked. No DNS resolution happens before the
check, so a public hostname that resolves into a private range is not caught.
"""

import ipaddress
import re
import socket
from typing import Any
from urllib.parse import urlsplit, urlunsplit

import structlog

logger = structlog.get_logger()

FORBIDDEN_IP_RANGES = (
    "127.0.0.0/8",  # Loopback
    "10.0.0.0/8",  # Private network
    "172.16.0.0/12",  # Private network
    "192.168.0.0/16",  # Private network
    "169.254.0.0/16",  # Link-local
    "0.0.0.0/8",  # Current network
    "100.64.0.0/10",  # Shared address space
    "192.0.0.0/24",  # IETF protocol assignments
    "192.0.2.0/24",  # TEST-NET-1
    "198.51.100.0/24",  # TEST-NET-2
    "203.0.113.0/24",  # TEST-NET-3
    "224.0.0.0/4",  # Multicast
    "240.0.0.0/4",  # Reserved
    "255.255.255.255/32",  # Broadcast
)

FORBIDDEN_HOSTNAMES = (
    "metadata.google.internal",
    "169.254.169.254",  # AWS metadata
    "169.254.169.123",  # AWS time sync
    "metadata",
    "metadata.internal",
)

ALLOWED_SCHEMES = ("https",)
MAX_REDIRECTS = 5
MAX_RESPONSE_SIZE = 5 * 1024 * 1024
ALLOWED_CONTENT_TYPES = ("text/html", "application/json", "text/plain")

_IPV4_PATTERN = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")
_NUMERIC_HOST_PATTERN = re.compile(
    r"^(?:0x[0-9a-f]*|\d+)(?:\.(?:0x[0-9a-f]*|\d+)){0,3}\.?$", re.IGNORECASE
)

_SCRIPT_TAG = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_EVENT_HANDLER = re.compile(r"""\s*on\w+\s*=\s*["'][^"']*["']""", re.IGNORECASE)
_JAVASCRIPT_URI = re.compile(r"javascript:", re.IGNORECASE)
_NON_IMAGE_DATA_SRC = re.compile(r"""src\s*=\s*["']data:(?!image/)[^"']*["']""", re.IGNORECASE)


def ipv4_to_int(address: str) -> int | None:
    """Convert a dotted-quad string to a 32-bit integer, None if malformed."""
    match = _IPV4_PATTERN.match(address)
    if not match:
        return None
    octets = [int(part) for part in match.groups()]
    if any(octet > 255 for octet in octets):
        return None
    return (octets[0] << 24) | (octets[1] << 16) | (octets[2] << 8) | octets[3]


def ip_in_cidr(ip_int: int, cidr: str) -> bool:
    """Check whether a 32-bit address falls inside a CIDR block."""
    network, _, prefix_text = cidr.partition("/")
    try:
        prefix = int(prefix_text)
    except ValueError:
        return False
    if not 0 <= prefix <= 32:
        return False

    network_int = ipv4_to_int(network)
    if network_int is None:
        return False

    mask = (0xFFFFFFFF << (32 - prefix)) & 0xFFFFFFFF
    return (ip_int & mask) == (network_int & mask)


def _in_forbidden_range(ip_int: int) -> bool:
    return any(ip_in_cidr(ip_int, cidr) for cidr in FORBIDDEN_IP_RANGES)


def numeric_host_to_int(host: str) -> int | None:
    """Canonical 32-bit value of a numeric IPv4 host, as the socket layer reads it.

    Covers shorthand (127.1), single integers (2130706433), hex (0x7f000001)
    and octal (0177.0.0.1) parts. None if the host does not parse.
    """
    try:
        return int.from_bytes(socket.inet_aton(host), "big")
    except OSError:
        return None


def is_forbidden_ip(host: str) -> bool:
    """True for literal IPv4 hosts in a reserved or private range.

    Any all-numeric host is canonicalized first, so alternate spellings of a
    forbidden address are caught. Numeric hosts that do not parse (such as an
    octet above 255) count as forbidden. Bracket-free IPv6 literals that are
    not globally routable are forbidden as well.
    """
    if _NUMERIC_HOST_PATTERN.match(host):
        ip_int = numeric_host_to_int(host)
        if ip_int is None or _in_forbidden_range(ip_int):
            return True
        # Leading zeros read as octal above; the decimal reading must pass too
        decimal_int = ipv4_to_int(host) if _IPV4_PATTERN.match(host) else ip_int
        return decimal_int is None or _in_forbidden_range(decimal_int)

    if ":" in host:
        try:
            address = ipaddress.IPv6Address(host)
        except ValueError:
            return False
        if address.ipv4_mapped is not None:
            return is_forbidden_ip(str(address.ipv4_mapped))
        return not address.is_global

    return False


def is_valid_url(url: str) -> bool:
    """
    Check that a URL is safe to request.

    Rejects unparsable URLs, any scheme other than https, metadata-service
    hostnames and literal IPs inside forbidden ranges.
    """
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        # Accessing port validates it
        _ = parts.port
    except (ValueError, TypeError, AttributeError):
        logger.warning("Invalid URL format", url=url)
        return False

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        logger.warning("Invalid protocol in URL", protocol=parts.scheme, url=url)
        return False

    if not hostname:
        logger.warning("Missing hostname in URL", url=url)
        return False

    hostname = hostname.rstrip(".")
    if hostname in FORBIDDEN_HOSTNAMES:
        logger.warning("Forbidden hostname in URL", hostname=hostname, url=url)
        return False

    if is_forbidden_ip(hostname):
        logger.warning("Forbidden IP address in URL", ip=hostname, url=url)
        return False

    return True


def sanitize_url(url: str) -> str:
    """Strip credentials and fragment from a URL.

    Returns the input unchanged if it cannot be parsed.
    """
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
        port = parts.port
    except (ValueError, TypeError, AttributeError):
        logger.warning("Error sanitizing URL", url=url)
        return url

    if not parts.scheme or not hostname:
        return url

    host = f"[{hostname}]" if ":" in hostname else hostname
    netloc = f"{host}:{port}" if port is not None else host
    path = parts.path or "/"
    return urlunsplit((parts.scheme.lower(), netloc, path, parts.query, ""))


def sanitize_html(html: str) -> str:
    """
    Strip the most common script vectors from an HTML fragment.

    Regex filtering only, not a parser. Do not rely on it as the sole XSS
    defense.
    """
    sanitized = _SCRIPT_TAG.sub("", html)
    sanitized = _EVENT_HANDLER.sub("", sanitized)
    sanitized = _JAVASCRIPT_URI.sub("", sanitized)
    return _NON_IMAGE_DATA_SRC.sub('src=""', sanitized)


def is_response_size_acceptable(size: int, max_size: int = MAX_RESPONSE_SIZE) -> bool:
    return size <= max_size


def is_content_type_allowed(content_type: str | None) -> bool:
    """Check a Content-Type header against the allowlist (charset ignored)."""
    if not content_type:
        return True
    mime_type = content_type.split(";")[0].strip().lower()
    return mime_type in ALLOWED_CONTENT_TYPES


def get_security_config() -> dict[str, Any]:
    return {
        "allowed_protocols": list(ALLOWED_SCHEMES),
        "forbidden_ip_ranges": list(FORBIDDEN_IP_RANGES),
        "forbidden_hostnames": list(FORBIDDEN_HOSTNAMES),
        "max_redirects": MAX_REDIRECTS,
        "max_response_size": MAX_RESPONSE_SIZE,
        "allowed_content_types": list(ALLOWED_CONTENT_TYPES),
    }
