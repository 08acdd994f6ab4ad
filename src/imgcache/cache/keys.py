"""
Cache key derivation.

Map tile services spread requests over numbered subdomains (a1, a2, tiles1,
tiles2 ...) to get past per-host connection limits, so the same tile is served
from several hosts. Keys are derived from a canonical URL with those digits
removed, which lets all mirrors share a single cache entry.

The trade-off is accepted: two different images at the same path on
`subdomain1.example.com` and `subdomain2.example.com` map to one key, and only
the first one stored is ever served.
"""

from __future__ import annotations

import hashlib
import ipaddress
import re
from urllib.parse import urlsplit, urlunsplit

from imgcache.types import CacheKey

_TRAILING_DIGIT_RE = re.compile(r"\d$")


def _is_ip_address(hostname: str) -> bool:
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return True


def remove_tile_subdomain(hostname: str) -> str:
    """Strip one trailing digit from every label left of the registrable domain.

    Example:
        remove_tile_subdomain("ecn.t1.tiles.virtualearth.net")
        # "ecn.t.tiles.virtualearth.net"
    """
    if _is_ip_address(hostname):
        return hostname

    labels = hostname.split(".")
    subdomains = [_TRAILING_DIGIT_RE.sub("", label) for label in labels[:-2]]
    return ".".join(subdomains + labels[-2:])


def normalize_url(url: str) -> str:
    """Rebuild `url` with tile-server subdomain digits removed.

    URLs without a hostname (blob handles, data URIs, relative paths) and
    URLs whose authority cannot be parsed are returned unchanged.
    """
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError:
        return url

    if not hostname:
        return url

    userinfo, at, hostport = parts.netloc.rpartition("@")
    if hostport.startswith("["):
        # IPv6 literal
        return url

    _, colon, port = hostport.partition(":")
    netloc = f"{userinfo}{at}{remove_tile_subdomain(hostname)}{colon}{port}"
    return urlunsplit(parts._replace(netloc=netloc))


def derive_key(url: str) -> CacheKey:
    """Derive the cache key for a resource URL.

    Returns:
        Lowercase hex SHA-256 of the normalized URL.
    """
    return hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()
