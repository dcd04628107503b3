"""URL helpers: system-URL filtering, origin comparison and allowlist matching."""

from urllib.parse import urlsplit

SYSTEM_URL_PREFIXES = ("chrome://", "chrome-extension://", "devtools://")


def is_system_url(url: str) -> bool:
    if not url or not isinstance(url, str):
        return False
    return url.lower().startswith(SYSTEM_URL_PREFIXES)


def extract_hostname(url: str) -> str:
    """Return the lower-cased hostname of a URL, or an empty string."""
    if not url or not isinstance(url, str):
        return ""
    try:
        return (urlsplit(url.strip()).hostname or "").lower()
    except ValueError:
        return ""


def _origin(url: str) -> tuple[str, str, int | None]:
    parts = urlsplit(url)
    if not parts.scheme or not parts.hostname:
        raise ValueError(f"URL has no origin: {url!r}")
    port = parts.port
    if port is None:
        port = {"http": 80, "https": 443}.get(parts.scheme.lower())
    return parts.scheme.lower(), parts.hostname.lower(), port


def is_same_origin(url1: str, url2: str) -> bool:
    """True when both URLs share scheme, host and (effective) port."""
    if not url1 or not url2:
        return False
    try:
        return _origin(url1) == _origin(url2)
    except ValueError:
        return False


def matches_url_or_origin(url: str, target: str) -> bool:
    return url == target or is_same_origin(url, target)


def normalize_allowlist_entry(entry: str) -> str:
    """Reduce an allowlist entry to a bare host needle.

    ``https://Example.com`` -> ``example.com``; ``*.example.com`` and
    ``.example.com`` -> ``example.com``. Returns an empty string for entries
    that are blank or cannot be parsed.
    """
    needle = (entry or "").lower().strip()
    if not needle:
        return ""
    if "://" in needle:
        try:
            needle = (urlsplit(needle).hostname or "").lower()
        except ValueError:
            return ""
    if needle.startswith("*"):
        needle = needle[1:]
    if needle.startswith("."):
        needle = needle[1:]
    return needle


def is_allowlisted(url: str, allowlist: list[str]) -> bool:
    """Case-insensitive substring match of each normalized entry against the full URL."""
    if not url or not isinstance(allowlist, (list, tuple)):
        return False

    lower_url = url.lower()
    if lower_url.startswith(SYSTEM_URL_PREFIXES):
        return True

    for entry in allowlist:
        if not isinstance(entry, str):
            continue
        needle = normalize_allowlist_entry(entry)
        if needle and needle in lower_url:
            return True
    return False
