"""
Link normalization and canonical key derivation.

A canonical key is the host and path of a URL with scheme and query dropped,
so that ``https://example.com/a?x=1`` and ``http://example.com/a`` name the
same crawl target: ``example.com/a``.
"""

import re
from dataclasses import dataclass
from urllib.parse import urlsplit


_CONTROL_CHARS = re.compile(r'[\x00-\x20\x7f]')
_BAD_PERCENT_ESCAPE = re.compile(r'%(?![0-9A-Fa-f]{2})')
_SCHEME_PREFIX = re.compile(r'^([A-Za-z][A-Za-z0-9+.-]*):(.*)$', re.DOTALL)
# "host:8080/a" is a port, not a scheme
_PORT = re.compile(r'^\d+(?:[/?#]|$)')

FETCHABLE_SCHEMES = ('http', 'https')


class InvalidLinkError(ValueError):
    """Raised when a URL cannot be turned into a canonical key."""
    pass


@dataclass(frozen=True)
class SiteLink:
    """Host and path of a crawled page."""
    host: str
    path: str = ""

    def __str__(self) -> str:
        return self.host + self.path

    @classmethod
    def from_key(cls, key: str) -> 'SiteLink':
        """Split a canonical key back into host and path."""
        host, sep, rest = key.partition('/')
        return cls(host=host, path=sep + rest)


def canonical_key(url: str) -> str:
    """
    Derive the canonical key (host + path) for a URL.

    Input without ``://`` is read as host + path, which makes the function
    idempotent: ``canonical_key(canonical_key(u)) == canonical_key(u)``.
    Only http and https links have keys; ``host:port`` is not a scheme.

    Raises:
        InvalidLinkError: if the URL cannot be parsed or is not a web link.
    """
    if not url or not url.strip():
        raise InvalidLinkError("empty link")
    if _CONTROL_CHARS.search(url):
        raise InvalidLinkError(f"invalid control character in link: {url!r}")
    if _BAD_PERCENT_ESCAPE.search(url):
        raise InvalidLinkError(f"invalid percent escape in link: {url!r}")

    scheme = _SCHEME_PREFIX.match(url)
    if scheme:
        name, rest = scheme.group(1).lower(), scheme.group(2)
        if rest.startswith('//'):
            if name not in FETCHABLE_SCHEMES:
                raise InvalidLinkError(f"unsupported scheme {name!r} in link: {url!r}")
        elif not _PORT.match(rest):
            # mailto:, javascript:, tel: and the like
            raise InvalidLinkError(f"link is not a web address: {url!r}")

    # scheme-less links (including derived keys) are read as host + path
    target = url if '://' in url else '//' + url
    try:
        parsed = urlsplit(target)
    except ValueError as e:
        raise InvalidLinkError(f"failed to parse link {url!r}: {e}") from e

    key = parsed.netloc + parsed.path
    if not key:
        raise InvalidLinkError(f"link has neither host nor path: {url!r}")
    return key


def site_link_for(url: str) -> SiteLink:
    """Parse a URL into its SiteLink."""
    return SiteLink.from_key(canonical_key(url))


def is_relative_link(link: str) -> bool:
    return link.startswith('/') or link.startswith('./')


def resolve_link(origin_host: str, link: str) -> str:
    """
    Resolve a link found on a page hosted at ``origin_host``.

    Relative links (``/x`` or ``./x``) lose one leading dot and are appended
    to the host without a scheme. Anything else is returned unchanged.
    """
    if is_relative_link(link):
        if link.startswith('.'):
            link = link[1:]
        return origin_host + link
    return link


def normalize_scheme(url: str) -> str:
    """Prefix ``https://`` unless the URL already names http or https."""
    if url.startswith('http://') or url.startswith('https://'):
        return url
    return 'https://' + url
