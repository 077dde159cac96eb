import tldextract
from urllib.parse import urlparse, urlunparse, urljoin, parse_qsl, urlencode

# Offline extractor: uses the suffix list snapshot bundled with tldextract
_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())

_TRACKING_PREFIXES = ("utm_", "fbclid", "gclid", "mc_cid", "mc_eid")
_DEFAULT_PORTS = {"http": "80", "https": "443"}


def normalize_url(url: str, base: str | None = None) -> str:
    """
    Identity form used for frontier dedup:
    - lowercase scheme + host, default port dropped
    - no fragment, no tracking query params
    - trailing slash stripped except at root
    """
    if not url:
        return ""
    url = url.strip()
    if base:
        url = urljoin(base, url)
    if "://" not in url:
        url = "https://" + url

    p = urlparse(url)
    scheme = (p.scheme or "https").lower()
    netloc = p.netloc.lower()
    if ":" in netloc:
        host, port = netloc.rsplit(":", 1)
        if _DEFAULT_PORTS.get(scheme) == port:
            netloc = host

    path = p.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    query = ""
    if p.query:
        kept = [(k, v) for k, v in parse_qsl(p.query, keep_blank_values=True)
                if not k.lower().startswith(_TRACKING_PREFIXES)]
        query = urlencode(kept)

    return urlunparse((scheme, netloc, path, "", query, ""))


def host_of(url: str) -> str:
    """Lowercase hostname without port; empty string when unparsable."""
    if not url:
        return ""
    if "://" not in url:
        url = "https://" + url
    return (urlparse(url).hostname or "").lower()


def registered_domain(url: str) -> str:
    ext = _EXTRACT(url)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return host_of(url)


def same_site(url: str, other: str) -> bool:
    return registered_domain(url) == registered_domain(other)


def is_http(url: str) -> bool:
    return urlparse(url).scheme in ("http", "https")


def seed_to_url(seed: str) -> str:
    """Accepts a bare domain or a full URL and returns a fetchable URL."""
    seed = (seed or "").strip()
    if not seed:
        return ""
    if "://" not in seed:
        seed = "https://" + seed
    p = urlparse(seed)
    if not p.hostname or "." not in p.hostname:
        return ""
    return normalize_url(seed)
