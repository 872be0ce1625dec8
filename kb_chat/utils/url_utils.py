from typing import Optional
from urllib.parse import parse_qs, urldefrag, urljoin, urlparse

YOUTUBE_HOSTS = {"www.youtube.com", "youtube.com", "m.youtube.com", "youtu.be"}

# links to these are never crawled as pages
BINARY_EXTENSIONS = (".pdf", ".jpg", ".jpeg", ".png", ".gif", ".zip", ".exe", ".dmg")


def is_valid_url(url: str) -> bool:
    """True for absolute http(s) URLs with a host."""
    try:
        parsed = urlparse(url.strip())
    except (ValueError, AttributeError):
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def extract_video_id(url: str) -> Optional[str]:
    """
    Pull the video id out of the usual YouTube URL shapes:
    youtu.be/<id>, /watch?v=<id>, /shorts/<id>, /embed/<id>, /live/<id>
    """
    if not is_valid_url(url):
        return None

    parsed = urlparse(url.strip())
    host = parsed.hostname.lower() if parsed.hostname else ""
    if host not in YOUTUBE_HOSTS:
        return None

    if host == "youtu.be":
        vid = parsed.path.lstrip("/").split("/")[0]
        return vid or None

    query_id = parse_qs(parsed.query).get("v", [None])[0]
    if query_id:
        return query_id

    parts = [p for p in parsed.path.split("/") if p]
    if len(parts) >= 2 and parts[0] in ("shorts", "embed", "live", "v"):
        return parts[1]
    return None


def is_youtube_url(url: str) -> bool:
    return extract_video_id(url) is not None


def normalize_link(href: str, base_url: str) -> Optional[str]:
    """Resolve ``href`` against the page it was found on and drop the fragment."""
    try:
        absolute, _ = urldefrag(urljoin(base_url, href.strip()))
    except ValueError:
        return None
    return absolute if is_valid_url(absolute) else None


def same_hostname(url: str, other: str) -> bool:
    return urlparse(url).hostname == urlparse(other).hostname


def is_binary_link(url: str) -> bool:
    return urlparse(url).path.lower().endswith(BINARY_EXTENSIONS)
