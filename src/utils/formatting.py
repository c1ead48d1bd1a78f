"""Display helpers for timestamps, citation links and costs."""

from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse


def format_timestamp(seconds: float) -> str:
    """Format seconds as MM:SS, or H:MM:SS past the hour.

    Examples:
        >>> format_timestamp(125)
        "02:05"
        >>> format_timestamp(3725)
        "1:02:05"
    """
    total_seconds = int(max(seconds, 0))
    hours = total_seconds // 3600
    minutes = (total_seconds % 3600) // 60
    secs = total_seconds % 60

    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_video_url(url: str | None, start_seconds: float | None = None) -> str | None:
    """Add a ``t=<seconds>s`` parameter to a video URL.

    Args:
        url: Video page URL. None passes through.
        start_seconds: Optional start time. Zero or less leaves the URL as is.

    Examples:
        >>> format_video_url("https://youtube.com/watch?v=abc", 120)
        "https://youtube.com/watch?v=abc&t=120s"
    """
    if not url:
        return None
    if start_seconds is None or start_seconds <= 0:
        return url

    parts = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k != "t"]
    query.append(("t", f"{int(start_seconds)}s"))
    return urlunparse(parts._replace(query=urlencode(query)))


def format_cost(cost: float) -> str:
    """Format a dollar amount, keeping precision for sub-cent costs."""
    if cost < 0.01:
        return f"${cost:.6f}"
    return f"${cost:.4f}"
