"""Utility functions."""
from datetime import date, datetime, time
from pathlib import Path
from typing import Optional

from fastapi import Request

from errors import ValidationError


def resolve_under_root(root: Path, candidate: Path) -> Path:
    """Resolve a path ensuring it's under the root directory."""
    root = root.resolve()
    real = candidate.resolve()
    if root not in real.parents and real != root:
        raise ValidationError("Path is outside root")
    return real


def parse_bool(value, default: bool) -> bool:
    """Form flag parsing: only the literal string 'true' is true."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def parse_int(value, default: int, low: Optional[int] = None, high: Optional[int] = None) -> int:
    """Parse an integer form/query value, clamped to [low, high].

    Missing, malformed, infinite and zero values fall back to ``default``.
    """
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        number = 0
    if not number:
        number = default
    if low is not None:
        number = max(low, number)
    if high is not None:
        number = min(high, number)
    return number


def today_range(today: Optional[date] = None) -> tuple[datetime, datetime]:
    """Local midnight to the last microsecond of the day."""
    today = today or date.today()
    return datetime.combine(today, time.min), datetime.combine(today, time.max)


def to_millis(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def get_base_url(request: Request, configured: str = "") -> str:
    """Public base URL, honouring reverse-proxy headers."""
    if configured:
        return configured.rstrip("/")
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme or "http"
    proto = proto.split(",")[0].strip()
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{proto}://{host.split(',')[0].strip()}"


def embed_snippets(url: str) -> dict:
    return {
        "markdown": f"![image]({url})",
        "html": f'<img src="{url}" alt="image" />',
        "bbcode": f"[img]{url}[/img]",
    }
