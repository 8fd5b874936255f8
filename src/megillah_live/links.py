"""Share links for live sessions."""

from urllib.parse import parse_qs, urlencode, urlparse

from megillah_live.models import is_valid_code

JOIN_PATH = "/live/join"


def share_url(code: str, base_url: str = "https://megillah.app") -> str:
    """Build the invite link followers open to join a session."""
    return f"{base_url.rstrip('/')}{JOIN_PATH}?{urlencode({'code': code})}"


def parse_join_link(url: str) -> str | None:
    """Extract the session code from an invite link.

    Accepts both ``/live/join?code=X`` and ``/live?code=X``. Returns None when
    the link carries no valid six-digit code.
    """
    parsed = urlparse(url)
    if not parsed.path.rstrip("/").endswith(("/live", JOIN_PATH)):
        return None

    codes = parse_qs(parsed.query).get("code", [])
    if not codes:
        return None

    code = codes[0].strip()
    return code if is_valid_code(code) else None
