import time
import re
import uuid
from datetime import datetime, timezone
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


MINECRAFT_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{3,16}$")


def is_valid_minecraft_username(username: Optional[str]) -> bool:
    if not username:
        return False
    return MINECRAFT_USERNAME_RE.match(username) is not None


def client_info(headers) -> tuple[Optional[str], Optional[str]]:
    """(ip, user_agent) as reported by the proxy in front of us."""
    fwd = headers.get("x-forwarded-for")
    ip = None
    if fwd:
        ip = fwd.split(",")[0].strip() or None
    ip = ip or headers.get("x-real-ip")
    return ip, headers.get("user-agent")
