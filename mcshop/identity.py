"""
Client for the hosted identity provider.

The provider owns user accounts. We only ever ask it two things: who does
this bearer token belong to, and what is this user's email. Admin is an
explicit ``role`` claim (``app_metadata.role`` or top-level ``role``); a
free-form metadata flag is not trusted.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

import httpx

from . import config
from .logs import get_logger

log = get_logger("identity")

ADMIN_ROLE = "admin"


@dataclass
class Identity:
    id: str
    email: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def to_session(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_session(cls, data: Any) -> Optional["Identity"]:
        if not isinstance(data, dict) or not data.get("id"):
            return None
        return cls(id=data["id"], email=data.get("email"),
                   role=data.get("role"))

    @classmethod
    def from_user(cls, user: Dict[str, Any]) -> "Identity":
        app_meta = user.get("app_metadata") or {}
        role = app_meta.get("role") if isinstance(app_meta, dict) else None
        return cls(id=str(user["id"]), email=user.get("email"),
                   role=role or user.get("role"))


class IdentityClient:
    def __init__(self, http: httpx.AsyncClient, *,
                 base_url: str = config.IDENTITY_URL,
                 api_key: str = config.IDENTITY_API_KEY,
                 timeout: float = config.HTTP_TIMEOUT_SECONDS) -> None:
        self.http = http
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def _get(self, path: str,
                   bearer: str) -> Optional[Dict[str, Any]]:
        try:
            r = await self.http.get(
                f"{self.base_url}{path}",
                headers={"authorization": f"Bearer {bearer}",
                         "apikey": self.api_key},
                timeout=self.timeout,
            )
        except httpx.HTTPError as e:
            log.warning("identity provider unreachable", error=str(e))
            return None
        if r.status_code != 200:
            return None
        try:
            data = r.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    async def user_for_token(self, token: str) -> Optional[Identity]:
        if not self.enabled or not token:
            return None
        data = await self._get("/user", token)
        if not data or not data.get("id"):
            return None
        return Identity.from_user(data)

    async def get_user_by_id(self, user_id: str) -> Optional[Identity]:
        """Admin lookup with the service key; used for contact emails."""
        if not self.enabled or not self.api_key:
            return None
        data = await self._get(f"/admin/users/{user_id}", self.api_key)
        if not data or not data.get("id"):
            return None
        return Identity.from_user(data)

    async def email_for(self, user_id: str) -> Optional[str]:
        ident = await self.get_user_by_id(user_id)
        return ident.email if ident else None
