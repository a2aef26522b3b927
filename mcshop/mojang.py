from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import httpx

from . import config
from .helpers import is_valid_minecraft_username
from .logs import get_logger

log = get_logger("mojang")


@dataclass
class Validation:
    valid: bool
    uuid: Optional[str] = None
    name: Optional[str] = None
    error: Optional[str] = None

    def as_response(self) -> dict:
        if self.valid:
            return {"valid": True,
                    "profile": {"id": self.uuid, "name": self.name}}
        return {"valid": False, "error": self.error}


async def validate_username(http: httpx.AsyncClient,
                            username: Optional[str]) -> Validation:
    """Check a player name against the Mojang profile API."""
    if not username or not username.strip():
        return Validation(False,
                          error="El nombre de usuario no puede estar vacío")
    if not is_valid_minecraft_username(username):
        return Validation(
            False,
            error="El nombre de usuario debe tener entre 3 y 16 caracteres "
                  "(solo letras, números y guiones bajos)",
        )

    url = f"{config.MOJANG_PROFILE_URL}/{quote(username)}"
    try:
        r = await http.get(url, timeout=config.HTTP_TIMEOUT_SECONDS)
        if r.status_code in (204, 404):
            return Validation(
                False, error="Este nombre de usuario de Minecraft no existe"
            )
        r.raise_for_status()
        data = r.json()
    except (httpx.HTTPError, ValueError) as e:
        log.warning("mojang lookup failed", username=username, error=str(e))
        return Validation(
            False,
            error="Error al validar el nombre de usuario. "
                  "Por favor intenta de nuevo.",
        )
    return Validation(True, uuid=data.get("id"), name=data.get("name"))
