from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, new_id
from ..infra.sql import Gated
from ..logs import get_logger
from .db import AuditLog

log = get_logger("audit")

ORDER_PAID = "order_paid"
ORDER_UPDATED = "order_updated"
DOWNLOAD_GENERATED = "download_generated"
DOWNLOAD_COMPLETED = "download_completed"
LICENSE_VERIFIED = "license_verified"
ADMIN_ACTION = "admin_action"


class AuditLogger:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def record(
        self, action: str, resource_type: str,
        resource_id: Optional[str] = None, *,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        # an audit failure must never fail the request that caused it
        try:
            async with self.gated():
                async with self.db.begin():
                    self.db.add(AuditLog(
                        id=new_id(),
                        user_id=user_id,
                        action=action,
                        resource_type=resource_type,
                        resource_id=resource_id,
                        details=details or {},
                        ip_address=ip_address,
                        user_agent=user_agent,
                        created_at=now_ts(),
                    ))
        except Exception:
            log.exception("audit write failed", action=action,
                          resource_id=resource_id)
            return False
        return True

    async def recent(self, limit: int = 100, offset: int = 0,
                     action: Optional[str] = None,
                     resource_type: Optional[str] = None,
                     user_id: Optional[str] = None) -> List[AuditLog]:
        stmt = select(AuditLog).order_by(AuditLog.created_at.desc())
        if action:
            stmt = stmt.where(AuditLog.action == action)
        if resource_type:
            stmt = stmt.where(AuditLog.resource_type == resource_type)
        if user_id:
            stmt = stmt.where(AuditLog.user_id == user_id)
        async with self.gated():
            async with self.db.begin():
                return list((await self.db.execute(
                    stmt.limit(max(1, min(limit, 500)))
                    .offset(max(0, offset))
                )).scalars().all())
