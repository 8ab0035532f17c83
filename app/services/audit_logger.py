from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import AuditLog

logger = logging.getLogger("audit")


class AuditLogger:
    """
    Best-effort audit trail writer.

    A failed audit write is logged and swallowed; it never changes the outcome
    of the operation being audited.
    """

    def __init__(
        self,
        db: Optional[AsyncSession],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ):
        self.db = db
        self.ip_address = ip_address
        self.user_agent = user_agent

    async def log(
        self,
        *,
        action: str,
        resource: Any,
        result: str,
        user_id: Optional[int] = None,
        error: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        logger.info(
            f"{action} resource={resource} result={result}"
            + (f" error={error}" if error else "")
        )
        if self.db is None:
            return
        try:
            async with self.db.begin_nested():
                self.db.add(
                    AuditLog(
                        user_id=user_id,
                        action=action,
                        resource=str(resource) if resource is not None else None,
                        result=result,
                        error=error,
                        details=jsonable_encoder(metadata or {}),
                        ip_address=self.ip_address,
                        user_agent=self.user_agent,
                    )
                )
        except Exception as e:
            # Only the savepoint is unwound; the caller's rows stay loaded.
            logger.warning(f"Failed to write audit log '{action}': {e}")
            return
        try:
            await self.db.commit()
        except Exception as e:
            logger.warning(f"Failed to write audit log '{action}': {e}")
            try:
                await self.db.rollback()
            except Exception:
                logger.debug("Rollback after audit failure also failed")
