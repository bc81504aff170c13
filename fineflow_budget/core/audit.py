import hashlib
import logging
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fineflow_budget.core.logging import get_logger
from fineflow_budget.infrastructure.models import AuditLogModel

logger = get_logger(__name__)

GENESIS_HASH = "0" * 64


def _canonical(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


class AuditLogger:
    """
    Tamper-evident audit trail for budget settings changes and blocked operations.

    Each entry stores the hash of its predecessor; the entry hash is the
    SHA-256 of ``prev_hash|canonical_json(event)``.
    """

    def __init__(self, session_factory: Any):
        self._session_factory = session_factory

    async def _get_tail(self, session: AsyncSession) -> tuple[int, str]:
        """Return (sequence, hash) of the newest entry, or the genesis values."""
        stmt = select(AuditLogModel.sequence, AuditLogModel.hash).order_by(AuditLogModel.sequence.desc()).limit(1)
        row = (await session.execute(stmt)).first()
        if row is None:
            return 0, GENESIS_HASH
        return row.sequence, row.hash

    @staticmethod
    def _calculate_hash(prev_hash: str, event: Dict[str, Any]) -> str:
        message = f"{prev_hash}|{_canonical(event)}"
        return hashlib.sha256(message.encode("utf-8")).hexdigest()

    @staticmethod
    def _event(
        event_type: str,
        actor_id: Optional[str],
        target_id: str,
        target_type: str,
        payload: Dict[str, Any],
        recorded_at: str,
    ) -> Dict[str, Any]:
        return {
            "event_type": event_type,
            "actor_id": actor_id,
            "target_id": target_id,
            "target_type": target_type,
            "payload": payload,
            "recorded_at": recorded_at,
        }

    async def log(
        self,
        event_type: str,
        actor_id: Optional[str],
        target_id: str,
        target_type: str = "project",
        payload: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append an audit event and return its hash."""
        payload = json.loads(_canonical(self._redact(payload or {})))
        recorded_at = datetime.now(timezone.utc).isoformat()

        async with self._session_factory() as session:
            sequence, prev_hash = await self._get_tail(session)
            event = self._event(event_type, actor_id, target_id, target_type, payload, recorded_at)
            current_hash = self._calculate_hash(prev_hash, event)

            session.add(
                AuditLogModel(
                    sequence=sequence + 1,
                    event_type=event_type,
                    actor_id=actor_id,
                    target_id=target_id,
                    target_type=target_type,
                    payload=payload,
                    recorded_at=recorded_at,
                    prev_hash=prev_hash,
                    hash=current_hash,
                )
            )
            await session.commit()

        logger.log_with_extra(  # type: ignore[attr-defined]
            logging.INFO,
            f"Audit log entry created: {event_type} by {actor_id}",
            audit_hash=current_hash,
            event_type=event_type,
        )
        return current_hash

    def _redact(self, data: Dict[str, Any]) -> Dict[str, Any]:
        sensitive_keys = {"api_key", "secret", "token", "password", "service_key"}
        redacted = dict(data)
        for k, v in redacted.items():
            if k.lower() in sensitive_keys:
                redacted[k] = "[REDACTED]"
            elif isinstance(v, dict):
                redacted[k] = self._redact(v)
        return redacted

    async def count(self) -> int:
        async with self._session_factory() as session:
            return (await session.execute(select(func.count()).select_from(AuditLogModel))).scalar_one()

    async def verify_chain(self) -> bool:
        """Recompute every link and hash, oldest first."""
        async with self._session_factory() as session:
            stmt = select(AuditLogModel).order_by(AuditLogModel.sequence.asc())
            entries = (await session.execute(stmt)).scalars().all()

        prev_hash = GENESIS_HASH
        for entry in entries:
            if entry.prev_hash != prev_hash:
                logger.error(f"Audit chain broken at entry {entry.sequence}: link mismatch")
                return False
            event = self._event(
                entry.event_type,
                entry.actor_id,
                entry.target_id,
                entry.target_type,
                entry.payload,
                entry.recorded_at,
            )
            if self._calculate_hash(prev_hash, event) != entry.hash:
                logger.error(f"Audit chain broken at entry {entry.sequence}: hash mismatch")
                return False
            prev_hash = entry.hash
        return True
