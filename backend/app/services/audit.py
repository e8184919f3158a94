"""Append-only audit trail for BioLock security events.

Every row is written to the ``biolock_audit`` table first. When an audit
webhook is configured the event is then forwarded as a Discord-style embed;
a failed delivery is logged and never undoes or blocks the persisted row.
"""

from __future__ import annotations

import logging

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from app.models.lock import AuditEvent, AuditEventType, LockUser
from app.services.clock import Clock
from app.services.errors import StorageError

logger = logging.getLogger(__name__)

COLOR_SUCCESS = 0x2ECC71
COLOR_FAILURE = 0xE74C3C
DEVICE_INFO_PREVIEW = 100


class AuditLog:
    def __init__(
        self,
        engine,
        clock: Clock,
        webhook_url: str = "",
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._engine = engine
        self._clock = clock
        self._webhook_url = webhook_url
        self._client = http_client
        self._owns_client = False
        if webhook_url and http_client is None:
            self._client = httpx.AsyncClient(timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        """Close the webhook HTTP client if this log created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()

    async def record(
        self,
        event_type: AuditEventType,
        success: bool,
        *,
        user_id: str | None = None,
        ip_address: str | None = None,
        device_info: str | None = None,
        details: str | None = None,
    ) -> AuditEvent:
        """Persist one audit event, then forward it to the webhook if set."""
        event = AuditEvent(
            user_id=user_id,
            event_type=event_type.value,
            timestamp=self._clock.now(),
            success=success,
            ip_address=ip_address,
            device_info=device_info,
            details=details,
        )
        external_id: str | None = None
        try:
            with Session(self._engine) as db:
                db.add(event)
                db.commit()
                db.refresh(event)
                if user_id is not None and self._webhook_url:
                    user = db.get(LockUser, user_id)
                    external_id = user.external_id if user is not None else None
        except SQLAlchemyError as exc:
            raise StorageError("Failed to append audit event") from exc

        logger.info(
            "BIOLOCK %s: %s (user=%s) - %s",
            event.event_type,
            "Success" if success else "Failure",
            user_id or "-",
            details or "No details",
        )

        if self._webhook_url:
            await self._forward(event, external_id)
        return event

    def recent(self, *, user_id: str | None = None, limit: int = 50) -> list[AuditEvent]:
        """Return the newest events first, optionally for a single user."""
        stmt = select(AuditEvent)
        if user_id is not None:
            stmt = stmt.where(AuditEvent.user_id == user_id)
        stmt = stmt.order_by(col(AuditEvent.timestamp).desc()).limit(limit)
        try:
            with Session(self._engine) as db:
                return list(db.exec(stmt).all())
        except SQLAlchemyError as exc:
            raise StorageError("Failed to read audit events") from exc

    async def _forward(self, event: AuditEvent, external_id: str | None) -> None:
        if self._client is None:
            return
        try:
            resp = await self._client.post(
                self._webhook_url, json=build_webhook_payload(event, external_id)
            )
            resp.raise_for_status()
        except httpx.HTTPError:
            logger.warning(
                "Audit webhook delivery failed for %s event %s",
                event.event_type,
                event.id,
                exc_info=True,
            )


def build_webhook_payload(event: AuditEvent, external_id: str | None) -> dict:
    """Render an audit event as a Discord webhook embed."""
    if external_id:
        user_value = external_id
    elif event.user_id:
        user_value = f"ID: {event.user_id}"
    else:
        user_value = "unknown"

    fields = [
        {"name": "User", "value": user_value, "inline": True},
        {
            "name": "Status",
            "value": "✅ Success" if event.success else "❌ Failure",
            "inline": True,
        },
        {"name": "Timestamp", "value": event.timestamp.isoformat() + "Z", "inline": True},
    ]
    if event.ip_address:
        fields.append({"name": "IP Address", "value": event.ip_address, "inline": True})
    if event.device_info:
        device = event.device_info
        if len(device) > DEVICE_INFO_PREVIEW:
            device = device[:DEVICE_INFO_PREVIEW] + "..."
        fields.append({"name": "Device Info", "value": device, "inline": False})

    return {
        "embeds": [
            {
                "title": f"BioLock Audit: {event.event_type}",
                "description": event.details or "No details provided",
                "color": COLOR_SUCCESS if event.success else COLOR_FAILURE,
                "fields": fields,
                "footer": {"text": "BioLock v2 Security System"},
            }
        ]
    }
