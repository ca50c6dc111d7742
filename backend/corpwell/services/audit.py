import logging
import uuid
from typing import Any, Optional, Union

from sqlalchemy.orm import Session

from corpwell.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def _as_uuid_or_none(value: Any) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def log_action(
    db: Session,
    tenant_id: Union[uuid.UUID, str],
    user_id: Union[uuid.UUID, str, None],
    action: str,
    resource_type: str,
    resource_id: Any = None,
    details: dict | None = None,
    ip_address: str | None = None,
) -> AuditLog:
    entry = AuditLog(
        tenant_id=_as_uuid_or_none(tenant_id),
        user_id=_as_uuid_or_none(user_id),
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        details=details.copy() if isinstance(details, dict) else {},
        ip_address=ip_address,
    )
    db.add(entry)
    db.commit()
    logger.debug("Audit: tenant=%s action=%s %s=%s", tenant_id, action, resource_type, resource_id)
    return entry
