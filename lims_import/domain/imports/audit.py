import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from lims_import.db.models import AuditLog
from lims_import.db.session import get_session_local
from lims_import.utils.serialization import _make_json_safe

logger = logging.getLogger(__name__)


def record_audit(
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    user_id: Optional[str],
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Write one audit row in its own session.

    Audit failures are logged and never propagate to the operation being audited.
    """
    db = get_session_local()()
    try:
        db.add(
            AuditLog(
                user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                details=_make_json_safe(details or {}),
            )
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("Failed to write audit log %s for %s %s: %s", action, entity_type, entity_id, e)
    finally:
        db.close()
