from typing import Any, Optional
from fastapi.encoders import jsonable_encoder

from leaveflow.models.audit_log import AuditLog
from leaveflow.schemas.auth import Actor
from leaveflow.services.base import BaseService


class AuditService(BaseService):
    def record(
        self,
        action: str,
        actor: Optional[Actor] = None,
        staff_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[int] = None,
        details: Optional[dict] = None,
        before_state: Optional[dict] = None,
        after_state: Optional[dict] = None,
        level: str = "info",
    ) -> Optional[AuditLog]:
        """
        Append an audit entry inside the caller's transaction.

        The insert runs in a SAVEPOINT: if it fails, only the savepoint is
        rolled back and the caller's transition still commits. Callers must
        flush their own changes first so their errors are not absorbed here.
        """
        try:
            with self.db.begin_nested():
                entry = AuditLog(
                    action=action,
                    user=actor.display_name if actor else "system",
                    user_role=actor.role.value if actor else "system",
                    staff_id=staff_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    level=level,
                    details=jsonable_encoder(details) if details is not None else None,
                    before_state=jsonable_encoder(before_state) if before_state is not None else None,
                    after_state=jsonable_encoder(after_state) if after_state is not None else None,
                )
                self.db.add(entry)
            return entry
        except Exception as e:
            # Never break the main flow because of an audit failure
            self._logger.error(f"FAILED TO AUDIT LOG {action}: {e}", exc_info=True)
            return None

    def warn(self, action: str, **kwargs) -> Optional[AuditLog]:
        return self.record(action, level="warning", **kwargs)
