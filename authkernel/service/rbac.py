from __future__ import annotations

from typing import Any, Iterable, Optional

from authkernel.logging import get_logger
from authkernel.service.errors import ForbiddenError

logger = get_logger(__name__)


class RoleAuthorizer:
    """Role checks with OR semantics: any one required role grants access.

    Roles are loaded from the store on every check. A store without role
    lookup, or a failed lookup, denies.
    """

    def __init__(self, store: Optional[Any]) -> None:
        self.store = store

    def authorize(self, principal_id: str, required_roles: Iterable[str]) -> bool:
        required = {role for role in required_roles if role}
        if not required:
            return True
        if self.store is None or not hasattr(self.store, "get_user_roles"):
            logger.warning("rbac_role_lookup_unavailable", subject_id=principal_id)
            return False
        try:
            held = set(self.store.get_user_roles(principal_id) or ())
        except Exception as exc:
            logger.warning("rbac_role_lookup_failed", subject_id=principal_id, error=str(exc))
            return False
        return bool(held & required)

    def require(self, principal_id: str, required_roles: Iterable[str]) -> None:
        required = list(required_roles)
        if not self.authorize(principal_id, required):
            logger.info("rbac_denied", subject_id=principal_id, required_roles=sorted(required))
            raise ForbiddenError("forbidden")
