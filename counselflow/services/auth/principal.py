from __future__ import annotations

from pydantic import BaseModel

from counselflow.services.auth.api_keys import (
    REVIEWER_SUB_ROLES,
    ROLE_ADMIN,
    ROLE_EMPLOYEE,
    SUB_ROLE_SUPER_ADMIN,
)


class Principal(BaseModel):
    # Capture the authenticated identity used for ownership checks and RBAC.
    subject_id: str
    role: str
    admin_sub_role: str | None = None
    api_key_id: str
    # Track the auth method to enrich audit metadata.
    auth_method: str = "api_key"

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_reviewer(self) -> bool:
        return self.is_admin and self.admin_sub_role in REVIEWER_SUB_ROLES

    @property
    def is_super_admin(self) -> bool:
        return self.is_admin and self.admin_sub_role == SUB_ROLE_SUPER_ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role in {ROLE_ADMIN, ROLE_EMPLOYEE}
