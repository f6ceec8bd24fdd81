from pydantic import BaseModel
from typing import Optional
from uuid import UUID
from enum import Enum


class Role(str, Enum):
    """Roles resueltos por el proveedor de identidad"""
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    CASHIER = "cashier"
    WAITER = "waiter"
    VIEWER = "viewer"


PRIVILEGED_ROLES = {Role.SUPERADMIN, Role.ADMIN}


class AuthContext(BaseModel):
    """
    Contexto explícito de la petición.

    Se pasa a cada punto de entrada del núcleo; ningún servicio lee
    estado global de la petición.
    """
    user_id: UUID
    tenant_id: Optional[UUID] = None
    user_role: Optional[Role] = None
    user_name: Optional[str] = None

    @property
    def is_privileged(self) -> bool:
        return self.user_role in PRIVILEGED_ROLES

    @property
    def display_name(self) -> str:
        return self.user_name or str(self.user_id)


class TokenPayload(BaseModel):
    sub: UUID
    tenant_id: Optional[UUID] = None
    user_role: Optional[Role] = None
    name: Optional[str] = None
    type: str = "access"
