"""
Compuerta de aislamiento multi-tenant.

Toda lectura y escritura del núcleo pasa por uno de estos repositorios:

- TenantRepository: acotado al tenant del AuthContext. Filtra cada query,
  sella tenant_id en cada create y responde "no encontrado" ante cualquier
  referencia a filas de otro tenant.
- AdminRepository: acceso global para administración de tenants y tareas
  del sistema (webhooks, barridos programados). Las mutaciones exigen un
  rol privilegiado.
"""
from typing import Any, Generic, List, Optional, Type, TypeVar
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from app.common.exceptions import NotFoundError, PermissionDeniedError
from app.modules.auth.schemas import AuthContext, Role
from app.modules.system.service import record_security_event

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

SYSTEM_USER_ID = UUID(int=0)


def system_context(tenant_id: Optional[UUID] = None) -> AuthContext:
    """Contexto para procesos internos (webhooks, celery beat)"""
    return AuthContext(
        user_id=SYSTEM_USER_ID,
        tenant_id=tenant_id,
        user_role=Role.SUPERADMIN,
        user_name="system"
    )


class TenantRepository(Generic[ModelT]):
    """Repositorio acotado a un tenant"""

    def __init__(self, db: Session, model: Type[ModelT], context: AuthContext, label: Optional[str] = None):
        if context.tenant_id is None:
            raise PermissionDeniedError("Se requiere un contexto de empresa")
        self.db = db
        self.model = model
        self.context = context
        self.tenant_id = context.tenant_id
        self.label = label or model.__name__

    def query(self):
        return self.db.query(self.model).filter(self.model.tenant_id == self.tenant_id)

    def find(self, obj_id: UUID, for_update: bool = False) -> Optional[ModelT]:
        query = self.query().filter(self.model.id == obj_id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def get(self, obj_id: UUID, for_update: bool = False) -> ModelT:
        """Obtener por ID; filas de otros tenants se reportan como inexistentes"""
        obj = self.find(obj_id, for_update=for_update)
        if obj is None:
            self._not_found(obj_id)
        return obj

    def list(self, *criteria, order_by=None, limit: Optional[int] = None) -> List[ModelT]:
        query = self.query().filter(*criteria)
        if order_by is not None:
            query = query.order_by(order_by)
        if limit:
            query = query.limit(limit)
        return query.all()

    def create(self, **values: Any) -> ModelT:
        """Crear fila sellando el tenant del contexto"""
        supplied = values.pop("tenant_id", None)
        if supplied is not None and supplied != self.tenant_id:
            record_security_event(
                self.db,
                f"Creación cross-tenant reescrita en {self.model.__tablename__}",
                self.tenant_id,
                {"supplied_tenant_id": supplied, "user_id": self.context.user_id}
            )
        obj = self.model(tenant_id=self.tenant_id, **values)
        self.db.add(obj)
        self.db.flush()
        return obj

    def update_where(self, values: dict, *criteria) -> int:
        """UPDATE masivo condicionado; retorna filas afectadas"""
        return self.query().filter(*criteria).update(values, synchronize_session="fetch")

    def delete(self, obj: ModelT) -> None:
        if self.context.user_role == Role.WAITER:
            raise PermissionDeniedError("El rol waiter no puede eliminar registros")
        if obj.tenant_id != self.tenant_id:
            self._not_found(obj.id)
        self.db.delete(obj)
        self.db.flush()

    def _not_found(self, obj_id: UUID):
        exists_elsewhere = self.db.query(self.model.id).filter(self.model.id == obj_id).first()
        if exists_elsewhere is not None:
            record_security_event(
                self.db,
                f"Acceso cross-tenant bloqueado a {self.model.__tablename__}",
                self.tenant_id,
                {"target_id": obj_id, "user_id": self.context.user_id, "role": self.context.user_role}
            )
        raise NotFoundError(f"{self.label} no encontrado")


class AdminRepository(Generic[ModelT]):
    """
    Repositorio global (sin filtro de tenant).

    Con context=None opera como proceso del sistema. Con un contexto de
    usuario, toda mutación exige rol privilegiado.
    """

    def __init__(self, db: Session, model: Type[ModelT], context: Optional[AuthContext] = None,
                 label: Optional[str] = None):
        self.db = db
        self.model = model
        self.context = context
        self.label = label or model.__name__

    def query(self):
        return self.db.query(self.model)

    def get(self, obj_id: UUID, for_update: bool = False) -> ModelT:
        query = self.query().filter(self.model.id == obj_id)
        if for_update:
            query = query.with_for_update()
        obj = query.first()
        if obj is None:
            raise NotFoundError(f"{self.label} no encontrado")
        return obj

    def list(self, *criteria, order_by=None) -> List[ModelT]:
        query = self.query().filter(*criteria)
        if order_by is not None:
            query = query.order_by(order_by)
        return query.all()

    def create(self, **values: Any) -> ModelT:
        self._require_privileged("create")
        obj = self.model(**values)
        self.db.add(obj)
        self.db.flush()
        return obj

    def update(self, obj: ModelT, **values: Any) -> ModelT:
        self._require_privileged("update")
        self._require_own_tenant(obj)
        for field, value in values.items():
            setattr(obj, field, value)
        self.db.flush()
        return obj

    def delete(self, obj: ModelT) -> None:
        self._require_privileged("delete")
        if self.context is not None and self.context.user_role != Role.SUPERADMIN:
            raise PermissionDeniedError(f"Solo superadmin puede eliminar {self.label}")
        self.db.delete(obj)
        self.db.flush()

    def _require_privileged(self, operation: str) -> None:
        if self.context is None or self.context.is_privileged:
            return
        record_security_event(
            self.db,
            f"RBAC: rol {self.context.user_role} no puede ejecutar {operation} sobre {self.model.__tablename__}",
            self.context.tenant_id,
            {"user_id": self.context.user_id, "operation": operation}
        )
        raise PermissionDeniedError(f"Tu rol no puede ejecutar {operation} sobre {self.label}")

    def _require_own_tenant(self, obj: ModelT) -> None:
        """Un admin de tenant solo administra su propio tenant"""
        if self.context is None or self.context.user_role == Role.SUPERADMIN:
            return
        owner = getattr(obj, "tenant_id", None) or getattr(obj, "id", None)
        if owner != self.context.tenant_id:
            record_security_event(
                self.db,
                f"Administración cross-tenant bloqueada en {self.model.__tablename__}",
                self.context.tenant_id,
                {"target_id": getattr(obj, "id", None), "user_id": self.context.user_id}
            )
            raise NotFoundError(f"{self.label} no encontrado")
