from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List
from uuid import UUID

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.tables.auditor import SessionIntegrityAuditor
from app.modules.tables.schemas import (
    TransitionRequest, TransitionOut, TableOut, OrderItemCreate, OrderItemOut,
    SessionOut, MaintenanceCreate, MaintenanceOut, AuditResult
)
from app.modules.tables.service import TableSessionService

tables_router = APIRouter(prefix="/tables", tags=["Tables"])


@tables_router.get("", response_model=List[TableOut])
def list_tables(
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    """Listar las mesas del club con su estado actual"""
    return TableSessionService(db).list_tables(auth_context)


@tables_router.post("/audit", response_model=AuditResult)
def audit_tables(
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin())
):
    """
    Barrido de integridad

    Libera mesas OCCUPIED sin sesión vigente o con sesiones más antiguas
    que el umbral configurado. Retorna cuántas mesas se repararon.
    """
    return SessionIntegrityAuditor(db).sweep(auth_context)


@tables_router.post("/{table_id}/transition", response_model=TransitionOut)
def transition_table(
    table_id: UUID,
    data: TransitionRequest,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_staff())
):
    """
    Cambiar el estado de una mesa

    - expected_status=AVAILABLE o PAYMENT_PENDING: inicia sesión
    - expected_status=OCCUPIED: detiene la sesión y calcula el cobro
    - expected_status=CLEANING: deja la mesa disponible

    Responde 409 si la mesa ya no está en expected_status.
    """
    return TableSessionService(db).transition(
        auth_context,
        table_id,
        data.expected_status,
        member_id=data.member_id,
        issuance=data.issuance,
        settlement=data.settlement
    )


@tables_router.post("/{table_id}/items", response_model=OrderItemOut, status_code=status.HTTP_201_CREATED)
def add_item(
    table_id: UUID,
    data: OrderItemCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_staff())
):
    """Agregar consumo del bar a la sesión activa"""
    return TableSessionService(db).add_product(auth_context, table_id, data)


@tables_router.get("/{table_id}/session", response_model=SessionOut)
def get_session(
    table_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_any_role())
):
    return TableSessionService(db).get_session(auth_context, table_id)


@tables_router.post("/{table_id}/maintenance", response_model=MaintenanceOut, status_code=status.HTTP_201_CREATED)
def record_maintenance(
    table_id: UUID,
    data: MaintenanceCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin())
):
    """Registrar mantenimiento de la mesa y reiniciar su contador de horas"""
    return TableSessionService(db).record_maintenance(auth_context, table_id, data)
