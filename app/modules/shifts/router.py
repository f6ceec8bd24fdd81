from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.shifts.schemas import (
    ShiftCloseRequest, ShiftCloseOut, BalanceOut, BalanceDetailOut, IntegrityCheckOut
)
from app.modules.shifts.service import ShiftReconciliationService

shifts_router = APIRouter(prefix="/shifts", tags=["Shifts"])


@shifts_router.post("/close", response_model=ShiftCloseOut, status_code=status.HTTP_201_CREATED)
def close_shift(
    data: ShiftCloseRequest,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin())
):
    """
    Cierre Z con arqueo ciego

    Consolida todas las sesiones cerradas pendientes en un balance sellado.
    Responde 422 si no hay nada que cerrar y 409 si otra operación
    consolidó sesiones en paralelo.
    """
    return ShiftReconciliationService(db).close_shift(auth_context, data.cash_in_hand, data.notes)


@shifts_router.get("", response_model=List[BalanceOut])
def list_balances(
    limit: Optional[int] = Query(None, ge=1, le=365),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin())
):
    """Historial de cierres, el más reciente primero"""
    return ShiftReconciliationService(db).list_balances(auth_context, limit)


@shifts_router.get("/{balance_id}", response_model=BalanceDetailOut)
def get_balance(
    balance_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin())
):
    return ShiftReconciliationService(db).get_balance_detail(auth_context, balance_id)


@shifts_router.get("/{balance_id}/verify", response_model=IntegrityCheckOut)
def verify_balance(
    balance_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_admin())
):
    """Recalcular el sello de integridad y compararlo con el almacenado"""
    return ShiftReconciliationService(db).verify_balance(auth_context, balance_id)
