"""
Sello de integridad del cierre Z.

El hash cubre todos los campos agregados del balance más la lista ordenada
de sesiones consolidadas. Recalcularlo desde los valores almacenados y
compararlo con integrity_hash detecta cualquier alteración posterior.
"""
from typing import Any, Dict, Iterable
from uuid import UUID

from app.common.hashing import hash_payload

HASHED_FIELDS = (
    "id",
    "tenant_id",
    "period_start",
    "period_end",
    "session_count",
    "time_revenue",
    "product_revenue",
    "membership_revenue",
    "rental_revenue",
    "total_revenue",
    "cash_revenue",
    "card_revenue",
    "credit_revenue",
    "total_cost",
    "waste_cost",
    "maintenance_cost",
    "net_profit",
    "cash_in_hand",
    "cash_difference",
    "has_cash_alert",
    "closed_by",
    "notes",
)


def balance_payload(fields: Dict[str, Any], usage_log_ids: Iterable[UUID]) -> Dict[str, Any]:
    payload = {name: fields.get(name) for name in HASHED_FIELDS}
    payload["usage_log_ids"] = sorted(str(log_id) for log_id in usage_log_ids)
    return payload


def compute_balance_hash(fields: Dict[str, Any], usage_log_ids: Iterable[UUID]) -> str:
    return hash_payload(balance_payload(fields, usage_log_ids))


def fields_of(balance) -> Dict[str, Any]:
    """Valores actuales de un DailyBalance (persistido o en memoria)"""
    return {name: getattr(balance, name) for name in HASHED_FIELDS}


def verify_integrity(balance, usage_log_ids: Iterable[UUID]) -> bool:
    """True si el hash recalculado coincide con el almacenado"""
    return compute_balance_hash(fields_of(balance), usage_log_ids) == balance.integrity_hash
