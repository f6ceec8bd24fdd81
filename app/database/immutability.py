"""
Inmutabilidad a nivel ORM de los registros sellados por el cierre Z.

- DailyBalance: nunca se actualiza ni se elimina tras su creación.
- UsageLog consolidado (daily_balance_id ya asignado): sus campos
  financieros quedan congelados y no puede eliminarse. Los campos de
  conciliación externa (estado de pago y del documento tributario)
  siguen siendo editables.

Los listeners corren antes de emitir el SQL, dentro del flush, por lo
que la transacción completa se aborta con ImmutabilityViolationError.
"""
import logging

from sqlalchemy import event, inspect
from sqlalchemy.orm.attributes import get_history

from app.common.exceptions import ImmutabilityViolationError

logger = logging.getLogger(__name__)

# Campos que el cierre Z no consolida y pueden conciliarse después
RECONCILIATION_FIELDS = frozenset({
    "payment_status",
    "document_type",
    "document_reference",
    "document_status",
    "document_error",
    "updated_at",
})

_registered = False


def _changed_fields(target) -> list:
    state = inspect(target)
    changed = []
    for attr in state.mapper.column_attrs:
        if get_history(target, attr.key).has_changes():
            changed.append(attr.key)
    return changed


def _reject_daily_balance_update(mapper, connection, target):
    changed = _changed_fields(target)
    if not changed:
        return
    logger.error(f"Intento de modificar DailyBalance sellado {target.id}: {changed}")
    raise ImmutabilityViolationError("El cierre Z está sellado y no puede modificarse")


def _reject_daily_balance_delete(mapper, connection, target):
    logger.error(f"Intento de eliminar DailyBalance sellado {target.id}")
    raise ImmutabilityViolationError("El cierre Z está sellado y no puede eliminarse")


def _was_claimed(target) -> bool:
    """True si el log ya estaba consolidado antes de este flush"""
    history = get_history(target, "daily_balance_id")
    if history.deleted:
        return history.deleted[0] is not None
    return target.daily_balance_id is not None and not history.added


def _check_usage_log_update(mapper, connection, target):
    if not _was_claimed(target):
        return
    frozen = [field for field in _changed_fields(target) if field not in RECONCILIATION_FIELDS]
    if frozen:
        logger.error(f"Intento de modificar UsageLog consolidado {target.id}: {frozen}")
        raise ImmutabilityViolationError("La sesión ya fue consolidada en un cierre Z")


def _check_usage_log_delete(mapper, connection, target):
    if target.daily_balance_id is not None:
        raise ImmutabilityViolationError("La sesión ya fue consolidada en un cierre Z")


def register_immutability_listeners() -> None:
    """Registrar los listeners una sola vez (idempotente)"""
    global _registered
    if _registered:
        return

    from app.modules.shifts.models import DailyBalance
    from app.modules.tables.models import UsageLog

    event.listen(DailyBalance, "before_update", _reject_daily_balance_update)
    event.listen(DailyBalance, "before_delete", _reject_daily_balance_delete)
    event.listen(UsageLog, "before_update", _check_usage_log_update)
    event.listen(UsageLog, "before_delete", _check_usage_log_delete)

    _registered = True
    logger.debug("Listeners de inmutabilidad registrados")
