"""
Registro de modelos: importa todos los modelos mapeados para que las
relaciones por nombre se resuelvan y Base.metadata quede completa, y
activa los listeners de inmutabilidad.
"""
import app.modules.tenancy.models  # noqa: F401
import app.modules.system.models  # noqa: F401
import app.modules.members.models  # noqa: F401
import app.modules.products.models  # noqa: F401
import app.modules.tables.models  # noqa: F401
import app.modules.payments.models  # noqa: F401
import app.modules.billing.models  # noqa: F401
import app.modules.shifts.models  # noqa: F401

from app.database.immutability import register_immutability_listeners

register_immutability_listeners()
