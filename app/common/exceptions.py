"""
Errores de dominio del núcleo de mesas y cierres de turno.

Todos heredan de HTTPException para que los routers los propaguen tal cual,
y de CoreError para poder distinguirlos de errores inesperados en los
servicios y en los tests.
"""
from typing import Optional

from fastapi import HTTPException, status


class CoreError(HTTPException):
    """Base de los errores conocidos del núcleo"""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "core_error"

    def __init__(self, detail: str, code: Optional[str] = None):
        super().__init__(status_code=self.status_code, detail=detail)
        if code:
            self.code = code


class ValidationError(CoreError):
    """Entrada inválida: no hay reintento ni cambios de estado"""

    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_error"


class NothingToCloseError(ValidationError):
    """Cierre Z sin sesiones cerradas pendientes de consolidar"""

    code = "nothing_to_close"


class ConsistencyError(CoreError):
    """Estado concurrente o ya consolidado: el cliente puede refrescar y reintentar"""

    status_code = status.HTTP_409_CONFLICT
    code = "consistency_error"


class NotFoundError(CoreError):
    """Registro inexistente o perteneciente a otro tenant"""

    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class PermissionDeniedError(CoreError):
    """Mutación privilegiada solicitada por un rol no privilegiado"""

    status_code = status.HTTP_403_FORBIDDEN
    code = "permission_denied"


class ImmutabilityViolationError(CoreError):
    """Escritura sobre un registro sellado (balance Z o sesión consolidada)"""

    status_code = status.HTTP_409_CONFLICT
    code = "immutable_record"


INTERNAL_ERROR_DETAIL = "Error interno del servidor"


def internal_error() -> HTTPException:
    """Error 500 genérico: nunca expone el detalle del driver"""
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=INTERNAL_ERROR_DETAIL
    )
