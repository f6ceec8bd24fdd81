"""
Dependencias de autenticación para FastAPI.

La identidad y el rol los resuelve un proveedor externo que emite el JWT;
aquí solo se decodifica el token y se construye el AuthContext explícito.
"""
from typing import Iterable
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import ValidationError as PydanticValidationError

from app.modules.auth.schemas import AuthContext, Role, TokenPayload
from app.modules.auth.utils import verify_token

# Security scheme
security = HTTPBearer()


class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    def get_auth_context(
        request: Request,
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> AuthContext:
        """
        Obtener contexto de autenticación completo con tenant.
        El tenant del token debe coincidir con el header X-Company-ID.
        """
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No se pudieron validar las credenciales",
            headers={"WWW-Authenticate": "Bearer"},
        )

        payload = verify_token(credentials.credentials)
        try:
            token = TokenPayload(**payload)
        except PydanticValidationError:
            raise credentials_exception

        if token.type != "access":
            raise credentials_exception

        header_tenant = getattr(request.state, "tenant_id", None)
        if header_tenant is not None and token.tenant_id is not None and header_tenant != token.tenant_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="No tienes acceso a esta empresa"
            )

        return AuthContext(
            user_id=token.sub,
            tenant_id=token.tenant_id,
            user_role=token.user_role,
            user_name=token.name
        )

    @staticmethod
    def require_role(allowed_roles: Iterable[Role]):
        """
        Dependencia para requerir roles específicos.
        """
        allowed = set(allowed_roles)

        def role_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if not auth_context.tenant_id:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Se requiere seleccionar una empresa"
                )

            if auth_context.user_role not in allowed:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Se requiere uno de estos roles: {', '.join(sorted(r.value for r in allowed))}"
                )

            return auth_context
        return role_checker

    @staticmethod
    def require_admin():
        """Dependencia para requerir rol de administrador."""
        return AuthDependencies.require_role([Role.SUPERADMIN, Role.ADMIN])

    @staticmethod
    def require_staff():
        """Personal de sala: puede operar mesas y registrar pagos."""
        return AuthDependencies.require_role([Role.SUPERADMIN, Role.ADMIN, Role.CASHIER, Role.WAITER])

    @staticmethod
    def require_any_role():
        """Dependencia que requiere cualquier rol activo en una empresa."""
        return AuthDependencies.require_role(list(Role))

# Instancias de dependencias
get_auth_context = AuthDependencies.get_auth_context
require_admin = AuthDependencies.require_admin
require_staff = AuthDependencies.require_staff
require_any_role = AuthDependencies.require_any_role
