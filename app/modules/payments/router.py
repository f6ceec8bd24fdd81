from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session
from typing import Optional

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.payments.schemas import PaymentCreate, PaymentOut, WebhookResult
from app.modules.payments.service import PaymentService

payments_router = APIRouter(prefix="/payments", tags=["Payments"])
webhooks_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@payments_router.post("", response_model=PaymentOut, status_code=status.HTTP_201_CREATED)
def register_payment(
    data: PaymentCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_staff())
):
    """
    Registrar el pago de una sesión cerrada

    El monto informado es lo entregado por el cliente; el registro guarda
    el cobro de la sesión y la respuesta incluye el vuelto.
    """
    return PaymentService(db).register_payment(auth_context, data)


@webhooks_router.post("/payments", response_model=WebhookResult)
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    x_webhook_signature: Optional[str] = Header(None)
):
    """
    Confirmaciones de la pasarela de pagos

    Ruta pública protegida por la firma HMAC del header X-Webhook-Signature.
    """
    if not x_webhook_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Falta la firma del webhook"
        )
    raw_body = await request.body()
    return PaymentService(db).handle_webhook(raw_body, x_webhook_signature)
