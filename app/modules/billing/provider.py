"""
Emisión de documentos tributarios electrónicos (DTE).

El proveedor es un colaborador externo lento y poco confiable: su resultado
se guarda en la sesión como IssuanceOutcome (estado + error opcional) y
nunca bloquea el cierre de la mesa.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from enum import IntEnum
from typing import Optional
from uuid import UUID
import hashlib
import logging

from sqlalchemy.orm import Session

from app.modules.billing.models import FolioRange
from app.modules.tables.models import DocumentStatus
from app.modules.taxes.calculator import round2

logger = logging.getLogger(__name__)


class DocumentType(IntEnum):
    FACTURA = 33
    BOLETA = 39
    BOLETA_EXENTA = 41


@dataclass(frozen=True)
class EmissionRequest:
    tenant_id: UUID
    document_type: int
    net_amount: Decimal
    tax_amount: Decimal
    gross_amount: Decimal
    receiver: Optional[str] = None


@dataclass(frozen=True)
class EmissionResponse:
    success: bool
    status: str
    reference_id: Optional[str] = None
    folio: Optional[int] = None
    verification_url: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class IssuanceOutcome:
    """Resultado persistible de una emisión"""
    document_type: int
    status: str
    reference_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == DocumentStatus.GENERATED.value


class DocumentIssuanceProvider(ABC):

    name = "abstract"

    @abstractmethod
    def emit_document(self, db: Session, request: EmissionRequest) -> EmissionResponse:
        """Emitir un documento. Puede lanzar excepciones de red o de validación."""


class MockDocumentProvider(DocumentIssuanceProvider):
    """
    Proveedor simulado con folios correlativos por tenant y tipo de documento.
    Rechaza el documento si neto + impuesto no cuadra con el bruto.
    """

    name = "mock"
    verification_base_url = "https://billar360.local/verify/dte"
    default_range_size = 1000000

    def emit_document(self, db: Session, request: EmissionRequest) -> EmissionResponse:
        calculated = round2(request.net_amount + request.tax_amount)
        expected = round2(request.gross_amount)
        if calculated != expected:
            logger.error(
                f"Desglose tributario inconsistente: neto {request.net_amount} + "
                f"impuesto {request.tax_amount} = {calculated}, se esperaba {expected}"
            )
            return EmissionResponse(
                success=False,
                status=DocumentStatus.FAILED.value,
                error="El desglose de impuestos no cuadra con el total"
            )

        folio = self._next_folio(db, request.tenant_id, request.document_type)
        signature = hashlib.sha256(
            f"{request.tenant_id}|{request.document_type}|{folio}|{expected}".encode("utf-8")
        ).hexdigest()[:16]

        logger.info(f"DTE emitido: tipo {request.document_type} folio {folio}")
        return EmissionResponse(
            success=True,
            status=DocumentStatus.GENERATED.value,
            reference_id=f"{request.document_type}-{folio}",
            folio=folio,
            verification_url=(
                f"{self.verification_base_url}/{request.tenant_id}/{request.document_type}/{folio}?sig={signature}"
            )
        )

    def _next_folio(self, db: Session, tenant_id: UUID, document_type: int) -> int:
        folio_range = (
            db.query(FolioRange)
            .filter(FolioRange.tenant_id == tenant_id, FolioRange.document_type == document_type)
            .with_for_update()
            .first()
        )
        if folio_range is None:
            folio_range = FolioRange(
                tenant_id=tenant_id,
                document_type=document_type,
                start_folio=1,
                end_folio=self.default_range_size,
                current_folio=0
            )
            db.add(folio_range)

        if folio_range.current_folio >= folio_range.end_folio:
            raise RuntimeError(f"Rango de folios agotado para el tipo {document_type}")

        folio_range.current_folio += 1
        db.flush()
        return folio_range.current_folio


def default_document_type(exempt: bool) -> int:
    return DocumentType.BOLETA_EXENTA.value if exempt else DocumentType.BOLETA.value


def issue_document(provider: DocumentIssuanceProvider, db: Session, request: EmissionRequest) -> IssuanceOutcome:
    """
    Emitir y convertir cualquier resultado (incluidas excepciones) en un
    IssuanceOutcome. Nunca propaga errores del proveedor.

    El proveedor escribe dentro de un savepoint: si falla, solo se deshacen
    sus propios cambios y la transacción del cierre sigue utilizable.
    """
    savepoint = db.begin_nested()
    try:
        response = provider.emit_document(db, request)
        savepoint.commit()
    except Exception as exc:
        savepoint.rollback()
        logger.exception(f"Falló la emisión del documento con el proveedor {provider.name}")
        return IssuanceOutcome(
            document_type=request.document_type,
            status=DocumentStatus.FAILED.value,
            error=str(exc)[:500] or exc.__class__.__name__
        )

    return IssuanceOutcome(
        document_type=request.document_type,
        status=response.status,
        reference_id=response.reference_id,
        error=response.error
    )


document_provider: DocumentIssuanceProvider = MockDocumentProvider()
