from pydantic import BaseModel, Field, field_validator
from decimal import Decimal


class TaxConfig(BaseModel):
    """Snapshot de solo lectura de la configuración fiscal del tenant"""
    rate_percent: Decimal = Field(..., ge=0, lt=100, description="Tasa en porcentaje (ej. 19)")
    name: str = Field(..., description="Nombre del impuesto (IVA, IGV, ...)")
    exempt: bool = Field(False, description="Tenant exento de impuesto")


class TaxConfigUpdate(BaseModel):
    """Esquema para actualizar la configuración fiscal del tenant"""
    rate_percent: Decimal = Field(..., ge=0, lt=100, description="Porcentaje de impuesto (0-100)")
    name: str = Field(..., min_length=1, max_length=20, description="Nombre del impuesto")
    exempt: bool = Field(False, description="Marcar el tenant como exento")

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        cleaned = v.strip().upper()
        if not cleaned:
            raise ValueError('El nombre del impuesto es obligatorio')
        return cleaned
