"""
Cálculo de cobro por tiempo e impuestos

Funciones puras: mismas entradas producen exactamente el mismo resultado.
Toda la aritmética se hace con Decimal a precisión completa; el redondeo
comercial a 2 decimales (ROUND_HALF_UP) se aplica solo al persistir.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

Number = Union[Decimal, int, str]

CENT = Decimal("0.01")
ZERO = Decimal("0")
HUNDRED = Decimal("100")
SIXTY = Decimal("60")


def to_decimal(value: Optional[Number]) -> Decimal:
    """Convierte a Decimal sin pasar por float"""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


def round2(value: Number) -> Decimal:
    """Redondeo comercial a 2 decimales"""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class ChargeBreakdown:
    duration_minutes: int
    time_charge: Decimal       # Tiempo con descuento aplicado
    discount_amount: Decimal   # Descuento sobre el tiempo
    product_total: Decimal
    subtotal: Decimal          # round2(tiempo + consumo), IVA incluido


@dataclass(frozen=True)
class TaxBreakdown:
    net_amount: Decimal
    tax_amount: Decimal
    gross_amount: Decimal

    def rounded(self) -> "TaxBreakdown":
        """
        Versión persistible. El impuesto se deriva del neto redondeado para
        que neto + impuesto == bruto también después de redondear.
        """
        gross = round2(self.gross_amount)
        net = round2(self.net_amount)
        return TaxBreakdown(net_amount=net, tax_amount=gross - net, gross_amount=gross)


def elapsed_minutes(started_at: datetime, now: datetime) -> int:
    """Minutos completos transcurridos, nunca negativos"""
    seconds = (now - started_at).total_seconds()
    return max(0, int(seconds // 60))


def compute_charge(
    started_at: datetime,
    now: datetime,
    hourly_rate: Number,
    product_total: Number = ZERO,
    member_discount_percent: Optional[Number] = None,
    subscription_active: bool = False
) -> ChargeBreakdown:
    """
    Calcular el cobro de una sesión de mesa

    Args:
        started_at: Inicio de la sesión
        now: Momento del cierre
        hourly_rate: Tarifa por hora del tenant
        product_total: Total de consumo (bar) de la sesión
        member_discount_percent: Descuento del socio (0-100), si hay socio
        subscription_active: Si la membresía del socio está al día

    Returns:
        ChargeBreakdown con el descuento aplicado solo al tiempo
    """
    duration = elapsed_minutes(started_at, now)
    rate = to_decimal(hourly_rate)
    products = to_decimal(product_total)

    time_charge = (Decimal(duration) / SIXTY) * rate
    discount_amount = ZERO

    if member_discount_percent is not None and subscription_active:
        pct = to_decimal(member_discount_percent)
        if pct > 0:
            discount_amount = time_charge * pct / HUNDRED
            time_charge -= discount_amount

    return ChargeBreakdown(
        duration_minutes=duration,
        time_charge=time_charge,
        discount_amount=discount_amount,
        product_total=products,
        subtotal=round2(time_charge + products)
    )


def split_tax(subtotal: Number, tax_rate_percent: Number, exempt: bool = False) -> TaxBreakdown:
    """
    Desglosar un monto bruto (IVA incluido) en neto + impuesto

    Ejemplo con IVA 19%:
        subtotal = 3000 -> neto 2521.008..., impuesto 478.99..., bruto 3000
    """
    gross = to_decimal(subtotal)
    rate = to_decimal(tax_rate_percent) / HUNDRED

    if exempt or rate <= 0:
        return TaxBreakdown(net_amount=gross, tax_amount=ZERO, gross_amount=gross)

    net = gross / (1 + rate)
    return TaxBreakdown(net_amount=net, tax_amount=gross - net, gross_amount=gross)
