"""
Tests para el cálculo de cobros e impuestos

Cubren:
- Cobro por tiempo con y sin descuento de socio
- Determinismo de compute_charge + split_tax
- Desglose neto + impuesto == bruto
- Tenants exentos
- Validación de la configuración fiscal almacenada
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal

from app.modules.system.models import SystemLog, LogLevel
from app.modules.taxes.calculator import compute_charge, split_tax, round2, elapsed_minutes
from app.modules.taxes.service import TaxConfigService
from app.common.exceptions import NotFoundError

T0 = datetime(2026, 3, 14, 20, 0, 0)


class TestComputeCharge:
    """Tests para compute_charge"""

    def test_half_hour_without_discount(self):
        """6000/hora durante 30 minutos cobra 3000"""
        charge = compute_charge(T0, T0 + timedelta(minutes=30), Decimal("6000"))

        assert charge.duration_minutes == 30
        assert charge.time_charge == Decimal("3000")
        assert charge.discount_amount == Decimal("0")
        assert charge.subtotal == Decimal("3000.00")

    def test_active_member_discount_applies_to_time_only(self):
        charge = compute_charge(
            T0, T0 + timedelta(minutes=30), Decimal("6000"),
            product_total=Decimal("2500"),
            member_discount_percent=Decimal("20"),
            subscription_active=True
        )

        assert charge.time_charge == Decimal("2400")
        assert charge.discount_amount == Decimal("600")
        assert charge.subtotal == Decimal("4900.00")

    def test_inactive_subscription_gets_no_discount(self):
        charge = compute_charge(
            T0, T0 + timedelta(minutes=30), Decimal("6000"),
            member_discount_percent=Decimal("20"),
            subscription_active=False
        )

        assert charge.discount_amount == Decimal("0")
        assert charge.subtotal == Decimal("3000.00")

    def test_partial_minutes_are_floored(self):
        charge = compute_charge(T0, T0 + timedelta(minutes=10, seconds=59), Decimal("6000"))
        assert charge.duration_minutes == 10
        assert charge.subtotal == Decimal("1000.00")

    def test_clock_skew_never_negative(self):
        assert elapsed_minutes(T0, T0 - timedelta(minutes=5)) == 0
        charge = compute_charge(T0, T0 - timedelta(minutes=5), Decimal("6000"))
        assert charge.subtotal == Decimal("0.00")

    def test_subtotal_uses_half_up_rounding(self):
        # 7 minutos a 1000/hora = 116.666...
        charge = compute_charge(T0, T0 + timedelta(minutes=7), Decimal("1000"))
        assert charge.subtotal == Decimal("116.67")

    def test_charge_is_deterministic(self):
        args = (T0, T0 + timedelta(minutes=47), Decimal("5500"), Decimal("3200"), Decimal("15"), True)

        first = compute_charge(*args)
        second = compute_charge(*args)
        assert first == second

        tax_first = split_tax(first.subtotal, Decimal("19"))
        tax_second = split_tax(second.subtotal, Decimal("19"))
        assert tax_first == tax_second


class TestSplitTax:
    """Tests para split_tax"""

    def test_inclusive_iva_19(self):
        breakdown = split_tax(Decimal("3000"), Decimal("19"))

        assert breakdown.gross_amount == Decimal("3000")
        assert round2(breakdown.net_amount) == Decimal("2521.01")
        assert round2(breakdown.tax_amount) == Decimal("478.99")
        assert breakdown.net_amount + breakdown.tax_amount == breakdown.gross_amount

    @pytest.mark.parametrize("subtotal,rate", [
        (Decimal("0"), Decimal("19")),
        (Decimal("0.01"), Decimal("19")),
        (Decimal("1234.56"), Decimal("10.5")),
        (Decimal("999999.99"), Decimal("99.99")),
        (Decimal("4900"), Decimal("0")),
    ])
    def test_net_plus_tax_equals_gross(self, subtotal, rate):
        breakdown = split_tax(subtotal, rate)
        rounded = breakdown.rounded()

        assert breakdown.gross_amount == subtotal
        assert abs(breakdown.net_amount + breakdown.tax_amount - subtotal) <= Decimal("0.01")
        assert rounded.net_amount + rounded.tax_amount == rounded.gross_amount
        assert rounded.gross_amount == round2(subtotal)

    def test_exempt_has_no_tax(self):
        breakdown = split_tax(Decimal("3000"), Decimal("19"), exempt=True)

        assert breakdown.tax_amount == Decimal("0")
        assert breakdown.net_amount == Decimal("3000")
        assert breakdown.gross_amount == Decimal("3000")


class TestTaxConfigService:
    """Tests para la lectura de la configuración fiscal del tenant"""

    def test_returns_rate_as_percent(self, db_session, tenant):
        config = TaxConfigService(db_session).get_tax_config(tenant.id)

        assert config.rate_percent == Decimal("19")
        assert config.name == "IVA"
        assert config.exempt is False

    def test_out_of_range_rate_is_reset_and_logged(self, db_session, tenant):
        tenant.tax_rate = Decimal("1.5")
        tenant.is_tax_exempt = True
        db_session.commit()

        config = TaxConfigService(db_session).get_tax_config(tenant.id)
        db_session.commit()

        assert config.rate_percent == Decimal("0")
        errors = db_session.query(SystemLog).filter(SystemLog.level == LogLevel.ERROR.value).all()
        assert len(errors) == 1
        assert errors[0].tenant_id == tenant.id

    def test_zero_rate_on_taxed_tenant_warns(self, db_session, tenant):
        tenant.tax_rate = Decimal("0")
        db_session.commit()

        TaxConfigService(db_session).get_tax_config(tenant.id)
        db_session.commit()

        warnings = db_session.query(SystemLog).filter(SystemLog.level == LogLevel.WARN.value).all()
        assert len(warnings) == 1

    def test_unknown_tenant(self, db_session):
        from uuid import uuid4
        with pytest.raises(NotFoundError):
            TaxConfigService(db_session).get_tax_config(uuid4())
