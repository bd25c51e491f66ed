from __future__ import annotations

from datetime import date
from decimal import Decimal

from billing_engine.models import Billing, Customer
from billing_engine.templates import (
    PAYMENT_KEY_MISSING,
    build_billing_variables,
    format_brl,
    format_date_br,
    render_template,
)


def _make_customer(*, payment_key: str | None = None) -> Customer:
    return Customer(id=1, owner_id="owner-1", name="Maria Souza", email="maria@example.com", payment_key=payment_key)


def _make_billing(*, payment_key: str | None = None) -> Billing:
    return Billing(
        id=10,
        owner_id="owner-1",
        customer_id=1,
        amount=Decimal("1234.5"),
        description="Mensalidade",
        due_date=date(2025, 6, 10),
        payment_key=payment_key,
    )


def test_format_brl_groups_thousands_and_uses_comma_decimals() -> None:
    assert format_brl(Decimal("1234.5")) == "R$ 1.234,50"
    assert format_brl(Decimal("0")) == "R$ 0,00"
    assert format_brl(Decimal("1234567.891")) == "R$ 1.234.567,89"
    assert format_brl("99.9") == "R$ 99,90"


def test_format_date_br() -> None:
    assert format_date_br(date(2025, 6, 5)) == "05/06/2025"


def test_render_template_replaces_known_tokens_and_keeps_unknown() -> None:
    rendered = render_template("Olá {nome}, {desconhecido} vence {data}", {"nome": "Ana", "data": "10/06/2025"})
    assert rendered == "Olá Ana, {desconhecido} vence 10/06/2025"


def test_render_template_replaces_repeated_tokens() -> None:
    assert render_template("{nome} {nome}", {"nome": "Ana"}) == "Ana Ana"


def test_build_billing_variables_prefers_billing_payment_key() -> None:
    variables = build_billing_variables(_make_billing(payment_key="pix-billing"), _make_customer(payment_key="pix-c"))
    assert variables["chave_pix"] == "pix-billing"
    assert variables["payment_key"] == "pix-billing"


def test_build_billing_variables_falls_back_to_customer_then_placeholder() -> None:
    variables = build_billing_variables(_make_billing(), _make_customer(payment_key="pix-customer"))
    assert variables["chave_pix"] == "pix-customer"

    variables = build_billing_variables(_make_billing(), _make_customer())
    assert variables["chave_pix"] == PAYMENT_KEY_MISSING


def test_full_render_with_billing_variables() -> None:
    body = "Olá {nome}, sua cobrança de {valor} ({descricao}) vence em {data}. PIX: {chave_pix}"
    rendered = render_template(body, build_billing_variables(_make_billing(), _make_customer()))
    assert rendered == (
        "Olá Maria Souza, sua cobrança de R$ 1.234,50 (Mensalidade) vence em 10/06/2025. PIX: Não informado"
    )
