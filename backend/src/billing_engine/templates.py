from __future__ import annotations

import re
from datetime import date
from decimal import Decimal
from typing import Mapping

from .models import Billing, Customer, quantize_amount

PAYMENT_KEY_MISSING = "Não informado"

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def format_brl(amount: Decimal | float | int | str) -> str:
    quantized = quantize_amount(amount)
    sign = "-" if quantized < 0 else ""
    integer_part, fraction_part = f"{abs(quantized):.2f}".split(".")
    grouped = f"{int(integer_part):,}".replace(",", ".")
    return f"{sign}R$ {grouped},{fraction_part}"


def format_date_br(value: date) -> str:
    return value.strftime("%d/%m/%Y")


def build_billing_variables(billing: Billing, customer: Customer) -> dict[str, str]:
    payment_key = billing.payment_key or customer.payment_key or PAYMENT_KEY_MISSING
    amount = format_brl(billing.amount)
    due_date = format_date_br(billing.due_date)
    return {
        "nome": customer.name,
        "valor": amount,
        "data": due_date,
        "descricao": billing.description,
        "chave_pix": payment_key,
        "customer_name": customer.name,
        "amount": amount,
        "due_date": due_date,
        "description": billing.description,
        "payment_key": payment_key,
    }


def render_template(body: str, variables: Mapping[str, object]) -> str:
    """Substitute ``{name}`` tokens; tokens without a variable stay as written."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        return str(variables[name])

    return _PLACEHOLDER_RE.sub(_replace, body)
