"""Canonical ledger payload for a certificate.

The payload is indented UTF-8 JSON so it stays readable on a block
explorer once the transaction input is decoded. ``decode_payload()``
returns None for data that is not a canonical payload, so callers can fall
back to showing the raw text.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from hallmark.constants import DISCLAIMER, PAYLOAD_TYPE, PAYLOAD_VERSION
from hallmark.record import CertificateRecord, CustomBar


def build_payload(record: CertificateRecord, now: datetime | None = None) -> dict[str, Any]:
    """Structured payload for ``record`` as committed to the ledger."""
    now = now or datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        "type": PAYLOAD_TYPE,
        "version": PAYLOAD_VERSION,
        "serial": record.serial,
        "created_on": now.strftime("%m/%d/%Y"),
        "timestamp": now.isoformat(),
        "company": {
            "name": record.company,
            "tax_code": record.tax_code,
            "social_capital": record.social_capital,
            "authorization": record.authorization,
        },
        "product": {
            "metal": record.metal,
            "fineness": record.fineness,
            "weight": record.weight,
            "production_date": record.production_date,
            "location": {
                "city": record.city,
                "country": record.country,
            },
        },
    }
    if isinstance(record.bar, CustomBar):
        payload["custom"] = {
            "icon_code": record.bar.icon_code,
            "date": record.bar.custom_date,
            "text": record.bar.custom_text,
        }
    payload["disclaimer"] = DISCLAIMER
    return payload


def encode_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8")


def decode_payload(data: bytes | str) -> dict[str, Any] | None:
    """Decode committed bytes.

    Returns None unless they hold a JSON object tagged with the payload
    type and carrying a version.
    """
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            return None
    else:
        text = data
    try:
        obj = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict) or obj.get("type") != PAYLOAD_TYPE or "version" not in obj:
        return None
    return obj


def format_certificate_message(payload: dict[str, Any]) -> str:
    """Render a decoded payload as a plain-text certificate."""
    # Early payloads carried a preformatted message.
    if payload.get("certificate_message"):
        return str(payload["certificate_message"])

    lines = [
        "GOLD CERTIFICATE - Blockchain Authenticated",
        "",
        "CERTIFICATE INFORMATION:",
        f"Serial Number: {payload.get('serial', '')}",
        f"Created on: {payload.get('created_on', '')}",
        "",
    ]

    company = payload.get("company")
    if isinstance(company, dict):
        lines += [
            "COMPANY INFORMATION:",
            f"Company: {company.get('name', '')}",
            f"Tax Code: {company.get('tax_code', '')}",
            f"Social Capital: {company.get('social_capital', '')}",
            f"Authorization: {company.get('authorization', '')}",
            "",
        ]

    product = payload.get("product")
    if isinstance(product, dict):
        lines += [
            "PRODUCT SPECIFICATIONS:",
            f"Metal Type: {product.get('metal', '')}",
            f"Fineness: {product.get('fineness', '')}",
            f"Weight: {product.get('weight', '')} grams",
            f"Production Date: {product.get('production_date', '')}",
        ]
        location = product.get("location")
        if isinstance(location, dict):
            lines.append(f"Location: {location.get('city', '')}, {location.get('country', '')}")
        lines.append("")

    custom = payload.get("custom")
    if isinstance(custom, dict):
        lines += [
            "CUSTOM BAR:",
            f"Icon Code: {custom.get('icon_code', '')}",
            f"Date: {custom.get('date', '')}",
            f"Text: {custom.get('text', '')}",
            "",
        ]

    if payload.get("disclaimer"):
        lines += ["DISCLAIMER:", str(payload["disclaimer"])]

    return "\n".join(lines).rstrip("\n")
