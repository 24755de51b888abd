"""
Utility functions shared across the app. This includes:
- parse_decimal / parse_optional_int / parse_date: lenient parsing of request payload values.
- decode_attachment: JSON attachment payload -> stored attachment dict.
- next_document_no: sequential human document numbers (MTF-0001, STF-0002, ...).
"""

from __future__ import annotations

import base64
import binascii
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import Integer, cast, func

from .errors import ValidationError
from .extensions import db


def parse_decimal(value) -> Decimal | None:
    """Parse decimal from user input (accepts comma or dot)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = Decimal(str(value))
    else:
        raw = str(value).strip().replace(",", ".")
        if raw == "":
            return None
        try:
            parsed = Decimal(raw)
        except (InvalidOperation, ValueError):
            return None
    # NaN / Infinity are not amounts.
    return parsed if parsed.is_finite() else None


def parse_optional_int(value) -> int | None:
    """Parse optional int from payload/query."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_date(value) -> date | None:
    """Parse an ISO date (YYYY-MM-DD). Raises ValidationError on garbage."""
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"Invalid date '{value}', expected YYYY-MM-DD.") from None


def decode_attachment(payload: dict | None) -> dict | None:
    """
    Accept {fileName, fileType, fileContent(base64)} and return the stored form
    {fileName, fileType, content(bytes)}. The content is never interpreted.
    """
    if not payload:
        return None
    if not isinstance(payload, dict):
        raise ValidationError("Attachment must be an object.")

    file_name = (payload.get("fileName") or "").strip()
    if not file_name:
        raise ValidationError("Attachment fileName is required.")

    raw = payload.get("fileContent") or ""
    try:
        content = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Attachment fileContent must be base64 encoded.") from None

    return {
        "fileName": file_name,
        "fileType": (payload.get("fileType") or "application/octet-stream").strip(),
        "content": content,
    }


def next_document_no(model, prefix: str) -> str:
    """
    Next sequential number for a document table: PREFIX-0001, PREFIX-0002, ...

    The sequence is the largest numeric suffix + 1, so numbers that outgrow
    DOCUMENT_NUMBER_WIDTH (PREFIX-9999 -> PREFIX-10000) keep counting.

    Must be called inside the creating transaction; the unique constraint on
    document_no rejects a duplicate produced by a concurrent writer.
    """
    width = current_app.config.get("DOCUMENT_NUMBER_WIDTH", 4)
    suffix = cast(func.substr(model.document_no, len(prefix) + 2), Integer)
    last = (
        db.session.query(func.max(suffix))
        .filter(model.document_no.like(f"{prefix}-%"))
        .scalar()
    )
    seq = int(last or 0) + 1
    return f"{prefix}-{seq:0{width}d}"
