"""
Hashing determinista para sellos de integridad.

El mismo payload siempre produce el mismo digest: claves ordenadas, sin
espacios y tipos especiales (Decimal, datetime, UUID) normalizados.
"""
import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID


def _json_serializer(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        # 2 decimales fijos: 3000 y 3000.00 deben producir el mismo hash
        return format(obj.quantize(Decimal("0.01")), "f")
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """Representación JSON canónica de `data`"""
    return json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        default=_json_serializer,
    )


def hash_payload(payload: dict) -> str:
    """SHA-256 hex (64 caracteres) del payload canónico"""
    canonical = canonicalize_json(payload)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
