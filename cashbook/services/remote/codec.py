"""
Firestore REST typed-value codec.

The REST API does not accept plain JSON: every value is wrapped in an object
naming its type, e.g. ``{"stringValue": "Ana"}`` or
``{"mapValue": {"fields": {...}}}``. These helpers translate between that
wire format and plain Python data.
"""

from decimal import Decimal
from typing import Any, Mapping


def encode_value(value: Any) -> dict[str, Any]:
    """Wrap a Python value in its Firestore type tag."""
    if value is None:
        return {"nullValue": None}
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, (float, Decimal)):
        return {"doubleValue": float(value)}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": encode_fields(value)}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(item) for item in value]}}
    raise TypeError(f"Cannot encode {type(value).__name__} for Firestore")


def encode_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    return {str(key): encode_value(value) for key, value in data.items()}


def encode_document(data: Mapping[str, Any]) -> dict[str, Any]:
    """Request body for a document write."""
    return {"fields": encode_fields(data)}


def decode_value(value: Mapping[str, Any]) -> Any:
    """
    Unwrap a Firestore typed value.

    Timestamps and references come back as their string form. Types this
    app never writes (bytes, geo points) decode to None.
    """
    if "stringValue" in value:
        return value["stringValue"]
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "nullValue" in value:
        return None
    if "timestampValue" in value:
        return value["timestampValue"]
    if "referenceValue" in value:
        return value["referenceValue"]
    if "arrayValue" in value:
        return [decode_value(item) for item in value["arrayValue"].get("values", [])]
    if "mapValue" in value:
        return decode_fields(value["mapValue"].get("fields", {}))
    return None


def decode_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    return {key: decode_value(value) for key, value in fields.items()}


def decode_document(document: Mapping[str, Any]) -> dict[str, Any]:
    """Plain data from a REST document resource."""
    return decode_fields(document.get("fields", {}))
