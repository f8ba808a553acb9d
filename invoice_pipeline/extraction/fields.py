"""Flatten document-intelligence field objects to plain values.

The service returns every field as a typed object (``valueString``,
``valueDate``, ``valueCurrency`` ...). Reports and file names only need one
scalar per field, so nested objects, arrays and selection marks are reduced
here once, at poll time.
"""

from typing import Any

_SCALAR_KEYS = (
    "valueString",
    "valueDate",
    "valueTime",
    "valuePhoneNumber",
    "valueNumber",
    "valueInteger",
    "valueCountryRegion",
    "valueBoolean",
)


def flatten_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {name: field_value(raw) for name, raw in fields.items()}


def field_value(raw: Any) -> Any:
    if raw is None or isinstance(raw, (str, int, float, bool)):
        return raw
    if not isinstance(raw, dict):
        return str(raw)

    kind = raw.get("type") or raw.get("kind")
    if kind == "selectionMark":
        state = raw.get("valueSelectionMark") or raw.get("state")
        return "Yes" if state == "selected" else "No"
    if kind == "signature":
        state = raw.get("valueSignature") or raw.get("state")
        return "Signed" if state == "signed" else "Not Signed"

    if "valueCurrency" in raw:
        currency = raw["valueCurrency"] or {}
        amount = currency.get("amount")
        if amount is not None:
            return amount
    if "valueAddress" in raw and raw.get("content"):
        return raw["content"]
    if "valueArray" in raw:
        return [field_value(item) for item in raw["valueArray"] or []]
    if "valueObject" in raw:
        return flatten_fields(raw["valueObject"] or {})

    for key in _SCALAR_KEYS:
        if raw.get(key) is not None:
            return raw[key]
    if raw.get("value") is not None:
        return field_value(raw["value"])
    return raw.get("content")


def scalar_text(value: Any) -> str:
    """Render a flattened value for a spreadsheet cell or file name part."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, list):
        return ", ".join(scalar_text(item) for item in value)
    if isinstance(value, dict):
        return ", ".join(f"{k}: {scalar_text(v)}" for k, v in value.items())
    return str(value)
