"""Shallow structural check of a parsed object against the caller's expected shape."""

from __future__ import annotations

from typing import Any

from structgen.models import ExpectedShape, ValidationResult


def validate_shape(obj: Any, shape: ExpectedShape) -> ValidationResult:
    """Required keys present; declared array keys are non-empty lists. Does not recurse."""
    if not isinstance(obj, dict):
        return ValidationResult(ok=False, reason=f"expected a JSON object, got {type(obj).__name__}")
    for key in shape.required_keys:
        if key not in obj:
            return ValidationResult(ok=False, reason=f"missing required key '{key}'")
    for key in shape.required_array_keys:
        value = obj.get(key)
        if not isinstance(value, list):
            return ValidationResult(ok=False, reason=f"missing {key} array")
        if not value:
            return ValidationResult(ok=False, reason=f"{key} array is empty")
    return ValidationResult(ok=True)
