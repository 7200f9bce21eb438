# paygate/schemas/validator.py
from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, Optional

from jsonschema import Draft202012Validator

_validators: Dict[str, Draft202012Validator] | None = None


def _load_validators() -> Dict[str, Draft202012Validator]:
    global _validators
    if _validators is not None:
        return _validators

    schema_path = Path(__file__).with_name("webhook_schemas.json")
    try:
        schemas = json.loads(schema_path.read_text(encoding="utf-8"))
    except Exception as e:
        raise RuntimeError(f"Failed to load webhook schemas: {e}") from e

    _validators = {provider: Draft202012Validator(schema) for provider, schema in schemas.items()}
    return _validators


def webhook_payload_error(provider: str, payload: Any) -> Optional[str]:
    """
    Returns a short description of the first schema violation, or None when
    the payload has the shape the provider's normalizer expects.
    """
    validator = _load_validators().get(provider)
    if validator is None:
        return f"no webhook schema for provider '{provider}'"
    errors = sorted(validator.iter_errors(payload), key=lambda e: [str(p) for p in e.path])
    if not errors:
        return None
    first = errors[0]
    loc = "/".join(str(p) for p in first.path) or "(root)"
    return f"{loc}: {first.message}"
