"""agreement.codec

Encoding of proof commitments for the ledger value channel.

Two invariants:
- Canonical bytes: keys sorted, no insignificant whitespace, UTF-8, floats
  in shortest round-trip form. Two replicas that derive the same state
  derive the same bytes.
- The ledger's value channel drops one level of string escaping in transit.
  ``encode_commitment`` adds exactly one level (the canonical JSON text is
  JSON-string-escaped and the surrounding quotes removed), so the value read
  back from the ledger is the canonical JSON text itself.

Only this module handles escaped strings; the rest of the package works
with ``ProofCommitment`` objects.
"""

from __future__ import annotations

import hashlib
import json
import math
from datetime import date, datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from jsonschema import Draft202012Validator

from agreement.hardening import CommitmentFormatError
from agreement.model import ProofCommitment


SCHEMA_PATH = Path(__file__).resolve().parent / "schemas" / "proof-commitment.schema.json"


def _coerce_json_types(obj: Any) -> Any:
    """Coerce Python objects into strict JSON types.

    - datetime/date objects become ISO strings.
    - NaN and infinities are rejected; they have no JSON form.
    """
    if obj is None:
        return None
    if isinstance(obj, (str, bool, int)):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Non-finite number in canonical JSON: {obj!r}")
        return obj
    if isinstance(obj, (datetime, date)):
        if isinstance(obj, datetime):
            if obj.tzinfo is None:
                obj = obj.replace(tzinfo=timezone.utc)
            return obj.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")
        return obj.isoformat()
    if isinstance(obj, (list, tuple)):
        return [_coerce_json_types(x) for x in obj]
    if isinstance(obj, dict):
        return {str(k): _coerce_json_types(v) for k, v in obj.items()}
    raise ValueError(f"Unsupported type in canonical JSON: {type(obj).__name__}")


def canonicalize(obj: Any) -> bytes:
    """Canonical JSON bytes (JCS-like: sorted keys, compact, repr floats)."""
    clean = _coerce_json_types(obj)
    return json.dumps(
        clean, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    ).encode("utf-8")


def sha256_bytes(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def commitment_digest(commitment: ProofCommitment) -> str:
    """SHA-256 of the canonical commitment bytes."""
    return sha256_bytes(canonicalize(commitment.to_dict()))


# ---------------------------------------------------------------------------
# Ledger value encoding
# ---------------------------------------------------------------------------


def escape_once(text: str) -> str:
    """Add one level of JSON string escaping, without the surrounding quotes."""
    return json.dumps(text, ensure_ascii=False)[1:-1]


def unescape_once(value: str) -> str:
    """Remove one level of JSON string escaping (what the ledger does in transit)."""
    return json.loads('"' + value + '"')


def encode_commitment(commitment: ProofCommitment) -> str:
    """Ledger value for a commitment, pre-compensated for the lossy channel."""
    return escape_once(canonicalize(commitment.to_dict()).decode("utf-8"))


@lru_cache(maxsize=1)
def commitment_validator() -> Draft202012Validator:
    schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def validate_commitment_dict(obj: Any) -> List[str]:
    """Schema errors for a decoded commitment (empty list means valid)."""
    return [
        f"{error.json_path}: {error.message}"
        for error in commitment_validator().iter_errors(obj)
    ]


def decode_commitment(value: str) -> ProofCommitment:
    """
    Decode a commitment as read back from the ledger.

    Raises CommitmentFormatError when the value is not JSON or does not
    match the commitment schema.
    """
    try:
        data: Dict[str, Any] = json.loads(value)
    except (TypeError, ValueError) as e:
        raise CommitmentFormatError(f"ledger value is not JSON: {e}") from e

    errors = validate_commitment_dict(data)
    if errors:
        raise CommitmentFormatError("; ".join(errors))
    return ProofCommitment.from_dict(data)
