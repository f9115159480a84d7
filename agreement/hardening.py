"""
Agreement Validation and Hardening Module

Error taxonomy and input validation for the agreement-proof protocol.

Semantic outcomes of proving and testing (missing principal, mismatched
proof, proof not yet visible) are *results*, not exceptions; see
``agreement.model.Verdict``. The exceptions here are reserved for:

1. Malformed inputs (validation failures)
2. Collaborator failures (ledger and read-state infrastructure)
3. Corrupt ledger records and extension loading problems

Security Model:
    - Ledger keys and identifiers are untrusted until validated
    - Identity comparisons use constant-time comparison
    - Proof tokens come from the OS CSPRNG

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hmac
import math
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# =============================================================================
# ERROR TYPES
# =============================================================================

class AgreementError(Exception):
    """Base exception for the agreement package."""
    pass


class ValidationError(AgreementError):
    """Base exception for validation failures."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(AgreementError):
    """Collection of validation errors."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


class CollaboratorFailure(AgreementError):
    """
    Infrastructure failure in a collaborator (ledger or replicated store).

    Distinguishes "the infrastructure is unwell" from the semantic
    failures reported by a Verdict. Never retried by the protocol itself.
    """

    def __init__(self, message: str, **context: Any):
        self.context: Dict[str, Any] = context
        super().__init__(message)


class ReadStateError(CollaboratorFailure):
    """A read-state fetch failed."""
    pass


class LedgerError(CollaboratorFailure):
    """Base class for ledger client failures."""
    pass


class LedgerUnavailable(LedgerError):
    """Ledger could not be reached; a later attempt may succeed."""
    pass


class LedgerRejected(LedgerError):
    """Ledger refused the command or query (bad key, signer, duplicate)."""
    pass


class LedgerTimeout(LedgerUnavailable):
    """Ledger did not answer within the bounded wait."""
    pass


class CommitmentFormatError(AgreementError):
    """A ledger record does not decode to a proof commitment."""
    pass


class ExtensionError(AgreementError):
    """A declared extension could not be instantiated."""
    pass


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise ValidationErrors if validation failed."""
        if not self.is_valid:
            raise ValidationErrors(self.errors)

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

class Validators:
    """
    Validators for protocol inputs.

    Ledger keys follow the set-account-detail naming rule of the
    external ledger: ``[A-Za-z0-9_]{1,64}``.
    """

    LEDGER_KEY_PATTERN = re.compile(r'^[A-Za-z0-9_]{1,64}$')
    KEY_PREFIX_PATTERN = re.compile(r'^[A-Za-z0-9_]{1,32}$')
    ACCOUNT_ID_PATTERN = re.compile(r'^[a-z_0-9]{1,32}@[a-zA-Z0-9][a-zA-Z0-9.\-]{0,252}$')

    MAX_IDENTIFIER_LENGTH = 2048

    @classmethod
    def validate_identifier(
        cls,
        value: Any,
        field_name: str = "id",
    ) -> ValidationResult:
        """Validate an entity or principal identifier."""
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"must be string, got {type(value).__name__}")
            ])
        if not value.strip():
            return ValidationResult.failure([
                ValidationError(field_name, "cannot be empty")
            ])
        if len(value) > cls.MAX_IDENTIFIER_LENGTH:
            return ValidationResult.failure([
                ValidationError(field_name, f"exceeds maximum length {cls.MAX_IDENTIFIER_LENGTH}")
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_ledger_key(cls, value: Any, field_name: str = "key") -> ValidationResult:
        """Validate a ledger record key."""
        if not isinstance(value, str) or not cls.LEDGER_KEY_PATTERN.match(value):
            return ValidationResult.failure([
                ValidationError(field_name, "must match [A-Za-z0-9_]{1,64}", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_key_prefix(cls, value: Any, field_name: str = "key_prefix") -> ValidationResult:
        """Validate a proof key prefix."""
        if not isinstance(value, str) or not cls.KEY_PREFIX_PATTERN.match(value):
            return ValidationResult.failure([
                ValidationError(field_name, "must match [A-Za-z0-9_]{1,32}", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_token_shape(cls, prefix: str, nbytes: Any) -> ValidationResult:
        """A generated token (prefix plus hex of nbytes) must fit a ledger key."""
        if isinstance(nbytes, bool) or not isinstance(nbytes, int) or nbytes < 1:
            return ValidationResult.failure([
                ValidationError("token_bytes", "must be a positive integer", nbytes)
            ])
        if len(prefix) + 2 * nbytes > 64:
            return ValidationResult.failure([
                ValidationError(
                    "token_bytes",
                    f"key_prefix {prefix!r} plus {2 * nbytes} hex characters exceeds 64",
                    nbytes,
                )
            ])
        return ValidationResult.success(nbytes)

    @classmethod
    def validate_account_id(cls, value: Any, field_name: str = "account_id") -> ValidationResult:
        """Validate a ledger account identifier (name@domain)."""
        if not isinstance(value, str) or not cls.ACCOUNT_ID_PATTERN.match(value):
            return ValidationResult.failure([
                ValidationError(field_name, "must be name@domain", value)
            ])
        return ValidationResult.success(value)

    @classmethod
    def validate_value(cls, value: Any, field_name: str = "value") -> ValidationResult:
        """
        Validate a property value.

        Values are JSON scalars or references. NaN and infinities have no
        JSON form and are refused.
        """
        from agreement.model import Reference

        if isinstance(value, bool) or isinstance(value, (str, int, Reference)):
            return ValidationResult.success(value)
        if isinstance(value, float):
            if not math.isfinite(value):
                return ValidationResult.failure([
                    ValidationError(field_name, "numbers must be finite", value)
                ])
            return ValidationResult.success(value)
        return ValidationResult.failure([
            ValidationError(field_name, f"unsupported value type {type(value).__name__}", value)
        ])


# =============================================================================
# CRYPTOGRAPHIC UTILITIES
# =============================================================================

class CryptoUtils:
    """Cryptographic utility functions."""

    @staticmethod
    def secure_compare_str(a: str, b: str) -> bool:
        """Constant-time string comparison."""
        return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))

    @staticmethod
    def secure_random_hex(n_bytes: int = 16) -> str:
        """Generate cryptographically secure random hex string."""
        return secrets.token_hex(n_bytes)


def require_valid(result: ValidationResult) -> Optional[Any]:
    """Return the sanitized value or raise the first validation error."""
    if not result.is_valid:
        raise result.errors[0]
    return result.sanitized_value
