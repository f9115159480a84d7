"""
Agreement Data Model

Value objects shared by the snapshot builder, the proof protocol and the
ledger codec.

    Fact              (subject_id, property, value) triple
    ChangeDelta       inserted/deleted facts of one guarded change
    FinalStateSubject post-change values of the touched properties of a subject
    ProofCommitment   {pid, state} committed to the ledger
    ProofToken        ledger key linking a change to its commitment
    ProofValue        the raw agreement value carried by a change
    Verdict           outcome of testing a proof
    ProofOutcome      outcome of proving a change

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from agreement.hardening import (
    CommitmentFormatError,
    CryptoUtils,
    ValidationError,
    Validators,
    require_valid,
)


ID_KEY = "@id"


# =============================================================================
# FACTS AND DELTAS
# =============================================================================

@dataclass(frozen=True)
class Reference:
    """A value that refers to another entity."""
    id: str

    def to_json(self) -> Dict[str, str]:
        return {ID_KEY: self.id}


Value = Union[str, int, float, bool, Reference]


def value_to_json(value: Value) -> Any:
    """JSON form of a property value."""
    if isinstance(value, Reference):
        return value.to_json()
    return value


def value_from_json(raw: Any) -> Value:
    """Inverse of value_to_json."""
    if isinstance(raw, dict):
        if set(raw) != {ID_KEY} or not isinstance(raw[ID_KEY], str):
            raise ValidationError("value", "object values must be references {'@id': ...}", raw)
        return Reference(raw[ID_KEY])
    return require_valid(Validators.validate_value(raw))


def value_sort_key(value: Value) -> str:
    """Total order over mixed-type values, stable across replicas."""
    return json.dumps(value_to_json(value), sort_keys=True, separators=(",", ":"))


def is_property(key: str) -> bool:
    """Keywords such as @id and @type are not properties."""
    return not key.startswith("@")


@dataclass(frozen=True)
class Fact:
    """A single (subject, property, value) statement."""
    subject_id: str
    property: str
    value: Value
    # Part of equality and hash so that True and 1 are different facts
    value_key: str = field(init=False, repr=False, default="")

    def __post_init__(self):
        require_valid(Validators.validate_identifier(self.subject_id, "subject_id"))
        require_valid(Validators.validate_identifier(self.property, "property"))
        if not is_property(self.property):
            raise ValidationError("property", "keywords are not properties", self.property)
        require_valid(Validators.validate_value(self.value))
        object.__setattr__(self, "value_key", value_sort_key(self.value))


@dataclass(frozen=True)
class ChangeDelta:
    """
    Inserted and deleted facts of one guarded change.

    A triple never appears on both sides of the same delta.
    """
    inserted: FrozenSet[Fact] = frozenset()
    deleted: FrozenSet[Fact] = frozenset()

    def __post_init__(self):
        object.__setattr__(self, "inserted", frozenset(self.inserted))
        object.__setattr__(self, "deleted", frozenset(self.deleted))
        both = self.inserted & self.deleted
        if both:
            sample = sorted(both, key=lambda f: (f.subject_id, f.property, value_sort_key(f.value)))[0]
            raise ValidationError(
                "delta",
                f"fact both inserted and deleted: {sample.subject_id} {sample.property}",
                sample,
            )

    @classmethod
    def from_subjects(
        cls,
        insert: Iterable[Mapping[str, Any]] = (),
        delete: Iterable[Mapping[str, Any]] = (),
    ) -> "ChangeDelta":
        """
        Build a delta from subject descriptions.

        ``{"@id": "fred", "name": "Fred"}`` yields one fact; a list value
        yields one fact per element.
        """
        return cls(
            inserted=frozenset(_facts_of(insert)),
            deleted=frozenset(_facts_of(delete)),
        )

    @property
    def is_empty(self) -> bool:
        return not self.inserted and not self.deleted

    def subject_ids(self) -> List[str]:
        """Identifiers of all subjects touched by the delta, sorted."""
        return sorted({f.subject_id for f in self.inserted | self.deleted})

    def properties_of(self, subject_id: str) -> List[str]:
        """Properties of a subject mentioned on either side, sorted."""
        return sorted({
            f.property for f in self.inserted | self.deleted
            if f.subject_id == subject_id
        })

    def footprint(self) -> Dict[str, List[str]]:
        """Subject id -> touched properties."""
        props: Dict[str, Set[str]] = {}
        for f in self.deleted | self.inserted:
            props.setdefault(f.subject_id, set()).add(f.property)
        return {sid: sorted(p) for sid, p in sorted(props.items())}


def _facts_of(subjects: Iterable[Mapping[str, Any]]) -> Iterable[Fact]:
    for subject in subjects:
        subject_id = subject.get(ID_KEY)
        if not isinstance(subject_id, str):
            raise ValidationError(ID_KEY, "every subject needs a string @id", subject)
        for key, raw in subject.items():
            if not is_property(key):
                continue
            for item in (raw if isinstance(raw, list) else [raw]):
                yield Fact(subject_id, key, value_from_json(item))


# =============================================================================
# FINAL STATE
# =============================================================================

@dataclass(frozen=True)
class FinalStateSubject:
    """
    Post-change values of the touched properties of one subject.

    Property names are sorted and each value tuple is sorted by
    value_sort_key, so equal states compare and serialize equal.
    A property whose values were all deleted maps to an empty tuple.
    """
    id: str
    properties: Mapping[str, Tuple[Value, ...]] = field(default_factory=dict)

    def __post_init__(self):
        normalized = {
            prop: tuple(v for _, v in sorted({value_sort_key(v): v for v in values}.items()))
            for prop, values in sorted(self.properties.items())
        }
        object.__setattr__(self, "properties", normalized)

    def values(self, property: str) -> Tuple[Value, ...]:
        return self.properties.get(property, ())

    def includes(self, property: str, value: Value) -> bool:
        # Compare canonical forms; True == 1 in Python but not on the wire
        key = value_sort_key(value)
        return any(value_sort_key(v) == key for v in self.values(property))

    def facts(self) -> List[Fact]:
        return [
            Fact(self.id, prop, value)
            for prop, values in self.properties.items()
            for value in values
        ]

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {ID_KEY: self.id}
        for prop, values in self.properties.items():
            if len(values) == 1:
                out[prop] = value_to_json(values[0])
            else:
                out[prop] = [value_to_json(v) for v in values]
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FinalStateSubject":
        subject_id = data.get(ID_KEY)
        if not isinstance(subject_id, str):
            raise CommitmentFormatError("state subject without @id")
        properties: Dict[str, Tuple[Value, ...]] = {}
        for key, raw in data.items():
            if not is_property(key):
                continue
            items = raw if isinstance(raw, list) else [raw]
            try:
                properties[key] = tuple(value_from_json(v) for v in items)
            except ValidationError as e:
                raise CommitmentFormatError(f"bad value for {subject_id} {key}: {e}") from e
        return cls(id=subject_id, properties=properties)


@dataclass(frozen=True)
class ProofCommitment:
    """The record committed to the ledger under a proof token."""
    principal_id: str
    final_state: Tuple[FinalStateSubject, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "final_state", tuple(self.final_state))

    def subject(self, subject_id: str) -> Optional[FinalStateSubject]:
        for subject in self.final_state:
            if subject.id == subject_id:
                return subject
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pid": self.principal_id,
            "state": [s.to_dict() for s in self.final_state],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProofCommitment":
        return cls(
            principal_id=data["pid"],
            final_state=tuple(FinalStateSubject.from_dict(s) for s in data["state"]),
        )


# =============================================================================
# TOKENS AND PROOF VALUES
# =============================================================================

@dataclass(frozen=True)
class ProofToken:
    """
    Opaque ledger key for a proof commitment.

    Shape: ``<prefix><2*nbytes hex>``, within the ledger key rule
    ``[A-Za-z0-9_]{1,64}``.
    """
    value: str

    def __post_init__(self):
        require_valid(Validators.validate_ledger_key(self.value, "token"))

    @classmethod
    def generate(cls, prefix: str = "pk_", nbytes: int = 16) -> "ProofToken":
        require_valid(Validators.validate_key_prefix(prefix))
        return cls(prefix + CryptoUtils.secure_random_hex(nbytes))

    def matches(self, prefix: str = "pk_", nbytes: int = 16) -> bool:
        pattern = re.escape(prefix) + "[0-9a-f]{%d}" % (nbytes * 2)
        return re.fullmatch(pattern, self.value) is not None

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ProofValue:
    """
    The agreement value attached to a propagated change.

    Either a single raw value or a sequence of raw values, one of which
    should be a proof token. Other entries are ignored.
    """
    items: Tuple[Any, ...]
    is_collection: bool = False

    @classmethod
    def of(cls, raw: Any) -> "ProofValue":
        if isinstance(raw, ProofValue):
            return raw
        if isinstance(raw, (list, tuple, set, frozenset)):
            return cls(items=tuple(raw), is_collection=True)
        if raw is None:
            return cls(items=(), is_collection=True)
        return cls(items=(raw,))

    def extract_token(self, prefix: str = "pk_") -> Optional[ProofToken]:
        """First string item that starts with the proof key prefix."""
        for item in self.items:
            if isinstance(item, ProofToken):
                item = item.value
            if isinstance(item, str) and item.startswith(prefix):
                if Validators.validate_ledger_key(item).is_valid:
                    return ProofToken(item)
        return None


# =============================================================================
# PRINCIPALS
# =============================================================================

@dataclass(frozen=True)
class PrincipalRef:
    """Identity of the actor behind a change."""
    id: str


@dataclass(frozen=True)
class Principal(PrincipalRef):
    """A principal that can sign ledger transactions (Ed25519)."""
    signing_key: Optional[Ed25519PrivateKey] = field(default=None, repr=False, compare=False)

    @classmethod
    def generate(cls, id: str) -> "Principal":
        return cls(id=id, signing_key=Ed25519PrivateKey.generate())

    @classmethod
    def from_private_hex(cls, id: str, private_key_hex: str) -> "Principal":
        return cls(id=id, signing_key=Ed25519PrivateKey.from_private_bytes(bytes.fromhex(private_key_hex)))

    @property
    def public_key_hex(self) -> str:
        if self.signing_key is None:
            raise ValidationError("signing_key", f"principal {self.id} has no signing key")
        return self.signing_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        ).hex()

    def sign(self, message: bytes) -> bytes:
        if self.signing_key is None:
            raise ValidationError("signing_key", f"principal {self.id} has no signing key")
        return self.signing_key.sign(message)


# =============================================================================
# OUTCOMES
# =============================================================================

class FailureReason(Enum):
    """Why a change could not be proved or a proof did not pass."""
    UNAUTHENTICATED_CHANGE = "No principal in change"
    NO_PRINCIPAL = "No principal in update"
    NO_PROOF_KEY = "No proof key in update"
    NO_PROOF_IN_LEDGER = "No proof in ledger"
    MALFORMED_PROOF = "Proof in ledger is malformed"
    PRINCIPAL_MISMATCH = "Proof principal does not match update principal"
    STATE_MISMATCH = "Proof does not match update"

    @property
    def retryable(self) -> bool:
        # Consensus may simply not have caught up with replication yet
        return self is FailureReason.NO_PROOF_IN_LEDGER


@dataclass(frozen=True)
class Verdict:
    """Outcome of testing an agreement proof."""
    reason: Optional[FailureReason] = None

    @property
    def agreed(self) -> bool:
        return self.reason is None

    @property
    def retryable(self) -> bool:
        return self.reason is not None and self.reason.retryable

    @property
    def message(self) -> str:
        return "Agreed" if self.reason is None else self.reason.value

    def __bool__(self) -> bool:
        return self.agreed

    @classmethod
    def passed(cls) -> "Verdict":
        return cls()

    @classmethod
    def failed(cls, reason: FailureReason) -> "Verdict":
        return cls(reason=reason)


@dataclass(frozen=True)
class ProofOutcome:
    """Outcome of proving a change: a token, or the reason there is none."""
    token: Optional[ProofToken] = None
    reason: Optional[FailureReason] = None

    def __bool__(self) -> bool:
        return self.token is not None
