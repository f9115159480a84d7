"""
Final-State Snapshot Builder

Derives the authoritative post-change state of exactly the facts a change
touched.

    ┌──────────────┐   footprint    ┌──────────────┐   overlay   ┌────────────┐
    │ ChangeDelta  │ ─────────────▶ │ ReadState    │ ──────────▶ │ FinalState │
    │ ins / del    │  subjects ×    │ get(id, *p)  │  - deleted  │ Subjects   │
    └──────────────┘  properties    └──────────────┘  + inserted └────────────┘

The store read may be slightly before or after the change, so the delta is
always re-applied on top of what was read. Properties the delta does not
mention are never loaded, which bounds a snapshot by the change's
footprint rather than by entity size.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from typing import Any, Dict, List

from agreement.hardening import CollaboratorFailure, ReadStateError, ValidationError
from agreement.model import ChangeDelta, FinalStateSubject, Value, value_from_json, value_sort_key
from agreement.observability import Component, get_logger
from agreement.store import ReadState


logger = get_logger("builder", Component.SNAPSHOT)


class StateSnapshotBuilder:
    """
    Builds the final-state snapshot of one change.

    Deterministic: for the same delta and the same store snapshot the
    result is value-equal, subjects sorted by id and values by canonical
    form.
    """

    def __init__(self, delta: ChangeDelta):
        self.delta = delta
        self.footprint: Dict[str, List[str]] = delta.footprint()

    def build(self, state: ReadState) -> List[FinalStateSubject]:
        subjects = [
            self._load(state, subject_id, properties)
            for subject_id, properties in self.footprint.items()
        ]
        logger.debug(
            "built final state",
            operation="snapshot.build",
            subjects=len(subjects),
            facts=sum(len(values) for s in subjects for values in s.properties.values()),
        )
        return subjects

    def _load(self, state: ReadState, subject_id: str, properties: List[str]) -> FinalStateSubject:
        try:
            current = state.get(subject_id, *properties)
        except CollaboratorFailure:
            raise
        except Exception as e:
            raise ReadStateError(
                f"read of {subject_id} failed: {e}",
                subject_id=subject_id,
                properties=properties,
            ) from e

        # Unknown subject: it is being created by this change
        current = current or {}

        values: Dict[str, Dict[str, Value]] = {}
        for prop in properties:
            values[prop] = {
                value_sort_key(v): v
                for v in _read_values(subject_id, prop, current.get(prop))
            }
        for fact in self.delta.deleted:
            if fact.subject_id == subject_id:
                values[fact.property].pop(value_sort_key(fact.value), None)
        for fact in self.delta.inserted:
            if fact.subject_id == subject_id:
                values[fact.property][value_sort_key(fact.value)] = fact.value

        return FinalStateSubject(
            id=subject_id,
            properties={prop: tuple(vals.values()) for prop, vals in values.items()},
        )


def _read_values(subject_id: str, prop: str, raw: Any) -> List[Value]:
    """Values of one property as read; a bare value counts as one value."""
    if raw is None:
        return []
    items = list(raw) if isinstance(raw, (list, tuple, set, frozenset)) else [raw]
    try:
        return [value_from_json(item) for item in items]
    except ValidationError as e:
        raise ReadStateError(
            f"read of {subject_id} returned an invalid {prop} value: {e.message}",
            subject_id=subject_id,
            property=prop,
        ) from e


def build_final_state(delta: ChangeDelta, state: ReadState) -> List[FinalStateSubject]:
    """Convenience wrapper for StateSnapshotBuilder(delta).build(state)."""
    return StateSnapshotBuilder(delta).build(state)
