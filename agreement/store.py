"""
Replicated-Store Read State

The protocol consumes a point-in-time read handle over the replicated
store; it never writes to the store. ``ReadState`` is that contract.

``MemoryStore`` is an in-process stand-in for a replica's store: it
applies deltas and hands out frozen ``MemoryReadState`` snapshots, so a
handle taken before a change keeps answering from before the change.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import copy
import threading
from typing import Dict, Iterable, Optional, Protocol, Sequence, Tuple, Union

from agreement.model import ChangeDelta, Fact, Value, value_sort_key


class ReadState(Protocol):
    """
    Point-in-time read access to the replicated store.

    Scoped to one prove or test call; the caller acquires it, and must
    not let the store's view change underneath it during the call.
    """

    def get(self, subject_id: str, *properties: str) -> Optional[Dict[str, Union[Value, Sequence[Value]]]]:
        """
        Current values of the named properties of a subject.

        Returns None if the subject is unknown. Properties without values
        may be absent from the result. A property may map to a single
        bare value or to a sequence of values; references may be given as
        Reference or as {"@id": ...}.
        """
        ...


_Graph = Dict[str, Dict[str, Dict[str, Value]]]


class MemoryReadState:
    """Frozen snapshot of a MemoryStore."""

    def __init__(self, graph: _Graph, version: int):
        self._graph = graph
        self.version = version

    def get(self, subject_id: str, *properties: str) -> Optional[Dict[str, Tuple[Value, ...]]]:
        subject = self._graph.get(subject_id)
        if not subject:
            return None
        wanted = properties or tuple(subject)
        return {
            prop: tuple(v for _, v in sorted(subject[prop].items()))
            for prop in wanted
            if subject.get(prop)
        }

    def subject_ids(self) -> Tuple[str, ...]:
        return tuple(sorted(self._graph))


class MemoryStore:
    """
    Thread-safe in-memory graph of facts.

    A subject with no remaining facts is dropped, i.e. becomes unknown.
    """

    def __init__(self, facts: Iterable[Fact] = ()):
        self._graph: _Graph = {}
        self._version = 0
        self._lock = threading.RLock()
        initial = tuple(facts)
        if initial:
            self.apply(ChangeDelta(inserted=frozenset(initial)))

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def apply(self, delta: ChangeDelta) -> int:
        """Apply deletes then inserts; returns the new version."""
        with self._lock:
            for fact in delta.deleted:
                subject = self._graph.get(fact.subject_id, {})
                values = subject.get(fact.property, {})
                values.pop(value_sort_key(fact.value), None)
                if not values:
                    subject.pop(fact.property, None)
                if not subject:
                    self._graph.pop(fact.subject_id, None)
            for fact in delta.inserted:
                subject = self._graph.setdefault(fact.subject_id, {})
                subject.setdefault(fact.property, {})[value_sort_key(fact.value)] = fact.value
            self._version += 1
            return self._version

    def read(self) -> MemoryReadState:
        """Snapshot of the current state."""
        with self._lock:
            return MemoryReadState(copy.deepcopy(self._graph), self._version)
