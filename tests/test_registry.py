"""
Extension registry tests.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest

from agreement.condition import ConsensusCondition
from agreement.hardening import ExtensionError
from agreement.model import ChangeDelta
from agreement.registry import (
    AppContext,
    Declaration,
    ExtensionEnvironment,
    ExtensionRegistry,
    get_registry,
)
from agreement.store import MemoryStore


class Dummy:
    """Extension used to exercise the import fallback."""

    def __init__(self, env):
        self.env = env

    @classmethod
    def from_environment(cls, env):
        return cls(env)


class NoFactory:
    pass


@pytest.fixture
def env(ledger, replica_a):
    return ExtensionEnvironment(
        config={"@id": "test", "@domain": "test.m-ld.org"},
        app=AppContext(principal=replica_a, ledger=ledger),
    )


class TestDeclaration:
    """Tests for declaration records."""

    def test_subject_form(self):
        declaration = Declaration("consensus", "agreement.condition", "ConsensusCondition")
        subject = declaration.to_subject()
        assert subject["@type"] == "agreement:PythonModule"
        assert Declaration.from_subject(subject) == declaration

    def test_wrong_type(self):
        with pytest.raises(ExtensionError):
            Declaration.from_subject({"@id": "x", "@type": "Other", "module": "m", "class": "C"})

    def test_missing_field(self):
        with pytest.raises(ExtensionError, match="class"):
            Declaration.from_subject({"@id": "x", "@type": "agreement:PythonModule", "module": "m"})

    def test_empty_field(self):
        with pytest.raises(ExtensionError):
            Declaration.from_subject({"@id": "", "@type": "agreement:PythonModule", "module": "m", "class": "C"})


class TestExtensionEnvironment:
    def test_domain_id(self, env):
        assert env.domain_id == "test.m-ld.org"

    def test_missing_domain(self, ledger, replica_a):
        env = ExtensionEnvironment(config={}, app=AppContext(replica_a, ledger))
        with pytest.raises(ExtensionError):
            env.domain_id


class TestExtensionRegistry:
    """Tests for instantiating declared extensions."""

    def test_default_registry_creates_condition(self, env, alice):
        condition = get_registry().create(ConsensusCondition.declare("consensus"), env)
        assert isinstance(condition, ConsensusCondition)
        assert condition.account_id == "clone@test.m-ld.org"

        delta = ChangeDelta.from_subjects(insert=[{"@id": "fred", "name": "Fred"}])
        outcome = condition.prove(MemoryStore().read(), delta, alice)
        assert condition.test(MemoryStore().read(), delta, outcome.token.value, alice)

    def test_registered_factory_wins(self, env):
        registry = ExtensionRegistry()
        registry.register("somewhere.else", "Thing", lambda e: ("made", e.domain_id))
        made = registry.create(Declaration("t", "somewhere.else", "Thing"), env)
        assert made == ("made", "test.m-ld.org")
        assert registry.is_registered("somewhere.else", "Thing")

    def test_import_fallback(self, env):
        made = ExtensionRegistry().create(Declaration("d", __name__, "Dummy"), env)
        assert isinstance(made, Dummy)
        assert made.env is env

    def test_unknown_module(self, env):
        with pytest.raises(ExtensionError, match="cannot import"):
            ExtensionRegistry().create(Declaration("x", "no.such.module_here", "C"), env)

    def test_unknown_class(self, env):
        with pytest.raises(ExtensionError, match="no attribute"):
            ExtensionRegistry().create(Declaration("x", __name__, "Missing"), env)

    def test_class_without_factory(self, env):
        with pytest.raises(ExtensionError, match="from_environment"):
            ExtensionRegistry().create(Declaration("x", __name__, "NoFactory"), env)
