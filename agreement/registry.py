"""
Extension Registry

Declarative instantiation of agreement conditions from domain
configuration. A domain carries a declaration subject such as

    {"@id": "consensus", "@type": "agreement:PythonModule",
     "module": "agreement.condition", "class": "ConsensusCondition"}

and every replica resolves it to a live condition through the registry.
Registered factories win; otherwise the module is imported and the class's
``from_environment`` factory is called.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import importlib
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from agreement.config import AgreementConfig
from agreement.hardening import ExtensionError, ValidationError, Validators, require_valid
from agreement.ledger import LedgerClient
from agreement.model import ID_KEY, Principal
from agreement.observability import Component, get_logger


logger = get_logger("extensions", Component.REGISTRY)

TYPE_KEY = "@type"
DOMAIN_KEY = "@domain"
EXTENSION_TYPE = "agreement:PythonModule"


@dataclass(frozen=True)
class Declaration:
    """Static descriptor of an extension: identifier plus module/class reference."""
    id: str
    module_ref: str
    class_name: str

    def __post_init__(self):
        require_valid(Validators.validate_identifier(self.id, "id"))
        require_valid(Validators.validate_identifier(self.module_ref, "module_ref"))
        require_valid(Validators.validate_identifier(self.class_name, "class_name"))

    def to_subject(self) -> Dict[str, Any]:
        return {
            ID_KEY: self.id,
            TYPE_KEY: EXTENSION_TYPE,
            "module": self.module_ref,
            "class": self.class_name,
        }

    @classmethod
    def from_subject(cls, subject: Mapping[str, Any]) -> "Declaration":
        if subject.get(TYPE_KEY) != EXTENSION_TYPE:
            raise ExtensionError(f"not an extension declaration: {subject.get(TYPE_KEY)!r}")
        try:
            return cls(
                id=subject[ID_KEY],
                module_ref=subject["module"],
                class_name=subject["class"],
            )
        except KeyError as e:
            raise ExtensionError(f"declaration missing {e.args[0]}") from e
        except ValidationError as e:
            raise ExtensionError(f"invalid declaration: {e}") from e


@dataclass(frozen=True)
class AppContext:
    """What the hosting application lends to extensions."""
    principal: Principal
    ledger: LedgerClient


@dataclass(frozen=True)
class ExtensionEnvironment:
    """
    Everything an extension factory may use.

    ``config`` is the domain configuration (must carry ``@domain``);
    ``settings`` is the agreement configuration, defaulting to the global one.
    """
    config: Mapping[str, Any]
    app: AppContext
    settings: Optional[AgreementConfig] = field(default=None, compare=False)

    @property
    def domain_id(self) -> str:
        domain = self.config.get(DOMAIN_KEY)
        if not isinstance(domain, str) or not domain:
            raise ExtensionError("domain configuration has no @domain")
        return domain


Factory = Callable[[ExtensionEnvironment], Any]


class ExtensionRegistry:
    """Maps (module, class) references to factories."""

    def __init__(self):
        self._factories: Dict[Tuple[str, str], Factory] = {}
        self._lock = threading.Lock()

    def register(self, module_ref: str, class_name: str, factory: Factory) -> None:
        with self._lock:
            self._factories[(module_ref, class_name)] = factory

    def is_registered(self, module_ref: str, class_name: str) -> bool:
        with self._lock:
            return (module_ref, class_name) in self._factories

    def create(self, declaration: Any, env: ExtensionEnvironment) -> Any:
        """
        Instantiate a declared extension.

        Accepts a Declaration or its subject form. Raises ExtensionError
        if the module or class cannot be resolved.
        """
        if not isinstance(declaration, Declaration):
            declaration = Declaration.from_subject(declaration)

        key = (declaration.module_ref, declaration.class_name)
        with self._lock:
            factory = self._factories.get(key)
        if factory is None:
            factory = self._import_factory(declaration)

        logger.info(
            "instantiating extension",
            operation="registry.create",
            extension_id=declaration.id,
            module=declaration.module_ref,
            cls=declaration.class_name,
        )
        return factory(env)

    @staticmethod
    def _import_factory(declaration: Declaration) -> Factory:
        try:
            module = importlib.import_module(declaration.module_ref)
        except ImportError as e:
            raise ExtensionError(f"cannot import {declaration.module_ref}: {e}") from e

        cls = getattr(module, declaration.class_name, None)
        if cls is None:
            raise ExtensionError(
                f"{declaration.module_ref} has no attribute {declaration.class_name}"
            )
        factory = getattr(cls, "from_environment", None)
        if not callable(factory):
            raise ExtensionError(f"{declaration.class_name} has no from_environment factory")
        return factory


def _default_registry() -> ExtensionRegistry:
    from agreement.condition import ConsensusCondition, DEFAULT_MODULE_REF

    registry = ExtensionRegistry()
    registry.register(DEFAULT_MODULE_REF, ConsensusCondition.__name__, ConsensusCondition.from_environment)
    return registry


_registry: Optional[ExtensionRegistry] = None


def get_registry() -> ExtensionRegistry:
    """Process-wide registry, with ConsensusCondition registered."""
    global _registry
    if _registry is None:
        _registry = _default_registry()
    return _registry
