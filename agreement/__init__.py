"""
AGREEMENT: Ledger-Corroborated Agreement Proofs

Guards changes to a replicated store with a proof committed to an external,
totally-ordered ledger. The replica that makes a change commits the final
state of the facts it touched; every replica that receives the change reads
the commitment back and checks it against state it derives itself.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        AGREEMENT CONDITION                               │
    │                                                                          │
    │    condition.py    prove / test / await_agreement                        │
    │    registry.py     Declarative instantiation from domain configuration   │
    │                                                                          │
    │    snapshot.py     Final state of a change's footprint                   │
    │    codec.py        Canonical commitment encoding, lossy value channel    │
    │    ledger.py       Ledger client contract, MemoryLedger, retries         │
    │    store.py        Read-state contract, MemoryStore                      │
    │    model.py        Facts, deltas, tokens, verdicts                       │
    │                                                                          │
    │    config.py  observability.py  hardening.py  resilience.py              │
    └─────────────────────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.1.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):

    if name in ("ConsensusCondition", "await_agreement", "corroborates"):
        from agreement import condition
        return getattr(condition, name)

    if name in ("Fact", "Reference", "ChangeDelta", "FinalStateSubject",
                "ProofCommitment", "ProofToken", "ProofValue", "PrincipalRef",
                "Principal", "FailureReason", "Verdict", "ProofOutcome"):
        from agreement import model
        return getattr(model, name)

    if name in ("StateSnapshotBuilder", "build_final_state"):
        from agreement import snapshot
        return getattr(snapshot, name)

    if name in ("ReadState", "MemoryStore", "MemoryReadState"):
        from agreement import store
        return getattr(store, name)

    if name in ("LedgerClient", "MemoryLedger", "ResilientLedgerClient", "CommitReceipt"):
        from agreement import ledger
        return getattr(ledger, name)

    if name in ("encode_commitment", "decode_commitment", "commitment_digest"):
        from agreement import codec
        return getattr(codec, name)

    if name in ("Declaration", "AppContext", "ExtensionEnvironment",
                "ExtensionRegistry", "get_registry"):
        from agreement import registry
        return getattr(registry, name)

    if name in ("AgreementConfig", "ConfigManager", "get_config", "get_config_manager"):
        from agreement import config
        return getattr(config, name)

    if name in ("AgreementError", "ValidationError", "CollaboratorFailure",
                "ReadStateError", "LedgerError", "LedgerUnavailable",
                "LedgerRejected", "LedgerTimeout", "CommitmentFormatError",
                "ExtensionError"):
        from agreement import hardening
        return getattr(hardening, name)

    raise AttributeError(f"module 'agreement' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Condition
    "ConsensusCondition", "await_agreement", "corroborates",
    # Model
    "Fact", "Reference", "ChangeDelta", "FinalStateSubject", "ProofCommitment",
    "ProofToken", "ProofValue", "PrincipalRef", "Principal", "FailureReason",
    "Verdict", "ProofOutcome",
    # Collaborators
    "StateSnapshotBuilder", "build_final_state", "ReadState", "MemoryStore",
    "MemoryReadState", "LedgerClient", "MemoryLedger", "ResilientLedgerClient",
    "CommitReceipt",
    # Codec
    "encode_commitment", "decode_commitment", "commitment_digest",
    # Registry
    "Declaration", "AppContext", "ExtensionEnvironment", "ExtensionRegistry",
    "get_registry",
    # Config
    "AgreementConfig", "ConfigManager", "get_config", "get_config_manager",
    # Errors
    "AgreementError", "ValidationError", "CollaboratorFailure", "ReadStateError",
    "LedgerError", "LedgerUnavailable", "LedgerRejected", "LedgerTimeout",
    "CommitmentFormatError", "ExtensionError",
]
