"""
Consensus Agreement Condition

An agreement condition that proves agreement by committing the final state
of a guarded change to an external ledger, and tests agreement by reading
that commitment back and checking it against independently derived state.

Protocol
────────

    PROVE (replica that makes the change)

        delta, read state ──▶ final state ──▶ {pid, state} ──▶ ledger[pk_…]
                                                                  │
                                 token pk_… travels with the change ◀─┘

    TEST (every replica that receives the change)

        token ──▶ ledger[pk_…] ──▶ pid == change principal?
                                       │
        delta, own read state ──▶ final state ⊆ committed state?

States of a guarded change across the system:

    Proposed → Proved → Propagated → Tested-pass
                                   → Tested-fail-retryable (proof not yet visible)
                                   → Tested-fail-terminal  (principal/state mismatch,
                                                            missing or malformed proof)

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from agreement.codec import commitment_digest, decode_commitment, encode_commitment
from agreement.config import AgreementConfig, get_config
from agreement.hardening import CommitmentFormatError, CryptoUtils, Validators
from agreement.ledger import LedgerClient, account_id
from agreement.model import (
    ChangeDelta,
    FailureReason,
    FinalStateSubject,
    Principal,
    PrincipalRef,
    ProofCommitment,
    ProofOutcome,
    ProofToken,
    ProofValue,
    Verdict,
)
from agreement.observability import AuditLogger, Component, get_logger, get_tracer
from agreement.resilience import BackoffStrategy, RetryPolicy
from agreement.snapshot import StateSnapshotBuilder
from agreement.store import ReadState


logger = get_logger("consensus", Component.CONDITION)

DEFAULT_MODULE_REF = "agreement.condition"


class ConsensusCondition:
    """
    Agreement condition backed by a ledger.

    Ledger commands and queries are signed by the replica's own
    ``app_principal``; the principal of the change is what gets bound
    into the commitment. Apart from its audit trail, which locks
    internally, it holds no mutable state, so concurrent prove and test
    calls need no locking.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        domain_id: str,
        app_principal: Principal,
        config: Optional[AgreementConfig] = None,
        audit: Optional[AuditLogger] = None,
    ):
        config = config or get_config()
        self.audit = audit or AuditLogger(get_logger("audit", Component.CONDITION))
        self.ledger = ledger
        self.domain_id = domain_id
        self.app_principal = app_principal
        self.account_id = account_id(config.ledger.account_name.get(), domain_id)
        self.key_prefix = config.proof.key_prefix.get()
        self.token_bytes = config.proof.token_bytes.get()
        Validators.validate_account_id(self.account_id).raise_if_invalid()
        Validators.validate_key_prefix(self.key_prefix).raise_if_invalid()
        Validators.validate_token_shape(self.key_prefix, self.token_bytes).raise_if_invalid()

    @staticmethod
    def declare(id: str, module_ref: Optional[str] = None) -> Dict[str, Any]:
        """
        Declaration record for this condition, to be written into the
        domain so that every replica instantiates it.
        """
        from agreement.registry import Declaration

        return Declaration(
            id=id,
            module_ref=module_ref or DEFAULT_MODULE_REF,
            class_name=ConsensusCondition.__name__,
        ).to_subject()

    @classmethod
    def from_environment(cls, env) -> "ConsensusCondition":
        """Factory used by the extension registry."""
        return cls(
            ledger=env.app.ledger,
            domain_id=env.domain_id,
            app_principal=env.app.principal,
            config=env.settings,
        )

    # -------------------------------------------------------------------------
    # PROVE
    # -------------------------------------------------------------------------

    def prove(
        self,
        state: ReadState,
        delta: ChangeDelta,
        principal: Optional[PrincipalRef],
    ) -> ProofOutcome:
        """
        Commit the final state of a change to the ledger.

        Returns the proof token to attach to the change, or an outcome
        with UNAUTHENTICATED_CHANGE if there is no principal. Ledger
        failures propagate as LedgerError.
        """
        if principal is None:
            logger.warning("cannot prove change without principal", operation="prove")
            self.audit.log("", "prove", "", FailureReason.UNAUTHENTICATED_CHANGE.name)
            return ProofOutcome(reason=FailureReason.UNAUTHENTICATED_CHANGE)

        with get_tracer().span("agreement.prove", Component.CONDITION, principal_id=principal.id) as span:
            start = time.monotonic()
            final_state = StateSnapshotBuilder(delta).build(state)
            commitment = ProofCommitment(principal_id=principal.id, final_state=tuple(final_state))
            token = ProofToken.generate(self.key_prefix, self.token_bytes)

            receipt = self.ledger.submit(
                self.account_id,
                token.value,
                encode_commitment(commitment),
                self.app_principal,
            )

            digest = commitment_digest(commitment)
            span.set_attribute("token", token.value)
            span.set_attribute("tx_hash", receipt.tx_hash)
            logger.operation(
                "prove",
                (time.monotonic() - start) * 1000,
                token=token.value,
                subjects=len(final_state),
                commitment_digest=digest,
                tx_hash=receipt.tx_hash,
            )
            self.audit.log(principal.id, "prove", token.value, "committed", commitment_digest=digest)
            return ProofOutcome(token=token)

    # -------------------------------------------------------------------------
    # TEST
    # -------------------------------------------------------------------------

    def test(
        self,
        state: ReadState,
        delta: ChangeDelta,
        proof: Any,
        principal: Optional[PrincipalRef],
    ) -> Verdict:
        """
        Check a change against the commitment its proof token names.

        Every fact of the locally derived final state must be present in
        the committed state (subset, not equality). Semantic failures are
        returned as a Verdict; ledger and read failures raise.
        """
        with get_tracer().span("agreement.test", Component.CONDITION) as span:
            start = time.monotonic()
            verdict, token = self._test(state, delta, proof, principal)
            span.set_attribute("verdict", verdict.message)
            if not verdict:
                span.set_status("failed", verdict.message)

            duration_ms = (time.monotonic() - start) * 1000
            context = {
                "token": token.value if token else "",
                "principal_id": principal.id if principal else "",
                "retryable": verdict.retryable,
            }
            if verdict:
                logger.operation("test", duration_ms, **context)
            else:
                logger.operation("test", duration_ms, success=False, reason=verdict.message, **context)
            self.audit.log(
                context["principal_id"],
                "test",
                context["token"],
                "agreed" if verdict else verdict.reason.name,
            )
            return verdict

    def _test(
        self,
        state: ReadState,
        delta: ChangeDelta,
        proof: Any,
        principal: Optional[PrincipalRef],
    ) -> Tuple[Verdict, Optional[ProofToken]]:
        if principal is None:
            return Verdict.failed(FailureReason.NO_PRINCIPAL), None

        token = ProofValue.of(proof).extract_token(self.key_prefix)
        if token is None:
            return Verdict.failed(FailureReason.NO_PROOF_KEY), None

        value = self.ledger.query(self.account_id, token.value, self.app_principal)
        if value is None:
            return Verdict.failed(FailureReason.NO_PROOF_IN_LEDGER), token

        try:
            proved = decode_commitment(value)
        except CommitmentFormatError as e:
            logger.error("malformed commitment in ledger", error_code="MALFORMED_PROOF",
                         token=token.value, detail=str(e))
            return Verdict.failed(FailureReason.MALFORMED_PROOF), token

        if not CryptoUtils.secure_compare_str(proved.principal_id, principal.id):
            return Verdict.failed(FailureReason.PRINCIPAL_MISMATCH), token

        actual = StateSnapshotBuilder(delta).build(state)
        if not corroborates(proved, actual):
            return Verdict.failed(FailureReason.STATE_MISMATCH), token
        return Verdict.passed(), token

    # -------------------------------------------------------------------------
    # DIAGNOSTICS
    # -------------------------------------------------------------------------

    def get_commitment(self, token: Any) -> Optional[ProofCommitment]:
        """Read and decode the commitment stored under a token, if any."""
        found = ProofValue.of(token).extract_token(self.key_prefix)
        if found is None:
            return None
        value = self.ledger.query(self.account_id, found.value, self.app_principal)
        return None if value is None else decode_commitment(value)


def corroborates(proved: ProofCommitment, actual: List[FinalStateSubject]) -> bool:
    """
    True if every fact of ``actual`` is present in the committed state.

    O(proved subjects × actual facts); both are bounded by one change's
    footprint.
    """
    for subject in actual:
        for prop, values in subject.properties.items():
            for value in values:
                if not any(
                    p.id == subject.id and p.includes(prop, value)
                    for p in proved.final_state
                ):
                    return False
    return True


def await_agreement(
    condition: ConsensusCondition,
    read_state: Callable[[], ReadState],
    delta: ChangeDelta,
    proof: Any,
    principal: Optional[PrincipalRef],
    retry: Optional[RetryPolicy] = None,
) -> Verdict:
    """
    Test a change, retrying with backoff while its proof is not yet
    visible in the ledger.

    ``read_state`` is called once per attempt, so each test runs against a
    fresh point-in-time handle. Terminal verdicts return immediately; if
    the proof never appears the last NO_PROOF_IN_LEDGER verdict is returned.
    """
    if retry is None:
        cfg = get_config().agreement
        retry = RetryPolicy(
            max_attempts=cfg.max_attempts.get(),
            base_delay_seconds=cfg.base_delay_seconds.get(),
            backoff_strategy=BackoffStrategy.EXPONENTIAL_JITTER,
            retryable_exceptions=(),
            retry_if_result=lambda verdict: verdict.retryable,
            on_retry=lambda attempt, verdict, delay: logger.info(
                "proof not yet visible, waiting",
                operation="await_agreement",
                attempt=attempt,
                delay_seconds=round(delay, 3),
            ),
        )
    return retry.execute(lambda: condition.test(read_state(), delta, proof, principal))
