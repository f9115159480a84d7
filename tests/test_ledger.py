"""
Ledger collaborator tests: MemoryLedger and ResilientLedgerClient.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import threading

import pytest

from agreement.codec import escape_once
from agreement.hardening import LedgerRejected, LedgerTimeout, LedgerUnavailable, ValidationErrors
from agreement.ledger import MemoryLedger, ResilientLedgerClient, SignedTransaction, account_id
from agreement.model import Principal
from agreement.resilience import BackoffStrategy, RetryPolicy

ACCOUNT = "clone@test.m-ld.org"


def no_sleep_retry(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        base_delay_seconds=0.0,
        backoff_strategy=BackoffStrategy.FIXED,
        retryable_exceptions=(LedgerUnavailable,),
        sleep=lambda _: None,
    )


class FlakyLedger:
    """Fails a number of times before delegating."""

    def __init__(self, inner, failures: int, exc=LedgerUnavailable):
        self.inner = inner
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def submit(self, account_id, key, value, signer):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("transient", key=key)
        return self.inner.submit(account_id, key, value, signer)

    def query(self, account_id, key, signer):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("transient", key=key)
        return self.inner.query(account_id, key, signer)


class LostAckLedger:
    """Commits the first submit but reports the ledger unreachable."""

    def __init__(self, inner):
        self.inner = inner
        self.submits = 0

    def submit(self, account_id, key, value, signer):
        self.submits += 1
        receipt = self.inner.submit(account_id, key, value, signer)
        if self.submits == 1:
            raise LedgerUnavailable("connection reset", key=key)
        return receipt

    def query(self, account_id, key, signer):
        return self.inner.query(account_id, key, signer)


class StuckLedger:
    def __init__(self):
        self.release = threading.Event()

    def query(self, account_id, key, signer):
        self.release.wait(5)
        return None


class TestAccountId:
    def test_format(self):
        assert account_id("clone", "test.m-ld.org") == "clone@test.m-ld.org"


class TestSignedTransaction:
    """Tests for signed set-detail commands."""

    def test_signature_verifies(self, replica_a):
        tx = SignedTransaction.create(ACCOUNT, "pk_1", "v", replica_a)
        assert tx.verify()
        assert len(tx.tx_hash) == 64

    def test_tampered_value_fails(self, replica_a):
        tx = SignedTransaction.create(ACCOUNT, "pk_1", "v", replica_a)
        forged = SignedTransaction(
            account_id=tx.account_id,
            key=tx.key,
            value="w",
            signer_public_key=tx.signer_public_key,
            created_at=tx.created_at,
            signature=tx.signature,
        )
        assert not forged.verify()


class TestMemoryLedger:
    """Tests for the in-memory ledger."""

    def test_submit_then_query(self, ledger, replica_a, replica_b):
        receipt = ledger.submit(ACCOUNT, "pk_1", escape_once('{"a":"b"}'), replica_a)
        assert receipt.key == "pk_1"
        assert receipt.height == 1
        assert ledger.query(ACCOUNT, "pk_1", replica_b) == '{"a":"b"}'

    def test_one_level_of_escaping_dropped(self, ledger, replica_a):
        ledger.submit(ACCOUNT, "pk_1", '{\\"a\\":1}', replica_a)
        assert ledger.query(ACCOUNT, "pk_1", replica_a) == '{"a":1}'

    def test_unknown_key(self, ledger, replica_a):
        assert ledger.query(ACCOUNT, "pk_missing", replica_a) is None

    def test_invalid_key_rejected(self, ledger, replica_a):
        with pytest.raises(LedgerRejected):
            ledger.submit(ACCOUNT, "pk-1", "v", replica_a)

    def test_append_only(self, ledger, replica_a):
        ledger.submit(ACCOUNT, "pk_1", "v", replica_a)
        with pytest.raises(LedgerRejected, match="already written"):
            ledger.submit(ACCOUNT, "pk_1", "w", replica_a)
        assert ledger.query(ACCOUNT, "pk_1", replica_a) == "v"

    def test_non_signatory_rejected(self, ledger):
        outsider = Principal.generate("outsider")
        with pytest.raises(LedgerRejected):
            ledger.submit(ACCOUNT, "pk_1", "v", outsider)
        with pytest.raises(LedgerRejected):
            ledger.query(ACCOUNT, "pk_1", outsider)

    def test_unknown_account(self, ledger, replica_a):
        with pytest.raises(LedgerRejected, match="no such account"):
            ledger.query("clone@other.org", "pk_1", replica_a)

    def test_add_signatory_needs_existing(self, ledger):
        outsider = Principal.generate("outsider")
        with pytest.raises(LedgerRejected):
            ledger.add_signatory(ACCOUNT, outsider.public_key_hex, outsider)

    def test_duplicate_account(self, ledger, replica_a):
        with pytest.raises(LedgerRejected):
            ledger.create_account(ACCOUNT, replica_a.public_key_hex)

    def test_invalid_account_id(self, replica_a):
        with pytest.raises(ValidationErrors):
            MemoryLedger().create_account("Clone", replica_a.public_key_hex)

    def test_value_must_unescape(self, ledger, replica_a):
        with pytest.raises(LedgerRejected):
            ledger.submit(ACCOUNT, "pk_1", 'bare " quote', replica_a)

    def test_hold_defers_visibility(self, ledger, replica_a):
        ledger.hold()
        ledger.submit(ACCOUNT, "pk_1", "v", replica_a)
        assert ledger.query(ACCOUNT, "pk_1", replica_a) is None
        with pytest.raises(LedgerRejected):
            ledger.submit(ACCOUNT, "pk_1", "again", replica_a)
        ledger.release()
        assert ledger.query(ACCOUNT, "pk_1", replica_a) == "v"
        assert ledger.height == 1

    def test_unavailable(self, ledger, replica_a):
        ledger.set_available(False)
        with pytest.raises(LedgerUnavailable):
            ledger.query(ACCOUNT, "pk_1", replica_a)
        ledger.set_available(True)
        assert ledger.query(ACCOUNT, "pk_1", replica_a) is None


class TestResilientLedgerClient:
    """Tests for bounded waits and retries around a ledger client."""

    def test_retries_unavailable(self, ledger, replica_a):
        flaky = FlakyLedger(ledger, failures=2)
        client = ResilientLedgerClient(flaky, timeout_seconds=1.0, retry=no_sleep_retry(3))
        client.submit(ACCOUNT, "pk_1", "v", replica_a)
        assert flaky.calls == 3
        assert client.query(ACCOUNT, "pk_1", replica_a) == "v"

    def test_gives_up_with_ledger_error(self, ledger, replica_a):
        flaky = FlakyLedger(ledger, failures=5)
        client = ResilientLedgerClient(flaky, timeout_seconds=1.0, retry=no_sleep_retry(2))
        with pytest.raises(LedgerUnavailable, match="after 2 attempts") as info:
            client.query(ACCOUNT, "pk_1", replica_a)
        assert info.value.context == {"key": "pk_1"}
        assert flaky.calls == 2

    def test_lost_acknowledgement_recovered(self, ledger, replica_a):
        lossy = LostAckLedger(ledger)
        client = ResilientLedgerClient(lossy, timeout_seconds=1.0, retry=no_sleep_retry(3))
        receipt = client.submit(ACCOUNT, "pk_1", escape_once('{"a":"b"}'), replica_a)
        assert receipt.key == "pk_1"
        assert lossy.submits == 2
        assert ledger.height == 1
        assert ledger.query(ACCOUNT, "pk_1", replica_a) == '{"a":"b"}'

    def test_duplicate_with_other_value_still_rejected(self, ledger, replica_a):
        ledger.submit(ACCOUNT, "pk_1", "v", replica_a)
        flaky = FlakyLedger(ledger, failures=1)
        client = ResilientLedgerClient(flaky, timeout_seconds=1.0, retry=no_sleep_retry(3))
        with pytest.raises(LedgerRejected, match="already written"):
            client.submit(ACCOUNT, "pk_1", "w", replica_a)

    def test_first_attempt_duplicate_not_recovered(self, ledger, replica_a):
        ledger.submit(ACCOUNT, "pk_1", "v", replica_a)
        client = ResilientLedgerClient(ledger, timeout_seconds=1.0, retry=no_sleep_retry(3))
        with pytest.raises(LedgerRejected):
            client.submit(ACCOUNT, "pk_1", "v", replica_a)

    def test_rejection_not_retried(self, ledger, replica_a):
        flaky = FlakyLedger(ledger, failures=1, exc=LedgerRejected)
        client = ResilientLedgerClient(flaky, timeout_seconds=1.0, retry=no_sleep_retry(3))
        with pytest.raises(LedgerRejected):
            client.query(ACCOUNT, "pk_1", replica_a)
        assert flaky.calls == 1

    def test_timeout(self, replica_a):
        stuck = StuckLedger()
        client = ResilientLedgerClient(stuck, timeout_seconds=0.05, retry=no_sleep_retry(1))
        try:
            with pytest.raises(LedgerTimeout):
                client.query(ACCOUNT, "pk_1", replica_a)
        finally:
            stuck.release.set()

    def test_from_config(self, ledger, replica_a):
        from agreement.config import get_config_manager

        get_config_manager().set("ledger.query_timeout_ms", 250)
        client = ResilientLedgerClient.from_config(ledger)
        assert client._timeout_seconds == 0.25
        assert client.query(ACCOUNT, "pk_1", replica_a) is None
