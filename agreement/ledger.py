"""
Agreement Ledger Layer

The external, totally-ordered ledger that corroborates guarded changes.
The protocol needs two operations from it:

    submit(account, key, value, signer)  durable once a receipt is returned
    query(account, key, signer)          value or None

Architecture:

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    CONSENSUS CONDITION                               │
    │  prove → submit(pk_…, commitment)   test → query(pk_…)               │
    └──────────────────────────────┬──────────────────────────────────────┘
                                   │
    ┌──────────────────────────────▼──────────────────────────────────────┐
    │                  RESILIENT LEDGER CLIENT                             │
    │  Bounded wait, retry on unavailability                               │
    └──────────────────────────────┬──────────────────────────────────────┘
                                   │
    ┌──────────────────────────────▼──────────────────────────────────────┐
    │          LEDGER CLIENT (MemoryLedger, or a network client)           │
    │  Signed set-account-detail commands, account detail queries          │
    └─────────────────────────────────────────────────────────────────────┘

The value channel of the ledger drops one level of string escaping; see
``agreement.codec``. MemoryLedger reproduces that behaviour.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Set

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from agreement.codec import canonicalize, unescape_once
from agreement.hardening import (
    LedgerError,
    LedgerRejected,
    LedgerTimeout,
    LedgerUnavailable,
    Validators,
)
from agreement.model import Principal
from agreement.observability import Component, get_logger
from agreement.resilience import (
    BackoffStrategy,
    RetryExhaustedError,
    RetryPolicy,
    Timeout,
    TimeoutError as OperationTimeout,
)


logger = get_logger("client", Component.LEDGER)


def account_id(account_name: str, domain_id: str) -> str:
    """Ledger account shared by every replica of a domain."""
    return f"{account_name}@{domain_id}"


# =============================================================================
# CLIENT INTERFACE
# =============================================================================

@dataclass(frozen=True)
class CommitReceipt:
    """Acknowledgement of a durable ledger write."""
    tx_hash: str
    key: str
    height: int
    committed_at: str

    @classmethod
    def recovered(cls, key: str) -> "CommitReceipt":
        """Receipt for a write confirmed by reading it back; its transaction is unknown."""
        return cls(tx_hash="", key=key, height=0, committed_at="")


class LedgerClient(Protocol):
    """
    Protocol for ledger clients.

    Implementations raise LedgerError subclasses for infrastructure
    failures; an unknown key is not a failure and yields None.
    """

    def submit(self, account_id: str, key: str, value: str, signer: Principal) -> CommitReceipt:
        """Write a key/value detail on the account, signed by signer."""
        ...

    def query(self, account_id: str, key: str, signer: Principal) -> Optional[str]:
        """Read a key/value detail of the account, or None if absent."""
        ...


# =============================================================================
# SIGNED TRANSACTIONS
# =============================================================================

@dataclass(frozen=True)
class SignedTransaction:
    """A set-account-detail command and its Ed25519 signature."""
    account_id: str
    key: str
    value: str
    signer_public_key: str
    created_at: str
    signature: bytes = field(repr=False, default=b"")

    def payload(self) -> bytes:
        return canonicalize({
            "command": "set_account_detail",
            "account_id": self.account_id,
            "key": self.key,
            "value": self.value,
            "creator": self.signer_public_key,
            "created_at": self.created_at,
        })

    @property
    def tx_hash(self) -> str:
        return hashlib.sha256(self.payload() + self.signature).hexdigest()

    @classmethod
    def create(cls, account_id: str, key: str, value: str, signer: Principal) -> "SignedTransaction":
        unsigned = cls(
            account_id=account_id,
            key=key,
            value=value,
            signer_public_key=signer.public_key_hex,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        return cls(
            account_id=unsigned.account_id,
            key=unsigned.key,
            value=unsigned.value,
            signer_public_key=unsigned.signer_public_key,
            created_at=unsigned.created_at,
            signature=signer.sign(unsigned.payload()),
        )

    def verify(self) -> bool:
        try:
            public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(self.signer_public_key))
            public_key.verify(self.signature, self.payload())
        except (InvalidSignature, ValueError):
            return False
        return True


# =============================================================================
# IN-MEMORY LEDGER
# =============================================================================

@dataclass
class _Account:
    signatories: Set[str] = field(default_factory=set)
    details: Dict[str, str] = field(default_factory=dict)


class MemoryLedger:
    """
    In-memory ledger for tests and single-process deployments.

    Enforces what the protocol relies on:
    - keys follow [A-Za-z0-9_]{1,64}
    - only signatories of an account may write or query it
    - details are append-only (a key is written once)
    - a write is visible once its receipt is returned, unless visibility
      is held back with hold() to model consensus latency
    """

    def __init__(self):
        self._accounts: Dict[str, _Account] = {}
        self._pending: List[SignedTransaction] = []
        self._log: List[SignedTransaction] = []
        self._holding = False
        self._available = True
        self._lock = threading.RLock()

    # -- administration ------------------------------------------------------

    def create_account(self, account_id: str, first_signatory_public_key: str) -> None:
        """Create an account with its first signatory (hex Ed25519 public key)."""
        Validators.validate_account_id(account_id).raise_if_invalid()
        with self._lock:
            if account_id in self._accounts:
                raise LedgerRejected(f"account exists: {account_id}", account_id=account_id)
            self._accounts[account_id] = _Account(signatories={first_signatory_public_key})

    def add_signatory(self, account_id: str, public_key: str, existing: Principal) -> None:
        """Register a new signatory; must be authorised by an existing one."""
        with self._lock:
            account = self._account(account_id)
            if existing.public_key_hex not in account.signatories:
                raise LedgerRejected(
                    "only an existing signatory may add signatories",
                    account_id=account_id,
                )
            account.signatories.add(public_key)

    def set_available(self, available: bool) -> None:
        """Simulate the ledger going offline (calls raise LedgerUnavailable)."""
        self._available = available

    def hold(self) -> None:
        """Accept commands but defer their visibility to queries."""
        with self._lock:
            self._holding = True

    def release(self) -> None:
        """Make held commands visible, in submission order."""
        with self._lock:
            self._holding = False
            pending, self._pending = self._pending, []
            for tx in pending:
                self._apply(tx)

    @property
    def height(self) -> int:
        with self._lock:
            return len(self._log)

    # -- LedgerClient --------------------------------------------------------

    def submit(self, account_id: str, key: str, value: str, signer: Principal) -> CommitReceipt:
        self._check_available()
        key_check = Validators.validate_ledger_key(key)
        if not key_check.is_valid:
            raise LedgerRejected(f"invalid detail key: {key!r}", key=key)

        tx = SignedTransaction.create(account_id, key, value, signer)
        with self._lock:
            account = self._account(account_id)
            if not tx.verify():
                raise LedgerRejected("bad signature", key=key)
            if tx.signer_public_key not in account.signatories:
                raise LedgerRejected(
                    f"{signer.id} is not a signatory of {account_id}",
                    account_id=account_id,
                )
            if key in account.details or any(
                p.account_id == account_id and p.key == key for p in self._pending
            ):
                raise LedgerRejected(f"detail already written: {key}", key=key)
            try:
                unescape_once(value)
            except ValueError as e:
                raise LedgerRejected(f"value is not a valid escaped string: {e}", key=key) from e

            self._log.append(tx)
            height = len(self._log)
            if self._holding:
                self._pending.append(tx)
            else:
                self._apply(tx)

        logger.debug("committed detail", operation="ledger.submit", key=key, height=height)
        return CommitReceipt(
            tx_hash=tx.tx_hash,
            key=key,
            height=height,
            committed_at=tx.created_at,
        )

    def query(self, account_id: str, key: str, signer: Principal) -> Optional[str]:
        self._check_available()
        with self._lock:
            account = self._account(account_id)
            if signer.public_key_hex not in account.signatories:
                raise LedgerRejected(
                    f"{signer.id} may not query {account_id}",
                    account_id=account_id,
                )
            return account.details.get(key)

    # -- internals -----------------------------------------------------------

    def _apply(self, tx: SignedTransaction) -> None:
        # The ledger stores the value with one level of escaping removed
        self._accounts[tx.account_id].details[tx.key] = unescape_once(tx.value)

    def _account(self, account_id: str) -> _Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise LedgerRejected(f"no such account: {account_id}", account_id=account_id)
        return account

    def _check_available(self) -> None:
        if not self._available:
            raise LedgerUnavailable("ledger unreachable")


# =============================================================================
# RESILIENT CLIENT
# =============================================================================

class ResilientLedgerClient:
    """
    Wraps a LedgerClient with a bounded wait and retries.

    Only LedgerUnavailable (including LedgerTimeout) is retried; rejected
    commands fail at once. A retried submit rejected as a duplicate key
    succeeds if the ledger already holds the same value under that key.
    """

    def __init__(
        self,
        inner: LedgerClient,
        timeout_seconds: float = 5.0,
        retry: Optional[RetryPolicy] = None,
    ):
        self._inner = inner
        self._timeout_seconds = timeout_seconds
        self._retry = retry or RetryPolicy(
            max_attempts=3,
            base_delay_seconds=0.5,
            backoff_strategy=BackoffStrategy.EXPONENTIAL_JITTER,
            retryable_exceptions=(LedgerUnavailable,),
        )

    @classmethod
    def from_config(cls, inner: LedgerClient, config=None) -> "ResilientLedgerClient":
        from agreement.config import get_config

        ledger_cfg = (config or get_config()).ledger
        retry = RetryPolicy(
            max_attempts=ledger_cfg.max_retry_attempts.get(),
            base_delay_seconds=ledger_cfg.retry_base_delay_seconds.get(),
            retryable_exceptions=(LedgerUnavailable,),
            on_retry=lambda attempt, cause, delay: logger.warning(
                "ledger call failed, retrying",
                operation="ledger.retry",
                attempt=attempt,
                delay_seconds=round(delay, 3),
                cause=str(cause),
            ),
        )
        return cls(inner, ledger_cfg.query_timeout_ms.get() / 1000.0, retry)

    def submit(self, account_id: str, key: str, value: str, signer: Principal) -> CommitReceipt:
        attempts = 0

        def write() -> CommitReceipt:
            nonlocal attempts
            attempts += 1
            try:
                return self._inner.submit(account_id, key, value, signer)
            except LedgerRejected:
                # A timed-out earlier attempt may have been committed after all
                if attempts > 1 and self._already_written(account_id, key, value, signer):
                    logger.info("earlier submit landed", operation="ledger.submit", key=key)
                    return CommitReceipt.recovered(key)
                raise

        return self._call("ledger.submit", write)

    def query(self, account_id: str, key: str, signer: Principal) -> Optional[str]:
        return self._call("ledger.query", lambda: self._inner.query(account_id, key, signer))

    def _already_written(self, account_id: str, key: str, value: str, signer: Principal) -> bool:
        try:
            expected = unescape_once(value)
        except ValueError:
            return False
        return self._inner.query(account_id, key, signer) == expected

    def _call(self, name: str, func):
        timeout = Timeout(self._timeout_seconds, name=name)

        def bounded():
            try:
                return timeout.execute(func)
            except OperationTimeout as e:
                raise LedgerTimeout(str(e), operation=name) from e

        try:
            return self._retry.execute(bounded)
        except RetryExhaustedError as e:
            last = e.last_exception
            if isinstance(last, LedgerError):
                raise type(last)(f"{last} (after {e.attempts} attempts)", **last.context) from e
            raise LedgerUnavailable(str(e), operation=name) from e
