"""
VEIL Ledger Gateway

Read/write access to the shared record store.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                     AssetLifecycleCoordinator                        │
    └──────────────────────────────┬──────────────────────────────────────┘
                                   │ LedgerGateway (Protocol)
          ┌────────────────────────┼────────────────────────┐
          ▼                        ▼                        ▼
    list / get record        submit_create            submit_verify
                             └──── Transaction.wait() ─────┘
                                         │
                                   TransactionReceipt

A submitted transaction does nothing visible until it reaches finality.
``Transaction.wait`` raises LedgerRejected when the transaction reverts and
AlreadyVerified when another verification finalized first.

InMemoryLedger is the reference gateway. It enforces the contract rules of
the confidential record registry: unique ids, valid input proofs, valid
decryption proofs, and at most one committed cleartext per record.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Set, Union

from veil.errors import (
    AlreadyVerified,
    LedgerError,
    LedgerRejected,
    LedgerUnavailable,
    RecordNotFound,
)
from veil.fhe import ProofVerifier, decode_clear_values
from veil.observability import VeilLayer, get_logger

logger = get_logger("ledger", VeilLayer.LEDGER)


# =============================================================================
# TRANSACTIONS
# =============================================================================

class TxKind(Enum):
    CREATE = "create"
    VERIFY = "verify"


class TxStatus(Enum):
    """Status of a submitted transaction."""
    PENDING = "pending"          # Submitted, not final
    FINALIZED = "finalized"      # Irreversibly confirmed
    REVERTED = "reverted"        # Rejected by the contract


@dataclass
class TransactionReceipt:
    """Proof that a transaction reached finality."""
    tx_hash: str
    kind: TxKind
    record_id: str
    block_number: int
    status: TxStatus = TxStatus.FINALIZED
    finalized_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def is_final(self) -> bool:
        return self.status == TxStatus.FINALIZED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tx_hash": self.tx_hash,
            "kind": self.kind.value,
            "record_id": self.record_id,
            "block_number": self.block_number,
            "status": self.status.value,
            "finalized_at": self.finalized_at,
        }


class Transaction(Protocol):
    """A submitted transaction awaiting finality."""

    @property
    def tx_hash(self) -> str:
        ...

    async def wait(self) -> TransactionReceipt:
        """Wait for finality. Raises LedgerRejected or AlreadyVerified."""
        ...


# =============================================================================
# GATEWAY INTERFACE
# =============================================================================

class LedgerGateway(Protocol):
    """
    Protocol for the confidential record store.

    ``get_record`` returns the public payload:
        name, ciphertext_handle, encoded_category, encoded_status,
        created_at, creator, verified, clear_value
    """

    @property
    def contract_address(self) -> str:
        ...

    async def list_record_ids(self) -> List[str]:
        ...

    async def get_record(self, record_id: str) -> Mapping[str, Any]:
        ...

    async def get_ciphertext_handle(self, record_id: str) -> str:
        ...

    async def submit_create(
        self,
        record_id: str,
        name: str,
        ciphertext: str,
        proof: bytes,
        encoded_category: int,
        encoded_status: int,
        tag: str,
    ) -> Transaction:
        ...

    async def submit_verify(
        self,
        record_id: str,
        encoded_clear_values: str,
        proof: bytes,
    ) -> Transaction:
        ...

    async def probe_availability(self) -> bool:
        ...


# =============================================================================
# IN-MEMORY LEDGER
# =============================================================================

@dataclass
class _StoredRecord:
    name: str
    ciphertext_handle: str
    encoded_category: int
    encoded_status: int
    tag: str
    created_at: int
    creator: str
    verified: bool = False
    clear_value: int = 0

    def to_payload(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ciphertext_handle": self.ciphertext_handle,
            "encoded_category": self.encoded_category,
            "encoded_status": self.encoded_status,
            "created_at": self.created_at,
            "creator": self.creator,
            "verified": self.verified,
            "clear_value": self.clear_value,
        }


@dataclass
class _Rejection:
    reason: str
    declined_by_signer: bool


class _LedgerState:
    """State shared by every signer view of one InMemoryLedger."""

    def __init__(self, contract_address: str, auto_finalize: bool):
        self.contract_address = contract_address
        self.auto_finalize = auto_finalize
        self.available = True
        self.block_number = 1_000_000
        self.records: Dict[str, _StoredRecord] = {}
        self.order: List[str] = []
        self.pending: Dict[str, "InMemoryTransaction"] = {}
        self.submitted: List[str] = []
        self.finalized: List[TransactionReceipt] = []
        self.rejections: List[_Rejection] = []
        self.fetch_failures: Set[str] = set()
        self.payload_overrides: Dict[str, Dict[str, Any]] = {}

    def next_block(self) -> int:
        self.block_number += 1
        return self.block_number


class InMemoryTransaction:
    """Transaction whose effect is applied at finality."""

    def __init__(
        self,
        state: _LedgerState,
        kind: TxKind,
        record_id: str,
        apply: Callable[[], None],
    ):
        self.tx_hash = "0x" + secrets.token_hex(32)
        self.kind = kind
        self.record_id = record_id
        self.status = TxStatus.PENDING
        self._state = state
        self._apply = apply
        self._final = asyncio.Event()
        self._outcome: Union[TransactionReceipt, LedgerError, None] = None

    def finalize(self) -> None:
        """Apply the transaction's effect and mark it final (or reverted)."""
        if self._final.is_set():
            return
        self._state.pending.pop(self.tx_hash, None)
        try:
            self._apply()
        except (LedgerRejected, AlreadyVerified) as e:
            e.tx_hash = self.tx_hash
            self.status = TxStatus.REVERTED
            self._outcome = e
            logger.warning(
                "Transaction reverted",
                operation=self.kind.value,
                record_id=self.record_id,
                tx_hash=self.tx_hash,
                reason=str(e),
            )
        else:
            self.status = TxStatus.FINALIZED
            receipt = TransactionReceipt(
                tx_hash=self.tx_hash,
                kind=self.kind,
                record_id=self.record_id,
                block_number=self._state.next_block(),
            )
            self._state.finalized.append(receipt)
            self._outcome = receipt
        self._final.set()

    async def wait(self) -> TransactionReceipt:
        if self._state.auto_finalize:
            await asyncio.sleep(0)
            self.finalize()
        await self._final.wait()
        # finalize sets the outcome before the event
        if isinstance(self._outcome, LedgerError):
            raise self._outcome
        return self._outcome


class InMemoryLedger:
    """
    Reference LedgerGateway backed by process memory.

    ``as_signer(account)`` returns a view that shares all state but submits
    as a different account, which is how multi-party races are simulated.

    Test hooks:
        auto_finalize=False     transactions stay pending until finalize_pending()
        reject_next(...)        the next submission is declined or reverted
        fail_fetch(record_id)   get_record raises for that id
        override_payload(...)   get_record returns altered fields
        available               probe_availability result
    """

    def __init__(
        self,
        proof_verifier: Optional[ProofVerifier] = None,
        contract_address: Optional[str] = None,
        sender: str = "0x" + "00" * 19 + "aa",
        auto_finalize: bool = True,
        _state: Optional[_LedgerState] = None,
    ):
        self._state = _state or _LedgerState(
            contract_address or "0x" + "00" * 19 + "01",
            auto_finalize,
        )
        self._verifier = proof_verifier
        self.sender = sender

    def as_signer(self, account: str) -> "InMemoryLedger":
        return InMemoryLedger(
            proof_verifier=self._verifier,
            sender=account,
            _state=self._state,
        )

    # -- test hooks ---------------------------------------------------------

    @property
    def available(self) -> bool:
        return self._state.available

    @available.setter
    def available(self, value: bool) -> None:
        self._state.available = value

    @property
    def auto_finalize(self) -> bool:
        return self._state.auto_finalize

    @auto_finalize.setter
    def auto_finalize(self, value: bool) -> None:
        self._state.auto_finalize = value

    def reject_next(self, reason: str = "user rejected transaction", declined_by_signer: bool = True) -> None:
        self._state.rejections.append(_Rejection(reason, declined_by_signer))

    def fail_fetch(self, record_id: str) -> None:
        self._state.fetch_failures.add(record_id)

    def override_payload(self, record_id: str, **fields: Any) -> None:
        self._state.payload_overrides.setdefault(record_id, {}).update(fields)

    def finalize_pending(self) -> int:
        """Finalize every pending transaction in submission order."""
        pending = list(self._state.pending.values())
        for tx in pending:
            tx.finalize()
        return len(pending)

    def seed_record(
        self,
        record_id: str,
        name: str,
        ciphertext_handle: str,
        encoded_category: int = 0,
        encoded_status: int = 0,
        creator: Optional[str] = None,
        verified: bool = False,
        clear_value: int = 0,
        tag: str = "",
    ) -> None:
        """Insert a record directly, bypassing transactions."""
        self._state.records[record_id] = _StoredRecord(
            name=name,
            ciphertext_handle=ciphertext_handle,
            encoded_category=encoded_category,
            encoded_status=encoded_status,
            tag=tag,
            created_at=int(time.time()),
            creator=creator or self.sender,
            verified=verified,
            clear_value=clear_value,
        )
        self._state.order.append(record_id)

    @property
    def pending_transactions(self) -> List[str]:
        return list(self._state.pending)

    @property
    def submitted_transactions(self) -> List[str]:
        return list(self._state.submitted)

    @property
    def finalized_receipts(self) -> List[TransactionReceipt]:
        return list(self._state.finalized)

    def verification_commits(self, record_id: str) -> int:
        return sum(
            1 for r in self._state.finalized
            if r.kind == TxKind.VERIFY and r.record_id == record_id
        )

    # -- reads --------------------------------------------------------------

    @property
    def contract_address(self) -> str:
        return self._state.contract_address

    def _require_available(self) -> None:
        if not self._state.available:
            raise LedgerUnavailable("Ledger is not reachable")

    def _stored(self, record_id: str) -> _StoredRecord:
        record = self._state.records.get(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    async def list_record_ids(self) -> List[str]:
        await asyncio.sleep(0)
        self._require_available()
        return list(self._state.order)

    async def get_record(self, record_id: str) -> Mapping[str, Any]:
        await asyncio.sleep(0)
        self._require_available()
        if record_id in self._state.fetch_failures:
            raise LedgerUnavailable(f"Fetch failed for {record_id}")
        payload = self._stored(record_id).to_payload()
        payload.update(self._state.payload_overrides.get(record_id, {}))
        return payload

    async def get_ciphertext_handle(self, record_id: str) -> str:
        await asyncio.sleep(0)
        self._require_available()
        return self._stored(record_id).ciphertext_handle

    async def probe_availability(self) -> bool:
        await asyncio.sleep(0)
        return self._state.available

    # -- writes -------------------------------------------------------------

    def _check_signer(self) -> None:
        if self._state.rejections:
            rejection = self._state.rejections.pop(0)
            raise LedgerRejected(rejection.reason, declined_by_signer=rejection.declined_by_signer)

    def _register(self, tx: InMemoryTransaction) -> InMemoryTransaction:
        self._state.pending[tx.tx_hash] = tx
        self._state.submitted.append(tx.tx_hash)
        logger.info(
            "Transaction submitted",
            operation=tx.kind.value,
            record_id=tx.record_id,
            tx_hash=tx.tx_hash,
            sender=self.sender,
        )
        return tx

    async def submit_create(
        self,
        record_id: str,
        name: str,
        ciphertext: str,
        proof: bytes,
        encoded_category: int,
        encoded_status: int,
        tag: str,
    ) -> InMemoryTransaction:
        await asyncio.sleep(0)
        self._require_available()
        self._check_signer()
        if record_id in self._state.records:
            raise LedgerRejected("Business data already exists")
        if not name:
            raise LedgerRejected("Name must not be empty")

        sender = self.sender
        contract = self._state.contract_address
        verifier = self._verifier

        def apply() -> None:
            if record_id in self._state.records:
                raise LedgerRejected("Business data already exists")
            if verifier is not None and not verifier.verify_input_proof(
                ciphertext, proof, contract, sender
            ):
                raise LedgerRejected("Invalid input proof")
            self._state.records[record_id] = _StoredRecord(
                name=name,
                ciphertext_handle=ciphertext,
                encoded_category=encoded_category,
                encoded_status=encoded_status,
                tag=tag,
                created_at=int(time.time()),
                creator=sender,
            )
            self._state.order.append(record_id)

        return self._register(InMemoryTransaction(self._state, TxKind.CREATE, record_id, apply))

    async def submit_verify(
        self,
        record_id: str,
        encoded_clear_values: str,
        proof: bytes,
    ) -> InMemoryTransaction:
        await asyncio.sleep(0)
        self._require_available()
        stored = self._stored(record_id)
        if stored.verified:
            raise AlreadyVerified(record_id)
        self._check_signer()

        verifier = self._verifier

        def apply() -> None:
            if stored.verified:
                raise AlreadyVerified(record_id)
            if verifier is not None and not verifier.verify_decryption_proof(
                [stored.ciphertext_handle], encoded_clear_values, proof
            ):
                raise LedgerRejected("Invalid decryption proof")
            values = decode_clear_values(encoded_clear_values)
            if len(values) != 1:
                raise LedgerRejected("Expected exactly one clear value")
            stored.clear_value = values[0]
            stored.verified = True

        return self._register(InMemoryTransaction(self._state, TxKind.VERIFY, record_id, apply))
