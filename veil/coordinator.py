"""
VEIL Asset Lifecycle Coordinator

Orchestrates the two phases of the confidential-attribute lifecycle.

Creation:

    validate ──▶ encrypt(contract, account, value) ──▶ submit_create ──▶ wait
                                                                          │
                                                              reload ◀────┘

Verification:

    ledger says verified? ──yes──▶ adopt stored value (no transaction)
            │ no
            ▼
    get handle ──▶ verify_decryption([handle], contract, on_proof)
                        │
                        └── on_proof: submit_verify ──▶ wait
                                                         │
            AlreadyVerified ─────▶ read ledger, adopt ◀──┤
                                                         ▼
                                                      VERIFIED ──▶ reload

Nothing becomes visible in the cache until a reload that runs after
finality. Every failure before a transaction is final is raised to the
caller as a typed VeilError; the one exception is AlreadyVerified during
verification, which means another caller committed first and is treated as
success. A reload that fails after finality is logged and reported to
observers, and the committed operation still returns its result.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from veil.cache import RecordCache, ReloadReport
from veil.config import VeilConfig, get_config
from veil.errors import (
    AlreadyVerified,
    FetchPartialFailure,
    InvariantViolation,
    LedgerRejected,
    NotConnected,
    ValidationError,
    VeilError,
)
from veil.events import (
    CacheReloaded,
    EventBus,
    RecordCreated,
    RecordSubmitted,
    RecordVerified,
    TransactionStatusChanged,
    TxDisplayStatus,
    VerificationFailed,
    VerificationStarted,
)
from veil.fhe import EncryptionClient, VerificationClient
from veil.health import CheckResult, HealthReport, build_health_checker, check_ledger_availability
from veil.ledger import LedgerGateway, TransactionReceipt
from veil.observability import (
    VeilLayer,
    generate_correlation_id,
    get_logger,
    get_tracer,
    set_correlation_id,
    correlation_id_var,
)
from veil.records import (
    AssetCategory,
    AssetRecord,
    PublicStatus,
    RecordIdGenerator,
    VerificationSnapshot,
    VerificationState,
    VerificationStatus,
    check_value_range,
    coerce_attribute_value,
    project_record,
)
from veil.session import SessionContext

logger = get_logger("coordinator", VeilLayer.LIFECYCLE)


@dataclass
class CreationResult:
    """Outcome of a finalized creation."""
    record_id: str
    receipt: TransactionReceipt
    record: Optional[AssetRecord] = None
    reload: Optional[ReloadReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "receipt": self.receipt.to_dict(),
            "record": self.record.to_dict() if self.record else None,
        }


@dataclass
class VerificationOutcome:
    """Outcome of a verification call."""
    record_id: str
    clear_value: int
    state: VerificationState
    short_circuited: bool = False
    receipt: Optional[TransactionReceipt] = None
    reload: Optional[ReloadReport] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "clear_value": self.clear_value,
            "state": self.state.value,
            "short_circuited": self.short_circuited,
            "receipt": self.receipt.to_dict() if self.receipt else None,
        }


class AssetLifecycleCoordinator:
    """
    One coordinator per user session.

    Owns the per-record verification trackers and is the only writer of the
    RecordCache. Operations on different records may run concurrently;
    concurrent verifications of one record converge on a single committed
    value.
    """

    def __init__(
        self,
        ledger: LedgerGateway,
        encryption_client: EncryptionClient,
        verification_client: VerificationClient,
        cache: Optional[RecordCache] = None,
        event_bus: Optional[EventBus] = None,
        config: Optional[VeilConfig] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        config = config or get_config()
        self.ledger = ledger
        self.encryption = encryption_client
        self.verification = verification_client
        self.cache = cache or RecordCache(config.cache.active_status_code.get())
        self.events = event_bus or EventBus()
        self.protocol_tag = config.ledger.protocol_tag.get()
        self.value_bits = config.crypto.value_bits.get()
        self._next_id = id_factory or RecordIdGenerator(config.ledger.record_id_prefix.get()).next_id
        self._trackers: Dict[str, VerificationStatus] = {}
        self._tracer = get_tracer()

    @property
    def contract_address(self) -> str:
        return self.ledger.contract_address

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    def _notify(
        self,
        status: TxDisplayStatus,
        message: str,
        record_id: str = "",
        tx_hash: str = "",
    ) -> None:
        self.events.publish(TransactionStatusChanged(
            status=status,
            message=message,
            record_id=record_id,
            tx_hash=tx_hash,
        ))

    def _require_session(self, session: SessionContext) -> str:
        try:
            return session.require_connected()
        except NotConnected as e:
            self._notify(TxDisplayStatus.ERROR, str(e))
            raise

    # =========================================================================
    # CREATION
    # =========================================================================

    async def create_record(
        self,
        session: SessionContext,
        name: str,
        value: Any,
        category: Any,
        public_status: Any,
        record_id: Optional[str] = None,
        reload: bool = True,
    ) -> CreationResult:
        """
        Encrypt ``value`` and register a new record on the ledger.

        Raises:
            NotConnected: no connected account
            ValidationError: bad name, value or status (nothing submitted)
            EncryptionUnavailable: crypto runtime not ready (nothing submitted)
            LedgerRejected: submission declined or reverted (no record)

        A reload that fails after finality does not fail the creation;
        ``result.reload`` and ``result.record`` are then None.
        """
        account = self._require_session(session)

        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("name", "must not be empty", name)
        clear = check_value_range(coerce_attribute_value(value), self.value_bits)
        status = PublicStatus.parse(public_status)
        asset_category = AssetCategory.parse(category)
        record_id = record_id or self._next_id()

        token = set_correlation_id(generate_correlation_id())
        start = time.monotonic()
        try:
            with self._tracer.span("create_record", VeilLayer.LIFECYCLE, record_id=record_id) as span:
                self._notify(TxDisplayStatus.PENDING, "Creating asset with FHE encryption...", record_id)

                try:
                    encrypted = await self.encryption.encrypt(self.contract_address, account, clear)
                    tx = await self.ledger.submit_create(
                        record_id,
                        clean_name,
                        encrypted.handle,
                        encrypted.proof,
                        asset_category.code,
                        status.code,
                        self.protocol_tag,
                    )
                    self.events.publish(RecordSubmitted(
                        record_id=record_id,
                        tx_hash=tx.tx_hash,
                        creator=account,
                    ))
                    self._notify(
                        TxDisplayStatus.PENDING,
                        "Waiting for transaction confirmation...",
                        record_id,
                        tx.tx_hash,
                    )
                    receipt = await tx.wait()
                except LedgerRejected as e:
                    message = (
                        "Transaction rejected by user"
                        if e.declined_by_signer
                        else f"Submission failed: {e.reason}"
                    )
                    self._notify(TxDisplayStatus.ERROR, message, record_id, e.tx_hash or "")
                    raise
                except VeilError as e:
                    self._notify(TxDisplayStatus.ERROR, f"Submission failed: {e}", record_id)
                    raise

                span.set_attribute("tx_hash", receipt.tx_hash)
                self._trackers.setdefault(record_id, VerificationStatus(record_id))
                self.events.publish(RecordCreated(
                    record_id=record_id,
                    tx_hash=receipt.tx_hash,
                    block_number=receipt.block_number,
                    ciphertext_handle=encrypted.handle,
                ))
                logger.info(
                    "Record created",
                    operation="create_record",
                    record_id=record_id,
                    tx_hash=receipt.tx_hash,
                    category=asset_category.value,
                    public_status=status.value,
                )

                result = CreationResult(record_id=record_id, receipt=receipt)
                if reload:
                    result.reload = await self._refresh_after_commit("create_record", record_id)
                    if result.reload is not None:
                        result.record = self.cache.get(record_id)

                self._notify(TxDisplayStatus.SUCCESS, "Asset created successfully!", record_id, receipt.tx_hash)
                logger.operation("create_record", (time.monotonic() - start) * 1000, record_id=record_id)
                return result
        finally:
            correlation_id_var.reset(token)

    # =========================================================================
    # VERIFICATION
    # =========================================================================

    def _tracker(self, record_id: str) -> VerificationStatus:
        tracker = self._trackers.get(record_id)
        if tracker is None:
            tracker = self._trackers[record_id] = VerificationStatus(record_id)
        return tracker

    def verification_status(self, record_id: str) -> VerificationSnapshot:
        tracker = self._trackers.get(record_id)
        return tracker.snapshot() if tracker else VerificationSnapshot()

    def _patch_cache(self, tracker: VerificationStatus) -> None:
        clear_value = tracker.clear_value if tracker.state is VerificationState.VERIFIED else None
        self.cache.patch_verification(tracker.record_id, tracker.snapshot(), clear_value)

    async def _adopt_ledger_value(self, record_id: str) -> int:
        payload = await self.ledger.get_record(record_id)
        if not payload.get("verified"):
            raise InvariantViolation(
                f"{record_id}: ledger reported already verified but holds no cleartext"
            )
        return int(payload["clear_value"])

    async def _decrypt_and_commit(self, record_id: str) -> Tuple[int, Optional[TransactionReceipt], bool]:
        """Returns (clear value, receipt, short-circuited)."""
        handle = await self.ledger.get_ciphertext_handle(record_id)

        async def submit_proof(encoded: str, proof: bytes) -> TransactionReceipt:
            tx = await self.ledger.submit_verify(record_id, encoded, proof)
            logger.debug("Verification submitted", operation="submit_verify", record_id=record_id, tx_hash=tx.tx_hash)
            return await tx.wait()

        try:
            result = await self.verification.verify_decryption(
                [handle], self.contract_address, submit_proof
            )
        except AlreadyVerified:
            logger.info(
                "Verification already committed by another caller",
                operation="verify_record",
                record_id=record_id,
            )
            self._notify(TxDisplayStatus.SUCCESS, "GPS data is already verified", record_id)
            return await self._adopt_ledger_value(record_id), None, True

        if handle not in result.clear_values:
            raise InvariantViolation(f"{record_id}: decryption returned no value for {handle}")
        return int(result.clear_values[handle]), result.receipt, False

    def _record_failure(self, tracker: VerificationStatus, error: BaseException) -> None:
        reason = str(error) or type(error).__name__
        tracker.fail(reason)
        self._patch_cache(tracker)
        self.events.publish(VerificationFailed(
            record_id=tracker.record_id,
            error_type=type(error).__name__,
            reason=reason,
        ))

    async def verify_record(
        self,
        session: SessionContext,
        record_id: str,
        reload: bool = True,
    ) -> VerificationOutcome:
        """
        Decrypt a record's attribute and commit the cleartext on the ledger.

        Idempotent: a record already VERIFIED (locally or on the ledger)
        returns its stored value without any transaction.

        Raises:
            NotConnected: no connected account
            RecordNotFound: unknown record id
            DecryptionUnavailable, LedgerRejected, ...: attempt marked FAILED
        """
        self._require_session(session)

        token = set_correlation_id(generate_correlation_id())
        start = time.monotonic()
        try:
            with self._tracer.span("verify_record", VeilLayer.LIFECYCLE, record_id=record_id) as span:
                known = self._trackers.get(record_id)
                if known is not None and known.state is VerificationState.VERIFIED:
                    span.set_attribute("short_circuited", True)
                    self._notify(TxDisplayStatus.SUCCESS, "GPS data already verified on-chain", record_id)
                    return VerificationOutcome(
                        record_id=record_id,
                        clear_value=known.clear_value,
                        state=known.state,
                        short_circuited=True,
                    )

                # Unknown ids raise RecordNotFound here, before a tracker exists
                payload = await self.ledger.get_record(record_id)
                tracker = self._tracker(record_id)
                if payload.get("verified"):
                    tracker.adopt(int(payload["clear_value"]))
                    self._patch_cache(tracker)
                    span.set_attribute("short_circuited", True)
                    self.events.publish(RecordVerified(
                        record_id=record_id,
                        clear_value=tracker.clear_value,
                        short_circuited=True,
                    ))
                    self._notify(TxDisplayStatus.SUCCESS, "GPS data already verified on-chain", record_id)
                    return VerificationOutcome(
                        record_id=record_id,
                        clear_value=tracker.clear_value,
                        state=tracker.state,
                        short_circuited=True,
                    )

                if not tracker.begin():
                    # Another local task finished while we were reading
                    return VerificationOutcome(
                        record_id=record_id,
                        clear_value=tracker.clear_value,
                        state=tracker.state,
                        short_circuited=True,
                    )

                self._patch_cache(tracker)
                self.events.publish(VerificationStarted(record_id=record_id, attempt=tracker.attempts))
                self._notify(TxDisplayStatus.PENDING, "Verifying GPS decryption on-chain...", record_id)

                try:
                    clear_value, receipt, short_circuited = await self._decrypt_and_commit(record_id)
                except asyncio.CancelledError as e:
                    logger.warning("Verification cancelled", operation="verify_record", record_id=record_id)
                    self._record_failure(tracker, e)
                    raise
                except Exception as e:
                    logger.error(
                        "Verification failed",
                        error_code=type(e).__name__,
                        operation="verify_record",
                        record_id=record_id,
                        error=str(e),
                    )
                    self._record_failure(tracker, e)
                    self._notify(TxDisplayStatus.ERROR, f"Decryption failed: {e}", record_id)
                    raise

                tracker.succeed(clear_value)
                self._patch_cache(tracker)
                tx_hash = receipt.tx_hash if receipt else ""
                span.set_attribute("short_circuited", short_circuited)
                self.events.publish(RecordVerified(
                    record_id=record_id,
                    clear_value=clear_value,
                    short_circuited=short_circuited,
                    tx_hash=tx_hash,
                ))
                if not short_circuited:
                    self._notify(TxDisplayStatus.SUCCESS, "GPS data decrypted and verified!", record_id, tx_hash)

                outcome = VerificationOutcome(
                    record_id=record_id,
                    clear_value=clear_value,
                    state=tracker.state,
                    short_circuited=short_circuited,
                    receipt=receipt,
                )
                if reload:
                    outcome.reload = await self._refresh_after_commit("verify_record", record_id)

                logger.operation(
                    "verify_record",
                    (time.monotonic() - start) * 1000,
                    record_id=record_id,
                    short_circuited=short_circuited,
                )
                return outcome
        finally:
            correlation_id_var.reset(token)

    # =========================================================================
    # RELOAD
    # =========================================================================

    def _project(
        self,
        payloads: Mapping[str, Mapping[str, Any]],
        failures: List[FetchPartialFailure],
    ) -> List[AssetRecord]:
        records: List[AssetRecord] = []
        for record_id, payload in payloads.items():
            tracker = self._trackers.get(record_id)
            try:
                if (
                    tracker is not None
                    and payload.get("verified") is True
                    and tracker.state is not VerificationState.VERIFIED
                ):
                    tracker.adopt(int(payload["clear_value"]), "reconciled on reload")
                records.append(project_record(record_id, payload, tracker))
            except (ValidationError, InvariantViolation, TypeError, ValueError) as e:
                failures.append(FetchPartialFailure(record_id, e))
        return records

    async def reload(self) -> ReloadReport:
        """
        Rebuild the cache from the ledger.

        Per-record failures are collected in the report. Failure to list
        record ids aborts the reload and leaves the cache untouched.
        """
        generation = self.cache.next_generation()
        with self._tracer.span("reload", VeilLayer.CACHE, generation=generation) as span:
            try:
                record_ids = await self.ledger.list_record_ids()
            except Exception as e:
                logger.error(
                    "Failed to enumerate records",
                    error_code=type(e).__name__,
                    operation="reload",
                    error=str(e),
                )
                self._notify(TxDisplayStatus.ERROR, "Failed to load data")
                raise

            payloads: Dict[str, Mapping[str, Any]] = {}
            failures: List[FetchPartialFailure] = []
            for record_id in record_ids:
                try:
                    payloads[record_id] = await self.ledger.get_record(record_id)
                except Exception as e:
                    failures.append(FetchPartialFailure(record_id, e))

            # Projection and replace run without a suspension point in between,
            # so tracker state merged here is what the snapshot publishes.
            records = self._project(payloads, failures)
            applied = self.cache.replace(records, generation)

            for failure in failures:
                logger.warning(
                    "Record skipped during reload",
                    operation="reload",
                    record_id=failure.record_id,
                    error=str(failure.cause),
                )

            stats = self.cache.stats()
            report = ReloadReport(
                generation=generation,
                loaded=[r.record_id for r in records],
                failures=failures,
                applied=applied,
                stats=stats,
            )
            span.set_attribute("loaded", len(records))
            span.set_attribute("failed", len(failures))
            span.set_attribute("applied", applied)

            self.events.publish(CacheReloaded(
                generation=generation,
                loaded=len(records),
                failed=len(failures),
                applied=applied,
                stats=stats.to_dict(),
            ))
            return report

    async def _refresh_after_commit(self, operation: str, record_id: str) -> Optional[ReloadReport]:
        """
        Reload after a finalized transaction.

        The transaction is already committed, so a failed reload is logged
        (``reload`` has notified observers) and the operation still succeeds.
        Returns None when the reload failed.
        """
        try:
            return await self.reload()
        except Exception as e:
            logger.warning(
                "Reload after commit failed; cache is stale until the next reload",
                operation=operation,
                record_id=record_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

    # =========================================================================
    # AVAILABILITY
    # =========================================================================

    async def check_availability(self) -> CheckResult:
        """Probe the ledger. Never raises for probe failures."""
        result = await check_ledger_availability(self.ledger)
        if "error" in result.metadata:
            self._notify(TxDisplayStatus.ERROR, "Availability check failed")
        else:
            self._notify(TxDisplayStatus.SUCCESS, result.message)
        return result

    async def health(self) -> HealthReport:
        return await build_health_checker(self.ledger, self.encryption).deep_health()
