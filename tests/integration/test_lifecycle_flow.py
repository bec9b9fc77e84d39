"""
Integration Test: Confidential Asset Lifecycle

End-to-end flows across the coordinator, the in-memory ledger and the mock
confidential compute runtime, including the multi-party races the protocol
has to survive.
"""

import asyncio

import pytest

from veil.coordinator import AssetLifecycleCoordinator
from veil.errors import EncryptionUnavailable
from veil.events import EventBus, EventRecorder, RecordVerified
from veil.fhe import MockFheService
from veil.ledger import InMemoryLedger
from veil.records import AssetCategory, PublicStatus, VerificationState
from veil.session import SessionContext

ALICE = "0x" + "11" * 20
BOB = "0x" + "22" * 20


async def _wait_for_pending(ledger, count, limit=1000):
    for _ in range(limit):
        if len(ledger.pending_transactions) >= count:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} pending transactions, saw {ledger.pending_transactions}")


class _RacingVerificationClient:
    """Lets a competing verification commit just before our proof is submitted."""

    def __init__(self, inner, competitor):
        self.inner = inner
        self.competitor = competitor

    async def verify_decryption(self, handles, verifier_address, on_proof):
        async def submit_after_competitor(encoded, proof):
            await self.competitor()
            return await on_proof(encoded, proof)

        return await self.inner.verify_decryption(handles, verifier_address, submit_after_competitor)


class _GatedLedger(InMemoryLedger):
    """Blocks the first get_record call until released."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = None
        self.blocked = None

    async def get_record(self, record_id):
        if self.gate is not None:
            gate, self.gate = self.gate, None
            self.blocked.set()
            await gate.wait()
        return await super().get_record(record_id)


@pytest.fixture
def manual_ledger(fhe):
    return InMemoryLedger(proof_verifier=fhe, sender=ALICE, auto_finalize=False)


class TestCreationFlow:
    """Create, then reload; nothing shows before finality."""

    def test_create_scenario(self, coordinator, session):
        result = asyncio.run(coordinator.create_record(
            session, "Laptop", 42, "electronics", "0", record_id="asset-1000"
        ))
        record = result.record
        assert record.record_id == "asset-1000"
        assert record.category is AssetCategory.ELECTRONICS
        assert record.public_status is PublicStatus.ACTIVE
        assert record.verification.state is VerificationState.UNVERIFIED
        assert coordinator.cache.stats().total == 1

    def test_reload_before_finality_hides_record(self, manual_ledger, fhe, session):
        coordinator = AssetLifecycleCoordinator(manual_ledger, fhe, fhe)

        async def scenario():
            task = asyncio.create_task(coordinator.create_record(
                session, "Laptop", 42, "electronics", 0, record_id="asset-1"
            ))
            await _wait_for_pending(manual_ledger, 1)
            early = await coordinator.reload()
            manual_ledger.finalize_pending()
            result = await task
            return early, result

        early, result = asyncio.run(scenario())
        assert early.loaded == []
        assert result.record is not None
        assert coordinator.cache.get("asset-1") is not None

    def test_encryption_failure_leaves_no_record(self, ledger, session):
        uninitialized = MockFheService()
        coordinator = AssetLifecycleCoordinator(ledger, uninitialized, uninitialized)
        with pytest.raises(EncryptionUnavailable):
            asyncio.run(coordinator.create_record(session, "Laptop", 42, "electronics", 0))
        report = asyncio.run(coordinator.reload())
        assert report.loaded == []
        assert ledger.submitted_transactions == []

    def test_concurrent_creation(self, coordinator, session):
        async def scenario():
            return await asyncio.gather(*[
                coordinator.create_record(session, f"Item {i}", i, "documents", 1, record_id=f"asset-{i}")
                for i in range(5)
            ])

        results = asyncio.run(scenario())
        assert sorted(r.record_id for r in results) == [f"asset-{i}" for i in range(5)]
        asyncio.run(coordinator.reload())
        assert coordinator.cache.stats().total == 5
        assert coordinator.cache.stats().active == 0


class TestVerificationFlow:
    """Verification converges on one committed cleartext."""

    def test_already_verified_on_ledger_short_circuits(self, fhe, session):
        ledger = InMemoryLedger(proof_verifier=fhe, sender=ALICE)
        ledger.seed_record("asset-1", "Laptop", "0x" + "ab" * 32, verified=True, clear_value=42)
        coordinator = AssetLifecycleCoordinator(ledger, fhe, fhe)

        outcome = asyncio.run(coordinator.verify_record(session, "asset-1"))
        assert outcome.short_circuited
        assert outcome.clear_value == 42
        assert outcome.state is VerificationState.VERIFIED
        assert ledger.submitted_transactions == []
        assert fhe.decrypt_calls == 0

    def test_already_verified_mid_flow(self, ledger, fhe, session):
        bob_coordinator = AssetLifecycleCoordinator(ledger.as_signer(BOB), fhe, fhe)
        bob_session = SessionContext.connected_as(BOB)

        async def competitor():
            await bob_coordinator.verify_record(bob_session, "asset-1", reload=False)

        bus = EventBus()
        recorder = EventRecorder(bus, RecordVerified)
        alice = AssetLifecycleCoordinator(
            ledger, fhe, _RacingVerificationClient(fhe, competitor), event_bus=bus
        )
        asyncio.run(alice.create_record(session, "Laptop", 42, "electronics", 0, record_id="asset-1"))

        outcome = asyncio.run(alice.verify_record(session, "asset-1"))
        assert outcome.short_circuited
        assert outcome.clear_value == 42
        assert outcome.receipt is None
        assert alice.cache.get("asset-1").clear_value == 42
        assert ledger.verification_commits("asset-1") == 1
        assert recorder.events[-1].short_circuited

    def test_two_signers_race_to_finality(self, manual_ledger, fhe, session):
        alice = AssetLifecycleCoordinator(manual_ledger, fhe, fhe)
        bob = AssetLifecycleCoordinator(manual_ledger.as_signer(BOB), fhe, fhe)
        bob_session = SessionContext.connected_as(BOB)

        async def scenario():
            create = asyncio.create_task(alice.create_record(
                session, "Laptop", 42, "electronics", 0, record_id="asset-1"
            ))
            await _wait_for_pending(manual_ledger, 1)
            manual_ledger.finalize_pending()
            await create

            first = asyncio.create_task(alice.verify_record(session, "asset-1"))
            second = asyncio.create_task(bob.verify_record(bob_session, "asset-1"))
            await _wait_for_pending(manual_ledger, 2)
            manual_ledger.finalize_pending()
            return await asyncio.gather(first, second)

        outcomes = asyncio.run(scenario())
        assert [o.clear_value for o in outcomes] == [42, 42]
        assert all(o.state is VerificationState.VERIFIED for o in outcomes)
        assert sorted(o.short_circuited for o in outcomes) == [False, True]
        assert manual_ledger.verification_commits("asset-1") == 1
        assert alice.cache.get("asset-1").clear_value == 42
        assert bob.cache.get("asset-1").clear_value == 42

    def test_same_session_concurrent_verify(self, coordinator, session, ledger):
        asyncio.run(coordinator.create_record(session, "Laptop", 42, "electronics", 0, record_id="asset-1"))

        async def scenario():
            return await asyncio.gather(
                coordinator.verify_record(session, "asset-1"),
                coordinator.verify_record(session, "asset-1"),
            )

        outcomes = asyncio.run(scenario())
        assert {o.clear_value for o in outcomes} == {42}
        assert ledger.verification_commits("asset-1") == 1
        assert coordinator.verification_status("asset-1").state is VerificationState.VERIFIED

    def test_cancellation_then_reconcile(self, manual_ledger, fhe, session):
        coordinator = AssetLifecycleCoordinator(manual_ledger, fhe, fhe)

        async def scenario():
            create = asyncio.create_task(coordinator.create_record(
                session, "Laptop", 42, "electronics", 0, record_id="asset-1"
            ))
            await _wait_for_pending(manual_ledger, 1)
            manual_ledger.finalize_pending()
            await create

            verify = asyncio.create_task(coordinator.verify_record(session, "asset-1"))
            await _wait_for_pending(manual_ledger, 1)
            verify.cancel()
            with pytest.raises(asyncio.CancelledError):
                await verify
            after_cancel = coordinator.verification_status("asset-1").state

            manual_ledger.finalize_pending()
            await coordinator.reload()
            return after_cancel

        after_cancel = asyncio.run(scenario())
        assert after_cancel is VerificationState.FAILED
        assert coordinator.verification_status("asset-1").state is VerificationState.VERIFIED
        record = coordinator.cache.get("asset-1")
        assert record.is_verified
        assert record.clear_value == 42


class TestReloadOrdering:
    """A slow, older reload never overwrites a newer one."""

    def test_stale_reload_discarded(self, fhe, session):
        ledger = _GatedLedger(proof_verifier=fhe, sender=ALICE)
        coordinator = AssetLifecycleCoordinator(ledger, fhe, fhe)
        asyncio.run(coordinator.create_record(session, "Laptop", 42, "electronics", 0, record_id="asset-1"))

        async def scenario():
            ledger.gate = asyncio.Event()
            ledger.blocked = asyncio.Event()
            gate = ledger.gate
            slow = asyncio.create_task(coordinator.reload())
            await ledger.blocked.wait()
            ledger.override_payload("asset-1", encoded_status=2)
            fresh = await coordinator.reload()
            gate.set()
            stale = await slow
            return stale, fresh

        stale, fresh = asyncio.run(scenario())
        assert fresh.applied
        assert not stale.applied
        assert stale.generation < fresh.generation
        assert coordinator.cache.get("asset-1").public_status is PublicStatus.ALERT
        assert coordinator.cache.metrics["discarded_reloads"] == 1
