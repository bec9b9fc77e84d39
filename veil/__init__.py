"""
VEIL: Confidential Asset Tracking

Records whose tracked attribute is encrypted client-side under a homomorphic
scheme, registered on a shared ledger, and later decrypted off-chain with a
proof that lets anyone trust the revealed value without trusting the revealer.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                      CONFIDENTIAL ASSET LIFECYCLE                        │
    │                                                                          │
    │  ORCHESTRATION                                                          │
    │    coordinator.py  create / verify / reload, per-record state machine   │
    │    session.py      Explicit connected-account context                   │
    │    events.py       Lifecycle events and status notifications            │
    │                                                                          │
    │  STATE                                                                  │
    │    records.py      Typed records, enumerations, verification tracker   │
    │    cache.py        Immutable snapshots swapped under a lock             │
    │                                                                          │
    │  CAPABILITIES                                                           │
    │    fhe.py          Encryption and verification clients, mock runtime    │
    │    ledger.py       Ledger gateway, transactions, in-memory ledger       │
    │                                                                          │
    │  AMBIENT                                                                │
    │    config.py  observability.py  health.py  errors.py                    │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Mutate, then reload: a record appears in the cache only after a reload
    that runs after its creation transaction is final.

    One cleartext per record: concurrent verifications converge. A typed
    AlreadyVerified from the ledger is success, never an error.

    Fail before writing: session, validation and capability errors surface
    before any ledger transaction is submitted.

Copyright © 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.3.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import VEIL modules on first access."""

    if name in ("AssetLifecycleCoordinator", "CreationResult", "VerificationOutcome"):
        from veil import coordinator
        return getattr(coordinator, name)

    if name in ("AssetRecord", "AssetCategory", "PublicStatus", "VerificationState",
                "VerificationStatus", "VerificationSnapshot", "RecordIdGenerator",
                "project_record", "coerce_attribute_value"):
        from veil import records
        return getattr(records, name)

    if name in ("RecordCache", "CacheSnapshot", "CacheStats", "ReloadReport"):
        from veil import cache
        return getattr(cache, name)

    if name in ("LedgerGateway", "InMemoryLedger", "TransactionReceipt", "TxStatus", "TxKind"):
        from veil import ledger
        return getattr(ledger, name)

    if name in ("EncryptionClient", "VerificationClient", "ProofVerifier",
                "MockFheService", "EncryptedInput", "DecryptionResult"):
        from veil import fhe
        return getattr(fhe, name)

    if name in ("SessionContext",):
        from veil import session
        return getattr(session, name)

    if name in ("EventBus", "Event", "RecordSubmitted", "RecordCreated",
                "VerificationStarted", "RecordVerified", "VerificationFailed",
                "CacheReloaded", "TransactionStatusChanged", "TxDisplayStatus"):
        from veil import events
        return getattr(events, name)

    if name in ("VeilError", "NotConnected", "ValidationError", "EncryptionUnavailable",
                "DecryptionUnavailable", "LedgerError", "LedgerRejected", "AlreadyVerified",
                "RecordNotFound", "LedgerUnavailable", "FetchPartialFailure",
                "InvariantViolation"):
        from veil import errors
        return getattr(errors, name)

    if name in ("ConfigManager", "VeilConfig", "get_config", "get_config_manager"):
        from veil import config
        return getattr(config, name)

    if name in ("HealthChecker", "HealthStatus", "CheckResult", "HealthReport"):
        from veil import health
        return getattr(health, name)

    raise AttributeError(f"module 'veil' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Orchestration
    "AssetLifecycleCoordinator",
    "CreationResult",
    "VerificationOutcome",
    "SessionContext",
    # Records
    "AssetRecord",
    "AssetCategory",
    "PublicStatus",
    "VerificationState",
    "RecordCache",
    "ReloadReport",
    # Capabilities
    "LedgerGateway",
    "InMemoryLedger",
    "EncryptionClient",
    "VerificationClient",
    "MockFheService",
    # Events
    "EventBus",
    "TransactionStatusChanged",
    # Errors
    "VeilError",
    "NotConnected",
    "ValidationError",
    "LedgerRejected",
    "AlreadyVerified",
]
