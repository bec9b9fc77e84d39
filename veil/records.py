"""
VEIL Record Model

Typed projection of confidential records held on the ledger.

A record's public fields (name, category, status, creator, timestamp) are
readable by everyone. The tracked attribute itself is stored only as a
ciphertext handle until a verification transaction commits the cleartext
together with a decryption proof.

Enumerations are explicit bidirectional tables with a fallback entry:

    code  category       code  status
    ────  ───────────    ────  ─────────
    0     electronics    0     Active
    1     jewelry        1     InTransit
    2     art            2     Alert
    3     documents      *     Unknown   (display only, never encoded)
    4     other
    *     other

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import json
import math
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from jsonschema import Draft202012Validator

from veil.errors import InvariantViolation, ValidationError

SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"
LEDGER_RECORD_SCHEMA = SCHEMA_DIR / "ledger-record.schema.json"


# =============================================================================
# ENUMERATIONS
# =============================================================================

class AssetCategory(Enum):
    """Closed set of record categories."""
    ELECTRONICS = "electronics"
    JEWELRY = "jewelry"
    ART = "art"
    DOCUMENTS = "documents"
    OTHER = "other"

    @property
    def code(self) -> int:
        """Integer stored on the ledger."""
        return {
            AssetCategory.ELECTRONICS: 0,
            AssetCategory.JEWELRY: 1,
            AssetCategory.ART: 2,
            AssetCategory.DOCUMENTS: 3,
            AssetCategory.OTHER: 4,
        }[self]

    @classmethod
    def decode(cls, code: int) -> "AssetCategory":
        """Map a ledger code to a category; unknown codes land in OTHER."""
        for category in cls:
            if category.code == code:
                return category
        return cls.OTHER

    @classmethod
    def parse(cls, value: Union[str, "AssetCategory"]) -> "AssetCategory":
        """Map caller input to a category; unknown names land in OTHER."""
        if isinstance(value, AssetCategory):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER

    @classmethod
    def encode(cls, value: Union[str, "AssetCategory"]) -> int:
        return cls.parse(value).code


class PublicStatus(Enum):
    """
    Public tracking status.

    UNKNOWN is the display fallback for codes outside the table. It has no
    code and can never be written to the ledger.
    """
    ACTIVE = "Active"
    IN_TRANSIT = "InTransit"
    ALERT = "Alert"
    UNKNOWN = "Unknown"

    @property
    def is_encodable(self) -> bool:
        return self is not PublicStatus.UNKNOWN

    @property
    def code(self) -> int:
        if self is PublicStatus.UNKNOWN:
            raise ValueError("Unknown status is display-only and has no ledger code")
        return {
            PublicStatus.ACTIVE: 0,
            PublicStatus.IN_TRANSIT: 1,
            PublicStatus.ALERT: 2,
        }[self]

    @classmethod
    def decode(cls, code: int) -> "PublicStatus":
        for status in cls:
            if status.is_encodable and status.code == code:
                return status
        return cls.UNKNOWN

    @classmethod
    def parse(cls, value: Union[int, str, "PublicStatus"]) -> "PublicStatus":
        """
        Parse caller input into an encodable status.

        Accepts a member, an integer code, a numeric string ("0") or a label
        ("Active", "in_transit"). Anything else is rejected.
        """
        status: Optional[PublicStatus] = None

        if isinstance(value, PublicStatus):
            status = value
        elif isinstance(value, bool):
            status = None
        elif isinstance(value, int):
            status = cls.decode(value)
        elif isinstance(value, str):
            text = value.strip()
            if re.fullmatch(r"[+-]?\d+", text):
                status = cls.decode(int(text))
            else:
                normalized = text.replace("_", "").replace(" ", "").lower()
                for member in cls:
                    if member.value.lower() == normalized:
                        status = member
                        break

        if status is None or not status.is_encodable:
            raise ValidationError("public_status", "must be one of Active, InTransit, Alert", value)
        return status


class VerificationState(Enum):
    """States of the per-record verification state machine."""
    UNVERIFIED = "unverified"
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self is VerificationState.VERIFIED


# =============================================================================
# INPUT COERCION
# =============================================================================

_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def coerce_attribute_value(raw: Any) -> int:
    """
    Coerce caller input for the encrypted attribute to an integer.

    Integers pass through. Strings take their leading integer ("42abc" is 42).
    Anything non-numeric becomes 0; the field is integer-only by contract.
    """
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float):
        return int(raw) if math.isfinite(raw) else 0
    if isinstance(raw, str):
        match = _LEADING_INT.match(raw)
        return int(match.group(1)) if match else 0
    return 0


def check_value_range(value: int, bits: int) -> int:
    """Reject values that do not fit the unsigned encrypted width."""
    upper = 1 << bits
    if not 0 <= value < upper:
        raise ValidationError("value", f"must be in [0, 2**{bits})", value)
    return value


class RecordIdGenerator:
    """
    Timestamp-derived record ids, strictly increasing within the process.

    Two calls in the same millisecond get consecutive values.
    """

    def __init__(self, prefix: str = "asset-"):
        self.prefix = prefix
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> str:
        with self._lock:
            now_ms = int(time.time() * 1000)
            self._last = max(now_ms, self._last + 1)
            return f"{self.prefix}{self._last}"


# =============================================================================
# VERIFICATION STATUS
# =============================================================================

@dataclass(frozen=True)
class VerificationTransition:
    """A recorded state change."""
    from_state: VerificationState
    to_state: VerificationState
    timestamp: str
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class VerificationSnapshot:
    """Immutable view of a record's verification status, held by the cache."""
    state: VerificationState = VerificationState.UNVERIFIED
    attempts: int = 0
    last_error: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "updated_at": self.updated_at,
        }


class VerificationStatus:
    """
    Mutable verification tracker for one record.

    UNVERIFIED ──start──▶ PENDING ──succeed──▶ VERIFIED (terminal)
                             │  ▲
                          fail  retry
                             ▼  │
                           FAILED ──reset──▶ UNVERIFIED

    Several local callers may verify the same record at once. A caller that
    starts while PENDING joins as another in-flight attempt. A failure moves
    the record to FAILED only once no attempt is still in flight.
    """

    VALID_TRANSITIONS: Dict[VerificationState, Set[VerificationState]] = {
        VerificationState.UNVERIFIED: {VerificationState.PENDING},
        VerificationState.PENDING: {VerificationState.VERIFIED, VerificationState.FAILED},
        VerificationState.FAILED: {VerificationState.PENDING, VerificationState.UNVERIFIED},
        VerificationState.VERIFIED: set(),
    }

    def __init__(self, record_id: str):
        self.record_id = record_id
        self._state = VerificationState.UNVERIFIED
        self._clear_value: Optional[int] = None
        self._attempts = 0
        self._in_flight = 0
        self._last_error: Optional[str] = None
        self._updated_at: Optional[str] = None
        self.transitions: List[VerificationTransition] = []

    @property
    def state(self) -> VerificationState:
        return self._state

    @property
    def clear_value(self) -> Optional[int]:
        return self._clear_value

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def can_transition_to(self, target: VerificationState) -> bool:
        return target in self.VALID_TRANSITIONS.get(self._state, set())

    def _transition(self, target: VerificationState, reason: str) -> None:
        if not self.can_transition_to(target):
            raise InvariantViolation(
                f"{self.record_id}: invalid transition {self._state.value} -> {target.value}"
            )
        now = datetime.now(timezone.utc).isoformat()
        self.transitions.append(VerificationTransition(
            from_state=self._state,
            to_state=target,
            timestamp=now,
            reason=reason,
        ))
        self._state = target
        self._updated_at = now

    def begin(self, reason: str = "verification started") -> bool:
        """
        Register a verification attempt.

        Returns False when the record is already VERIFIED (nothing to do).
        """
        if self._state is VerificationState.VERIFIED:
            return False

        self._attempts += 1
        self._in_flight += 1
        if self._state is not VerificationState.PENDING:
            self._transition(VerificationState.PENDING, reason)
        return True

    def succeed(self, clear_value: int, reason: str = "verification committed") -> None:
        """Finish an attempt with a committed cleartext."""
        self._in_flight = max(0, self._in_flight - 1)

        if self._state is VerificationState.VERIFIED:
            if self._clear_value != clear_value:
                raise InvariantViolation(
                    f"{self.record_id}: conflicting clear values "
                    f"{self._clear_value} and {clear_value}"
                )
            return

        self._transition(VerificationState.VERIFIED, reason)
        self._clear_value = clear_value
        self._last_error = None

    def adopt(self, clear_value: int, reason: str = "already verified on ledger") -> None:
        """Take a value the ledger already committed, without an attempt of our own."""
        if self._state is VerificationState.VERIFIED:
            if self._clear_value != clear_value:
                raise InvariantViolation(
                    f"{self.record_id}: conflicting clear values "
                    f"{self._clear_value} and {clear_value}"
                )
            return

        if self._state is not VerificationState.PENDING:
            self._transition(VerificationState.PENDING, reason)
        self._transition(VerificationState.VERIFIED, reason)
        self._clear_value = clear_value
        self._last_error = None

    def fail(self, error: str) -> None:
        """Finish an attempt with an error."""
        self._in_flight = max(0, self._in_flight - 1)
        if self._state is VerificationState.VERIFIED:
            return

        self._last_error = error
        if self._in_flight == 0 and self._state is VerificationState.PENDING:
            self._transition(VerificationState.FAILED, error)

    def reset(self) -> None:
        """Return a FAILED record to UNVERIFIED."""
        self._transition(VerificationState.UNVERIFIED, "reset after failure")
        self._last_error = None

    def snapshot(self) -> VerificationSnapshot:
        return VerificationSnapshot(
            state=self._state,
            attempts=self._attempts,
            last_error=self._last_error,
            updated_at=self._updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "state": self._state.value,
            "clear_value": self._clear_value,
            "attempts": self._attempts,
            "in_flight": self._in_flight,
            "last_error": self._last_error,
            "transitions": [t.to_dict() for t in self.transitions],
        }


# =============================================================================
# ASSET RECORD
# =============================================================================

@dataclass(frozen=True)
class AssetRecord:
    """
    A confidential record as seen by readers of the cache.

    ``clear_value`` is set if and only if the verification state is VERIFIED.
    """
    record_id: str
    name: str
    category: AssetCategory
    public_status: PublicStatus
    encoded_category: int
    encoded_status: int
    creator: str
    created_at: int
    ciphertext_handle: str
    verification: VerificationSnapshot = field(default_factory=VerificationSnapshot)
    clear_value: Optional[int] = None

    def __post_init__(self):
        verified = self.verification.state is VerificationState.VERIFIED
        if verified != (self.clear_value is not None):
            raise InvariantViolation(
                f"{self.record_id}: clear_value must be present exactly when verified"
            )

    @property
    def is_verified(self) -> bool:
        return self.verification.state is VerificationState.VERIFIED

    @property
    def created_at_iso(self) -> str:
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc).isoformat()

    def with_verification(
        self,
        verification: VerificationSnapshot,
        clear_value: Optional[int] = None,
    ) -> "AssetRecord":
        """Copy of this record with a new verification status."""
        return AssetRecord(
            record_id=self.record_id,
            name=self.name,
            category=self.category,
            public_status=self.public_status,
            encoded_category=self.encoded_category,
            encoded_status=self.encoded_status,
            creator=self.creator,
            created_at=self.created_at,
            ciphertext_handle=self.ciphertext_handle,
            verification=verification,
            clear_value=clear_value,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "name": self.name,
            "category": self.category.value,
            "public_status": self.public_status.value,
            "encoded_category": self.encoded_category,
            "encoded_status": self.encoded_status,
            "creator": self.creator,
            "created_at": self.created_at,
            "ciphertext_handle": self.ciphertext_handle,
            "verification": self.verification.to_dict(),
            "clear_value": self.clear_value,
        }


# =============================================================================
# PROJECTION
# =============================================================================

@lru_cache(maxsize=1)
def ledger_record_validator() -> Draft202012Validator:
    """Validator for ledger record payloads."""
    with open(LEDGER_RECORD_SCHEMA, encoding="utf-8") as f:
        schema = json.load(f)
    return Draft202012Validator(schema)


def validate_ledger_payload(payload: Mapping[str, Any]) -> List[str]:
    """Validate a ledger payload. Returns error messages (empty if valid)."""
    validator = ledger_record_validator()
    return [
        f"{error.json_path}: {error.message}"
        for error in validator.iter_errors(dict(payload))
    ]


def project_record(
    record_id: str,
    payload: Mapping[str, Any],
    tracker: Optional[VerificationStatus] = None,
) -> AssetRecord:
    """
    Project a ledger payload into an AssetRecord.

    Ledger-confirmed verification wins. Without it, a local tracker that saw
    its own verification finalize is trusted (the payload may have been read
    before finality), then a local PENDING or FAILED attempt, then UNVERIFIED.
    Out-of-range enumeration codes fall back and never raise.

    Raises:
        ValidationError: the payload does not match the ledger record schema
    """
    errors = validate_ledger_payload(payload)
    if errors:
        raise ValidationError("payload", "; ".join(errors), record_id)

    if payload["verified"]:
        verification = VerificationSnapshot(
            state=VerificationState.VERIFIED,
            attempts=tracker.attempts if tracker else 0,
            updated_at=tracker.snapshot().updated_at if tracker else None,
        )
        clear_value: Optional[int] = int(payload["clear_value"])
    elif tracker is not None and tracker.state is not VerificationState.UNVERIFIED:
        verification = tracker.snapshot()
        clear_value = tracker.clear_value if tracker.state is VerificationState.VERIFIED else None
    else:
        verification = VerificationSnapshot()
        clear_value = None

    encoded_category = int(payload["encoded_category"])
    encoded_status = int(payload["encoded_status"])

    return AssetRecord(
        record_id=record_id,
        name=payload["name"],
        category=AssetCategory.decode(encoded_category),
        public_status=PublicStatus.decode(encoded_status),
        encoded_category=encoded_category,
        encoded_status=encoded_status,
        creator=payload["creator"],
        created_at=int(payload["created_at"]),
        ciphertext_handle=payload["ciphertext_handle"],
        verification=verification,
        clear_value=clear_value,
    )
