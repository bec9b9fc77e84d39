"""
VEIL Health Checks

Availability probes for the lifecycle protocol's collaborators.

    ledger   - LedgerGateway.probe_availability() (required)
    crypto   - confidential compute runtime initialized (required)

Checks may be plain or async callables. A check that raises is reported as
UNHEALTHY; it never propagates out of the checker.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import inspect
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from veil.observability import VeilLayer, get_logger

logger = get_logger("health", VeilLayer.HEALTH)


class HealthStatus(Enum):
    """Health check result status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class DependencyType(Enum):
    """Types of system dependencies."""
    REQUIRED = "required"      # Must be healthy for the system to be usable
    OPTIONAL = "optional"      # Degraded if unhealthy, but still operational


@dataclass
class CheckResult:
    """Result of a single health check."""
    name: str
    status: HealthStatus
    message: str = ""
    latency_ms: float = 0.0
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": round(self.latency_ms, 2),
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }


@dataclass
class HealthReport:
    """Aggregated health report."""
    status: HealthStatus
    uptime_seconds: float
    checks: List[CheckResult]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def check(self, name: str) -> Optional[CheckResult]:
        for result in self.checks:
            if result.name == name:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "uptime_seconds": round(self.uptime_seconds, 2),
            "timestamp": self.timestamp,
            "checks": [c.to_dict() for c in self.checks],
        }


CheckFn = Callable[[], Union[CheckResult, Awaitable[CheckResult]]]


@dataclass
class DependencyConfig:
    """Configuration for a dependency check."""
    name: str
    check_fn: CheckFn
    dep_type: DependencyType = DependencyType.REQUIRED


class HealthChecker:
    """
    Runs registered dependency checks and folds them into a HealthReport.

    Overall status: any REQUIRED check unhealthy makes the system UNHEALTHY;
    an unhealthy OPTIONAL check or any DEGRADED check makes it DEGRADED.
    """

    def __init__(self):
        self._start_time = time.monotonic()
        self._dependencies: Dict[str, DependencyConfig] = {}
        self._lock = threading.RLock()

    def register_dependency(self, config: DependencyConfig) -> None:
        with self._lock:
            self._dependencies[config.name] = config

    def unregister_dependency(self, name: str) -> None:
        with self._lock:
            self._dependencies.pop(name, None)

    @property
    def dependency_names(self) -> List[str]:
        with self._lock:
            return list(self._dependencies)

    async def run_check(self, config: DependencyConfig) -> CheckResult:
        start = time.monotonic()
        try:
            result = config.check_fn()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning(
                "Health check raised",
                operation="health_check",
                check=config.name,
                error=str(e),
            )
            result = CheckResult(
                name=config.name,
                status=HealthStatus.UNHEALTHY,
                message=f"Check failed: {e}",
            )
        result.latency_ms = (time.monotonic() - start) * 1000
        return result

    async def deep_health(self) -> HealthReport:
        """Run every registered check and return the aggregated report."""
        with self._lock:
            deps_snapshot = list(self._dependencies.values())

        checks: List[CheckResult] = []
        overall_status = HealthStatus.HEALTHY

        for config in deps_snapshot:
            result = await self.run_check(config)
            checks.append(result)

            if result.status == HealthStatus.UNHEALTHY:
                if config.dep_type == DependencyType.REQUIRED:
                    overall_status = HealthStatus.UNHEALTHY
                elif overall_status == HealthStatus.HEALTHY:
                    overall_status = HealthStatus.DEGRADED
            elif result.status == HealthStatus.DEGRADED:
                if overall_status == HealthStatus.HEALTHY:
                    overall_status = HealthStatus.DEGRADED

        return HealthReport(
            status=overall_status,
            uptime_seconds=time.monotonic() - self._start_time,
            checks=checks,
        )


# =============================================================================
# VEIL CHECKS
# =============================================================================

async def check_ledger_availability(ledger: Any, name: str = "ledger") -> CheckResult:
    """Probe the ledger gateway. Probe errors are reported, not raised."""
    start = time.monotonic()
    try:
        available = bool(await ledger.probe_availability())
    except Exception as e:
        logger.warning("Ledger probe failed", operation="probe_availability", error=str(e))
        return CheckResult(
            name=name,
            status=HealthStatus.UNHEALTHY,
            message=f"System available: False ({e})",
            latency_ms=(time.monotonic() - start) * 1000,
            metadata={"available": False, "error": str(e)},
        )

    return CheckResult(
        name=name,
        status=HealthStatus.HEALTHY if available else HealthStatus.UNHEALTHY,
        message=f"System available: {available}",
        latency_ms=(time.monotonic() - start) * 1000,
        metadata={"available": available, "contract_address": ledger.contract_address},
    )


def check_crypto_initialized(service: Any, name: str = "crypto") -> CheckResult:
    """Report whether the confidential compute runtime is initialized."""
    initialized = bool(getattr(service, "initialized", False))
    return CheckResult(
        name=name,
        status=HealthStatus.HEALTHY if initialized else HealthStatus.UNHEALTHY,
        message="Runtime initialized" if initialized else "Runtime not initialized",
        metadata={"initialized": initialized},
    )


def build_health_checker(ledger: Any, crypto_service: Any) -> HealthChecker:
    """HealthChecker with the ledger and crypto checks registered."""
    checker = HealthChecker()
    checker.register_dependency(DependencyConfig(
        name="ledger",
        check_fn=lambda: check_ledger_availability(ledger),
    ))
    checker.register_dependency(DependencyConfig(
        name="crypto",
        check_fn=lambda: check_crypto_initialized(crypto_service),
    ))
    return checker
