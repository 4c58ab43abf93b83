"""Verification pass — decide whether remediation actually worked."""

import logging
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    port_conflicts: int
    services_online: int
    services_total: int
    database_connected: bool
    quorum: float
    unverified_ports: list = field(default_factory=list)
    warnings: list = field(default_factory=list)

    @property
    def ports_clear(self):
        return self.port_conflicts == 0 and not self.unverified_ports

    @property
    def services_ok(self):
        return self.services_online >= self.services_total * self.quorum

    @property
    def passed(self):
        return self.ports_clear and self.services_ok and self.database_connected

    def to_dict(self):
        return {
            "passed": self.passed,
            "portsClear": self.ports_clear,
            "portConflicts": self.port_conflicts,
            "unverifiedPorts": list(self.unverified_ports),
            "servicesOnline": self.services_online,
            "servicesTotal": self.services_total,
            "databaseConnected": self.database_connected,
            "quorum": self.quorum,
            "warnings": list(self.warnings),
        }


def verify(engine, quorum, progress=None):
    """Re-run the port, service and database checks.

    Args:
        engine: DiagnosticsEngine to probe with.
        quorum: fraction of registered services that must be reachable.
        progress: optional ``callable(percent, description)`` for reporting.

    Returns:
        VerificationResult.
    """
    report = progress or (lambda pct, desc: None)

    report(25, "Verifying port conflicts are resolved...")
    conflicts = engine.count_port_conflicts()
    unverified = engine.unverified_ports()

    report(50, "Verifying services are running...")
    total = len(engine.registry)
    online = engine.count_services_online()

    report(75, "Verifying database connection...")
    db_ok = engine.database_reachable()

    result = VerificationResult(
        port_conflicts=conflicts,
        services_online=online,
        services_total=total,
        database_connected=db_ok,
        quorum=quorum,
        unverified_ports=unverified,
    )
    if conflicts:
        result.warnings.append(f"{conflicts} port conflict(s) still present.")
    for port in unverified:
        result.warnings.append(f"Port {port} state could not be verified.")
    if not result.services_ok:
        result.warnings.append(f"Only {online}/{total} critical services running.")
    if not db_ok:
        result.warnings.append("Database connection not verified.")

    for warning in result.warnings:
        log.warning(warning)
    if result.passed:
        log.info("Recovery verification successful")
    else:
        log.warning("Recovery verification completed with warnings")
    return result
