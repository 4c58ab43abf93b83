"""Diagnostics Engine — sweeps ports, services and the database.

A sweep runs four checks in a fixed order:

  1. Critical ports that must stay free but are bound  → port_conflict
  2. Registered services whose port is not bound        → service_down
  3. Database round-trip (or missing DATABASE_URL)      → database_error
  4. Fault injectors (test mode only)                   → whatever they emit

Each check is best-effort: a probe that fails is logged and skipped, and
the sweep always runs to the end.  Error IDs depend only on the error kind
and the affected resource, so two sweeps over the same system state return
the same IDs.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from lifeboat.errors import DatabaseUnavailable, PortProbeFailure
from lifeboat.services import database

log = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    PORT_CONFLICT = "port_conflict"
    SERVICE_DOWN = "service_down"
    DATABASE_ERROR = "database_error"
    BLOCKCHAIN_SYNC_LAG = "blockchain_sync_lag"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RemediationAction(str, Enum):
    RELEASE_PORT = "release_port"
    START_SERVICE = "start_service"
    REPAIR_DATABASE = "repair_database"
    RESYNC_DEPENDENCY = "resync_dependency"


@dataclass
class DiagnosticError:
    id: str
    kind: ErrorKind
    severity: Severity
    action: RemediationAction
    title: str
    description: str
    context: dict = field(default_factory=dict)

    def to_dict(self):
        context = {}
        for key, value in self.context.items():
            context[key] = value.to_dict() if hasattr(value, "to_dict") else value
        return {
            "id": self.id,
            "type": self.kind.value,
            "title": self.title,
            "description": self.description,
            "severity": self.severity.value,
            "remediationAction": self.action.value,
            "context": context,
        }


class DiagnosticsEngine:
    """Runs the diagnostic sweep against the registry's view of the world."""

    def __init__(self, registry, prober, database_url=""):
        self.registry = registry
        self.prober = prober
        self.database_url = database_url

    def run(self, injectors=()):
        """Return the list of DiagnosticErrors for the current system state."""
        log.info("Running system diagnostics")
        errors = []
        for check in (self.check_port_conflicts, self.check_services, self.check_database):
            errors.extend(self._run_check(check))
        for injector in injectors:
            errors.extend(self._run_injector(injector))

        if errors:
            log.warning("Diagnostics completed with %d issues found", len(errors))
        else:
            log.info("Diagnostics completed with no issues found")
        return errors

    # ── Individual checks ──────────────────────────────────────────────────

    def probe(self, port):
        """Probe *port*.  Returns True / False, or None if undeterminable."""
        try:
            return self.prober.is_bound(port)
        except PortProbeFailure as exc:
            log.error("Error checking port %s: %s", port, exc)
            return None

    def check_port_conflicts(self):
        log.info("Checking for port conflicts")
        errors = []
        for entry in self.registry.critical_ports:
            if not entry.must_stay_free:
                continue
            if self.probe(entry.port) is not True:
                continue

            log.warning("Port %d is in use", entry.port)
            if entry.critical:
                severity = Severity.HIGH
                title = f"Critical Port Conflict: Port {entry.port}"
                description = (
                    f"Port {entry.port} is currently in use, causing critical "
                    "services to fail."
                )
            else:
                severity = Severity.MEDIUM
                title = f"Port Conflict: Port {entry.port}"
                description = (
                    f"Port {entry.port} is currently in use, which may cause "
                    "service conflicts."
                )
            errors.append(DiagnosticError(
                id=f"port_conflict_{entry.port}",
                kind=ErrorKind.PORT_CONFLICT,
                severity=severity,
                action=RemediationAction.RELEASE_PORT,
                title=title,
                description=description,
                context={"port": entry.port},
            ))
        return errors

    def check_services(self):
        log.info("Checking service availability")
        errors = []
        for svc in self.registry.list():
            if self.probe(svc.port) is not False:
                continue

            log.warning("Service %s is not running on port %d", svc.name, svc.port)
            errors.append(DiagnosticError(
                id=f"service_down_{svc.slug}",
                kind=ErrorKind.SERVICE_DOWN,
                severity=Severity.HIGH,
                action=RemediationAction.START_SERVICE,
                title=f"Service Down: {svc.name}",
                description=(
                    f"{svc.name} is not running on port {svc.port}. "
                    "This may cause system instability."
                ),
                context={"service": svc},
            ))
        return errors

    def check_database(self):
        log.info("Checking database connection")
        if not self.database_url:
            log.warning("DATABASE_URL environment variable is not set")
            return [DiagnosticError(
                id="database_env_missing",
                kind=ErrorKind.DATABASE_ERROR,
                severity=Severity.HIGH,
                action=RemediationAction.REPAIR_DATABASE,
                title="Database Configuration Missing",
                description=(
                    "The DATABASE_URL environment variable is not set. "
                    "Database connections will fail."
                ),
            )]

        try:
            database.ping(self.database_url)
        except DatabaseUnavailable as exc:
            log.warning("Database connection failed: %s", exc)
            return [DiagnosticError(
                id="database_connection_failed",
                kind=ErrorKind.DATABASE_ERROR,
                severity=Severity.HIGH,
                action=RemediationAction.REPAIR_DATABASE,
                title="Database Connection Failed",
                description=f"Unable to connect to the database: {exc}",
            )]
        except Exception as exc:
            log.error("Error checking database connection: %s", exc)
            return [DiagnosticError(
                id="database_check_failed",
                kind=ErrorKind.DATABASE_ERROR,
                severity=Severity.MEDIUM,
                action=RemediationAction.REPAIR_DATABASE,
                title="Database Check Failed",
                description=f"Unable to check database connection: {exc}",
            )]

        log.info("Database connection successful")
        return []

    def _run_check(self, check):
        try:
            return list(check())
        except Exception as exc:
            log.error("Diagnostic check %s failed: %s", check.__name__, exc)
            return []

    def _run_injector(self, injector):
        name = getattr(injector, "name", getattr(injector, "__name__", repr(injector)))
        try:
            injected = list(injector(self))
        except Exception as exc:
            log.error("Fault injector %s failed: %s", name, exc)
            return []
        for error in injected:
            log.warning("Injected fault %s from %s", error.id, name)
        return injected

    # ── Counters shared with stats and verification ────────────────────────

    def count_services_online(self):
        return sum(1 for svc in self.registry.list() if self.probe(svc.port) is True)

    def count_port_conflicts(self):
        return sum(
            1 for entry in self.registry.critical_ports
            if entry.must_stay_free and self.probe(entry.port) is True
        )

    def unverified_ports(self):
        """Must-stay-free ports whose state could not be determined."""
        return [
            entry.port for entry in self.registry.critical_ports
            if entry.must_stay_free and self.probe(entry.port) is None
        ]

    def database_reachable(self):
        return database.is_reachable(self.database_url)
