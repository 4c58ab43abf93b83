"""Recovery Orchestrator — diagnose, remediate, verify.

A recovery session walks this state machine::

    idle → diagnosing → completed                    (nothing wrong)
                      → recovering → verifying → completed
                                               → failed
    any unexpected exception while running       → failed (+ restore)

Before the first remediation step the configured files are backed up.
Each diagnostic error becomes one recovery step, executed in order; a
step that fails is recorded and the run moves on to the next one.  Only
an exception that is not a RemediationFailure aborts the session, and
then the backup taken by that session is restored (best-effort).

At most one session is active at a time.  ``begin()`` claims the session
slot under a lock, so two concurrent start requests cannot both win.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import config
from lifeboat.errors import (
    CatastrophicFailure,
    DatabaseUnavailable,
    InvalidTransition,
    MigrationFailed,
    PortProbeFailure,
    RemediationFailure,
    SessionConflict,
)
from lifeboat.services import database, fault_injection, history
from lifeboat.services.backup import BackupStore
from lifeboat.services.diagnostics import DiagnosticsEngine, RemediationAction
from lifeboat.services.events import EventBroadcaster
from lifeboat.services.launcher import SubprocessLauncher
from lifeboat.services.notifier import Notifier
from lifeboat.services.port_prober import PortProber
from lifeboat.services.verification import verify

log = logging.getLogger(__name__)

IDLE_MESSAGE = "System is stable. No recovery actions needed."


class RecoveryState(str, Enum):
    IDLE = "idle"
    DIAGNOSING = "diagnosing"
    RECOVERING = "recovering"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATES = frozenset({
    RecoveryState.DIAGNOSING,
    RecoveryState.RECOVERING,
    RecoveryState.VERIFYING,
})

_SESSION_TRANSITIONS = {
    RecoveryState.IDLE: {RecoveryState.DIAGNOSING},
    RecoveryState.DIAGNOSING: {
        RecoveryState.COMPLETED, RecoveryState.RECOVERING, RecoveryState.FAILED,
    },
    RecoveryState.RECOVERING: {RecoveryState.VERIFYING, RecoveryState.FAILED},
    RecoveryState.VERIFYING: {RecoveryState.COMPLETED, RecoveryState.FAILED},
    RecoveryState.COMPLETED: {RecoveryState.DIAGNOSING},
    RecoveryState.FAILED: {RecoveryState.DIAGNOSING},
}


class StepStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


_STEP_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.IN_PROGRESS},
    StepStatus.IN_PROGRESS: {StepStatus.COMPLETED, StepStatus.FAILED},
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
}


def _iso(ts):
    return datetime.fromtimestamp(ts, timezone.utc).isoformat() if ts else None


# ── Steps ──────────────────────────────────────────────────────────────────

@dataclass
class RecoveryStep:
    """One remediation action.  Status and progress only move forward."""

    id: str
    title: str
    description: str
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    error: str = None

    def _move(self, status):
        if status not in _STEP_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"Step {self.id}: cannot go from {self.status.value} to {status.value}"
            )
        self.status = status

    def begin(self):
        self._move(StepStatus.IN_PROGRESS)

    def advance(self, progress, description=None):
        """Raise progress to *progress* (never lowers it)."""
        if self.status is not StepStatus.IN_PROGRESS:
            raise InvalidTransition(f"Step {self.id} is not in progress")
        self.progress = max(self.progress, min(100, int(progress)))
        if description:
            self.description = description

    def complete(self, description=None):
        self._move(StepStatus.COMPLETED)
        self.progress = 100
        if description:
            self.description = description

    def fail(self, reason):
        self._move(StepStatus.FAILED)
        self.error = reason

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
        }


# ── Session ────────────────────────────────────────────────────────────────

@dataclass
class RecoveryStats:
    total_services: int
    services_online: int = 0
    port_conflicts: int = 0
    started_at: float = None
    finished_at: float = None

    def elapsed(self):
        if self.started_at is None:
            return 0.0
        return (self.finished_at or time.time()) - self.started_at

    def to_dict(self, progress=0):
        elapsed = int(self.elapsed())
        return {
            "servicesOnline": self.services_online,
            "totalServices": self.total_services,
            "portConflicts": self.port_conflicts,
            "elapsedSeconds": round(self.elapsed(), 1),
            "recoveryTime": f"{elapsed // 60}:{elapsed % 60:02d}",
            "recoveryProgress": progress,
        }


class RecoverySession:
    """State of one start-recovery invocation."""

    def __init__(self, total_services, test_mode=False):
        self.id = uuid.uuid4().hex[:12]
        self.state = RecoveryState.IDLE
        self.message = IDLE_MESSAGE
        self.test_mode = test_mode
        self.steps = []
        self.diagnostics = []
        self.diagnostics_loading = False
        self.stats = RecoveryStats(total_services=total_services, started_at=time.time())
        self.warnings = []
        self.verification = None
        self.backup = {"data": False, "failover": False, "path": None}
        self.failure = None

    def transition(self, state, message):
        if state not in _SESSION_TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"Session {self.id}: cannot go from {self.state.value} to {state.value}"
            )
        self.state = state
        self.message = message

    @property
    def is_active(self):
        return self.state in ACTIVE_STATES

    @property
    def progress(self):
        if self.state is RecoveryState.COMPLETED:
            return 100
        steps = list(self.steps)
        if not steps:
            return 0
        done = sum(1 for s in steps if s.status is StepStatus.COMPLETED)
        return int(done * 100 / len(steps))

    @property
    def started_at_iso(self):
        return _iso(self.stats.started_at)

    @property
    def finished_at_iso(self):
        return _iso(self.stats.finished_at)

    def find_step(self, step_id):
        return next((s for s in self.steps if s.id == step_id), None)

    def stats_dict(self):
        return self.stats.to_dict(progress=self.progress)

    def diagnostics_dict(self):
        return {
            "loading": self.diagnostics_loading,
            "errors": [e.to_dict() for e in list(self.diagnostics)],
        }

    def steps_dict(self):
        return {"steps": [s.to_dict() for s in list(self.steps)]}

    def to_dict(self):
        data = {
            "sessionId": self.id,
            "state": self.state.value,
            "message": self.message,
            "stats": self.stats_dict(),
            "testMode": self.test_mode,
            "backup": dict(self.backup),
            "warnings": list(self.warnings),
            "startedAt": self.started_at_iso,
            "finishedAt": self.finished_at_iso,
        }
        if self.diagnostics or self.diagnostics_loading:
            data["diagnostics"] = self.diagnostics_dict()
        if self.steps:
            data["recoverySteps"] = self.steps_dict()
        if self.verification is not None:
            data["verification"] = self.verification.to_dict()
        if self.failure:
            data["failure"] = self.failure
        return data


# ── Manager ────────────────────────────────────────────────────────────────

class RecoveryManager:
    """Owns the session slot and runs recovery sessions.

    Every collaborator can be injected; anything left out is built from
    ``config``.
    """

    def __init__(
        self,
        registry,
        prober=None,
        launcher=None,
        broadcaster=None,
        backups=None,
        notifier=None,
        database_url=None,
        migration_command=None,
        spawn_grace=None,
        service_quorum=None,
        resync_stage_delay=None,
        injectors=None,
        test_mode=None,
        sleep=time.sleep,
        record_history=True,
    ):
        self.registry = registry
        self.prober = prober or PortProber()
        self.launcher = launcher or SubprocessLauncher(config.PROJECT_ROOT)
        self.broadcaster = broadcaster or EventBroadcaster()
        self.backups = backups or BackupStore(
            config.BACKUP_DIR, config.PROJECT_ROOT, registry.backup_files
        )
        self.notifier = notifier or Notifier(self.broadcaster, config.NOTIFY_URL)
        self.database_url = config.DATABASE_URL if database_url is None else database_url
        self.migration_command = (
            config.MIGRATION_COMMAND if migration_command is None else migration_command
        )
        self.spawn_grace = config.SPAWN_GRACE_SECONDS if spawn_grace is None else spawn_grace
        self.service_quorum = config.SERVICE_QUORUM if service_quorum is None else service_quorum
        self.resync_stage_delay = (
            config.RESYNC_STAGE_DELAY if resync_stage_delay is None else resync_stage_delay
        )
        self.injectors = (
            fault_injection.resolve(config.FAULT_INJECTORS) if injectors is None else list(injectors)
        )
        self.test_mode = config.TEST_MODE if test_mode is None else bool(test_mode)
        self._sleep = sleep
        self._record_history = record_history

        self.engine = DiagnosticsEngine(registry, self.prober, self.database_url)
        self._handlers = {
            RemediationAction.RELEASE_PORT: self._release_port,
            RemediationAction.START_SERVICE: self._start_service,
            RemediationAction.REPAIR_DATABASE: self._repair_database,
            RemediationAction.RESYNC_DEPENDENCY: self._resync_dependency,
        }

        self._lock = threading.Lock()
        self._session = None
        self._fixing = False
        self._worker = None
        self._idle_stats = RecoveryStats(total_services=len(registry))
        self._stats_thread = None
        self._stats_running = False

    # ── Session slot ───────────────────────────────────────────────────────

    @property
    def session(self):
        """The latest session (active or finished), or None."""
        return self._session

    def begin(self, test_mode=None):
        """Claim the session slot and return a new session in ``diagnosing``.

        Raises:
            SessionConflict: a session is active or an error is being fixed.
        """
        with self._lock:
            current = self._session
            if self._fixing or (current is not None and current.is_active):
                raise SessionConflict("Recovery already in progress")
            if test_mode is not None:
                self.test_mode = bool(test_mode)
            session = RecoverySession(len(self.registry), test_mode=self.test_mode)
            session.transition(RecoveryState.DIAGNOSING, "Diagnosing system issues...")
            self._session = session

        log.info(
            "Starting recovery process (session %s%s)",
            session.id, ", test mode" if session.test_mode else "",
        )
        self._publish_state(session)
        return session

    def start(self, test_mode=None):
        """Begin a session and run it on a background thread."""
        session = self.begin(test_mode)
        worker = threading.Thread(
            target=self.run, args=(session,), daemon=True, name=f"recovery-{session.id}"
        )
        self._worker = worker
        worker.start()
        return session

    def wait(self, timeout=None):
        """Join the background worker started by ``start()``."""
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
        return self._session

    def toggle_test_mode(self, enabled):
        self.test_mode = bool(enabled)
        log.info("Test mode %s", "enabled" if self.test_mode else "disabled")
        return self.test_mode

    # ── Run ────────────────────────────────────────────────────────────────

    def run(self, session):
        """Drive *session* from ``diagnosing`` to ``completed`` or ``failed``.

        Never raises; the outcome is on the session.
        """
        try:
            errors = self._diagnose(session)
            if not errors:
                self._finish(session, "Recovery completed successfully. No issues found.")
                return session

            self._take_backup(session)
            self._plan(session, errors)
            self._set_state(session, RecoveryState.RECOVERING, "Executing recovery steps...")
            log.info("Executing recovery steps")
            for step, error in zip(list(session.steps), errors):
                self._remediate(session, step, error)
                self.refresh_stats()

            self._set_state(session, RecoveryState.VERIFYING, "Verifying recovery success...")
            self._verify(session)
            self._finish(session, "Recovery completed successfully!")
        except Exception as exc:
            self._fail(session, exc)
        finally:
            if self._record_history:
                history.record_session(session)
        return session

    def _diagnose(self, session):
        session.diagnostics_loading = True
        self._publish_diagnostics(session)
        injectors = self.injectors if session.test_mode else ()
        try:
            errors = self.engine.run(injectors)
        finally:
            session.diagnostics_loading = False
        session.diagnostics = list(errors)
        self._publish_diagnostics(session)
        self.refresh_stats()
        return errors

    def _take_backup(self, session):
        try:
            path = self.backups.create(recovery={
                "state": session.state.value,
                "diagnosticResults": session.diagnostics_dict(),
                "stats": session.stats_dict(),
            })
        except OSError as exc:
            log.error("Error creating backup: %s", exc)
            return
        session.backup["data"] = True
        session.backup["path"] = str(path)
        self.broadcaster.publish("backup-update", dict(session.backup))

    def _plan(self, session, errors):
        for error in errors:
            session.steps.append(self._step_for(error))
        self._publish_steps(session)

    def _step_for(self, error):
        ctx = error.context
        if error.action is RemediationAction.RELEASE_PORT:
            port = ctx["port"]
            return RecoveryStep(
                id=f"release_port_{port}",
                title=f"Release Port {port}",
                description=f"Releasing port {port} to resolve conflicts.",
            )
        if error.action is RemediationAction.START_SERVICE:
            svc = ctx["service"]
            return RecoveryStep(
                id=f"start_service_{svc.slug}",
                title=f"Start {svc.name}",
                description=f"Starting {svc.name} on port {svc.port}.",
            )
        if error.action is RemediationAction.REPAIR_DATABASE:
            return RecoveryStep(
                id="fix_database",
                title="Fix Database Connection",
                description="Attempting to fix database connection issues.",
            )
        svc = ctx.get("service")
        name = svc.name if svc else "dependency"
        return RecoveryStep(
            id=f"resync_{svc.slug if svc else 'dependency'}",
            title=f"Resync {name}",
            description=f"Resyncing {name} data to ensure consistency.",
        )

    def _remediate(self, session, step, error):
        """Run the handler for *error*.  Returns True if the step completed.

        Raises:
            CatastrophicFailure: the handler raised something other than a
                RemediationFailure.
        """
        step.begin()
        self._publish_steps(session)
        try:
            self._handlers[error.action](session, step, error)
        except RemediationFailure as exc:
            step.fail(str(exc))
            log.error("%s failed: %s", step.title, exc)
            self._publish_steps(session)
            return False
        except Exception as exc:
            step.fail(f"Unexpected error: {exc}")
            self._publish_steps(session)
            raise CatastrophicFailure(f"{step.title} crashed: {exc}") from exc

        step.complete()
        self._publish_steps(session)
        return True

    def _verify(self, session):
        log.info("Verifying recovery")
        result = verify(
            self.engine,
            self.service_quorum,
            progress=lambda pct, desc: self._report_verification(session, pct, desc),
        )
        session.verification = result
        session.stats.services_online = result.services_online
        session.stats.port_conflicts = result.port_conflicts
        session.warnings.extend(result.warnings)
        self.broadcaster.publish("stats-update", session.stats_dict())
        return result

    def _report_verification(self, session, progress, description):
        log.info(description)
        session.message = description
        self.broadcaster.publish("state-change", {
            "state": session.state.value,
            "message": description,
            "progress": progress,
        })

    def _finish(self, session, message):
        for step in session.steps:
            if step.status is StepStatus.FAILED:
                session.warnings.append(f"{step.title} failed: {step.error}")
        if session.warnings:
            message = "Recovery completed with warnings. See logs for details."

        session.stats.finished_at = time.time()
        self._set_state(session, RecoveryState.COMPLETED, message)
        self.broadcaster.publish("stats-update", session.stats_dict())
        if session.warnings:
            log.warning(message)
        else:
            log.info(message)
        self.notifier.notify(
            "Recovery process completed with warnings." if session.warnings
            else "Recovery process completed successfully!"
        )

    def _fail(self, session, exc):
        failure = exc if isinstance(exc, CatastrophicFailure) else CatastrophicFailure(str(exc))
        log.error("Recovery failed: %s", failure, exc_info=exc)
        if not session.is_active:
            # Already completed; the error came after the outcome was published.
            return

        for step in session.steps:
            if step.status is StepStatus.IN_PROGRESS:
                step.fail(str(failure))
        session.failure = str(failure)
        session.stats.finished_at = time.time()
        session.diagnostics_loading = False
        self._set_state(session, RecoveryState.FAILED, f"Recovery failed: {failure}")
        self._publish_steps(session)
        self.notifier.notify(f"Recovery process failed: {failure}", kind="alert")

        if session.backup["data"]:
            try:
                self.backups.restore(session.backup["path"])
            except Exception as restore_exc:
                log.error("Failed to restore backup: %s", restore_exc)

    # ── Single-error fix ───────────────────────────────────────────────────

    def fix_error(self, error_id):
        """Remediate one error from the latest diagnostics, out of band.

        Returns:
            The DiagnosticError that was fixed.

        Raises:
            SessionConflict: a session is active or another fix is running.
            KeyError: no diagnostic error with *error_id*.
            RemediationFailure: the remediation did not fix the error.
            CatastrophicFailure: the remediation crashed.
        """
        with self._lock:
            session = self._session
            if self._fixing or (session is not None and session.is_active):
                raise SessionConflict("Recovery already in progress")
            error = None
            if session is not None:
                error = next((e for e in session.diagnostics if e.id == error_id), None)
            if error is None:
                raise KeyError(error_id)
            self._fixing = True

        try:
            log.info("Fixing error: %s", error.title)
            step = self._step_for(error)
            if session.find_step(step.id) is not None:
                step.id = f"{step.id}_fix{len(session.steps)}"
            session.steps.append(step)
            self._publish_steps(session)

            if not self._remediate(session, step, error):
                raise RemediationFailure(step.error)

            session.diagnostics = [e for e in session.diagnostics if e.id != error_id]
            self._publish_diagnostics(session)
            self.refresh_stats()
            return error
        finally:
            with self._lock:
                self._fixing = False

    # ── Remediation handlers ───────────────────────────────────────────────

    def _release_port(self, session, step, error):
        port = error.context["port"]
        log.info("Releasing port %d", port)
        self._advance(session, step, 30)
        try:
            released = self.prober.release(port)
        except PortProbeFailure as exc:
            raise RemediationFailure(str(exc)) from exc
        if not released:
            raise RemediationFailure(f"Failed to release port {port}")
        log.info("Successfully released port %d", port)

    def _start_service(self, session, step, error):
        name = error.context["service"].name
        svc = self.registry.find(name)
        if svc is None:
            raise RemediationFailure(f"Unknown service: {name}")

        log.info("Starting service %s", svc.name)
        self._advance(session, step, 30)
        self._launch_and_confirm(svc)
        log.info("Successfully started %s", svc.name)

    def _repair_database(self, session, step, error):
        if not self.database_url:
            raise RemediationFailure("DATABASE_URL is not set; cannot repair the database.")

        log.info("Fixing database connection")
        self._advance(session, step, 30)
        if self.migration_command:
            try:
                database.migrate(self.migration_command, cwd=str(config.PROJECT_ROOT))
                log.info("Database migration completed")
                self._advance(session, step, 70)
            except MigrationFailed as exc:
                log.warning("Database migration failed: %s", exc)
                self._advance(
                    session, step, 50,
                    "Database migration failed, trying alternate approach...",
                )

        try:
            database.ping(self.database_url)
        except DatabaseUnavailable as exc:
            raise RemediationFailure(f"Database connection still failing: {exc}") from exc
        log.info("Database connection restored")

    def _resync_dependency(self, session, step, error):
        sync = self.registry.dependency_sync
        if sync is None or sync.failover is None:
            raise RemediationFailure("No failover instance configured for resync.")

        failover = sync.failover
        log.info("Activating %s", failover.name)
        self._advance(session, step, 10, f"Activating {failover.name}...")
        self._launch_and_confirm(failover)
        log.info("%s activated", failover.name)

        session.backup["failover"] = True
        self.broadcaster.publish("backup-update", dict(session.backup))
        self._advance(session, step, 30)

        for stage in range(1, sync.stages + 1):
            self._sleep(self.resync_stage_delay)
            self._advance(
                session, step, 30 + stage * 60 // sync.stages,
                f"Resyncing {sync.service} - stage {stage} of {sync.stages}",
            )
        step.description = f"{sync.service} successfully resynced and verified."
        log.info("Successfully resynced %s", sync.service)

    def _launch_and_confirm(self, svc):
        try:
            self.launcher.launch(svc)
        except OSError as exc:
            raise RemediationFailure(f"Could not launch {svc.name}: {exc}") from exc

        self._sleep(self.spawn_grace)
        try:
            bound = self.prober.is_bound(svc.port)
        except PortProbeFailure as exc:
            raise RemediationFailure(str(exc)) from exc
        if not bound:
            raise RemediationFailure(
                f"{svc.name} did not bind port {svc.port} within {self.spawn_grace}s"
            )

    # ── Stats ──────────────────────────────────────────────────────────────

    def refresh_stats(self):
        """Re-probe ports and services; publish and return the stats dict."""
        session = self._session
        stats = session.stats if session else self._idle_stats
        stats.services_online = self.engine.count_services_online()
        stats.port_conflicts = self.engine.count_port_conflicts()
        payload = session.stats_dict() if session else stats.to_dict()
        self.broadcaster.publish("stats-update", payload)
        return payload

    def start_stats_loop(self, interval=None):
        """Start the background stats refresh thread."""
        if self._stats_thread and self._stats_thread.is_alive():
            return
        interval = interval or config.STATS_INTERVAL
        self._stats_running = True
        self._stats_thread = threading.Thread(
            target=self._stats_loop, args=(interval,), daemon=True, name="stats-refresh"
        )
        self._stats_thread.start()
        log.info("Stats refresh loop started (every %ds).", interval)

    def stop_stats_loop(self):
        """Signal the background thread to stop."""
        self._stats_running = False

    def _stats_loop(self, interval):
        while self._stats_running:
            try:
                self.refresh_stats()
            except Exception as exc:
                log.error("Stats refresh failed: %s", exc)
            time.sleep(interval)

    # ── Views & publishing ─────────────────────────────────────────────────

    def status(self):
        """Return the JSON view served by ``GET /api/status``."""
        session = self._session
        if session is None:
            return {
                "state": RecoveryState.IDLE.value,
                "message": IDLE_MESSAGE,
                "stats": self._idle_stats.to_dict(),
                "testMode": self.test_mode,
                "backup": {"data": False, "failover": False, "path": None},
                "warnings": [],
            }
        data = session.to_dict()
        data["testMode"] = self.test_mode
        return data

    def _set_state(self, session, state, message):
        session.transition(state, message)
        self._publish_state(session)

    def _advance(self, session, step, progress, description=None):
        step.advance(progress, description)
        self._publish_steps(session)

    def _publish_state(self, session):
        self.broadcaster.publish(
            "state-change", {"state": session.state.value, "message": session.message}
        )

    def _publish_diagnostics(self, session):
        self.broadcaster.publish("diagnostics-update", session.diagnostics_dict())

    def _publish_steps(self, session):
        self.broadcaster.publish("recovery-update", session.steps_dict())
