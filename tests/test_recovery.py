"""Beast + Edge-case tests for the Recovery Orchestrator.

Covers:
  - Full run: diagnose → back up → remediate → verify → completed
  - Missing database: failed step, completed with warnings
  - Service quorum gates the success message
  - One session at a time, even under concurrent starts
  - Step progress only moves forward
  - Unexpected crash → failed, backup restored
  - Test mode resync, single-error fixes
"""

import threading

import pytest

from lifeboat.errors import (
    InvalidTransition,
    RemediationFailure,
    SessionConflict,
)
from lifeboat.services.launcher import SimulatedLauncher
from lifeboat.services.verification import VerificationResult
from lifeboat.services.recovery import (
    IDLE_MESSAGE,
    RecoveryState,
    RecoveryStep,
    StepStatus,
)

ORDER = ["pending", "in-progress", "completed"]


def _step_ids(session):
    return [s.id for s in session.steps]


# ── Full runs ──────────────────────────────────────────────────────────────

def test_status_is_idle_before_any_session(manager):
    """Beast: with no session the status is idle with the stable message."""
    status = manager.status()
    assert status["state"] == "idle"
    assert status["message"] == IDLE_MESSAGE
    assert status["stats"]["totalServices"] == 2


def test_full_recovery_scenario(manager, prober):
    """Beast: conflict + two downed services → three steps, all fixed."""
    session = manager.run(manager.begin())

    assert session.state is RecoveryState.COMPLETED
    assert session.message == "Recovery completed successfully!"
    assert _step_ids(session) == [
        "release_port_3001",
        "start_service_api_gateway",
        "start_service_banking_service",
    ]
    assert all(s.status is StepStatus.COMPLETED for s in session.steps)
    assert all(s.progress == 100 for s in session.steps)
    assert session.warnings == []
    assert session.verification.passed is True

    stats = manager.status()["stats"]
    assert stats["servicesOnline"] == stats["totalServices"] == 2
    assert stats["portConflicts"] == 0
    assert stats["recoveryProgress"] == 100
    assert prober.released == [3001]


def test_backup_taken_before_remediation(manager, backups):
    """Beast: a backup with a manifest exists once recovery starts."""
    session = manager.run(manager.begin())
    assert session.backup["data"] is True
    listed = backups.list()
    assert len(listed) == 1
    assert listed[0]["path"] == session.backup["path"]
    assert sorted(listed[0]["files"]) == ["server/db.ts", "service-registry.json"]
    assert listed[0]["state"] == "diagnosing"


def test_nothing_wrong_completes_without_steps(manager, prober, backups):
    """Beast: a healthy system completes straight from diagnosing."""
    prober.bound = {5000, 5010}
    session = manager.run(manager.begin())
    assert session.state is RecoveryState.COMPLETED
    assert session.message == "Recovery completed successfully. No issues found."
    assert session.steps == []
    assert backups.list() == []


def test_missing_database_completes_with_warnings(make_manager):
    """Beast: no DATABASE_URL → the database step fails, the run still completes."""
    mgr = make_manager(database_url="")
    session = mgr.run(mgr.begin())

    assert session.state is RecoveryState.COMPLETED
    assert session.message == "Recovery completed with warnings. See logs for details."
    step = session.find_step("fix_database")
    assert step.status is StepStatus.FAILED
    assert "DATABASE_URL" in step.error
    assert any("Database" in w for w in session.warnings)
    assert session.verification.database_connected is False


def test_quorum_not_met_is_never_plain_success(make_manager, prober):
    """4% edge: services that never bind keep the run out of plain success."""
    mgr = make_manager(launcher=SimulatedLauncher())
    session = mgr.run(mgr.begin())

    assert session.state is RecoveryState.COMPLETED
    assert session.message != "Recovery completed successfully!"
    assert "Only 0/2 critical services running." in session.warnings
    assert session.find_step("start_service_api_gateway").status is StepStatus.FAILED
    assert session.verification.services_ok is False


def test_quorum_met_with_one_failure():
    """Beast: 4/5 online satisfies an 80% quorum."""
    result = VerificationResult(
        port_conflicts=0, services_online=4, services_total=5,
        database_connected=True, quorum=0.8,
    )
    assert result.services_ok is True
    assert result.passed is True
    result.services_online = 3
    assert result.services_ok is False


def test_unprobeable_port_is_never_plain_success(manager, prober):
    """4% edge: a must-stay-free port in an unknown state fails verification."""
    prober.failing = {3001}
    session = manager.run(manager.begin())

    assert session.state is RecoveryState.COMPLETED
    assert session.message == "Recovery completed with warnings. See logs for details."
    assert "Port 3001 state could not be verified." in session.warnings
    assert session.verification.ports_clear is False
    assert session.verification.passed is False
    assert session.verification.to_dict()["unverifiedPorts"] == [3001]


def test_stuck_port_fails_step_only(manager, prober):
    """Beast: a port that will not free fails its step; the others still run."""
    prober.stuck = {3001}
    session = manager.run(manager.begin())

    assert session.state is RecoveryState.COMPLETED
    assert session.find_step("release_port_3001").status is StepStatus.FAILED
    assert session.find_step("start_service_api_gateway").status is StepStatus.COMPLETED
    assert "1 port conflict(s) still present." in session.warnings


# ── Exclusivity ────────────────────────────────────────────────────────────

def test_second_begin_conflicts(manager):
    """Beast: a second start while a session is active is refused."""
    manager.begin()
    with pytest.raises(SessionConflict):
        manager.begin()


def test_begin_allowed_after_completion(manager):
    """Beast: a finished session does not block the next one."""
    first = manager.run(manager.begin())
    second = manager.begin()
    assert second.id != first.id
    assert second.state is RecoveryState.DIAGNOSING


def test_concurrent_begins_have_one_winner(manager):
    """4% edge: of many simultaneous starts exactly one wins."""
    barrier = threading.Barrier(8)
    wins, conflicts = [], []

    def attempt():
        barrier.wait()
        try:
            wins.append(manager.begin())
        except SessionConflict:
            conflicts.append(1)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert len(conflicts) == 7


def test_background_start_and_wait(manager):
    """Beast: start() runs the session on a worker thread."""
    session = manager.start()
    finished = manager.wait(timeout=10)
    assert finished is session
    assert session.state is RecoveryState.COMPLETED


# ── Events & monotonic progress ────────────────────────────────────────────

def test_step_progress_never_goes_backwards(manager, broadcaster):
    """Beast: every published step snapshot only moves forward."""
    sub = broadcaster.subscribe()
    manager.run(manager.begin())

    seen = {}
    while True:
        event = sub.get(timeout=0)
        if event is None:
            break
        if event.name != "recovery-update":
            continue
        for step in event.payload["steps"]:
            prev = seen.get(step["id"])
            if prev is not None:
                assert ORDER.index(step["status"]) >= ORDER.index(prev["status"])
                assert step["progress"] >= prev["progress"]
            seen[step["id"]] = step

    assert len(seen) == 3
    assert all(s["status"] == "completed" for s in seen.values())


def test_state_changes_are_published(manager, broadcaster):
    """Beast: the state-change stream follows the state machine."""
    sub = broadcaster.subscribe()
    manager.run(manager.begin())

    states = []
    while True:
        event = sub.get(timeout=0)
        if event is None:
            break
        if event.name == "state-change":
            states.append(event.payload["state"])
    collapsed = [s for i, s in enumerate(states) if i == 0 or states[i - 1] != s]
    assert collapsed == ["diagnosing", "recovering", "verifying", "completed"]


def test_verification_progress_is_published(manager, broadcaster):
    """Beast: observers see the verification pass running."""
    sub = broadcaster.subscribe()
    manager.run(manager.begin())

    verifying = []
    while True:
        event = sub.get(timeout=0)
        if event is None:
            break
        if event.name == "state-change" and event.payload["state"] == "verifying":
            verifying.append(event.payload)

    messages = [p["message"] for p in verifying]
    assert "Verifying port conflicts are resolved..." in messages
    assert "Verifying database connection..." in messages
    progress = [p["progress"] for p in verifying if "progress" in p]
    assert progress == sorted(progress)
    assert progress[-1] == 75


def test_completion_notification(manager):
    """Beast: finishing a run leaves a notification."""
    manager.run(manager.begin())
    notes = manager.notifier.all()
    assert notes[-1]["message"] == "Recovery process completed successfully!"
    assert notes[-1]["type"] == "system"


# ── Catastrophic failure ───────────────────────────────────────────────────

def test_crash_fails_session_and_restores_backup(make_manager, project_root):
    """4% edge: an unexpected exception → failed, and files are restored."""
    target = project_root / "service-registry.json"

    def crash(service):
        target.write_text("corrupted")
        raise RuntimeError("launcher exploded")

    mgr = make_manager(launcher=SimulatedLauncher(on_launch=crash))
    session = mgr.run(mgr.begin())

    assert session.state is RecoveryState.FAILED
    assert session.message.startswith("Recovery failed:")
    assert "launcher exploded" in session.failure
    assert session.find_step("start_service_api_gateway").status is StepStatus.FAILED
    assert session.find_step("start_service_banking_service").status is StepStatus.PENDING
    assert target.read_text() == '{"version": 1}'
    assert mgr.notifier.all()[-1]["type"] == "alert"


def test_failed_restore_is_logged_not_raised(make_manager, backups, monkeypatch):
    """4% edge: a restore that fails after a crash leaves the session failed."""

    def crash(service):
        raise RuntimeError("launcher exploded")

    def broken_restore(path=None):
        raise OSError("disk gone")

    monkeypatch.setattr(backups, "restore", broken_restore)
    mgr = make_manager(launcher=SimulatedLauncher(on_launch=crash))
    session = mgr.run(mgr.begin())

    assert session.state is RecoveryState.FAILED
    assert "launcher exploded" in session.failure
    assert session.backup["data"] is True


def test_launch_oserror_is_a_step_failure(make_manager):
    """Beast: a launch command that cannot start fails only its step."""

    def missing(service):
        raise FileNotFoundError(f"{service.name} binary missing")

    mgr = make_manager(launcher=SimulatedLauncher(on_launch=missing))
    session = mgr.run(mgr.begin())
    assert session.state is RecoveryState.COMPLETED
    step = session.find_step("start_service_api_gateway")
    assert step.status is StepStatus.FAILED
    assert "binary missing" in step.error


# ── Test mode ──────────────────────────────────────────────────────────────

def test_test_mode_resyncs_dependency(make_manager, prober, broadcaster):
    """Beast: in test mode the sync-lag fault is injected and resynced."""
    prober.bound = {5000, 5010}
    mgr = make_manager()
    mgr.toggle_test_mode(True)
    session = mgr.run(mgr.begin())

    assert session.test_mode is True
    assert _step_ids(session) == ["resync_banking_service"]
    step = session.steps[0]
    assert step.status is StepStatus.COMPLETED
    assert step.description == "Banking Service successfully resynced and verified."
    assert session.backup["failover"] is True
    assert 5011 in prober.bound
    assert session.state is RecoveryState.COMPLETED


def test_test_mode_off_injects_nothing(manager, prober):
    """4% edge: with test mode off, injectors never run."""
    prober.bound = {5000, 5010}
    session = manager.run(manager.begin(test_mode=False))
    assert session.steps == []


def test_begin_test_mode_overrides(manager):
    """Beast: begin(test_mode=True) switches test mode on."""
    session = manager.begin(test_mode=True)
    assert session.test_mode is True
    assert manager.status()["testMode"] is True


# ── Single-error fix ───────────────────────────────────────────────────────

def test_fix_error_after_failed_step(manager, prober):
    """Beast: an error left over from a run can be fixed on its own."""
    prober.stuck = {3001}
    session = manager.run(manager.begin())
    assert "port_conflict_3001" in [e.id for e in session.diagnostics]

    prober.stuck = set()
    fixed = manager.fix_error("port_conflict_3001")

    assert fixed.id == "port_conflict_3001"
    assert "port_conflict_3001" not in [e.id for e in session.diagnostics]
    retry = session.steps[-1]
    assert retry.id.startswith("release_port_3001_fix")
    assert retry.status is StepStatus.COMPLETED


def test_fix_error_still_failing(manager, prober):
    """4% edge: a fix that does not work raises and keeps the error."""
    prober.stuck = {3001}
    session = manager.run(manager.begin())
    with pytest.raises(RemediationFailure):
        manager.fix_error("port_conflict_3001")
    assert "port_conflict_3001" in [e.id for e in session.diagnostics]


def test_fix_unknown_error(manager):
    """4% edge: an unknown error id raises KeyError."""
    with pytest.raises(KeyError):
        manager.fix_error("does_not_exist")


def test_fix_error_during_session_conflicts(manager):
    """4% edge: fixes are refused while a session is active."""
    manager.begin()
    with pytest.raises(SessionConflict):
        manager.fix_error("port_conflict_3001")


# ── Steps ──────────────────────────────────────────────────────────────────

def test_step_cannot_go_backwards():
    """Beast: steps reject regressions and moves out of terminal states."""
    step = RecoveryStep(id="s", title="S", description="d")
    with pytest.raises(InvalidTransition):
        step.advance(10)
    step.begin()
    step.advance(60)
    step.advance(20)
    assert step.progress == 60
    step.advance(500)
    assert step.progress == 100
    step.complete()
    with pytest.raises(InvalidTransition):
        step.fail("late")
    with pytest.raises(InvalidTransition):
        step.begin()


def test_session_progress(manager):
    """Beast: session progress is the share of completed steps."""
    session = manager.begin()
    session.steps = [
        RecoveryStep(id="a", title="A", description=""),
        RecoveryStep(id="b", title="B", description=""),
    ]
    assert session.progress == 0
    session.steps[0].begin()
    session.steps[0].complete()
    assert session.progress == 50


def test_stats_refresh_publishes(manager, broadcaster):
    """Beast: refresh_stats re-probes and publishes stats-update."""
    sub = broadcaster.subscribe()
    payload = manager.refresh_stats()
    assert payload["portConflicts"] == 1
    assert payload["servicesOnline"] == 0
    event = sub.get(timeout=0)
    assert event.name == "stats-update"
    assert event.payload == payload
