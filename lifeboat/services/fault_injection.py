"""Named fault injectors for exercising the recovery path.

An injector is a callable ``injector(engine) -> iterable[DiagnosticError]``
that the DiagnosticsEngine calls after its real checks.  The manager only
hands injectors to the engine while test mode is enabled, so production
sweeps never see them.
"""

import logging

from lifeboat.services.diagnostics import (
    DiagnosticError,
    ErrorKind,
    RemediationAction,
    Severity,
)

log = logging.getLogger(__name__)


def dependency_sync_lag(engine):
    """Report the sync dependency as lagging, but only if it is running."""
    sync = engine.registry.dependency_sync
    if sync is None:
        return []

    svc = engine.registry.find(sync.service)
    if svc is None:
        log.warning("Sync dependency %r is not in the registry.", sync.service)
        return []
    if engine.probe(svc.port) is not True:
        log.warning("%s is not running on port %d, skipping sync check.", svc.name, svc.port)
        return []

    return [DiagnosticError(
        id=f"dependency_sync_lag_{svc.slug}",
        kind=ErrorKind.BLOCKCHAIN_SYNC_LAG,
        severity=Severity.MEDIUM,
        action=RemediationAction.RESYNC_DEPENDENCY,
        title=f"{svc.name} Out of Sync",
        description=(
            f"{svc.name} is behind the current block height. "
            "This may cause transaction failures."
        ),
        context={"service": svc},
    )]


dependency_sync_lag.name = "dependency-sync-lag"

INJECTORS = {
    dependency_sync_lag.name: dependency_sync_lag,
}


def resolve(names):
    """Return the injectors registered under *names*, skipping unknown ones."""
    found = []
    for name in names:
        injector = INJECTORS.get(name)
        if injector is None:
            log.warning("Unknown fault injector %r ignored.", name)
            continue
        found.append(injector)
    return found
