"""Process launchers used to (re)start services during recovery.

``SubprocessLauncher`` spawns the real process, detached from the console:
it gets its own session and its output is discarded, so it keeps running
after the console exits.  ``SimulatedLauncher`` records launch requests
without touching the OS.
"""

import logging
import os
import subprocess
import time

log = logging.getLogger(__name__)


class ProcessLauncher:
    """Interface: start the process described by a ServiceDescriptor."""

    def launch(self, service):
        """Start *service* and return its pid (or None if unknown).

        Raises:
            OSError: the process could not be started.
        """
        raise NotImplementedError


class SubprocessLauncher(ProcessLauncher):
    """Spawn services as detached OS processes."""

    def __init__(self, base_dir=None):
        self.base_dir = base_dir

    def launch(self, service):
        if not service.launch_command:
            raise FileNotFoundError(f"No launch command for {service.name}")

        cwd = service.working_dir or self.base_dir
        if cwd:
            cwd = os.path.expanduser(str(cwd))
            if not os.path.isdir(cwd):
                raise FileNotFoundError(f"Working directory not found: {cwd}")

        env = dict(os.environ)
        env.update(service.env)
        env["PORT"] = str(service.port)

        proc = subprocess.Popen(
            list(service.launch_command),
            cwd=cwd or None,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        log.info("Started %s (pid %d).", service.name, proc.pid)
        return proc.pid


class SimulatedLauncher(ProcessLauncher):
    """Record launches instead of spawning anything.

    Args:
        on_launch: optional ``callable(service)`` run for every launch;
            tests use it to mark the service's port as bound.  Whatever
            it raises propagates to the caller.
    """

    def __init__(self, on_launch=None):
        self.on_launch = on_launch
        self.launched = []

    def launch(self, service):
        self.launched.append((service.name, time.time()))
        log.info("Simulated launch of %s on port %d.", service.name, service.port)
        if self.on_launch is not None:
            self.on_launch(service)
        return None
