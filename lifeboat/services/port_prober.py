"""Port Prober — tells bound ports from free ones, and frees them.

A probe is a plain TCP connect against the probe host:

  - connection accepted  → the port is bound
  - connection refused   → the port is free
  - anything else        → PortProbeFailure (state unknown)

Releasing a port looks up the listening processes with psutil, sends
SIGTERM, waits, then SIGKILLs whatever is left.
"""

import errno
import logging
import os
import socket
import time

import psutil

import config
from lifeboat.errors import PortProbeFailure

log = logging.getLogger(__name__)

_REFUSED = {errno.ECONNREFUSED}


class PortProber:
    """Read-only TCP port probe plus best-effort port release."""

    def __init__(self, host=None, timeout=None, release_timeout=None):
        self.host = host or config.PROBE_HOST
        self.timeout = config.PROBE_TIMEOUT if timeout is None else timeout
        self.release_timeout = (
            config.PORT_RELEASE_TIMEOUT if release_timeout is None else release_timeout
        )

    def is_bound(self, port):
        """Return True if something accepts connections on *port*.

        Raises:
            PortProbeFailure: the port number is invalid or the probe hit
                an error other than "connection refused".
        """
        if not isinstance(port, int) or not 0 < port < 65536:
            raise PortProbeFailure(port, "invalid port number")

        try:
            with socket.create_connection((self.host, port), timeout=self.timeout):
                return True
        except ConnectionRefusedError:
            return False
        except socket.timeout as exc:
            raise PortProbeFailure(port, "probe timed out") from exc
        except OSError as exc:
            if exc.errno in _REFUSED:
                return False
            raise PortProbeFailure(port, exc) from exc

    def owners(self, port):
        """Return the processes listening on *port* (never this process)."""
        pids = set()
        try:
            connections = psutil.net_connections(kind="tcp")
        except psutil.AccessDenied as exc:
            log.warning("Cannot list sockets to find owners of port %d: %s", port, exc)
            return []

        for conn in connections:
            if conn.pid is None or not conn.laddr:
                continue
            if conn.laddr.port == port and conn.status == psutil.CONN_LISTEN:
                pids.add(conn.pid)
        pids.discard(os.getpid())

        procs = []
        for pid in sorted(pids):
            try:
                procs.append(psutil.Process(pid))
            except psutil.NoSuchProcess:
                continue
        return procs

    def release(self, port):
        """Terminate whatever is bound to *port*.

        Returns:
            True if the port is free afterwards, False otherwise.

        Raises:
            PortProbeFailure: the final re-probe could not determine the
                port state.
        """
        procs = self.owners(port)
        if not procs:
            log.info("No local process found listening on port %d.", port)

        for proc in procs:
            try:
                log.info("Terminating pid %d (%s) on port %d.", proc.pid, proc.name(), port)
                proc.terminate()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as exc:
                log.warning("Not allowed to terminate pid %d: %s", proc.pid, exc)

        _, alive = psutil.wait_procs(procs, timeout=self.release_timeout)
        for proc in alive:
            try:
                log.warning("pid %d ignored SIGTERM, killing.", proc.pid)
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
                log.warning("Could not kill pid %d: %s", proc.pid, exc)
        if alive:
            psutil.wait_procs(alive, timeout=self.release_timeout)

        # Re-probe until the listening socket is gone.
        deadline = time.monotonic() + self.release_timeout
        while self.is_bound(port):
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.1)
        return True


def is_port_bound(port, host=None, timeout=None):
    """Module-level shortcut for ``PortProber(host, timeout).is_bound(port)``."""
    return PortProber(host=host, timeout=timeout).is_bound(port)


def find_free_port(start, host=None, attempts=50):
    """Return the first port >= *start* that nothing is bound to.

    Used by the entry point to step past an occupied console port.
    """
    prober = PortProber(host=host)
    for port in range(start, min(start + attempts, 65536)):
        try:
            if not prober.is_bound(port):
                return port
        except PortProbeFailure as exc:
            log.warning("%s; trying the next port.", exc)
    raise PortProbeFailure(start, f"no free port in {attempts} attempts")
