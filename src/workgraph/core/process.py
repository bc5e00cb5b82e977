"""OS process control: the one place that knows about sessions and signals."""

import logging
import os
import signal
import subprocess
from pathlib import Path

from workgraph.errors import ProcessError

logger = logging.getLogger(__name__)

TERMINATE = "terminate"
KILL = "kill"

_SIGNALS = {TERMINATE: signal.SIGTERM, KILL: signal.SIGKILL}

# Popen objects for children of this process, keyed by PID, so they get reaped
_active_processes: dict[int, subprocess.Popen] = {}


class ProcessControl:
    """Spawn, signal and check on processes. Subclass to substitute a platform."""

    def spawn(
        self,
        argv: list[str],
        env: dict[str, str],
        workdir: Path | None,
        log_path: Path,
    ) -> int:
        raise NotImplementedError

    def signal(self, pid: int, kind: str) -> bool:
        """Deliver ``kind`` to ``pid``. Returns False if the process was already gone."""
        raise NotImplementedError

    def is_alive(self, pid: int) -> bool:
        raise NotImplementedError


class PosixProcessControl(ProcessControl):
    def spawn(self, argv, env, workdir, log_path):
        """Start ``argv`` detached in its own session, output appended to ``log_path``."""
        try:
            with open(log_path, "a") as f:
                proc = subprocess.Popen(
                    argv,
                    cwd=str(workdir) if workdir else None,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=f,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            raise ProcessError(f"Failed to spawn {argv[0]}: {e}") from e
        _active_processes[proc.pid] = proc
        return proc.pid

    def signal(self, pid, kind):
        sig = _SIGNALS[kind]
        try:
            # the agent leads its own session, so its group id is its pid
            os.killpg(pid, sig)
        except ProcessLookupError:
            try:
                os.kill(pid, sig)
            except ProcessLookupError:
                return False
            except PermissionError as e:
                raise ProcessError(f"Not permitted to signal PID {pid}: {e}") from e
        except PermissionError as e:
            raise ProcessError(f"Not permitted to signal PID {pid}: {e}") from e
        return True

    def is_alive(self, pid):
        proc = _active_processes.get(pid)
        if proc is not None:
            if proc.poll() is None:
                return True
            _active_processes.pop(pid, None)
            return False
        try:
            os.kill(pid, 0)
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            return True  # Process exists but we can't signal it


def wait_for_exit(pid: int) -> int | None:
    """Block until a child spawned by this process exits. Returns its exit code."""
    proc = _active_processes.pop(pid, None)
    if proc is None:
        return None
    return proc.wait()
