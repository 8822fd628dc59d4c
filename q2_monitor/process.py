# -*- coding: utf-8 -*-
"""Child-process handle: one step, one process group."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Dict, IO, List, Optional

from q2_monitor.errors import InfrastructureError


logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1


class ChildProcess:
    """A running external command in its own session/process group.

    Use :meth:`spawn` to create one. ``wait`` reaps the child with
    ``os.wait4`` so the kernel's resource usage for the child (and any
    descendants it waited for) is available as :attr:`rusage`.
    """

    def __init__(self, name: str, popen: subprocess.Popen) -> None:
        self.name = name
        self._popen = popen
        self.rusage: Optional[object] = None

    @classmethod
    def spawn(
        cls,
        *,
        name: str,
        argv: List[str],
        stdout: Optional[IO] = None,
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[Path] = None,
    ) -> "ChildProcess":
        """
        Launch ``argv`` with stdout and stderr sent to ``stdout``.

        Raises
        ------
        InfrastructureError
            If the OS cannot start the program (missing executable, fork
            failure, bad working directory).
        """
        full_env = None
        if env:
            full_env = os.environ.copy()
            full_env.update({k: str(v) for k, v in env.items()})
        try:
            popen = subprocess.Popen(
                argv,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                env=full_env,
                cwd=cwd,
                start_new_session=True,
            )
        except OSError as err:
            raise InfrastructureError(f"Cannot start step '{name}': {err}") from err
        logger.debug("Started %s (pid=%s)", name, popen.pid)
        return cls(name, popen)

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._popen.returncode

    def _reap(self, options: int) -> bool:
        try:
            pid, status, rusage = os.wait4(self.pid, options)
        except ChildProcessError:
            # Already reaped elsewhere (e.g. Popen.poll); keep its returncode.
            if self._popen.returncode is None:
                self._popen.returncode = self._popen.wait()
            return True
        if pid == 0:
            return False
        self.rusage = rusage
        self._popen.returncode = os.waitstatus_to_exitcode(status)
        return True

    def is_alive(self) -> bool:
        if self._popen.returncode is not None:
            return False
        return not self._reap(os.WNOHANG)

    def wait(self, timeout: Optional[float] = None) -> int:
        """
        Block until the child exits and return its exit status.

        Signals are reported as negative numbers, as ``subprocess`` does.

        Raises
        ------
        subprocess.TimeoutExpired
            If ``timeout`` elapses first; the child keeps running.
        """
        if self._popen.returncode is not None:
            return self._popen.returncode
        if timeout is None:
            self._reap(0)
            return self._popen.returncode
        deadline = time.monotonic() + timeout
        while not self._reap(os.WNOHANG):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise subprocess.TimeoutExpired(self._popen.args, timeout)
            time.sleep(min(_POLL_SECONDS, remaining))
        return self._popen.returncode

    def _signal_group(self, sig: int) -> None:
        try:
            os.killpg(self.pid, sig)
        except ProcessLookupError:
            pass

    def terminate(self, grace: float = 5.0) -> int:
        """SIGTERM the whole process group, SIGKILL after ``grace`` seconds."""
        if self.is_alive():
            self._signal_group(signal.SIGTERM)
            try:
                return self.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                logger.warning("%s ignored SIGTERM; killing process group", self.name)
                self._signal_group(signal.SIGKILL)
        return self.wait()

    def cpu_seconds(self) -> float:
        """User + system CPU seconds reported by the kernel at reap time."""
        if self.rusage is None:
            return 0.0
        return float(self.rusage.ru_utime + self.rusage.ru_stime)
