"""Child-process supervision shared by the subprocess-based runners."""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from binforge.errors import RunFailed


@dataclass(frozen=True, slots=True)
class ProcessOutcome:
    returncode: int | None
    output: str
    timed_out: bool = False
    cancelled: bool = False

    @property
    def signalled(self) -> bool:
        return self.returncode is not None and self.returncode < 0


def supervise(
    argv: Sequence[str],
    *,
    cwd: Path,
    env: Mapping[str, str],
    log_path: Path,
    timeout: float | None = None,
    cancel_event: threading.Event | None = None,
    poll_interval: float = 0.1,
) -> ProcessOutcome:
    """Run ``argv`` in its own session, capturing stdout and stderr into ``log_path``.

    On timeout or cancellation the whole process group is killed.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "wb") as log:
        try:
            process = subprocess.Popen(
                list(argv),
                cwd=cwd,
                env=dict(env),
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            raise RunFailed(
                "Unable to start the build process.",
                hint="Check that the runner executable is installed.",
                context={"argv": " ".join(argv), "error": str(exc)},
            ) from exc

        timed_out = cancelled = False
        while True:
            try:
                process.wait(timeout=poll_interval)
                break
            except subprocess.TimeoutExpired:
                pass
            if cancel_event is not None and cancel_event.is_set():
                cancelled = True
            elif deadline is not None and time.monotonic() >= deadline:
                timed_out = True
            if timed_out or cancelled:
                _kill_group(process)
                process.wait()
                break

    output = log_path.read_bytes().decode("utf-8", errors="replace")
    return ProcessOutcome(
        returncode=process.returncode,
        output=output,
        timed_out=timed_out,
        cancelled=cancelled,
    )


def _kill_group(process: subprocess.Popen[bytes]) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        return


__all__ = ["ProcessOutcome", "supervise"]
