"""A runner that executes a Python callable instead of a shell script.

Intended for tests: the callable receives an :class:`InProcessContext` with the
request, the resolved environment and an ``emit`` function standing in for the
script's output stream. Returning ``None`` or ``0`` means success.
"""

from __future__ import annotations

import threading
import traceback
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from binforge.runners.base import MountSpec, RunRequest
from binforge.runners.process import ProcessOutcome


@dataclass(slots=True)
class InProcessContext:
    request: RunRequest
    environment: Mapping[str, str]
    stop: threading.Event
    lines: list[str] = field(default_factory=list)

    @property
    def prefix(self) -> Path:
        return self.request.workspace.prefix

    def emit(self, line: str) -> None:
        self.lines.append(line)


BuildCallable = Callable[[InProcessContext], int | None]


@dataclass(slots=True)
class InProcessRunner:
    build: BuildCallable
    name: str = "in-process"
    calls: list[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def mount_plan(self, request: RunRequest) -> tuple[MountSpec, ...]:
        root = request.workspace.root
        return (MountSpec(source=root, target=str(root)),)

    def sandbox_path(self, request: RunRequest, path: Path) -> str:
        return str(path)

    def prepare(self, request: RunRequest) -> None:
        with self._lock:
            self.calls.append(str(request.platform))

    def execute(self, request: RunRequest, *, environment: Mapping[str, str]) -> ProcessOutcome:
        context = InProcessContext(request=request, environment=environment, stop=threading.Event())
        result: list[int | None] = []

        def target() -> None:
            try:
                result.append(self.build(context))
            except Exception:  # noqa: BLE001 - a failing callable is a failing script
                context.emit(traceback.format_exc())
                result.append(1)

        worker = threading.Thread(target=target, name=f"inprocess-{request.platform}", daemon=True)
        worker.start()
        cancelled = timed_out = False
        waited = 0.0
        while worker.is_alive():
            worker.join(timeout=0.05)
            waited += 0.05
            if request.cancel_event is not None and request.cancel_event.is_set():
                cancelled = True
            elif request.timeout is not None and waited >= request.timeout:
                timed_out = True
            if cancelled or timed_out:
                context.stop.set()
                break

        output = "".join(line if line.endswith("\n") else line + "\n" for line in context.lines)
        request.log_path.write_text(output, encoding="utf-8")
        if timed_out or cancelled:
            return ProcessOutcome(returncode=None, output=output, timed_out=timed_out, cancelled=cancelled)
        returncode = result[0] if result and result[0] is not None else 0
        return ProcessOutcome(returncode=returncode, output=output)

    def cleanup(self, request: RunRequest) -> None:
        pass
