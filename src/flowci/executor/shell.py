# executor/shell.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import List, Optional

from ..model import StepDefinition, StepKind, StepRun, StepStatus
from .actions import ActionRegistry
from .base import StepEnvironment, StepExecutor, mask, parse_output_file

MAX_OUTPUT = 64 * 1024  # keep the tail so huge logs stay storable
KILL_GRACE = 5.0


def _shell_command(shell: Optional[str], script: Path) -> List[str]:
    if shell == "python":
        return [sys.executable, str(script)]
    if shell == "sh" or (shell is None and shutil.which("bash") is None):
        return ["sh", "-e", str(script)]
    return ["bash", "--noprofile", "--norc", "-eo", "pipefail", str(script)]


def _terminate(proc: subprocess.Popen) -> None:
    """SIGTERM the step's process group, SIGKILL it after a grace period."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGTERM)
        else:
            proc.terminate()
        proc.wait(timeout=KILL_GRACE)
    except subprocess.TimeoutExpired:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
        proc.wait()
    except ProcessLookupError:
        pass


class ShellStepExecutor(StepExecutor):
    """
    Runs `run:` steps as local subprocesses and `uses:` steps through an
    ActionRegistry.

    Each command is written to a script file and executed in its own process
    group so that cancellation and timeouts take down the whole tree.
    Combined stdout/stderr is captured (tail-truncated) with secrets masked.
    Steps publish outputs by appending `name=value` lines to $FLOWCI_OUTPUT.
    """

    def __init__(
        self,
        actions: Optional[ActionRegistry] = None,
        *,
        inherit_env: bool = True,
        poll_interval: float = 0.05,
    ):
        self.actions = actions if actions is not None else ActionRegistry()
        self.inherit_env = inherit_env
        self.poll_interval = poll_interval

    def execute(
        self,
        step: StepDefinition,
        environment: StepEnvironment,
        cancel: threading.Event,
    ) -> StepRun:
        if step.kind is StepKind.USES:
            return self.actions.run(step, environment, cancel)
        return self._run_command(step, environment, cancel)

    def _run_command(self, step: StepDefinition, environment: StepEnvironment, cancel: threading.Event) -> StepRun:
        result = StepRun(name=step.name, step_id=step.id)
        started = time.monotonic()

        cwd = environment.working_directory
        if not cwd.is_dir():
            result.status = StepStatus.FAILURE
            result.error = f"working directory not found: {cwd}"
            result.output = result.error + "\n"
            return result

        with tempfile.TemporaryDirectory(prefix="flowci-step-") as tmp:
            tmp_path = Path(tmp)
            script = tmp_path / ("step.py" if step.shell == "python" else "step.sh")
            script.write_text(environment.command or "", encoding="utf-8")
            output_file = tmp_path / "output"
            output_file.touch()
            log_file = tmp_path / "log"

            env = os.environ.copy() if self.inherit_env else {"PATH": os.environ.get("PATH", "")}
            env.update(environment.env)
            env.update({
                "CI": "true",
                "FLOWCI": "true",
                "FLOWCI_RUN_ID": environment.run_id,
                "FLOWCI_JOB": environment.job_key,
                "FLOWCI_OUTPUT": str(output_file),
                "FLOWCI_WORKSPACE": str(cwd),
            })

            with log_file.open("w", encoding="utf-8") as log:
                try:
                    proc = subprocess.Popen(
                        _shell_command(step.shell, script),
                        cwd=str(cwd),
                        env=env,
                        stdout=log,
                        stderr=subprocess.STDOUT,
                        start_new_session=True,
                    )
                except FileNotFoundError as e:
                    result.status = StepStatus.FAILURE
                    result.error = f"shell not found: {e.filename}"
                    result.output = result.error + "\n"
                    return result

                deadline = None if environment.timeout is None else started + environment.timeout
                status = None
                while proc.poll() is None:
                    if cancel.is_set():
                        _terminate(proc)
                        status = StepStatus.CANCELLED
                        break
                    if deadline is not None and time.monotonic() >= deadline:
                        _terminate(proc)
                        status = StepStatus.TIMED_OUT
                        break
                    time.sleep(self.poll_interval)

            output = log_file.read_text(encoding="utf-8", errors="replace")
            outputs = parse_output_file(output_file.read_text(encoding="utf-8", errors="replace"))

        result.exit_code = proc.returncode
        if status is StepStatus.TIMED_OUT:
            result.error = f"timed out after {environment.timeout:.0f}s"
            output += f"Error: {result.error}\n"
        elif status is None:
            status = StepStatus.SUCCESS if proc.returncode == 0 else StepStatus.FAILURE
            if status is StepStatus.FAILURE:
                result.error = f"process exited with code {proc.returncode}"
        result.status = status

        if len(output) > MAX_OUTPUT:
            output = output[-MAX_OUTPUT:]
        result.output = mask(output, environment.secrets)
        result.outputs = {k: mask(v, environment.secrets) for k, v in outputs.items()}
        result.duration = time.monotonic() - started
        return result
