# executor/base.py
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from ..model import StepDefinition, StepRun

MASK = "***"


@dataclass
class StepEnvironment:
    """
    Everything an executor needs to run one step, already resolved.

    `command` / `inputs` have had their `${{ }}` templates substituted.
    `secrets` holds raw secret values only so that output can be masked; it
    lives for the duration of a single execute() call.
    """
    run_id: str
    job_key: str
    command: Optional[str] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    working_directory: Path = field(default_factory=Path.cwd)
    timeout: Optional[float] = None
    secrets: Tuple[str, ...] = ()
    context: Mapping[str, Any] = field(default_factory=dict)


def mask(text: str, secrets: Iterable[str]) -> str:
    """Replace every secret value occurring in `text` with `***`."""
    for value in sorted((s for s in secrets if s), key=len, reverse=True):
        text = text.replace(value, MASK)
    return text


def parse_output_file(text: str) -> Dict[str, str]:
    """
    Parse step outputs written to $FLOWCI_OUTPUT.

    Supports `name=value` lines and multi-line values:

        name<<EOF
        line one
        line two
        EOF
    """
    outputs: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        if "<<" in line and ("=" not in line or line.index("<<") < line.index("=")):
            name, delimiter = line.split("<<", 1)
            buf = []
            while i < len(lines) and lines[i] != delimiter:
                buf.append(lines[i])
                i += 1
            i += 1  # skip delimiter
            outputs[name.strip()] = "\n".join(buf)
        elif "=" in line:
            name, value = line.split("=", 1)
            outputs[name.strip()] = value
    return outputs


class StepExecutor(ABC):
    """
    Runs one step in isolation.

    Contract:
      - returns within the step's timeout, reporting `timed_out` otherwise
      - classifies the exit into success / failure / timed_out / cancelled
      - stops promptly once `cancel` is set, reporting `cancelled`
      - returns captured output and step outputs on the StepRun

    Executors never raise for step-level failures; those are StepRun
    statuses.
    """

    @abstractmethod
    def execute(
        self,
        step: StepDefinition,
        environment: StepEnvironment,
        cancel: threading.Event,
    ) -> StepRun:
        raise NotImplementedError
