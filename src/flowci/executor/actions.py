# executor/actions.py
"""
Registry of `uses:` actions.

An action is a plain Python callable:

    @registry.action("acme/greet")
    def greet(inputs, ctx):
        ctx.log(f"hello {inputs['who']}")
        return {"greeting": "done"}

It returns an outputs mapping (or None) and signals failure by raising
StepFailure. A version suffix in the reference (`acme/greet@v2`) is ignored.
"""
from __future__ import annotations

import io
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from ..errors import StepFailure, TimeoutFailure
from ..git_facts.git import clone_or_update, head_sha
from ..model import StepDefinition, StepRun, StepStatus
from .base import StepEnvironment, mask

ActionFn = Callable[[Dict[str, Any], "ActionContext"], Optional[Mapping[str, Any]]]


@dataclass
class ActionContext:
    """What an action may touch while it runs."""
    env: Dict[str, str]
    working_directory: Path
    cancel: threading.Event
    context: Mapping[str, Any] = field(default_factory=dict)
    _buffer: io.StringIO = field(default_factory=io.StringIO)

    def log(self, text: str) -> None:
        self._buffer.write(text if text.endswith("\n") else text + "\n")

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    def getvalue(self) -> str:
        return self._buffer.getvalue()


def action_name(reference: str) -> str:
    return reference.split("@", 1)[0]


class ActionRegistry:
    def __init__(self, *, builtins: bool = True):
        self._actions: Dict[str, ActionFn] = {}
        if builtins:
            register_builtins(self)

    def register(self, name: str, fn: ActionFn) -> None:
        self._actions[name] = fn

    def action(self, name: str) -> Callable[[ActionFn], ActionFn]:
        def deco(fn: ActionFn) -> ActionFn:
            self.register(name, fn)
            return fn
        return deco

    def __contains__(self, reference: str) -> bool:
        return action_name(reference) in self._actions

    def names(self) -> list[str]:
        return sorted(self._actions)

    def run(self, step: StepDefinition, environment: StepEnvironment, cancel: threading.Event) -> StepRun:
        started = time.monotonic()
        result = StepRun(name=step.name, step_id=step.id)
        fn = self._actions.get(action_name(step.uses or ""))
        if fn is None:
            result.status = StepStatus.FAILURE
            result.error = f"unknown action '{step.uses}' (known: {self.names()})"
            result.output = result.error + "\n"
            return result

        stop = threading.Event()
        ctx = ActionContext(
            env=dict(environment.env),
            working_directory=environment.working_directory,
            cancel=stop,
            context=environment.context,
        )
        outcome: Dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["outputs"] = fn(dict(environment.inputs), ctx) or {}
            except Exception as e:  # reported as the step status
                outcome["error"] = e

        worker = threading.Thread(target=target, name=f"action:{step.uses}", daemon=True)
        worker.start()
        deadline = None if environment.timeout is None else started + environment.timeout
        while worker.is_alive():
            if cancel.is_set():
                stop.set()
                break
            if deadline is not None and time.monotonic() >= deadline:
                outcome.setdefault("error", TimeoutFailure(f"timed out after {environment.timeout:.0f}s"))
                stop.set()
                break
            worker.join(0.05)

        err = outcome.get("error")
        if isinstance(err, TimeoutFailure):
            result.status = StepStatus.TIMED_OUT
            result.error = str(err)
        elif cancel.is_set() and "outputs" not in outcome:
            result.status = StepStatus.CANCELLED
        elif isinstance(err, StepFailure):
            result.status = StepStatus.FAILURE
            result.error = str(err)
            result.exit_code = err.exit_code
            result.outputs = {k: str(v) for k, v in err.outputs.items()}
        elif err is not None:
            result.status = StepStatus.FAILURE
            result.error = f"{type(err).__name__}: {err}"
        else:
            result.status = StepStatus.SUCCESS
            result.exit_code = 0
            result.outputs = {k: str(v) for k, v in dict(outcome.get("outputs") or {}).items()}

        text = ctx.getvalue()
        if result.error:
            text += f"Error: {result.error}\n"
        result.output = mask(text, environment.secrets)
        result.outputs = {k: mask(v, environment.secrets) for k, v in result.outputs.items()}
        result.duration = time.monotonic() - started
        return result


# ----------------------------------------------------------------------
# Built-in actions
# ----------------------------------------------------------------------

def _echo(inputs: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    message = str(inputs.get("message", ""))
    ctx.log(message)
    return {"message": message}


def _set_output(inputs: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    for k, v in inputs.items():
        ctx.log(f"{k}={v}")
    return dict(inputs)


def _fail(inputs: Dict[str, Any], ctx: ActionContext) -> None:
    raise StepFailure(str(inputs.get("message", "failed by flowci/fail")), exit_code=int(inputs.get("exit-code", 1)))


def _sleep(inputs: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    seconds = float(inputs.get("seconds", 1))
    ctx.log(f"sleeping {seconds}s")
    ctx.cancel.wait(seconds)
    return {}


def _checkout(inputs: Dict[str, Any], ctx: ActionContext) -> Dict[str, Any]:
    repository = inputs.get("repository")
    if not repository:
        raise StepFailure("flowci/checkout needs a 'repository' input")
    ref = str(inputs.get("ref") or "")
    name = str(repository).rstrip("/").split("/")[-1].replace(".git", "")
    dest = ctx.working_directory / str(inputs.get("path") or name)
    try:
        clone_or_update(str(repository), ref, dest)
        sha = head_sha(cwd=dest)
    except RuntimeError as e:
        raise StepFailure(str(e)) from e
    ctx.log(f"checked out {repository}@{ref or 'default'} -> {dest} ({sha[:12]})")
    return {"path": str(dest), "sha": sha}


def register_builtins(registry: ActionRegistry) -> None:
    registry.register("flowci/echo", _echo)
    registry.register("flowci/set-output", _set_output)
    registry.register("flowci/fail", _fail)
    registry.register("flowci/sleep", _sleep)
    registry.register("flowci/checkout", _checkout)
