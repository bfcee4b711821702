# runner.py
from __future__ import annotations

import platform
import tempfile
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .concurrency import ConcurrencyGroups
from .dag import JobInstance
from .errors import ExpressionError, RunNotFound
from .executor.base import StepEnvironment, StepExecutor
from .expressions import evaluate_condition, interpolate, interpolate_value
from .model import (
    JobRun,
    JobStatus,
    ResolvedContext,
    Run,
    RunStatus,
    StepDefinition,
    StepRun,
    StepStatus,
    WorkflowDefinition,
    utcnow,
)
from .scheduler import Advance, JobGraphScheduler
from .store.base import RunStore
from .store.memory import MemoryRunStore
from .ui.console import Console, get_console

POLL_INTERVAL = 0.1


@dataclass
class _RunState:
    """Mutable state of one in-flight run; guarded by `lock`."""
    run: Run
    workflow: WorkflowDefinition
    context: ResolvedContext
    scheduler: JobGraphScheduler
    lock: threading.RLock = field(default_factory=threading.RLock)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    done_event: threading.Event = field(default_factory=threading.Event)
    job_cancel: Dict[str, threading.Event] = field(default_factory=dict)
    group: Optional[str] = None


class RunCoordinator:
    """
    Drives runs of workflow definitions end to end.

    Each run gets a driver thread that walks the job graph; jobs execute on
    a worker pool, steps inside a job strictly in declared order. All
    failures are recorded as statuses on the smallest affected record (step,
    then job, then run); nothing raised by a step escapes a run.
    """

    def __init__(
        self,
        executor: StepExecutor,
        *,
        store: Optional[RunStore] = None,
        groups: Optional[ConcurrencyGroups] = None,
        max_concurrency: Optional[int] = None,
        secrets: Optional[Mapping[str, str]] = None,
        workspace: str | Path | None = None,
        console: Optional[Console] = None,
    ):
        self.executor = executor
        self.store = store if store is not None else MemoryRunStore()
        self.groups = groups if groups is not None else ConcurrencyGroups()
        self.max_concurrency = max_concurrency
        self.secrets = dict(secrets or {})
        self.workspace = Path(workspace) if workspace is not None else Path.cwd()
        self.console = console
        self._lock = threading.Lock()
        self._active: Dict[str, _RunState] = {}

    @property
    def _console(self) -> Console:
        return self.console or get_console()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self, workflow: WorkflowDefinition, context: ResolvedContext) -> Run:
        """Create a run and drive it in the background. Returns a snapshot."""
        scheduler = JobGraphScheduler(workflow, max_concurrency=self.max_concurrency)
        run = Run(
            run_id=uuid.uuid4().hex,
            workflow=workflow.name,
            context=context.to_dict(),
        )
        for key, inst in scheduler.instances.items():
            run.jobs[key] = JobRun(key=key, job_id=inst.job_id, matrix=dict(inst.matrix))

        state = _RunState(run=run, workflow=workflow, context=context, scheduler=scheduler)
        with self._lock:
            self._active[run.run_id] = state
        self.store.save(run)
        snapshot = Run.from_dict(run.to_dict())

        driver = threading.Thread(
            target=self._drive,
            args=(state,),
            name=f"flowci-run-{run.run_id[:8]}",
            daemon=True,
        )
        driver.start()
        return snapshot

    def run(self, workflow: WorkflowDefinition, context: ResolvedContext, timeout: Optional[float] = None) -> Run:
        """start() and block until the run is terminal."""
        started = self.start(workflow, context)
        return self.wait(started.run_id, timeout=timeout)

    def wait(self, run_id: str, timeout: Optional[float] = None) -> Run:
        with self._lock:
            state = self._active.get(run_id)
        if state is not None:
            state.done_event.wait(timeout)
        return self.get_run(run_id)

    def get_run(self, run_id: str) -> Run:
        run = self.store.get(run_id)
        if run is None:
            raise RunNotFound(run_id)
        return run

    def list_runs(self, **filters: Any) -> List[Run]:
        return self.store.list_runs(**filters)

    def active_runs(self) -> List[str]:
        with self._lock:
            return list(self._active)

    def cancel(self, run_id: str) -> bool:
        """
        Move a run toward `cancelled`: queued jobs are cancelled directly,
        running jobs receive a cancellation signal. Returns False if the run
        already finished.
        """
        with self._lock:
            state = self._active.get(run_id)
        if state is None:
            if self.store.get(run_id) is None:
                raise RunNotFound(run_id)
            return False

        with state.lock:
            if state.run.status.terminal:
                return False
            state.cancel_event.set()
            self._apply(state, state.scheduler.cancel_pending())
            self.store.save(state.run)
        return True

    # ------------------------------------------------------------------
    # Run driver
    # ------------------------------------------------------------------

    def _drive(self, state: _RunState) -> None:
        run = state.run
        acquired = False
        try:
            spec = state.workflow.concurrency
            if spec is not None:
                state.group = interpolate(spec.group, self._base_context(state))
                if self.groups.holder(state.group) not in (None, run.run_id):
                    self._console.print_waiting_for_group(run.run_id[:8], state.group)
                acquired = self.groups.acquire(
                    state.group,
                    run.run_id,
                    cancel=lambda: self.cancel(run.run_id),
                    cancel_in_progress=spec.cancel_in_progress,
                    abort=state.cancel_event,
                )
                if not acquired:
                    return

            with state.lock:
                if state.cancel_event.is_set():
                    return
                run.status = RunStatus.RUNNING
                run.started_at = utcnow()
                self.store.save(run)
            self._console.print_run_started(run, len(run.jobs))
            self._execute_graph(state)
        except Exception as e:
            with state.lock:
                run.cause = f"internal error: {e}"
                self._apply(state, state.scheduler.cancel_pending())
                run.status = RunStatus.FAILURE
            self._console.print_exception(e)
        finally:
            if acquired:
                self.groups.release(state.group, run.run_id)
            self._finish(state)

    def _finish(self, state: _RunState) -> None:
        run = state.run
        with state.lock:
            if not run.status.terminal:
                if not state.scheduler.done:
                    self._apply(state, state.scheduler.cancel_pending())
                run.status = state.scheduler.run_status
            run.finished_at = utcnow()
            self.store.save(run)
        with self._lock:
            self._active.pop(run.run_id, None)
        self._console.print_results(run)
        state.done_event.set()

    def _execute_graph(self, state: _RunState) -> None:
        sched = state.scheduler
        workers = self.max_concurrency or max(1, len(sched.instances))
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="flowci-job") as pool:
            while True:
                with state.lock:
                    self._start_ready(state, pool, in_flight)
                    self.store.save(state.run)
                    if not in_flight:
                        if sched.done:
                            return
                        sched.check_deadlock()

                done, _ = wait(list(in_flight), timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for fut in done:
                    key = in_flight.pop(fut)
                    outcome = fut.result()
                    with state.lock:
                        jr = state.run.jobs[key]
                        jr.status = outcome
                        jr.finished_at = utcnow()
                        self._apply(state, sched.advance(key, outcome))
                        self.store.save(state.run)
                    self._console.print_job_finished(jr)

    def _start_ready(self, state: _RunState, pool: ThreadPoolExecutor, in_flight: Dict[Future, str]) -> None:
        """Start (or condition-skip) everything the scheduler releases. Caller holds the lock."""
        sched = state.scheduler
        while True:
            ready = sched.take_ready()
            if not ready:
                return
            for inst in ready:
                jr = state.run.jobs[inst.key]
                try:
                    should_run = evaluate_condition(
                        inst.job.if_,
                        self._job_context(state, inst),
                        self._job_status_functions(state, inst),
                    )
                except ExpressionError as e:
                    jr.error = str(e)
                    jr.status = JobStatus.FAILURE
                    jr.finished_at = utcnow()
                    self._record_cause(state, f"job '{inst.key}': {e}")
                    self._apply(state, sched.advance(inst.key, JobStatus.FAILURE))
                    continue
                if not should_run:
                    jr.status = JobStatus.SKIPPED
                    jr.finished_at = utcnow()
                    self._console.print_job_skipped(inst.key, "condition is false")
                    self._apply(state, sched.advance(inst.key, JobStatus.SKIPPED))
                    continue

                jr.status = JobStatus.RUNNING
                jr.started_at = utcnow()
                state.job_cancel[inst.key] = threading.Event()
                in_flight[pool.submit(self._run_job_safely, state, inst)] = inst.key

    def _apply(self, state: _RunState, adv: Advance) -> None:
        """Mirror scheduler consequences onto the run records. Caller holds the lock."""
        now = utcnow()
        for key in adv.skipped:
            jr = state.run.jobs[key]
            jr.status = JobStatus.SKIPPED
            jr.finished_at = now
            self._console.print_job_skipped(key, "a prerequisite did not succeed")
        for key in adv.cancelled:
            jr = state.run.jobs[key]
            jr.status = JobStatus.CANCELLED
            jr.finished_at = now
        for key in adv.signal:
            event = state.job_cancel.get(key)
            if event is not None:
                event.set()

    def _record_cause(self, state: _RunState, cause: str) -> None:
        with state.lock:
            if state.run.cause is None:
                state.run.cause = cause

    def _skip_step(self, state: _RunState, record: StepRun) -> None:
        with state.lock:
            record.status = record.conclusion = StepStatus.SKIPPED

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    def _base_context(self, state: _RunState) -> Dict[str, Any]:
        ctx = state.context
        github = dict(ctx.github)
        github["run_id"] = state.run.run_id
        return {
            "github": github,
            "inputs": dict(ctx.inputs),
            "env": dict(ctx.env),
            "vars": dict(ctx.vars),
            "secrets": dict(self.secrets),
        }

    def _needs_context(self, state: _RunState, inst: JobInstance) -> Dict[str, Any]:
        needs: Dict[str, Any] = {}
        for dep in inst.job.needs:
            outputs: Dict[str, str] = {}
            for jr in state.run.job_runs(dep):
                outputs.update(jr.outputs)
            needs[dep] = {
                "result": state.scheduler.job_status(dep).value,
                "outputs": outputs,
            }
        return needs

    def _job_context(self, state: _RunState, inst: JobInstance) -> Dict[str, Any]:
        ctx = self._base_context(state)
        ctx["matrix"] = dict(inst.matrix)
        ctx["needs"] = self._needs_context(state, inst)
        ctx["runner"] = {
            "label": inst.job.runs_on,
            "os": platform.system(),
            "temp": tempfile.gettempdir(),
        }
        ctx["job"] = {"status": "success"}
        ctx["steps"] = {}
        return ctx

    def _job_status_functions(self, state: _RunState, inst: JobInstance) -> Dict[str, bool]:
        results = [state.scheduler.job_status(dep) for dep in inst.job.needs]
        cancelled = state.cancel_event.is_set()
        return {
            "success": not cancelled and all(r is JobStatus.SUCCESS for r in results),
            "failure": any(r is JobStatus.FAILURE for r in results),
            "cancelled": cancelled,
            "always": True,
        }

    # ------------------------------------------------------------------
    # Job execution (worker threads)
    # ------------------------------------------------------------------

    def _run_job_safely(self, state: _RunState, inst: JobInstance) -> JobStatus:
        try:
            return self._run_job(state, inst)
        except Exception as e:
            with state.lock:
                state.run.jobs[inst.key].error = f"{type(e).__name__}: {e}"
            self._record_cause(state, f"job '{inst.key}' crashed: {e}")
            self._console.print_exception(e)
            return JobStatus.FAILURE

    def _run_job(self, state: _RunState, inst: JobInstance) -> JobStatus:
        job = inst.job
        run = state.run
        cancel = state.job_cancel[inst.key]
        jr = run.jobs[inst.key]
        self._console.print_job_start(inst.key, job.runs_on)

        with state.lock:
            ctx = self._job_context(state, inst)

        group = None
        if job.concurrency is not None:
            group = interpolate(job.concurrency.group, ctx)
            owner = f"{run.run_id}:{inst.key}"
            if self.groups.holder(group) not in (None, owner):
                self._console.print_waiting_for_group(inst.key, group)
            if not self.groups.acquire(
                group,
                owner,
                cancel=cancel.set,
                cancel_in_progress=job.concurrency.cancel_in_progress,
                abort=cancel,
            ):
                return JobStatus.CANCELLED
        try:
            return self._run_steps(state, inst, ctx, cancel, jr)
        finally:
            if group is not None:
                self.groups.release(group, f"{run.run_id}:{inst.key}")

    def _run_steps(
        self,
        state: _RunState,
        inst: JobInstance,
        ctx: Dict[str, Any],
        cancel: threading.Event,
        jr: JobRun,
    ) -> JobStatus:
        job = inst.job
        deadline = None
        if job.timeout_minutes is not None:
            deadline = time.monotonic() + job.timeout_minutes * 60

        env: Dict[str, str] = {}
        for k, v in list(ctx["env"].items()) + list(job.env.items()):
            env[k] = interpolate(v, {**ctx, "env": env})
        ctx["env"] = env

        failed = False
        cancelled = False
        timed_out = False
        secret_values = tuple(str(v) for v in self.secrets.values() if v)

        for idx, step in enumerate(job.steps):
            record = StepRun(name=step.name, step_id=step.id)
            with state.lock:
                jr.steps.append(record)

            if cancel.is_set():
                cancelled = True
            if cancelled or timed_out:
                self._skip_step(state, record)
                continue

            ctx["job"] = {"status": "failure" if failed else "success"}
            status_fns = {
                "success": not failed,
                "failure": failed,
                "cancelled": False,
                "always": True,
            }
            try:
                should_run = evaluate_condition(step.if_, ctx, status_fns)
            except ExpressionError as e:
                should_run = True
                result = StepRun(name=step.name, step_id=step.id, status=StepStatus.FAILURE, error=str(e))
            else:
                result = None
            if not should_run:
                self._skip_step(state, record)
                continue

            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    self._skip_step(state, record)
                    continue
            timeout = step.timeout_minutes * 60 if step.timeout_minutes is not None else None
            if remaining is not None:
                timeout = remaining if timeout is None else min(timeout, remaining)

            if result is None:
                self._console.print_step(inst.key, step.name)
                result = self._execute_step(state, inst, step, ctx, env, timeout, secret_values, cancel)

            if result.status.failed and step.continue_on_error:
                result.conclusion = StepStatus.SUCCESS
            else:
                result.conclusion = result.status
            with state.lock:
                jr.steps[idx] = result
                self.store.save(state.run)
            self._console.print_step_result(inst.key, result)

            if step.id:
                ctx["steps"][step.id] = {
                    "outcome": result.status.value,
                    "conclusion": result.conclusion.value,
                    "outputs": dict(result.outputs),
                }

            if result.status is StepStatus.CANCELLED:
                cancelled = True
            elif result.conclusion.failed:
                failed = True
                if result.status is StepStatus.TIMED_OUT and deadline is not None and time.monotonic() >= deadline:
                    timed_out = True
                detail = f": {result.error}" if result.error else ""
                self._record_cause(state, f"job '{inst.key}' step '{step.name}' {result.status.value}{detail}")

        if timed_out and not failed:
            failed = True
            self._record_cause(state, f"job '{inst.key}' timed out after {job.timeout_minutes} minutes")
            with state.lock:
                jr.error = "job timed out"

        ctx["job"] = {"status": "failure" if failed else "success"}
        outputs = {}
        for name, template in job.outputs.items():
            try:
                outputs[name] = interpolate(template, ctx)
            except ExpressionError as e:
                outputs[name] = ""
                with state.lock:
                    jr.error = f"output '{name}': {e}"
        with state.lock:
            jr.outputs = outputs

        if failed:
            return JobStatus.FAILURE
        if cancelled:
            return JobStatus.CANCELLED
        return JobStatus.SUCCESS

    def _execute_step(
        self,
        state: _RunState,
        inst: JobInstance,
        step: StepDefinition,
        ctx: Dict[str, Any],
        job_env: Dict[str, str],
        timeout: Optional[float],
        secret_values: tuple,
        cancel: threading.Event,
    ) -> StepRun:
        try:
            env = dict(job_env)
            for k, v in step.env.items():
                env[k] = interpolate(v, {**ctx, "env": env})
            step_ctx = {**ctx, "env": env}
            command = interpolate(step.run, step_ctx) if step.run is not None else None
            inputs = interpolate_value(dict(step.with_), step_ctx)
            workdir = self.workspace
            if step.working_directory:
                workdir = self.workspace / interpolate(step.working_directory, step_ctx)
        except ExpressionError as e:
            return StepRun(name=step.name, step_id=step.id, status=StepStatus.FAILURE, error=str(e))

        environment = StepEnvironment(
            run_id=state.run.run_id,
            job_key=inst.key,
            command=command,
            inputs=inputs,
            env=env,
            working_directory=workdir,
            timeout=timeout,
            secrets=secret_values,
            context=step_ctx,
        )
        try:
            return self.executor.execute(step, environment, cancel)
        except Exception as e:
            return StepRun(
                name=step.name,
                step_id=step.id,
                status=StepStatus.FAILURE,
                error=f"executor error: {type(e).__name__}: {e}",
            )
