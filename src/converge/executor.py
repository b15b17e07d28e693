"""Playbook execution engine.

For each play the runner resolves the target hosts, gathers facts on all of
them concurrently, then runs every host's task sequence concurrently while
keeping each host's tasks strictly ordered. Concurrency is bounded by the
``forks`` setting.

Per (host, task, loop item) the state machine is:

    Pending -> Evaluating(when) -> Skipped
                                -> Dispatching -> Ok | Changed | Failed | Unreachable

Failure handling:
- a module error fails only that (host, task); sibling hosts never notice
- under the ``strict`` policy a failed task aborts the host's remaining tasks
- a refused privilege escalation always aborts the host
- a transport failure marks the host unreachable for the rest of the play;
  every remaining task gets an ``unreachable`` result without dispatch
- nothing is retried
"""

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .channel import ChannelFactory
from .config import RunConfig
from .exceptions import (
    ConvergeError,
    HostUnreachableError,
    ModuleError,
    PermissionDeniedError,
    TaskTimeoutError,
    TemplateError,
)
from .facts import gather_facts
from .host_filter import filter_hosts
from .inventory import Inventory
from .logging import log_performance, log_scope
from .modules import ModuleContext, ModuleRegistry, default_registry
from .modules.variants import PackageManager, ServiceManager, package_manager_for, service_manager_for
from .playbook import Play, Playbook, Task
from .progress import NullProgressReporter, ProgressReporter
from .report import RunReport
from .templating import Templar
from .types import HostConfig, TaskResult, TaskStatus

logger = logging.getLogger(__name__)

GATHER_TASK = "Gathering Facts"
CANCELLED_MSG = "cancelled"
NO_LOG_OUTPUT = {"censored": "output hidden because no_log was set"}


@dataclass
class HostState:
    """Mutable per-host state for one play, owned by that host's worker.

    Attributes:
        host: Target host
        facts: Gathered facts (never modified after gathering)
        vars: Play-local variables written by set_fact and register
        unreachable: Reason the host became unreachable, if it did
        aborted: Whether the host's remaining tasks are abandoned
    """

    host: HostConfig
    facts: dict[str, Any] = field(default_factory=dict)
    vars: dict[str, Any] = field(default_factory=dict)
    unreachable: str | None = None
    aborted: bool = False
    package_manager: PackageManager | None = None
    service_manager: ServiceManager | None = None

    @property
    def active(self) -> bool:
        return self.unreachable is None and not self.aborted


class PlaybookRunner:
    """Runs playbooks against an inventory.

    Example:
        >>> runner = PlaybookRunner(inventory, RunConfig(forks=20))
        >>> report = await runner.run(load_playbook("site.yml"))
        >>> report.has_failures()
        False
    """

    def __init__(
        self,
        inventory: Inventory,
        config: RunConfig | None = None,
        registry: ModuleRegistry | None = None,
        channel_factory: ChannelFactory | None = None,
        reporter: ProgressReporter | None = None,
    ) -> None:
        self.inventory = inventory
        self.config = config or RunConfig()
        self.registry = registry or default_registry()
        self.channel_factory = channel_factory or ChannelFactory(self.config)
        self.reporter = reporter or NullProgressReporter()
        self.templar = Templar()
        self._cancel_requested = False
        self._workers: asyncio.Future | None = None
        self._semaphore: asyncio.Semaphore | None = None
        self._report: RunReport | None = None

    def cancel(self) -> None:
        """Stop dispatching new tasks and cancel in-flight ones.

        In-flight tasks resolve to ``failed`` with msg "cancelled"; the run
        still returns its report, marked cancelled.
        """
        logger.warning("Cancellation requested")
        self._cancel_requested = True
        if self._workers is not None and not self._workers.done():
            self._workers.cancel()

    async def run(
        self,
        playbook: Playbook,
        extra_vars: dict[str, Any] | None = None,
        limit: str | None = None,
        report: RunReport | None = None,
    ) -> RunReport:
        """Run every play of a playbook in order.

        Raises:
            UnknownGroupError: If a play targets a group the inventory lacks
        """
        for play in playbook.plays:
            for group in play.hosts:
                self.inventory.resolve(group)

        self.templar = Templar(playbook.base_dir)
        self._semaphore = asyncio.Semaphore(self.config.forks)
        self._cancel_requested = False
        report = report or RunReport()
        self._report = report
        try:
            with log_scope(logger, "Playbook run", level=logging.DEBUG, plays=len(playbook.plays)):
                for play in playbook.plays:
                    if self._cancel_requested or report.cancelled:
                        report.cancelled = True
                        logger.warning(f"Run cancelled; skipping play '{play.name}' and any after it")
                        break
                    await self.run_play(play, playbook, extra_vars or {}, limit)
        finally:
            await self.channel_factory.close_all()
            report.finish()
        return report

    def _target_hosts(self, play: Play, limit: str | None) -> list[HostConfig]:
        hosts: dict[str, HostConfig] = {}
        for group in play.hosts:
            for host in self.inventory.resolve(group):
                hosts.setdefault(host.name, host)
        return filter_hosts(list(hosts.values()), limit, self.inventory)

    async def run_play(
        self,
        play: Play,
        playbook: Playbook,
        extra_vars: dict[str, Any],
        limit: str | None = None,
    ) -> None:
        """Gather facts, then run the play's tasks on every target host."""
        report = self._report
        hosts = self._target_hosts(play, limit)
        self.reporter.on_play_start(play.name, [h.name for h in hosts])
        logger.info(f"Play '{play.name}': {len(hosts)} host(s), {len(play.tasks)} task(s)")
        started = time.monotonic()
        deadline = started + self.config.play_timeout if self.config.play_timeout else None

        states = [HostState(host=h) for h in hosts]
        gather = self.config.gather_facts if play.gather_facts is None else play.gather_facts

        if states and gather:
            with log_performance(logger, "Fact gathering", level=logging.DEBUG, play=play.name, hosts=len(states)):
                await self._supervise([self._gather(s) for s in states], deadline)
        if states and not self._cancel_requested and not report.cancelled:
            await self._supervise(
                [self._run_host(s, play, playbook, extra_vars) for s in states], deadline
            )

        self.reporter.on_play_complete(play.name, time.monotonic() - started, report.cancelled)

    async def _supervise(self, coros: list, deadline: float | None) -> None:
        """Run host workers concurrently, honoring cancel() and the play deadline.

        Every worker runs to completion even when a sibling raises; the first
        such error is re-raised afterwards. A cancelled gather marks the
        report cancelled instead of propagating.
        """
        self._workers = asyncio.gather(*coros, return_exceptions=True)
        try:
            timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
            done, _ = await asyncio.wait({self._workers}, timeout=timeout)
            if not done:
                logger.warning(f"Play timeout of {self.config.play_timeout}s reached; cancelling")
                self._workers.cancel()
                await asyncio.wait({self._workers})
            if self._workers.cancelled() or isinstance(self._workers.exception(), asyncio.CancelledError):
                self._report.cancelled = True
                return
            errors = [r for r in self._workers.result() if isinstance(r, BaseException)]
            if any(isinstance(e, asyncio.CancelledError) for e in errors):
                self._report.cancelled = True
            for error in errors:
                if not isinstance(error, asyncio.CancelledError):
                    raise error
        finally:
            self._workers = None

    async def _gather(self, state: HostState) -> None:
        channel = self.channel_factory.get(state.host)
        async with self._semaphore:
            try:
                facts = await gather_facts(channel, timeout=self.config.task_timeout)
            except HostUnreachableError as e:
                logger.warning(f"[{state.host.name}] unreachable during fact gathering: {e.reason}")
                state.unreachable = e.reason
                return
            except asyncio.CancelledError:
                await self._record(TaskResult(
                    host=state.host.name,
                    task=GATHER_TASK,
                    module="facts",
                    status=TaskStatus.FAILED,
                    output={"failed": True, "msg": CANCELLED_MSG},
                    error=CANCELLED_MSG,
                ))
                raise
        state.facts = facts
        self._select_variants(state)

    def _select_variants(self, state: HostState) -> None:
        state.package_manager = package_manager_for(state.facts)
        state.service_manager = service_manager_for(state.facts)

    async def _run_host(
        self, state: HostState, play: Play, playbook: Playbook, extra_vars: dict[str, Any]
    ) -> None:
        async with self._semaphore:
            if not state.facts:
                self._select_variants(state)
            for task in play.tasks:
                if state.aborted:
                    logger.info(f"[{state.host.name}] remaining tasks aborted")
                    break
                if state.unreachable is not None:
                    await self._record(self._result(
                        state, play, task, TaskStatus.UNREACHABLE,
                        {"unreachable": True, "msg": state.unreachable},
                        error=state.unreachable,
                    ))
                    continue
                await self._run_task(state, play, playbook, task, extra_vars)

    def _scope(
        self,
        state: HostState,
        play: Play,
        task: Task,
        extra_vars: dict[str, Any],
        loop_binding: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Layered variables for one (host, task, item), lowest precedence first."""
        loop_binding = loop_binding or {}
        layered = dict(play.defaults)
        layered.update(play.vars)
        layered.update(self.inventory.variables_for(state.host, extra_vars))
        for name in state.vars:
            layered.pop(name, None)
        layered.update(task.vars)
        for name in loop_binding:
            layered.pop(name, None)

        context = {
            "inventory_hostname": state.host.name,
            "group_names": sorted(state.host.groups - {"all"}),
            "play_name": play.name,
            "facts": MappingProxyType(state.facts),
            **state.vars,
            **loop_binding,
        }
        return self.templar.resolve_variables(layered, context)

    async def _run_task(
        self,
        state: HostState,
        play: Play,
        playbook: Playbook,
        task: Task,
        extra_vars: dict[str, Any],
    ) -> None:
        if task.loop is None:
            try:
                scope = self._scope(state, play, task, extra_vars)
            except ConvergeError as e:
                await self._finalize(state, play, task, self._error_result(state, play, task, e))
                return
            result, registered = await self._run_item(state, play, playbook, task, scope)
            if task.register:
                state.vars[task.register] = registered
            return

        try:
            base_scope = self._scope(state, play, task, extra_vars)
            items = self.templar.template(task.loop, base_scope)
            if not isinstance(items, list):
                raise TemplateError(f"loop must resolve to a list, got {type(items).__name__}")
        except ConvergeError as e:
            await self._finalize(state, play, task, self._error_result(state, play, task, e))
            return

        registered_items = []
        for item in items:
            try:
                scope = self._scope(state, play, task, extra_vars, {task.loop_var: item})
            except ConvergeError as e:
                result = dataclasses.replace(self._error_result(state, play, task, e), item=item)
                registered = await self._finalize(state, play, task, result)
            else:
                result, registered = await self._run_item(state, play, playbook, task, scope, item)
            registered[task.loop_var] = item
            registered_items.append(registered)
            if not state.active:
                break

        if task.register:
            state.vars[task.register] = {
                "results": registered_items,
                "changed": any(r["changed"] for r in registered_items),
                "failed": any(r["failed"] for r in registered_items),
                "skipped": all(r["skipped"] for r in registered_items),
                "msg": "All items completed",
            }

    def _result(
        self,
        state: HostState,
        play: Play,
        task: Task,
        status: TaskStatus,
        output: dict[str, Any],
        error: str | None = None,
        item: Any = None,
        duration: float = 0.0,
    ) -> TaskResult:
        return TaskResult(
            host=state.host.name,
            task=task.display_name,
            module=task.module,
            status=status,
            output=output,
            error=error,
            item=item,
            play=play.name,
            duration=duration,
        )

    def _error_result(self, state: HostState, play: Play, task: Task, error: ConvergeError) -> TaskResult:
        if isinstance(error, ModuleError):
            output = dict(error.result)
        else:
            output = {"failed": True, "msg": str(error), "error_type": type(error).__name__}
        return self._result(state, play, task, TaskStatus.FAILED, output, error=str(error))

    def _context(self, state: HostState, play: Play, playbook: Playbook, task: Task, scope: dict[str, Any]) -> ModuleContext:
        if task.become is not None:
            become = task.become
        else:
            become = play.become or state.host.become
        return ModuleContext(
            host=state.host,
            channel=self.channel_factory.get(state.host),
            facts=MappingProxyType(state.facts),
            become=become,
            timeout=task.timeout or self.config.task_timeout,
            vars=MappingProxyType(scope),
            templar=self.templar,
            base_dir=playbook.base_dir,
            package_manager=state.package_manager,
            service_manager=state.service_manager,
        )

    async def _run_item(
        self,
        state: HostState,
        play: Play,
        playbook: Playbook,
        task: Task,
        scope: dict[str, Any],
        item: Any = None,
    ) -> tuple[TaskResult, dict[str, Any]]:
        """Evaluate, dispatch and finalize one (host, task, item)."""
        started = time.monotonic()
        error: str | None = None
        try:
            if task.when is not None and not self.templar.evaluate(task.when, scope):
                result = self._result(
                    state, play, task, TaskStatus.SKIPPED,
                    {"skipped": True, "skip_reason": "Conditional result was False"},
                    item=item,
                )
                return result, await self._finalize(state, play, task, result)

            self.reporter.on_task_start(state.host.name, task.display_name)
            args = self.templar.template(task.args, scope)
            ctx = self._context(state, play, playbook, task, scope)
            timeout = task.timeout or self.config.task_timeout
            try:
                output = await asyncio.wait_for(
                    self.registry.invoke(task.module, ctx, args), timeout=timeout
                )
                status = TaskStatus.CHANGED if output.get("changed") else TaskStatus.OK
            except asyncio.TimeoutError:
                timeout_error = TaskTimeoutError(f"Task timed out after {timeout}s", timeout=timeout)
                output, status, error = dict(timeout_error.result), TaskStatus.FAILED, timeout_error.msg
            except PermissionDeniedError as e:
                state.aborted = True
                result = self._result(
                    state, play, task, TaskStatus.FAILED, dict(e.result), error=e.msg, item=item,
                    duration=time.monotonic() - started,
                )
                return result, await self._finalize(state, play, task, result)
            except ModuleError as e:
                output, status, error = dict(e.result), TaskStatus.FAILED, e.msg

            output, status, error = self._apply_overrides(task, scope, output, status, error)
            result = self._result(
                state, play, task, status, output, error=error, item=item,
                duration=time.monotonic() - started,
            )

        except HostUnreachableError as e:
            state.unreachable = e.reason
            result = self._result(
                state, play, task, TaskStatus.UNREACHABLE,
                {"unreachable": True, "msg": str(e)}, error=str(e), item=item,
                duration=time.monotonic() - started,
            )
        except ConvergeError as e:
            result = dataclasses.replace(
                self._error_result(state, play, task, e),
                item=item,
                duration=time.monotonic() - started,
            )
        except asyncio.CancelledError:
            state.aborted = True
            await self._finalize(state, play, task, self._result(
                state, play, task, TaskStatus.FAILED,
                {"failed": True, "msg": CANCELLED_MSG}, error=CANCELLED_MSG, item=item,
                duration=time.monotonic() - started,
            ))
            raise
        except Exception as e:
            logger.exception(f"[{state.host.name}] {task.display_name} failed unexpectedly: {e}")
            message = f"Execution failed: {e}"
            result = self._result(
                state, play, task, TaskStatus.FAILED,
                {"failed": True, "msg": message, "error_type": type(e).__name__},
                error=message, item=item, duration=time.monotonic() - started,
            )

        return result, await self._finalize(state, play, task, result)

    def _apply_overrides(
        self,
        task: Task,
        scope: dict[str, Any],
        output: dict[str, Any],
        status: TaskStatus,
        error: str | None,
    ) -> tuple[dict[str, Any], TaskStatus, str | None]:
        """Apply changed_when / failed_when to a module outcome."""
        if task.changed_when is None and task.failed_when is None:
            return output, status, error

        failed = status == TaskStatus.FAILED
        # module failures carry no change flag; assume the action ran
        changed = bool(output.get("changed", failed))
        view = {**output, "changed": changed, "failed": failed}
        eval_scope = {**scope, "result": view}
        if task.register:
            eval_scope[task.register] = view

        if task.changed_when is not None:
            changed = self.templar.evaluate(task.changed_when, eval_scope)
        if task.failed_when is not None:
            failed = self.templar.evaluate(task.failed_when, eval_scope)

        output = {**output, "changed": changed}
        if failed:
            output["failed"] = True
            return output, TaskStatus.FAILED, error or "failed_when condition was met"
        output.pop("failed", None)
        return output, TaskStatus.CHANGED if changed else TaskStatus.OK, None

    async def _finalize(self, state: HostState, play: Play, task: Task, result: TaskResult) -> dict[str, Any]:
        """Apply failure policy and side effects, record the result.

        Returns:
            The value ``register`` stores for this result
        """
        if result.failed:
            if task.ignore_errors and result.output.get("error_type") != "PermissionDenied":
                result.ignored = True
            elif result.output.get("error_type") == "PermissionDenied":
                state.aborted = True
            elif self._policy(play) == "strict":
                state.aborted = True
        elif result.status in (TaskStatus.OK, TaskStatus.CHANGED) and task.module == "set_fact":
            state.vars.update(result.output.get("set_vars", {}))

        registered = result.registered()
        if task.no_log:
            result.output = dict(NO_LOG_OUTPUT)
        await self._record(result)
        return registered

    def _policy(self, play: Play) -> str:
        return play.error_policy or self.config.error_policy

    async def _record(self, result: TaskResult) -> None:
        await self._report.add(result)
        self.reporter.on_task_result(result)
        log = logger.warning if result.failed or result.unreachable else logger.info
        suffix = f" item={result.item!r}" if result.item is not None else ""
        log(f"[{result.host}] {result.task}{suffix}: {result.status.value}")
