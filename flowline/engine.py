"""Run state manager.

:class:`WorkflowEngine` owns every run's lifecycle: it enters steps, hands
them to executors, applies their outcomes, resolves transitions and fires
persisted retry and escalation timers.

All mutations of a run happen inside :meth:`WorkflowEngine._transaction`,
which holds the run's lock and commits one :class:`RunChangeSet`. Slow work
(agent calls, HTTP requests, child runs) happens between transactions, so
concurrent parallel branches only serialize while their state is applied.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Union

import httpx

from .collaborators import (
    AgentRunner,
    CallableAgentRunner,
    EventSink,
    LoggingEventSink,
    LoggingNotificationSink,
    NotificationSink,
)
from .conditions import Diagnostic
from .config import EngineConfig, FlowlineConfig
from .constants import DEFAULT_ERROR_NAMESPACE, OPERATOR_ROLE
from .contracts import StepBase, SubWorkflowStep, WorkflowDefinition
from .definitions import ensure_valid, load_definition
from .errors import (
    DefinitionNotFoundError,
    FlowlineError,
    InvalidRunStateError,
    InvalidTaskStateError,
    RunNotFoundError,
    StartDataValidationError,
    StepExecutionError,
    TaskNotFoundError,
    TaskOutputValidationError,
    TransitionExhaustedError,
)
from .escalation import EscalationScheduler
from .executors import (
    Completed,
    Failed,
    FannedOut,
    Finished,
    StepOutcome,
    StepRuntime,
    StepWork,
    Waiting,
    arrive_at_join,
    get_executor,
)
from .models import (
    BranchStatus,
    EngineEvent,
    Notification,
    RunFailure,
    RunStatus,
    ScheduledTimer,
    Task,
    TaskComment,
    TaskStatus,
    TaskType,
    TimerKind,
    WorkflowRun,
    utcnow,
)
from .persistence import RunChangeSet, WorkflowRepository, get_repository
from .transitions import resolve_next_step
from .utils.paths import merge_output
from .utils.retry import next_attempt
from .utils.schemas import validate_payload
from .utils.templates import load_secrets

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

INTERVENTION_ACTIONS = ("retry", "skip", "fail")


def default_http_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout)


# ----------------------------------------------------------------------
# Work scheduled to run after a transaction commits


@dataclass
class _Continue:
    run_id: str
    branch: Optional[str] = None
    retry_task_id: Optional[str] = None


@dataclass
class _Spawn:
    run_id: str
    branches: List[str]


@dataclass
class _ResumeParent:
    child_run_id: str


@dataclass
class _Notify:
    notification: Notification


@dataclass
class _Emit:
    event: EngineEvent


FollowUp = Union[_Continue, _Spawn, _ResumeParent, _Notify, _Emit]


class _Transaction:
    """Mutable view of one run while its lock is held."""

    def __init__(
        self,
        repository: WorkflowRepository,
        run: WorkflowRun,
        definition: WorkflowDefinition,
        now: datetime,
    ) -> None:
        self._repository = repository
        self.definition = definition
        self.now = now
        self.changes = RunChangeSet(run=run)
        self.followups: List[FollowUp] = []
        self.commit = True

    @property
    def run(self) -> WorkflowRun:
        return self.changes.run

    def follow(self, followup: FollowUp) -> None:
        self.followups.append(followup)

    def skip_commit(self) -> None:
        self.commit = False

    async def task(self, task_id: str) -> Task:
        task = self.changes.tasks.get(task_id)
        if task is None:
            task = await self._repository.get_task(task_id)
            if task is None or task.run_id != self.run.run_id:
                raise TaskNotFoundError(task_id)
            self.changes.add_task(task)
        return task

    async def open_tasks(self) -> List[Task]:
        stored = await self._repository.list_tasks(run_id=self.run.run_id)
        seen = set()
        tasks: List[Task] = []
        for task in stored:
            seen.add(task.task_id)
            task = self.changes.tasks.get(task.task_id, task)
            if task.is_open:
                tasks.append(self.changes.add_task(task))
        tasks.extend(
            t for t in self.changes.tasks.values() if t.task_id not in seen and t.is_open
        )
        return tasks

    async def cancel_timers(self, task_id: Optional[str] = None) -> None:
        """Cancel the run's pending timers, or only those of ``task_id``."""
        for timer in await self._repository.list_timers(run_id=self.run.run_id):
            if task_id is None or timer.task_id == task_id:
                self.changes.cancel_timer(timer.timer_id)
        if task_id is None:
            self.changes.timers = []
        else:
            self.changes.timers = [t for t in self.changes.timers if t.task_id != task_id]


class RunLocks:
    """One asyncio lock per run id, dropped once nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[run_id] = lock
        return lock


class WorkflowEngine:
    """Drive workflow runs through their definitions."""

    def __init__(
        self,
        repository: WorkflowRepository,
        agent_runner: Optional[AgentRunner] = None,
        notification_sink: Optional[NotificationSink] = None,
        event_sink: Optional[EventSink] = None,
        *,
        config: Optional[EngineConfig] = None,
        clock: Clock = utcnow,
        http_client_factory: Optional[Callable[[float], httpx.AsyncClient]] = None,
        secrets: Optional[Mapping[str, str]] = None,
        rng: Any = None,
    ) -> None:
        self._repository = repository
        self._config = config or EngineConfig()
        self._notifications = notification_sink or LoggingNotificationSink()
        self._events = event_sink or LoggingEventSink()
        self._clock = clock
        self._rng = rng
        self._locks = RunLocks()
        self._escalations = EscalationScheduler()
        self._definitions: Dict[tuple, WorkflowDefinition] = {}
        if secrets is None:
            secrets = load_secrets(self._config.secrets_env_prefix)
        self._runtime = StepRuntime(
            agent_runner=agent_runner or CallableAgentRunner(),
            http_client_factory=http_client_factory or default_http_client,
            start_child_run=self._start_child_run,
            secrets=secrets,
            default_http_timeout=self._config.default_http_timeout_seconds,
        )

    @classmethod
    def from_config(cls, config: FlowlineConfig, **kwargs: Any) -> "WorkflowEngine":
        repository = kwargs.pop("repository", None) or get_repository(config=config)
        return cls(repository, config=config.engine, **kwargs)

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    # ------------------------------------------------------------------
    # Definitions
    async def register_definition(
        self, definition: Union[WorkflowDefinition, Mapping[str, Any]]
    ) -> WorkflowDefinition:
        """Validate and store a new definition version."""
        if isinstance(definition, WorkflowDefinition):
            ensure_valid(definition)
        else:
            definition = load_definition(definition)
        await self._repository.save_definition(definition)
        logger.info(f"Registered workflow definition {definition.ref}")
        return definition

    async def get_definition(
        self, name: str, version: Optional[int] = None
    ) -> WorkflowDefinition:
        if version is not None and (name, version) in self._definitions:
            return self._definitions[(name, version)]
        definition = await self._repository.get_definition(name, version)
        if definition is None:
            raise DefinitionNotFoundError(name, version)
        self._definitions[(definition.name, definition.version)] = definition
        return definition

    async def list_definitions(self) -> List[WorkflowDefinition]:
        return await self._repository.list_definitions()

    # ------------------------------------------------------------------
    # Runs
    async def start_run(
        self,
        definition_name: str,
        triggering_data: Optional[Dict[str, Any]] = None,
        *,
        version: Optional[int] = None,
        triggered_by: Optional[str] = None,
    ) -> WorkflowRun:
        """Create a run and drive it until it completes or waits on a task."""
        run = await self._create_run(
            definition_name, triggering_data or {}, version=version, triggered_by=triggered_by
        )
        await self._drive(run.run_id)
        return await self.get_run(run.run_id)

    async def _create_run(
        self,
        definition_name: str,
        triggering_data: Dict[str, Any],
        *,
        version: Optional[int] = None,
        triggered_by: Optional[str] = None,
        run_id: Optional[str] = None,
        parent_run_id: Optional[str] = None,
        parent_task_id: Optional[str] = None,
    ) -> WorkflowRun:
        definition = await self.get_definition(definition_name, version)
        errors = validate_payload(definition.input_schema, triggering_data)
        if errors:
            raise StartDataValidationError(definition.ref, errors)
        now = self._clock()
        run = WorkflowRun(
            definition_name=definition.name,
            definition_version=definition.version,
            current_step_name=definition.start_step,
            context=dict(triggering_data),
            triggering_data=dict(triggering_data),
            triggered_by=triggered_by,
            parent_run_id=parent_run_id,
            parent_task_id=parent_task_id,
            created_at=now,
            updated_at=now,
        )
        if run_id:
            run.run_id = run_id
        await self._repository.commit(RunChangeSet(run=run))
        logger.info(f"Started run {run.run_id} of {definition.ref}")
        return run

    async def _start_child_run(
        self,
        definition_name: str,
        triggering_data: Dict[str, Any],
        *,
        version: Optional[int],
        run_id: str,
        parent_run_id: str,
        parent_task_id: str,
    ) -> WorkflowRun:
        run = await self._create_run(
            definition_name,
            triggering_data,
            version=version,
            run_id=run_id,
            parent_run_id=parent_run_id,
            parent_task_id=parent_task_id,
        )
        await self._drive(run.run_id)
        return run

    async def get_run(self, run_id: str) -> WorkflowRun:
        run = await self._repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def list_runs(
        self,
        status: Optional[RunStatus] = None,
        definition_name: Optional[str] = None,
    ) -> List[WorkflowRun]:
        return await self._repository.list_runs(status=status, definition_name=definition_name)

    async def cancel_run(self, run_id: str, cancelled_by: Optional[str] = None) -> WorkflowRun:
        """Cancel a run: skip its open tasks, drop its timers and cancel child runs."""
        async with self._transaction(run_id) as tx:
            if tx.run.is_terminal:
                raise InvalidRunStateError(f"Run {run_id} already ended ({tx.run.status.value})")
            children = [
                task.sub_run_id
                for task in await tx.open_tasks()
                if task.type == TaskType.SUB_WORKFLOW and task.sub_run_id
            ]
            tx.run.status = RunStatus.CANCELLED
            await self._close_run(tx)
            logger.info(f"Run {run_id} cancelled" + (f" by {cancelled_by}" if cancelled_by else ""))
        await self._dispatch(tx.followups)
        for child_id in children:
            child = await self._repository.get_run(child_id)
            if child is not None and not child.is_terminal:
                await self.cancel_run(child_id, cancelled_by)
        return await self.get_run(run_id)

    # ------------------------------------------------------------------
    # Tasks
    async def get_task(self, task_id: str) -> Task:
        task = await self._repository.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def list_tasks(
        self, run_id: Optional[str] = None, status: Optional[TaskStatus] = None
    ) -> List[Task]:
        return await self._repository.list_tasks(run_id=run_id, status=status)

    async def tasks_for_user(
        self, user_id: str, role: Optional[str] = None, include_closed: bool = False
    ) -> List[Task]:
        """Tasks assigned to ``user_id`` directly or through ``role``."""
        return [
            task
            for task in await self._repository.list_tasks()
            if task.is_assigned_to(user_id, role) and (include_closed or task.is_open)
        ]

    async def task_summary(self, user_id: str, role: Optional[str] = None) -> Dict[str, int]:
        """Count a user's tasks per status, plus open tasks past their deadline."""
        now = self._clock()
        summary = {status.value: 0 for status in TaskStatus}
        summary["overdue"] = 0
        for task in await self.tasks_for_user(user_id, role, include_closed=True):
            summary[task.status.value] += 1
            if task.is_open and task.deadline_at and task.deadline_at < now:
                summary["overdue"] += 1
        return summary

    async def complete_task(
        self, task_id: str, output: Dict[str, Any], user_id: Optional[str] = None
    ) -> Task:
        """Submit the result of a human task and advance the run."""
        task = await self.get_task(task_id)
        async with self._transaction(task.run_id) as tx:
            task = await tx.task(task_id)
            if tx.run.is_terminal:
                raise InvalidTaskStateError(
                    f"Run {tx.run.run_id} already ended ({tx.run.status.value})"
                )
            if not task.is_open:
                raise InvalidTaskStateError(f"Task {task_id} is already {task.status.value}")
            if task.type == TaskType.MANUAL_INTERVENTION:
                await self._resolve_intervention(tx, task, output, user_id)
            elif not task.type.is_human:
                raise InvalidTaskStateError(
                    f"Task {task_id} ({task.type.value}) is managed by the engine"
                )
            else:
                step = tx.definition.step(task.step_name)
                errors = get_executor(step).validate_output(step, output)
                if errors:
                    raise TaskOutputValidationError(task_id, errors)
                if self._cursor_step(tx.run, task.branch) != step.name:
                    raise InvalidTaskStateError(
                        f"Run {tx.run.run_id} is no longer waiting on step '{step.name}'"
                    )
                task.completed_by = user_id
                if await self._complete_step(tx, step, task, dict(output), task.branch):
                    tx.follow(_Continue(tx.run.run_id, task.branch))
            logger.info(f"Task {task_id} completed" + (f" by {user_id}" if user_id else ""))
        await self._dispatch(tx.followups)
        return await self.get_task(task_id)

    async def claim_task(self, task_id: str, user_id: str) -> Task:
        """Take a role-assigned task: it becomes the user's and moves to in_progress."""
        task = await self.get_task(task_id)
        async with self._transaction(task.run_id) as tx:
            task = await tx.task(task_id)
            if not task.type.is_human or not task.is_open:
                raise InvalidTaskStateError(f"Task {task_id} cannot be claimed")
            if task.assigned_to_user_id and task.assigned_to_user_id != user_id:
                raise InvalidTaskStateError(
                    f"Task {task_id} is assigned to {task.assigned_to_user_id}"
                )
            task.assigned_to_user_id = user_id
            task.assigned_to_role = None
            task.status = TaskStatus.IN_PROGRESS
            task.updated_at = tx.now
        return await self.get_task(task_id)

    async def delegate_task(self, task_id: str, from_user_id: str, to_user_id: str) -> Task:
        """Hand a task to another user. Deadline and escalation are kept."""
        task = await self.get_task(task_id)
        async with self._transaction(task.run_id) as tx:
            task = await tx.task(task_id)
            if not task.type.is_human or not task.is_open:
                raise InvalidTaskStateError(f"Task {task_id} cannot be delegated")
            if task.assigned_to_user_id != from_user_id:
                raise InvalidTaskStateError(f"Task {task_id} is not assigned to {from_user_id}")
            if from_user_id == to_user_id:
                raise InvalidTaskStateError(f"Task {task_id} is already assigned to {to_user_id}")
            task.assigned_to_user_id = to_user_id
            task.assigned_to_role = None
            task.is_delegated = True
            task.delegated_by = from_user_id
            task.status = TaskStatus.ASSIGNED
            task.updated_at = tx.now
            tx.changes.comments.append(
                TaskComment(
                    task_id=task_id,
                    user_id=from_user_id,
                    text=f"Task delegated from {from_user_id} to {to_user_id}.",
                    created_at=tx.now,
                )
            )
            tx.follow(
                _Notify(
                    Notification(
                        recipient=to_user_id,
                        kind="task_delegated",
                        message=f"{from_user_id} delegated task '{task.step_name}' to you",
                        run_id=task.run_id,
                        task_id=task_id,
                    )
                )
            )
            logger.info(f"Task {task_id} delegated from {from_user_id} to {to_user_id}")
        await self._dispatch(tx.followups)
        return await self.get_task(task_id)

    async def add_comment(self, task_id: str, user_id: str, text: str) -> TaskComment:
        await self.get_task(task_id)
        comment = TaskComment(task_id=task_id, user_id=user_id, text=text, created_at=self._clock())
        await self._repository.add_comment(comment)
        return comment

    async def list_comments(self, task_id: str) -> List[TaskComment]:
        await self.get_task(task_id)
        return await self._repository.list_comments(task_id)

    # ------------------------------------------------------------------
    # Timers and recovery
    async def process_due_timers(self, now: Optional[datetime] = None) -> int:
        """Fire every retry and escalation timer due at ``now``."""
        now = now or self._clock()
        timers = await self._repository.list_due_timers(now)
        for timer in timers:
            try:
                if timer.kind == TimerKind.RETRY:
                    await self._fire_retry(timer)
                else:
                    await self._fire_escalation(timer)
            except FlowlineError as exc:
                logger.error(f"Timer {timer.timer_id} for run {timer.run_id} failed: {exc}")
        return len(timers)

    async def recover(self) -> int:
        """Resume the cursors of in-progress runs after a restart.

        Cursors waiting on an open human task, a scheduled retry, an operator
        or a running child workflow are left alone. A human step whose task was
        never opened is entered again, and a finished child workflow hands its
        result back to the parent.
        """
        resumed = 0
        runs = await self._repository.list_runs(status=RunStatus.IN_PROGRESS)
        runs += await self._repository.list_runs(status=RunStatus.PENDING)
        for listed in runs:
            run = await self._repository.get_run(listed.run_id)
            if run is None or run.is_terminal:
                continue
            definition = await self.get_definition(run.definition_name, run.definition_version)
            tasks = await self._repository.list_tasks(run_id=run.run_id)
            timers = {t.task_id for t in await self._repository.list_timers(run_id=run.run_id)}
            cursors: List[Optional[str]] = []
            if run.active_parallel_branches:
                cursors = [
                    name
                    for name, cursor in run.active_parallel_branches.items()
                    if cursor.status == BranchStatus.ACTIVE
                ]
            else:
                cursors = [None]
            for branch in cursors:
                step_name = self._cursor_step(run, branch)
                if step_name is None:
                    continue
                step = definition.step(step_name)
                open_tasks = [
                    t for t in tasks if t.step_name == step_name and t.branch == branch and t.is_open
                ]
                if get_executor(step).suspends and open_tasks:
                    continue
                if any(t.task_id in timers for t in open_tasks):
                    continue
                if any(t.type == TaskType.MANUAL_INTERVENTION for t in open_tasks):
                    continue
                in_flight = [t for t in open_tasks if t.status == TaskStatus.IN_PROGRESS]
                retry_task_id = in_flight[-1].task_id if in_flight else None
                if in_flight and step.type == "sub_workflow":
                    child = await self._repository.get_run(in_flight[-1].sub_run_id)
                    if child is not None and child.is_terminal:
                        logger.info(f"Recovering run {run.run_id} from finished child {child.run_id}")
                        await self._resume_parent(child.run_id)
                        resumed += 1
                        continue
                    if child is not None:
                        continue
                logger.info(f"Recovering run {run.run_id} at step '{step_name}'")
                await self._drive(run.run_id, branch, retry_task_id)
                resumed += 1
        return resumed

    async def _fire_retry(self, timer: ScheduledTimer) -> None:
        async with self._transaction(timer.run_id) as tx:
            tx.changes.cancel_timer(timer.timer_id)
            if tx.run.is_terminal:
                return
            task = await tx.task(timer.task_id)
            if task.status != TaskStatus.PENDING:
                logger.debug(f"Ignoring stale retry timer for task {task.task_id}")
                return
            logger.info(
                f"Retrying step '{task.step_name}' of run {tx.run.run_id} "
                f"(attempt {task.retry_count + 1})"
            )
            tx.follow(_Continue(tx.run.run_id, timer.branch, retry_task_id=task.task_id))
        await self._dispatch(tx.followups)

    async def _fire_escalation(self, timer: ScheduledTimer) -> None:
        async with self._transaction(timer.run_id) as tx:
            tx.changes.cancel_timer(timer.timer_id)
            if tx.run.is_terminal:
                return
            task = await tx.task(timer.task_id)
            result = self._escalations.apply(task, timer, tx.now)
            for notification in result.notifications:
                tx.follow(_Notify(notification))
            for event in result.events:
                tx.follow(_Emit(event))
        await self._dispatch(tx.followups)

    # ------------------------------------------------------------------
    # Driving runs
    @asynccontextmanager
    async def _transaction(self, run_id: str) -> AsyncIterator[_Transaction]:
        async with self._locks.get(run_id):
            run = await self._repository.get_run(run_id)
            if run is None:
                raise RunNotFoundError(run_id)
            definition = await self.get_definition(run.definition_name, run.definition_version)
            tx = _Transaction(self._repository, run, definition, self._clock())
            yield tx
            if tx.commit:
                tx.run.updated_at = tx.now
                await self._repository.commit(tx.changes)

    async def _dispatch(self, followups: List[FollowUp]) -> None:
        for followup in followups:
            if isinstance(followup, _Notify):
                await self._notify(followup.notification)
            elif isinstance(followup, _Emit):
                await self._emit(followup.event)
        for followup in followups:
            if isinstance(followup, _Continue):
                await self._drive(followup.run_id, followup.branch, followup.retry_task_id)
            elif isinstance(followup, _Spawn):
                await asyncio.gather(
                    *(self._drive(followup.run_id, branch) for branch in followup.branches)
                )
            elif isinstance(followup, _ResumeParent):
                await self._resume_parent(followup.child_run_id)

    async def _notify(self, notification: Notification) -> None:
        try:
            await self._notifications.notify(notification)
        except Exception:
            logger.exception(f"Notification to {notification.recipient} failed")

    async def _emit(self, event: EngineEvent) -> None:
        try:
            await self._events.emit(event)
        except Exception:
            logger.exception(f"Emitting event {event.name} failed")

    async def _drive(
        self, run_id: str, branch: Optional[str] = None, retry_task_id: Optional[str] = None
    ) -> None:
        """Advance one cursor of a run until it waits, forks, joins or ends."""
        while True:
            async with self._transaction(run_id) as tx:
                work = await self._enter_step(tx, branch, retry_task_id)
            await self._dispatch(tx.followups)
            if work is None:
                return

            outcome = await get_executor(work.step).execute(work, self._runtime)

            async with self._transaction(run_id) as tx:
                proceed = await self._apply_outcome(tx, work, outcome)
            await self._dispatch(tx.followups)
            if not proceed:
                return
            retry_task_id = None

    def _cursor_step(self, run: WorkflowRun, branch: Optional[str]) -> Optional[str]:
        if branch is None:
            return run.current_step_name
        cursor = run.active_parallel_branches.get(branch)
        if cursor is None or cursor.status != BranchStatus.ACTIVE:
            return None
        return cursor.current_step

    def _scope(self, run: WorkflowRun, branch: Optional[str]) -> Dict[str, Any]:
        if branch is None:
            return dict(run.context)
        return dict(run.active_parallel_branches[branch].context)

    async def _enter_step(
        self, tx: _Transaction, branch: Optional[str], retry_task_id: Optional[str]
    ) -> Optional[StepWork]:
        run = tx.run
        step_name = None if run.is_terminal else self._cursor_step(run, branch)
        if step_name is None:
            tx.skip_commit()
            return None
        step = tx.definition.step(step_name)
        executor = get_executor(step)
        scope = self._scope(run, branch)
        run.status = RunStatus.IN_PROGRESS

        if retry_task_id:
            task = await tx.task(retry_task_id)
            if not task.is_open or task.step_name != step_name:
                logger.debug(f"Task {retry_task_id} no longer matches step '{step_name}'")
                tx.skip_commit()
                return None
            executor.reopen_task(task)
            task.updated_at = tx.now
        else:
            task = executor.open_task(step, run, scope, branch, tx.now)
            if task is not None:
                tx.changes.add_task(task)

        if executor.suspends:
            self._park(tx, task)
            return None

        logger.info(
            f"Run {run.run_id} executing step '{step_name}'"
            + (f" in branch {branch}" if branch else "")
        )
        return StepWork(
            run=run.model_copy(deep=True),
            definition=tx.definition,
            step=step,
            scope=scope,
            branch=branch,
            task=task.model_copy(deep=True) if task is not None else None,
        )

    def _park(self, tx: _Transaction, task: Task) -> None:
        timer = self._escalations.register(task, tx.now)
        if timer is not None:
            tx.changes.schedule(timer)
        if task.assigned_to_user_id:
            recipient, recipient_type = task.assigned_to_user_id, "user"
        elif task.assigned_to_role:
            recipient, recipient_type = task.assigned_to_role, "role"
        else:
            recipient = None
        if recipient:
            tx.follow(
                _Notify(
                    Notification(
                        recipient=recipient,
                        recipient_type=recipient_type,
                        kind="task_assigned",
                        message=f"Task '{task.step_name}' is waiting for you",
                        run_id=task.run_id,
                        task_id=task.task_id,
                    )
                )
            )
        logger.info(f"Run {task.run_id} waiting on {task.type.value} task {task.task_id}")

    async def _apply_outcome(
        self, tx: _Transaction, work: StepWork, outcome: StepOutcome
    ) -> bool:
        run = tx.run
        if isinstance(outcome, Waiting) or run.is_terminal:
            tx.skip_commit()
            return False
        if self._cursor_step(run, work.branch) != work.step.name:
            tx.skip_commit()
            return False
        task = None
        if work.task is not None:
            task = await tx.task(work.task.task_id)
            if task.status != TaskStatus.IN_PROGRESS:
                tx.skip_commit()
                return False

        if isinstance(outcome, Completed):
            return await self._complete_step(tx, work.step, task, outcome.output, work.branch)
        if isinstance(outcome, Failed):
            return await self._fail_step(tx, work.step, task, outcome.error, work.branch)
        if isinstance(outcome, Finished):
            status = RunStatus(outcome.status)
            run.status = status
            if status == RunStatus.FAILED:
                run.failure = RunFailure(
                    reason="end_step",
                    step_name=work.step.name,
                    message=f"Run ended at step '{work.step.name}' with status failed",
                )
            await self._close_run(tx)
            return False
        if isinstance(outcome, FannedOut):
            for cursor in outcome.branches:
                run.active_parallel_branches[cursor.name] = cursor
            run.current_step_name = work.step.join_on
            tx.follow(_Spawn(run.run_id, [cursor.name for cursor in outcome.branches]))
            logger.info(f"Run {run.run_id} forked into {len(outcome.branches)} branches")
            return False
        raise TypeError(f"Unknown step outcome {outcome!r}")

    def _merge(
        self,
        run: WorkflowRun,
        branch: Optional[str],
        output: Dict[str, Any],
        namespace: Optional[str],
    ) -> None:
        target = run.context if branch is None else run.active_parallel_branches[branch].context
        merge_output(target, output, namespace)

    async def _complete_step(
        self,
        tx: _Transaction,
        step: StepBase,
        task: Optional[Task],
        output: Dict[str, Any],
        branch: Optional[str],
    ) -> bool:
        if task is not None:
            task.status = TaskStatus.COMPLETED
            task.output = output
            task.updated_at = tx.now
            await tx.cancel_timers(task.task_id)
        self._merge(tx.run, branch, output, step.output_namespace)
        return await self._advance(tx, step, branch, output)

    async def _advance(
        self,
        tx: _Transaction,
        step: StepBase,
        branch: Optional[str],
        output: Optional[Dict[str, Any]],
    ) -> bool:
        diagnostics: List[Diagnostic] = []
        target = resolve_next_step(step, self._scope(tx.run, branch), output, diagnostics)
        if target is None:
            return await self._no_match(tx, step, branch, diagnostics)
        return await self._move(tx, branch, target)

    async def _move(self, tx: _Transaction, branch: Optional[str], target: str) -> bool:
        """Point a cursor at ``target``; returns whether that cursor keeps running."""
        run = tx.run
        if branch is None:
            run.current_step_name = target
            return True
        cursor = run.active_parallel_branches[branch]
        if target != cursor.join_step:
            cursor.current_step = target
            return True
        merged = arrive_at_join(run, tx.definition, branch)
        if merged is None:
            return False
        join = tx.definition.step(cursor.join_step)
        run.current_step_name = join.name
        if await self._advance(tx, join, None, merged):
            tx.follow(_Continue(run.run_id, None))
        return False

    async def _no_match(
        self,
        tx: _Transaction,
        step: StepBase,
        branch: Optional[str],
        diagnostics: List[Diagnostic],
    ) -> bool:
        policy = tx.definition.no_match_policy or self._config.no_match_policy
        if policy == "complete":
            if branch is not None:
                return await self._move(
                    tx, branch, tx.run.active_parallel_branches[branch].join_step
                )
            tx.run.status = RunStatus.COMPLETED
            await self._close_run(tx)
            return False
        error = TransitionExhaustedError(step.name)
        await self._fail_run(
            tx,
            error.reason,
            step.name,
            str(error),
            {"diagnostics": [asdict(d) for d in diagnostics]},
        )
        return False

    async def _fail_step(
        self,
        tx: _Transaction,
        step: StepBase,
        task: Task,
        error: StepExecutionError,
        branch: Optional[str],
    ) -> bool:
        run = tx.run
        handling = step.error_handling
        attempt = task.retry_count + 1
        delay = next_attempt(handling.retry_policy, attempt, self._rng)
        if delay is not None:
            task.retry_count += 1
            task.status = TaskStatus.PENDING
            task.output = {"last_error": error.to_payload()}
            task.updated_at = tx.now
            tx.changes.schedule(
                ScheduledTimer(
                    kind=TimerKind.RETRY,
                    run_id=run.run_id,
                    task_id=task.task_id,
                    step_name=step.name,
                    branch=branch,
                    due_at=tx.now + timedelta(seconds=delay),
                )
            )
            logger.warning(
                f"Step '{step.name}' of run {run.run_id} failed on attempt {attempt}/"
                f"{handling.retry_policy.max_attempts}: {error.message}; retrying in {delay:.2f}s"
            )
            return False

        on_failure = handling.on_failure
        details = {**error.to_payload(), "step_name": step.name, "attempts": attempt}
        error_output = {on_failure.error_output_namespace or DEFAULT_ERROR_NAMESPACE: details}
        task.status = TaskStatus.FAILED
        task.output = error_output
        task.updated_at = tx.now
        await tx.cancel_timers(task.task_id)
        logger.error(
            f"Step '{step.name}' of run {run.run_id} failed after {attempt} attempt(s): "
            f"{error.message} ({on_failure.action})"
        )

        if on_failure.action == "transition_to_step":
            self._merge(run, branch, error_output, step.output_namespace)
            return await self._move(tx, branch, on_failure.next_step)
        if on_failure.action == "continue_with_error":
            self._merge(run, branch, error_output, step.output_namespace)
            return await self._advance(tx, step, branch, error_output)
        if on_failure.action == "manual_intervention":
            self._open_intervention(tx, step, task, details, branch)
            return False
        reason = "sub_workflow_failed" if isinstance(step, SubWorkflowStep) else "step_failed"
        await self._fail_run(tx, reason, step.name, error.message, details)
        return False

    def _open_intervention(
        self,
        tx: _Transaction,
        step: StepBase,
        failed_task: Task,
        details: Dict[str, Any],
        branch: Optional[str],
    ) -> None:
        task = tx.changes.add_task(
            Task(
                run_id=tx.run.run_id,
                step_name=step.name,
                type=TaskType.MANUAL_INTERVENTION,
                status=TaskStatus.REQUIRES_ESCALATION,
                branch=branch,
                assigned_to_role=OPERATOR_ROLE,
                input={"failed_task_id": failed_task.task_id, "error": details},
                created_at=tx.now,
                updated_at=tx.now,
            )
        )
        tx.follow(
            _Notify(
                Notification(
                    recipient=OPERATOR_ROLE,
                    recipient_type="role",
                    kind="manual_intervention",
                    message=f"Step '{step.name}' of run {tx.run.run_id} needs attention: "
                    f"{details.get('message')}",
                    run_id=tx.run.run_id,
                    task_id=task.task_id,
                )
            )
        )

    async def _resolve_intervention(
        self,
        tx: _Transaction,
        task: Task,
        output: Dict[str, Any],
        user_id: Optional[str],
    ) -> None:
        action = output.get("action")
        if action not in INTERVENTION_ACTIONS:
            raise TaskOutputValidationError(
                task.task_id, [f"action must be one of {', '.join(INTERVENTION_ACTIONS)}"]
            )
        step = tx.definition.step(task.step_name)
        if self._cursor_step(tx.run, task.branch) != step.name:
            raise InvalidTaskStateError(
                f"Run {tx.run.run_id} is no longer waiting on step '{step.name}'"
            )
        task.status = TaskStatus.COMPLETED
        task.output = dict(output)
        task.completed_by = user_id
        task.updated_at = tx.now

        if action == "retry":
            tx.follow(_Continue(tx.run.run_id, task.branch))
        elif action == "skip":
            payload = {key: value for key, value in output.items() if key != "action"}
            self._merge(tx.run, task.branch, payload, step.output_namespace)
            if await self._advance(tx, step, task.branch, payload):
                tx.follow(_Continue(tx.run.run_id, task.branch))
        else:
            error = task.input.get("error") or {}
            await self._fail_run(
                tx,
                "manual_intervention_rejected",
                step.name,
                output.get("reason") or error.get("message") or "Rejected by operator",
                error,
            )

    async def _fail_run(
        self,
        tx: _Transaction,
        reason: str,
        step_name: Optional[str],
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        tx.run.status = RunStatus.FAILED
        tx.run.failure = RunFailure(
            reason=reason, step_name=step_name, message=message, details=details or {}
        )
        await self._close_run(tx)

    async def _close_run(self, tx: _Transaction) -> None:
        """Finalize a run that reached a terminal status."""
        run = tx.run
        run.ended_at = tx.now
        run.results_json = dict(run.context)
        run.active_parallel_branches = {}
        for task in await tx.open_tasks():
            task.status = TaskStatus.SKIPPED
            task.updated_at = tx.now
        await tx.cancel_timers()
        if run.parent_task_id:
            tx.follow(_ResumeParent(run.run_id))
        logger.info(f"Run {run.run_id} finished with status {run.status.value}")

    async def _resume_parent(self, child_run_id: str) -> None:
        child = await self.get_run(child_run_id)
        if not child.parent_run_id or not child.parent_task_id:
            return
        async with self._transaction(child.parent_run_id) as tx:
            task = await tx.task(child.parent_task_id)
            step = tx.definition.step(task.step_name)
            if (
                tx.run.is_terminal
                or task.status != TaskStatus.IN_PROGRESS
                or task.sub_run_id != child.run_id
                or self._cursor_step(tx.run, task.branch) != step.name
            ):
                tx.skip_commit()
                proceed = False
            elif child.status.is_success:
                output = {
                    "run_id": child.run_id,
                    "status": child.status.value,
                    "results": child.results_json or {},
                }
                proceed = await self._complete_step(tx, step, task, output, task.branch)
            else:
                error = StepExecutionError(
                    f"Sub-workflow run {child.run_id} ended with status {child.status.value}",
                    {
                        "sub_run_id": child.run_id,
                        "status": child.status.value,
                        "failure": child.failure.model_dump() if child.failure else None,
                    },
                )
                proceed = await self._fail_step(tx, step, task, error, task.branch)
        await self._dispatch(tx.followups)
        if proceed:
            await self._drive(tx.run.run_id, task.branch)
