"""Task and workflow definitions plus their process-wide registries.

Registries are built once at startup and then frozen into a :class:`Definitions`
bundle. The runner only ever reads from the frozen bundle, so definition lookup
needs no locking.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, NamedTuple

from croniter import croniter  # type: ignore[import-untyped]

from queueworks.engine.errors import DefinitionError, DuplicateTaskError, DuplicateWorkflowError
from queueworks.engine.models import DefinitionKind
from queueworks.engine.retry import RetryPolicy, coerce_policy

if TYPE_CHECKING:
    from queueworks.engine.models import JobView
    from queueworks.engine.scheduler import ScheduleContext, ScheduleOutcome
    from queueworks.engine.workflow import InlineTaskCapability, JobContext, TasksCapability

TaskHandler = Callable[[dict[str, Any], "JobContext"], Any]
WorkflowHandler = Callable[
    [dict[str, Any], "JobContext", "TasksCapability", "InlineTaskCapability"],
    None,
]
JobCallback = Callable[["JobView"], None]


@dataclass(frozen=True, slots=True)
class ScheduleDecision:
    """Answer of a ``before_schedule`` hook."""

    should_schedule: bool = True
    input: Mapping[str, Any] | None = None
    wait_until: datetime | None = None


ScheduleDecisionLike = ScheduleDecision | Mapping[str, Any] | bool | None


@dataclass(frozen=True, slots=True)
class ScheduleDefinition:
    """Cron cadence attached to a task or workflow."""

    cron: str
    queue: str | None = None
    input: Mapping[str, Any] | None = None
    before_schedule: Callable[[ScheduleContext], ScheduleDecisionLike] | None = None
    after_schedule: Callable[[ScheduleContext, ScheduleOutcome], None] | None = None

    def __post_init__(self) -> None:
        if not croniter.is_valid(self.cron):
            raise DefinitionError(f"Invalid cron expression: {self.cron!r}")


@dataclass(frozen=True, slots=True)
class TaskDefinition:
    slug: str
    handler: TaskHandler
    input_schema: Mapping[str, Any] | None = None
    output_schema: Mapping[str, Any] | None = None
    retries: RetryPolicy | None = None
    schedules: tuple[ScheduleDefinition, ...] = ()
    queue: str | None = None
    timeout_seconds: float | None = None
    on_success: JobCallback | None = None
    on_fail: JobCallback | None = None
    delete_on_complete: bool = False

    @property
    def kind(self) -> DefinitionKind:
        return DefinitionKind.TASK


@dataclass(frozen=True, slots=True)
class StepDefinition:
    """One step of a static (JSON) workflow.

    ``input`` maps the job context to the step's task input; when omitted the job's
    own input is passed through. ``condition`` returning false skips the step.
    """

    step_id: str
    task: str
    input: Callable[[JobContext], Mapping[str, Any]] | None = None
    condition: Callable[[JobContext], bool] | None = None
    completes_job: bool = False
    retries: RetryPolicy | None = None


@dataclass(frozen=True, slots=True)
class WorkflowDefinition:
    slug: str
    handler: WorkflowHandler | None = None
    steps: tuple[StepDefinition, ...] = ()
    input_schema: Mapping[str, Any] | None = None
    retries: RetryPolicy | None = None
    schedules: tuple[ScheduleDefinition, ...] = ()
    queue: str | None = None
    timeout_seconds: float | None = None
    on_success: JobCallback | None = None
    on_fail: JobCallback | None = None
    delete_on_complete: bool = False

    def __post_init__(self) -> None:
        if (self.handler is None) == (not self.steps):
            raise DefinitionError(
                f"Workflow {self.slug!r} needs either a handler or a non-empty step list.",
            )
        seen: set[str] = set()
        for step in self.steps:
            if step.step_id in seen:
                raise DefinitionError(
                    f"Workflow {self.slug!r} declares step {step.step_id!r} twice.",
                )
            seen.add(step.step_id)

    @property
    def kind(self) -> DefinitionKind:
        return DefinitionKind.WORKFLOW

    @property
    def is_static(self) -> bool:
        return self.handler is None


Definition = TaskDefinition | WorkflowDefinition


class ScheduledEntry(NamedTuple):
    definition: Definition
    index: int
    schedule: ScheduleDefinition


class TaskRegistry:
    """Maps task identifiers to their definitions until frozen."""

    def __init__(self) -> None:
        self._tasks: dict[str, TaskDefinition] = {}
        self._frozen = False

    def register(  # noqa: PLR0913
        self,
        slug: str,
        handler: TaskHandler,
        *,
        input_schema: Mapping[str, Any] | None = None,
        output_schema: Mapping[str, Any] | None = None,
        retries: RetryPolicy | int | None = None,
        schedules: Iterable[ScheduleDefinition] = (),
        queue: str | None = None,
        timeout_seconds: float | None = None,
        on_success: JobCallback | None = None,
        on_fail: JobCallback | None = None,
        delete_on_complete: bool = False,
    ) -> TaskDefinition:
        definition = TaskDefinition(
            slug=slug,
            handler=handler,
            input_schema=input_schema,
            output_schema=output_schema,
            retries=coerce_policy(retries),
            schedules=tuple(schedules),
            queue=queue,
            timeout_seconds=timeout_seconds,
            on_success=on_success,
            on_fail=on_fail,
            delete_on_complete=delete_on_complete,
        )
        return self.add(definition)

    def add(self, definition: TaskDefinition) -> TaskDefinition:
        if self._frozen:
            raise DefinitionError("Task registry is frozen; register tasks at startup.")
        if not definition.slug:
            raise DefinitionError("Task identifier must be a non-empty string.")
        if definition.slug in self._tasks:
            raise DuplicateTaskError(definition.slug)
        self._tasks[definition.slug] = definition
        return definition

    def task(self, slug: str, **options: Any) -> Callable[[TaskHandler], TaskHandler]:
        """Decorator form of :meth:`register`."""

        def _decorator(handler: TaskHandler) -> TaskHandler:
            self.register(slug, handler, **options)
            return handler

        return _decorator

    def resolve(self, slug: str) -> TaskDefinition:
        try:
            return self._tasks[slug]
        except KeyError:
            raise DefinitionError(f"Unknown task: {slug!r}") from None

    def freeze(self) -> Mapping[str, TaskDefinition]:
        self._frozen = True
        return MappingProxyType(dict(self._tasks))

    def __contains__(self, slug: object) -> bool:
        return slug in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)


class WorkflowRegistry:
    """Maps workflow identifiers to their definitions until frozen."""

    def __init__(self) -> None:
        self._workflows: dict[str, WorkflowDefinition] = {}
        self._frozen = False

    def register(  # noqa: PLR0913
        self,
        slug: str,
        handler: WorkflowHandler | None = None,
        *,
        steps: Iterable[StepDefinition] = (),
        input_schema: Mapping[str, Any] | None = None,
        retries: RetryPolicy | int | None = None,
        schedules: Iterable[ScheduleDefinition] = (),
        queue: str | None = None,
        timeout_seconds: float | None = None,
        on_success: JobCallback | None = None,
        on_fail: JobCallback | None = None,
        delete_on_complete: bool = False,
    ) -> WorkflowDefinition:
        definition = WorkflowDefinition(
            slug=slug,
            handler=handler,
            steps=tuple(steps),
            input_schema=input_schema,
            retries=coerce_policy(retries),
            schedules=tuple(schedules),
            queue=queue,
            timeout_seconds=timeout_seconds,
            on_success=on_success,
            on_fail=on_fail,
            delete_on_complete=delete_on_complete,
        )
        return self.add(definition)

    def add(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        if self._frozen:
            raise DefinitionError("Workflow registry is frozen; register workflows at startup.")
        if not definition.slug:
            raise DefinitionError("Workflow identifier must be a non-empty string.")
        if definition.slug in self._workflows:
            raise DuplicateWorkflowError(definition.slug)
        self._workflows[definition.slug] = definition
        return definition

    def resolve(self, slug: str) -> WorkflowDefinition:
        try:
            return self._workflows[slug]
        except KeyError:
            raise DefinitionError(f"Unknown workflow: {slug!r}") from None

    def freeze(self) -> Mapping[str, WorkflowDefinition]:
        self._frozen = True
        return MappingProxyType(dict(self._workflows))

    def __contains__(self, slug: object) -> bool:
        return slug in self._workflows

    def __len__(self) -> int:
        return len(self._workflows)


class Definitions:
    """Frozen, read-only view over every task and workflow of the process."""

    def __init__(
        self,
        *,
        tasks: TaskRegistry | None = None,
        workflows: WorkflowRegistry | None = None,
    ) -> None:
        self._tasks = (tasks or TaskRegistry()).freeze()
        self._workflows = (workflows or WorkflowRegistry()).freeze()
        for workflow in self._workflows.values():
            for step in workflow.steps:
                if step.task not in self._tasks:
                    raise DefinitionError(
                        f"Workflow {workflow.slug!r} step {step.step_id!r} "
                        f"references unknown task {step.task!r}.",
                    )

    @classmethod
    def build(
        cls,
        *,
        tasks: Iterable[TaskDefinition] = (),
        workflows: Iterable[WorkflowDefinition] = (),
    ) -> Definitions:
        task_registry = TaskRegistry()
        for task in tasks:
            task_registry.add(task)
        workflow_registry = WorkflowRegistry()
        for workflow in workflows:
            workflow_registry.add(workflow)
        return cls(tasks=task_registry, workflows=workflow_registry)

    @property
    def tasks(self) -> Mapping[str, TaskDefinition]:
        return self._tasks

    @property
    def workflows(self) -> Mapping[str, WorkflowDefinition]:
        return self._workflows

    def resolve_task(self, slug: str) -> TaskDefinition:
        try:
            return self._tasks[slug]
        except KeyError:
            raise DefinitionError(f"Unknown task: {slug!r}") from None

    def resolve_workflow(self, slug: str) -> WorkflowDefinition:
        try:
            return self._workflows[slug]
        except KeyError:
            raise DefinitionError(f"Unknown workflow: {slug!r}") from None

    def resolve(self, *, task_slug: str | None, workflow_slug: str | None) -> Definition:
        if task_slug is not None and workflow_slug is None:
            return self.resolve_task(task_slug)
        if workflow_slug is not None and task_slug is None:
            return self.resolve_workflow(workflow_slug)
        raise DefinitionError("A job must reference exactly one task or workflow.")

    def scheduled(self) -> Iterator[ScheduledEntry]:
        for definition in (*self._tasks.values(), *self._workflows.values()):
            for index, schedule in enumerate(definition.schedules):
                yield ScheduledEntry(definition=definition, index=index, schedule=schedule)
