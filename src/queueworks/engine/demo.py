"""Local demo definitions for CLI smoke runs and integration tests.

Load with ``--definitions queueworks.engine.demo:DEFINITIONS``.
"""

from __future__ import annotations

from typing import Any

from queueworks.engine.definitions import (
    Definitions,
    ScheduleDefinition,
    StepDefinition,
    TaskRegistry,
    WorkflowRegistry,
)
from queueworks.engine.retry import exponential
from queueworks.engine.workflow import InlineTaskCapability, JobContext, TasksCapability


def echo(task_input: dict[str, Any], _: JobContext) -> dict[str, Any]:
    """Return the input unchanged."""

    return {"output": task_input}


def fail(task_input: dict[str, Any], _: JobContext) -> dict[str, Any]:
    return {"state": "failed", "error_message": str(task_input.get("reason", "demo failure"))}


def shout(task_input: dict[str, Any], _: JobContext) -> dict[str, Any]:
    return {"output": {"msg": str(task_input.get("msg", "")).upper()}}


def greet_workflow(
    workflow_input: dict[str, Any],
    _: JobContext,
    tasks: TasksCapability,
    inline_task: InlineTaskCapability,
) -> None:
    echoed = tasks.invoke("echo", "echo", input=workflow_input)
    loud = tasks.invoke("shout", "shout", input=echoed)
    inline_task(
        "summary",
        lambda task_input, _ctx: {"output": {"length": len(task_input["msg"])}},
        input=loud,
    )


def _build() -> Definitions:
    tasks = TaskRegistry()
    tasks.register("echo", echo, schedules=(ScheduleDefinition(cron="0 * * * *"),))
    tasks.register("shout", shout)
    tasks.register("fail", fail, retries=exponential(3, 5.0, max_delay_seconds=60.0))

    workflows = WorkflowRegistry()
    workflows.register("greet", greet_workflow)
    workflows.register(
        "echo-then-shout",
        steps=(
            StepDefinition(step_id="first", task="echo"),
            StepDefinition(
                step_id="second",
                task="shout",
                input=lambda ctx: ctx.output_of("first"),
                completes_job=True,
            ),
        ),
    )
    return Definitions(tasks=tasks, workflows=workflows)


DEFINITIONS = _build()
