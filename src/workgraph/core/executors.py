"""Executor configuration: how to turn a task into an agent command line."""

import json
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path

from workgraph.db.engine import WorkGraph
from workgraph.db.models import Status, Task
from workgraph.errors import NotFoundError, StorageError

CLAUDE_PROMPT_TEMPLATE = """# Task Assignment

You are an AI agent working on a task in a workgraph project.

## Your Task
- **ID:** {{task_id}}
- **Title:** {{task_title}}
- **Description:** {{task_description}}

## Context from Dependencies
{{task_context}}

## Required Workflow

You MUST use these commands to track your work:

1. **Log progress** as you work (helps recovery if interrupted):
   ```bash
   wg log {{task_id}} "Starting implementation..."
   ```

2. **Record artifacts** if you create/modify files:
   ```bash
   wg artifact {{task_id}} path/to/file
   ```

3. **Complete the task** when done:
   ```bash
   wg done {{task_id}}
   ```

4. **Mark as failed** if you cannot complete:
   ```bash
   wg fail {{task_id}} --reason "Specific reason why"
   ```

## Important
- Run `wg done` BEFORE you finish responding
- If the task description is unclear, do your best interpretation
- Focus only on this specific task
- To create follow-up work: `wg add "title" --blocked-by {{task_id}}`

Begin working on the task now.
"""


@dataclass
class TemplateVars:
    task_id: str
    task_title: str
    task_description: str
    task_context: str
    working_dir: str

    @classmethod
    def from_task(cls, graph: WorkGraph, task: Task, working_dir: Path) -> "TemplateVars":
        return cls(
            task_id=task.id,
            task_title=task.title,
            task_description=task.description or "",
            task_context=build_task_context(graph, task),
            working_dir=str(working_dir),
        )

    def apply(self, text: str) -> str:
        for name in ("task_id", "task_title", "task_description", "task_context", "working_dir"):
            text = text.replace("{{" + name + "}}", getattr(self, name))
        return text


def build_task_context(graph: WorkGraph, task: Task) -> str:
    """Artifacts produced by the task's completed blockers, one line per blocker."""
    lines = []
    for blocker_id in task.blocked_by:
        blocker = graph.get_task(blocker_id)
        if blocker is None or blocker.status != Status.DONE or not blocker.artifacts:
            continue
        lines.append(f"From {blocker_id}: artifacts: {', '.join(blocker.artifacts)}")
    return "\n".join(lines) if lines else "No context from dependencies"


def _toml_str(value: str) -> str:
    """A TOML basic string. JSON escapes every control character TOML forbids except DEL."""
    return json.dumps(value, ensure_ascii=False).replace("\x7f", "\\u007F")


@dataclass
class ExecutorConfig:
    name: str
    executor_type: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    prompt_template: str | None = None
    working_dir: str | None = None
    timeout: str | None = None

    def apply(self, template_vars: TemplateVars) -> "ExecutorConfig":
        """A copy with every placeholder substituted."""
        return replace(
            self,
            command=template_vars.apply(self.command),
            args=[template_vars.apply(a) for a in self.args],
            env={k: template_vars.apply(v) for k, v in self.env.items()},
            prompt_template=(
                template_vars.apply(self.prompt_template) if self.prompt_template else None
            ),
            working_dir=template_vars.apply(self.working_dir) if self.working_dir else None,
        )

    def command_line(self, task: Task, model: str | None = None) -> tuple[list[str], bool]:
        """The argv to run, and whether the prompt file should be fed on stdin."""
        if self.executor_type == "shell":
            return ["bash", "-c", task.exec or ""], False
        argv = [self.command, *self.args]
        if self.executor_type == "claude" and model:
            argv += ["--model", model]
        return argv, self.prompt_template is not None

    @classmethod
    def from_toml(cls, name: str, data: dict) -> "ExecutorConfig":
        section = data.get("executor", {})
        template = section.get("prompt_template")
        if isinstance(template, dict):
            template = template.get("template")
        timeout = section.get("timeout")
        return cls(
            name=name,
            executor_type=section.get("type", name),
            command=section["command"],
            args=[str(a) for a in section.get("args", [])],
            env={str(k): str(v) for k, v in section.get("env", {}).items()},
            prompt_template=template,
            working_dir=section.get("working_dir"),
            timeout=str(timeout) if timeout is not None else None,
        )

    def to_toml(self) -> str:
        """Render as TOML."""
        lines = [
            "[executor]",
            f"type = {_toml_str(self.executor_type)}",
            f"command = {_toml_str(self.command)}",
            f"args = [{', '.join(_toml_str(a) for a in self.args)}]",
        ]
        if self.working_dir:
            lines.append(f"working_dir = {_toml_str(self.working_dir)}")
        if self.timeout:
            lines.append(f"timeout = {_toml_str(self.timeout)}")
        if self.env:
            lines += ["", "[executor.env]"]
            lines += [f"{_toml_str(k)} = {_toml_str(v)}" for k, v in self.env.items()]
        if self.prompt_template:
            lines += ["", "[executor.prompt_template]", f"template = {_toml_str(self.prompt_template)}"]
        return "\n".join(lines) + "\n"


BUILTIN_EXECUTORS = {
    "claude": ExecutorConfig(
        name="claude",
        executor_type="claude",
        command="claude",
        args=["--print", "--verbose", "--permission-mode", "bypassPermissions",
              "--output-format", "stream-json"],
        prompt_template=CLAUDE_PROMPT_TEMPLATE,
        working_dir="{{working_dir}}",
    ),
    "shell": ExecutorConfig(
        name="shell",
        executor_type="shell",
        command="bash",
        args=["-c", "{{task_context}}"],
        env={"TASK_ID": "{{task_id}}", "TASK_TITLE": "{{task_title}}"},
    ),
    "default": ExecutorConfig(
        name="default",
        executor_type="default",
        command="echo",
        args=["Task: {{task_id}}"],
    ),
}


def executors_dir(wg_dir: Path) -> Path:
    return Path(wg_dir) / "executors"


def load_executor(wg_dir: Path, name: str) -> ExecutorConfig:
    """Load ``executors/<name>.toml``, falling back to the built-in definitions."""
    path = executors_dir(wg_dir) / f"{name}.toml"
    if path.exists():
        try:
            with path.open("rb") as f:
                return ExecutorConfig.from_toml(name, tomllib.load(f))
        except (OSError, tomllib.TOMLDecodeError, KeyError) as e:
            raise StorageError(f"Failed to load executor config {path}: {e}") from e
    if name in BUILTIN_EXECUTORS:
        return BUILTIN_EXECUTORS[name]
    raise NotFoundError(
        f"Unknown executor '{name}'. Available: {', '.join(list_executors(wg_dir))}"
    )


def list_executors(wg_dir: Path) -> list[str]:
    names = set(BUILTIN_EXECUTORS)
    directory = executors_dir(wg_dir)
    if directory.is_dir():
        names.update(p.stem for p in directory.glob("*.toml"))
    return sorted(names)


def init_executors(wg_dir: Path) -> list[Path]:
    """Write the built-in executor configs that don't exist yet."""
    directory = executors_dir(wg_dir)
    directory.mkdir(parents=True, exist_ok=True)
    written = []
    for name, config in BUILTIN_EXECUTORS.items():
        path = directory / f"{name}.toml"
        if path.exists():
            continue
        path.write_text(config.to_toml(), encoding="utf-8")
        written.append(path)
    return written
