"""MCP prompt templates for common workflows."""

from workgraph.mcp.server import mcp


@mcp.prompt()
def plan_work(goal: str) -> str:
    """Generate a prompt to break down a goal into a task graph."""
    return (
        f"I need to accomplish the following goal:\n\n"
        f"{goal}\n\n"
        f"Please break this down into concrete, actionable tasks. For each task:\n"
        f"1. Give it a clear, concise title\n"
        f"2. Add a brief description of what needs to be done\n"
        f"3. Estimate the hours it will take\n"
        f"4. Identify which tasks must finish first and pass them as blocked_by\n\n"
        f"Create blockers before the tasks that depend on them, using the add_task tool. "
        f"Finish by calling ready_tasks to show what can start immediately."
    )


@mcp.prompt()
def work_on_task(task_id: str) -> str:
    """Generate a prompt to pick up and complete a single task."""
    return (
        f"Please work on task '{task_id}'.\n\n"
        f"1. Use get_task to read the task, its description and its unresolved blockers\n"
        f"2. If it has unresolved blockers, stop and report them\n"
        f"3. Use claim_task to claim it\n"
        f"4. Use log_task to record progress as you go\n"
        f"5. Use add_artifact for every file you create or change\n"
        f"6. Finish with done_task, or fail_task with a specific reason if you cannot complete it"
    )
