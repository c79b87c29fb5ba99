"""Prompt text sent to the agent.

Only the parts that carry the edit-set wire contract live here: the response
format block appended to every task prompt, the strict JSON-only reprompt used
after an extraction failure, and the description of a fix task.
"""

import json

from devloop.models import LogAnalysis, Task, TestRunResult

_EXAMPLE_EDIT_SET = {
    "files": [
        {
            "path": "relative/path/to/file",
            "content": "complete file content",
            "operation": "create",
        }
    ],
    "summary": "brief summary of changes",
}


def build_task_prompt(task: Task, codebase_context: str | None = None) -> str:
    """Build the prompt for one task.

    Args:
        task: Task to implement
        codebase_context: Optional excerpt of relevant code

    Returns:
        Prompt text ending with the response format requirements
    """
    lines = [f"Task: {task.title}", f"Description: {task.description}", ""]
    if task.details:
        lines.extend(["Details:", task.details, ""])
    if codebase_context:
        lines.extend(["Codebase Context:", codebase_context, ""])

    lines.extend(
        [
            "## Response Format (STRICT)",
            "",
            "Return ONLY valid JSON in a single ```json block. No narrative before or after it.",
            "",
            "```json",
            json.dumps(_EXAMPLE_EDIT_SET, indent=2),
            "```",
            "",
            'Each file needs "path" and "operation" (create, update, delete or patch).',
            'create and update need the complete "content".',
            'patch needs "patches": [{"search": "exact text", "replace": "new text"}].',
            "",
            'If no changes are needed, return: {"files": [], "summary": "No changes required"}',
        ]
    )
    return "\n".join(lines)


def build_strict_json_prompt(task: Task) -> str:
    """Reprompt used after the previous response could not be parsed."""
    return "\n".join(
        [
            "# STRICT JSON-ONLY MODE",
            "",
            "YOUR PREVIOUS RESPONSE COULD NOT BE PARSED. DO NOT WRITE ANY TEXT OUTSIDE THE JSON.",
            "",
            f"Task: {task.title}",
            f"Description: {task.description}",
            "",
            "Your response must be EXACTLY one ```json block, nothing before, nothing after:",
            "",
            "```json",
            json.dumps(_EXAMPLE_EDIT_SET, indent=2),
            "```",
            "",
            "1. The first characters of your response MUST be ```json",
            "2. The last characters MUST be ```",
            '3. Valid JSON only, with a "files" array and a "summary" string',
        ]
    )


def build_fix_description(
    original: Task,
    attempt: int,
    max_retries: int,
    error_description: str,
    test_output: str,
) -> str:
    return "\n".join(
        [
            f"Fix the failures from task {original.id}: {original.title}",
            "",
            f"Attempt {attempt}/{max_retries}",
            "",
            "Original description:",
            original.description,
            "",
            "Error:",
            error_description,
            "",
            "Test Output:",
            test_output[-4000:],
        ]
    )


def build_failure_description(
    test_result: TestRunResult, analysis: LogAnalysis, max_log_errors: int = 10
) -> str:
    """Combine test output and log errors into one failure description.

    Args:
        test_result: Result from the test runner
        analysis: Result from the log analyzer
        max_log_errors: Maximum log error lines to include

    Returns:
        Test output followed by up to max_log_errors log error lines, or the
        log summary when there are none
    """
    description = test_result.output
    if analysis.errors:
        description += "\n\nLog Errors:\n" + "\n".join(analysis.errors[:max_log_errors])
    elif analysis.summary:
        description += "\n\nLog Summary:\n" + analysis.summary
    return description
