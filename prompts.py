"""Prompt assembly for coding, review and merge-conflict workers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

from task_store import Task

MAX_DIFF_CHARS = 40000
MAX_CONTEXT_CHARS = 6000


@dataclass
class RetryContext:
    previous_failure: str = ""
    failure_type: str = ""
    review_feedback: str = ""
    previous_diff: str = ""
    previous_test_output: str = ""

    def is_empty(self) -> bool:
        return not (self.previous_failure or self.review_feedback)


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... [truncated {len(text) - limit} chars]"


def _result_instructions(result_path: str, schema: str) -> str:
    return (
        "When you are done, write a JSON object to the file at "
        f"`{result_path}` (also available as $AUTOSPRINT_RESULT_FILE) with this shape:\n\n"
        f"```json\n{schema}\n```\n"
    )


def build_coding_prompt(
    task: Task,
    result_path: str,
    epic: Optional[Task] = None,
    retry: Optional[RetryContext] = None,
) -> str:
    parts: List[str] = [f"# Task {task.id}: {task.title}\n"]
    if epic is not None:
        parts.append(f"Part of epic {epic.id}: {epic.title}\n")
    if task.description:
        parts.append(f"## Description\n\n{task.description}\n")
    parts.append(
        "## Instructions\n\n"
        "Implement the task in this working tree. Write or update tests, run them, "
        "and commit your work on the current branch. Do not switch branches.\n"
    )
    if retry is not None and not retry.is_empty():
        section = ["## Previous attempt\n"]
        if retry.failure_type:
            section.append(f"Failure type: {retry.failure_type}\n")
        if retry.previous_failure:
            section.append(f"Failure:\n\n{_clip(retry.previous_failure, MAX_CONTEXT_CHARS)}\n")
        if retry.review_feedback:
            section.append(f"Reviewer feedback:\n\n{_clip(retry.review_feedback, MAX_CONTEXT_CHARS)}\n")
        if retry.previous_test_output:
            section.append(
                f"Test output:\n\n```\n{_clip(retry.previous_test_output, MAX_CONTEXT_CHARS)}\n```\n"
            )
        if retry.previous_diff:
            section.append(
                f"Changes from the previous attempt (already on this branch):\n\n"
                f"```diff\n{_clip(retry.previous_diff, MAX_DIFF_CHARS)}\n```\n"
            )
        parts.append("\n".join(section))
    parts.append(_result_instructions(
        result_path,
        '{"status": "success" | "failed", "summary": "...", '
        '"files_changed": ["..."], "notes": "..."}',
    ))
    return "\n".join(parts)


def build_review_prompt(task: Task, diff: str, summary: str, result_path: str) -> str:
    parts = [
        f"# Review task {task.id}: {task.title}\n",
        f"## Task description\n\n{task.description or '(none)'}\n",
        f"## Implementer summary\n\n{summary or '(none)'}\n",
        f"## Diff\n\n```diff\n{_clip(diff, MAX_DIFF_CHARS)}\n```\n",
        "## Instructions\n\n"
        "Review the change for correctness, completeness against the task, and test "
        "coverage. Do not modify files. Approve only if the change is ready to merge.\n",
        _result_instructions(
            result_path,
            '{"status": "approved" | "rejected", "summary": "...", '
            '"issues": ["..."], "notes": "..."}',
        ),
    ]
    return "\n".join(parts)


def build_merger_prompt(
    task: Task,
    operation: str,
    conflicted_files: List[str],
    result_path: str,
    trunk: str = "main",
) -> str:
    files = "\n".join(f"- {f}" for f in conflicted_files) or "- (git did not report specific files)"
    parts = [
        f"# Resolve {operation} conflicts for {task.id}: {task.title}\n",
        f"A {operation} against `{trunk}` stopped on conflicts in:\n\n{files}\n",
        "## Instructions\n\n"
        "Resolve every conflict so both sides' intent is preserved, remove all conflict "
        f"markers, and stage the files with `git add`. Do not run `git {operation} --continue` "
        f"or `git {operation} --abort`, and do not commit; the orchestrator does that.\n",
        _result_instructions(result_path, '{"status": "success" | "failed", "summary": "..."}'),
    ]
    return "\n".join(parts)
