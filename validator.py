"""Run the project's test command in a worktree and summarize the outcome."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict

from config_schema import ValidationConfig
from process_utils import run_with_group_kill

logger = logging.getLogger(__name__)

# Only the tail of the test output is kept for retry context and archives.
MAX_OUTPUT_CHARS = 8000

_COUNT_PATTERNS = {
    "passed": re.compile(r"(\d+)\s+passed"),
    "failed": re.compile(r"(\d+)\s+failed"),
    "skipped": re.compile(r"(\d+)\s+skipped"),
    "errors": re.compile(r"(\d+)\s+errors?\b"),
}


@dataclass
class TestOutcome:
    __test__ = False  # not a pytest test class

    passed: bool
    command: str = ""
    return_code: int = 0
    output: str = ""
    passed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    timed_out: bool = False

    @property
    def summary(self) -> str:
        if not self.command:
            return "no test command configured"
        if self.timed_out:
            return f"tests timed out ({self.command})"
        status = "PASS" if self.passed else "FAIL"
        return (
            f"tests: {status} ({self.passed_count} passed, "
            f"{self.failed_count} failed, {self.skipped_count} skipped)"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["summary"] = self.summary
        return data


def _parse_counts(output: str) -> Dict[str, int]:
    counts = {}
    for name, pattern in _COUNT_PATTERNS.items():
        matches = pattern.findall(output)
        counts[name] = int(matches[-1]) if matches else 0
    return counts


class Validator:
    def __init__(self, config: ValidationConfig):
        self.config = config

    def run_tests(self, working_dir: str) -> TestOutcome:
        command = self.config.test_command
        if not command.strip():
            return TestOutcome(passed=True, output="skipped")

        logger.info("Running tests in %s: %s", working_dir, command)
        try:
            result = run_with_group_kill(
                command,
                shell=True,
                cwd=working_dir,
                timeout=self.config.test_timeout,
            )
        except OSError as e:
            return TestOutcome(passed=False, command=command, return_code=-1, output=str(e))

        output = (result.stdout + result.stderr).strip()
        if len(output) > MAX_OUTPUT_CHARS:
            output = "...\n" + output[-MAX_OUTPUT_CHARS:]
        if result.timed_out:
            return TestOutcome(
                passed=False, command=command, return_code=-1,
                output=f"Timed out after {self.config.test_timeout}s\n{output}",
                timed_out=True,
            )
        counts = _parse_counts(output)
        outcome = TestOutcome(
            passed=result.returncode == 0,
            command=command,
            return_code=result.returncode,
            output=output,
            passed_count=counts["passed"],
            failed_count=counts["failed"] + counts["errors"],
            skipped_count=counts["skipped"],
        )
        if not outcome.passed:
            logger.warning("Tests failed (rc=%d): %s", result.returncode, outcome.summary)
        return outcome
