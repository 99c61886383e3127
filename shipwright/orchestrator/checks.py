"""Shell checks run during the Verify step."""

import subprocess
from pathlib import Path
from typing import List, Sequence

from ..core.output_parser import OutputParser
from ..core.plan import CheckResult


def run_check(command: str, cwd: Path, timeout: int) -> CheckResult:
    """Run one shell command; a zero exit code passes."""
    try:
        result = subprocess.run(
            command,
            shell=True,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CheckResult(name=command, passed=False, output=f"Timed out after {timeout}s")
    except OSError as e:
        return CheckResult(name=command, passed=False, output=str(e))

    output = OutputParser.sanitize_output((result.stdout or "") + (result.stderr or ""), 2000)
    return CheckResult(name=command, passed=result.returncode == 0, output=output)


def run_checks(commands: Sequence[str], cwd: Path, timeout: int) -> List[CheckResult]:
    """Run checks in order; every command runs even after a failure."""
    return [run_check(command, cwd, timeout) for command in commands]


def format_check_results(results: Sequence[CheckResult]) -> str:
    lines = []
    for result in results:
        status = "PASS" if result.passed else "FAIL"
        lines.append(f"- [{status}] `{result.name}`")
        if not result.passed and result.output:
            lines.append("")
            lines.append("```")
            lines.append(result.output)
            lines.append("```")
    return "\n".join(lines)
