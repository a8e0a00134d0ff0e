from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Sequence

from taskherd.models import CheckResult, CheckSpec, ConfigurationError, EngineConfig
from taskherd.utils import _append_log, _compact_log_text


def _run_file_exists_check(check: CheckSpec, project_root: Path) -> CheckResult:
    if not check.path:
        raise ConfigurationError("check type 'fileExists' requires a 'path'")
    target = project_root / check.path
    if not target.exists():
        return CheckResult(success=False, output=f"Validation failed: file not found at {target}")
    return CheckResult(success=True)


def _run_shell_check(check: CheckSpec, project_root: Path) -> CheckResult:
    if not check.command:
        raise ConfigurationError("check type 'shell' requires a 'command'")
    completed = subprocess.run(
        check.command,
        shell=True,
        cwd=project_root,
        text=True,
        capture_output=True,
        check=False,
    )
    passed = completed.returncode == 0
    if check.expect == "fail":
        if passed:
            return CheckResult(
                success=False,
                output=f"Validation failed: command '{check.command}' succeeded but was expected to fail.",
            )
        return CheckResult(success=True)
    if passed:
        return CheckResult(success=True)
    output = (completed.stderr or completed.stdout or "").strip()
    if not output:
        output = f"command '{check.command}' exited with code {completed.returncode}"
    return CheckResult(success=False, output=output)


def run_single_check(check: CheckSpec, project_root: Path) -> CheckResult:
    if check.type == "none":
        return CheckResult(success=True)
    if check.type == "fileExists":
        return _run_file_exists_check(check, project_root)
    if check.type == "shell":
        return _run_shell_check(check, project_root)
    raise ConfigurationError(f"unknown check type '{check.type}'")


def run_checks(config: EngineConfig, checks: Sequence[CheckSpec]) -> CheckResult:
    """Run *checks* in order and stop at the first failure, returning its result."""
    total = len(checks)
    for index, check in enumerate(checks, start=1):
        result = run_single_check(check, config.project_root)
        status = "passed" if result.success else "failed"
        _append_log(
            config.project_root,
            f"check {index}/{total} type={check.type} {status}"
            + (f": {_compact_log_text(result.output)}" if result.output else ""),
            logs_path=config.logs_path,
        )
        if not result.success:
            return result
    return CheckResult(success=True)
