from __future__ import annotations

import logging
import time
from typing import Callable, Iterator, Mapping, Protocol

from .artifacts import ArtifactScanner
from .commands import first_command
from .runner import ProcessRunner
from .skills import Skill, context_for_fix
from .types import (
    Command,
    CommandOutcome,
    CommandState,
    ExecutionReport,
    FixAttempt,
    FixRequest,
    ProgressEvent,
    ReportEntry,
)
from .utils import one_line, truncate_text

logger = logging.getLogger(__name__)

# Byte cap applied to stdout/stderr before they are sent in a fix request.
FIX_OUTPUT_BYTES = 2000

ProgressCallback = Callable[[ProgressEvent], None]


class FixRequester(Protocol):
    def request_fix(self, fix: FixRequest) -> str: ...


class ExecutionOrchestrator:
    """Runs a plan command by command, with a bounded auto-fix cycle per failure.

    Every planned command gets exactly one report entry. A failed command never
    stops the plan: the next command runs whatever happened before it.
    """

    def __init__(
        self,
        *,
        runner: ProcessRunner,
        scanner: ArtifactScanner,
        fix_requester: FixRequester | None,
        timeout_seconds: float,
        max_fix_retries: int,
        skills: list[Skill] | None = None,
        fix_output_bytes: int = FIX_OUTPUT_BYTES,
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        if max_fix_retries < 0:
            raise ValueError("max_fix_retries must be >= 0")
        self.runner = runner
        self.scanner = scanner
        self.fix_requester = fix_requester
        self.timeout_seconds = timeout_seconds
        self.max_fix_retries = max_fix_retries
        self.skills = list(skills or [])
        self.fix_output_bytes = fix_output_bytes
        self.env_overrides = dict(env_overrides or {})

    def run_plan(
        self,
        commands: list[Command],
        *,
        on_progress: ProgressCallback | None = None,
        job_tag: str = "",
    ) -> ExecutionReport:
        started = time.perf_counter()
        report = ExecutionReport()
        total = len(commands)
        logger.info("Plan started job=%s commands=%s max_fix_retries=%s", job_tag, total, self.max_fix_retries)

        for index, command in enumerate(commands, start=1):
            if self.runner.closed:
                # Still one entry per planned command; the runner refuses to spawn.
                logger.warning("Runner closed; skipping step job=%s step=%s/%s", job_tag, index, total)
            entry = self._execute_planned(command, index=index, total=total, on_progress=on_progress)
            report.entries.append(entry)
            logger.info(
                "Plan step finished job=%s step=%s/%s state=%s fix_attempts=%s",
                job_tag,
                index,
                total,
                entry.state.value,
                len(entry.fix_attempts),
            )

        report.artifacts = self.scanner.scan_many(self._artifact_sources(report))
        report.duration_seconds = time.perf_counter() - started
        logger.info(
            "Plan finished job=%s succeeded=%s failed=%s artifacts=%s duration=%.2fs",
            job_tag,
            report.succeeded_count,
            report.failed_count,
            len(report.artifacts),
            report.duration_seconds,
        )
        return report

    def _execute_planned(
        self,
        command: Command,
        *,
        index: int,
        total: int,
        on_progress: ProgressCallback | None,
    ) -> ReportEntry:
        def emit(state: CommandState, attempt: int = 0) -> None:
            if on_progress is None:
                return
            try:
                on_progress(ProgressEvent(index=index, total=total, command=command.cmd, state=state, fix_attempt=attempt))
            except Exception:
                logger.exception("Progress callback failed for step %s", index)

        emit(CommandState.RUNNING)
        outcome = self._run(command.cmd, command.working_dir)
        entry = ReportEntry(
            command=command,
            outcome=outcome,
            transitions=[CommandState.PENDING, CommandState.RUNNING],
        )

        if outcome.succeeded:
            self._set_state(entry, CommandState.SUCCEEDED)
            emit(CommandState.SUCCEEDED)
            return entry

        self._set_state(entry, CommandState.FAILED)
        self._fix_cycle(entry, emit)
        emit(entry.state, len(entry.fix_attempts))
        return entry

    def _fix_cycle(self, entry: ReportEntry, emit: Callable[[CommandState, int], None]) -> None:
        if self.fix_requester is None or entry.outcome.cancelled:
            return

        budget = self.max_fix_retries
        last_outcome = entry.outcome
        while True:
            if self.runner.closed:
                break
            self._set_state(entry, CommandState.REQUESTING_FIX)
            emit(CommandState.REQUESTING_FIX, len(entry.fix_attempts))
            try:
                remediation = self.fix_requester.request_fix(self._build_fix_request(entry, last_outcome))
            except Exception as exc:
                logger.exception("Fix request failed for cmd=%s", one_line(last_outcome.command))
                entry.fix_error = str(exc) or exc.__class__.__name__
                break

            entry.remediation = remediation
            if budget <= 0:
                # Advisory only: the suggestion is reported but never executed.
                break

            fix_command = first_command(remediation, working_dir=entry.command.working_dir)
            if fix_command is None:
                logger.info("Fix suggestion contained no command; giving up on cmd=%s", one_line(entry.command.cmd))
                break

            attempt_index = len(entry.fix_attempts) + 1
            self._set_state(entry, CommandState.RUNNING_FIX)
            emit(CommandState.RUNNING_FIX, attempt_index)
            attempt_outcome = self._run(fix_command.cmd, fix_command.working_dir)
            entry.fix_attempts.append(
                FixAttempt(
                    index=attempt_index,
                    command=fix_command.cmd,
                    outcome=attempt_outcome,
                    remediation=remediation,
                )
            )
            budget -= 1

            if attempt_outcome.succeeded:
                self._set_state(entry, CommandState.SUCCEEDED)
                return

            self._set_state(entry, CommandState.FAILED)
            last_outcome = attempt_outcome
            if budget <= 0:
                break

        self._set_state(entry, CommandState.FAILED)

    def _build_fix_request(self, entry: ReportEntry, outcome: CommandOutcome) -> FixRequest:
        return FixRequest(
            planned_command=entry.command.cmd,
            failed_command=outcome.command,
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            stderr=truncate_text(outcome.stderr, self.fix_output_bytes),
            stdout=truncate_text(outcome.stdout, self.fix_output_bytes),
            skill_context=context_for_fix(self.skills, outcome.command),
        )

    def _run(self, command: str, working_dir: str) -> CommandOutcome:
        return self.runner.run(
            command,
            working_dir=working_dir,
            timeout_seconds=self.timeout_seconds,
            env_overrides=self.env_overrides,
        )

    def _set_state(self, entry: ReportEntry, state: CommandState) -> None:
        entry.state = state
        if not entry.transitions or entry.transitions[-1] != state:
            entry.transitions.append(state)

    def _artifact_sources(self, report: ExecutionReport) -> Iterator[tuple[str, str]]:
        for entry in report.entries:
            base_dir = entry.command.working_dir
            outcomes = [entry.outcome] + [attempt.outcome for attempt in entry.fix_attempts]
            for outcome in outcomes:
                yield outcome.command, base_dir
                yield outcome.stdout, base_dir
                yield outcome.stderr, base_dir
