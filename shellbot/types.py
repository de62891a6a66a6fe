from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class CommandState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    REQUESTING_FIX = "requesting_fix"
    RUNNING_FIX = "running_fix"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Command:
    cmd: str
    working_dir: str = "."
    description: str = ""


@dataclass(slots=True)
class CommandOutcome:
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False
    spawn_failed: bool = False
    cancelled: bool = False
    stdout_truncated: bool = False
    stderr_truncated: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.spawn_failed and not self.cancelled


@dataclass(slots=True)
class FixAttempt:
    index: int
    command: str
    outcome: CommandOutcome
    remediation: str = ""


@dataclass(frozen=True, slots=True)
class FixRequest:
    planned_command: str
    failed_command: str
    exit_code: int
    timed_out: bool
    stderr: str
    stdout: str
    skill_context: str = ""


@dataclass(slots=True)
class ReportEntry:
    command: Command
    outcome: CommandOutcome
    fix_attempts: list[FixAttempt] = field(default_factory=list)
    state: CommandState = CommandState.PENDING
    remediation: str | None = None
    fix_error: str | None = None
    transitions: list[CommandState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state == CommandState.SUCCEEDED

    @property
    def final_outcome(self) -> CommandOutcome:
        if self.fix_attempts:
            return self.fix_attempts[-1].outcome
        return self.outcome


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    index: int
    total: int
    command: str
    state: CommandState
    fix_attempt: int = 0


@dataclass(slots=True)
class ExecutionReport:
    entries: list[ReportEntry] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def succeeded_count(self) -> int:
        return sum(1 for entry in self.entries if entry.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.entries) - self.succeeded_count

    @property
    def all_succeeded(self) -> bool:
        return bool(self.entries) and self.failed_count == 0


@dataclass(frozen=True, slots=True)
class Question:
    answer: str


@dataclass(frozen=True, slots=True)
class Action:
    raw_plan: str


Classification = Question | Action


@dataclass(frozen=True, slots=True)
class InboundMessage:
    chat_id: int
    message_id: int
    text: str | None
    sender_id: int | None = None
    sender_name: str = "unknown"
    from_bot: bool = False


@dataclass(frozen=True, slots=True)
class StatusHandle:
    chat_id: int
    message_id: int


@dataclass(slots=True)
class Job:
    job_id: int
    chat_id: int
    message_id: int
    text: str
    started_at: str
    status: StatusHandle | None = None
    phase: str = "queued"

    @property
    def tag(self) -> str:
        return f"#{self.job_id}"
