from __future__ import annotations

from .types import Command, CommandOutcome, CommandState, ExecutionReport, ProgressEvent, ReportEntry

STDOUT_PREVIEW_CHARS = 500
STDERR_PREVIEW_CHARS = 300
REMEDIATION_PREVIEW_CHARS = 600

ANALYZING_TEXT = "🔄 Analyzing..."
NO_COMMAND_TEXT = "ℹ️ No command found in the model reply; nothing was executed."
ANALYZE_FAILED_TEXT = "❌ Could not analyze the message: {error}"
JOB_FAILED_TEXT = "❌ Processing failed unexpectedly. Check the service log for details."
HELP_TEXT = (
    "Send a message describing what to do on the server, or ask a question.\n\n"
    "Commands:\n"
    "/skills - list installed skills\n"
    "/install <skill> - show how to install a skill\n"
    "/help - show this message"
)


def _preview(text: str, limit: int) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return stripped[:limit] + "... (truncated)"


def _outcome_status(outcome: CommandOutcome) -> str:
    if outcome.cancelled:
        return "cancelled at shutdown"
    if outcome.timed_out:
        return f"timed out after {outcome.duration_seconds:.1f}s"
    if outcome.spawn_failed:
        return f"could not start (exit {outcome.exit_code})"
    if outcome.exit_code == 0:
        return f"exit 0, {outcome.duration_seconds:.2f}s"
    return f"failed with exit {outcome.exit_code}, {outcome.duration_seconds:.2f}s"


def _entry_icon(entry: ReportEntry) -> str:
    if entry.succeeded:
        return "✅"
    if entry.final_outcome.timed_out:
        return "⏱"
    return "❌"


def _render_outcome(lines: list[str], outcome: CommandOutcome, indent: str) -> None:
    if outcome.stdout.strip():
        lines.append(f"{indent}Output:\n{_preview(outcome.stdout, STDOUT_PREVIEW_CHARS)}")
    if outcome.stderr.strip():
        lines.append(f"{indent}Error:\n{_preview(outcome.stderr, STDERR_PREVIEW_CHARS)}")


def render_entry(entry: ReportEntry, index: int) -> str:
    title = entry.command.description or entry.command.cmd
    lines = [f"{_entry_icon(entry)} {index}. {title}"]
    lines.append(f"  Command: {entry.command.cmd}")
    lines.append(f"  Result: {_outcome_status(entry.outcome)}")
    _render_outcome(lines, entry.outcome, "  ")

    for attempt in entry.fix_attempts:
        icon = "✅" if attempt.outcome.succeeded else "❌"
        lines.append(f"  🔧 Fix {attempt.index}: {attempt.command}")
        lines.append(f"    {icon} {_outcome_status(attempt.outcome)}")
        _render_outcome(lines, attempt.outcome, "    ")

    if not entry.succeeded:
        if entry.remediation:
            lines.append(f"  💡 Suggestion:\n{_preview(entry.remediation, REMEDIATION_PREVIEW_CHARS)}")
        elif entry.fix_error:
            lines.append(f"  ⚠️ Could not get a fix suggestion: {entry.fix_error}")
    return "\n".join(lines)


def render_report(report: ExecutionReport) -> str:
    sections = ["📋 Execution report"]
    for index, entry in enumerate(report.entries, start=1):
        sections.append(render_entry(entry, index))
    sections.append(render_summary(report))
    return "\n\n".join(sections)


def render_summary(report: ExecutionReport) -> str:
    total = len(report.entries)
    icon = "✅" if report.all_succeeded else ("⚠️" if report.succeeded_count else "❌")
    summary = f"{icon} {report.succeeded_count}/{total} command(s) succeeded in {report.duration_seconds:.1f}s"
    if report.artifacts:
        summary += f"; {len(report.artifacts)} file(s) attached"
    return summary


def render_plan(commands: list[Command], *, progress: ProgressEvent | None = None) -> str:
    lines = ["📝 Plan:"]
    for index, command in enumerate(commands, start=1):
        label = f"{command.description} → `{command.cmd}`" if command.description else f"`{command.cmd}`"
        marker = ""
        if progress is not None and progress.index == index:
            marker = "  ◀"
        lines.append(f"{index}. {label}{marker}")
    lines.append("")
    lines.append(render_progress(progress) if progress is not None else "⏳ Running...")
    return "\n".join(lines)


def render_progress(event: ProgressEvent) -> str:
    step = f"step {event.index}/{event.total}"
    if event.state == CommandState.REQUESTING_FIX:
        return f"🩺 Asking for a fix ({step})..."
    if event.state == CommandState.RUNNING_FIX:
        return f"🔧 Running fix attempt {event.fix_attempt} ({step})..."
    return f"⏳ Running {step}..."
