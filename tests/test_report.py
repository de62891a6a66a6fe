from __future__ import annotations

import unittest

from shellbot.report import render_plan, render_report, render_summary
from shellbot.types import (
    Command,
    CommandOutcome,
    CommandState,
    ExecutionReport,
    FixAttempt,
    ProgressEvent,
    ReportEntry,
)
from shellbot.utils import chunk_text, truncate_text


def _outcome(cmd: str, exit_code: int, *, stdout: str = "", stderr: str = "", timed_out: bool = False) -> CommandOutcome:
    return CommandOutcome(
        command=cmd,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_seconds=0.25,
        timed_out=timed_out,
    )


class RenderReportTests(unittest.TestCase):
    def test_report_shows_fixes_and_suggestions(self) -> None:
        fixed = ReportEntry(
            command=Command(cmd="python app.py", description="Start the app"),
            outcome=_outcome("python app.py", 1, stderr="ModuleNotFoundError: flask"),
            fix_attempts=[FixAttempt(index=1, command="pip install flask", outcome=_outcome("pip install flask", 0))],
            state=CommandState.SUCCEEDED,
        )
        advisory = ReportEntry(
            command=Command(cmd="sleep 999"),
            outcome=_outcome("sleep 999", 124, timed_out=True),
            state=CommandState.FAILED,
            remediation="Use a shorter sleep.",
        )
        broken = ReportEntry(
            command=Command(cmd="false"),
            outcome=_outcome("false", 1),
            state=CommandState.FAILED,
            fix_error="model offline",
        )
        report = ExecutionReport(entries=[fixed, advisory, broken], artifacts=["/tmp/a.png"], duration_seconds=2.0)
        text = render_report(report)

        self.assertIn("✅ 1. Start the app", text)
        self.assertIn("🔧 Fix 1: pip install flask", text)
        self.assertIn("ModuleNotFoundError: flask", text)
        self.assertIn("⏱ 2. sleep 999", text)
        self.assertIn("timed out", text)
        self.assertIn("💡 Suggestion:\nUse a shorter sleep.", text)
        self.assertIn("❌ 3. false", text)
        self.assertIn("⚠️ Could not get a fix suggestion: model offline", text)
        self.assertTrue(text.endswith(render_summary(report)))
        self.assertIn("1/3 command(s) succeeded", render_summary(report))
        self.assertIn("1 file(s) attached", render_summary(report))

    def test_long_output_is_previewed(self) -> None:
        entry = ReportEntry(
            command=Command(cmd="yes | head -n 1000"),
            outcome=_outcome("yes | head -n 1000", 0, stdout="y\n" * 1000),
            state=CommandState.SUCCEEDED,
        )
        text = render_report(ExecutionReport(entries=[entry]))
        self.assertIn("... (truncated)", text)
        self.assertLess(len(text), 1000)

    def test_cancelled_command_is_labelled(self) -> None:
        outcome = CommandOutcome(
            command="make deploy",
            exit_code=130,
            stdout="",
            stderr="Command not started: the service is shutting down",
            duration_seconds=0.0,
            cancelled=True,
        )
        self.assertFalse(outcome.succeeded)
        entry = ReportEntry(command=Command(cmd="make deploy"), outcome=outcome, state=CommandState.FAILED)
        text = render_report(ExecutionReport(entries=[entry]))
        self.assertIn("Result: cancelled at shutdown", text)
        self.assertIn("0/1 command(s) succeeded", text)

    def test_plan_marks_current_step(self) -> None:
        commands = [Command(cmd="ls", description="List"), Command(cmd="pwd")]
        text = render_plan(commands, progress=ProgressEvent(index=2, total=2, command="pwd", state=CommandState.RUNNING_FIX, fix_attempt=1))
        self.assertIn("1. List → `ls`", text)
        self.assertIn("2. `pwd`  ◀", text)
        self.assertIn("Running fix attempt 1 (step 2/2)", text)
        self.assertIn("⏳ Running...", render_plan(commands))


class UtilsTests(unittest.TestCase):
    def test_truncate_text_keeps_utf8_boundaries(self) -> None:
        self.assertEqual(truncate_text("héllo", 100), "héllo")
        self.assertEqual(truncate_text("héllo", 2, marker="~"), "h~")

    def test_chunk_text_prefers_newlines(self) -> None:
        self.assertEqual(chunk_text("short", 10), ["short"])
        self.assertEqual(chunk_text("aaaa\nbbbb\ncc", 6), ["aaaa\n", "bbbb\n", "cc"])


if __name__ == "__main__":
    unittest.main()
