from __future__ import annotations

import asyncio
import threading
import unittest

from shellbot.config import Settings
from shellbot.dispatcher import MessageDispatcher
from shellbot.llm_client import LlmError
from shellbot.report import ANALYZING_TEXT, HELP_TEXT, JOB_FAILED_TEXT, NO_COMMAND_TEXT
from shellbot.skills import Skill
from shellbot.types import (
    Action,
    Command,
    CommandOutcome,
    CommandState,
    ExecutionReport,
    InboundMessage,
    ProgressEvent,
    Question,
    ReportEntry,
    StatusHandle,
)


class _FakeTransport:
    def __init__(self, *, edit_ok: bool = True, post_ok: bool = True):
        self.edit_ok = edit_ok
        self.post_ok = post_ok
        self.posts: list[tuple[int, str, int | None]] = []
        self.edits: list[str] = []
        self.sent: list[str] = []
        self.artifacts: list[list[str]] = []
        self._next_id = 100
        self._lock = threading.Lock()

    def _handle(self, chat_id: int) -> StatusHandle:
        with self._lock:
            self._next_id += 1
            return StatusHandle(chat_id=chat_id, message_id=self._next_id)

    def post_status(self, chat_id: int, text: str, *, reply_to: int | None = None) -> StatusHandle | None:
        self.posts.append((chat_id, text, reply_to))
        return self._handle(chat_id) if self.post_ok else None

    def edit(self, handle: StatusHandle, text: str) -> bool:
        if self.edit_ok:
            self.edits.append(text)
        return self.edit_ok

    def send_text(self, chat_id: int, text: str) -> StatusHandle | None:
        self.sent.append(text)
        return self._handle(chat_id)

    def send_artifacts(self, chat_id: int, paths: list[str]) -> bool:
        self.artifacts.append(list(paths))
        return True


class _FakeClassifier:
    def __init__(self, result: Question | Action | Exception, gate: threading.Event | None = None):
        self.result = result
        self.gate = gate
        self.calls: list[str] = []

    def classify(self, text: str) -> Question | Action:
        self.calls.append(text)
        if self.gate is not None:
            self.gate.wait(5)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


class _EchoClassifier:
    """Answers each message with its own text; texts in `gated` wait for the gate first."""

    def __init__(self, gated: set[str], gate: threading.Event):
        self.gated = gated
        self.gate = gate

    def classify(self, text: str) -> Question | Action:
        if text in self.gated:
            self.gate.wait(5)
        return Question(answer=text)


class _FakeOrchestrator:
    def __init__(self, *, succeed: bool = True, artifacts: list[str] | None = None):
        self.succeed = succeed
        self.artifact_paths = artifacts or []
        self.plans: list[list[Command]] = []

    def run_plan(self, commands, *, on_progress=None, job_tag: str = "") -> ExecutionReport:
        self.plans.append(list(commands))
        report = ExecutionReport(artifacts=list(self.artifact_paths), duration_seconds=0.5)
        for index, command in enumerate(commands, start=1):
            if on_progress is not None:
                on_progress(ProgressEvent(index=index, total=len(commands), command=command.cmd, state=CommandState.RUNNING))
            exit_code = 0 if self.succeed else 1
            outcome = CommandOutcome(command=command.cmd, exit_code=exit_code, stdout="ok\n", stderr="", duration_seconds=0.1)
            state = CommandState.SUCCEEDED if self.succeed else CommandState.FAILED
            report.entries.append(ReportEntry(command=command, outcome=outcome, state=state))
        return report


class _FakeRunner:
    def __init__(self) -> None:
        self.closed_calls = 0

    def close(self) -> int:
        self.closed_calls += 1
        return 0


def _message(text: str | None, *, chat_id: int = 1, from_bot: bool = False) -> InboundMessage:
    return InboundMessage(chat_id=chat_id, message_id=7, text=text, sender_id=5, sender_name="tester", from_bot=from_bot)


class MessageDispatcherTests(unittest.IsolatedAsyncioTestCase):
    def _dispatcher(
        self,
        classifier: _FakeClassifier,
        *,
        transport: _FakeTransport | None = None,
        orchestrator: _FakeOrchestrator | None = None,
        message_limit: int = 4096,
        **settings_kwargs,
    ) -> MessageDispatcher:
        self.transport = transport or _FakeTransport()
        self.orchestrator = orchestrator or _FakeOrchestrator()
        self.runner = _FakeRunner()
        return MessageDispatcher(
            settings=Settings(working_dir="/srv", **settings_kwargs),
            transport=self.transport,
            classifier=classifier,
            orchestrator=self.orchestrator,
            runner=self.runner,  # type: ignore[arg-type]
            skills=[Skill(id="screenshot", name="Screenshot", description="Capture", install="apt install scrot")],
            message_limit=message_limit,
        )

    async def test_question_replaces_status_with_answer(self) -> None:
        dispatcher = self._dispatcher(_FakeClassifier(Question(answer="Use df -h.")))
        self.assertTrue(dispatcher.accept(_message("how do I check disk space?")))
        await dispatcher.wait_idle()

        self.assertEqual(self.transport.posts, [(1, ANALYZING_TEXT, 7)])
        self.assertEqual(self.transport.edits, ["Use df -h."])
        self.assertEqual(self.orchestrator.plans, [])
        self.assertEqual(dispatcher.active_jobs(), [])

    async def test_filtered_messages_are_ignored(self) -> None:
        classifier = _FakeClassifier(Question(answer="x"))
        dispatcher = self._dispatcher(classifier, allowed_chat_ids=frozenset({1}))
        self.assertFalse(dispatcher.accept(_message("hi", chat_id=2)))
        self.assertFalse(dispatcher.accept(_message("hi", from_bot=True)))
        self.assertFalse(dispatcher.accept(_message(None)))
        self.assertFalse(dispatcher.accept(_message("   ")))
        await dispatcher.wait_idle()
        self.assertEqual(classifier.calls, [])
        self.assertEqual(self.transport.posts, [])

    async def test_classification_error_is_reported(self) -> None:
        dispatcher = self._dispatcher(_FakeClassifier(LlmError("model offline")))
        dispatcher.accept(_message("restart nginx"))
        await dispatcher.wait_idle()
        self.assertEqual(len(self.transport.edits), 1)
        self.assertIn("Could not analyze", self.transport.edits[0])
        self.assertIn("model offline", self.transport.edits[0])
        self.assertEqual(self.orchestrator.plans, [])

    async def test_plan_without_commands(self) -> None:
        dispatcher = self._dispatcher(_FakeClassifier(Action(raw_plan="I would rather not.")))
        dispatcher.accept(_message("do something"))
        await dispatcher.wait_idle()
        self.assertEqual(self.transport.edits, [NO_COMMAND_TEXT])
        self.assertEqual(self.orchestrator.plans, [])

    async def test_action_runs_plan_and_delivers_report(self) -> None:
        orchestrator = _FakeOrchestrator(artifacts=["/tmp/shot.png"])
        dispatcher = self._dispatcher(
            _FakeClassifier(Action(raw_plan="```sh\n# take a screenshot\nscrot /tmp/shot.png\n```")),
            orchestrator=orchestrator,
        )
        dispatcher.accept(_message("take a screenshot"))
        await dispatcher.wait_idle()

        self.assertEqual(len(orchestrator.plans), 1)
        planned = orchestrator.plans[0]
        self.assertEqual([c.cmd for c in planned], ["scrot /tmp/shot.png"])
        self.assertEqual(planned[0].working_dir, "/srv")
        self.assertIn("📝 Plan:", self.transport.edits[0])
        self.assertTrue(any("Running step 1/1" in text for text in self.transport.edits))
        self.assertIn("Execution report", self.transport.edits[-1])
        self.assertIn("take a screenshot", self.transport.edits[-1])
        self.assertEqual(self.transport.artifacts, [["/tmp/shot.png"]])

    async def test_summary_only_when_echo_disabled(self) -> None:
        dispatcher = self._dispatcher(
            _FakeClassifier(Action(raw_plan="```\nfalse\n```")),
            orchestrator=_FakeOrchestrator(succeed=False),
            echo_result=False,
        )
        dispatcher.accept(_message("run false"))
        await dispatcher.wait_idle()
        final = self.transport.edits[-1]
        self.assertNotIn("Execution report", final)
        self.assertIn("0/1 command(s) succeeded", final)
        self.assertEqual(self.transport.artifacts, [])

    async def test_failed_edit_falls_back_to_new_message(self) -> None:
        transport = _FakeTransport(edit_ok=False)
        dispatcher = self._dispatcher(_FakeClassifier(Question(answer="answer")), transport=transport)
        dispatcher.accept(_message("question?"))
        await dispatcher.wait_idle()
        self.assertEqual(transport.edits, [])
        self.assertEqual(transport.sent, ["answer"])

    async def test_long_reply_is_split(self) -> None:
        answer = "\n".join(f"line {index:02d} of the answer" for index in range(20))
        dispatcher = self._dispatcher(_FakeClassifier(Question(answer=answer)), message_limit=100)
        dispatcher.accept(_message("long?"))
        await dispatcher.wait_idle()
        self.assertEqual(len(self.transport.edits), 1)
        self.assertGreater(len(self.transport.sent), 1)
        self.assertEqual("".join(self.transport.edits + self.transport.sent), answer)
        self.assertTrue(all(len(chunk) <= 100 for chunk in self.transport.edits + self.transport.sent))

    async def test_local_commands_skip_the_model(self) -> None:
        classifier = _FakeClassifier(Question(answer="unused"))
        dispatcher = self._dispatcher(classifier)
        for text in ("/help", "/skills", "/install screenshot", "/install", "/install nope"):
            dispatcher.accept(_message(text))
        await dispatcher.wait_idle()

        self.assertEqual(classifier.calls, [])
        self.assertEqual(self.transport.posts, [])
        self.assertEqual(len(self.transport.sent), 5)
        self.assertIn(HELP_TEXT, self.transport.sent)
        self.assertTrue(any("Screenshot (screenshot)" in text for text in self.transport.sent))
        self.assertTrue(any("apt install scrot" in text for text in self.transport.sent))
        self.assertIn("Usage: /install <skill>", self.transport.sent)
        self.assertTrue(any(text.startswith("Unknown skill: nope") for text in self.transport.sent))

    async def test_unexpected_error_renders_generic_failure(self) -> None:
        dispatcher = self._dispatcher(_FakeClassifier(RuntimeError("kaboom")))
        with self.assertLogs("shellbot.dispatcher", level="ERROR"):
            dispatcher.accept(_message("anything"))
            await dispatcher.wait_idle()
        self.assertEqual(self.transport.edits, [JOB_FAILED_TEXT])

    async def test_active_jobs_and_shutdown(self) -> None:
        gate = threading.Event()
        self.addCleanup(gate.set)
        dispatcher = self._dispatcher(_FakeClassifier(Question(answer="late"), gate=gate))
        dispatcher.accept(_message("first"))
        dispatcher.accept(_message("second", chat_id=2))

        jobs = dispatcher.active_jobs()
        self.assertEqual([job.job_id for job in jobs], [1, 2])
        self.assertEqual([job.tag for job in jobs], ["#1", "#2"])
        await asyncio.sleep(0.05)

        await dispatcher.shutdown()
        gate.set()
        self.assertEqual(dispatcher.active_jobs(), [])
        self.assertEqual(self.runner.closed_calls, 1)

    async def test_concurrency_bound_queues_jobs(self) -> None:
        gate = threading.Event()
        self.addCleanup(gate.set)
        classifier = _FakeClassifier(Question(answer="done"), gate=gate)
        dispatcher = self._dispatcher(classifier, max_concurrent_jobs=1)
        dispatcher.accept(_message("one"))
        dispatcher.accept(_message("two"))
        await asyncio.sleep(0.1)
        self.assertEqual(classifier.calls, ["one"])

        gate.set()
        await dispatcher.wait_idle()
        self.assertEqual(classifier.calls, ["one", "two"])
        self.assertEqual(self.transport.edits, ["done", "done"])

    async def test_unbounded_jobs_do_not_wait_for_each_other(self) -> None:
        gate = threading.Event()
        self.addCleanup(gate.set)
        classifier = _EchoClassifier(gated={"slow"}, gate=gate)
        dispatcher = self._dispatcher(classifier, max_concurrent_jobs=0)
        dispatcher.accept(_message("slow"))
        dispatcher.accept(_message("fast"))

        for _ in range(100):
            if "fast" in self.transport.edits:
                break
            await asyncio.sleep(0.02)
        self.assertEqual(self.transport.edits, ["fast"])
        self.assertEqual([job.text for job in dispatcher.active_jobs()], ["slow"])

        gate.set()
        await dispatcher.wait_idle()
        self.assertEqual(self.transport.edits, ["fast", "slow"])


if __name__ == "__main__":
    unittest.main()
