from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Protocol

from .commands import parse_commands
from .config import Settings
from .llm_client import LlmError
from .orchestrator import ProgressCallback
from .report import (
    ANALYZE_FAILED_TEXT,
    ANALYZING_TEXT,
    HELP_TEXT,
    JOB_FAILED_TEXT,
    NO_COMMAND_TEXT,
    render_plan,
    render_report,
    render_summary,
)
from .runner import ProcessRunner
from .skills import Skill, get_install_instructions, list_skills_summary
from .types import (
    Classification,
    Command,
    CommandState,
    ExecutionReport,
    InboundMessage,
    Job,
    ProgressEvent,
    Question,
    StatusHandle,
)
from .utils import chunk_text, one_line, utc_now_iso

logger = logging.getLogger(__name__)

MESSAGE_LIMIT = 4096
STATUS_UPDATE_STATES = {CommandState.RUNNING, CommandState.REQUESTING_FIX, CommandState.RUNNING_FIX}


class ChatTransport(Protocol):
    def post_status(self, chat_id: int, text: str, *, reply_to: int | None = None) -> StatusHandle | None: ...

    def edit(self, handle: StatusHandle, text: str) -> bool: ...

    def send_text(self, chat_id: int, text: str) -> StatusHandle | None: ...

    def send_artifacts(self, chat_id: int, paths: list[str]) -> bool: ...


class Classifier(Protocol):
    def classify(self, text: str) -> Classification: ...


class PlanRunner(Protocol):
    def run_plan(
        self,
        commands: list[Command],
        *,
        on_progress: ProgressCallback | None = None,
        job_tag: str = "",
    ) -> ExecutionReport: ...


class MessageDispatcher:
    """Turns each accepted chat message into an independent asyncio task."""

    def __init__(
        self,
        *,
        settings: Settings,
        transport: ChatTransport,
        classifier: Classifier,
        orchestrator: PlanRunner,
        runner: ProcessRunner | None = None,
        skills: list[Skill] | None = None,
        message_limit: int = MESSAGE_LIMIT,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.classifier = classifier
        self.orchestrator = orchestrator
        self.runner = runner
        self.skills = list(skills or [])
        self.message_limit = message_limit
        self._job_ids = itertools.count(1)
        self._jobs: dict[int, Job] = {}
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._semaphore = asyncio.Semaphore(settings.max_concurrent_jobs) if settings.max_concurrent_jobs > 0 else None

    def accept(self, message: InboundMessage) -> bool:
        """Start a Job for `message`. Must be called from the running event loop."""
        if message.from_bot:
            return False
        text = (message.text or "").strip()
        if not text:
            return False
        if not self.settings.is_chat_allowed(message.chat_id):
            logger.warning(
                "Ignoring message from chat outside allow-list chat_id=%s sender=%s",
                message.chat_id,
                message.sender_name,
            )
            return False

        job = Job(
            job_id=next(self._job_ids),
            chat_id=message.chat_id,
            message_id=message.message_id,
            text=text,
            started_at=utc_now_iso(),
        )
        self._jobs[job.job_id] = job
        task = asyncio.create_task(self._run_job(job))
        self._tasks[job.job_id] = task
        logger.info(
            "Job accepted job=%s chat_id=%s sender=%s text=%s",
            job.tag,
            job.chat_id,
            message.sender_name,
            one_line(text, 120),
        )
        return True

    def active_jobs(self) -> list[Job]:
        return sorted(self._jobs.values(), key=lambda job: job.job_id)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        if self.runner is not None:
            killed = self.runner.close()
            if killed:
                logger.info("Terminated %s running process group(s) on shutdown", killed)
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()
        self._jobs.clear()

    async def _run_job(self, job: Job) -> None:
        try:
            if self._semaphore is None:
                await self._process(job)
            else:
                async with self._semaphore:
                    await self._process(job)
        except asyncio.CancelledError:
            logger.info("Job cancelled job=%s", job.tag)
            raise
        except Exception:
            logger.exception("Job failed job=%s chat_id=%s", job.tag, job.chat_id)
            await self._deliver(job, JOB_FAILED_TEXT)
        finally:
            self._tasks.pop(job.job_id, None)
            self._jobs.pop(job.job_id, None)

    async def _process(self, job: Job) -> None:
        local_reply = self._local_reply(job.text)
        if local_reply is not None:
            job.phase = "local"
            await self._deliver(job, local_reply)
            return

        job.phase = "analyzing"
        job.status = await asyncio.to_thread(
            self.transport.post_status,
            job.chat_id,
            ANALYZING_TEXT,
            reply_to=job.message_id,
        )

        try:
            classification = await asyncio.to_thread(self.classifier.classify, job.text)
        except LlmError as exc:
            logger.warning("Classification failed job=%s error=%s", job.tag, exc)
            await self._deliver(job, ANALYZE_FAILED_TEXT.format(error=exc))
            return

        if isinstance(classification, Question):
            job.phase = "answering"
            await self._deliver(job, classification.answer)
            return

        commands = parse_commands(classification.raw_plan, working_dir=self.settings.working_dir)
        if not commands:
            logger.info("No command in plan job=%s", job.tag)
            await self._deliver(job, NO_COMMAND_TEXT)
            return

        job.phase = "running"
        await self._deliver(job, render_plan(commands))
        report = await asyncio.to_thread(
            self.orchestrator.run_plan,
            commands,
            on_progress=self._progress_callback(job, commands),
            job_tag=job.tag,
        )

        job.phase = "reporting"
        text = render_report(report) if self.settings.echo_result else render_summary(report)
        await self._deliver(job, text)

        if report.artifacts:
            sent = await asyncio.to_thread(self.transport.send_artifacts, job.chat_id, report.artifacts)
            if not sent:
                logger.warning("Some artifacts were not delivered job=%s count=%s", job.tag, len(report.artifacts))
        job.phase = "done"

    def _progress_callback(self, job: Job, commands: list[Command]) -> ProgressCallback:
        # Invoked on the orchestrator's worker thread, so the blocking edit is safe here.
        def on_progress(event: ProgressEvent) -> None:
            if event.state not in STATUS_UPDATE_STATES or job.status is None:
                return
            self.transport.edit(job.status, render_plan(commands, progress=event))

        return on_progress

    async def _deliver(self, job: Job, text: str) -> None:
        chunks = chunk_text(text, self.message_limit)
        first, rest = chunks[0], chunks[1:]

        edited = False
        if job.status is not None:
            edited = await asyncio.to_thread(self.transport.edit, job.status, first)
        if not edited:
            handle = await asyncio.to_thread(self.transport.send_text, job.chat_id, first)
            if handle is None:
                logger.warning("Could not deliver reply job=%s chat_id=%s", job.tag, job.chat_id)
            else:
                job.status = handle

        for chunk in rest:
            handle = await asyncio.to_thread(self.transport.send_text, job.chat_id, chunk)
            if handle is None:
                logger.warning("Could not deliver report continuation job=%s chat_id=%s", job.tag, job.chat_id)

    def _local_reply(self, text: str) -> str | None:
        if not text.startswith("/"):
            return None
        head, _, rest = text.partition(" ")
        name = head.split("@", 1)[0].lower()
        if name in {"/start", "/help"}:
            return HELP_TEXT
        if name == "/skills":
            return list_skills_summary(self.skills)
        if name == "/install":
            query = rest.strip()
            if not query:
                return "Usage: /install <skill>"
            return get_install_instructions(self.skills, query) or f"Unknown skill: {query}. Send /skills to list installed skills."
        return None
