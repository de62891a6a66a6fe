from __future__ import annotations

from dataclasses import dataclass

from .artifacts import ArtifactScanner
from .config import Settings
from .dispatcher import MessageDispatcher
from .llm_client import LlmClient
from .orchestrator import ExecutionOrchestrator
from .poller import UpdatePoller
from .runner import ProcessRunner
from .skills import Skill, load_skills
from .telegram import TelegramAPI, TelegramTransport


@dataclass
class Services:
    settings: Settings
    skills: list[Skill]
    runner: ProcessRunner
    scanner: ArtifactScanner
    llm: LlmClient
    orchestrator: ExecutionOrchestrator
    telegram: TelegramAPI
    transport: TelegramTransport
    dispatcher: MessageDispatcher
    poller: UpdatePoller | None


def build_services(settings: Settings) -> Services:
    skills = load_skills(settings.skills_dir)
    runner = ProcessRunner(activate_venv=settings.activate_venv, max_output_bytes=settings.max_output_bytes)
    scanner = ArtifactScanner()
    llm = LlmClient(settings, skills=skills)
    orchestrator = ExecutionOrchestrator(
        runner=runner,
        scanner=scanner,
        fix_requester=llm,
        timeout_seconds=settings.command_timeout_seconds,
        max_fix_retries=settings.max_fix_retries,
        skills=skills,
    )
    telegram = TelegramAPI(
        settings.telegram_token,
        http_timeout_seconds=settings.telegram_http_timeout_seconds,
        http_max_retries=settings.telegram_http_max_retries,
    )
    transport = TelegramTransport(telegram, scanner=scanner)
    dispatcher = MessageDispatcher(
        settings=settings,
        transport=transport,
        classifier=llm,
        orchestrator=orchestrator,
        runner=runner,
        skills=skills,
    )
    poller = None
    if settings.transport_mode == "polling":
        poller = UpdatePoller(
            api=telegram,
            dispatcher=dispatcher,
            poll_timeout_seconds=settings.poll_timeout_seconds,
        )

    return Services(
        settings=settings,
        skills=skills,
        runner=runner,
        scanner=scanner,
        llm=llm,
        orchestrator=orchestrator,
        telegram=telegram,
        transport=transport,
        dispatcher=dispatcher,
        poller=poller,
    )
