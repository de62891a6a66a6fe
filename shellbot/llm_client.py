from __future__ import annotations

import json
import logging
import time
from typing import Any
from urllib import error, request

from pydantic import ValidationError

from .commands import parse_commands, render_plan_block
from .config import Settings
from .schemas import IntentReply
from .skills import Skill, build_prompt_section
from .types import Action, Classification, FixRequest, Question
from .utils import one_line

logger = logging.getLogger(__name__)

CLASSIFY_PROMPT = """You are a message intent classifier. Users send messages through a chat channel and you decide which kind of intent each message carries:

1. "question": the user is asking, chatting or consulting; nothing needs to run on the server.
2. "command": the user wants something done on the server (inspect files, check system state, deploy, install software, take screenshots and so on).

Reply with a single JSON object.

For a question:
{"type": "question", "content": "the complete answer to the user's question"}

For a command:
{"type": "command", "commands": [{"command": "shell command", "description": "what it does"}]}

Notes:
- For screenshots or screen viewing use screencapture (macOS) or scrot/import (Linux) and save the image under /tmp/.
- Reply with JSON only, without any other text or markdown fences.
- For questions, put a detailed and useful answer in the content field."""

FIX_PROMPT = """You repair failed shell commands on a server. You receive a command that failed together with its exit code and output.
Reply with exactly one corrected shell command inside a ```sh fenced block, followed by one short sentence explaining the fix.
If the failure cannot be fixed by running a command, explain why in plain sentences and do not include any code."""


class LlmError(Exception):
    pass


def extract_json_object(text: str) -> str:
    start = text.find("```")
    first_brace = text.find("{")
    # Only unwrap a fence that opens before the object; a plan string may itself hold one.
    if start != -1 and (first_brace == -1 or start < first_brace):
        after = text[start + 3:]
        newline = after.find("\n")
        content = after[newline + 1:] if newline != -1 else after
        end = content.find("```")
        if end != -1:
            return content[:end].strip()
    last = text.rfind("}")
    if first_brace != -1 and last > first_brace:
        return text[first_brace:last + 1]
    return text.strip()


def parse_intent(raw: str) -> Classification:
    """Turn the model's classification reply into a Question or an Action."""
    json_text = extract_json_object(raw)
    try:
        data = json.loads(json_text)
    except json.JSONDecodeError:
        if parse_commands(raw) and "```" in raw:
            logger.info("Model reply was not JSON but carried fenced commands; treating as action")
            return Action(raw_plan=raw)
        raise LlmError(f"Could not parse the model's intent reply: {one_line(raw, 300)}") from None

    if not isinstance(data, dict):
        raise LlmError(f"Model intent reply is not a JSON object: {one_line(raw, 300)}")

    try:
        reply = IntentReply.model_validate(data)
    except ValidationError as exc:
        raise LlmError(f"Model intent reply has an unexpected shape: {exc.errors()[0].get('msg', 'invalid')}") from exc

    if reply.type == "question":
        return Question(answer=reply.content.strip() or "(the model returned an empty answer)")
    if reply.plan and reply.plan.strip():
        return Action(raw_plan=reply.plan)
    return Action(raw_plan=render_plan_block([(item.command, item.description) for item in reply.commands]))


def build_fix_message(fix: FixRequest) -> str:
    status = "timed out" if fix.timed_out else f"exit code {fix.exit_code}"
    sections = [
        f"Planned command:\n{fix.planned_command}",
    ]
    if fix.failed_command != fix.planned_command:
        sections.append(f"Most recent attempt:\n{fix.failed_command}")
    sections.append(f"Result: {status}")
    sections.append(f"stderr:\n{fix.stderr or '(empty)'}")
    if fix.stdout:
        sections.append(f"stdout:\n{fix.stdout}")
    if fix.skill_context:
        sections.append(f"Relevant installed skills:\n{fix.skill_context}")
    return "\n\n".join(sections)


class LlmClient:
    def __init__(self, settings: Settings, *, skills: list[Skill] | None = None) -> None:
        self.settings = settings
        self.skills = list(skills or [])

    def available(self) -> bool:
        return bool(self.settings.llm_api_key and self.settings.llm_model)

    def classification_prompt(self) -> str:
        base = self.settings.llm_system_prompt or CLASSIFY_PROMPT
        return base + build_prompt_section(self.skills)

    def classify(self, text: str) -> Classification:
        started = time.perf_counter()
        raw = self._chat(system_prompt=self.classification_prompt(), user_message=text, purpose="classify")
        classification = parse_intent(raw)
        kind = "question" if isinstance(classification, Question) else "action"
        logger.info(
            "Classified message kind=%s chars=%s elapsed=%.2fs",
            kind,
            len(raw),
            time.perf_counter() - started,
        )
        return classification

    def request_fix(self, fix: FixRequest) -> str:
        raw = self._chat(system_prompt=FIX_PROMPT, user_message=build_fix_message(fix), purpose="fix")
        logger.info("Fix suggestion received chars=%s for cmd=%s", len(raw), one_line(fix.failed_command))
        return raw.strip()

    def _chat(self, *, system_prompt: str, user_message: str, purpose: str) -> str:
        if not self.available():
            raise LlmError("Language model is not configured (missing API key or model)")

        payload = {
            "model": self.settings.llm_model,
            "max_tokens": self.settings.llm_max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
        }
        body = json.dumps(payload).encode("utf-8")
        url = f"{self.settings.llm_base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self.settings.llm_api_key}",
            "Content-Type": "application/json",
        }
        req = request.Request(url, data=body, headers=headers, method="POST")
        logger.debug("LLM request purpose=%s model=%s url=%s", purpose, self.settings.llm_model, url)

        try:
            with request.urlopen(req, timeout=self.settings.llm_timeout_seconds) as response:
                response_text = response.read().decode("utf-8", errors="replace")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            logger.warning("LLM request failed purpose=%s status=%s detail=%s", purpose, exc.code, detail[:500])
            raise LlmError(f"Language model API error {exc.code}: {detail[:300]}") from exc
        except (error.URLError, TimeoutError, OSError) as exc:
            logger.warning("LLM request failed purpose=%s error=%s", purpose, exc)
            raise LlmError(f"Language model request failed: {exc}") from exc

        try:
            response_json = json.loads(response_text)
        except json.JSONDecodeError as exc:
            logger.warning("LLM returned non-JSON response chars=%s", len(response_text))
            raise LlmError("Language model returned a non-JSON response") from exc

        content = self._extract_message_content(response_json)
        if content is None:
            raise LlmError("Language model response has no message content")
        usage = response_json.get("usage") if isinstance(response_json, dict) else None
        if usage:
            logger.debug("LLM usage purpose=%s usage=%s", purpose, usage)
        return content

    def _extract_message_content(self, payload: Any) -> str | None:
        if not isinstance(payload, dict):
            return None
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        first = choices[0]
        if not isinstance(first, dict):
            return None
        message = first.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts = [part.get("text", "") for part in content if isinstance(part, dict)]
            return "".join(parts)
        return None
