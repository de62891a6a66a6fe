from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Header, HTTPException
from pydantic import ValidationError

from .integrations import integration_status
from .schemas import JobResponse, SkillResponse, TelegramUpdate, WebhookAck
from .service_container import Services
from .telegram import inbound_from_update

logger = logging.getLogger(__name__)


def create_app(services: Services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "Shellbot starting transport=%s skills=%s working_dir=%s",
            services.settings.transport_mode,
            len(services.skills),
            services.settings.working_dir,
        )
        if services.poller is not None:
            services.poller.start()
        try:
            yield
        finally:
            if services.poller is not None:
                await services.poller.stop()
            await services.dispatcher.shutdown()

    app = FastAPI(title="Shellbot", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"ok": True}

    @app.get("/health/integrations")
    async def health_integrations() -> dict[str, Any]:
        return integration_status(services.settings, runner=services.runner, skills=services.skills)

    @app.get("/v1/skills", response_model=list[SkillResponse])
    async def list_skills() -> list[SkillResponse]:
        return [
            SkillResponse(
                id=skill.id,
                name=skill.name,
                description=skill.description,
                has_install_notes=bool(skill.install),
                triggers=list(skill.triggers),
            )
            for skill in services.skills
        ]

    @app.get("/v1/jobs", response_model=list[JobResponse])
    async def list_jobs() -> list[JobResponse]:
        return [
            JobResponse(
                job_id=job.job_id,
                chat_id=job.chat_id,
                message_id=job.message_id,
                phase=job.phase,
                started_at=job.started_at,
                text=job.text,
            )
            for job in services.dispatcher.active_jobs()
        ]

    @app.post("/telegram/webhook", response_model=WebhookAck)
    async def telegram_webhook(
        payload: dict[str, Any],
        x_telegram_bot_api_secret_token: str | None = Header(default=None),
    ) -> WebhookAck:
        if services.settings.transport_mode != "webhook":
            raise HTTPException(status_code=404, detail="Webhook transport is not enabled")
        secret = services.settings.webhook_secret
        if secret and not hmac.compare_digest(x_telegram_bot_api_secret_token or "", secret):
            raise HTTPException(status_code=403, detail="Invalid webhook secret")

        try:
            update = TelegramUpdate.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Rejected malformed webhook update error=%s", exc)
            raise HTTPException(status_code=422, detail="Malformed Telegram update") from exc

        message = inbound_from_update(update)
        accepted = message is not None and services.dispatcher.accept(message)
        return WebhookAck(accepted=accepted)

    return app
