from __future__ import annotations

import http.client
import json
import logging
import mimetypes
import time
import urllib.error
import urllib.parse
import urllib.request
import uuid
from pathlib import Path
from typing import Any

from .artifacts import ArtifactScanner
from .schemas import TelegramUpdate
from .types import InboundMessage, StatusHandle
from .utils import chunk_text

logger = logging.getLogger(__name__)

TELEGRAM_MSG_LIMIT = 4096
TELEGRAM_PHOTO_MAX_BYTES = 10 * 1024 * 1024
RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class TelegramError(Exception):
    pass


def _sleep_retry(attempt: int, initial: float, max_s: float, retry_after: float | None) -> None:
    if retry_after is not None and retry_after > 0:
        delay = min(max_s, retry_after) if max_s > 0 else retry_after
    else:
        delay = min(max_s, initial * (2**attempt))
    if delay > 0:
        time.sleep(delay)


def _retry_after_from(parsed: Any) -> float | None:
    if not isinstance(parsed, dict):
        return None
    params = parsed.get("parameters") or {}
    if isinstance(params, dict) and isinstance(params.get("retry_after"), (int, float)):
        return float(params["retry_after"])
    return None


def inbound_from_update(update: TelegramUpdate) -> InboundMessage | None:
    message = update.payload()
    if message is None:
        return None
    sender = message.from_user
    return InboundMessage(
        chat_id=message.chat.id,
        message_id=message.message_id,
        text=message.text,
        sender_id=sender.id if sender else None,
        sender_name=(sender.first_name if sender else None) or message.author_signature or "unknown",
        from_bot=bool(sender and sender.is_bot),
    )


class TelegramAPI:
    def __init__(
        self,
        token: str,
        *,
        http_timeout_seconds: int,
        http_max_retries: int,
        http_retry_initial_seconds: float = 1.0,
        http_retry_max_seconds: float = 10.0,
    ) -> None:
        self._base_url = f"https://api.telegram.org/bot{token}/"
        self._http_timeout_seconds = http_timeout_seconds
        self._http_max_retries = max(0, int(http_max_retries))
        self._http_retry_initial_seconds = max(0.0, float(http_retry_initial_seconds))
        self._http_retry_max_seconds = max(0.0, float(http_retry_max_seconds))

    def _request(self, method: str, payload: dict[str, Any] | None, *, timeout_seconds: int | None = None) -> Any:
        data = None
        headers = {"Connection": "close"}
        if payload is not None:
            data = urllib.parse.urlencode(payload).encode("utf-8")
            headers["Content-Type"] = "application/x-www-form-urlencoded"
        return self._send(method, data=data, headers=headers, timeout_seconds=timeout_seconds)

    def _request_multipart(self, method: str, *, fields: dict[str, str], file_field: str, file_path: Path) -> Any:
        boundary = f"----shellbot{uuid.uuid4().hex}"
        filename = file_path.name
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        try:
            file_bytes = file_path.read_bytes()
        except OSError as exc:
            raise TelegramError(f"Failed to read upload file {file_path}: {exc}") from exc

        parts: list[bytes] = []
        for key, value in fields.items():
            parts.append(
                f"--{boundary}\r\nContent-Disposition: form-data; name=\"{key}\"\r\n\r\n{value}\r\n".encode("utf-8")
            )
        parts.append(
            (
                f"--{boundary}\r\n"
                f"Content-Disposition: form-data; name=\"{file_field}\"; filename=\"{filename}\"\r\n"
                f"Content-Type: {content_type}\r\n\r\n"
            ).encode("utf-8")
        )
        parts.append(file_bytes)
        parts.append(f"\r\n--{boundary}--\r\n".encode("utf-8"))
        headers = {"Content-Type": f"multipart/form-data; boundary={boundary}", "Connection": "close"}
        return self._send(method, data=b"".join(parts), headers=headers)

    def _send(
        self,
        method: str,
        *,
        data: bytes | None,
        headers: dict[str, str],
        timeout_seconds: int | None = None,
    ) -> Any:
        req = urllib.request.Request(self._base_url + method, data=data, headers=headers, method="POST")
        timeout = timeout_seconds or self._http_timeout_seconds
        last_err: Exception | None = None

        for attempt in range(self._http_max_retries + 1):
            try:
                with urllib.request.urlopen(req, timeout=timeout) as resp:
                    raw = resp.read().decode("utf-8", errors="replace")
            except urllib.error.HTTPError as exc:
                body = exc.read().decode("utf-8", errors="replace")
                try:
                    retry_after = _retry_after_from(json.loads(body))
                except json.JSONDecodeError:
                    retry_after = None
                if exc.code in RETRYABLE_STATUS and attempt < self._http_max_retries:
                    _sleep_retry(attempt, self._http_retry_initial_seconds, self._http_retry_max_seconds, retry_after)
                    continue
                raise TelegramError(f"Telegram HTTP error calling {method}: {exc.code} {body[:500]}") from exc
            except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError) as exc:
                last_err = exc
                if attempt < self._http_max_retries:
                    _sleep_retry(attempt, self._http_retry_initial_seconds, self._http_retry_max_seconds, None)
                    continue
                raise TelegramError(f"Telegram request error calling {method}: {exc}") from exc

            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise TelegramError(f"Telegram returned non-JSON for {method}: {raw[:500]}") from exc
            if not isinstance(parsed, dict):
                raise TelegramError(f"Telegram returned an unexpected reply for {method}: {raw[:500]}")

            if not parsed.get("ok", False):
                if parsed.get("error_code") in RETRYABLE_STATUS and attempt < self._http_max_retries:
                    _sleep_retry(
                        attempt,
                        self._http_retry_initial_seconds,
                        self._http_retry_max_seconds,
                        _retry_after_from(parsed),
                    )
                    continue
                raise TelegramError(f"Telegram API error calling {method}: {raw[:500]}")
            return parsed.get("result")

        raise TelegramError(f"Telegram request failed calling {method}: {last_err}")

    def get_me(self) -> dict[str, Any]:
        return self._request("getMe", None)

    def delete_webhook(self, *, drop_pending_updates: bool = True) -> None:
        self._request("deleteWebhook", {"drop_pending_updates": "true" if drop_pending_updates else "false"})

    def get_updates(self, *, offset: int, timeout_seconds: int) -> list[dict[str, Any]]:
        result = self._request(
            "getUpdates",
            {
                "timeout": str(timeout_seconds),
                "offset": str(offset),
                "allowed_updates": json.dumps(["message", "channel_post"]),
            },
            timeout_seconds=timeout_seconds + self._http_timeout_seconds,
        )
        return result if isinstance(result, list) else []

    def send_message(self, chat_id: int, text: str, *, reply_to_message_id: int | None = None) -> int | None:
        payload: dict[str, Any] = {
            "chat_id": str(chat_id),
            "text": text[:TELEGRAM_MSG_LIMIT],
            "disable_web_page_preview": "1",
        }
        if reply_to_message_id is not None:
            payload["reply_to_message_id"] = str(reply_to_message_id)
        result = self._request("sendMessage", payload)
        if isinstance(result, dict) and result.get("message_id") is not None:
            return int(result["message_id"])
        return None

    def edit_message_text(self, chat_id: int, message_id: int, text: str) -> None:
        payload = {
            "chat_id": str(chat_id),
            "message_id": str(int(message_id)),
            "text": text[:TELEGRAM_MSG_LIMIT],
            "disable_web_page_preview": "1",
        }
        try:
            self._request("editMessageText", payload)
        except TelegramError as exc:
            if "message is not modified" in str(exc):
                return
            raise

    def send_photo(self, chat_id: int, file_path: Path) -> None:
        self._request_multipart("sendPhoto", fields={"chat_id": str(chat_id)}, file_field="photo", file_path=file_path)

    def send_video(self, chat_id: int, file_path: Path) -> None:
        self._request_multipart("sendVideo", fields={"chat_id": str(chat_id)}, file_field="video", file_path=file_path)

    def send_document(self, chat_id: int, file_path: Path) -> None:
        self._request_multipart(
            "sendDocument",
            fields={"chat_id": str(chat_id)},
            file_field="document",
            file_path=file_path,
        )


class TelegramTransport:
    """Chat transport over the Telegram Bot API. All methods block; call them off the event loop."""

    def __init__(self, api: TelegramAPI, *, scanner: ArtifactScanner | None = None) -> None:
        self.api = api
        self.scanner = scanner or ArtifactScanner()

    def post_status(self, chat_id: int, text: str, *, reply_to: int | None = None) -> StatusHandle | None:
        try:
            message_id = self.api.send_message(chat_id, text, reply_to_message_id=reply_to)
        except TelegramError as exc:
            logger.warning("Could not post status chat_id=%s error=%s", chat_id, exc)
            return None
        if message_id is None:
            return None
        return StatusHandle(chat_id=chat_id, message_id=message_id)

    def send_text(self, chat_id: int, text: str) -> StatusHandle | None:
        last: StatusHandle | None = None
        for chunk in chunk_text(text, TELEGRAM_MSG_LIMIT):
            try:
                message_id = self.api.send_message(chat_id, chunk)
            except TelegramError as exc:
                logger.warning("Could not send message chat_id=%s error=%s", chat_id, exc)
                return None
            if message_id is not None:
                last = StatusHandle(chat_id=chat_id, message_id=message_id)
        return last

    def edit(self, handle: StatusHandle, text: str) -> bool:
        try:
            self.api.edit_message_text(handle.chat_id, handle.message_id, text)
        except TelegramError as exc:
            logger.warning("Could not edit status message chat_id=%s message_id=%s error=%s", handle.chat_id, handle.message_id, exc)
            return False
        return True

    def send_artifacts(self, chat_id: int, paths: list[str]) -> bool:
        ok = True
        for raw_path in paths:
            path = Path(raw_path)
            if not path.is_file():
                logger.info("Artifact vanished before upload path=%s", path)
                continue
            try:
                if self.scanner.kind(raw_path) == "video":
                    self.api.send_video(chat_id, path)
                elif path.stat().st_size > TELEGRAM_PHOTO_MAX_BYTES:
                    self.api.send_document(chat_id, path)
                else:
                    self.api.send_photo(chat_id, path)
                logger.info("Artifact sent chat_id=%s path=%s", chat_id, path)
            except (TelegramError, OSError) as exc:
                ok = False
                logger.warning("Artifact upload failed chat_id=%s path=%s error=%s", chat_id, path, exc)
                try:
                    self.api.send_message(chat_id, f"⚠️ Could not send {path}: {exc}")
                except TelegramError:
                    logger.warning("Could not report artifact failure chat_id=%s", chat_id)
        return ok
