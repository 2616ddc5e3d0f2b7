"""Streaming completion client: decodes server-sent events and routes them to handlers.

One session runs per thread key. Starting another completion on the same key
supersedes the running one, and frames that belong to a cancelled or superseded
session are dropped before they reach any handler.
"""

from __future__ import annotations

import asyncio
import codecs
import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import BackendConfig
from ..models import (
    ERROR_KINDS,
    CitationMetadata,
    ErrorKind,
    Message,
    ProposedAction,
    StreamWarning,
    ToolCall,
)
from .backend import build_http_client

logger = logging.getLogger(__name__)

COMPLETIONS_PATH = "/api/v1/chat/completions"

KNOWN_EVENTS = frozenset(
    {
        "thread",
        "delta",
        "message",
        "toolcall",
        "proposed_action",
        "citation_metadata",
        "complete",
        "done",
        "error",
        "warning",
    }
)


class StreamDecodeError(Exception):
    """A known event arrived with a payload that could not be understood."""

    def __init__(self, event: str, detail: str) -> None:
        self.event = event
        self.detail = detail
        super().__init__(f"Malformed {event!r} event: {detail}")


# --- Wire decoding ---


@dataclass
class SSEFrame:
    event: str
    data: str = ""

    def json(self) -> Any:
        if not self.data:
            return None
        return json.loads(self.data)


class SSEDecoder:
    """Incremental decoder for ``text/event-stream`` bodies.

    Bytes may be split anywhere, including inside a multi-byte character.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[SSEFrame]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        self._buffer += text
        # A lone trailing "\r" may be the first half of "\r\n"; wait for the next chunk.
        carry = ""
        if self._buffer.endswith("\r"):
            self._buffer, carry = self._buffer[:-1], "\r"
        self._buffer = self._buffer.replace("\r\n", "\n").replace("\r", "\n")

        frames: list[SSEFrame] = []
        while True:
            boundary = self._buffer.find("\n\n")
            if boundary == -1:
                break
            raw = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + 2 :]
            frame = parse_frame(raw)
            if frame is not None:
                frames.append(frame)
        self._buffer += carry
        return frames

    def flush(self) -> list[SSEFrame]:
        """Return the trailing frame of a body that did not end with a blank line."""
        self._buffer += self._decoder.decode(b"", final=True)
        raw = self._buffer.replace("\r\n", "\n").replace("\r", "\n").strip("\n")
        self._buffer = ""
        if not raw:
            return []
        frame = parse_frame(raw)
        return [frame] if frame is not None else []


def parse_frame(raw: str) -> SSEFrame | None:
    event: str | None = None
    data_lines: list[str] = []
    for line in raw.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, sep, value = line.partition(":")
        if not sep:
            name, value = line, ""
        elif value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value.strip()
        elif name == "data":
            data_lines.append(value)
    if event is None and not data_lines:
        return None
    return SSEFrame(event=event or "message", data="\n".join(data_lines))


# --- Error classification ---


def classify_status(status_code: int) -> ErrorKind:
    if status_code == 0:
        return "network"
    if status_code in (401, 403):
        return "auth"
    if status_code == 429:
        return "rate_limit"
    if status_code >= 500:
        return "server_error"
    if 400 <= status_code < 500:
        return "bad_request"
    return "unknown"


def classify_exception(exc: BaseException) -> ErrorKind:
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, (httpx.TransportError, ConnectionError, asyncio.TimeoutError)):
        return "network"
    return "unknown"


def normalize_error_kind(value: Any) -> ErrorKind:
    return value if value in ERROR_KINDS else "unknown"


def _error_detail(body: bytes, status_code: int) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        text = body.decode("utf-8", errors="replace").strip()
        return text[:300] or f"HTTP {status_code}"
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("message")
        if detail:
            return str(detail)
    return f"HTTP {status_code}"


# --- Handlers and sessions ---


class StreamHandlers:
    """Callbacks for a completion stream. Override what you need; the rest are no-ops."""

    async def on_thread(self, thread_id: str) -> None:
        pass

    async def on_delta(self, message_id: str, delta: str, channel: str) -> None:
        pass

    async def on_message(self, message: Message) -> None:
        pass

    async def on_toolcall(self, message_id: str, toolcall: ToolCall) -> None:
        pass

    async def on_proposed_actions(self, message_id: str, toolcall_id: str | None, actions: list[ProposedAction]) -> None:
        pass

    async def on_citation_metadata(self, message_id: str | None, citation: CitationMetadata) -> None:
        pass

    async def on_complete(self, message_id: str) -> None:
        pass

    async def on_done(self, message_id: str | None) -> None:
        pass

    async def on_error(self, message_id: str | None, kind: ErrorKind, message: str) -> None:
        pass

    async def on_warning(self, message_id: str | None, warning: StreamWarning) -> None:
        pass

    async def on_decode_error(self, event: str, error: StreamDecodeError) -> None:
        pass


@dataclass(eq=False)
class StreamSession:
    thread_key: str
    generation: int
    handlers: StreamHandlers
    message_ids: list[str] = field(default_factory=list)
    cancelled: bool = False
    finished: bool = False
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def active_message_id(self) -> str | None:
        return self.message_ids[-1] if self.message_ids else None

    def track_message(self, message_id: str | None) -> None:
        if message_id and (not self.message_ids or self.message_ids[-1] != message_id):
            if message_id in self.message_ids:
                self.message_ids.remove(message_id)
            self.message_ids.append(message_id)

    @property
    def is_live(self) -> bool:
        return not self.cancelled and not self.finished

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()

    async def wait(self) -> None:
        if self.task is None:
            return
        try:
            await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if not self.task.cancelled():
                raise


def _require(payload: Any, event: str, *keys: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise StreamDecodeError(event, "payload is not an object")
    missing = [k for k in keys if payload.get(k) in (None, "")]
    if missing:
        raise StreamDecodeError(event, f"missing {', '.join(missing)}")
    return payload


def _pick(payload: dict[str, Any], camel: str, snake: str) -> Any:
    value = payload.get(camel)
    return payload.get(snake) if value is None else value


def _maybe_json(value: Any, event: str) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError as e:
            raise StreamDecodeError(event, f"embedded JSON is invalid: {e}") from e
    return value


class StreamCompletionClient:
    def __init__(self, config: BackendConfig, http_client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._client = http_client or build_http_client(config, streaming=True)
        self._sessions: dict[str, StreamSession] = {}
        self._generations = itertools.count(1)

    def active_session(self, thread_key: str) -> StreamSession | None:
        session = self._sessions.get(thread_key)
        return session if session is not None and session.is_live else None

    def is_current(self, session: StreamSession) -> bool:
        return session.is_live and self._sessions.get(session.thread_key) is session

    def begin(self, thread_key: str, handlers: StreamHandlers, message_id: str | None = None) -> StreamSession:
        """Register a new session for ``thread_key``, superseding any live one."""
        previous = self._sessions.get(thread_key)
        if previous is not None and previous.is_live:
            logger.info("Superseding stream generation %d on %s", previous.generation, thread_key)
            previous.cancel()
        session = StreamSession(thread_key=thread_key, generation=next(self._generations), handlers=handlers)
        session.track_message(message_id)
        self._sessions[thread_key] = session
        return session

    def start(
        self,
        payload: dict[str, Any],
        handlers: StreamHandlers,
        thread_key: str = "default",
        message_id: str | None = None,
    ) -> StreamSession:
        session = self.begin(thread_key, handlers, message_id)
        session.task = asyncio.get_running_loop().create_task(self._run(session, payload))
        return session

    def cancel(self, thread_key: str) -> StreamSession | None:
        session = self._sessions.get(thread_key)
        if session is None or not session.is_live:
            return None
        session.cancel()
        return session

    async def aclose(self) -> None:
        for session in list(self._sessions.values()):
            session.cancel()
        tasks = [s.task for s in self._sessions.values() if s.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._sessions.clear()
        await self._client.aclose()

    def _finish(self, session: StreamSession) -> None:
        session.finished = True
        if self._sessions.get(session.thread_key) is session:
            del self._sessions[session.thread_key]

    async def _run(self, session: StreamSession, payload: dict[str, Any]) -> None:
        try:
            async with self._client.stream(
                "POST",
                COMPLETIONS_PATH,
                json=payload,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    kind = classify_status(response.status_code)
                    logger.warning("Completion request failed: HTTP %d (%s)", response.status_code, kind)
                    await self._report_error(session, kind, _error_detail(body, response.status_code))
                    return

                decoder = SSEDecoder()
                async for chunk in response.aiter_bytes():
                    for frame in decoder.feed(chunk):
                        await self.deliver(session, frame)
                        if not self.is_current(session):
                            return
                for frame in decoder.flush():
                    await self.deliver(session, frame)

            if self.is_current(session):
                logger.warning("Stream for %s ended without a terminal event", session.thread_key)
                await self._report_error(session, "network", "Stream ended unexpectedly")
        except asyncio.CancelledError:
            logger.debug("Stream generation %d cancelled", session.generation)
            raise
        except httpx.HTTPError as e:
            kind = classify_exception(e)
            logger.warning("Completion stream transport error (%s): %s", kind, e)
            await self._report_error(session, kind, str(e) or type(e).__name__)
        except Exception as e:
            logger.exception("Completion stream failed")
            await self._report_error(session, "unknown", str(e) or type(e).__name__)
        finally:
            if self._sessions.get(session.thread_key) is session:
                self._finish(session)

    async def _report_error(self, session: StreamSession, kind: ErrorKind, message: str) -> None:
        if not self.is_current(session):
            return
        self._finish(session)
        try:
            await session.handlers.on_error(session.active_message_id, kind, message)
        except Exception:
            logger.exception("on_error handler failed")

    async def deliver(self, session: StreamSession, frame: SSEFrame) -> bool:
        """Route one frame to the session's handlers.

        Returns False when the frame was dropped: stale session, unknown event or
        malformed payload (the latter reported through ``on_decode_error``).
        """
        if not self.is_current(session):
            logger.debug("Dropping %s event for stale generation %d", frame.event, session.generation)
            return False
        if frame.event not in KNOWN_EVENTS:
            logger.debug("Ignoring unknown event %r", frame.event)
            return False

        handlers = session.handlers
        try:
            try:
                payload = frame.json()
            except ValueError:
                if frame.event != "thread":
                    raise StreamDecodeError(frame.event, "data is not valid JSON")
                payload = frame.data.strip()
            await self._dispatch(session, frame.event, payload)
        except StreamDecodeError as e:
            logger.warning("%s", e)
            try:
                await handlers.on_decode_error(frame.event, e)
            except Exception:
                logger.exception("on_decode_error handler failed")
            return False
        except Exception:
            logger.exception("Handler for %s event failed", frame.event)
            return False
        return True

    async def _dispatch(self, session: StreamSession, event: str, payload: Any) -> None:
        handlers = session.handlers

        if event == "thread":
            thread_id = payload if isinstance(payload, str) else None
            if isinstance(payload, dict):
                thread_id = _pick(payload, "threadId", "thread_id")
            if not thread_id:
                raise StreamDecodeError(event, "missing threadId")
            await handlers.on_thread(str(thread_id))

        elif event == "delta":
            data = _require(payload, event, "messageId")
            delta = data.get("delta")
            if not isinstance(delta, str):
                raise StreamDecodeError(event, "missing delta")
            channel = data.get("type") or "content"
            if channel not in ("content", "reasoning"):
                raise StreamDecodeError(event, f"unknown delta type {channel!r}")
            session.track_message(data["messageId"])
            await handlers.on_delta(data["messageId"], delta, channel)

        elif event == "message":
            data = _require(payload, event)
            raw = _maybe_json(data["message"], event) if "message" in data else data
            try:
                message = Message.model_validate(raw)
            except ValidationError as e:
                raise StreamDecodeError(event, str(e)) from e
            session.track_message(message.id)
            await handlers.on_message(message)

        elif event == "toolcall":
            data = _require(payload, event, "messageId", "toolcall")
            raw = _maybe_json(data["toolcall"], event)
            if isinstance(raw, dict):
                raw = {**raw}
                raw.setdefault("id", data.get("toolcallId"))
                raw.setdefault("message_id", data["messageId"])
            try:
                toolcall = ToolCall.model_validate(raw)
            except ValidationError as e:
                raise StreamDecodeError(event, str(e)) from e
            session.track_message(data["messageId"])
            await handlers.on_toolcall(data["messageId"], toolcall)

        elif event == "proposed_action":
            data = _require(payload, event)
            message_id = data.get("messageId") or data.get("message_id") or session.active_message_id or ""
            toolcall_id = data.get("toolcallId") or data.get("toolcall_id")
            raw = data.get("actions", data.get("action"))
            raw = _maybe_json(raw, event)
            if raw is None:
                raise StreamDecodeError(event, "missing action")
            items = raw if isinstance(raw, list) else [raw]
            actions: list[ProposedAction] = []
            for item in items:
                try:
                    if isinstance(item, dict):
                        item = {**item}
                        if not (item.get("message_id") or item.get("messageId")):
                            item["message_id"] = message_id
                        if toolcall_id and not (item.get("toolcall_id") or item.get("toolcallId")):
                            item["toolcall_id"] = toolcall_id
                    actions.append(ProposedAction.model_validate(item))
                except ValidationError as e:
                    err = StreamDecodeError(event, f"invalid proposed action: {e.errors()[0].get('msg', e)}")
                    logger.warning("%s", err)
                    await handlers.on_decode_error(event, err)
            if actions:
                await handlers.on_proposed_actions(message_id, toolcall_id, actions)

        elif event == "citation_metadata":
            data = _require(payload, event)
            raw = data.get("metadata", data.get("citationMetadata", data if "citation_id" in data else None))
            raw = _maybe_json(raw, event)
            if not isinstance(raw, dict):
                raise StreamDecodeError(event, "missing metadata")
            message_id = data.get("messageId")
            if message_id and not raw.get("message_id"):
                raw = {**raw, "message_id": message_id}
            try:
                citation = CitationMetadata.model_validate(raw)
            except ValidationError as e:
                raise StreamDecodeError(event, str(e)) from e
            await handlers.on_citation_metadata(message_id, citation)

        elif event == "complete":
            data = _require(payload, event, "messageId")
            await handlers.on_complete(data["messageId"])

        elif event == "done":
            message_id = payload.get("messageId") if isinstance(payload, dict) else None
            self._finish(session)
            await handlers.on_done(message_id)

        elif event == "error":
            data = payload if isinstance(payload, dict) else {}
            message_id = data.get("messageId") or session.active_message_id
            kind = normalize_error_kind(data["type"]) if data.get("type") else "server_error"
            message = str(data.get("message") or data.get("detail") or "")
            self._finish(session)
            await handlers.on_error(message_id, kind, message)

        elif event == "warning":
            data = _require(payload, event, "type", "message")
            message_id = data.get("messageId") or session.active_message_id
            try:
                warning = StreamWarning.model_validate({**data, "message_id": message_id})
            except ValidationError as e:
                raise StreamDecodeError(event, str(e)) from e
            await handlers.on_warning(message_id, warning)
