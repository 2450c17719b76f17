from __future__ import annotations

import json
import logging

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from common.config import GatewaySettings
from common.schemas import (
    AddKeyRequest,
    ApiKey,
    ChunkInfo,
    ChunkMessage,
    ClientMessageType,
    ErrorMessage,
    KeyView,
    ReportView,
    RequestOutcome,
    SessionCompleteMessage,
    SessionStats,
    ShuffleRequest,
    StartMessage,
    ValidationView,
)
from common.storage import JsonFileStorage, Storage
from detector_service.models import Chunk
from gateway.audio_utils import SUPPORTED_ENCODINGS, decode_pcm
from gateway.session import SessionManager
from keys_service.manager import KeyRotationManager
from keys_service.pool import mask_key

logger = logging.getLogger(__name__)


def key_view(key: ApiKey) -> KeyView:
    return KeyView(
        id=key.id,
        name=key.name,
        masked=mask_key(key.secret),
        is_active=key.is_active,
        is_primary=key.is_primary,
        is_disabled=key.is_disabled,
        disabled_reason=key.disabled_reason,
        rate_limited=key.rate_limited,
        rate_limited_until=key.rate_limited_until,
        fail_count=key.fail_count,
        usage_count=key.usage_count,
        last_error=key.last_error,
    )


def chunk_info(chunk: Chunk) -> ChunkInfo:
    return ChunkInfo(
        id=chunk.id,
        start_time=chunk.start_time,
        end_time=chunk.end_time,
        duration=chunk.duration,
        speech_ratio=round(chunk.speech_ratio, 4),
        sample_count=len(chunk.samples),
        sample_rate=chunk.sample_rate,
    )


def create_app(
    settings: GatewaySettings | None = None,
    storage: Storage | None = None,
    keys: KeyRotationManager | None = None,
) -> FastAPI:
    settings = settings or GatewaySettings()
    storage = storage if storage is not None else JsonFileStorage(settings.state_path)
    keys = keys or KeyRotationManager(storage=storage)
    sessions = SessionManager(max_sessions=settings.max_sessions, storage=storage)

    app = FastAPI(title="Speech Relay Gateway")
    app.state.keys = keys
    app.state.sessions = sessions

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "active_sessions": sessions.active_count,
            "keys": keys.key_count,
            "available_keys": keys.active_key_count,
        }

    @app.get("/keys", response_model=list[KeyView])
    async def list_keys():
        return [key_view(k) for k in keys.get_keys()]

    @app.post("/keys", response_model=KeyView, status_code=201)
    async def add_key(req: AddKeyRequest):
        try:
            key = keys.add_key(req.secret, req.name)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc))
        return key_view(key)

    @app.delete("/keys/{key_id}", status_code=204)
    async def remove_key(key_id: str):
        if not keys.remove_key(key_id):
            raise HTTPException(status_code=404, detail="Unknown key")

    @app.put("/keys/shuffle")
    async def set_shuffle(req: ShuffleRequest):
        keys.set_shuffle_mode(req.enabled)
        return {"shuffle_mode": keys.shuffle_mode}

    @app.post("/keys/validate", response_model=ValidationView)
    async def validate_keys():
        result = await keys.get_next_working_key_fast()
        return ValidationView(
            success=result.success,
            key=key_view(result.key) if result.key else None,
            message=result.message,
            failure=result.failure,
        )

    @app.post("/keys/report", response_model=ReportView)
    async def report(outcome: RequestOutcome):
        if outcome.ok:
            keys.report_success()
            current = keys.get_current_key()
            return ReportView(key=key_view(current) if current else None, message="ok")
        result = keys.handle_error(outcome.status_code, outcome.message)
        return ReportView(
            switched=result.switched,
            key=key_view(result.new_key) if result.new_key else None,
            message=result.message,
            kind=result.kind,
        )

    @app.post("/keys/reset-cooldowns", status_code=204)
    async def reset_cooldowns():
        keys.reset_all_cooldowns()

    @app.websocket("/audio")
    async def audio_endpoint(ws: WebSocket):
        await ws.accept()
        stream_id: str | None = None
        try:
            # Expect a start message first (text frame)
            raw = await ws.receive_text()
            msg = json.loads(raw)
            if msg.get("type") != ClientMessageType.start:
                await ws.send_text(ErrorMessage(stream_id="", detail="Expected start message").model_dump_json())
                await ws.close()
                return

            start = StartMessage(**msg)
            if start.encoding not in SUPPORTED_ENCODINGS:
                await ws.send_text(
                    ErrorMessage(stream_id=start.stream_id, detail=f"Unsupported encoding: {start.encoding}").model_dump_json()
                )
                await ws.close()
                return
            session = await sessions.create(
                stream_id=start.stream_id,
                sample_rate=start.sample_rate,
                channels=start.channels,
                encoding=start.encoding,
            )
            stream_id = start.stream_id

            while True:
                message = await ws.receive()
                if message.get("type") == "websocket.disconnect":
                    break

                if message.get("bytes") is not None:
                    audio = decode_pcm(message["bytes"], session.encoding, session.channels)
                    for chunk in session.feed(audio):
                        await ws.send_text(
                            ChunkMessage(stream_id=stream_id, chunk=chunk_info(chunk)).model_dump_json()
                        )
                elif message.get("text") is not None:
                    data = json.loads(message["text"])
                    if data.get("type") == ClientMessageType.end:
                        session.detector.stop()
                        for chunk in session.take_pending():
                            await ws.send_text(
                                ChunkMessage(stream_id=stream_id, chunk=chunk_info(chunk)).model_dump_json()
                            )
                        stats = session.detector.get_stats()
                        complete = SessionCompleteMessage(
                            stream_id=stream_id,
                            stats=SessionStats(
                                total_speech_time=stats.total_speech_time,
                                total_silence_time=stats.total_silence_time,
                                speech_ratio=stats.speech_ratio,
                                chunks_sent=stats.chunks_sent,
                                avg_chunk_duration=stats.avg_chunk_duration,
                            ),
                        )
                        await ws.send_text(complete.model_dump_json())
                        break

        except WebSocketDisconnect:
            logger.info("Client disconnected: %s", stream_id)
        except (RuntimeError, ValueError) as exc:
            logger.warning("Session error: %s", exc)
            await ws.send_text(ErrorMessage(stream_id=stream_id or "", detail=str(exc)).model_dump_json())
        except Exception:
            logger.exception("Unexpected error in audio endpoint")
        finally:
            if stream_id:
                await sessions.remove(stream_id)

    return app


settings = GatewaySettings()
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
