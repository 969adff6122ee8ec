import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from multichat.chat_service import ChatService
from multichat.config import Settings
from multichat.entities import ROLE_MEMBER, new_id
from multichat.errors import ChatError

logger = logging.getLogger("multichat_backend")

# ChatError.code -> HTTP status
ERROR_STATUS = {
    "permission_denied": 403,
    "not_a_member": 404,
    "conversation_not_found": 404,
    "message_not_found": 404,
    "capacity_exceeded": 409,
    "ownership_transfer_required": 409,
    "compression_conflict": 409,
    "insufficient_balance": 402,
    "invalid_request": 400,
    "generation_failed": 502,
    "decryption_failed": 500,
}

RELAY_INTERVAL = 0.2


class ConversationIn(BaseModel):
    title: Optional[str] = None
    is_multi_user: bool = False
    max_users: Optional[int] = None
    is_nsfw: bool = False
    character_ids: List[str] = []
    policy: Optional[dict] = None


class MultiUserIn(BaseModel):
    enabled: bool
    max_users: Optional[int] = None


class MessageIn(BaseModel):
    content: str


class InviteIn(BaseModel):
    user_id: str
    role: str = ROLE_MEMBER


class RoleIn(BaseModel):
    role: str


class PermissionsIn(BaseModel):
    can_write: Optional[bool] = None
    can_invite: Optional[bool] = None


class TransferIn(BaseModel):
    new_owner_id: str


def current_user(x_user_id: str = Header(...)) -> str:
    """Identity is verified upstream; the gateway forwards it in X-User-Id."""
    return x_user_id


def create_app(service: Optional[ChatService] = None, settings: Optional[Settings] = None, run_background: bool = True) -> FastAPI:
    settings = settings or (service.settings if service is not None else Settings.from_env())
    service = service or ChatService(settings)

    async def _relay_loop() -> None:
        while True:
            try:
                await asyncio.to_thread(service.pump_events)
            except Exception as e:
                logger.error(f"Outbox relay error: {e}")
            await asyncio.sleep(RELAY_INTERVAL)

    async def _presence_loop() -> None:
        interval = max(1.0, settings.presence_ttl_seconds / 3)
        while True:
            await asyncio.sleep(interval)
            try:
                service.presence.sweep_expired()
                await asyncio.to_thread(service.purge_stale_events)
            except Exception as e:
                logger.error(f"Presence sweep error: {e}")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # presence never survives a restart
        service.presence.clear()
        tasks = []
        if run_background:
            tasks = [asyncio.create_task(_relay_loop()), asyncio.create_task(_presence_loop())]
        yield
        for t in tasks:
            t.cancel()

    app = FastAPI(title="multichat", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Allow all origins for dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        return JSONResponse(status_code=ERROR_STATUS.get(exc.code, 400), content=exc.to_dict())

    @app.get("/health")
    def health_check():
        return {"status": "ok", "presence": service.presence.get_stats()}

    # -----------------------
    # Conversations / membership
    # -----------------------

    @app.post("/conversations")
    def create_conversation(body: ConversationIn, user_id: str = Depends(current_user)):
        return service.create_conversation(
            user_id,
            title=body.title,
            is_multi_user=body.is_multi_user,
            max_users=body.max_users,
            is_nsfw=body.is_nsfw,
            character_ids=body.character_ids,
            policy=body.policy,
        )

    @app.get("/conversations/{conversation_id}")
    def get_conversation(conversation_id: str, user_id: str = Depends(current_user)):
        return service.get_conversation(conversation_id, user_id)

    @app.patch("/conversations/{conversation_id}/multi_user")
    def set_multi_user(conversation_id: str, body: MultiUserIn, user_id: str = Depends(current_user)):
        return service.set_multi_user(conversation_id, user_id, body.enabled, body.max_users)

    @app.get("/conversations/{conversation_id}/members")
    def list_members(conversation_id: str, user_id: str = Depends(current_user)):
        return service.list_members(conversation_id, user_id)

    @app.post("/conversations/{conversation_id}/invites")
    def invite(conversation_id: str, body: InviteIn, user_id: str = Depends(current_user)):
        return service.invite(conversation_id, user_id, body.user_id, body.role)

    @app.post("/conversations/{conversation_id}/join")
    def join(conversation_id: str, user_id: str = Depends(current_user)):
        return service.join(conversation_id, user_id)

    @app.post("/conversations/{conversation_id}/leave")
    def leave(conversation_id: str, user_id: str = Depends(current_user)):
        return service.leave(conversation_id, user_id)

    @app.post("/conversations/{conversation_id}/members/{target_id}/kick")
    def kick(conversation_id: str, target_id: str, user_id: str = Depends(current_user)):
        return service.kick(conversation_id, user_id, target_id)

    @app.patch("/conversations/{conversation_id}/members/{target_id}/role")
    def update_role(conversation_id: str, target_id: str, body: RoleIn, user_id: str = Depends(current_user)):
        return service.update_role(conversation_id, user_id, target_id, body.role)

    @app.patch("/conversations/{conversation_id}/members/{target_id}/permissions")
    def update_permissions(conversation_id: str, target_id: str, body: PermissionsIn, user_id: str = Depends(current_user)):
        return service.update_permissions(
            conversation_id, user_id, target_id, can_write=body.can_write, can_invite=body.can_invite
        )

    @app.post("/conversations/{conversation_id}/transfer")
    def transfer_ownership(conversation_id: str, body: TransferIn, user_id: str = Depends(current_user)):
        return service.transfer_ownership(conversation_id, user_id, body.new_owner_id)

    @app.get("/conversations/{conversation_id}/presence")
    def presence(conversation_id: str, user_id: str = Depends(current_user)):
        return service.list_online(conversation_id, user_id)

    @app.get("/conversations/{conversation_id}/memory")
    def latest_memory(conversation_id: str, user_id: str = Depends(current_user)):
        return {"memory": service.latest_memory(conversation_id, user_id)}

    # -----------------------
    # Messages
    # -----------------------

    @app.get("/conversations/{conversation_id}/messages")
    def list_messages(
        conversation_id: str,
        after_sequence: Optional[int] = None,
        limit: int = 100,
        user_id: str = Depends(current_user),
    ):
        return service.list_messages(conversation_id, user_id, after_sequence=after_sequence, limit=limit)

    @app.post("/conversations/{conversation_id}/messages")
    def send_message(conversation_id: str, body: MessageIn, user_id: str = Depends(current_user)):
        return service.send_message(conversation_id, user_id, body.content)

    @app.post("/conversations/{conversation_id}/messages/{message_id}/reprocess")
    def reprocess(conversation_id: str, message_id: str, user_id: str = Depends(current_user)):
        return service.reprocess(conversation_id, message_id, user_id)

    @app.delete("/conversations/{conversation_id}/messages/{message_id}")
    def delete_message(conversation_id: str, message_id: str, user_id: str = Depends(current_user)):
        return service.delete_message(conversation_id, message_id, user_id)

    @app.get("/jobs/{job_id}")
    def job_status(job_id: str, user_id: str = Depends(current_user)):
        job = service.get_job(job_id)
        if job is None or not service.membership.is_member(job["conversation_id"], user_id):
            return JSONResponse(status_code=404, content={"code": "job_not_found", "message": f"Job not found: {job_id}"})
        return job

    @app.get("/users/me/balance")
    def balance(user_id: str = Depends(current_user)):
        return {"user_id": user_id, "balance": str(service.get_balance(user_id)), "currency": settings.currency}

    # -----------------------
    # WebSocket
    # -----------------------

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket):
        # browsers cannot set headers on a WebSocket; the gateway may use the query string
        user_id = websocket.headers.get("x-user-id") or websocket.query_params.get("user_id")
        if not user_id:
            await websocket.close(code=4401)
            return
        await websocket.accept()
        connection_id = new_id()
        logger.info(f"ws connected user={user_id} connection={connection_id}")

        async def sender() -> None:
            while True:
                channel = service.hub.channel(connection_id)
                if channel is None:
                    await asyncio.sleep(0.05)
                    continue
                event = await asyncio.to_thread(channel.get, 0.5)
                if event is not None:
                    await websocket.send_json({"type": "event", "event": event.to_dict()})

        send_task = asyncio.create_task(sender())
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame: Any = json.loads(raw)
                except json.JSONDecodeError:
                    await websocket.send_json({"type": "error", "code": "invalid_request", "message": "Frame is not JSON"})
                    continue
                if not isinstance(frame, dict):
                    await websocket.send_json({"type": "error", "code": "invalid_request", "message": "Frame must be an object"})
                    continue
                reply = await asyncio.to_thread(service._process_request_data, frame, user_id, connection_id)
                await websocket.send_json(reply)
        except WebSocketDisconnect:
            logger.info(f"ws disconnected user={user_id} connection={connection_id}")
        finally:
            send_task.cancel()
            service.disconnect(connection_id)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
