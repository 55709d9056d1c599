"""
Socket.IO side channel.
Clients join a conversation room and receive every message the ledger
persists for that conversation, whichever channel produced it. Only the
authenticated owner of a conversation may join its room.
"""
import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, Sequence

import socketio

from core.logging_config import get_logger

logger = get_logger(__name__)

OwnerLookup = Callable[[str], Optional[int]]


def conversation_room(conversation_id: str) -> str:
    return f"conversation_{conversation_id}"


class ConversationEvents:
    """Owns the Socket.IO server and the conversation-room handlers."""

    def __init__(
        self,
        cors_origins: Sequence[str] = ("*",),
        verify_token: Optional[Callable[[str], int]] = None,
        owner_of: Optional[OwnerLookup] = None,
    ):
        origins = list(cors_origins)
        self.sio = socketio.AsyncServer(
            async_mode='asgi',
            cors_allowed_origins='*' if origins == ['*'] else origins,
            logger=False,
            engineio_logger=False
        )
        self._verify_token = verify_token
        self._owner_of = owner_of
        # sid -> user_id
        self.session_users: Dict[str, int] = {}
        self._register_handlers()

    def bind_verifier(self, verify_token: Callable[[str], int], owner_of: Optional[OwnerLookup] = None) -> None:
        self._verify_token = verify_token
        if owner_of is not None:
            self._owner_of = owner_of

    def asgi_app(self, other_asgi_app=None) -> socketio.ASGIApp:
        return socketio.ASGIApp(self.sio, other_asgi_app=other_asgi_app, socketio_path='/socket.io')

    async def may_join(self, sid: str, conversation_id: str) -> bool:
        user_id = self.session_users.get(sid)
        if user_id is None or self._owner_of is None:
            return False
        owner = await asyncio.to_thread(self._owner_of, conversation_id)
        return owner is not None and owner == user_id

    def _register_handlers(self) -> None:
        sio = self.sio

        @sio.event
        async def connect(sid, environ, auth=None):
            token = (auth or {}).get('token')
            if self._verify_token is not None and token:
                try:
                    self.session_users[sid] = self._verify_token(token)
                except Exception as e:  # noqa: BLE001
                    logger.info("Socket.IO token rejected", extra={"sid": sid, "error": str(e)})
            logger.info("Client connected", extra={"sid": sid, "user_id": self.session_users.get(sid)})
            await sio.emit('connected', {
                'message': 'Connected',
                'timestamp': datetime.now(timezone.utc).isoformat()
            }, room=sid)

        @sio.event
        async def disconnect(sid, reason=None):
            self.session_users.pop(sid, None)
            logger.info("Client disconnected", extra={"sid": sid})

        @sio.event
        async def join_conversation(sid, data):
            conversation_id = (data or {}).get('conversation_id') or (data or {}).get('conversationId')
            if not conversation_id:
                await sio.emit('error', {'message': 'Missing conversation_id'}, room=sid)
                return
            if not await self.may_join(sid, conversation_id):
                logger.info("Conversation room join refused", extra={
                    "sid": sid,
                    "user_id": self.session_users.get(sid),
                })
                await sio.emit('error', {'message': 'Conversation not found!'}, room=sid)
                return
            room = conversation_room(conversation_id)
            await sio.enter_room(sid, room)
            logger.info("Joined conversation room", extra={"sid": sid, "room": room})
            await sio.emit('joined_conversation', {'conversation_id': conversation_id}, room=sid)

        @sio.event
        async def leave_conversation(sid, data):
            conversation_id = (data or {}).get('conversation_id') or (data or {}).get('conversationId')
            if conversation_id:
                await sio.leave_room(sid, conversation_room(conversation_id))

        @sio.event
        async def ping(sid):
            await sio.emit('pong', {'timestamp': datetime.now(timezone.utc).isoformat()}, room=sid)

    async def emit_message(self, conversation_id: str, message: dict) -> None:
        """Publish one persisted ledger message; delivery failures are only logged."""
        room = conversation_room(conversation_id)
        try:
            await self.sio.emit('conversation_message', {'conversationId': conversation_id, **message}, room=room)
            logger.debug("Emitted conversation message", extra={"room": room})
        except Exception as e:  # noqa: BLE001
            logger.error("Failed to emit conversation message", extra={"room": room, "error": str(e)})
