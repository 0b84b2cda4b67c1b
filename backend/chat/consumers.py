import logging

from channels.db import database_sync_to_async
from channels.generic.websocket import AsyncJsonWebsocketConsumer
from django.db import DatabaseError
from rest_framework.exceptions import APIException
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import AccessToken

from . import events
from .access import require_access
from .engagement import EngagementStore
from .exceptions import TransientFailure, ValidationFailed, error_message
from .ledger import MessageLedger
from .presence import PresenceTracker
from .serializers import (
    ConversationRefSerializer, DeleteMessageSerializer, EditMessageCommandSerializer,
    MessageRefSerializer, PresenceSerializer, SendMessageSerializer, ToggleReactionSerializer,
    TypingSerializer,
)

logger = logging.getLogger(__name__)


class ChatConsumer(AsyncJsonWebsocketConsumer):
    """
    WebSocket consumer for real-time chat.

    Connection: ws://host/ws/chat/?token=<jwt_access_token>
    (or an "Authorization: Bearer <token>" header). Invalid tokens are
    rejected with close code 4001.

    Client sends:
        {"action": "join_conversation", "conversation_id": "uuid"}
        {"action": "leave_conversation", "conversation_id": "uuid"}
        {"action": "send_message", "conversation_id": "uuid", "content": "...", "message_type": "text", ...}
        {"action": "edit_message", "message_id": "uuid", "content": "..."}
        {"action": "delete_message", "message_id": "uuid", "delete_for_everyone": false}
        {"action": "typing", "conversation_id": "uuid", "is_typing": true}
        {"action": "add_reaction", "message_id": "uuid", "emoji": "👍"}
        {"action": "mark_read", "message_id": "uuid"}
        {"action": "update_presence", "is_online": true}

    Server sends:
        {"type": "<event>", ...payload}   routed events, see chat.events
        {"type": "error", "action": "<action>", "message": "..."}
    """

    async def connect(self):
        """Authenticate via JWT and join the user's personal scope"""
        self.user = None
        self.conversation_scopes = set()

        self.user = await self._authenticate()
        if not self.user:
            await self.close(code=4001)
            return

        self.router = events.EventRouter(self.channel_layer)
        self.user_scope = events.user_scope(self.user.id)
        await self.router.join(self.user_scope, self.channel_name)
        await self.accept()

        await self._call(PresenceTracker(self.router).set_online, self.user.id, True)
        logger.info(f'WebSocket connected: {self.user.email}')

    async def disconnect(self, close_code):
        """Leave every scope and mark the user offline"""
        if not getattr(self, 'user', None):
            return
        await self.router.leave(self.user_scope, self.channel_name)
        for scope in self.conversation_scopes:
            await self.router.leave(scope, self.channel_name)
        self.conversation_scopes.clear()

        try:
            await self._call(PresenceTracker(self.router).set_online, self.user.id, False)
        except APIException as e:
            logger.warning(f'Could not mark {self.user.email} offline: {e}')
        logger.info(f'WebSocket disconnected: {self.user.email} (code {close_code})')

    async def receive_json(self, content, **kwargs):
        """Route incoming frames to handlers"""
        if not isinstance(content, dict):
            await self._send_error(None, 'Frames must be JSON objects')
            return

        action = content.get('action')
        handlers = {
            'join_conversation': self._handle_join,
            'leave_conversation': self._handle_leave,
            'send_message': self._handle_send_message,
            'edit_message': self._handle_edit_message,
            'delete_message': self._handle_delete_message,
            'typing': self._handle_typing,
            'add_reaction': self._handle_reaction,
            'mark_read': self._handle_mark_read,
            'update_presence': self._handle_presence,
        }

        handler = handlers.get(action)
        if not handler:
            await self._send_error(action, f'Unknown action: {action}')
            return

        try:
            await handler(content)
        except APIException as e:
            await self._send_error(action, error_message(e.detail))
        except Exception:
            logger.exception(f'Error handling {action} from {self.user.email}')
            await self._send_error(action, 'Server error')

    # ── ACTION HANDLERS ──

    async def _handle_join(self, data):
        conversation_id = self._validate(ConversationRefSerializer, data)['conversation_id']
        await self._call(require_access, self.user.id, conversation_id)

        scope = events.conversation_scope(conversation_id)
        await self.router.join(scope, self.channel_name)
        self.conversation_scopes.add(scope)
        await self.router.apublish(scope, events.USER_JOINED, {
            'user_id': self.user.id,
            'conversation_id': str(conversation_id),
        }, exclude_channel=self.channel_name)

    async def _handle_leave(self, data):
        conversation_id = self._validate(ConversationRefSerializer, data)['conversation_id']
        scope = events.conversation_scope(conversation_id)
        await self.router.leave(scope, self.channel_name)
        self.conversation_scopes.discard(scope)
        await self.router.apublish(scope, events.USER_LEFT, {
            'user_id': self.user.id,
            'conversation_id': str(conversation_id),
        }, exclude_channel=self.channel_name)

    async def _handle_send_message(self, data):
        data = self._validate(SendMessageSerializer, data)
        await self._call(
            MessageLedger(self.router).send,
            self.user.id,
            data['conversation_id'],
            data['content'],
            message_type=data['message_type'],
            media={
                'media_url': data['media_url'],
                'file_name': data['file_name'],
                'file_size': data['file_size'],
            },
            mention_ids=data['mention_ids'],
        )

    async def _handle_edit_message(self, data):
        data = self._validate(EditMessageCommandSerializer, data)
        await self._call(MessageLedger(self.router).edit, self.user.id, data['message_id'], data['content'])

    async def _handle_delete_message(self, data):
        data = self._validate(DeleteMessageSerializer, data)
        await self._call(
            MessageLedger(self.router).delete,
            self.user.id, data['message_id'], data['delete_for_everyone'],
        )

    async def _handle_typing(self, data):
        """Relay the typing indicator to everyone else in a joined conversation"""
        data = self._validate(TypingSerializer, data)
        await self._call(require_access, self.user.id, data['conversation_id'])
        scope = events.conversation_scope(data['conversation_id'])
        if scope not in self.conversation_scopes:
            raise ValidationFailed('Join the conversation first')
        await self.router.apublish(scope, events.TYPING, {
            'user_id': self.user.id,
            'is_typing': data['is_typing'],
            'conversation_id': str(data['conversation_id']),
        }, exclude_channel=self.channel_name)

    async def _handle_reaction(self, data):
        data = self._validate(ToggleReactionSerializer, data)
        await self._call(
            EngagementStore(self.router).toggle_reaction,
            self.user.id, data['message_id'], data['emoji'],
        )

    async def _handle_mark_read(self, data):
        data = self._validate(MessageRefSerializer, data)
        await self._call(EngagementStore(self.router).mark_read, self.user.id, data['message_id'])

    async def _handle_presence(self, data):
        data = self._validate(PresenceSerializer, data)
        await self._call(PresenceTracker(self.router).set_online, self.user.id, data['is_online'])

    # ── EVENT HANDLERS (from channel layer) ──

    async def chat_event(self, event):
        """Forward a routed event unless this connection produced it"""
        if event.get('exclude_channel') == self.channel_name:
            return
        if event['event'] == events.CONVERSATION_REMOVED:
            # Membership is gone; stop listening to the conversation before telling the client
            scope = events.conversation_scope(event['payload']['conversation_id'])
            await self.router.leave(scope, self.channel_name)
            self.conversation_scopes.discard(scope)
        await self.send_json({'type': event['event'], **event['payload']})

    # ── HELPERS ──

    def _validate(self, serializer_class, data):
        serializer = serializer_class(data=data)
        serializer.is_valid(raise_exception=True)
        return serializer.validated_data

    async def _send_error(self, action, message):
        await self.send_json({'type': 'error', 'action': action, 'message': message})

    async def _call(self, func, *args, **kwargs):
        """Run a blocking service call off the event loop"""
        try:
            return await database_sync_to_async(func)(*args, **kwargs)
        except DatabaseError as e:
            logger.error(f'Database error in {func.__name__} for user {self.user.id}: {e}')
            raise TransientFailure()

    @database_sync_to_async
    def _authenticate(self):
        """Authenticate user via JWT token from query string or Authorization header"""
        from django.contrib.auth import get_user_model
        User = get_user_model()

        token_str = self._token_from_scope()
        if not token_str:
            return None

        try:
            token = AccessToken(token_str)
            user_id = token['user_id']
            return User.objects.get(id=user_id, is_active=True)
        except (TokenError, User.DoesNotExist, KeyError) as e:
            logger.warning(f'WebSocket auth failed: {e}')
            return None

    def _token_from_scope(self):
        query_string = self.scope.get('query_string', b'').decode()
        params = dict(p.split('=', 1) for p in query_string.split('&') if '=' in p)
        if params.get('token'):
            return params['token']

        headers = dict(self.scope.get('headers', []))
        auth = headers.get(b'authorization', b'').decode()
        if auth.lower().startswith('bearer '):
            return auth[7:].strip()
        return ''
