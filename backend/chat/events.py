"""
Event routing over the Channels layer.

Every connected socket joins ``user_<id>`` on connect and
``conversation_<id>`` for each conversation it opens. Mutations publish
into those scopes once their transaction has committed; the consumer
forwards each event to its socket as ``{"type": <event>, ...payload}``.
"""
import json
import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction

logger = logging.getLogger(__name__)

# Channels dispatches group messages of this type to ChatConsumer.chat_event
HANDLER_TYPE = 'chat.event'

MESSAGE_NEW = 'message.new'
MESSAGE_MENTION = 'message.mention'
MESSAGE_UPDATED = 'message.updated'
MESSAGE_DELETED = 'message.deleted'
MESSAGE_READ = 'message.read'
REACTION_ADDED = 'reaction.added'
REACTION_REMOVED = 'reaction.removed'
TYPING = 'typing'
USER_JOINED = 'conversation.user_joined'
USER_LEFT = 'conversation.user_left'
PRESENCE_UPDATE = 'presence.update'
CONVERSATION_REMOVED = 'conversation.removed'


def user_scope(user_id):
    return f'user_{user_id}'


def conversation_scope(conversation_id):
    return f'conversation_{conversation_id}'


class EventRouter:
    """Thin wrapper around a channel layer.

    Delivery is best effort: a failing layer is logged and never raised back
    into the operation that produced the event.
    """

    def __init__(self, channel_layer=None):
        self._channel_layer = channel_layer

    @property
    def channel_layer(self):
        if self._channel_layer is None:
            self._channel_layer = get_channel_layer()
        return self._channel_layer

    async def join(self, scope, channel_name):
        await self.channel_layer.group_add(scope, channel_name)

    async def leave(self, scope, channel_name):
        await self.channel_layer.group_discard(scope, channel_name)

    @staticmethod
    def build(event, payload, exclude_channel=None):
        return {
            'type': HANDLER_TYPE,
            'event': event,
            'payload': json.loads(json.dumps(payload, cls=DjangoJSONEncoder)),
            'exclude_channel': exclude_channel,
        }

    async def apublish(self, scope, event, payload, exclude_channel=None):
        layer = self.channel_layer
        if layer is None:
            logger.warning(f'No channel layer configured, dropping {event} for {scope}')
            return
        try:
            await layer.group_send(scope, self.build(event, payload, exclude_channel))
        except Exception as e:
            logger.error(f'Failed to publish {event} to {scope}: {e}')

    def publish(self, scope, event, payload, exclude_channel=None):
        async_to_sync(self.apublish)(scope, event, payload, exclude_channel)

    def publish_on_commit(self, scope, event, payload, exclude_channel=None):
        """Publish once the surrounding transaction commits; nothing on rollback."""
        transaction.on_commit(
            lambda: self.publish(scope, event, payload, exclude_channel)
        )


_default_router = None


def get_router():
    global _default_router
    if _default_router is None:
        _default_router = EventRouter()
    return _default_router
