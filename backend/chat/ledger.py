"""
Message ledger: send, edit, soft delete, list and search.

Messages are never removed from storage; deleting one only marks it. Every
mutation publishes its event after the transaction commits.
"""
import logging

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import Prefetch, Q
from django.utils import timezone

from . import events
from .access import accessible_conversation_ids, participant_ids, require_access
from .exceptions import AccessDenied, InvariantViolation, NotFound, ValidationFailed
from .models import Conversation, Mention, Message, MessageReaction, ReadReceipt
from .serializers import MessageSerializer

logger = logging.getLogger(__name__)
User = get_user_model()

MESSAGE_TYPES = {choice for choice, _ in Message.MSG_TYPES}


def message_queryset():
    """Messages with sender, reactions and mentions loaded for serialization."""
    return (
        Message.objects
        .select_related('sender')
        .prefetch_related(
            Prefetch('reactions', queryset=MessageReaction.objects.select_related('user')),
            Prefetch('mentions', queryset=Mention.objects.select_related('user')),
        )
    )


def get_message(message_id, lock=False):
    qs = Message.objects.select_for_update() if lock else Message.objects.all()
    try:
        return qs.get(id=message_id)
    except (Message.DoesNotExist, ValueError, DjangoValidationError):
        raise NotFound('Message not found')


class MessageLedger:

    def __init__(self, router=None):
        self.router = router or events.get_router()

    def send(self, sender_id, conversation_id, content, message_type='text', media=None,
             mention_ids=()):
        if not conversation_id or not (content or '').strip():
            raise ValidationFailed('ConversationId and content are required')
        if message_type not in MESSAGE_TYPES:
            raise ValidationFailed(f'Unknown message type: {message_type}')

        conversation, _ = require_access(sender_id, conversation_id)

        # Deduplicate, keeping first-seen order
        mention_ids = list(dict.fromkeys(int(m) for m in mention_ids or ()))
        if mention_ids:
            found = set(User.objects.filter(id__in=mention_ids).values_list('id', flat=True))
            missing = [m for m in mention_ids if m not in found]
            if missing:
                raise ValidationFailed(f'Unknown mentioned users: {", ".join(str(m) for m in missing)}')
            participants = participant_ids(conversation)
            outsiders = [m for m in mention_ids if m not in participants]
            if outsiders:
                raise ValidationFailed(
                    f'Mentioned users are not in this conversation: {", ".join(str(m) for m in outsiders)}'
                )

        media = media or {}
        with transaction.atomic():
            message = Message.objects.create(
                conversation=conversation,
                sender_id=sender_id,
                content=content,
                message_type=message_type,
                media_url=media.get('media_url') or '',
                file_name=media.get('file_name') or '',
                file_size=media.get('file_size'),
            )
            Mention.objects.bulk_create([
                Mention(message=message, user_id=user_id) for user_id in mention_ids
            ])
            Conversation.objects.filter(id=conversation.id).update(updated_at=timezone.now())

            message = message_queryset().get(id=message.id)
            data = MessageSerializer(message).data
            self.router.publish_on_commit(
                events.conversation_scope(conversation.id), events.MESSAGE_NEW, data
            )
            for user_id in mention_ids:
                self.router.publish_on_commit(
                    events.user_scope(user_id), events.MESSAGE_MENTION,
                    {'message': data, 'conversation_id': str(conversation.id)},
                )

        logger.info(f'Message {message.id} sent by {sender_id} in {conversation.id}')
        return message

    def edit(self, actor_id, message_id, content):
        if not (content or '').strip():
            raise ValidationFailed('Content is required')

        with transaction.atomic():
            message = get_message(message_id, lock=True)
            require_access(actor_id, message.conversation_id)
            if message.sender_id != actor_id:
                raise AccessDenied('Unauthorized')
            if message.is_deleted:
                raise InvariantViolation('Cannot edit deleted message')

            message.content = content
            message.is_edited = True
            message.edited_at = timezone.now()
            message.save(update_fields=['content', 'is_edited', 'edited_at'])

            message = message_queryset().get(id=message.id)
            self.router.publish_on_commit(
                events.conversation_scope(message.conversation_id), events.MESSAGE_UPDATED,
                MessageSerializer(message).data,
            )
        return message

    def delete(self, actor_id, message_id, for_everyone=False):
        """Soft delete: the row and its content stay, flagged as deleted."""
        with transaction.atomic():
            message = get_message(message_id, lock=True)
            require_access(actor_id, message.conversation_id)
            if message.sender_id != actor_id:
                raise AccessDenied('Unauthorized')

            message.is_deleted = True
            # Once deleted for everyone, a later delete for self does not narrow it
            message.deleted_for_everyone = message.deleted_for_everyone or bool(for_everyone)
            message.deleted_at = timezone.now()
            message.save(update_fields=['is_deleted', 'deleted_for_everyone', 'deleted_at'])

            self.router.publish_on_commit(
                events.conversation_scope(message.conversation_id), events.MESSAGE_DELETED,
                {'message_id': str(message.id), 'delete_for_everyone': message.deleted_for_everyone},
            )
        logger.info(f'Message {message.id} deleted by {actor_id} (for everyone: {message.deleted_for_everyone})')
        return message

    def list(self, user_id, conversation_id):
        """
        Non-deleted messages of a conversation, oldest first.

        Read receipts attached to each message are the caller's own receipt
        and, on messages the caller sent, every reader's receipt.
        """
        conversation, _ = require_access(user_id, conversation_id)
        receipts = ReadReceipt.objects.filter(Q(user_id=user_id) | Q(message__sender_id=user_id))
        return list(
            message_queryset()
            .filter(conversation=conversation, is_deleted=False)
            .prefetch_related(Prefetch('read_receipts', queryset=receipts, to_attr='visible_receipts'))
            .order_by('created_at')
        )

    def search(self, user_id, query, conversation_id=None, sender_id=None):
        query = (query or '').strip()
        if not query:
            raise ValidationFailed('Search query is required')

        messages = Message.objects.filter(is_deleted=False, content__icontains=query)
        if conversation_id:
            conversation, _ = require_access(user_id, conversation_id)
            messages = messages.filter(conversation=conversation)
        else:
            messages = messages.filter(conversation_id__in=accessible_conversation_ids(user_id))
        if sender_id:
            messages = messages.filter(sender_id=sender_id)

        limit = settings.CHAT_SEARCH_RESULT_LIMIT
        return list(
            message_queryset()
            .filter(id__in=messages.values('id'))
            .select_related('conversation')
            .order_by('-created_at')[:limit]
        )
