import logging

from django.db import IntegrityError, transaction
from django.utils import timezone

from . import events
from .access import require_access
from .exceptions import ValidationFailed
from .ledger import get_message
from .models import MessageReaction, ReadReceipt
from .serializers import ReactionSerializer, ReadReceiptSerializer

logger = logging.getLogger(__name__)

ADDED = 'added'
REMOVED = 'removed'


class EngagementStore:
    """Reactions and read receipts on messages."""

    def __init__(self, router=None):
        self.router = router or events.get_router()

    def toggle_reaction(self, user_id, message_id, emoji):
        """
        Add the reaction if absent, remove it if present.

        Returns ``(ADDED, reaction)`` or ``(REMOVED, None)``. When a concurrent
        toggle inserts the same key first, the unique constraint turns this
        call into the remove. The database may instead abort one of the two
        with a deadlock; that surfaces as a DatabaseError (503 / error frame)
        and leaves the other toggle applied.
        """
        emoji = (emoji or '').strip()
        if not message_id or not emoji:
            raise ValidationFailed('MessageId and emoji are required')

        message = get_message(message_id)
        require_access(user_id, message.conversation_id)
        key = {'message': message, 'user_id': user_id, 'emoji': emoji}

        with transaction.atomic():
            deleted, _ = MessageReaction.objects.filter(**key).delete()
            reaction = None
            if not deleted:
                try:
                    with transaction.atomic():
                        reaction = MessageReaction.objects.create(**key)
                except IntegrityError:
                    # A concurrent toggle inserted the same key first
                    MessageReaction.objects.filter(**key).delete()

            scope = events.conversation_scope(message.conversation_id)
            if reaction is not None:
                reaction = MessageReaction.objects.select_related('user').get(id=reaction.id)
                self.router.publish_on_commit(
                    scope, events.REACTION_ADDED, ReactionSerializer(reaction).data
                )
            else:
                self.router.publish_on_commit(scope, events.REACTION_REMOVED, {
                    'message_id': str(message.id),
                    'user_id': user_id,
                    'emoji': emoji,
                })

        if reaction is not None:
            return ADDED, reaction
        return REMOVED, None

    def mark_read(self, user_id, message_id):
        if not message_id:
            raise ValidationFailed('MessageId is required')

        message = get_message(message_id)
        require_access(user_id, message.conversation_id)

        with transaction.atomic():
            receipt, _ = ReadReceipt.objects.update_or_create(
                message=message, user_id=user_id,
                defaults={'read_at': timezone.now()},
            )
            self.router.publish_on_commit(
                events.conversation_scope(message.conversation_id), events.MESSAGE_READ,
                ReadReceiptSerializer(receipt).data,
            )
        return receipt
