"""
Access checks shared by every chat operation.

Private conversation: the user must be one of its two participants.
Group conversation: the user must hold a membership row; the row's role
decides admin-only operations.
"""
from collections import namedtuple

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db.models import Q

from .exceptions import AccessDenied, NotFound, ValidationFailed
from .models import Conversation, GroupMember

Access = namedtuple('Access', ['granted', 'role'])

NO_ACCESS = Access(False, None)


def can_access(user_id, conversation):
    if conversation.conv_type == Conversation.PRIVATE:
        granted = user_id in (conversation.participant_one_id, conversation.participant_two_id)
        return Access(granted, None)

    role = (
        GroupMember.objects
        .filter(conversation_id=conversation.id, user_id=user_id)
        .values_list('role', flat=True)
        .first()
    )
    if role is None:
        return NO_ACCESS
    return Access(True, role)


def participant_ids(conversation):
    """Ids of every user that can access the conversation."""
    if conversation.conv_type == Conversation.PRIVATE:
        return {conversation.participant_one_id, conversation.participant_two_id} - {None}
    return set(
        GroupMember.objects.filter(conversation_id=conversation.id).values_list('user_id', flat=True)
    )


def get_conversation(conversation_id):
    try:
        return Conversation.objects.get(id=conversation_id)
    except (Conversation.DoesNotExist, ValueError, DjangoValidationError):
        raise NotFound('Conversation not found')


def require_access(user_id, conversation_id):
    """Return ``(conversation, access)``; not-found is checked before access."""
    conversation = get_conversation(conversation_id)
    access = can_access(user_id, conversation)
    if not access.granted:
        raise AccessDenied('Access denied')
    return conversation, access


def check_admin(user_id, conversation, action='manage this group'):
    """Admin-only group operations on an already loaded conversation."""
    access = can_access(user_id, conversation)
    if not access.granted:
        raise AccessDenied('Access denied')
    if not conversation.is_group:
        raise ValidationFailed('Not a group conversation')
    if access.role != GroupMember.ADMIN:
        raise AccessDenied(f'Only admins can {action}')


def require_admin(user_id, conversation_id, action='manage this group'):
    conversation = get_conversation(conversation_id)
    check_admin(user_id, conversation, action)
    return conversation


def accessible_conversation_filter(user_id, prefix=''):
    """Q object matching conversations the user can read."""
    return (
        Q(**{f'{prefix}participant_one_id': user_id})
        | Q(**{f'{prefix}participant_two_id': user_id})
        | Q(**{f'{prefix}group_members__user_id': user_id})
    )


def accessible_conversation_ids(user_id):
    return (
        Conversation.objects
        .filter(accessible_conversation_filter(user_id))
        .values('id')
        .distinct()
    )
