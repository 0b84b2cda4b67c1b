"""
Conversation directory: private and group conversations, memberships and roles.

Membership changes are not broadcast to the conversation; a removed or
departing user only gets ``conversation.removed`` on their own scope so
their open sockets stop receiving its events.

Operations that can drop the last admin of a group (remove, demote, leave)
lock the conversation row first so the admin count they read cannot change
underneath them.
"""
import logging

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import OuterRef, Prefetch, Q, Subquery

from . import events
from .access import check_admin, get_conversation, require_admin
from .exceptions import InvariantViolation, NotFound, ValidationFailed
from .models import Conversation, GroupMember, Message
from .serializers import GroupMemberSerializer

logger = logging.getLogger(__name__)
User = get_user_model()


class ConversationDirectory:

    def __init__(self, router=None):
        self.router = router or events.get_router()

    # ── LISTING ──

    def list_for_user(self, user_id):
        """
        Every conversation the user takes part in, most recent activity first.

        Conversations without messages sort last; ties keep retrieval order
        (private conversations, then groups, each by creation time).
        """
        latest = (
            Message.objects
            .filter(conversation=OuterRef('pk'), is_deleted=False)
            .order_by('-created_at')
            .values('id')[:1]
        )
        privates = list(
            Conversation.objects
            .filter(conv_type=Conversation.PRIVATE)
            .filter(Q(participant_one_id=user_id) | Q(participant_two_id=user_id))
            .select_related('participant_one', 'participant_two')
            .annotate(last_message_id=Subquery(latest))
            .order_by('created_at')
        )
        groups = list(
            Conversation.objects
            .filter(conv_type=Conversation.GROUP, group_members__user_id=user_id)
            .prefetch_related(
                Prefetch('group_members', queryset=GroupMember.objects.select_related('user'))
            )
            .annotate(last_message_id=Subquery(latest))
            .order_by('created_at')
        )

        conversations = privates + groups
        last_messages = Message.objects.in_bulk(
            [c.last_message_id for c in conversations if c.last_message_id]
        )

        entries = []
        for conversation in conversations:
            entry = self._format(conversation, user_id, last_messages.get(conversation.last_message_id))
            entries.append(entry)

        entries.sort(key=lambda e: e['last_message_time'].timestamp() if e['last_message_time'] else 0,
                     reverse=True)
        return entries

    def _format(self, conversation, user_id, last_message):
        entry = {
            'conversation_id': str(conversation.id),
            'type': conversation.conv_type,
        }
        if conversation.is_group:
            entry['name'] = conversation.name
            entry['avatar'] = conversation.avatar
            entry['members'] = GroupMemberSerializer(conversation.group_members.all(), many=True).data
        else:
            if conversation.participant_one_id == user_id:
                other = conversation.participant_two
            else:
                other = conversation.participant_one
            entry['participant'] = {
                'id': other.id,
                'username': other.username,
                'avatar': other.avatar,
                'is_online': other.is_online,
            } if other else None

        entry['last_message'] = last_message.content if last_message else None
        entry['last_message_time'] = last_message.created_at if last_message else None
        entry['last_message_sender_id'] = last_message.sender_id if last_message else None
        entry['last_message_type'] = last_message.message_type if last_message else 'text'
        return entry

    def get_detail(self, conversation_id):
        return (
            Conversation.objects
            .prefetch_related(
                Prefetch('group_members', queryset=GroupMember.objects.select_related('user'))
            )
            .get(id=conversation_id)
        )

    # ── PRIVATE ──

    def find_or_create_private(self, user_id, other_user_id):
        """Return ``(conversation, created)`` for the pair; at most one exists per pair."""
        if not other_user_id:
            raise ValidationFailed('Invalid contact ID')
        try:
            other_user_id = int(other_user_id)
        except (TypeError, ValueError):
            raise ValidationFailed('Invalid contact ID')
        if other_user_id == user_id:
            raise ValidationFailed('Cannot start a conversation with yourself')
        if not User.objects.filter(id=other_user_id).exists():
            raise NotFound('User not found')

        conversation, created = Conversation.objects.get_or_create(
            private_key=Conversation.make_private_key(user_id, other_user_id),
            defaults={
                'conv_type': Conversation.PRIVATE,
                'participant_one_id': user_id,
                'participant_two_id': other_user_id,
            },
        )
        if created:
            logger.info(f'Private conversation {conversation.id} created by user {user_id}')
        return conversation, created

    # ── GROUPS ──

    def create_group(self, creator_id, name, member_ids, avatar=''):
        name = (name or '').strip()
        if not name or not member_ids:
            raise ValidationFailed('Name and memberIds array are required')

        others = {int(m) for m in member_ids} - {creator_id}
        found = set(User.objects.filter(id__in=others).values_list('id', flat=True))
        missing = sorted(others - found)
        if missing:
            raise ValidationFailed(f'Unknown member ids: {", ".join(str(m) for m in missing)}')

        with transaction.atomic():
            conversation = Conversation.objects.create(
                conv_type=Conversation.GROUP,
                name=name,
                avatar=avatar or '',
            )
            GroupMember.objects.create(
                conversation=conversation, user_id=creator_id, role=GroupMember.ADMIN
            )
            GroupMember.objects.bulk_create([
                GroupMember(conversation=conversation, user_id=member_id, role=GroupMember.MEMBER)
                for member_id in sorted(others)
            ])

        logger.info(f'Group {conversation.id} created by user {creator_id} with {len(others)} members')
        return self.get_detail(conversation.id)

    def update_group(self, actor_id, conversation_id, name=None, avatar=None):
        conversation = require_admin(actor_id, conversation_id, 'update group')

        update_fields = []
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationFailed('Group name cannot be empty')
            conversation.name = name
            update_fields.append('name')
        if avatar is not None:
            conversation.avatar = avatar
            update_fields.append('avatar')
        if update_fields:
            conversation.save(update_fields=update_fields + ['updated_at'])
        return self.get_detail(conversation.id)

    def add_members(self, actor_id, conversation_id, member_ids):
        """Add users as members; users that already belong are skipped."""
        if not member_ids:
            raise ValidationFailed('memberIds array is required')
        conversation = require_admin(actor_id, conversation_id, 'add members')

        ids = {int(m) for m in member_ids}
        found = set(User.objects.filter(id__in=ids).values_list('id', flat=True))
        missing = sorted(ids - found)
        if missing:
            raise ValidationFailed(f'Unknown member ids: {", ".join(str(m) for m in missing)}')

        GroupMember.objects.bulk_create(
            [
                GroupMember(conversation=conversation, user_id=member_id, role=GroupMember.MEMBER)
                for member_id in sorted(ids)
            ],
            ignore_conflicts=True,
        )
        return self.get_detail(conversation.id)

    def remove_member(self, actor_id, conversation_id, target_id):
        with transaction.atomic():
            conversation = self._lock(conversation_id)
            check_admin(actor_id, conversation, 'remove members')
            membership = self._get_membership(conversation, target_id)
            if membership.role == GroupMember.ADMIN and self._admin_count(conversation) <= 1:
                raise InvariantViolation('Cannot remove the only admin')
            membership.delete()
            self._evict(conversation, target_id)
        logger.info(f'User {target_id} removed from group {conversation.id} by {actor_id}')

    def update_role(self, actor_id, conversation_id, target_id, role):
        if role not in (GroupMember.ADMIN, GroupMember.MEMBER):
            raise ValidationFailed('Valid role (admin/member) is required')

        with transaction.atomic():
            conversation = self._lock(conversation_id)
            check_admin(actor_id, conversation, 'update roles')
            membership = self._get_membership(conversation, target_id)
            if (membership.role == GroupMember.ADMIN and role == GroupMember.MEMBER
                    and self._admin_count(conversation) <= 1):
                raise InvariantViolation('Cannot demote the only admin')
            membership.role = role
            membership.save(update_fields=['role'])
        return membership

    def toggle_mute(self, user_id, conversation_id):
        conversation = get_conversation(conversation_id)
        with transaction.atomic():
            membership = self._get_membership(conversation, user_id, lock=True)
            membership.is_muted = not membership.is_muted
            membership.save(update_fields=['is_muted'])
        return membership

    def leave(self, user_id, conversation_id):
        with transaction.atomic():
            conversation = self._lock(conversation_id)
            membership = self._get_membership(conversation, user_id)
            if membership.role == GroupMember.ADMIN and self._admin_count(conversation) <= 1:
                raise InvariantViolation('Cannot leave as the only admin')
            membership.delete()
            self._evict(conversation, user_id)
        logger.info(f'User {user_id} left group {conversation.id}')

    # ── HELPERS ──

    def _evict(self, conversation, user_id):
        """Tell the user's sockets to drop the conversation scope once the removal commits"""
        self.router.publish_on_commit(events.user_scope(user_id), events.CONVERSATION_REMOVED, {
            'conversation_id': str(conversation.id),
            'user_id': int(user_id),
        })

    def _lock(self, conversation_id):
        try:
            return Conversation.objects.select_for_update().get(id=conversation_id)
        except (Conversation.DoesNotExist, ValueError, DjangoValidationError):
            raise NotFound('Conversation not found')

    def _get_membership(self, conversation, user_id, lock=False):
        qs = GroupMember.objects.filter(conversation=conversation, user_id=user_id)
        if lock:
            qs = qs.select_for_update()
        membership = qs.first()
        if membership is None:
            raise NotFound('Member not found')
        return membership

    def _admin_count(self, conversation):
        return GroupMember.objects.filter(conversation=conversation, role=GroupMember.ADMIN).count()
