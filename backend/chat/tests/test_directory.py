import uuid
from datetime import timedelta

from django.utils import timezone

from chat import events
from chat.access import can_access
from chat.directory import ConversationDirectory
from chat.exceptions import AccessDenied, InvariantViolation, NotFound, ValidationFailed
from chat.models import Conversation, GroupMember, Message
from .base import ChatServiceTestCase


class PrivateConversationTestCase(ChatServiceTestCase):

    def setUp(self):
        super().setUp()
        self.directory = ConversationDirectory(self.router)

    def test_find_or_create_is_idempotent_per_pair(self):
        conv, created = self.directory.find_or_create_private(self.alice.id, self.bob.id)
        self.assertTrue(created)
        self.assertEqual(conv.participant_one_id, self.alice.id)
        self.assertEqual(conv.participant_two_id, self.bob.id)

        again, created = self.directory.find_or_create_private(self.bob.id, self.alice.id)
        self.assertFalse(created)
        self.assertEqual(again.id, conv.id)
        self.assertEqual(Conversation.objects.filter(conv_type=Conversation.PRIVATE).count(), 1)

    def test_private_key_is_order_independent(self):
        self.assertEqual(
            Conversation.make_private_key(7, 3), Conversation.make_private_key(3, 7)
        )
        self.assertEqual(Conversation.make_private_key(7, 3), '3:7')

    def test_missing_or_self_contact_rejected(self):
        with self.assertRaises(ValidationFailed):
            self.directory.find_or_create_private(self.alice.id, None)
        with self.assertRaises(ValidationFailed):
            self.directory.find_or_create_private(self.alice.id, self.alice.id)

    def test_unknown_contact_not_found(self):
        with self.assertRaises(NotFound):
            self.directory.find_or_create_private(self.alice.id, 999999)


class ConversationListTestCase(ChatServiceTestCase):

    def setUp(self):
        super().setUp()
        self.directory = ConversationDirectory(self.router)

    def test_last_message_summary(self):
        conv = self._private(self.alice, self.bob)
        self._message(conv, self.alice, 'hi')

        entries = self.directory.list_for_user(self.bob.id)
        self.assertEqual(len(entries), 1)
        entry = entries[0]
        self.assertEqual(entry['conversation_id'], str(conv.id))
        self.assertEqual(entry['type'], 'private')
        self.assertEqual(entry['participant']['id'], self.alice.id)
        self.assertEqual(entry['last_message'], 'hi')
        self.assertEqual(entry['last_message_sender_id'], self.alice.id)
        self.assertEqual(entry['last_message_type'], 'text')

    def test_deleted_messages_are_not_last_message(self):
        conv = self._private(self.alice, self.bob)
        self._message(conv, self.alice, 'first')
        latest = self._message(conv, self.alice, 'second')
        latest.is_deleted = True
        latest.save()

        entry = self.directory.list_for_user(self.alice.id)[0]
        self.assertEqual(entry['last_message'], 'first')

    def test_sorted_by_recent_activity_and_empty_last(self):
        empty = self._private(self.alice, self.dave)
        old = self._private(self.alice, self.bob)
        group = self._group(self.alice, self.carol)

        old_msg = self._message(old, self.bob, 'old')
        Message.objects.filter(id=old_msg.id).update(created_at=timezone.now() - timedelta(hours=1))
        self._message(group, self.carol, 'new')

        entries = self.directory.list_for_user(self.alice.id)
        self.assertEqual(
            [e['conversation_id'] for e in entries],
            [str(group.id), str(old.id), str(empty.id)],
        )
        self.assertIsNone(entries[2]['last_message'])
        self.assertEqual(entries[2]['last_message_type'], 'text')

    def test_group_entry_lists_members_with_roles(self):
        group = self._group(self.alice, self.bob, name='Friends')
        entry = self.directory.list_for_user(self.bob.id)[0]
        self.assertEqual(entry['type'], 'group')
        self.assertEqual(entry['name'], 'Friends')
        roles = {m['id']: m['role'] for m in entry['members']}
        self.assertEqual(roles, {self.alice.id: 'admin', self.bob.id: 'member'})
        self.assertNotIn('participant', entry)
        self.assertEqual(entry['conversation_id'], str(group.id))

    def test_outsider_sees_nothing(self):
        self._private(self.alice, self.bob)
        self._group(self.alice, self.bob)
        self.assertEqual(self.directory.list_for_user(self.carol.id), [])


class GroupManagementTestCase(ChatServiceTestCase):

    def setUp(self):
        super().setUp()
        self.directory = ConversationDirectory(self.router)

    def test_create_group_makes_creator_admin(self):
        conv = self.directory.create_group(
            self.alice.id, 'Team', [self.bob.id, self.carol.id, self.bob.id, self.alice.id]
        )
        roles = dict(GroupMember.objects.filter(conversation=conv).values_list('user_id', 'role'))
        self.assertEqual(roles, {
            self.alice.id: GroupMember.ADMIN,
            self.bob.id: GroupMember.MEMBER,
            self.carol.id: GroupMember.MEMBER,
        })

    def test_create_group_validation(self):
        with self.assertRaises(ValidationFailed):
            self.directory.create_group(self.alice.id, '', [self.bob.id])
        with self.assertRaises(ValidationFailed):
            self.directory.create_group(self.alice.id, 'Team', [])
        with self.assertRaises(ValidationFailed):
            self.directory.create_group(self.alice.id, 'Team', [self.bob.id, 999999])
        self.assertFalse(Conversation.objects.filter(conv_type=Conversation.GROUP).exists())

    def test_update_group_only_changes_supplied_fields(self):
        conv = self._group(self.alice, self.bob, name='Old')
        conv.avatar = 'https://cdn.example.com/a.png'
        conv.save()

        self.directory.update_group(self.alice.id, conv.id, name='New')
        conv.refresh_from_db()
        self.assertEqual(conv.name, 'New')
        self.assertEqual(conv.avatar, 'https://cdn.example.com/a.png')

    def test_update_group_requires_admin(self):
        conv = self._group(self.alice, self.bob)
        with self.assertRaises(AccessDenied) as ctx:
            self.directory.update_group(self.bob.id, conv.id, name='Hijack')
        self.assertEqual(ctx.exception.message, 'Only admins can update group')

    def test_update_private_conversation_rejected(self):
        conv = self._private(self.alice, self.bob)
        with self.assertRaises(ValidationFailed):
            self.directory.update_group(self.alice.id, conv.id, name='Nope')

    def test_add_members_skips_existing(self):
        conv = self._group(self.alice, self.bob)
        self.directory.add_members(self.alice.id, conv.id, [self.bob.id, self.carol.id])
        self.assertEqual(GroupMember.objects.filter(conversation=conv).count(), 3)
        self.assertEqual(
            GroupMember.objects.get(conversation=conv, user=self.bob).role, GroupMember.MEMBER
        )

    def test_add_members_requires_admin(self):
        conv = self._group(self.alice, self.bob)
        with self.assertRaises(AccessDenied):
            self.directory.add_members(self.bob.id, conv.id, [self.carol.id])

    def test_removed_member_loses_access(self):
        conv = self._group(self.alice, self.bob, self.carol)
        self.directory.remove_member(self.alice.id, conv.id, self.carol.id)

        conv.refresh_from_db()
        self.assertFalse(can_access(self.carol.id, conv).granted)
        self.assertTrue(can_access(self.alice.id, conv).granted)
        self.assertTrue(can_access(self.bob.id, conv).granted)

    def test_removed_member_is_evicted_from_live_events(self):
        conv = self._group(self.alice, self.bob, self.carol)
        self.directory.remove_member(self.alice.id, conv.id, self.carol.id)

        self.assertEqual(self.published(), [(
            f'user_{self.carol.id}', events.CONVERSATION_REMOVED,
            {'conversation_id': str(conv.id), 'user_id': self.carol.id},
        )])

    def test_failed_removal_evicts_nobody(self):
        conv = self._group(self.alice, self.bob)
        with self.assertRaises(InvariantViolation):
            self.directory.remove_member(self.alice.id, conv.id, self.alice.id)
        with self.assertRaises(InvariantViolation):
            self.directory.leave(self.alice.id, conv.id)
        self.router.publish_on_commit.assert_not_called()

    def test_remove_unknown_member(self):
        conv = self._group(self.alice, self.bob)
        with self.assertRaises(NotFound) as ctx:
            self.directory.remove_member(self.alice.id, conv.id, self.dave.id)
        self.assertEqual(ctx.exception.message, 'Member not found')

    def test_cannot_remove_only_admin(self):
        conv = self._group(self.alice, self.bob)
        with self.assertRaises(InvariantViolation) as ctx:
            self.directory.remove_member(self.alice.id, conv.id, self.alice.id)
        self.assertEqual(ctx.exception.message, 'Cannot remove the only admin')

    def test_admin_can_be_removed_when_another_admin_exists(self):
        conv = self._group(self.alice, self.bob)
        self.directory.update_role(self.alice.id, conv.id, self.bob.id, GroupMember.ADMIN)
        self.directory.remove_member(self.bob.id, conv.id, self.alice.id)
        self.assertFalse(GroupMember.objects.filter(conversation=conv, user=self.alice).exists())

    def test_update_role(self):
        conv = self._group(self.alice, self.bob)
        membership = self.directory.update_role(self.alice.id, conv.id, self.bob.id, 'admin')
        self.assertEqual(membership.role, GroupMember.ADMIN)

        with self.assertRaises(ValidationFailed):
            self.directory.update_role(self.alice.id, conv.id, self.bob.id, 'owner')

    def test_cannot_demote_only_admin(self):
        conv = self._group(self.alice, self.bob)
        with self.assertRaises(InvariantViolation) as ctx:
            self.directory.update_role(self.alice.id, conv.id, self.alice.id, GroupMember.MEMBER)
        self.assertEqual(ctx.exception.message, 'Cannot demote the only admin')

    def test_toggle_mute(self):
        conv = self._group(self.alice, self.bob)
        self.assertTrue(self.directory.toggle_mute(self.bob.id, conv.id).is_muted)
        self.assertFalse(self.directory.toggle_mute(self.bob.id, conv.id).is_muted)

        with self.assertRaises(NotFound):
            self.directory.toggle_mute(self.carol.id, conv.id)

    def test_leave(self):
        conv = self._group(self.alice, self.bob)
        self.directory.leave(self.bob.id, conv.id)
        self.assertFalse(GroupMember.objects.filter(conversation=conv, user=self.bob).exists())
        self.assertEqual(
            [(scope, name) for scope, name, _ in self.published()],
            [(f'user_{self.bob.id}', events.CONVERSATION_REMOVED)],
        )

        with self.assertRaises(NotFound):
            self.directory.leave(self.bob.id, conv.id)

    def test_only_admin_cannot_leave(self):
        conv = self._group(self.alice, self.bob)
        with self.assertRaises(InvariantViolation) as ctx:
            self.directory.leave(self.alice.id, conv.id)
        self.assertEqual(ctx.exception.message, 'Cannot leave as the only admin')

    def test_unknown_group_not_found(self):
        with self.assertRaises(NotFound):
            self.directory.remove_member(self.alice.id, uuid.uuid4(), self.bob.id)

    def test_group_always_keeps_an_admin(self):
        conv = self._group(self.alice, self.bob, self.carol)
        for action in (
            lambda: self.directory.leave(self.alice.id, conv.id),
            lambda: self.directory.remove_member(self.alice.id, conv.id, self.alice.id),
            lambda: self.directory.update_role(self.alice.id, conv.id, self.alice.id, 'member'),
        ):
            with self.assertRaises(InvariantViolation):
                action()
        self.assertEqual(
            GroupMember.objects.filter(conversation=conv, role=GroupMember.ADMIN).count(), 1
        )
