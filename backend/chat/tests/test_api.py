import uuid
from unittest.mock import patch

from django.db import OperationalError
from django.test import TestCase
from rest_framework import status
from rest_framework.test import APIClient

from chat.models import Conversation, GroupMember, Message, MessageReaction
from .base import ChatFixturesMixin


class ChatAPITestCase(ChatFixturesMixin, TestCase):

    def setUp(self):
        self.client = APIClient()
        self._create_users()

    def _auth(self, user):
        self.client.force_authenticate(user=user)

    # ─── Auth ───

    def test_anonymous_is_unauthorized(self):
        resp = self.client.get('/api/chat/conversations/')
        self.assertEqual(resp.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertIn('error', resp.data)

    def test_obtain_token(self):
        resp = self.client.post('/api/auth/token/', {
            'email': 'alice@test.com', 'password': 'TestPass123!',
        }, format='json')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertIn('access', resp.data)

    # ─── Conversations ───

    def test_create_private_conversation(self):
        self._auth(self.alice)
        resp = self.client.post('/api/chat/conversations/', {'contact_id': self.bob.id}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertEqual(resp.data['type'], 'private')
        conversation_id = resp.data['conversation_id']
        self.assertEqual(conversation_id, resp.data['id'])

        resp = self.client.post('/api/chat/conversations/', {'contact_id': self.bob.id}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data['conversation_id'], conversation_id)
        self.assertEqual(Conversation.objects.count(), 1)

    def test_create_private_conversation_validation(self):
        self._auth(self.alice)
        resp = self.client.post('/api/chat/conversations/', {}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertTrue(resp.data['error'].startswith('contact_id'))

        resp = self.client.post('/api/chat/conversations/', {'contact_id': 999999}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_404_NOT_FOUND)

    def test_list_conversations(self):
        conv = self._private(self.alice, self.bob)
        self._message(conv, self.alice, 'hi')
        self._auth(self.bob)
        resp = self.client.get('/api/chat/conversations/')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(len(resp.data), 1)
        self.assertEqual(resp.data[0]['last_message'], 'hi')
        self.assertEqual(resp.data[0]['last_message_sender_id'], self.alice.id)

    # ─── Groups ───

    def test_create_group(self):
        self._auth(self.alice)
        resp = self.client.post('/api/chat/groups/', {
            'name': 'Team', 'member_ids': [self.bob.id, self.carol.id],
        }, format='json')
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertEqual(resp.data['type'], 'group')
        self.assertEqual(len(resp.data['members']), 3)

    def test_create_group_requires_members(self):
        self._auth(self.alice)
        resp = self.client.post('/api/chat/groups/', {'name': 'Team', 'member_ids': []}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)

    def test_update_group_member_forbidden(self):
        conv = self._group(self.alice, self.bob)
        self._auth(self.bob)
        resp = self.client.patch(f'/api/chat/groups/{conv.id}/', {'name': 'Mine'}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(resp.data, {'error': 'Only admins can update group'})

    def test_update_group(self):
        conv = self._group(self.alice, self.bob)
        self._auth(self.alice)
        resp = self.client.patch(f'/api/chat/groups/{conv.id}/', {'name': 'Renamed'}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data['name'], 'Renamed')

    def test_add_and_remove_members(self):
        conv = self._group(self.alice, self.bob)
        self._auth(self.alice)
        resp = self.client.post(f'/api/chat/groups/{conv.id}/members/', {
            'member_ids': [self.carol.id],
        }, format='json')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertTrue(GroupMember.objects.filter(conversation=conv, user=self.carol).exists())

        resp = self.client.delete(f'/api/chat/groups/{conv.id}/members/{self.carol.id}/')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertFalse(GroupMember.objects.filter(conversation=conv, user=self.carol).exists())

    def test_remove_only_admin_conflict(self):
        conv = self._group(self.alice, self.bob)
        self._auth(self.alice)
        resp = self.client.delete(f'/api/chat/groups/{conv.id}/members/{self.alice.id}/')
        self.assertEqual(resp.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(resp.data, {'error': 'Cannot remove the only admin'})

    def test_update_role(self):
        conv = self._group(self.alice, self.bob)
        self._auth(self.alice)
        resp = self.client.put(
            f'/api/chat/groups/{conv.id}/members/{self.bob.id}/role/', {'role': 'admin'}, format='json'
        )
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data['role'], 'admin')

        resp = self.client.put(
            f'/api/chat/groups/{conv.id}/members/{self.bob.id}/role/', {'role': 'owner'}, format='json'
        )
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)

    def test_mute_and_leave(self):
        conv = self._group(self.alice, self.bob)
        self._auth(self.bob)
        resp = self.client.put(f'/api/chat/groups/{conv.id}/mute/')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertTrue(resp.data['is_muted'])

        resp = self.client.post(f'/api/chat/groups/{conv.id}/leave/')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)

        resp = self.client.post(f'/api/chat/groups/{conv.id}/leave/')
        self.assertEqual(resp.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(resp.data, {'error': 'Member not found'})

    def test_unknown_group_not_found(self):
        self._auth(self.alice)
        resp = self.client.post(f'/api/chat/groups/{uuid.uuid4()}/leave/')
        self.assertEqual(resp.status_code, status.HTTP_404_NOT_FOUND)

    # ─── Messages ───

    def test_send_and_list_messages(self):
        conv = self._private(self.alice, self.bob)
        self._auth(self.alice)
        with self.captureOnCommitCallbacks(execute=True):
            resp = self.client.post('/api/chat/messages/', {
                'conversation_id': str(conv.id), 'content': 'hi',
            }, format='json')
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertEqual(resp.data['content'], 'hi')

        resp = self.client.get(f'/api/chat/messages/?conversation_id={conv.id}')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual([m['content'] for m in resp.data], ['hi'])

    def test_send_to_foreign_conversation_forbidden(self):
        conv = self._private(self.alice, self.bob)
        self._auth(self.carol)
        resp = self.client.post('/api/chat/messages/', {
            'conversation_id': str(conv.id), 'content': 'intrude',
        }, format='json')
        self.assertEqual(resp.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(resp.data, {'error': 'Access denied'})

    def test_send_requires_content(self):
        conv = self._private(self.alice, self.bob)
        self._auth(self.alice)
        resp = self.client.post('/api/chat/messages/', {'conversation_id': str(conv.id)}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(Message.objects.exists())

    def test_list_requires_conversation_id(self):
        self._auth(self.alice)
        resp = self.client.get('/api/chat/messages/')
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)

    def test_edit_and_delete_message(self):
        conv = self._private(self.alice, self.bob)
        message = self._message(conv, self.alice, 'typo')
        self._auth(self.alice)

        resp = self.client.patch(f'/api/chat/messages/{message.id}/', {'content': 'fixed'}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertTrue(resp.data['is_edited'])

        resp = self.client.delete(f'/api/chat/messages/{message.id}/?delete_for_everyone=true')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        message.refresh_from_db()
        self.assertTrue(message.is_deleted)
        self.assertTrue(message.deleted_for_everyone)

        resp = self.client.patch(f'/api/chat/messages/{message.id}/', {'content': 'again'}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_409_CONFLICT)

    def test_edit_someone_elses_message_forbidden(self):
        conv = self._private(self.alice, self.bob)
        message = self._message(conv, self.alice, 'mine')
        self._auth(self.bob)
        resp = self.client.put(f'/api/chat/messages/{message.id}/', {'content': 'ours'}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(resp.data, {'error': 'Unauthorized'})

    def test_toggle_reaction(self):
        conv = self._private(self.alice, self.bob)
        message = self._message(conv, self.alice, 'nice')
        self._auth(self.bob)

        resp = self.client.post('/api/chat/messages/reaction/', {
            'message_id': str(message.id), 'emoji': '👍',
        }, format='json')
        self.assertEqual(resp.status_code, status.HTTP_201_CREATED)
        self.assertEqual(resp.data['action'], 'added')

        resp = self.client.post('/api/chat/messages/reaction/', {
            'message_id': str(message.id), 'emoji': '👍',
        }, format='json')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data['action'], 'removed')
        self.assertFalse(MessageReaction.objects.exists())

    def test_read_receipt_visible_to_sender(self):
        conv = self._private(self.alice, self.bob)
        message = self._message(conv, self.alice, 'hi')

        self._auth(self.bob)
        resp = self.client.post('/api/chat/messages/read/', {'message_id': str(message.id)}, format='json')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)

        self._auth(self.alice)
        resp = self.client.get(f'/api/chat/messages/?conversation_id={conv.id}')
        receipts = resp.data[0]['read_receipts']
        self.assertEqual(len(receipts), 1)
        self.assertEqual(receipts[0]['user_id'], self.bob.id)
        self.assertIsNotNone(receipts[0]['read_at'])

    def test_search(self):
        conv = self._private(self.alice, self.bob)
        self._message(conv, self.bob, 'Meeting at noon')
        self._auth(self.alice)

        resp = self.client.get('/api/chat/messages/search/?query=meeting')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(len(resp.data), 1)
        self.assertEqual(resp.data[0]['conversation']['id'], str(conv.id))
        self.assertEqual(resp.data[0]['conversation']['type'], 'private')

        resp = self.client.get('/api/chat/messages/search/')
        self.assertEqual(resp.status_code, status.HTTP_400_BAD_REQUEST)

    def test_database_failure_is_transient(self):
        self._auth(self.alice)
        with patch('chat.directory.ConversationDirectory.list_for_user',
                   side_effect=OperationalError('connection lost')):
            resp = self.client.get('/api/chat/conversations/')
        self.assertEqual(resp.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertNotIn('connection lost', resp.data['error'])


class HealthCheckTestCase(TestCase):

    def test_health(self):
        resp = APIClient().get('/api/health/')
        self.assertEqual(resp.status_code, status.HTTP_200_OK)
        self.assertEqual(resp.data['db'], 'connected')
