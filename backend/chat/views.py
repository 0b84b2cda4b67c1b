import logging

from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .directory import ConversationDirectory
from .engagement import ADDED, EngagementStore
from .ledger import MessageLedger
from .serializers import (
    AddMembersSerializer, ConversationDetailSerializer, ConversationRefSerializer,
    CreateGroupSerializer, CreatePrivateConversationSerializer, DeleteMessageSerializer,
    EditMessageSerializer, GroupMemberSerializer, MessageSerializer, ReactionSerializer,
    ReadReceiptSerializer, SearchMessagesSerializer, SearchResultSerializer,
    SendMessageSerializer, ToggleReactionSerializer, MessageRefSerializer,
    UpdateGroupSerializer, UpdateRoleSerializer,
)

logger = logging.getLogger(__name__)


def validated(serializer_class, data):
    """Validate a request payload; failures surface through the exception handler."""
    serializer = serializer_class(data=data)
    serializer.is_valid(raise_exception=True)
    return serializer.validated_data


class ChatAPIView(APIView):
    """Base view: authenticated, with the chat services wired in."""
    permission_classes = [IsAuthenticated]
    directory_class = ConversationDirectory
    ledger_class = MessageLedger
    engagement_class = EngagementStore

    @property
    def directory(self):
        return self.directory_class()

    @property
    def ledger(self):
        return self.ledger_class()

    @property
    def engagement(self):
        return self.engagement_class()


# ── CONVERSATIONS ──

class ConversationListView(ChatAPIView):
    """
    GET  /api/chat/conversations/ — list conversations, most recent activity first.
    POST /api/chat/conversations/ — find or create the private conversation with {"contact_id": <int>}.
    """

    def get(self, request):
        return Response(self.directory.list_for_user(request.user.id))

    def post(self, request):
        data = validated(CreatePrivateConversationSerializer, request.data)
        conversation, created = self.directory.find_or_create_private(
            request.user.id, data['contact_id']
        )
        return Response(
            ConversationDetailSerializer(conversation).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


# ── GROUPS ──

class GroupCreateView(ChatAPIView):
    """POST /api/chat/groups/ — create a group; the creator becomes its admin."""

    def post(self, request):
        data = validated(CreateGroupSerializer, request.data)
        conversation = self.directory.create_group(
            request.user.id, data['name'], data['member_ids'], avatar=data['avatar']
        )
        return Response(ConversationDetailSerializer(conversation).data, status=status.HTTP_201_CREATED)


class GroupDetailView(ChatAPIView):
    """PUT/PATCH /api/chat/groups/<id>/ — rename or change the avatar (admins only)."""

    def put(self, request, conversation_id):
        data = validated(UpdateGroupSerializer, request.data)
        conversation = self.directory.update_group(
            request.user.id, conversation_id,
            name=data.get('name'), avatar=data.get('avatar'),
        )
        return Response(ConversationDetailSerializer(conversation).data)

    def patch(self, request, conversation_id):
        return self.put(request, conversation_id)


class GroupMembersView(ChatAPIView):
    """POST /api/chat/groups/<id>/members/ — add members (admins only)."""

    def post(self, request, conversation_id):
        data = validated(AddMembersSerializer, request.data)
        conversation = self.directory.add_members(request.user.id, conversation_id, data['member_ids'])
        return Response(ConversationDetailSerializer(conversation).data)


class GroupMemberDetailView(ChatAPIView):
    """DELETE /api/chat/groups/<id>/members/<user_id>/ — remove a member (admins only)."""

    def delete(self, request, conversation_id, user_id):
        self.directory.remove_member(request.user.id, conversation_id, user_id)
        return Response({'message': 'Member removed successfully'})


class GroupMemberRoleView(ChatAPIView):
    """PUT /api/chat/groups/<id>/members/<user_id>/role/ — {"role": "admin"|"member"}"""

    def put(self, request, conversation_id, user_id):
        data = validated(UpdateRoleSerializer, request.data)
        membership = self.directory.update_role(request.user.id, conversation_id, user_id, data['role'])
        return Response(GroupMemberSerializer(membership).data)


class GroupMuteView(ChatAPIView):
    """PUT /api/chat/groups/<id>/mute/ — toggle the caller's mute flag."""

    def put(self, request, conversation_id):
        membership = self.directory.toggle_mute(request.user.id, conversation_id)
        return Response({'conversation_id': str(conversation_id), 'is_muted': membership.is_muted})


class GroupLeaveView(ChatAPIView):
    """POST /api/chat/groups/<id>/leave/"""

    def post(self, request, conversation_id):
        self.directory.leave(request.user.id, conversation_id)
        return Response({'message': 'Left group successfully'})


# ── MESSAGES ──

class MessageListView(ChatAPIView):
    """
    GET  /api/chat/messages/?conversation_id=<uuid> — messages of a conversation, oldest first.
    POST /api/chat/messages/ — send a message.
    """

    def get(self, request):
        data = validated(ConversationRefSerializer, request.query_params)
        messages = self.ledger.list(request.user.id, data['conversation_id'])
        return Response(MessageSerializer(messages, many=True).data)

    def post(self, request):
        data = validated(SendMessageSerializer, request.data)
        message = self.ledger.send(
            request.user.id,
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
        return Response(MessageSerializer(message).data, status=status.HTTP_201_CREATED)


class MessageDetailView(ChatAPIView):
    """
    PUT/PATCH /api/chat/messages/<id>/ — edit own message.
    DELETE    /api/chat/messages/<id>/?delete_for_everyone=true — soft delete own message.
    """

    def put(self, request, message_id):
        data = validated(EditMessageSerializer, request.data)
        message = self.ledger.edit(request.user.id, message_id, data['content'])
        return Response(MessageSerializer(message).data)

    def patch(self, request, message_id):
        return self.put(request, message_id)

    def delete(self, request, message_id):
        data = validated(DeleteMessageSerializer, {
            'message_id': message_id,
            'delete_for_everyone': request.query_params.get('delete_for_everyone', False),
        })
        self.ledger.delete(request.user.id, message_id, data['delete_for_everyone'])
        return Response({'message': 'Message deleted successfully'})


class ReactionView(ChatAPIView):
    """POST /api/chat/messages/reaction/ — toggle {"message_id", "emoji"} for the caller."""

    def post(self, request):
        data = validated(ToggleReactionSerializer, request.data)
        outcome, reaction = self.engagement.toggle_reaction(
            request.user.id, data['message_id'], data['emoji']
        )
        if outcome == ADDED:
            return Response(
                {'action': outcome, 'reaction': ReactionSerializer(reaction).data},
                status=status.HTTP_201_CREATED,
            )
        return Response({'action': outcome, 'reaction': None})


class MarkReadView(ChatAPIView):
    """POST /api/chat/messages/read/ — record that the caller read {"message_id"}."""

    def post(self, request):
        data = validated(MessageRefSerializer, request.data)
        receipt = self.engagement.mark_read(request.user.id, data['message_id'])
        return Response(ReadReceiptSerializer(receipt).data)


class SearchMessagesView(ChatAPIView):
    """GET /api/chat/messages/search/?query=&conversation_id=&sender_id="""

    def get(self, request):
        data = validated(SearchMessagesSerializer, request.query_params)
        messages = self.ledger.search(
            request.user.id, data['query'],
            conversation_id=data['conversation_id'], sender_id=data['sender_id'],
        )
        return Response(SearchResultSerializer(messages, many=True).data)
