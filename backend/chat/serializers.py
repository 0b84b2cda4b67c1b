from django.conf import settings
from rest_framework import serializers

from accounts.serializers import UserSummarySerializer
from .models import Conversation, GroupMember, Message, MessageReaction, ReadReceipt, Mention


# ── OUTPUT ──

class ReactionSerializer(serializers.ModelSerializer):
    message_id = serializers.UUIDField(read_only=True)
    user = UserSummarySerializer(read_only=True)

    class Meta:
        model = MessageReaction
        fields = ['id', 'message_id', 'user', 'emoji', 'created_at']


class MentionSerializer(serializers.ModelSerializer):
    user = UserSummarySerializer(read_only=True)

    class Meta:
        model = Mention
        fields = ['id', 'user']


class ReadReceiptSerializer(serializers.ModelSerializer):
    message_id = serializers.UUIDField(read_only=True)
    user_id = serializers.IntegerField(read_only=True)

    class Meta:
        model = ReadReceipt
        fields = ['message_id', 'user_id', 'read_at']


class MessageSerializer(serializers.ModelSerializer):
    conversation_id = serializers.UUIDField(read_only=True)
    sender = UserSummarySerializer(read_only=True)
    reactions = ReactionSerializer(many=True, read_only=True)
    mentions = MentionSerializer(many=True, read_only=True)
    read_receipts = serializers.SerializerMethodField()

    class Meta:
        model = Message
        fields = [
            'id', 'conversation_id', 'sender', 'message_type', 'content',
            'media_url', 'file_name', 'file_size',
            'is_edited', 'edited_at', 'is_deleted', 'deleted_for_everyone', 'deleted_at',
            'reactions', 'mentions', 'read_receipts', 'created_at',
        ]

    def get_read_receipts(self, obj):
        # Only receipts the ledger chose to expose are attached
        receipts = getattr(obj, 'visible_receipts', [])
        return ReadReceiptSerializer(receipts, many=True).data


class ConversationSummarySerializer(serializers.ModelSerializer):
    type = serializers.CharField(source='conv_type', read_only=True)

    class Meta:
        model = Conversation
        fields = ['id', 'type', 'name']


class SearchResultSerializer(MessageSerializer):
    conversation = ConversationSummarySerializer(read_only=True)

    class Meta(MessageSerializer.Meta):
        fields = MessageSerializer.Meta.fields + ['conversation']


class GroupMemberSerializer(serializers.ModelSerializer):
    """Member entry of a group, flattened with the user's summary"""
    id = serializers.IntegerField(source='user.id', read_only=True)
    username = serializers.CharField(source='user.username', read_only=True)
    avatar = serializers.CharField(source='user.avatar', read_only=True)
    is_online = serializers.BooleanField(source='user.is_online', read_only=True)

    class Meta:
        model = GroupMember
        fields = ['id', 'username', 'avatar', 'is_online', 'role', 'is_muted', 'joined_at']


class ConversationDetailSerializer(serializers.ModelSerializer):
    conversation_id = serializers.UUIDField(source='id', read_only=True)
    type = serializers.CharField(source='conv_type', read_only=True)
    participant_ids = serializers.SerializerMethodField()
    members = GroupMemberSerializer(source='group_members', many=True, read_only=True)

    class Meta:
        model = Conversation
        fields = [
            'id', 'conversation_id', 'type', 'name', 'avatar', 'participant_ids', 'members',
            'created_at', 'updated_at',
        ]

    def get_participant_ids(self, obj):
        if obj.is_group:
            return []
        return [obj.participant_one_id, obj.participant_two_id]


# ── REQUESTS ──
# One serializer per operation, shared by the REST views and the websocket consumer.

class ConversationRefSerializer(serializers.Serializer):
    conversation_id = serializers.UUIDField()


class CreatePrivateConversationSerializer(serializers.Serializer):
    contact_id = serializers.IntegerField(min_value=1)


class CreateGroupSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100)
    avatar = serializers.URLField(max_length=500, required=False, allow_blank=True, default='')
    member_ids = serializers.ListField(child=serializers.IntegerField(min_value=1), allow_empty=False)


class UpdateGroupSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100, required=False)
    avatar = serializers.URLField(max_length=500, required=False, allow_blank=True)


class AddMembersSerializer(serializers.Serializer):
    member_ids = serializers.ListField(child=serializers.IntegerField(min_value=1), allow_empty=False)


class UpdateRoleSerializer(serializers.Serializer):
    role = serializers.ChoiceField(choices=GroupMember.ROLES)


class SendMessageSerializer(serializers.Serializer):
    conversation_id = serializers.UUIDField()
    content = serializers.CharField(max_length=settings.CHAT_MESSAGE_MAX_LENGTH)
    message_type = serializers.ChoiceField(choices=Message.MSG_TYPES, default='text')
    media_url = serializers.URLField(max_length=500, required=False, allow_blank=True, default='')
    file_name = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')
    file_size = serializers.IntegerField(min_value=0, required=False, allow_null=True, default=None)
    mention_ids = serializers.ListField(
        child=serializers.IntegerField(min_value=1), required=False, default=list
    )

    def validate(self, attrs):
        if attrs['message_type'] != 'text' and not attrs.get('media_url'):
            raise serializers.ValidationError('media_url is required for media messages')
        return attrs


class EditMessageSerializer(serializers.Serializer):
    content = serializers.CharField(max_length=settings.CHAT_MESSAGE_MAX_LENGTH)


class MessageRefSerializer(serializers.Serializer):
    message_id = serializers.UUIDField()


class EditMessageCommandSerializer(MessageRefSerializer, EditMessageSerializer):
    pass


class DeleteMessageSerializer(MessageRefSerializer):
    delete_for_everyone = serializers.BooleanField(default=False)


class ToggleReactionSerializer(serializers.Serializer):
    message_id = serializers.UUIDField()
    emoji = serializers.CharField(max_length=32)


class SearchMessagesSerializer(serializers.Serializer):
    query = serializers.CharField(max_length=200)
    conversation_id = serializers.UUIDField(required=False, allow_null=True, default=None)
    sender_id = serializers.IntegerField(min_value=1, required=False, allow_null=True, default=None)


class TypingSerializer(ConversationRefSerializer):
    is_typing = serializers.BooleanField(default=True)


class PresenceSerializer(serializers.Serializer):
    is_online = serializers.BooleanField()
