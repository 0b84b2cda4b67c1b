from django.contrib import admin
from .models import Conversation, GroupMember, Message, MessageReaction, ReadReceipt, Mention


class GroupMemberInline(admin.TabularInline):
    model = GroupMember
    extra = 0
    raw_id_fields = ['user']


@admin.register(Conversation)
class ConversationAdmin(admin.ModelAdmin):
    list_display = ['id', 'conv_type', 'name', 'private_key', 'created_at', 'updated_at']
    list_filter = ['conv_type']
    search_fields = ['name', 'private_key']
    raw_id_fields = ['participant_one', 'participant_two']
    inlines = [GroupMemberInline]


@admin.register(GroupMember)
class GroupMemberAdmin(admin.ModelAdmin):
    list_display = ['conversation', 'user', 'role', 'is_muted', 'joined_at']
    list_filter = ['role', 'is_muted']
    search_fields = ['user__email']


@admin.register(Message)
class MessageAdmin(admin.ModelAdmin):
    list_display = ['id', 'conversation', 'sender', 'message_type', 'is_edited', 'is_deleted', 'created_at']
    list_filter = ['message_type', 'is_deleted', 'is_edited']
    search_fields = ['sender__email', 'content']


@admin.register(MessageReaction)
class MessageReactionAdmin(admin.ModelAdmin):
    list_display = ['message', 'user', 'emoji', 'created_at']


@admin.register(ReadReceipt)
class ReadReceiptAdmin(admin.ModelAdmin):
    list_display = ['message', 'user', 'read_at']


@admin.register(Mention)
class MentionAdmin(admin.ModelAdmin):
    list_display = ['message', 'user']
