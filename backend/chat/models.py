import uuid
from django.db import models
from django.conf import settings


class Conversation(models.Model):
    PRIVATE = 'private'
    GROUP = 'group'
    CONV_TYPES = [
        (PRIVATE, 'Private'),
        (GROUP, 'Group'),
    ]
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    conv_type = models.CharField(max_length=10, choices=CONV_TYPES, default=PRIVATE)
    # Private chats: the two participants, in creation order
    participant_one = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True,
        on_delete=models.CASCADE, related_name='+'
    )
    participant_two = models.ForeignKey(
        settings.AUTH_USER_MODEL, null=True, blank=True,
        on_delete=models.CASCADE, related_name='+'
    )
    # "<low id>:<high id>" for private chats, null for groups
    private_key = models.CharField(max_length=64, unique=True, null=True, blank=True)
    # Group chats
    name = models.CharField(max_length=100, blank=True, default='')
    avatar = models.URLField(max_length=500, blank=True, default='')
    members = models.ManyToManyField(
        settings.AUTH_USER_MODEL,
        through='GroupMember',
        related_name='group_conversations'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'conversations'
        ordering = ['created_at']

    def __str__(self):
        return f'{self.conv_type} conversation {self.id}'

    @property
    def is_group(self):
        return self.conv_type == self.GROUP

    @staticmethod
    def make_private_key(user_id, other_user_id):
        low, high = sorted([int(user_id), int(other_user_id)])
        return f'{low}:{high}'


class GroupMember(models.Model):
    ADMIN = 'admin'
    MEMBER = 'member'
    ROLES = [
        (ADMIN, 'Admin'),
        (MEMBER, 'Member'),
    ]
    conversation = models.ForeignKey(
        Conversation, on_delete=models.CASCADE, related_name='group_members'
    )
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='group_memberships'
    )
    role = models.CharField(max_length=10, choices=ROLES, default=MEMBER)
    is_muted = models.BooleanField(default=False)
    joined_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'group_members'
        unique_together = ['conversation', 'user']
        ordering = ['joined_at', 'id']

    def __str__(self):
        return f'{self.user_id} in {self.conversation_id} ({self.role})'


class Message(models.Model):
    MSG_TYPES = [
        ('text', 'Text'),
        ('image', 'Image'),
        ('video', 'Video'),
        ('audio', 'Audio'),
        ('file', 'File'),
    ]
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    conversation = models.ForeignKey(
        Conversation, on_delete=models.CASCADE, related_name='messages'
    )
    sender = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='sent_messages'
    )
    message_type = models.CharField(max_length=15, choices=MSG_TYPES, default='text')
    content = models.TextField()
    # Media lives in external storage; only the reference is kept
    media_url = models.URLField(max_length=500, blank=True, default='')
    file_name = models.CharField(max_length=255, blank=True, default='')
    file_size = models.BigIntegerField(null=True, blank=True)
    # State
    is_edited = models.BooleanField(default=False)
    edited_at = models.DateTimeField(null=True, blank=True)
    is_deleted = models.BooleanField(default=False)
    deleted_for_everyone = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'messages'
        ordering = ['created_at']
        indexes = [
            models.Index(fields=['conversation', 'created_at'], name='messages_conv_created_idx'),
            models.Index(fields=['sender', 'created_at'], name='messages_sender_created_idx'),
        ]

    def __str__(self):
        return f'{self.message_type} from {self.sender_id} in {self.conversation_id}'


class MessageReaction(models.Model):
    message = models.ForeignKey(Message, on_delete=models.CASCADE, related_name='reactions')
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='message_reactions'
    )
    emoji = models.CharField(max_length=32)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'message_reactions'
        unique_together = ['message', 'user', 'emoji']
        ordering = ['created_at', 'id']

    def __str__(self):
        return f'{self.user_id} reacted {self.emoji} to {self.message_id}'


class ReadReceipt(models.Model):
    message = models.ForeignKey(Message, on_delete=models.CASCADE, related_name='read_receipts')
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='read_receipts'
    )
    read_at = models.DateTimeField()

    class Meta:
        db_table = 'read_receipts'
        unique_together = ['message', 'user']
        ordering = ['read_at', 'id']

    def __str__(self):
        return f'{self.message_id} read by {self.user_id}'


class Mention(models.Model):
    message = models.ForeignKey(Message, on_delete=models.CASCADE, related_name='mentions')
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='mentions'
    )

    class Meta:
        db_table = 'mentions'
        unique_together = ['message', 'user']
        ordering = ['id']

    def __str__(self):
        return f'{self.user_id} mentioned in {self.message_id}'
