from rest_framework import serializers
from .models import User


class UserSummarySerializer(serializers.ModelSerializer):
    """Minimal identity shown next to messages, reactions and mentions."""
    class Meta:
        model = User
        fields = ['id', 'username', 'avatar']
