import logging

from django.contrib.auth import get_user_model
from django.db import transaction
from django.utils import timezone

from accounts.models import Contact
from . import events
from .exceptions import NotFound

logger = logging.getLogger(__name__)
User = get_user_model()


class PresenceTracker:
    """Online flag and last-seen time, pushed to the user's contacts."""

    def __init__(self, router=None):
        self.router = router or events.get_router()

    def contact_ids(self, user_id):
        return Contact.counterpart_ids(user_id)

    def set_online(self, user_id, online):
        """Record the transition and notify every contact; returns the contact ids."""
        now = timezone.now()
        with transaction.atomic():
            updated = User.objects.filter(id=user_id).update(is_online=online, last_seen=now)
            if not updated:
                raise NotFound('User not found')

            contacts = self.contact_ids(user_id)
            payload = {'user_id': user_id, 'is_online': online, 'last_seen': now}
            for contact_id in contacts:
                self.router.publish_on_commit(
                    events.user_scope(contact_id), events.PRESENCE_UPDATE, payload
                )

        logger.debug(f'User {user_id} is now {"online" if online else "offline"} ({len(contacts)} contacts)')
        return contacts
