from django.core.management.base import BaseCommand
from django.utils import timezone
from accounts.models import User


class Command(BaseCommand):
    help = 'Reset all users to offline (run on server boot: a crashed process leaves stale online flags)'

    def handle(self, *args, **options):
        updated = User.objects.filter(is_online=True).update(is_online=False, last_seen=timezone.now())
        self.stdout.write(self.style.SUCCESS(f'All users set to offline (updated {updated} rows)'))
