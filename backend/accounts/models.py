from django.contrib.auth.models import AbstractUser, BaseUserManager
from django.db import models
from django.db.models import Q


class UserManager(BaseUserManager):
    def create_user(self, email, username, password=None, **extra_fields):
        if not email:
            raise ValueError('Email is required')
        email = self.normalize_email(email)
        user = self.model(email=email, username=username, **extra_fields)
        user.set_password(password)
        user.save(using=self._db)
        return user

    def create_superuser(self, email=None, username=None, password=None, **extra_fields):
        extra_fields.setdefault('is_staff', True)
        extra_fields.setdefault('is_superuser', True)
        if not email:
            email = extra_fields.get('email', 'admin@chatrelay.local')
        if not username:
            username = email.split('@')[0]
        return self.create_user(email, username, password, **extra_fields)


class User(AbstractUser):
    email = models.EmailField(unique=True)
    display_name = models.CharField(max_length=150, blank=True, default='')
    # Reference to an externally stored image, never the file itself
    avatar = models.URLField(max_length=500, blank=True, default='')
    is_online = models.BooleanField(default=False)
    last_seen = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = UserManager()

    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = ['username']

    class Meta:
        db_table = 'users'
        ordering = ['-created_at']

    def __str__(self):
        return f'{self.display_name or self.username} ({self.email})'


class Contact(models.Model):
    """
    Presence-visibility link between two users.

    Rows are written by the contacts feature (outside this service); the
    relation is read as unordered, so a row (a, b) makes a and b see each
    other's presence.
    """
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='contacts')
    contact = models.ForeignKey(User, on_delete=models.CASCADE, related_name='contact_of')
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'contacts'
        unique_together = ['user', 'contact']

    def __str__(self):
        return f'{self.user_id} <-> {self.contact_id}'

    @classmethod
    def counterpart_ids(cls, user_id):
        """Distinct ids of every user linked to ``user_id`` on either side."""
        rows = cls.objects.filter(Q(user_id=user_id) | Q(contact_id=user_id)).values_list(
            'user_id', 'contact_id'
        )
        others = set()
        for left, right in rows:
            others.add(right if left == user_id else left)
        others.discard(user_id)
        return sorted(others)
