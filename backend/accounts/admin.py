from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User, Contact


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ['email', 'username', 'display_name', 'is_online', 'last_seen', 'created_at']
    list_filter = ['is_online', 'is_staff']
    search_fields = ['email', 'username', 'display_name']
    ordering = ['-created_at']

    fieldsets = BaseUserAdmin.fieldsets + (
        ('Chat Profile', {
            'fields': ('display_name', 'avatar', 'is_online', 'last_seen')
        }),
    )

    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ('Chat Profile', {
            'fields': ('email', 'display_name')
        }),
    )


@admin.register(Contact)
class ContactAdmin(admin.ModelAdmin):
    list_display = ['user', 'contact', 'created_at']
    search_fields = ['user__email', 'contact__email']
