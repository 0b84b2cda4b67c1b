from django.urls import path
from . import views

urlpatterns = [
    # Conversations (POST creates or fetches the private conversation with contact_id)
    path('conversations/', views.ConversationListView.as_view(), name='conversation-list'),
    # Groups
    path('groups/', views.GroupCreateView.as_view(), name='group-create'),
    path('groups/<uuid:conversation_id>/', views.GroupDetailView.as_view(), name='group-detail'),
    path('groups/<uuid:conversation_id>/members/', views.GroupMembersView.as_view(), name='group-members'),
    path('groups/<uuid:conversation_id>/members/<int:user_id>/', views.GroupMemberDetailView.as_view(), name='group-member-detail'),
    path('groups/<uuid:conversation_id>/members/<int:user_id>/role/', views.GroupMemberRoleView.as_view(), name='group-member-role'),
    path('groups/<uuid:conversation_id>/mute/', views.GroupMuteView.as_view(), name='group-mute'),
    path('groups/<uuid:conversation_id>/leave/', views.GroupLeaveView.as_view(), name='group-leave'),
    # Messages
    path('messages/', views.MessageListView.as_view(), name='message-list'),
    path('messages/reaction/', views.ReactionView.as_view(), name='message-reaction'),
    path('messages/read/', views.MarkReadView.as_view(), name='message-read'),
    path('messages/search/', views.SearchMessagesView.as_view(), name='message-search'),
    path('messages/<uuid:message_id>/', views.MessageDetailView.as_view(), name='message-detail'),
]
