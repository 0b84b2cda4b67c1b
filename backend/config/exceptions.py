import logging

from django.db import DatabaseError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import exception_handler

from chat.exceptions import TransientFailure, error_message

logger = logging.getLogger(__name__)


def api_exception_handler(exc, context):
    """Render every API error as {"error": "<message>"}.

    Database failures become a 503; anything else DRF does not know about
    is left to Django (500).
    """
    if isinstance(exc, DatabaseError):
        view = context.get('view')
        logger.error(f'Database error in {view.__class__.__name__ if view else "unknown view"}: {exc}')
        exc = TransientFailure()

    response = exception_handler(exc, context)
    if response is None:
        return None

    response.data = {'error': error_message(response.data)}
    return response
