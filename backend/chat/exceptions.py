from rest_framework import status
from rest_framework.exceptions import APIException


class ChatError(APIException):
    """Base class for errors raised by the chat services.

    The message is kept in ``detail`` and rendered as ``{"error": ...}`` by
    the project exception handler; the websocket consumer sends the same
    message back in an error frame.
    """
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Request could not be processed.'
    default_code = 'chat_error'

    @property
    def message(self):
        return str(self.detail)


class ValidationFailed(ChatError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Invalid request.'
    default_code = 'validation_failed'


class AccessDenied(ChatError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'Access denied'
    default_code = 'access_denied'


class NotFound(ChatError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Not found'
    default_code = 'not_found'


class InvariantViolation(ChatError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Operation conflicts with the current state.'
    default_code = 'invariant_violation'


class TransientFailure(ChatError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'Service temporarily unavailable, please retry.'
    default_code = 'transient_failure'


def error_message(detail):
    """Collapse a DRF error detail (string, list or field dict) into one message."""
    if isinstance(detail, dict):
        if not detail:
            return ChatError.default_detail
        field, errors = next(iter(detail.items()))
        message = error_message(errors)
        if field in ('non_field_errors', 'detail'):
            return message
        return f'{field}: {message}'
    if isinstance(detail, (list, tuple)):
        return error_message(detail[0]) if detail else ChatError.default_detail
    return str(detail)
