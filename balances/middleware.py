import logging

from django.db import DatabaseError
from django.http import Http404, JsonResponse

from .results import NOT_FOUND

logger = logging.getLogger(__name__)


class ApiErrorMiddleware:
    """Answer JSON instead of an HTML error page for the balances API."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        return self.get_response(request)

    def process_exception(self, request, exception):
        match = getattr(request, 'resolver_match', None)
        if match is None or match.namespace != 'balances':
            return None
        if isinstance(exception, Http404):
            return JsonResponse({'success': False, 'reason': NOT_FOUND, 'error': str(exception)}, status=404)
        if isinstance(exception, DatabaseError):
            logger.exception("Database error while handling %s %s", request.method, request.path)
            return JsonResponse({'success': False, 'reason': 'database_error'}, status=500)
        return None
