from django.contrib.auth import logout

from .permissions import resolve_actor

EXEMPT_PREFIXES = ("/static/", "/media/", "/admin/")


class ActorMiddleware:
    """Attach the resolved stock actor (or None) to every request as ``request.actor``."""

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request.actor = None
        if request.path.startswith(EXEMPT_PREFIXES):
            return self.get_response(request)
        if not request.user.is_authenticated:
            return self.get_response(request)
        if not request.user.is_active:
            logout(request)
            return self.get_response(request)

        request.actor = resolve_actor(request.user)
        return self.get_response(request)
