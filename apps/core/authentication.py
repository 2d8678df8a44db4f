"""
Custom DRF authentication classes.
"""
from rest_framework.authentication import BaseAuthentication


class MiddlewareAuthentication(BaseAuthentication):
    """
    Hand DRF the user authenticated by TenantContextMiddleware.

    The middleware validates the JWT bearer once per request; DRF views
    reuse that result instead of decoding the token again. Returning None
    leaves DRF with an AnonymousUser, so module permission checks answer
    401 rather than 403.
    """

    def authenticate(self, request):
        user = getattr(request._request, 'user', None)
        if user is not None and user.is_authenticated:
            return (user, None)
        return None

    def authenticate_header(self, request):
        return 'Bearer'
