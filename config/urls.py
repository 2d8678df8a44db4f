"""
URL configuration for Orbe.
"""
from django.urls import path, include
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView

urlpatterns = [
    # API Documentation
    path('schema/', SpectacularAPIView.as_view(), name='schema'),
    path('schema/swagger/', SpectacularSwaggerView.as_view(url_name='schema'), name='swagger-ui'),

    # Health check
    path('v1/', include('apps.core.urls')),

    # Companies and active company selection
    path('v1/', include('apps.tenants.urls')),

    # Login, permissions, roles, memberships, invitations, audit logs
    path('v1/', include('apps.rbac.urls')),
]
