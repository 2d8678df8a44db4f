"""
Tenant API URLs.
"""
from django.urls import path

from apps.tenants.views import ActiveTenantView, TenantListView

app_name = 'tenants'

urlpatterns = [
    path('tenants', TenantListView.as_view(), name='tenant-list'),
    path('tenants/active', ActiveTenantView.as_view(), name='active-tenant'),
]
