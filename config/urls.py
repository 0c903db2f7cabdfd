from django.contrib import admin
from django.urls import include, path
from rest_framework_simplejwt.views import TokenRefreshView

from core.views import UsernameOrEmailTokenObtainPairView, healthz

auth_patterns = [
    path("token/", UsernameOrEmailTokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
]

api_patterns = auth_patterns + [path("", include(f"{app}.urls")) for app in ("core", "inventory", "sales")]

urlpatterns = [
    path("admin/", admin.site.urls),
    path("healthz/", healthz, name="healthz"),
    path("api/v1/", include(api_patterns)),
]
