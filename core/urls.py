from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import (
    AppSettingsView,
    PasswordResetView,
    UserSettingsView,
    UserViewSet,
)

router = DefaultRouter()
router.register(r"users", UserViewSet, basename="user")

urlpatterns = [
    path("users/me/settings/", UserSettingsView.as_view(), name="user_settings"),
    path("password-reset/", PasswordResetView.as_view(), name="password_reset"),
    path("settings/", AppSettingsView.as_view(), name="app_settings"),
] + router.urls
