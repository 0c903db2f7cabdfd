import logging

from django.contrib.auth import get_user_model
from rest_framework import generics, status, viewsets
from rest_framework.decorators import api_view, permission_classes
from rest_framework.exceptions import PermissionDenied, ValidationError
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.response import Response
from rest_framework_simplejwt.views import TokenObtainPairView

from common.permissions import RoleCapabilityPermission, get_user_role
from core.models import AppSettings
from core.serializers import (
    AppSettingsSerializer,
    PasswordResetSerializer,
    UserSerializer,
    UserSettingsSerializer,
    UsernameOrEmailTokenObtainPairSerializer,
)

User = get_user_model()
logger = logging.getLogger(__name__)


class UsernameOrEmailTokenObtainPairView(TokenObtainPairView):
    serializer_class = UsernameOrEmailTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class UserViewSet(viewsets.ModelViewSet):
    queryset = User.objects.order_by("username")
    serializer_class = UserSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "users.manage",
        "retrieve": "users.manage",
        "create": "users.manage",
        "update": "users.manage",
        "partial_update": "users.manage",
        "destroy": "users.manage",
    }

    def _check_role_assignment(self, serializer):
        role = serializer.validated_data.get("role")
        if role == User.Role.SUPER_ADMIN and get_user_role(self.request.user) != User.Role.SUPER_ADMIN:
            raise PermissionDenied("Only a super admin can grant the super admin role.")

    def perform_create(self, serializer):
        self._check_role_assignment(serializer)
        user = serializer.save()
        logger.info("user_created", extra={"user_id": str(user.id), "user_role": user.role})

    def perform_update(self, serializer):
        self._check_role_assignment(serializer)
        if serializer.instance.role == User.Role.SUPER_ADMIN and get_user_role(self.request.user) != User.Role.SUPER_ADMIN:
            raise PermissionDenied("Only a super admin can modify a super admin account.")
        serializer.save()

    def perform_destroy(self, instance):
        if instance.pk == self.request.user.pk:
            raise ValidationError({"detail": "You cannot delete your own account."})
        if instance.role == User.Role.SUPER_ADMIN and get_user_role(self.request.user) != User.Role.SUPER_ADMIN:
            raise PermissionDenied("Only a super admin can delete a super admin account.")
        logger.info("user_deleted", extra={"user_id": str(instance.id)})
        instance.delete()


class UserSettingsView(generics.GenericAPIView):
    serializer_class = UserSettingsSerializer
    permission_classes = [IsAuthenticated]

    def patch(self, request, *args, **kwargs):
        serializer = self.get_serializer(request.user, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        user = serializer.save()
        return Response(UserSerializer(user).data, status=status.HTTP_200_OK)

    put = patch


class PasswordResetView(generics.GenericAPIView):
    """Forced first-login reset. Clears `requires_password_reset` on success."""

    serializer_class = PasswordResetSerializer
    permission_classes = [IsAuthenticated]

    def post(self, request, *args, **kwargs):
        serializer = self.get_serializer(request.user, data=request.data)
        serializer.is_valid(raise_exception=True)
        user = serializer.save()
        return Response(UserSerializer(user).data, status=status.HTTP_200_OK)


class AppSettingsView(generics.RetrieveUpdateAPIView):
    serializer_class = AppSettingsSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "get": "settings.view",
        "put": "settings.manage",
        "patch": "settings.manage",
    }

    def get_object(self):
        return AppSettings.load()


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})
