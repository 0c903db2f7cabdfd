from rest_framework import serializers
from django.contrib.auth import password_validation
from django.contrib.auth import get_user_model
from django.utils.crypto import get_random_string
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer

from core.models import AppSettings

User = get_user_model()

TEMPORARY_PASSWORD_LENGTH = 8
TEMPORARY_PASSWORD_CHARS = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789@#$"


def generate_temporary_password():
    return get_random_string(TEMPORARY_PASSWORD_LENGTH, TEMPORARY_PASSWORD_CHARS)


class RoleField(serializers.CharField):
    default_error_messages = {
        "invalid_role": "Unknown role '{value}'.",
    }

    def to_internal_value(self, data):
        value = User.normalize_role(super().to_internal_value(data))
        if value not in User.Role.values:
            self.fail("invalid_role", value=data)
        return value


class UserSerializer(serializers.ModelSerializer):
    role = RoleField(required=False)
    password = serializers.CharField(write_only=True, required=False, allow_blank=False)

    class Meta:
        model = User
        fields = [
            "id",
            "username",
            "full_name",
            "email",
            "role",
            "requires_password_reset",
            "is_active",
            "password",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    def validate_email(self, value):
        normalized_email = value.strip().lower()
        if not normalized_email:
            return normalized_email
        duplicates = User.objects.filter(email__iexact=normalized_email)
        if self.instance is not None:
            duplicates = duplicates.exclude(pk=self.instance.pk)
        if duplicates.exists():
            raise serializers.ValidationError("A user with this email already exists.")
        return normalized_email

    def create(self, validated_data):
        password = validated_data.pop("password", None)
        temporary_password = None
        if not password:
            temporary_password = password = generate_temporary_password()
            validated_data.setdefault("requires_password_reset", True)
        user = User(**validated_data)
        user.set_password(password)
        user.save()
        user.temporary_password = temporary_password
        return user

    def update(self, instance, validated_data):
        password = validated_data.pop("password", None)
        for field, value in validated_data.items():
            setattr(instance, field, value)
        if password:
            instance.set_password(password)
        instance.save()
        return instance

    def to_representation(self, instance):
        data = super().to_representation(instance)
        temporary_password = getattr(instance, "temporary_password", None)
        if temporary_password:
            data["temporary_password"] = temporary_password
        return data


class UsernameOrEmailTokenObtainPairSerializer(TokenObtainPairSerializer):
    @classmethod
    def get_token(cls, user):
        token = super().get_token(user)
        token["role"] = getattr(user, "role", None)
        token["full_name"] = getattr(user, "full_name", "")
        token["requires_password_reset"] = getattr(user, "requires_password_reset", False)
        return token

    def validate(self, attrs):
        username = attrs.get("username", "")
        if username and "@" in username:
            user = User.objects.filter(email__iexact=username).first()
            if user is not None:
                attrs["username"] = user.get_username()
        data = super().validate(attrs)
        data["user"] = UserSerializer(self.user).data
        return data


class UserSettingsSerializer(serializers.Serializer):
    """Self-service profile update; every change is gated by the current password."""

    full_name = serializers.CharField(required=False, max_length=255)
    username = serializers.CharField(required=False, max_length=150)
    new_password = serializers.CharField(required=False, write_only=True, min_length=6)
    confirm_password = serializers.CharField(required=False, write_only=True)
    current_password = serializers.CharField(write_only=True)

    def validate_current_password(self, value):
        if not self.instance.check_password(value):
            raise serializers.ValidationError("Current password is incorrect.")
        return value

    def validate_username(self, value):
        if User.objects.filter(username=value).exclude(pk=self.instance.pk).exists():
            raise serializers.ValidationError("A user with that username already exists.")
        return value

    def validate(self, attrs):
        new_password = attrs.get("new_password")
        if new_password and new_password != attrs.get("confirm_password", new_password):
            raise serializers.ValidationError({"confirm_password": "Passwords do not match."})
        return attrs

    def update(self, instance, validated_data):
        if "full_name" in validated_data:
            instance.full_name = validated_data["full_name"]
        if "username" in validated_data:
            instance.username = validated_data["username"]
        if validated_data.get("new_password"):
            instance.set_password(validated_data["new_password"])
        instance.save()
        return instance


class PasswordResetSerializer(serializers.Serializer):
    new_password = serializers.CharField(write_only=True, min_length=8)
    confirm_password = serializers.CharField(write_only=True)

    def validate(self, attrs):
        if attrs["new_password"] != attrs["confirm_password"]:
            raise serializers.ValidationError({"confirm_password": "Passwords do not match."})
        password_validation.validate_password(attrs["new_password"], user=self.instance)
        return attrs

    def update(self, instance, validated_data):
        instance.set_password(validated_data["new_password"])
        instance.requires_password_reset = False
        instance.save(update_fields=["password", "requires_password_reset", "updated_at"])
        return instance


class AppSettingsSerializer(serializers.ModelSerializer):
    class Meta:
        model = AppSettings
        fields = ["business_name", "business_logo", "vat_rate", "low_stock_threshold", "updated_at"]
        read_only_fields = ["updated_at"]
