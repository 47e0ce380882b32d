from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin

from .models import User


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ("username", "email", "role", "loyalty_points", "loyalty_tier", "is_active")
    list_filter = ("role", "loyalty_tier", "is_active")
    readonly_fields = ("loyalty_points", "loyalty_tier")
    fieldsets = BaseUserAdmin.fieldsets + (
        ("Shop", {"fields": ("role", "loyalty_points", "loyalty_tier")}),
    )
