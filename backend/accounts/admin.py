from django.contrib import admin, messages
from django.contrib.auth.admin import UserAdmin
from django.utils.crypto import get_random_string

from .models import User


@admin.register(User)
class CustomUserAdmin(UserAdmin):
    fieldsets = UserAdmin.fieldsets + (
        (
            "Examinee Profile",
            {"fields": ("full_name", "document_number", "is_examinee")},
        ),
    )
    add_fieldsets = UserAdmin.add_fieldsets + (
        (
            "Examinee Profile",
            {"fields": ("full_name", "document_number", "is_examinee")},
        ),
    )
    list_display = (
        "username",
        "email",
        "full_name",
        "document_number",
        "is_examinee",
        "is_staff",
    )
    list_filter = UserAdmin.list_filter + ("is_examinee",)
    search_fields = ("username", "email", "full_name", "document_number")
    actions = ("reset_selected_user_passwords",)

    @admin.action(description="Reset selected user passwords (temporary)")
    def reset_selected_user_passwords(self, request, queryset):
        generated = []
        for user in queryset:
            temp_password = get_random_string(10)
            user.set_password(temp_password)
            user.save(update_fields=["password"])
            generated.append(f"{user.username}: {temp_password}")

        if not generated:
            self.message_user(request, "No user selected for password reset.", level=messages.WARNING)
            return

        self.message_user(
            request,
            "Temporary passwords generated. Share securely with users:\n" + " | ".join(generated),
            level=messages.INFO,
        )
