from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    is_examinee = models.BooleanField(default=True)
    full_name = models.CharField(max_length=200, blank=True, default="")
    document_number = models.CharField(max_length=20, unique=True, null=True, blank=True)

    def save(self, *args, **kwargs):
        if not self.full_name:
            composed = f"{self.first_name} {self.last_name}".strip()
            self.full_name = composed
        super().save(*args, **kwargs)

    @property
    def display_name(self):
        return self.full_name or self.username
