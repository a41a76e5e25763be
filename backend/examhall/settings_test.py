import os

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECRET_KEY", "examhall-test-secret-key-000000000000000000000")

from .settings import *  # noqa: E402,F401,F403

# Tests drive the sweep explicitly; the middleware test turns it back on.
EXAM_SWEEP_ON_REQUEST = False
PASSWORD_HASHERS = ["django.contrib.auth.hashers.MD5PasswordHasher"]
STORAGES = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
}
