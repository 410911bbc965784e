"""Global pytest configuration."""

import os

# Set env before any settings are built
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SESSION_SECRET_KEY", "test-secret")
