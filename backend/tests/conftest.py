"""Root conftest — shared test configuration."""

import os

# Settings are cached on first import of app.main: fix the environment before that
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///test.db",
)
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("ROBOKASSA_MERCHANT_LOGIN", "demo-shop")
os.environ.setdefault("ROBOKASSA_PASSWORD1", "pass-one")
os.environ.setdefault("ROBOKASSA_PASSWORD2", "pass-two")
os.environ.setdefault("YOOMONEY_RECEIVER", "4100111222333")
os.environ.setdefault("YOOMONEY_NOTIFICATION_SECRET", "yoo-secret")
os.environ.setdefault("YOOMONEY_API_TOKEN", "yoo-token")
