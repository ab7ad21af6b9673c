"""Django settings for the bookstore checkout service.

Every value can be overridden through environment variables. PostgreSQL
(through psycopg) is used when ``DB_HOST`` is set; otherwise a local SQLite
file, which is what the test-suite runs on.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.getenv("DJANGO_SECRET_KEY", "dev-insecure-change-me")
DEBUG = _bool("DJANGO_DEBUG", False)
ALLOWED_HOSTS = os.getenv("DJANGO_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = [
    "django.contrib.contenttypes",
    "django.contrib.auth",
    "rest_framework",
    "apps.checkouts",
]

MIDDLEWARE = [
    "gateway.middleware.RequestIdMiddleware",
    "gateway.middleware.ApiSizeLimitMiddleware",
    "django.middleware.common.CommonMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

# ---- Database ----
if os.getenv("DB_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "HOST": os.getenv("DB_HOST"),
            "PORT": os.getenv("DB_PORT", "5432"),
            "NAME": os.getenv("DB_NAME", "bookstore"),
            "USER": os.getenv("DB_USER", "bookstore_user"),
            "PASSWORD": os.getenv("DB_PASSWORD", "bookstore-pass"),
            "CONN_MAX_AGE": int(os.getenv("DB_CONN_MAX_AGE", "60")),
            "CONN_HEALTH_CHECKS": True,
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("SQLITE_PATH", str(BASE_DIR / "db.sqlite3")),
        }
    }

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
USE_TZ = True
TIME_ZONE = "UTC"

# ---- Checkout transaction bounds ----
CHECKOUT_LOCK_TIMEOUT_MS = int(os.getenv("CHECKOUT_LOCK_TIMEOUT_MS", "5000"))
CHECKOUT_TX_TIMEOUT_MS = int(os.getenv("CHECKOUT_TX_TIMEOUT_MS", "10000"))

# ---- Payment callback queue ----
PAYMENT_CALLBACK_MAX_ATTEMPTS = int(os.getenv("PAYMENT_CALLBACK_MAX_ATTEMPTS", "5"))
PAYMENT_CALLBACK_BACKOFF_BASE = float(os.getenv("PAYMENT_CALLBACK_BACKOFF_BASE", "2.0"))
PAYMENT_CALLBACK_MAX_BACKOFF = float(os.getenv("PAYMENT_CALLBACK_MAX_BACKOFF", "300"))
PAYMENT_CALLBACK_VISIBILITY_TIMEOUT = float(os.getenv("PAYMENT_CALLBACK_VISIBILITY_TIMEOUT", "60"))
PAYMENT_WORKER_CONCURRENCY = int(os.getenv("PAYMENT_WORKER_CONCURRENCY", "2"))
PAYMENT_WORKER_POLL_INTERVAL = float(os.getenv("PAYMENT_WORKER_POLL_INTERVAL", "1.0"))

# ---- Cart service (HTTP adapter) ----
USE_HTTP_ADAPTERS = _bool("USE_HTTP_ADAPTERS", True)
CART_BASE_URL = os.getenv("CART_BASE_URL", "http://cart:9002")
HTTP_TIMEOUT_SECS = float(os.getenv("HTTP_TIMEOUT_SECS", "2.0"))
HTTP_RETRY_MAX = int(os.getenv("HTTP_RETRY_MAX", "2"))
HTTP_RETRY_BACKOFF_BASE = float(os.getenv("HTTP_RETRY_BACKOFF_BASE", "0.15"))
HTTP_RETRY_MAX_SLEEP = float(os.getenv("HTTP_RETRY_MAX_SLEEP", "0.5"))
HTTP_CIRCUIT_FAIL_THRESHOLD = int(os.getenv("HTTP_CIRCUIT_FAIL_THRESHOLD", "5"))
HTTP_CIRCUIT_RESET_TIMEOUT = float(os.getenv("HTTP_CIRCUIT_RESET_TIMEOUT", "30"))

# ---- DRF ----
REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [],
    "DEFAULT_PERMISSION_CLASSES": ["rest_framework.permissions.AllowAny"],
    "DEFAULT_RENDERER_CLASSES": ["rest_framework.renderers.JSONRenderer"],
    "DEFAULT_PARSER_CLASSES": ["rest_framework.parsers.JSONParser"],
    "DEFAULT_THROTTLE_RATES": {
        "checkouts_create": os.getenv("THROTTLE_CHECKOUTS_CREATE", "30/min"),
        "checkouts_list": os.getenv("THROTTLE_CHECKOUTS_LIST", "120/min"),
        "checkouts_detail": os.getenv("THROTTLE_CHECKOUTS_DETAIL", "240/min"),
        "payment_callback": os.getenv("THROTTLE_PAYMENT_CALLBACK", "600/min"),
    },
}

# ---- Logging ----
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "filters": {
        "request_context": {"()": "gateway.logging_filters.RequestContextFilter"},
    },
    "formatters": {
        "json": {
            "()": "pythonjsonlogger.json.JsonFormatter",
            "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(user_id)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "filters": ["request_context"],
        },
    },
    "loggers": {
        "checkouts": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
        "gateway": {"handlers": ["console"], "level": LOG_LEVEL, "propagate": False},
    },
    "root": {"handlers": ["console"], "level": "WARNING"},
}
