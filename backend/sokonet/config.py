# backend/sokonet/config.py
from __future__ import annotations
import os


PESAPAL_BASE_URLS = {
    "sandbox": "https://cybqa.pesapal.com/pesapalv3",
    "production": "https://pay.pesapal.com/v3",
}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///sokonet.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Payment gateway (Pesapal v3)
    PESAPAL_ENVIRONMENT = os.environ.get("PESAPAL_ENVIRONMENT", "sandbox")
    PESAPAL_BASE_URL = os.environ.get(
        "PESAPAL_BASE_URL",
        PESAPAL_BASE_URLS.get(PESAPAL_ENVIRONMENT, PESAPAL_BASE_URLS["sandbox"]),
    )
    PESAPAL_CONSUMER_KEY = os.environ.get("PESAPAL_CONSUMER_KEY", "")
    PESAPAL_CONSUMER_SECRET = os.environ.get("PESAPAL_CONSUMER_SECRET", "")
    PESAPAL_CALLBACK_URL = os.environ.get(
        "PESAPAL_CALLBACK_URL", "http://localhost:5000/api/payments/callback"
    )
    PESAPAL_IPN_URL = os.environ.get(
        "PESAPAL_IPN_URL", "http://localhost:5000/api/payments/ipn"
    )
    PESAPAL_IPN_NOTIFICATION_TYPE = os.environ.get("PESAPAL_IPN_NOTIFICATION_TYPE", "GET")
    PESAPAL_TIMEOUT_SECONDS = float(os.environ.get("PESAPAL_TIMEOUT_SECONDS", "5"))
    PESAPAL_READ_TIMEOUT_SECONDS = float(os.environ.get("PESAPAL_READ_TIMEOUT_SECONDS", "10"))
    PESAPAL_MAX_RETRIES = int(os.environ.get("PESAPAL_MAX_RETRIES", "3"))
    PESAPAL_BACKOFF_SECONDS = float(os.environ.get("PESAPAL_BACKOFF_SECONDS", "0.5"))
    # Gateway tokens live 5 minutes; refresh one minute early
    PESAPAL_TOKEN_TTL_SECONDS = int(os.environ.get("PESAPAL_TOKEN_TTL_SECONDS", "240"))

    PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "KES")
    PAYMENT_COUNTRY_CODE = os.environ.get("PAYMENT_COUNTRY_CODE", "KE")
    PENDING_RECONCILE_AFTER_MINUTES = int(os.environ.get("PENDING_RECONCILE_AFTER_MINUTES", "10"))

    FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

    QR_CODE_LENGTH = int(os.environ.get("QR_CODE_LENGTH", "8"))
    QR_BATCH_MAX = int(os.environ.get("QR_BATCH_MAX", "100"))
