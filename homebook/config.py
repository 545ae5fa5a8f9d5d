import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./homebook.db")

# Redis (arq background worker)
REDIS_URL = os.getenv("REDIS_URL")

# Square Payments Configuration (delayed capture)
SQUARE_ENVIRONMENT = os.getenv("SQUARE_ENVIRONMENT", "sandbox")  # sandbox or production
SQUARE_ACCESS_TOKEN = os.getenv("SQUARE_ACCESS_TOKEN")
SQUARE_LOCATION_ID = os.getenv("SQUARE_LOCATION_ID")
SQUARE_API_VERSION = os.getenv("SQUARE_API_VERSION", "2024-12-18")
SQUARE_WEBHOOK_SIGNATURE_KEY = os.getenv(
    "SQUARE_WEBHOOK_SIGNATURE_KEY"
)  # Webhook signature key from Square Dashboard
# Must match the notification URL registered with Square exactly (signature covers it)
SQUARE_WEBHOOK_URL = os.getenv("SQUARE_WEBHOOK_URL")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "USD")

# Gateway call policy
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))
GATEWAY_MAX_RETRIES = int(os.getenv("GATEWAY_MAX_RETRIES", "2"))
GATEWAY_RETRY_BASE_DELAY = float(os.getenv("GATEWAY_RETRY_BASE_DELAY", "0.5"))

# Twilio SMS Configuration
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")
TWILIO_MESSAGING_SERVICE_SID = os.getenv("TWILIO_MESSAGING_SERVICE_SID")

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "HomeBook <noreply@homebook.app>")

# Operations inbox for manual-attention alerts (no coverage, all declined, gateway mismatch)
OPS_ALERT_EMAIL = os.getenv("OPS_ALERT_EMAIL")

# Booking lifecycle windows
PAYMENT_PENDING_GRACE_MINUTES = int(os.getenv("PAYMENT_PENDING_GRACE_MINUTES", "180"))
PAYMENT_REMINDER_AFTER_MINUTES = int(os.getenv("PAYMENT_REMINDER_AFTER_MINUTES", "60"))
NOTIFICATION_DEDUP_WINDOW_SECONDS = int(os.getenv("NOTIFICATION_DEDUP_WINDOW_SECONDS", "300"))
RECONCILE_SETTLE_MINUTES = int(os.getenv("RECONCILE_SETTLE_MINUTES", "10"))
RECONCILE_BATCH_SIZE = int(os.getenv("RECONCILE_BATCH_SIZE", "200"))
PURGE_EXPIRED_AFTER_DAYS = int(os.getenv("PURGE_EXPIRED_AFTER_DAYS", "30"))

# Coverage
NEARBY_RADIUS_MILES = float(os.getenv("NEARBY_RADIUS_MILES", "10"))
DEFAULT_SERVICE_RADIUS_MILES = float(os.getenv("DEFAULT_SERVICE_RADIUS_MILES", "25"))
DEFAULT_JOB_DURATION_MINUTES = int(os.getenv("DEFAULT_JOB_DURATION_MINUTES", "120"))
