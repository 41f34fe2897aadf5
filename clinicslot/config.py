import os
from decimal import Decimal
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinicslot.db")

# All stored datetimes are naive wall-clock times in the clinic's timezone
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "Asia/Kolkata")

# Booking / reservation windows
PAYMENT_WINDOW_MINUTES = int(os.getenv("PAYMENT_WINDOW_MINUTES", "30"))
PAYMENT_POLL_AFTER_MINUTES = int(os.getenv("PAYMENT_POLL_AFTER_MINUTES", "5"))
# A still-pending order is asked about again only after this long, until its hold lapses
PAYMENT_POLL_INTERVAL_MINUTES = int(os.getenv("PAYMENT_POLL_INTERVAL_MINUTES", "5"))
NO_SHOW_GRACE_MINUTES = int(os.getenv("NO_SHOW_GRACE_MINUTES", "20"))
REMINDER_LEAD_HOURS = int(os.getenv("REMINDER_LEAD_HOURS", "24"))
# Postgres only: a reservation blocked on another request's row lock fails with SlotLocked after this
RESERVATION_LOCK_TIMEOUT_MS = int(os.getenv("RESERVATION_LOCK_TIMEOUT_MS", "200"))

# Slot generation
SLOT_GENERATION_HORIZON_DAYS = int(os.getenv("SLOT_GENERATION_HORIZON_DAYS", "30"))
DEFAULT_SLOT_DURATION_MINUTES = int(os.getenv("DEFAULT_SLOT_DURATION_MINUTES", "15"))
DEFAULT_MAX_PATIENTS_PER_SLOT = int(os.getenv("DEFAULT_MAX_PATIENTS_PER_SLOT", "1"))
OVERRIDE_RETENTION_DAYS = int(os.getenv("OVERRIDE_RETENTION_DAYS", "30"))

# Fees
PLATFORM_FEE_PERCENT = Decimal(os.getenv("PLATFORM_FEE_PERCENT", "7"))
CURRENCY = os.getenv("CURRENCY", "INR")

# Refund tiers for patient cancellations (hours before start -> percentage)
REFUND_FULL_HOURS = int(os.getenv("REFUND_FULL_HOURS", "24"))
REFUND_PARTIAL_HIGH_HOURS = int(os.getenv("REFUND_PARTIAL_HIGH_HOURS", "6"))
REFUND_PARTIAL_HIGH_PERCENT = int(os.getenv("REFUND_PARTIAL_HIGH_PERCENT", "75"))
REFUND_PARTIAL_LOW_HOURS = int(os.getenv("REFUND_PARTIAL_LOW_HOURS", "1"))
REFUND_PARTIAL_LOW_PERCENT = int(os.getenv("REFUND_PARTIAL_LOW_PERCENT", "50"))

# Idempotency keys are kept for replay this long
IDEMPOTENCY_TTL_HOURS = int(os.getenv("IDEMPOTENCY_TTL_HOURS", "24"))

# Dodo Payments Configuration
DODO_PAYMENTS_API_KEY = os.getenv("DODO_PAYMENTS_API_KEY")
DODO_PAYMENTS_WEBHOOK_SECRET = os.getenv("DODO_PAYMENTS_WEBHOOK_SECRET")
# "test_mode" or "live_mode" - default to test for safety
DODO_PAYMENTS_ENVIRONMENT = os.getenv("DODO_PAYMENTS_ENVIRONMENT", "test_mode")
# Adhoc "pay what you want" product used for every consultation checkout
DODO_ADHOC_PRODUCT_ID = os.getenv("DODO_ADHOC_PRODUCT_ID")

# Frontend base URL for payment redirects
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Comma separated browser origins allowed by CORS
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "ClinicSlot <noreply@clinicslot.app>")

# Twilio SMS Configuration
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")

# Rate limiting (redis-backed)
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
