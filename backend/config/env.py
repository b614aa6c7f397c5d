import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# =====================================================
# SECRETS
# =====================================================
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET")

# =====================================================
# NOTIFICATIONS
# =====================================================
NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
NOTIFICATION_TIMEOUT_SECONDS = int(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", 10))

# =====================================================
# SCHEDULERS
# =====================================================
AUTO_REJECT_AFTER_SECONDS = int(os.getenv("AUTO_REJECT_AFTER_SECONDS", 240))
AUTO_REJECT_INTERVAL_SECONDS = int(os.getenv("AUTO_REJECT_INTERVAL_SECONDS", 30))
OUTBOX_INTERVAL_SECONDS = int(os.getenv("OUTBOX_INTERVAL_SECONDS", 5))
OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", 10))

# =====================================================
# COMMISSION
# =====================================================
COMMISSION_CACHE_TTL_SECONDS = int(os.getenv("COMMISSION_CACHE_TTL_SECONDS", 60))
COMMISSION_CACHE_MAX_ENTRIES = int(os.getenv("COMMISSION_CACHE_MAX_ENTRIES", 1024))

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "ADMIN_API_KEY": ADMIN_API_KEY,
        "RAZORPAY_KEY_ID": RAZORPAY_KEY_ID,
        "RAZORPAY_KEY_SECRET": RAZORPAY_KEY_SECRET,
        "RAZORPAY_WEBHOOK_SECRET": RAZORPAY_WEBHOOK_SECRET,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")
