import os
import logging

from dotenv import load_dotenv

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "farmmarket")

# Security/JWT
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = "HS256"
JWT_EXPIRE_HOURS = int(os.getenv("JWT_EXPIRE_HOURS", "24"))

# PayHere gateway
PAYHERE_MERCHANT_ID = (os.getenv("PAYHERE_MERCHANT_ID") or "").strip()
PAYHERE_MERCHANT_SECRET = (os.getenv("PAYHERE_MERCHANT_SECRET") or "").strip()
PAYHERE_APP_ID = (os.getenv("PAYHERE_APP_ID") or "").strip()
PAYHERE_APP_SECRET = (os.getenv("PAYHERE_APP_SECRET") or "").strip()
PAYHERE_MODE = (os.getenv("PAYHERE_MODE") or "sandbox").strip()
PAYHERE_RETURN_URL = os.getenv("PAYHERE_RETURN_URL", "http://localhost:5173/payment/status")
PAYHERE_CANCEL_URL = os.getenv("PAYHERE_CANCEL_URL", "http://localhost:5173/payment/cancelled")
PAYHERE_NOTIFY_URL = os.getenv("PAYHERE_NOTIFY_URL", "http://localhost:8000/api/payhere-notify")
PAYHERE_API_BASE_URL = (
    "https://www.payhere.lk/pay/api" if PAYHERE_MODE == "live" else "https://sandbox.payhere.lk/pay/api"
)

# Food subscription plan
FOOD_SUBSCRIPTION_AMOUNT = 2500
FOOD_SUBSCRIPTION_CURRENCY = "LKR"
MAX_RENEWAL_ATTEMPTS = int(os.getenv("MAX_RENEWAL_ATTEMPTS", "3"))

PORT = int(os.getenv("PORT", 8000))
