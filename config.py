import os

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "vunalet")

# Auth (Clerk session tokens). In development tokens are HS256-signed with SECRET_KEY.
SECRET_KEY = os.getenv("SECRET_KEY", "devsecretkey")
CLERK_JWT_KEY = os.getenv("CLERK_JWT_KEY") or SECRET_KEY
CLERK_JWT_ALGORITHM = os.getenv("CLERK_JWT_ALGORITHM", "HS256")

# Shared secret the payment settlement layer sends with status callbacks
PAYMENT_SECRET = os.getenv("PAYMENT_SECRET", "vunalet_secure_payments")
# Shared secret for operator calls (user verification, categories, auto-assign cron)
ADMIN_SECRET = os.getenv("ADMIN_SECRET", "devadminsecret")

# Pricing
PLATFORM_FEE_PERCENT = float(os.getenv("PLATFORM_FEE_PERCENT", "2.5"))
COST_PER_KM = float(os.getenv("COST_PER_KM", "0.005"))

# Window during which dispatchers may claim a new order before auto-assignment
CLAIM_WINDOW_MINUTES = int(os.getenv("CLAIM_WINDOW_MINUTES", "10"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
