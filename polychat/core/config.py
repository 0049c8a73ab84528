import os

# ✅ Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./polychat.db")
RUN_MIGRATIONS = os.getenv("RUN_MIGRATIONS", "0") == "1"

# ✅ Security
SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-change-me")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

# ✅ Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_PRICE_ID_STARTER = os.getenv("STRIPE_PRICE_ID_STARTER")
STRIPE_PRICE_ID_PRO = os.getenv("STRIPE_PRICE_ID_PRO")

# ✅ Frontend
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

# ✅ Webhooks / real-time updates
WEBHOOK_DEDUP_WINDOW_SECONDS = float(os.getenv("WEBHOOK_DEDUP_WINDOW_SECONDS", "5"))
SSE_HEARTBEAT_SECONDS = float(os.getenv("SSE_HEARTBEAT_SECONDS", "30"))

# ✅ Credits
MIN_CREDITS_TO_CHAT = os.getenv("MIN_CREDITS_TO_CHAT", "0.1")

# ✅ Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
