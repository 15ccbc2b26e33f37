import os
from dotenv import load_dotenv

# Загрузка .env
load_dotenv()

# База данных
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///ledger.db")
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Webhook server
WEBHOOK_SECRET_KEY = os.getenv("WEBHOOK_SECRET_KEY")
WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "127.0.0.1")
WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "8080"))
WEBHOOK_RATE_LIMIT_REQUESTS = int(os.getenv("WEBHOOK_RATE_LIMIT_REQUESTS", "60"))
WEBHOOK_RATE_LIMIT_WINDOW = int(os.getenv("WEBHOOK_RATE_LIMIT_WINDOW", "60"))
WEBHOOK_MAX_BODY_SIZE = 1024 * 100  # 100KB
WEBHOOK_TIMESTAMP_TOLERANCE = 300  # seconds

# Admin dashboard (read views + follow-up actions)
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")

# Settlement scheduler
SETTLEMENT_CHECK_INTERVAL = int(os.getenv("SETTLEMENT_CHECK_INTERVAL", "300"))

# Bonus pool policy: settled-cycle dust and empty-pool amounts
# are reported as unallocated; set true to roll them into the next cycle
BONUS_POOL_CARRY_UNALLOCATED = os.getenv("BONUS_POOL_CARRY_UNALLOCATED", "false").lower() == "true"

# Валюта
CURRENCY = os.getenv("CURRENCY", "RM")

# Checkout context older than this is discarded
CHECKOUT_CONTEXT_MAX_AGE = 24 * 60 * 60  # seconds
