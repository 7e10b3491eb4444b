# donation_billing/billing/config.py
import os

from dotenv import load_dotenv
from urllib.parse import quote_plus

load_dotenv()


def _parse_int_list(s: str) -> list[int]:
    if not s:
        return []
    import re
    ids = []
    for token in re.split(r"[,\s;]+", s.strip()):
        if not token:
            continue
        ids.append(int(token))
    return ids


# === MySQL Database ===
MYSQL_HOST = os.getenv("MYSQL_HOST", "127.0.0.1")
MYSQL_PORT = os.getenv("MYSQL_PORT", "3306")
MYSQL_USER = os.getenv("MYSQL_USER", "billing")
MYSQL_PASSWORD = os.getenv("MYSQL_PASSWORD", "")
MYSQL_DB = os.getenv("MYSQL_DB", "billing")

# BILLING_DB_URL wins over the MYSQL_* pieces (handy for sqlite in dev)
DB_URL = os.getenv("BILLING_DB_URL") or (
    f"mysql+pymysql://{MYSQL_USER}:{quote_plus(MYSQL_PASSWORD)}@{MYSQL_HOST}:{MYSQL_PORT}/{MYSQL_DB}"
)

# === Redis ===
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
REDIS_PREFIX = os.getenv("REDIS_PREFIX", "billing")

# === Политика ретраев и grace period ===
# смещения в днях от ПЕРВОЙ неудачи цикла; длина списка = max попыток в цикле
RETRY_SCHEDULE_DAYS = tuple(_parse_int_list(os.getenv("RETRY_SCHEDULE_DAYS", "1,3,7"))) or (1, 3, 7)
GRACE_PERIOD_DAYS = int(os.getenv("GRACE_PERIOD_DAYS", "7"))
MAX_METHOD_FAILURES = int(os.getenv("MAX_METHOD_FAILURES", "3"))

# === Тарифы ===
BASE_TIER = os.getenv("BASE_TIER", "basic")
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

# === Шлюз ===
YOUMONEY_SHOP_ID = os.getenv("YOUMONEY_SHOP_ID")
YOUMONEY_SECRET_KEY = os.getenv("YOUMONEY_SECRET_KEY")
GATEWAY_TIMEOUT_SEC = float(os.getenv("GATEWAY_TIMEOUT_SEC", "30"))
GATEWAY_POLL_ATTEMPTS = int(os.getenv("GATEWAY_POLL_ATTEMPTS", "3"))
GATEWAY_POLL_DELAY_SEC = float(os.getenv("GATEWAY_POLL_DELAY_SEC", "2"))

# === Планировщик ===
BILLING_SWEEP_INTERVAL_SEC = int(os.getenv("BILLING_SWEEP_INTERVAL_SEC", "3600"))
BILLING_SWEEP_LIMIT = int(os.getenv("BILLING_SWEEP_LIMIT", "100"))
BILLING_SWEEP_CONCURRENCY = int(os.getenv("BILLING_SWEEP_CONCURRENCY", "8"))
ACCOUNT_LOCK_TTL_SEC = int(os.getenv("ACCOUNT_LOCK_TTL_SEC", "120"))

# === Webhook / admin HTTP ===
WEBHOOK_HOST = os.getenv("WEBHOOK_HOST", "0.0.0.0")
WEBHOOK_PORT = int(os.getenv("WEBHOOK_PORT", "8080"))
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

# === Логи ===
LOG_PATH = os.getenv("LOG_PATH", os.path.join(os.path.expanduser("~"), "logs", "billing.log"))
