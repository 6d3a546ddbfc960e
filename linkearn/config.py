from os import environ as env
from decimal import Decimal
from dotenv import load_dotenv
from pathlib import Path

# Load .env file from the project root
# Preserve critical environment variables that should not be overridden by .env
_preserved_vars = {
    "DATABASE_URL": env.get("DATABASE_URL"),
    "IP_HASH_SALT": env.get("IP_HASH_SALT"),
    "ENCRYPTION_KEY": env.get("ENCRYPTION_KEY"),
}

_env_path = Path(__file__).parent.parent / '.env'
if _env_path.exists():
    load_dotenv(_env_path, override=False)

    # Restore preserved variables if they were overridden with empty values
    for key, value in _preserved_vars.items():
        if value and not env.get(key):
            env[key] = value

# CONFIGURATION
# - DATABASE_URL: PostgreSQL connection string
# - BASE_URL: Public URL of the deployment, used to build short links
# - SECRET_KEY: Quart session signing key
# - IP_HASH_SALT: salt for visitor IP fingerprints (changing it resets uniqueness)
# - ENCRYPTION_KEY: key for reversible IP encryption (admin forensics)

class Server:
    BASE_URL = env.get("BASE_URL") or "http://localhost:5000"
    BIND_ADDRESS = env.get("BIND_ADDRESS") or "0.0.0.0"
    _port_str = env.get("PORT") or "5000"
    PORT = int(_port_str) if _port_str else 5000

    SECRET_KEY = env.get("SECRET_KEY")

    _drain_interval_str = env.get("OUTBOX_DRAIN_INTERVAL") or "30"
    OUTBOX_DRAIN_INTERVAL = int(_drain_interval_str)

class Earnings:
    # Share of the gross CPM credited to the link owner
    USER_SHARE = Decimal(env.get("USER_SHARE") or "0.85")

    UNIQUENESS_WINDOW_HOURS = int(env.get("UNIQUENESS_WINDOW_HOURS") or "24")
    MAX_VISITS_PER_IP_DAILY = int(env.get("MAX_VISITS_PER_IP_DAILY") or "50")
    RATE_LIMIT_PER_MINUTE = int(env.get("RATE_LIMIT_PER_MINUTE") or "10")

    RATE_CACHE_TTL = int(env.get("RATE_CACHE_TTL") or "300")
    RATE_CACHE_SIZE = int(env.get("RATE_CACHE_SIZE") or "512")

    MIN_PAYOUT = Decimal(env.get("MIN_PAYOUT") or "10.00")

class Security:
    IP_HASH_SALT = env.get("IP_HASH_SALT") or "linkearn-ip-salt"
    UA_HASH_SALT = env.get("UA_HASH_SALT") or "linkearn-ua-salt"
    ENCRYPTION_KEY = env.get("ENCRYPTION_KEY")

# LOGGING CONFIGURATION
LOG_FILENAME = env.get("LOG_FILENAME") or "event-log.txt"
LOG_MAX_BYTES = int(env.get("LOG_MAX_BYTES") or "10485760")  # 10MB default
LOG_BACKUP_COUNT = int(env.get("LOG_BACKUP_COUNT") or "5")

LOGGER_CONFIG_JSON = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'default': {
            'format': '[%(asctime)s][%(name)s][%(levelname)s] -> %(message)s',
            'datefmt': '%d/%m/%Y %H:%M:%S'
        },
    },
    'handlers': {
        'file_handler': {
            'class': 'logging.handlers.RotatingFileHandler',
            'filename': LOG_FILENAME,
            'maxBytes': LOG_MAX_BYTES,
            'backupCount': LOG_BACKUP_COUNT,
            'formatter': 'default',
            'delay': True
        },
        'stream_handler': {
            'class': 'logging.StreamHandler',
            'formatter': 'default'
        }
    },
    'loggers': {
        'uvicorn': {
            'level': 'INFO',
            'handlers': ['file_handler', 'stream_handler']
        },
        'uvicorn.error': {
            'level': 'WARNING',
            'handlers': ['file_handler', 'stream_handler']
        },
        'linkearn': {
            'level': env.get("LOG_LEVEL") or 'INFO',
            'handlers': ['file_handler', 'stream_handler']
        }
    }
}
