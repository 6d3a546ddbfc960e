from logging import getLogger
from logging.config import dictConfig
from .config import LOGGER_CONFIG_JSON

dictConfig(LOGGER_CONFIG_JSON)

# Apply log sanitization so raw IPs and credentials never reach the log files
from linkearn.modules.log_sanitizer import apply_sensitive_data_filter
apply_sensitive_data_filter()

version = '1.0.0'
logger = getLogger('linkearn')
