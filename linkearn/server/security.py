"""Security utilities: visitor fingerprints, password hashing and input validation"""
from linkearn.config import Security
import hashlib
import bcrypt
import re
import html
from typing import Optional

# Length of the stored fingerprint (hex chars of a SHA-256 digest)
FINGERPRINT_LENGTH = 32

def hash_ip(ip_address: Optional[str], salt: Optional[str] = None) -> Optional[str]:
    """
    One-way fingerprint of a visitor IP

    Returns:
        First 32 hex chars of SHA256(ip + salt), or None for an empty IP
    """
    if not ip_address:
        return None
    salted = f"{ip_address}{salt if salt is not None else Security.IP_HASH_SALT}"
    return hashlib.sha256(salted.encode('utf-8')).hexdigest()[:FINGERPRINT_LENGTH]

def hash_user_agent(user_agent: Optional[str], salt: Optional[str] = None) -> Optional[str]:
    if not user_agent:
        return None
    salted = f"{user_agent}{salt if salt is not None else Security.UA_HASH_SALT}"
    return hashlib.sha256(salted.encode('utf-8')).hexdigest()[:FINGERPRINT_LENGTH]

def get_client_ip(request) -> str:
    """
    Get the real client IP from a Quart request (handles proxies/load balancers)

    Header priority: CF-Connecting-IP, X-Real-IP, X-Forwarded-For (first hop), remote address
    """
    cf_ip = request.headers.get('CF-Connecting-IP', '').strip()
    if cf_ip:
        return cf_ip

    real_ip = request.headers.get('X-Real-IP', '').strip()
    if real_ip:
        return real_ip

    forwarded_for = request.headers.get('X-Forwarded-For', '').strip()
    if forwarded_for:
        # Take the first IP in the chain (the original client)
        return forwarded_for.split(',')[0].strip()

    return request.remote_addr or 'unknown'

def hash_password(password: str) -> str:
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')

def verify_password(password: str, hashed: str) -> bool:
    if not password or not hashed:
        return False
    return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))

def sanitize_input(text: str, max_length: int = 500) -> str:
    """
    Sanitize user input to prevent XSS attacks

    Args:
        text: The text to sanitize
        max_length: Maximum allowed length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    # Truncate to max length
    text = text[:max_length]

    # HTML escape to prevent XSS
    text = html.escape(text)

    # Remove any null bytes
    text = text.replace('\x00', '')

    return text.strip()

def validate_email_format(email: str) -> bool:
    if not email or len(email) > 254:
        return False

    # RFC 5322 compliant email regex (simplified)
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return bool(re.match(pattern, email))

def normalize_email(email: str) -> str:
    """Normalize email address to prevent duplicates"""
    return email.lower().strip()

def validate_url(url: str) -> bool:
    """
    Validate URL format for link targets

    Args:
        url: URL to validate

    Returns:
        True if valid URL format
    """
    if not url or len(url) > 2048:
        return False

    # Basic URL pattern
    pattern = r'^https?://[a-zA-Z0-9][a-zA-Z0-9-]{0,61}[a-zA-Z0-9]?(\.[a-zA-Z0-9][a-zA-Z0-9-]{0,61}[a-zA-Z0-9]?)*(:[0-9]{1,5})?(/.*)?$'
    return bool(re.match(pattern, url))
