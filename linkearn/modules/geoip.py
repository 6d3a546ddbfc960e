import httpx
import logging
import json
import ipaddress
from typing import Tuple

logger = logging.getLogger('linkearn.geoip')

UNKNOWN_COUNTRY = ('XX', 'Unknown')

GEOIP_URL = 'https://ipapi.co/{ip}/json/'

def is_private_address(ip_address: str) -> bool:
    if not ip_address or ip_address in ['localhost', 'unknown']:
        return True
    try:
        ip_obj = ipaddress.ip_address(ip_address)
    except ValueError:
        return True
    return ip_obj.is_private or ip_obj.is_loopback or ip_obj.is_unspecified or ip_obj.is_link_local

async def get_country_from_ip(ip_address: str, client: httpx.AsyncClient | None = None) -> Tuple[str, str]:
    """
    Get country code and country name for a visitor IP
    Returns: (country_code, country_name); ('XX', 'Unknown') when the lookup fails

    Uses the ipapi.co HTTPS service (no API key required). Must be called before
    the visit is recorded, never inside a database transaction.
    """
    if is_private_address(ip_address):
        logger.debug("Private or unknown address, skipping geolocation")
        return UNKNOWN_COUNTRY

    try:
        if client is None:
            async with httpx.AsyncClient(timeout=5.0) as own_client:
                response = await own_client.get(
                    GEOIP_URL.format(ip=ip_address),
                    headers={'User-Agent': 'Mozilla/5.0'}
                )
        else:
            response = await client.get(
                GEOIP_URL.format(ip=ip_address),
                headers={'User-Agent': 'Mozilla/5.0'}
            )

        if response.status_code == 200:
            try:
                data = response.json()
                if 'error' not in data:
                    country_code = (data.get('country_code') or 'XX').upper()
                    country_name = data.get('country_name') or 'Unknown'

                    logger.debug(f"IP {ip_address} -> {country_code}, {country_name}")
                    return country_code, country_name
                else:
                    logger.warning(f"IP geolocation failed for {ip_address}: {data.get('reason', 'Unknown error')}")
            except (json.JSONDecodeError, ValueError) as e:
                logger.error(f"Invalid JSON response from IP API for {ip_address}: {e}. Response: {response.text[:200]}")
        else:
            logger.warning(f"IP geolocation API returned status {response.status_code} for {ip_address}")
    except httpx.TimeoutException:
        logger.error(f"Timeout while getting location for IP {ip_address}")
    except httpx.RequestError as e:
        logger.error(f"Network error getting location for IP {ip_address}: {e}")

    return UNKNOWN_COUNTRY
