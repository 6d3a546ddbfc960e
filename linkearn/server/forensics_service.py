"""
Admin IP forensics over stored visitor and account fingerprints

Visits keep both a salted hash and an AES-GCM encrypted copy of the client IP;
accounts keep hashes only. Searching by IP therefore compares fingerprints,
and only a single visit's IP is ever decrypted on request.
"""
import ipaddress
import logging
from typing import Callable, Optional

from sqlalchemy import select, or_

from linkearn.database import AsyncSessionLocal
from linkearn.errors import NotFound, PreconditionFailed
from linkearn.models import Link, User, Visit
from linkearn.modules.helpers import quantize_money
from linkearn.server.encryption import decrypt_ip
from linkearn.server.security import hash_ip

logger = logging.getLogger('linkearn.forensics')

MAX_SEARCH_RESULTS = 100

def normalize_ip(value) -> str:
    try:
        return str(ipaddress.ip_address(str(value or '').strip()))
    except ValueError:
        raise PreconditionFailed('A valid IP address is required', reason='invalid_ip')

class ForensicsService:

    def __init__(self, session_factory=AsyncSessionLocal,
                 ip_decryptor: Callable[[Optional[str]], Optional[str]] = decrypt_ip):
        self.session_factory = session_factory
        self.ip_decryptor = ip_decryptor

    async def decrypt_visit_ip(self, visit_id: int, admin_id: Optional[int] = None) -> dict:
        """
        Reveal the client IP stored with one visit

        A value that no longer decrypts (rotated key) comes back as `ip=None`
        with `decrypt_error=True` rather than failing the request.
        """
        async with self.session_factory() as session:
            row = (await session.execute(
                select(Visit, Link.short_code, Link.title, User.email)
                .join(Link, Link.id == Visit.link_id)
                .join(User, User.id == Link.user_id)
                .where(Visit.id == visit_id)
            )).first()

        if row is None:
            raise NotFound(f'Visit {visit_id} not found')

        visit, short_code, title, owner_email = row
        ip, decrypt_error = None, False
        if visit.encrypted_ip:
            try:
                ip = self.ip_decryptor(visit.encrypted_ip)
            except ValueError as e:
                logger.warning(f"Stored IP of visit {visit_id} could not be decrypted: {e}")
                decrypt_error = True

        logger.info(f"Admin {admin_id} decrypted the IP of visit {visit_id}")
        return {
            'id': visit.id,
            'ip': ip,
            'decrypt_error': decrypt_error,
            'country': visit.country,
            'device': visit.device,
            'browser': visit.browser,
            'earned': str(quantize_money(visit.earned)),
            'is_unique': visit.is_unique,
            'fraud_blocked': visit.fraud_blocked,
            'created_at': visit.created_at.isoformat() if visit.created_at else None,
            'link': {'short_code': short_code, 'title': title, 'owner_email': owner_email},
        }

    async def search_by_ip(self, ip, admin_id: Optional[int] = None, limit: int = 50) -> dict:
        """Accounts registered or last seen from an IP, and the latest visits it made"""
        ip = normalize_ip(ip)
        fingerprint = hash_ip(ip)
        limit = max(1, min(limit, MAX_SEARCH_RESULTS))

        async with self.session_factory() as session:
            users = (await session.execute(
                select(User)
                .where(or_(User.registration_ip_hash == fingerprint, User.referral_ip_hash == fingerprint))
                .order_by(User.id)
                .limit(limit)
            )).scalars().all()

            visits = (await session.execute(
                select(Visit, Link.short_code)
                .join(Link, Link.id == Visit.link_id)
                .where(Visit.ip_hash == fingerprint)
                .order_by(Visit.created_at.desc(), Visit.id.desc())
                .limit(limit)
            )).all()

        user_results = []
        for user in users:
            registration = user.registration_ip_hash == fingerprint
            login = user.referral_ip_hash == fingerprint
            user_results.append({
                'id': user.id,
                'email': user.email,
                'is_active': user.is_active,
                'created_at': user.created_at.isoformat() if user.created_at else None,
                'match_type': 'both' if registration and login else 'registration' if registration else 'login',
            })

        visit_results = [
            {
                'id': visit.id,
                'link_id': visit.link_id,
                'short_code': short_code,
                'country': visit.country,
                'earned': str(quantize_money(visit.earned)),
                'fraud_blocked': visit.fraud_blocked,
                'created_at': visit.created_at.isoformat() if visit.created_at else None,
            }
            for visit, short_code in visits
        ]

        logger.info(f"Admin {admin_id} searched accounts and visits by IP ({len(user_results)} accounts, {len(visit_results)} visits)")
        return {
            'searched_ip': ip,
            'users': user_results,
            'visits': visit_results,
            'count': len(user_results) + len(visit_results),
        }
