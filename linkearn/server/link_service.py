import logging
from typing import Optional

from sqlalchemy import select

from linkearn.config import Server
from linkearn.database import AsyncSessionLocal, generate_unique_short_code
from linkearn.errors import NotFound, PreconditionFailed
from linkearn.models import Link, User
from linkearn.modules.helpers import display_money, utcnow
from linkearn.server.interfaces import Clock
from linkearn.server.security import sanitize_input, validate_url

logger = logging.getLogger('linkearn.links')

def link_to_dict(link: Link) -> dict:
    return {
        'id': link.id,
        'short_code': link.short_code,
        'short_url': f"{Server.BASE_URL}/{link.short_code}",
        'original_url': link.original_url,
        'title': link.title,
        'description': link.description,
        'is_active': link.is_active,
        'total_clicks': link.total_clicks,
        'unique_clicks': link.unique_clicks,
        'total_earned': str(display_money(link.total_earned)),
        'created_at': link.created_at.isoformat() if link.created_at else None,
    }

class LinkService:
    def __init__(self, session_factory=AsyncSessionLocal, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def create_link(self, user_id: int, original_url: str, title: Optional[str] = None,
                          description: Optional[str] = None) -> dict:
        original_url = (original_url or '').strip()
        if not validate_url(original_url):
            raise PreconditionFailed('Invalid URL', reason='invalid_url')

        short_code = await generate_unique_short_code(self.session_factory)

        async with self.session_factory() as session:
            async with session.begin():
                owner = await session.get(User, user_id)
                if owner is None:
                    raise NotFound(f'User {user_id} not found')
                if not owner.is_active:
                    raise PreconditionFailed('Account is inactive', reason='owner_inactive')

                now = self.clock()
                link = Link(
                    user_id=user_id,
                    short_code=short_code,
                    original_url=original_url,
                    title=sanitize_input(title, 255) or None,
                    description=sanitize_input(description, 2000) or None,
                    is_active=True,
                    total_clicks=0,
                    unique_clicks=0,
                    created_at=now,
                    updated_at=now,
                )
                session.add(link)
                await session.flush()
            payload = link_to_dict(link)

        logger.info(f"Link {short_code} created by user {user_id}")
        return payload

    async def get_by_short_code(self, short_code: str) -> Link:
        async with self.session_factory() as session:
            link = await session.scalar(select(Link).where(Link.short_code == short_code))
        if link is None:
            raise NotFound(f'Link {short_code} not found')
        return link

    async def list_user_links(self, user_id: int) -> list:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Link).where(Link.user_id == user_id).order_by(Link.created_at.desc(), Link.id.desc())
            )
            return [link_to_dict(link) for link in result.scalars().all()]

    async def set_link_active(self, link_id: int, user_id: int, active: bool) -> dict:
        async with self.session_factory() as session:
            async with session.begin():
                link = await session.get(Link, link_id)
                if link is None or link.user_id != user_id:
                    raise NotFound(f'Link {link_id} not found')
                link.is_active = bool(active)
                link.updated_at = self.clock()
            return link_to_dict(link)
