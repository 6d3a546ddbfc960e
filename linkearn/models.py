from sqlalchemy import String, DateTime, Text, Boolean, Integer, Date, Numeric, CheckConstraint, Index, UniqueConstraint, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from linkearn.database import Base
from linkearn.modules.helpers import utcnow
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

# Exact decimal storage for every money column
Money = Numeric(18, 6)

SETTINGS_ID = 1

PAYOUT_METHODS = ('PAYPAL', 'BITCOIN', 'BANK_TRANSFER')
PAYOUT_STATUSES = ('PENDING', 'PROCESSING', 'COMPLETED', 'REJECTED')

class User(Base):
    """Model for link owners (publishers) and admins"""
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint('balance >= 0', name='check_user_balance_non_negative'),
        Index('idx_user_referred_by', 'referred_by_id', 'created_at'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    balance: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    total_earned: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    referral_code: Mapped[Optional[str]] = mapped_column(String(8), nullable=True, unique=True, index=True)
    referred_by_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    registration_ip_hash: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    referral_ip_hash: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    user_agent_hash: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    referral_fraud_flag: Mapped[bool] = mapped_column(Boolean, default=False)
    referral_fraud_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    referral_fraud_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    referral_bonus_expires: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    referral_earnings: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

class Link(Base):
    """Model for shortened links"""
    __tablename__ = "links"
    __table_args__ = (
        Index('idx_link_user_created', 'user_id', 'created_at'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True)
    short_code: Mapped[str] = mapped_column(String(6), unique=True, index=True)
    original_url: Mapped[str] = mapped_column(Text)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    total_clicks: Mapped[int] = mapped_column(Integer, default=0)
    unique_clicks: Mapped[int] = mapped_column(Integer, default=0)
    total_earned: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

class Visit(Base):
    """Immutable record of a single visit; fraud decisions are made before insert"""
    __tablename__ = "visits"
    __table_args__ = (
        CheckConstraint('NOT fraud_blocked OR (earned = 0 AND NOT is_unique)', name='check_blocked_visit_earns_nothing'),
        Index('idx_visit_ip_created', 'ip_hash', 'created_at'),
        Index('idx_visit_ip_link_created', 'ip_hash', 'link_id', 'created_at'),
        Index('idx_visit_country_created', 'country', 'created_at'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    link_id: Mapped[int] = mapped_column(Integer, ForeignKey('links.id', ondelete='CASCADE'), index=True)
    ip_hash: Mapped[str] = mapped_column(String(32))
    encrypted_ip: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    country: Mapped[str] = mapped_column(String(2), default='XX')
    country_tier: Mapped[int] = mapped_column(Integer, default=3)
    device: Mapped[str] = mapped_column(String(20), default='desktop')
    browser: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    earned: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    platform_earned: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    cpm_rate_used: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    is_unique: Mapped[bool] = mapped_column(Boolean, default=False)
    fraud_blocked: Mapped[bool] = mapped_column(Boolean, default=False)
    block_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class VisitEvent(Base):
    """Outbox row written in the visit transaction; consumed by the commission engine"""
    __tablename__ = "visit_events"
    __table_args__ = (
        Index('idx_visit_event_status_created', 'status', 'created_at'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    visit_id: Mapped[int] = mapped_column(Integer, ForeignKey('visits.id', ondelete='CASCADE'), unique=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True)
    user_earning: Mapped[Decimal] = mapped_column(Money)
    platform_earning: Mapped[Decimal] = mapped_column(Money)
    status: Mapped[str] = mapped_column(String(20), default='pending')
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

class DailyEarning(Base):
    """Per user / day / country rollup, upserted inside the visit transaction"""
    __tablename__ = "daily_earnings"
    __table_args__ = (
        UniqueConstraint('user_id', 'earning_date', 'country', name='uq_daily_earning'),
        Index('idx_daily_earning_date', 'earning_date'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True)
    earning_date: Mapped[date] = mapped_column(Date)
    country: Mapped[str] = mapped_column(String(2))
    visits: Mapped[int] = mapped_column(Integer, default=0)
    unique_visits: Mapped[int] = mapped_column(Integer, default=0)
    user_earnings: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))
    platform_earnings: Mapped[Decimal] = mapped_column(Money, default=Decimal('0'))

class CpmRate(Base):
    """Admin-editable CPM override per country"""
    __tablename__ = "cpm_rates"
    __table_args__ = (
        CheckConstraint('base_cpm >= 0', name='check_cpm_non_negative'),
        CheckConstraint('tier BETWEEN 1 AND 3', name='check_cpm_tier_range'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    country_code: Mapped[str] = mapped_column(String(2), unique=True, index=True)
    country_name: Mapped[str] = mapped_column(String(100))
    tier: Mapped[int] = mapped_column(Integer, default=3)
    base_cpm: Mapped[Decimal] = mapped_column(Money)
    user_cpm: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    last_verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_by_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class CpmRateHistory(Base):
    """Audit trail of CPM override changes"""
    __tablename__ = "cpm_rate_history"
    __table_args__ = (
        Index('idx_cpm_history_country_created', 'country_code', 'created_at'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    country_code: Mapped[str] = mapped_column(String(2))
    old_rate: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    new_rate: Mapped[Decimal] = mapped_column(Money)
    changed_by_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class SystemSettings(Base):
    """Singleton row (id = 1) with referral program settings"""
    __tablename__ = "system_settings"
    __table_args__ = (
        CheckConstraint('referral_commission_rate >= 0 AND referral_commission_rate <= 1', name='check_commission_rate_fraction'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    referral_commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal('0.05'))
    referral_bonus_duration_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    min_referral_payout: Mapped[Decimal] = mapped_column(Money, default=Decimal('5.00'))
    referral_system_active: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

class ReferralCommission(Base):
    """One commission per visit of a referred user"""
    __tablename__ = "referral_commissions"
    __table_args__ = (
        Index('idx_commission_referrer_created', 'referrer_id', 'created_at'),
        Index('idx_commission_referred', 'referred_id'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    referrer_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True)
    referred_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id', ondelete='CASCADE'))
    visit_id: Mapped[int] = mapped_column(Integer, ForeignKey('visits.id', ondelete='CASCADE'), unique=True)
    amount: Mapped[Decimal] = mapped_column(Money)
    referred_earning: Mapped[Decimal] = mapped_column(Money)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4))
    status: Mapped[str] = mapped_column(String(20), default='processed')
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class FraudAlert(Base):
    """Suspicious referral relationship detected at assignment time"""
    __tablename__ = "fraud_alerts"
    __table_args__ = (
        Index('idx_fraud_alert_status_created', 'status', 'created_at'),
        Index('idx_fraud_alert_pair', 'referrer_id', 'referred_id'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    referrer_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id', ondelete='CASCADE'))
    referred_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id', ondelete='CASCADE'))
    reasons: Mapped[str] = mapped_column(Text, default='')
    risk_score: Mapped[int] = mapped_column(Integer, default=0)
    ip_match: Mapped[bool] = mapped_column(Boolean, default=False)
    user_agent_match: Mapped[bool] = mapped_column(Boolean, default=False)
    timing_anomaly: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default='PENDING')
    resolved_by_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

class Payout(Base):
    """Model for tracking user payout requests"""
    __tablename__ = "payouts"
    __table_args__ = (
        CheckConstraint('amount > 0', name='check_payout_amount_positive'),
        Index('idx_payout_user_status', 'user_id', 'status'),
        Index('idx_payout_status_created', 'status', 'created_at'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True)
    amount: Mapped[Decimal] = mapped_column(Money)
    method: Mapped[str] = mapped_column(String(20))
    address: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default='PENDING', index=True)
    admin_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

class BalanceAdjustment(Base):
    """Model for tracking manual balance adjustments by admin"""
    __tablename__ = "balance_adjustments"
    __table_args__ = (
        Index('idx_adjustment_user_created', 'user_id', 'created_at'),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True)
    amount: Mapped[Decimal] = mapped_column(Money)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
