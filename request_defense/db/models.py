"""
SQLAlchemy models for the security tables.

Timestamps are stored as naive UTC.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class SecurityEventRecord(Base):
    __tablename__ = "security_events"

    id = Column(String(36), primary_key=True)
    event_type = Column(String(255), nullable=False, index=True)
    severity = Column(String(20), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    details = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String(64), nullable=False, index=True)
    user_id = Column(String(255), nullable=True, index=True)
    timestamp = Column(DateTime, nullable=False, index=True)
    resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(255), nullable=True)
    acknowledged = Column(Boolean, nullable=False, default=False)
    acknowledged_at = Column(DateTime, nullable=True)
    acknowledged_by = Column(String(255), nullable=True)


class ThreatPatternRecord(Base):
    __tablename__ = "threat_patterns"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    pattern_type = Column(String(50), nullable=False, default="behavioral")
    description = Column(Text, nullable=False, default="")
    conditions = Column(JSON, nullable=False, default=list)
    severity = Column(String(20), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, index=True)


class IPWhitelistRecord(Base):
    __tablename__ = "ip_whitelist"

    ip_or_pattern = Column(String(100), primary_key=True)
    kind = Column(String(20), nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    expires_at = Column(DateTime, nullable=True)
    description = Column(Text, nullable=False, default="")
    created_by = Column(String(255), nullable=True)


class AlertRuleRecord(Base):
    __tablename__ = "alert_rules"

    id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    event_type = Column(String(255), nullable=False)
    severity = Column(String(20), nullable=False)
    threshold = Column(Integer, nullable=False)
    time_window_minutes = Column(Integer, nullable=False)
    conditions = Column(JSON, nullable=False, default=list)
    channels = Column(JSON, nullable=False, default=list)
    enabled = Column(Boolean, nullable=False, default=True, index=True)
