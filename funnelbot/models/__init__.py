"""
models/__init__.py — imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.

Import order matters: scheduled_messages has an FK to sessions.
"""
from funnelbot.models.session import SessionORM
from funnelbot.models.scheduled_message import ScheduledMessageORM

__all__ = ["SessionORM", "ScheduledMessageORM"]
