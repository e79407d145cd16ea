#!/usr/bin/env python3
"""
Seed Development Data
=====================

Creates tables and inserts demo users, published knowledge base articles
and the triage configuration record. Existing rows (matched by email or
title) are left untouched.

Usage:
    python scripts/seed_data.py
"""

import asyncio

from sqlalchemy import select

from helpdesk.config import settings, ArticleStatus, UserRole
from helpdesk.infrastructure.database import (
    init_database, close_database, create_tables, get_session_context
)
from helpdesk.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


USERS = [
    {"name": "Admin User", "email": "admin@helpdesk.local", "role": UserRole.ADMIN},
    {"name": "Support Agent", "email": "agent@helpdesk.local", "role": UserRole.AGENT},
    {"name": "Regular User", "email": "user@helpdesk.local", "role": UserRole.USER},
    {"name": "AI Assistant", "email": settings.system_user_email, "role": UserRole.AGENT},
]

ARTICLES = [
    {
        "title": "How to update payment method",
        "body": (
            "To update your payment method: log into your account, open Billing Settings, "
            "click \"Update Payment Method\", enter your new card details and save. "
            "We accept all major credit cards and PayPal."
        ),
        "tags": ["billing", "payments", "account"],
    },
    {
        "title": "Troubleshooting 500 errors",
        "body": (
            "If you see 500 Internal Server Errors, check our status page, clear your browser "
            "cache and cookies, and try a private window or another browser. If the issue "
            "persists, note the time of the error and contact support."
        ),
        "tags": ["tech", "errors", "troubleshooting"],
    },
    {
        "title": "Tracking your shipment",
        "body": (
            "Use the tracking number from your shipping confirmation email on our carrier's "
            "website. Standard shipping takes 5-7 business days, express 2-3 and overnight 1."
        ),
        "tags": ["shipping", "delivery", "tracking"],
    },
    {
        "title": "Password reset instructions",
        "body": (
            "Go to the login page, click \"Forgot Password?\", enter your email address and "
            "follow the reset link, which is valid for 24 hours."
        ),
        "tags": ["account", "password", "security", "tech"],
    },
    {
        "title": "API rate limits and usage",
        "body": (
            "The free tier allows 100 requests per hour. Exceeding a limit returns HTTP 429 "
            "with a Retry-After header; use exponential backoff when retrying."
        ),
        "tags": ["api", "tech", "limits"],
    },
    {
        "title": "Refund and cancellation policy",
        "body": (
            "Digital products carry a 30-day money-back guarantee. Refunds are processed "
            "within 5-7 business days to the original payment method."
        ),
        "tags": ["billing", "refund", "policy"],
    },
]


async def seed() -> None:
    from helpdesk.triage.infrastructure.models import (
        ArticleModel, TriageConfigModel, UserModel
    )

    init_database()
    await create_tables()

    async with get_session_context() as session:
        existing_emails = set((await session.execute(select(UserModel.email))).scalars().all())
        for user in USERS:
            if user["email"] not in existing_emails:
                session.add(UserModel(**user))

        existing_titles = set((await session.execute(select(ArticleModel.title))).scalars().all())
        for article in ARTICLES:
            if article["title"] not in existing_titles:
                session.add(ArticleModel(status=ArticleStatus.PUBLISHED, **article))

        if await session.get(TriageConfigModel, 1) is None:
            session.add(TriageConfigModel(
                id=1,
                auto_close_enabled=settings.auto_close_enabled,
                confidence_threshold=settings.confidence_threshold,
                sla_hours=settings.sla_hours,
                updated_by="seed"
            ))

    logger.info("Seed data written", extra={"users": len(USERS), "articles": len(ARTICLES)})
    await close_database()


if __name__ == "__main__":
    setup_logging(settings.log_level, settings.environment)
    asyncio.run(seed())
