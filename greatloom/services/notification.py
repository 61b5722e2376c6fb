"""
Great Loom
Notification Service.

Creates in-app notification rows and, when LOOM_NOTIFY_WEBHOOK_URL is
set, forwards each one to the webhook as JSON. Webhook delivery is best
effort: a failed POST is logged and the notification row still stands.
"""

import logging

import requests
from flask import current_app

from greatloom.models import db
from greatloom.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", category="system", severity="info",
               recipient="all", entity_type="", entity_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            recipient=recipient,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
        )
        db.session.add(notif)
        db.session.commit()
        NotificationService.forward(notif)
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient="all", category=None, unread_only=False,
                           limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        q = Notification.query.filter(
            (Notification.recipient == recipient) | (Notification.recipient == "all")
        )
        if category:
            q = q.filter_by(category=category)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc()).offset(offset).limit(limit).all()
        return items, total

    # ── Webhook ───────────────────────────────────────────────────────────

    @staticmethod
    def forward(notif) -> bool:
        """POST the notification to the configured webhook. Returns True on 2xx."""
        url = current_app.config.get("LOOM_NOTIFY_WEBHOOK_URL")
        if not url:
            return False
        timeout = float(current_app.config.get("LOOM_NOTIFY_WEBHOOK_TIMEOUT", 5.0))
        try:
            resp = requests.post(url, json=notif.to_dict(), timeout=timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Notification webhook failed for notification %s: %s", notif.id, exc)
            return False
        return True
