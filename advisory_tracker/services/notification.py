"""
Advisory Tracker
Domain event service.

Publishes sheet lifecycle events into the ``sheet_events`` outbox so that the
notification collaborator (mail, in-app, live dashboard) can pick them up.

Publishing is best-effort: the event row is written inside a savepoint and a
failure is logged, never raised, so the transition that produced the event
is not rolled back because of it.

Usage:
    from advisory_tracker.services.notification import NotificationService

    NotificationService.publish("assignment.submitted", sheet_id=1, team_id=3,
                                actor_user_id=7, payload={"assignment_id": 12})
"""

import json
import logging

from sqlalchemy.exc import SQLAlchemyError

from advisory_tracker.models import db
from advisory_tracker.models.notification import EVENT_TYPES, SheetEvent
from advisory_tracker.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for domain events."""

    # ── Publish ───────────────────────────────────────────────────────────

    @staticmethod
    def publish(event_type, *, sheet_id, team_id=None, entry_id=None,
                actor_user_id=None, payload=None):
        """
        Append one event to the outbox within the caller's transaction.

        Returns:
            The SheetEvent, or None when it could not be written.
        """
        if event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")

        event = SheetEvent(
            event_type=event_type,
            sheet_id=sheet_id,
            team_id=team_id,
            entry_id=entry_id,
            actor_user_id=actor_user_id,
            payload_json=json.dumps(payload or {}, default=str),
        )
        try:
            with db.session.begin_nested():
                db.session.add(event)
        except SQLAlchemyError:
            logger.exception(
                "Failed to publish %s for sheet %s", event_type, sheet_id,
                extra={"event_type": event_type, "sheet_id": sheet_id, "team_id": team_id},
            )
            return None

        logger.info(
            "Event %s sheet=%s team=%s", event_type, sheet_id, team_id,
            extra={"event_type": event_type, "sheet_id": sheet_id, "team_id": team_id},
        )
        return event

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def pending(limit=100, event_type=None):
        """Undelivered events, oldest first."""
        q = SheetEvent.query.filter(SheetEvent.delivered_at.is_(None))
        if event_type:
            q = q.filter_by(event_type=event_type)
        return q.order_by(SheetEvent.id.asc()).limit(limit).all()

    @staticmethod
    def list_for_sheet(sheet_id, team_id=None):
        q = SheetEvent.query.filter_by(sheet_id=sheet_id)
        if team_id is not None:
            q = q.filter_by(team_id=team_id)
        return q.order_by(SheetEvent.id.asc()).all()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_delivered(event_ids):
        """Mark events as delivered. Returns the number of rows updated."""
        if not event_ids:
            return 0
        count = (
            SheetEvent.query
            .filter(SheetEvent.id.in_(event_ids), SheetEvent.delivered_at.is_(None))
            .update({"delivered_at": utcnow()}, synchronize_session="fetch")
        )
        db.session.commit()
        return count
