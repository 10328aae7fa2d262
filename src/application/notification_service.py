import logging

from sqlalchemy.orm import Session

from src.infrastructure.repositories.outbox_repository import OutboxRepository


logger = logging.getLogger(__name__)

NOTIFICATION_EVENT = "NOTIFICATION"


class NotificationService:
    """
    Fire-and-forget notification sink backed by the outbox table.
    Delivery (email, SMS, push) happens outside this service.
    """

    def __init__(self, db: Session):
        self.db = db
        self.outbox = OutboxRepository(db)

    def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        action_url: str | None = None,
        dedupe_key: str | None = None,
    ) -> None:
        key = dedupe_key or f"notify:{user_id}:{title}:{message}"
        try:
            event = self.outbox.add_event(
                aggregate_type="user",
                aggregate_id=user_id,
                event_type=NOTIFICATION_EVENT,
                payload={
                    "user_id": user_id,
                    "title": title,
                    "message": message,
                    "action_url": action_url,
                },
                dedupe_key=key,
            )
        except Exception:
            # Never let the sink undo the caller's transaction.
            logger.exception("Failed to queue notification %s for user %s", key, user_id)
            return

        if event is None:
            logger.debug("Notification %s already queued", key)
