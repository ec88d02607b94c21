"""Owner notifications (in-app and email)."""

from app.features.notifications.reindex import ReindexNotifier, build_failure_email

__all__ = ["ReindexNotifier", "build_failure_email"]
