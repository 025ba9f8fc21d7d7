"""
Best-effort delivery of quiz events (published, graded)
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks

logger = logging.getLogger(__name__)


class Notifier:
    """Delivery channel; implementations may block, callers never wait on them"""

    def notify(
        self,
        recipient_ids: List[str],
        title: str,
        body: str,
        payload: Dict[str, Any]
    ) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes events to the application log"""

    def notify(self, recipient_ids, title, body, payload) -> None:
        logger.info(
            f"Notification '{title}' to {len(recipient_ids)} recipient(s): {body} "
            f"payload={payload}"
        )


class NotificationService:
    """Dispatches notifications without ever failing the caller's operation"""

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    def dispatch(
        self,
        background_tasks: Optional[BackgroundTasks],
        recipient_ids: List[str],
        title: str,
        body: str,
        payload: Dict[str, Any]
    ) -> None:
        """
        Schedule delivery after the response is sent

        Without a task queue (e.g. direct service calls) delivery runs inline,
        still guarded so a failing channel cannot surface an error.
        """
        if not recipient_ids:
            return

        if background_tasks is not None:
            background_tasks.add_task(self._deliver, recipient_ids, title, body, payload)
        else:
            self._deliver(recipient_ids, title, body, payload)

    def _deliver(self, recipient_ids, title, body, payload) -> None:
        try:
            self.notifier.notify(recipient_ids, title, body, payload)
        except Exception as e:
            logger.warning(f"Notification '{title}' failed: {str(e)}")
