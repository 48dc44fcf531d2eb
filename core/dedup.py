import logging
from datetime import datetime

from core.database import Store, TODOS

logger = logging.getLogger(__name__)

NOTIFIED_FIELD = "deadline_notified_at"

class NotificationDeduper:
    """
    At-most-once latch for deadline reminders.

    A claim is one conditional write against the store ("set notified_at only if
    unset"), so overlapping job invocations cannot both win. Callers claim first
    and send second; a send that fails after a won claim is not retried.
    """

    def __init__(self, store: Store):
        self.store = store

    async def try_claim(self, task_id: str, deadline_at: datetime) -> bool:
        won = await self.store.conditional_update(TODOS, task_id, NOTIFIED_FIELD, deadline_at)
        if not won:
            logger.info(f"Todo {task_id} already claimed for {deadline_at.isoformat()}, skipping")
        return won
