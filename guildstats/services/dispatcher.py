"""
Queue Dispatcher
Fans accepted events and scheduled work out onto the job queues
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from structlog import get_logger

from ..events import BotEvent
from ..exceptions import EnqueueError
from ..queue import QueueRegistry

logger = get_logger()

# Aggregation jobs outrank routine event jobs
AGGREGATION_PRIORITY = 3
MAINTENANCE_PRIORITY = 10


class QueueDispatcher:
    """Enqueue only; the workers own all business logic"""

    def __init__(self, queues: QueueRegistry):
        self.queues = queues

    async def dispatch(self, events: Iterable[BotEvent]) -> List[str]:
        """
        Enqueue one job per event on the events queue

        Args:
            events: Events already persisted to the raw store

        Returns:
            Ids of the created jobs

        Raises:
            EnqueueError: the queue rejected the batch
        """
        jobs = [
            (event.processor, {'event': event.to_wire()}, event.priority, None)
            for event in events
        ]
        if not jobs:
            return []

        try:
            job_ids = await self.queues.events.add_bulk(jobs)
        except EnqueueError as e:
            logger.error("Event dispatch failed", jobs=len(jobs), error=str(e))
            raise

        logger.debug("Events dispatched", jobs=len(job_ids))
        return job_ids

    async def dispatch_aggregation(self, name: str, guild_id: str, start: datetime, end: datetime,
                                   period_type: str) -> Optional[str]:
        """Enqueue a metrics aggregation for one guild window"""
        data = {
            'guild_id': guild_id,
            'start': start.isoformat(),
            'end': end.isoformat(),
            'period_type': period_type,
        }
        # One job per window key; duplicates while queued are dropped
        job_id = f'{name}:{guild_id}:{start.isoformat()}'
        try:
            return await self.queues.aggregation.add(name, data, priority=AGGREGATION_PRIORITY, job_id=job_id)
        except EnqueueError as e:
            logger.error("Aggregation dispatch failed", job_name=name, guild_id=guild_id, error=str(e))
            raise

    async def dispatch_maintenance(self, name: str, data: Optional[Dict[str, Any]] = None,
                                   run_key: Optional[str] = None) -> Optional[str]:
        """Enqueue a maintenance job (cleanup, rollup, session sweep)"""
        job_id = f'{name}:{run_key}' if run_key else None
        try:
            return await self.queues.maintenance.add(
                name, data or {}, priority=MAINTENANCE_PRIORITY, job_id=job_id
            )
        except EnqueueError as e:
            logger.error("Maintenance dispatch failed", job_name=name, error=str(e))
            raise
