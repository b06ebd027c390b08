"""
Job Handlers
Route queued jobs to processors and services
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from structlog import get_logger

from ..events import BotEvent
from ..processors import BaseEventProcessor
from ..queue import Job
from ..services.aggregation_service import MetricsAggregationService
from ..services.retention_service import RetentionService
from ..services.rollup_service import MonthlyRollupService
from ..services.voice_sessions import VoiceSessionTracker
from ..utils import previous_month, to_ms, utcnow

logger = get_logger()

CLEANUP_RAW_EVENTS = 'cleanup-raw-events'
CLEANUP_DAILY_STATS = 'cleanup-daily-stats'
MONTHLY_ROLLUP = 'monthly-rollup'
SWEEP_VOICE_SESSIONS = 'sweep-voice-sessions'


class UnknownJobError(ValueError):
    """A job name no handler knows how to run"""


class EventJobHandler:
    """Runs one event job through the processor named by the job"""

    def __init__(self, processors: Dict[str, BaseEventProcessor]):
        self.processors = processors

    async def __call__(self, job: Job) -> Optional[Any]:
        if job.name == 'ignored':
            return None
        processor = self.processors.get(job.name)
        if processor is None:
            raise UnknownJobError(f"no processor for job {job.name!r}")

        event = BotEvent.from_wire(job.data['event'])
        await processor.handle(event)
        return None

    async def process_jobs(self, jobs: List[Job]) -> int:
        """
        Apply many event jobs at once through the processors' grouped batch path

        Jobs are grouped by processor in their original order, so each
        processor sees one batch. Used when parked jobs are reprocessed.

        Returns:
            Number of events applied
        """
        batches: Dict[str, List[BotEvent]] = {}
        for job in jobs:
            if job.name == 'ignored':
                continue
            if job.name not in self.processors:
                raise UnknownJobError(f"no processor for job {job.name!r}")
            batches.setdefault(job.name, []).append(BotEvent.from_wire(job.data['event']))

        applied = 0
        for name, events in batches.items():
            applied += await self.processors[name].process_batch(events)
        return applied


class AggregationJobHandler:
    def __init__(self, aggregation: MetricsAggregationService):
        self.aggregation = aggregation

    async def __call__(self, job: Job):
        data = job.data
        metrics = await self.aggregation.run(
            data['guild_id'],
            datetime.fromisoformat(data['start']),
            datetime.fromisoformat(data['end']),
            data['period_type'],
        )
        return metrics.total_messages


class MaintenanceJobHandler:
    """Cleanup, monthly rollup and stale session sweep"""

    def __init__(self, retention: RetentionService, rollup: MonthlyRollupService,
                 tracker: VoiceSessionTracker, clock=utcnow):
        self.retention = retention
        self.rollup = rollup
        self.tracker = tracker
        self.clock = clock

    async def __call__(self, job: Job):
        now = self.clock()
        if job.name == CLEANUP_RAW_EVENTS:
            return await self.retention.cleanup_raw_events(now)
        if job.name == CLEANUP_DAILY_STATS:
            return await self.retention.cleanup_daily_stats(now)
        if job.name == MONTHLY_ROLLUP:
            month = job.data.get('month')
            target = date.fromisoformat(month) if month else previous_month(now.date())
            return await self.rollup.rollup_month(target)
        if job.name == SWEEP_VOICE_SESSIONS:
            return await self.tracker.sweep_stale(to_ms(now))
        raise UnknownJobError(f"unknown maintenance job {job.name!r}")
