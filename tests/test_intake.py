"""
Integration tests for batch intake: validation, persistence and dispatch
"""
import pytest
from sqlalchemy import func, select

from guildstats.exceptions import PersistenceError
from guildstats.models import RawEvent
from guildstats.services.intake_service import EventIntakeService

from conftest import BASE_TS, make_event, make_message


async def count_raw_events(db):
    async with db.session() as session:
        return await session.scalar(select(func.count()).select_from(RawEvent))


@pytest.fixture
def intake(db, dispatcher, config):
    return EventIntakeService(db, dispatcher, config)


@pytest.mark.integration
class TestProcessBatch:
    """Test EventIntakeService.process_batch."""

    async def test_empty_batch(self, intake, queues):
        assert await intake.process_batch([]) == 0
        assert await intake.process_batch(None) == 0
        assert (await queues.events.counts())['waiting'] == 0

    async def test_batch_persisted_and_dispatched(self, intake, db, queues):
        batch = [make_message(timestamp=BASE_TS + i) for i in range(3)]
        assert await intake.process_batch(batch) == 3
        assert await count_raw_events(db) == 3
        assert (await queues.events.counts())['waiting'] == 3

    async def test_resubmitted_events_skipped(self, intake, db, queues):
        batch = [make_message(timestamp=BASE_TS + i) for i in range(3)]
        await intake.process_batch(batch)

        # Two old events and one new one
        second = batch[1:] + [make_message(timestamp=BASE_TS + 10)]
        assert await intake.process_batch(second) == 1
        assert await count_raw_events(db) == 4
        assert (await queues.events.counts())['waiting'] == 4

    async def test_duplicates_within_batch_collapsed(self, intake, db):
        event = make_message()
        assert await intake.process_batch([event, dict(event)]) == 1
        assert await count_raw_events(db) == 1

    async def test_invalid_events_dropped_batch_continues(self, intake, db):
        batch = [
            make_message(timestamp=BASE_TS),
            make_event(event_type='NOT-A-TYPE'),
            make_event(guild_id=None),
            'garbage',
            make_message(timestamp=BASE_TS + 1),
        ]
        assert await intake.process_batch(batch) == 2
        assert await count_raw_events(db) == 2

    async def test_jobs_carry_event_and_priority(self, intake, queues):
        await intake.process_batch([make_event('GUILD-BAN-ADD'), make_message()])

        first = await queues.events.reserve()
        second = await queues.events.reserve()
        assert first.name == 'ignored'
        assert first.priority == 1
        assert second.name == 'message'
        assert second.data['event']['type'] == 'MESSAGE-CREATE'

    async def test_chunked_insert(self, db, dispatcher, config):
        config.INTAKE_INSERT_CHUNK_SIZE = 2
        intake = EventIntakeService(db, dispatcher, config)
        batch = [make_message(timestamp=BASE_TS + i) for i in range(5)]
        assert await intake.process_batch(batch) == 5
        assert await count_raw_events(db) == 5


@pytest.mark.integration
class TestPersistenceFailure:
    """Test that store failures abort the whole batch."""

    async def test_store_failure_raises_and_enqueues_nothing(self, db, dispatcher, config, queues):
        intake = EventIntakeService(db, dispatcher, config)
        await db.drop_tables()

        with pytest.raises(PersistenceError):
            await intake.process_batch([make_message()])
        assert (await queues.events.counts())['waiting'] == 0
