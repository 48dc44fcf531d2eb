import asyncio
from datetime import date

from core.database import COMMON_TASKS, DAILY_TASKS, TODOS
from core.generator import TaskGenerationJob, TaskInstanceGenerator
from models.template import CommonTask, DailyTask
from models.todo import Todo
from tests.conftest import Clock, utc

TODAY = date(2024, 1, 2)


def _common(**overrides):
    fields = {
        "_id": "c1",
        "user_id": "u1",
        "text": "Gym",
        "deadline_date": "2024-01-01",
        "deadline_time": "18:00",
        "deadline_recurring": "monday,wednesday,friday",
    }
    fields.update(overrides)
    return CommonTask.model_validate(fields)


def _as_todos(created):
    return [Todo(**todo.model_dump(), _id=f"t{i}") for i, todo in enumerate(created)]


def test_tops_up_to_four_instances():
    generator = TaskInstanceGenerator()
    created = generator.generate(_common(), [], TODAY)

    assert [t.scheduled_for for t in created] == [
        date(2024, 1, 3), date(2024, 1, 5), date(2024, 1, 8), date(2024, 1, 10),
    ]
    assert all(t.deadline.time == "18:00" for t in created)
    assert all(t.common_task_id == "c1" for t in created)


def test_second_run_creates_nothing():
    generator = TaskInstanceGenerator()
    first = generator.generate(_common(), [], TODAY)

    assert generator.generate(_common(), _as_todos(first), TODAY) == []


def test_completed_instances_are_not_recreated():
    generator = TaskInstanceGenerator()
    existing = _as_todos(generator.generate(_common(), [], TODAY))
    existing[0].completed = True

    created = generator.generate(_common(), existing, TODAY)

    assert [t.scheduled_for for t in created] == [date(2024, 1, 12)]


def test_legacy_instances_match_by_text():
    generator = TaskInstanceGenerator()
    legacy = Todo(_id="old", user_id="u1", text="Gym",
                  deadline={"date": "2024-01-03", "time": "18:00", "recurring": "monday,wednesday,friday"})

    created = generator.generate(_common(), [legacy], TODAY)

    assert date(2024, 1, 3) not in [t.scheduled_for for t in created]
    assert len(created) == 3


def test_one_time_template_creates_single_instance():
    generator = TaskInstanceGenerator()
    template = _common(deadline_date="2024-01-20", deadline_recurring=None)

    created = generator.generate(template, [], TODAY)
    assert [t.deadline.date for t in created] == [date(2024, 1, 20)]
    assert generator.generate(template, _as_todos(created), TODAY) == []


def test_past_one_time_template_creates_nothing():
    template = _common(deadline_date="2023-12-20", deadline_recurring="")
    assert TaskInstanceGenerator().generate(template, [], TODAY) == []


def test_daily_template_converts_local_time_to_utc():
    generator = TaskInstanceGenerator(tz_name="America/New_York")
    template = DailyTask(_id="d1", user_id="u1", text="Stretch", time="21:30")

    created = generator.generate_daily(template, [], TODAY)

    assert len(created) == 1
    todo = created[0]
    assert todo.scheduled_for == date(2024, 1, 3)
    # 21:30 EST on Jan 3 is 02:30 UTC on Jan 4
    assert todo.deadline.date == date(2024, 1, 4)
    assert todo.deadline.time == "02:30"
    assert todo.deadline.recurring == "daily"
    assert generator.generate_daily(template, _as_todos(created), TODAY) == []


async def test_generation_job_is_idempotent(store):
    await store.insert(COMMON_TASKS, _common().model_dump(by_alias=True))
    await store.insert(DAILY_TASKS, {"_id": "d1", "user_id": "u1", "text": "Stretch", "time": "07:00"})
    await store.insert(COMMON_TASKS, {"_id": "c2", "user_id": "u2", "text": "No deadline"})
    job = TaskGenerationJob(store, TaskInstanceGenerator(), clock=Clock(utc(2024, 1, 2, 0, 5)))

    first = await job.run()
    second = await job.run()

    assert first.common_tasks_generated == 4
    assert first.daily_tasks_generated == 1
    assert first.users_processed == 1
    assert second.common_tasks_generated == 0
    assert second.daily_tasks_generated == 0
    assert len(await store.find(TODOS, {"user_id": "u1"})) == 5


async def test_generation_job_skips_malformed_rows(store):
    await store.insert(COMMON_TASKS, _common(deadline_recurring="weekly").model_dump(by_alias=True))
    await store.insert(TODOS, {"_id": "bad", "user_id": "u1", "text": None})
    job = TaskGenerationJob(store, TaskInstanceGenerator(), clock=Clock(utc(2024, 1, 2, 0, 5)))

    summary = await job.run()

    # The malformed row is skipped, generation still proceeds
    assert summary.common_tasks_generated == 4
    assert summary.errors == []


async def test_overlapping_generation_runs_create_each_instance_once(yielding_store):
    store = yielding_store
    await store.insert(COMMON_TASKS, _common(deadline_recurring="weekly").model_dump(by_alias=True))
    await store.insert(DAILY_TASKS, {"_id": "d1", "user_id": "u1", "text": "Stretch", "time": "07:00"})
    job = TaskGenerationJob(store, TaskInstanceGenerator(), clock=Clock(utc(2024, 1, 2, 0, 5)))

    first, second = await asyncio.gather(job.run(), job.run())

    rows = await store.find(TODOS, {"user_id": "u1"})
    assert len(rows) == 5
    assert len({(r.get("common_task_id"), r.get("daily_task_id"), r["scheduled_for"]) for r in rows}) == 5
    assert first.common_tasks_generated + second.common_tasks_generated == 4
    assert first.daily_tasks_generated + second.daily_tasks_generated == 1
