import logging
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, List, Optional, Set
from zoneinfo import ZoneInfo

from core.database import Store, COMMON_TASKS, DAILY_TASKS, TODOS, load_records
from core.errors import StoreUnavailableError
from core.recurrence import RecurrenceRule, expand_window
from core.time_utils import UTC, format_hhmm, get_current_time, parse_hhmm, to_local
from models.notification import GenerationSummary
from models.template import CommonTask, DailyTask
from models.todo import Deadline, TodoCreate, Todo, TODAY_LIST_ID

logger = logging.getLogger(__name__)

COMMON_TASK_TARGET = 4
LOOKAHEAD_DAYS = 30

# Identity of a generated instance; the store rejects a second row with the same values
COMMON_INSTANCE_KEY = ("common_task_id", "scheduled_for", "deadline.recurring")
DAILY_INSTANCE_KEY = ("daily_task_id", "scheduled_for")

class TaskInstanceGenerator:
    """
    Materializes concrete todos from task templates.

    Re-running it for the same `today` creates nothing new: a template occurrence
    is identified by (template, occurrence date, recurrence rule), and completed
    instances still count as used so they are never recreated.
    """

    def __init__(self, target: int = COMMON_TASK_TARGET, lookahead_days: int = LOOKAHEAD_DAYS, tz_name: str = "UTC"):
        self.target = target
        self.lookahead_days = lookahead_days
        self.tz = ZoneInfo(tz_name)

    @staticmethod
    def _belongs_to(todo: Todo, template: CommonTask) -> bool:
        if todo.common_task_id is not None:
            return todo.common_task_id == template.id
        # Instances created before template ids were recorded
        return todo.text == template.text and (todo.description or None) == (template.description or None)

    def _instances_of(self, template: CommonTask, existing: Iterable[Todo]) -> List[Todo]:
        rule = template.deadline_recurring
        return [
            todo for todo in existing
            if self._belongs_to(todo, template)
            and todo.occurrence_date is not None
            and (todo.deadline.recurring if todo.deadline else None) == rule
        ]

    def generate(self, template: CommonTask, existing: Iterable[Todo], today: date) -> List[TodoCreate]:
        if template.deadline_date is None:
            return []

        instances = self._instances_of(template, existing)
        used_dates: Set[date] = {todo.occurrence_date for todo in instances}
        have = sum(1 for todo in instances if not todo.completed and todo.occurrence_date >= today)
        need = max(0, self.target - have)
        if need == 0:
            return []

        rule = RecurrenceRule.parse(template.deadline_recurring)
        if rule.is_recurring:
            dates = expand_window(
                anchor=template.deadline_date,
                rule=rule,
                window_end=today + timedelta(days=self.lookahead_days),
                already_used=used_dates,
                count=need,
                today=today,
            )
        elif template.deadline_date >= today and template.deadline_date not in used_dates:
            # One-time deadline: a single instance at most
            dates = [template.deadline_date]
        else:
            dates = []

        return [self._from_common(template, target) for target in dates]

    def _from_common(self, template: CommonTask, target: date) -> TodoCreate:
        return TodoCreate(
            user_id=template.user_id,
            text=template.text,
            description=template.description,
            list_id=template.list_id if template.list_id is not None else TODAY_LIST_ID,
            time=template.time,
            # deadline_time on common tasks is already stored in UTC
            deadline=Deadline(date=target, time=template.deadline_time, recurring=template.deadline_recurring),
            common_task_id=template.id,
            scheduled_for=target,
        )

    def generate_daily(self, template: DailyTask, existing: Iterable[Todo], today: date) -> List[TodoCreate]:
        tomorrow = today + timedelta(days=1)
        for todo in existing:
            if todo.daily_task_id == template.id and todo.occurrence_date == tomorrow:
                return []

        deadline_date, deadline_time = self._local_time_to_utc(tomorrow, template.time)
        return [TodoCreate(
            user_id=template.user_id,
            text=template.text,
            description=template.description,
            list_id=template.list_id if template.list_id is not None else TODAY_LIST_ID,
            time=template.time,
            deadline=Deadline(date=deadline_date, time=deadline_time, recurring="daily"),
            daily_task_id=template.id,
            scheduled_for=tomorrow,
        )]

    def _local_time_to_utc(self, day: date, local_time: Optional[str]):
        """Converts a local wall-clock time on `day` to the UTC date and "HH:MM" used for storage."""
        at = parse_hhmm(local_time)
        if at is None:
            return day, None
        instant = datetime.combine(day, at, tzinfo=self.tz).astimezone(UTC)
        return instant.date(), format_hhmm(instant.time())

class TaskGenerationJob:
    def __init__(self, store: Store, generator: TaskInstanceGenerator, clock: Callable[[], datetime] = get_current_time):
        self.store = store
        self.generator = generator
        self.clock = clock

    async def run(self) -> GenerationSummary:
        now = self.clock()
        today = to_local(now, self.generator.tz.key).date()
        summary = GenerationSummary(checked=now)
        logger.info(f"[{now}] Starting task generation for {today}...")

        common_rows = await self.store.find(COMMON_TASKS, {"deadline_date": {"$ne": None}})
        daily_rows = await self.store.find(DAILY_TASKS)
        common_tasks = load_records(CommonTask, common_rows)
        daily_tasks = load_records(DailyTask, daily_rows)

        user_ids = sorted({t.user_id for t in common_tasks} | {t.user_id for t in daily_tasks})
        if not user_ids:
            logger.info("No users with common or daily tasks found")
            return summary

        for user_id in user_ids:
            try:
                await self._process_user(
                    user_id,
                    [t for t in common_tasks if t.user_id == user_id],
                    [t for t in daily_tasks if t.user_id == user_id],
                    today,
                    summary,
                )
                summary.users_processed += 1
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.exception(f"Error processing user {user_id}")
                summary.errors.append({"user_id": user_id, "type": "user_process", "error": str(e)})

        logger.info(
            f"Task generation complete: {summary.users_processed} users, "
            f"{summary.common_tasks_generated} common, {summary.daily_tasks_generated} daily, "
            f"{len(summary.errors)} errors"
        )
        return summary

    async def _process_user(self, user_id, common_tasks, daily_tasks, today, summary: GenerationSummary):
        rows = await self.store.find(TODOS, {"user_id": user_id})
        existing = load_records(Todo, rows)

        for template in common_tasks:
            try:
                for new_todo in self.generator.generate(template, existing, today):
                    created = await self._insert(new_todo, COMMON_INSTANCE_KEY)
                    if created is None:
                        continue
                    existing.append(created)
                    summary.common_tasks_generated += 1
                    logger.info(f"Created task from common task {template.id} for {new_todo.scheduled_for}")
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.exception(f"Error processing common task {template.id}")
                summary.errors.append({"user_id": user_id, "type": "common_task", "task_id": template.id, "error": str(e)})

        for template in daily_tasks:
            try:
                for new_todo in self.generator.generate_daily(template, existing, today):
                    created = await self._insert(new_todo, DAILY_INSTANCE_KEY)
                    if created is None:
                        continue
                    existing.append(created)
                    summary.daily_tasks_generated += 1
                    logger.info(f"Created task from daily task {template.id} for tomorrow")
            except StoreUnavailableError:
                raise
            except Exception as e:
                logger.exception(f"Error processing daily task {template.id}")
                summary.errors.append({"user_id": user_id, "type": "daily_task", "task_id": template.id, "error": str(e)})

    async def _insert(self, new_todo: TodoCreate, unique_keys) -> Optional[Todo]:
        """Returns None when an overlapping run already created this instance."""
        todo = Todo(**new_todo.model_dump(), created_at=self.clock())
        doc = await self.store.insert_unique(TODOS, todo.model_dump(by_alias=True, exclude={"id"}), unique_keys)
        if doc is None:
            logger.info(f"Instance of {new_todo.common_task_id or new_todo.daily_task_id} for {new_todo.scheduled_for} already exists")
            return None
        return Todo.model_validate(doc)
