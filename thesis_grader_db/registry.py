import logging
from contextlib import asynccontextmanager
from threading import RLock
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from thesis_grader_db import services as svc
from thesis_grader_db.client import PgPool
from thesis_grader_db.config import DatabaseConfig, get_config
from thesis_grader_db.transaction import run_transaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Entity name -> concrete service class, in schema order.
ENTITY_SERVICES: dict[str, type] = {
	"users": svc.UsersService,
	"sessions": svc.SessionsService,
	"password_resets": svc.PasswordResetsService,
	"thesis_groups": svc.ThesisGroupsService,
	"group_members": svc.GroupMembersService,
	"defense_schedules": svc.DefenseSchedulesService,
	"schedule_panelists": svc.SchedulePanelistsService,
	"rubric_templates": svc.RubricTemplatesService,
	"rubric_criteria": svc.RubricCriteriaService,
	"evaluations": svc.EvaluationsService,
	"evaluation_scores": svc.EvaluationScoresService,
	"audit_logs": svc.AuditLogsService,
	"students": svc.StudentsService,
	"staff_profiles": svc.StaffProfilesService,
	"student_evaluations": svc.StudentEvaluationsService,
	"student_evaluation_scores": svc.StudentEvaluationScoresService,
	"student_feedback_forms": svc.StudentFeedbackFormsService,
	"evaluation_extras": svc.EvaluationExtrasService,
	"panelist_profiles": svc.PanelistProfilesService,
	"rubric_scale_levels": svc.RubricScaleLevelsService,
	"notifications": svc.NotificationsService,
	"push_subscriptions": svc.PushSubscriptionsService,
	"v_evaluation_overall_percentages": svc.EvaluationOverallPercentagesService,
	"v_thesis_group_rankings": svc.ThesisGroupRankingsService,
}

ENTITY_NAMES: tuple[str, ...] = tuple(ENTITY_SERVICES)


def build_entity_services(executor) -> dict[str, Any]:
	"""One instance of every concrete service, all sharing executor."""
	return {name: cls(executor) for name, cls in ENTITY_SERVICES.items()}


class DatabaseServices:
	"""
	Every entity service bound to one executor, reachable as an attribute or via get(name).

		services = DatabaseServices(pool)
		user = await services.users.find_by_email("a@b.c")

		async def assign(tx):
			group = await tx.thesis_groups.create({"title": "Robotics"})
			await tx.group_members.create({"group_id": group["id"], "student_id": sid})
			return group

		group = await services.transaction(assign)

	Inside transaction() the callback gets a new DatabaseServices bound to the transaction's
	connection; calling transaction() on that one nests with a savepoint.
	"""

	users: svc.UsersService
	sessions: svc.SessionsService
	password_resets: svc.PasswordResetsService
	thesis_groups: svc.ThesisGroupsService
	group_members: svc.GroupMembersService
	defense_schedules: svc.DefenseSchedulesService
	schedule_panelists: svc.SchedulePanelistsService
	rubric_templates: svc.RubricTemplatesService
	rubric_criteria: svc.RubricCriteriaService
	evaluations: svc.EvaluationsService
	evaluation_scores: svc.EvaluationScoresService
	audit_logs: svc.AuditLogsService
	students: svc.StudentsService
	staff_profiles: svc.StaffProfilesService
	student_evaluations: svc.StudentEvaluationsService
	student_evaluation_scores: svc.StudentEvaluationScoresService
	student_feedback_forms: svc.StudentFeedbackFormsService
	evaluation_extras: svc.EvaluationExtrasService
	panelist_profiles: svc.PanelistProfilesService
	rubric_scale_levels: svc.RubricScaleLevelsService
	notifications: svc.NotificationsService
	push_subscriptions: svc.PushSubscriptionsService
	v_evaluation_overall_percentages: svc.EvaluationOverallPercentagesService
	v_thesis_group_rankings: svc.ThesisGroupRankingsService

	def __init__(self, executor):
		self.executor = executor
		self._entities = build_entity_services(executor)
		for name, service in self._entities.items():
			setattr(self, name, service)

	def __repr__(self) -> str:
		return f"<DatabaseServices {self.executor!r}>"

	def get(self, entity_name: str):
		try:
			return self._entities[entity_name]
		except KeyError:
			raise KeyError(f"Unknown entity: {entity_name!r}") from None

	async def transaction(self, work: Callable[["DatabaseServices"], Awaitable[T]]) -> T:
		return await run_transaction(self.executor, work, DatabaseServices)


# ---------- Process-wide default ----------
_default_lock = RLock()
_default_services: Optional[DatabaseServices] = None


def get_database_services(config: Optional[DatabaseConfig] = None) -> DatabaseServices:
	"""
	Registry over the process-wide pool, built on first call. The pool opens lazily on the
	first query.
	"""
	global _default_services
	with _default_lock:
		if _default_services is None or _default_services.executor._closed:
			pool = PgPool.from_config(config or get_config())
			_default_services = DatabaseServices(pool)
			logger.debug("Built default DatabaseServices over %r", pool)
		return _default_services


@asynccontextmanager
async def open_database_services(config: Optional[DatabaseConfig] = None) -> AsyncIterator[DatabaseServices]:
	"""
	Open a dedicated pool for the duration of the block and close it afterwards:

		async with open_database_services() as services:
			await services.users.find_by_id(user_id)
	"""
	pool = PgPool.from_config(config or get_config(), cached=False)
	await pool.open()
	try:
		yield DatabaseServices(pool)
	finally:
		await pool.close()
