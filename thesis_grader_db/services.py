from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from psycopg import sql
from psycopg.types.json import Jsonb

from thesis_grader_db.accessors import JoinTableService, QueryArg, ReadonlyTableService, TableService
from thesis_grader_db.identifiers import ident
from thesis_grader_db.models import (
    UUID,
    AuditLogInsert,
    AuditLogPatch,
    AuditLogRow,
    DefenseScheduleInsert,
    DefenseSchedulePatch,
    DefenseScheduleRow,
    DefenseScheduleStatus,
    EvaluationExtraInsert,
    EvaluationExtraPatch,
    EvaluationExtraRow,
    EvaluationInsert,
    EvaluationOverallPercentageRow,
    EvaluationPatch,
    EvaluationRow,
    EvaluationScoreInsert,
    EvaluationScorePatch,
    EvaluationScoreRow,
    EvaluationStatus,
    EvaluationTargetType,
    GroupMemberInsert,
    GroupMemberRow,
    NotificationBroadcast,
    NotificationInsert,
    NotificationPatch,
    NotificationRow,
    NotificationType,
    PanelistProfileInsert,
    PanelistProfilePatch,
    PanelistProfileRow,
    PasswordResetInsert,
    PasswordResetPatch,
    PasswordResetRow,
    PushSubscriptionInsert,
    PushSubscriptionPatch,
    PushSubscriptionRow,
    RubricCriteriaInsert,
    RubricCriteriaPatch,
    RubricCriteriaRow,
    RubricScaleLevelInsert,
    RubricScaleLevelPatch,
    RubricScaleLevelRow,
    RubricTemplateInsert,
    RubricTemplatePatch,
    RubricTemplateRow,
    SchedulePanelistInsert,
    SchedulePanelistRow,
    SessionInsert,
    SessionPatch,
    SessionRow,
    StaffProfileInsert,
    StaffProfilePatch,
    StaffProfileRow,
    StudentEvalStatus,
    StudentEvaluationInsert,
    StudentEvaluationPatch,
    StudentEvaluationRow,
    StudentEvaluationScoreInsert,
    StudentEvaluationScorePatch,
    StudentEvaluationScoreRow,
    StudentFeedbackFormInsert,
    StudentFeedbackFormPatch,
    StudentFeedbackFormRow,
    StudentInsert,
    StudentPatch,
    StudentRow,
    ThesisGroupInsert,
    ThesisGroupPatch,
    ThesisGroupRankingRow,
    ThesisGroupRow,
    ThesisRole,
    Timestamp,
    UserInsert,
    UserPatch,
    UserRow,
    UserStatus,
)
from thesis_grader_db.schema import PUSH_SUBSCRIPTIONS_TABLE, SchemaGate, ensure_table
from thesis_grader_db.sql_builder import (
    UNSET,
    ListQuery,
    PageResult,
    normalize_limit,
    strip_unset,
)

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _with_where(query: QueryArg, where: Mapping[str, Any], **defaults: Any) -> ListQuery:
    """
    Caller-supplied sort/paging with a fixed filter. defaults fill sort fields the caller left empty.
    """
    q = ListQuery.coerce(query)
    if q.where is not None:
        raise ValueError("query.where is set by this lookup and cannot be passed in.")
    q = q.with_where(where)
    if defaults:
        q = ListQuery(
            where=q.where,
            order_by=q.order_by or defaults.get("order_by"),
            order_direction=q.order_direction or defaults.get("order_direction"),
            limit=q.limit,
            offset=q.offset,
        )
    return q


def _clean_ids(ids: Iterable[Any]) -> list[Any]:
    """Trim, drop blanks and de-duplicate ids, keeping first-seen order."""
    seen = set()
    out = []
    for raw in ids:
        value = raw.strip() if isinstance(raw, str) else raw
        if not value or value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out


# ---------- accounts ----------
class UsersService(TableService[UserRow, UserInsert, UserPatch]):
    def __init__(self, executor):
        super().__init__(executor, "users")

    async def find_by_id(self, user_id: UUID) -> Optional[UserRow]:
        return await self.find_one({"id": user_id})

    async def find_by_email(self, email: str) -> Optional[UserRow]:
        return await self.find_one({"email": email.lower()})

    async def list_by_role(self, role: ThesisRole, query: QueryArg = None) -> list[UserRow]:
        return await self.find_many(_with_where(query, {"role": role}))

    async def set_status(self, user_id: UUID, status: UserStatus) -> Optional[UserRow]:
        return await self.update_one({"id": user_id}, {"status": status, "updated_at": now_utc()})

    async def set_avatar_key(self, user_id: UUID, avatar_key: Optional[str]) -> Optional[UserRow]:
        return await self.update_one(
            {"id": user_id},
            {"avatar_key": avatar_key, "updated_at": now_utc()},
        )


class SessionsService(TableService[SessionRow, SessionInsert, SessionPatch]):
    def __init__(self, executor):
        super().__init__(executor, "sessions")

    async def find_by_id(self, session_id: UUID) -> Optional[SessionRow]:
        return await self.find_one({"id": session_id})

    async def find_by_token_hash(self, token_hash: str) -> Optional[SessionRow]:
        return await self.find_one({"token_hash": token_hash})

    async def revoke_by_user(self, user_id: UUID) -> int:
        return await self.delete({"user_id": user_id})

    async def revoke_expired(self, now: Optional[Timestamp] = None) -> int:
        query = sql.SQL("DELETE FROM {} WHERE {} <= %s").format(
            self._relation_sql, ident("expires_at"),
        )
        result = await self.executor.query(query, [now or now_utc()])
        return result.rowcount


class PasswordResetsService(TableService[PasswordResetRow, PasswordResetInsert, PasswordResetPatch]):
    def __init__(self, executor):
        super().__init__(executor, "password_resets")

    async def find_by_id(self, reset_id: UUID) -> Optional[PasswordResetRow]:
        return await self.find_one({"id": reset_id})

    async def find_by_token_hash(self, token_hash: str) -> Optional[PasswordResetRow]:
        return await self.find_one({"token_hash": token_hash})

    async def mark_used(self, reset_id: UUID, used_at: Optional[Timestamp] = None) -> Optional[PasswordResetRow]:
        return await self.update_one({"id": reset_id}, {"used_at": used_at or now_utc()})

    async def purge_expired(self, now: Optional[Timestamp] = None) -> int:
        """Delete resets that are expired or already used."""
        query = sql.SQL("DELETE FROM {} WHERE {} <= %s OR {} IS NOT NULL").format(
            self._relation_sql, ident("expires_at"), ident("used_at"),
        )
        result = await self.executor.query(query, [now or now_utc()])
        return result.rowcount


# ---------- groups and schedules ----------
class ThesisGroupsService(TableService[ThesisGroupRow, ThesisGroupInsert, ThesisGroupPatch]):
    def __init__(self, executor):
        super().__init__(executor, "thesis_groups")

    async def find_by_id(self, group_id: UUID) -> Optional[ThesisGroupRow]:
        return await self.find_one({"id": group_id})

    async def list_by_adviser(self, adviser_id: UUID) -> list[ThesisGroupRow]:
        return await self.find_many(ListQuery(
            where={"adviser_id": adviser_id}, order_by="updated_at", order_direction="desc",
        ))


class GroupMembersService(JoinTableService[GroupMemberRow, GroupMemberInsert]):
    def __init__(self, executor):
        super().__init__(executor, "group_members")

    async def list_by_group(self, group_id: UUID) -> list[GroupMemberRow]:
        return await self.find_many({"where": {"group_id": group_id}})

    async def list_by_student(self, student_id: UUID) -> list[GroupMemberRow]:
        return await self.find_many({"where": {"student_id": student_id}})

    async def remove_member(self, group_id: UUID, student_id: UUID) -> int:
        return await self.delete({"group_id": group_id, "student_id": student_id})


class DefenseSchedulesService(TableService[DefenseScheduleRow, DefenseScheduleInsert, DefenseSchedulePatch]):
    def __init__(self, executor):
        super().__init__(executor, "defense_schedules")

    async def find_by_id(self, schedule_id: UUID) -> Optional[DefenseScheduleRow]:
        return await self.find_one({"id": schedule_id})

    async def list_by_group(self, group_id: UUID) -> list[DefenseScheduleRow]:
        return await self.find_many(ListQuery(
            where={"group_id": group_id}, order_by="scheduled_at", order_direction="desc",
        ))

    async def list_by_panelist(self, staff_id: UUID) -> list[DefenseScheduleRow]:
        """Schedules the staff member sits on as a panelist, newest first."""
        query = sql.SQL(
            "SELECT ds.* FROM {schedules} ds "
            "INNER JOIN {panelists} sp ON sp.{schedule_id} = ds.{id} "
            "WHERE sp.{staff_id} = %s "
            "ORDER BY ds.{scheduled_at} DESC"
        ).format(
            schedules=ident("defense_schedules"),
            panelists=ident("schedule_panelists"),
            schedule_id=ident("schedule_id"),
            id=ident("id"),
            staff_id=ident("staff_id"),
            scheduled_at=ident("scheduled_at"),
        )
        result = await self.executor.query(query, [staff_id])
        return result.rows

    async def set_status(self, schedule_id: UUID, status: DefenseScheduleStatus) -> Optional[DefenseScheduleRow]:
        return await self.update_one({"id": schedule_id}, {"status": status, "updated_at": now_utc()})


class SchedulePanelistsService(JoinTableService[SchedulePanelistRow, SchedulePanelistInsert]):
    def __init__(self, executor):
        super().__init__(executor, "schedule_panelists")

    async def list_by_schedule(self, schedule_id: UUID) -> list[SchedulePanelistRow]:
        return await self.find_many({"where": {"schedule_id": schedule_id}})

    async def list_by_staff(self, staff_id: UUID) -> list[SchedulePanelistRow]:
        return await self.find_many({"where": {"staff_id": staff_id}})

    async def remove_panelist(self, schedule_id: UUID, staff_id: UUID) -> int:
        return await self.delete({"schedule_id": schedule_id, "staff_id": staff_id})


# ---------- rubrics ----------
class _ActiveVersionedMixin:
    """Shared lookups for versioned definitions that carry an `active` flag."""

    async def get_active_latest(self):
        query = sql.SQL("SELECT * FROM {} WHERE {} = TRUE ORDER BY {} DESC, {} DESC LIMIT 1").format(
            self._relation_sql, ident("active"), ident("version"), ident("updated_at"),
        )
        result = await self.executor.query(query)
        return result.rows[0] if result.rows else None

    async def set_active(self, row_id: UUID, active: bool):
        return await self.update_one({"id": row_id}, {"active": active, "updated_at": now_utc()})


class RubricTemplatesService(
    _ActiveVersionedMixin,
    TableService[RubricTemplateRow, RubricTemplateInsert, RubricTemplatePatch],
):
    def __init__(self, executor):
        super().__init__(executor, "rubric_templates")

    async def find_by_id(self, template_id: UUID) -> Optional[RubricTemplateRow]:
        return await self.find_one({"id": template_id})

    async def list_active(self) -> list[RubricTemplateRow]:
        return await self.find_many(ListQuery(
            where={"active": True}, order_by="version", order_direction="desc",
        ))


class RubricCriteriaService(TableService[RubricCriteriaRow, RubricCriteriaInsert, RubricCriteriaPatch]):
    def __init__(self, executor):
        super().__init__(executor, "rubric_criteria")

    async def find_by_id(self, criterion_id: UUID) -> Optional[RubricCriteriaRow]:
        return await self.find_one({"id": criterion_id})

    async def list_by_template(self, template_id: UUID) -> list[RubricCriteriaRow]:
        return await self.find_many(ListQuery(
            where={"template_id": template_id}, order_by="created_at", order_direction="asc",
        ))


class RubricScaleLevelsService(TableService[RubricScaleLevelRow, RubricScaleLevelInsert, RubricScaleLevelPatch]):
    def __init__(self, executor):
        super().__init__(executor, "rubric_scale_levels")

    async def list_by_template(self, template_id: UUID) -> list[RubricScaleLevelRow]:
        return await self.find_many(ListQuery(
            where={"template_id": template_id}, order_by="score", order_direction="asc",
        ))

    async def find_by_template_and_score(self, template_id: UUID, score: int) -> Optional[RubricScaleLevelRow]:
        return await self.find_one({"template_id": template_id, "score": score})


# ---------- panel evaluations ----------
class EvaluationsService(TableService[EvaluationRow, EvaluationInsert, EvaluationPatch]):
    def __init__(self, executor):
        super().__init__(executor, "evaluations")

    async def find_by_id(self, evaluation_id: UUID) -> Optional[EvaluationRow]:
        return await self.find_one({"id": evaluation_id})

    async def list_by_schedule(self, schedule_id: UUID) -> list[EvaluationRow]:
        return await self.find_many(ListQuery(
            where={"schedule_id": schedule_id}, order_by="created_at", order_direction="desc",
        ))

    async def list_by_evaluator(self, evaluator_id: UUID) -> list[EvaluationRow]:
        return await self.find_many(ListQuery(
            where={"evaluator_id": evaluator_id}, order_by="created_at", order_direction="desc",
        ))

    async def submit(self, evaluation_id: UUID, submitted_at: Optional[Timestamp] = None) -> Optional[EvaluationRow]:
        return await self.update_one(
            {"id": evaluation_id},
            {"status": "submitted", "submitted_at": submitted_at or now_utc()},
        )

    async def lock(self, evaluation_id: UUID, locked_at: Optional[Timestamp] = None) -> Optional[EvaluationRow]:
        return await self.update_one(
            {"id": evaluation_id},
            {"status": "locked", "locked_at": locked_at or now_utc()},
        )

    async def set_status(self, evaluation_id: UUID, status: EvaluationStatus) -> Optional[EvaluationRow]:
        return await self.update_one({"id": evaluation_id}, {"status": status})


class EvaluationScoresService(TableService[EvaluationScoreRow, EvaluationScoreInsert, EvaluationScorePatch]):
    CONFLICT_COLUMNS = ("evaluation_id", "criterion_id", "target_type", "target_id")

    def __init__(self, executor):
        super().__init__(executor, "evaluation_scores")

    async def list_by_evaluation(self, evaluation_id: UUID) -> list[EvaluationScoreRow]:
        return await self.find_many(ListQuery(
            where={"evaluation_id": evaluation_id}, order_by="criterion_id", order_direction="asc",
        ))

    async def list_by_target(
        self,
        target_type: EvaluationTargetType,
        target_id: UUID,
        evaluation_id: Optional[UUID] = None,
    ) -> list[EvaluationScoreRow]:
        where = {
            "target_type": target_type,
            "target_id": target_id,
            "evaluation_id": evaluation_id if evaluation_id is not None else UNSET,
        }
        return await self.find_many(ListQuery(where=where, order_by="criterion_id", order_direction="asc"))

    async def upsert_score(self, payload: EvaluationScoreInsert) -> EvaluationScoreRow:
        """
        Insert one score, or overwrite score/comment of the existing row for the same
        evaluation, criterion and target.
        """
        columns = [*self.CONFLICT_COLUMNS, "score", "comment"]
        values = [payload[c] for c in self.CONFLICT_COLUMNS]
        values += [payload["score"], payload.get("comment")]

        query = sql.SQL(
            "INSERT INTO {table} ({columns}) VALUES ({values}) "
            "ON CONFLICT ({conflict}) DO UPDATE SET "
            "{score} = EXCLUDED.{score}, {comment} = EXCLUDED.{comment} "
            "RETURNING *"
        ).format(
            table=self._relation_sql,
            columns=sql.SQL(", ").join(ident(c) for c in columns),
            values=sql.SQL(", ").join([sql.Placeholder()] * len(columns)),
            conflict=sql.SQL(", ").join(ident(c) for c in self.CONFLICT_COLUMNS),
            score=ident("score"),
            comment=ident("comment"),
        )
        result = await self.executor.query(query, values)
        return result.rows[0]

    async def upsert_scores(self, payloads: Iterable[EvaluationScoreInsert]) -> list[EvaluationScoreRow]:
        out = []
        for payload in payloads:
            out.append(await self.upsert_score(payload))
        return out


class EvaluationExtrasService(TableService[EvaluationExtraRow, EvaluationExtraInsert, EvaluationExtraPatch]):
    def __init__(self, executor):
        super().__init__(executor, "evaluation_extras")

    async def find_by_evaluation_id(self, evaluation_id: UUID) -> Optional[EvaluationExtraRow]:
        return await self.find_one({"evaluation_id": evaluation_id})


# ---------- audit ----------
class AuditLogsService(TableService[AuditLogRow, AuditLogInsert, AuditLogPatch]):
    def __init__(self, executor):
        super().__init__(executor, "audit_logs")

    async def find_by_id(self, log_id: UUID) -> Optional[AuditLogRow]:
        return await self.find_one({"id": log_id})

    async def list_by_actor(self, actor_id: UUID) -> list[AuditLogRow]:
        return await self.find_many(ListQuery(
            where={"actor_id": actor_id}, order_by="created_at", order_direction="desc",
        ))

    async def list_by_entity(self, entity: str, entity_id: Optional[UUID] = None) -> list[AuditLogRow]:
        where: dict[str, Any] = {"entity": entity}
        if entity_id:
            where["entity_id"] = entity_id
        return await self.find_many(ListQuery(where=where, order_by="created_at", order_direction="desc"))

    async def record(
        self,
        action: str,
        entity: str,
        *,
        entity_id: Optional[UUID] = None,
        actor_id: Optional[UUID] = None,
        details: Any = None,
    ) -> AuditLogRow:
        return await self.create({
            "action": action,
            "entity": entity,
            "entity_id": entity_id,
            "actor_id": actor_id,
            "details": Jsonb(details) if details is not None else None,
        })


# ---------- profiles ----------
class StudentsService(TableService[StudentRow, StudentInsert, StudentPatch]):
    def __init__(self, executor):
        super().__init__(executor, "students")

    async def find_by_user_id(self, user_id: UUID) -> Optional[StudentRow]:
        return await self.find_one({"user_id": user_id})


class StaffProfilesService(TableService[StaffProfileRow, StaffProfileInsert, StaffProfilePatch]):
    def __init__(self, executor):
        super().__init__(executor, "staff_profiles")

    async def find_by_user_id(self, user_id: UUID) -> Optional[StaffProfileRow]:
        return await self.find_one({"user_id": user_id})


class PanelistProfilesService(TableService[PanelistProfileRow, PanelistProfileInsert, PanelistProfilePatch]):
    def __init__(self, executor):
        super().__init__(executor, "panelist_profiles")

    async def find_by_user_id(self, user_id: UUID) -> Optional[PanelistProfileRow]:
        return await self.find_one({"user_id": user_id})


# ---------- student feedback ----------
class StudentEvaluationsService(
    TableService[StudentEvaluationRow, StudentEvaluationInsert, StudentEvaluationPatch]
):
    def __init__(self, executor):
        super().__init__(executor, "student_evaluations")

    async def find_by_id(self, evaluation_id: UUID) -> Optional[StudentEvaluationRow]:
        return await self.find_one({"id": evaluation_id})

    async def find_by_schedule_and_student(self, schedule_id: UUID, student_id: UUID) -> Optional[StudentEvaluationRow]:
        return await self.find_one({"schedule_id": schedule_id, "student_id": student_id})

    async def list_by_schedule(self, schedule_id: UUID) -> list[StudentEvaluationRow]:
        return await self.find_many(ListQuery(
            where={"schedule_id": schedule_id}, order_by="created_at", order_direction="desc",
        ))

    async def list_by_student(self, student_id: UUID) -> list[StudentEvaluationRow]:
        return await self.find_many(ListQuery(
            where={"student_id": student_id}, order_by="created_at", order_direction="desc",
        ))

    async def submit(self, evaluation_id: UUID, submitted_at: Optional[Timestamp] = None) -> Optional[StudentEvaluationRow]:
        now = now_utc()
        return await self.update_one(
            {"id": evaluation_id},
            {"status": "submitted", "submitted_at": submitted_at or now, "updated_at": now},
        )

    async def lock(self, evaluation_id: UUID, locked_at: Optional[Timestamp] = None) -> Optional[StudentEvaluationRow]:
        now = now_utc()
        return await self.update_one(
            {"id": evaluation_id},
            {"status": "locked", "locked_at": locked_at or now, "updated_at": now},
        )

    async def set_status(self, evaluation_id: UUID, status: StudentEvalStatus) -> Optional[StudentEvaluationRow]:
        return await self.update_one({"id": evaluation_id}, {"status": status, "updated_at": now_utc()})


class StudentEvaluationScoresService(
    TableService[StudentEvaluationScoreRow, StudentEvaluationScoreInsert, StudentEvaluationScorePatch]
):
    # Identity of a score summary; never rewritten once the row exists.
    KEY_COLUMNS = ("id", "student_evaluation_id", "schedule_id", "student_id", "created_at")

    def __init__(self, executor):
        super().__init__(executor, "student_evaluation_scores")

    async def find_by_id(self, score_id: UUID) -> Optional[StudentEvaluationScoreRow]:
        return await self.find_one({"id": score_id})

    async def find_by_student_evaluation_id(self, student_evaluation_id: UUID) -> Optional[StudentEvaluationScoreRow]:
        return await self.find_one({"student_evaluation_id": student_evaluation_id})

    async def list_by_schedule(self, schedule_id: UUID) -> list[StudentEvaluationScoreRow]:
        return await self.find_many(ListQuery(
            where={"schedule_id": schedule_id}, order_by="computed_at", order_direction="desc",
        ))

    async def list_by_student(self, student_id: UUID) -> list[StudentEvaluationScoreRow]:
        return await self.find_many(ListQuery(
            where={"student_id": student_id}, order_by="computed_at", order_direction="desc",
        ))

    async def upsert_for_student_evaluation(
        self, payload: StudentEvaluationScoreInsert
    ) -> StudentEvaluationScoreRow:
        """
        Store the computed summary for one student evaluation, replacing the previous one.
        """
        record = strip_unset(payload)
        student_evaluation_id = record.get("student_evaluation_id")
        if not student_evaluation_id:
            raise ValueError("student_evaluation_id is required.")
        now = now_utc()
        create = {"computed_at": now, "created_at": now, "updated_at": now, **record}
        patch = {k: v for k, v in create.items() if k not in self.KEY_COLUMNS}
        patch["updated_at"] = record.get("updated_at") or now
        return await self.upsert({"student_evaluation_id": student_evaluation_id}, create, patch)


class StudentFeedbackFormsService(
    _ActiveVersionedMixin,
    TableService[StudentFeedbackFormRow, StudentFeedbackFormInsert, StudentFeedbackFormPatch],
):
    def __init__(self, executor):
        super().__init__(executor, "student_feedback_forms")

    async def find_by_id(self, form_id: UUID) -> Optional[StudentFeedbackFormRow]:
        return await self.find_one({"id": form_id})

    async def list_active(self, query: QueryArg = None) -> list[StudentFeedbackFormRow]:
        return await self.find_many(
            _with_where(query, {"active": True}, order_by="version", order_direction="desc")
        )


# ---------- notifications ----------
class NotificationsService(TableService[NotificationRow, NotificationInsert, NotificationPatch]):
    def __init__(self, executor):
        super().__init__(executor, "notifications")

    async def find_by_id(self, notification_id: UUID) -> Optional[NotificationRow]:
        return await self.find_one({"id": notification_id})

    async def list_by_user(self, user_id: UUID, query: QueryArg = None) -> list[NotificationRow]:
        return await self.find_many(_with_where(query, {"user_id": user_id}))

    async def list_unread(self, user_id: UUID, limit: int = 50) -> list[NotificationRow]:
        return await self.find_many(ListQuery(
            where={"user_id": user_id, "read_at": None},
            order_by="created_at",
            order_direction="desc",
            limit=limit,
        ))

    async def list_by_type(
        self, user_id: UUID, notification_type: NotificationType, query: QueryArg = None
    ) -> list[NotificationRow]:
        return await self.find_many(_with_where(query, {"user_id": user_id, "type": notification_type}))

    async def mark_as_read(self, notification_id: UUID, read_at: Optional[Timestamp] = None) -> Optional[NotificationRow]:
        return await self.update_one({"id": notification_id}, {"read_at": read_at or now_utc()})

    async def mark_all_as_read(self, user_id: UUID, read_at: Optional[Timestamp] = None) -> int:
        query = sql.SQL("UPDATE {} SET {} = %s WHERE {} = %s AND {} IS NULL").format(
            self._relation_sql, ident("read_at"), ident("user_id"), ident("read_at"),
        )
        result = await self.executor.query(query, [read_at or now_utc(), user_id])
        return result.rowcount

    async def create_for_users(
        self, user_ids: Iterable[UUID], payload: NotificationBroadcast
    ) -> list[NotificationRow]:
        """One notification per distinct recipient, created in recipient order."""
        recipients = _clean_ids(user_ids)
        if not recipients:
            return []
        return await self.create_many([{**payload, "user_id": user_id} for user_id in recipients])


class PushSubscriptionsService(TableService[PushSubscriptionRow, PushSubscriptionInsert, PushSubscriptionPatch]):
    """
    Browser push subscriptions. The table is created on first use, so every operation waits
    for the provisioning gate first.
    """

    DEFAULT_CONTENT_ENCODING = "aes128gcm"

    def __init__(self, executor):
        super().__init__(executor, "public.push_subscriptions")
        self._schema_gate = SchemaGate(self._provision)

    async def _provision(self) -> None:
        await ensure_table(self.executor, PUSH_SUBSCRIPTIONS_TABLE)
        logger.debug("push_subscriptions table is ready")

    @staticmethod
    def _timestamp_or(value: Any, default: datetime) -> Any:
        if isinstance(value, str):
            return value.strip() or default
        return value or default

    def normalize_create_payload(self, payload: PushSubscriptionInsert) -> dict[str, Any]:
        record = strip_unset(payload)
        now = now_utc()

        endpoint = record.get("endpoint") if isinstance(record.get("endpoint"), str) else ""
        p256dh = record.get("p256dh") if isinstance(record.get("p256dh"), str) else ""
        auth = record.get("auth") if isinstance(record.get("auth"), str) else ""

        raw_encoding = record.get("content_encoding", UNSET)
        if isinstance(raw_encoding, str):
            content_encoding = raw_encoding.strip()
        elif raw_encoding is None:
            content_encoding = None
        else:
            content_encoding = self.DEFAULT_CONTENT_ENCODING

        subscription = record.get("subscription")
        if not isinstance(subscription, Mapping):
            subscription = {
                "endpoint": endpoint,
                "keys": {"p256dh": p256dh, "auth": auth},
                "expirationTime": None,
            }

        return {
            **record,
            "id": record.get("id") or str(uuid.uuid4()),
            "content_encoding": content_encoding,
            "subscription": subscription,
            "created_at": self._timestamp_or(record.get("created_at"), now),
            "updated_at": self._timestamp_or(record.get("updated_at"), now),
        }

    def normalize_patch_payload(self, patch: PushSubscriptionPatch) -> dict[str, Any]:
        out = strip_unset(patch)
        if not out.get("updated_at"):
            out["updated_at"] = now_utc()
        return out

    async def find_one(self, where=None):
        await self._schema_gate.ensure()
        return await super().find_one(where)

    async def find_many(self, query=None):
        await self._schema_gate.ensure()
        return await super().find_many(query)

    async def count(self, where=None):
        await self._schema_gate.ensure()
        return await super().count(where)

    async def exists(self, where=None):
        await self._schema_gate.ensure()
        return await super().exists(where)

    async def find_page(self, query=None) -> PageResult[PushSubscriptionRow]:
        await self._schema_gate.ensure()
        return await super().find_page(query)

    async def create(self, payload):
        await self._schema_gate.ensure()
        return await super().create(self.normalize_create_payload(payload))

    async def update(self, where, patch):
        await self._schema_gate.ensure()
        return await super().update(where, self.normalize_patch_payload(patch))

    async def delete(self, where):
        await self._schema_gate.ensure()
        return await super().delete(where)

    async def find_by_id(self, subscription_id: UUID) -> Optional[PushSubscriptionRow]:
        return await self.find_one({"id": subscription_id})

    async def find_by_endpoint(self, endpoint: str) -> Optional[PushSubscriptionRow]:
        return await self.find_one({"endpoint": endpoint})

    async def list_by_user(self, user_id: UUID) -> list[PushSubscriptionRow]:
        return await self.find_many(ListQuery(
            where={"user_id": user_id}, order_by="updated_at", order_direction="desc",
        ))

    async def list_by_users(self, user_ids: Iterable[UUID]) -> list[PushSubscriptionRow]:
        await self._schema_gate.ensure()
        recipients = [str(user_id) for user_id in _clean_ids(user_ids)]
        if not recipients:
            return []
        query = sql.SQL("SELECT * FROM {} WHERE {} = ANY(%s::uuid[]) ORDER BY {} DESC").format(
            self._relation_sql, ident("user_id"), ident("updated_at"),
        )
        result = await self.executor.query(query, [recipients])
        return result.rows

    async def delete_by_endpoint(self, endpoint: str) -> int:
        return await self.delete({"endpoint": endpoint})


# ---------- views ----------
class EvaluationOverallPercentagesService(ReadonlyTableService[EvaluationOverallPercentageRow]):
    def __init__(self, executor):
        super().__init__(executor, "v_evaluation_overall_percentages")

    async def list_by_schedule(self, schedule_id: UUID) -> list[EvaluationOverallPercentageRow]:
        return await self.find_many(ListQuery(
            where={"schedule_id": schedule_id}, order_by="created_at", order_direction="desc",
        ))

    async def list_by_group(self, group_id: UUID) -> list[EvaluationOverallPercentageRow]:
        return await self.find_many(ListQuery(
            where={"group_id": group_id}, order_by="created_at", order_direction="desc",
        ))

    async def list_by_evaluator(self, evaluator_id: UUID) -> list[EvaluationOverallPercentageRow]:
        return await self.find_many(ListQuery(
            where={"evaluator_id": evaluator_id}, order_by="created_at", order_direction="desc",
        ))


class ThesisGroupRankingsService(ReadonlyTableService[ThesisGroupRankingRow]):
    DEFAULT_LEADERBOARD_LIMIT = 50

    def __init__(self, executor):
        super().__init__(executor, "v_thesis_group_rankings")

    async def leaderboard(self, limit: int = DEFAULT_LEADERBOARD_LIMIT) -> list[ThesisGroupRankingRow]:
        return await self.find_many(ListQuery(
            order_by="rank",
            order_direction="asc",
            limit=normalize_limit(limit) or self.DEFAULT_LEADERBOARD_LIMIT,
        ))

    async def by_group(self, group_id: UUID) -> Optional[ThesisGroupRankingRow]:
        return await self.find_one({"group_id": group_id})
