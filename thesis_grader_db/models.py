"""
Row, insert and patch shapes for the grading portal tables and views.

Rows come back from psycopg with native Python values (UUID, datetime, Decimal for NUMERIC,
dict for JSONB). Insert shapes list the columns the caller must provide; columns with a
database default are optional. Patch shapes are fully optional.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional, TypedDict, Union
from uuid import UUID as _UUID

UUID = Union[_UUID, str]
Timestamp = Union[datetime, str]
Numeric = Union[Decimal, int, float, str]
JsonObject = dict[str, Any]

ThesisRole = Literal["student", "staff", "admin", "panelist"]
UserStatus = Literal["active", "disabled"]
StudentEvalStatus = Literal["pending", "submitted", "locked"]
NotificationType = Literal["general", "evaluation_submitted", "evaluation_locked"]
EvaluationTargetType = Literal["group", "student"]

# Free-text status columns; these are the values the application writes.
DefenseScheduleStatus = str  # scheduled | ongoing | completed | cancelled
EvaluationStatus = str  # pending | submitted | locked


# ---------- users ----------
class UserRow(TypedDict):
    id: UUID
    name: str
    email: str
    role: ThesisRole
    status: UserStatus
    password_hash: str
    avatar_key: Optional[str]
    created_at: Timestamp
    updated_at: Timestamp


class _UserInsertRequired(TypedDict):
    name: str
    email: str
    role: ThesisRole
    password_hash: str


class UserInsert(_UserInsertRequired, total=False):
    id: UUID
    status: UserStatus
    avatar_key: Optional[str]
    created_at: Timestamp
    updated_at: Timestamp


class UserPatch(TypedDict, total=False):
    name: str
    email: str
    role: ThesisRole
    status: UserStatus
    password_hash: str
    avatar_key: Optional[str]
    updated_at: Timestamp


# ---------- sessions / password resets ----------
class SessionRow(TypedDict):
    id: UUID
    user_id: UUID
    token_hash: str
    expires_at: Timestamp
    created_at: Timestamp


class _SessionInsertRequired(TypedDict):
    user_id: UUID
    token_hash: str
    expires_at: Timestamp


class SessionInsert(_SessionInsertRequired, total=False):
    id: UUID
    created_at: Timestamp


class SessionPatch(TypedDict, total=False):
    user_id: UUID
    token_hash: str
    expires_at: Timestamp


class PasswordResetRow(TypedDict):
    id: UUID
    user_id: UUID
    token_hash: str
    expires_at: Timestamp
    used_at: Optional[Timestamp]
    created_at: Timestamp


class _PasswordResetInsertRequired(TypedDict):
    user_id: UUID
    token_hash: str
    expires_at: Timestamp


class PasswordResetInsert(_PasswordResetInsertRequired, total=False):
    id: UUID
    used_at: Optional[Timestamp]
    created_at: Timestamp


class PasswordResetPatch(TypedDict, total=False):
    user_id: UUID
    token_hash: str
    expires_at: Timestamp
    used_at: Optional[Timestamp]


# ---------- groups / schedules ----------
class ThesisGroupRow(TypedDict):
    id: UUID
    title: str
    adviser_id: Optional[UUID]
    program: Optional[str]
    term: Optional[str]
    created_at: Timestamp
    updated_at: Timestamp


class _ThesisGroupInsertRequired(TypedDict):
    title: str


class ThesisGroupInsert(_ThesisGroupInsertRequired, total=False):
    id: UUID
    adviser_id: Optional[UUID]
    program: Optional[str]
    term: Optional[str]
    created_at: Timestamp
    updated_at: Timestamp


class ThesisGroupPatch(TypedDict, total=False):
    title: str
    adviser_id: Optional[UUID]
    program: Optional[str]
    term: Optional[str]
    updated_at: Timestamp


class GroupMemberRow(TypedDict):
    group_id: UUID
    student_id: UUID


GroupMemberInsert = GroupMemberRow


class DefenseScheduleRow(TypedDict):
    id: UUID
    group_id: UUID
    scheduled_at: Timestamp
    room: Optional[str]
    status: DefenseScheduleStatus
    created_by: Optional[UUID]
    rubric_template_id: Optional[UUID]
    # Form pinned when students were assigned to evaluate this schedule.
    student_feedback_form_id: Optional[UUID]
    created_at: Timestamp
    updated_at: Timestamp


class _DefenseScheduleInsertRequired(TypedDict):
    group_id: UUID
    scheduled_at: Timestamp


class DefenseScheduleInsert(_DefenseScheduleInsertRequired, total=False):
    id: UUID
    room: Optional[str]
    status: DefenseScheduleStatus
    created_by: Optional[UUID]
    rubric_template_id: Optional[UUID]
    student_feedback_form_id: Optional[UUID]
    created_at: Timestamp
    updated_at: Timestamp


class DefenseSchedulePatch(TypedDict, total=False):
    group_id: UUID
    scheduled_at: Timestamp
    room: Optional[str]
    status: DefenseScheduleStatus
    created_by: Optional[UUID]
    rubric_template_id: Optional[UUID]
    student_feedback_form_id: Optional[UUID]
    updated_at: Timestamp


class SchedulePanelistRow(TypedDict):
    schedule_id: UUID
    staff_id: UUID


SchedulePanelistInsert = SchedulePanelistRow


# ---------- rubrics ----------
class RubricTemplateRow(TypedDict):
    id: UUID
    name: str
    version: int
    active: bool
    description: Optional[str]
    created_at: Timestamp
    updated_at: Timestamp


class _RubricTemplateInsertRequired(TypedDict):
    name: str


class RubricTemplateInsert(_RubricTemplateInsertRequired, total=False):
    id: UUID
    version: int
    active: bool
    description: Optional[str]
    created_at: Timestamp
    updated_at: Timestamp


class RubricTemplatePatch(TypedDict, total=False):
    name: str
    version: int
    active: bool
    description: Optional[str]
    updated_at: Timestamp


class RubricCriteriaRow(TypedDict):
    id: UUID
    template_id: UUID
    criterion: str
    description: Optional[str]
    weight: Numeric
    min_score: int
    max_score: int
    created_at: Timestamp


class _RubricCriteriaInsertRequired(TypedDict):
    template_id: UUID
    criterion: str
    description: Optional[str]
    weight: Numeric
    min_score: int
    max_score: int


class RubricCriteriaInsert(_RubricCriteriaInsertRequired, total=False):
    id: UUID
    created_at: Timestamp


class RubricCriteriaPatch(TypedDict, total=False):
    criterion: str
    description: Optional[str]
    weight: Numeric
    min_score: int
    max_score: int


class RubricScaleLevelRow(TypedDict):
    template_id: UUID
    score: int  # 1..5
    adjectival: str
    description: Optional[str]


class _RubricScaleLevelInsertRequired(TypedDict):
    template_id: UUID
    score: int
    adjectival: str


class RubricScaleLevelInsert(_RubricScaleLevelInsertRequired, total=False):
    description: Optional[str]


class RubricScaleLevelPatch(TypedDict, total=False):
    adjectival: str
    description: Optional[str]


# ---------- evaluations ----------
class EvaluationRow(TypedDict):
    id: UUID
    schedule_id: UUID
    evaluator_id: UUID
    status: EvaluationStatus
    submitted_at: Optional[Timestamp]
    locked_at: Optional[Timestamp]
    created_at: Timestamp


class _EvaluationInsertRequired(TypedDict):
    schedule_id: UUID
    evaluator_id: UUID


class EvaluationInsert(_EvaluationInsertRequired, total=False):
    id: UUID
    status: EvaluationStatus
    submitted_at: Optional[Timestamp]
    locked_at: Optional[Timestamp]
    created_at: Timestamp


class EvaluationPatch(TypedDict, total=False):
    status: EvaluationStatus
    submitted_at: Optional[Timestamp]
    locked_at: Optional[Timestamp]


class EvaluationScoreRow(TypedDict):
    id: UUID
    evaluation_id: UUID
    criterion_id: UUID
    target_type: EvaluationTargetType
    target_id: UUID
    score: int
    comment: Optional[str]


class _EvaluationScoreInsertRequired(TypedDict):
    evaluation_id: UUID
    criterion_id: UUID
    target_type: EvaluationTargetType
    target_id: UUID
    score: int


class EvaluationScoreInsert(_EvaluationScoreInsertRequired, total=False):
    id: UUID
    comment: Optional[str]


class EvaluationScorePatch(TypedDict, total=False):
    score: int
    comment: Optional[str]


class EvaluationExtraRow(TypedDict):
    evaluation_id: UUID
    data: JsonObject
    created_at: Timestamp
    updated_at: Timestamp


class _EvaluationExtraInsertRequired(TypedDict):
    evaluation_id: UUID


class EvaluationExtraInsert(_EvaluationExtraInsertRequired, total=False):
    data: JsonObject
    created_at: Timestamp
    updated_at: Timestamp


class EvaluationExtraPatch(TypedDict, total=False):
    data: JsonObject
    updated_at: Timestamp


# ---------- audit ----------
class AuditLogRow(TypedDict):
    id: UUID
    actor_id: Optional[UUID]
    action: str
    entity: str
    entity_id: Optional[UUID]
    details: Optional[Any]
    created_at: Timestamp


class _AuditLogInsertRequired(TypedDict):
    action: str
    entity: str


class AuditLogInsert(_AuditLogInsertRequired, total=False):
    id: UUID
    actor_id: Optional[UUID]
    entity_id: Optional[UUID]
    details: Optional[Any]
    created_at: Timestamp


class AuditLogPatch(TypedDict, total=False):
    actor_id: Optional[UUID]
    action: str
    entity: str
    entity_id: Optional[UUID]
    details: Optional[Any]


# ---------- profiles ----------
class StudentRow(TypedDict):
    user_id: UUID
    program: Optional[str]
    section: Optional[str]
    created_at: Timestamp


class _StudentInsertRequired(TypedDict):
    user_id: UUID


class StudentInsert(_StudentInsertRequired, total=False):
    program: Optional[str]
    section: Optional[str]
    created_at: Timestamp


class StudentPatch(TypedDict, total=False):
    program: Optional[str]
    section: Optional[str]


class StaffProfileRow(TypedDict):
    user_id: UUID
    department: Optional[str]
    created_at: Timestamp


class _StaffProfileInsertRequired(TypedDict):
    user_id: UUID


class StaffProfileInsert(_StaffProfileInsertRequired, total=False):
    department: Optional[str]
    created_at: Timestamp


class StaffProfilePatch(TypedDict, total=False):
    department: Optional[str]


class PanelistProfileRow(TypedDict):
    user_id: UUID
    expertise: Optional[str]
    created_at: Timestamp


class _PanelistProfileInsertRequired(TypedDict):
    user_id: UUID


class PanelistProfileInsert(_PanelistProfileInsertRequired, total=False):
    expertise: Optional[str]
    created_at: Timestamp


class PanelistProfilePatch(TypedDict, total=False):
    expertise: Optional[str]


# ---------- student feedback ----------
class StudentEvaluationRow(TypedDict):
    id: UUID
    schedule_id: UUID
    student_id: UUID
    form_id: Optional[UUID]
    status: StudentEvalStatus
    answers: JsonObject
    submitted_at: Optional[Timestamp]
    locked_at: Optional[Timestamp]
    created_at: Timestamp
    updated_at: Timestamp


class _StudentEvaluationInsertRequired(TypedDict):
    schedule_id: UUID
    student_id: UUID


class StudentEvaluationInsert(_StudentEvaluationInsertRequired, total=False):
    id: UUID
    form_id: Optional[UUID]
    status: StudentEvalStatus
    answers: JsonObject
    submitted_at: Optional[Timestamp]
    locked_at: Optional[Timestamp]
    created_at: Timestamp
    updated_at: Timestamp


class StudentEvaluationPatch(TypedDict, total=False):
    form_id: Optional[UUID]
    status: StudentEvalStatus
    answers: JsonObject
    submitted_at: Optional[Timestamp]
    locked_at: Optional[Timestamp]
    updated_at: Timestamp


class StudentEvaluationScoreRow(TypedDict):
    id: UUID
    student_evaluation_id: UUID
    schedule_id: UUID
    student_id: UUID
    form_id: Optional[UUID]
    total_score: Numeric
    max_score: Numeric
    percentage: Numeric
    breakdown: JsonObject
    computed_at: Timestamp
    created_at: Timestamp
    updated_at: Timestamp


class _StudentEvaluationScoreInsertRequired(TypedDict):
    student_evaluation_id: UUID
    schedule_id: UUID
    student_id: UUID


class StudentEvaluationScoreInsert(_StudentEvaluationScoreInsertRequired, total=False):
    id: UUID
    form_id: Optional[UUID]
    total_score: Numeric
    max_score: Numeric
    percentage: Numeric
    breakdown: JsonObject
    computed_at: Timestamp
    created_at: Timestamp
    updated_at: Timestamp


class StudentEvaluationScorePatch(TypedDict, total=False):
    form_id: Optional[UUID]
    total_score: Numeric
    max_score: Numeric
    percentage: Numeric
    breakdown: JsonObject
    computed_at: Timestamp
    updated_at: Timestamp


class StudentFeedbackFormRow(TypedDict):
    id: UUID
    key: str
    version: int
    title: str
    description: Optional[str]
    schema: JsonObject
    active: bool
    created_at: Timestamp
    updated_at: Timestamp


class _StudentFeedbackFormInsertRequired(TypedDict):
    key: str
    version: int
    title: str
    schema: JsonObject


class StudentFeedbackFormInsert(_StudentFeedbackFormInsertRequired, total=False):
    id: UUID
    description: Optional[str]
    active: bool
    created_at: Timestamp
    updated_at: Timestamp


class StudentFeedbackFormPatch(TypedDict, total=False):
    key: str
    version: int
    title: str
    description: Optional[str]
    schema: JsonObject
    active: bool
    updated_at: Timestamp


# ---------- notifications ----------
class NotificationRow(TypedDict):
    id: UUID
    user_id: UUID
    type: NotificationType
    title: str
    body: str
    data: JsonObject
    read_at: Optional[Timestamp]
    created_at: Timestamp


class _NotificationInsertRequired(TypedDict):
    user_id: UUID
    title: str
    body: str


class NotificationInsert(_NotificationInsertRequired, total=False):
    id: UUID
    type: NotificationType
    data: JsonObject
    read_at: Optional[Timestamp]
    created_at: Timestamp


class NotificationPatch(TypedDict, total=False):
    type: NotificationType
    title: str
    body: str
    data: JsonObject
    read_at: Optional[Timestamp]


class _NotificationBroadcastRequired(TypedDict):
    title: str
    body: str


class NotificationBroadcast(_NotificationBroadcastRequired, total=False):
    """Notification fields shared by every recipient of create_for_users."""
    type: NotificationType
    data: JsonObject


class PushSubscriptionRow(TypedDict):
    id: UUID
    user_id: UUID
    endpoint: str
    p256dh: str
    auth: str
    content_encoding: Optional[str]
    subscription: JsonObject
    created_at: Timestamp
    updated_at: Timestamp


class _PushSubscriptionInsertRequired(TypedDict):
    user_id: UUID
    endpoint: str
    p256dh: str
    auth: str


class PushSubscriptionInsert(_PushSubscriptionInsertRequired, total=False):
    id: UUID
    content_encoding: Optional[str]
    subscription: JsonObject
    created_at: Timestamp
    updated_at: Timestamp


class PushSubscriptionPatch(TypedDict, total=False):
    user_id: UUID
    endpoint: str
    p256dh: str
    auth: str
    content_encoding: Optional[str]
    subscription: JsonObject
    updated_at: Timestamp


# ---------- views ----------
class EvaluationOverallPercentageRow(TypedDict):
    evaluation_id: UUID
    schedule_id: UUID
    group_id: UUID
    evaluator_id: UUID
    status: EvaluationStatus
    criteria_count: int
    criteria_scored: int
    overall_percentage: Numeric
    weighted_score: Numeric
    weighted_max: Numeric
    submitted_at: Optional[Timestamp]
    locked_at: Optional[Timestamp]
    created_at: Timestamp


class ThesisGroupRankingRow(TypedDict):
    group_id: UUID
    group_title: str
    group_percentage: Optional[Numeric]
    submitted_evaluations: int
    latest_defense_at: Optional[Timestamp]
    rank: int
