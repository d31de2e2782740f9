# models.py — Database models for TaskFlow
# - UUID string primary keys everywhere
# - 5-tier role system (super_admin, org_admin, team_lead, member, viewer)
# - Explicit integer version columns for optimistic concurrency
# - Soft deactivation (is_active) for organisations, teams, projects, tasks
# - Append-only task history

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, JSON, Boolean, Integer, Float, Table,
    Enum as SQLEnum, ForeignKey, Text, Index, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    SUPER_ADMIN = "super_admin"
    ORG_ADMIN = "org_admin"
    TEAM_LEAD = "team_lead"
    MEMBER = "member"
    VIEWER = "viewer"


class UserStatus(str, PyEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING = "pending"
    SUSPENDED = "suspended"


class TeamRole(str, PyEnum):
    LEAD = "lead"
    MEMBER = "member"
    VIEWER = "viewer"


class ProjectRole(str, PyEnum):
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class ProjectVisibility(str, PyEnum):
    PRIVATE = "private"
    TEAM = "team"
    ORGANIZATION = "organization"
    PUBLIC = "public"


class TaskPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class HistoryAction(str, PyEnum):
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    PRIORITY_CHANGED = "priority_changed"
    ASSIGNED = "assigned"
    UNASSIGNED = "unassigned"
    DUE_DATE_CHANGED = "due_date_changed"
    START_DATE_CHANGED = "start_date_changed"
    TAG_ADDED = "tag_added"
    TAG_REMOVED = "tag_removed"
    DESCRIPTION_UPDATED = "description_updated"
    TITLE_UPDATED = "title_updated"
    DELETED = "deleted"
    SUBTASK_ADDED = "subtask_added"
    SUBTASK_UPDATED = "subtask_updated"
    SUBTASK_COMPLETED = "subtask_completed"
    SUBTASK_DELETED = "subtask_deleted"


class SubtaskStatus(str, PyEnum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    DONE = "done"


# ============================================================
# ASSOCIATION TABLES
# ============================================================

organization_admins = Table(
    "organization_admins",
    Base.metadata,
    Column("organization_id", String, ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)

task_assignees = Table(
    "task_assignees",
    Base.metadata,
    Column("task_id", String, ForeignKey("tasks.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================
# ORGANISATION / USER / TEAM
# ============================================================

class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    slug = Column(String, unique=True, nullable=False, index=True)
    # No FK: users.organization_id already points the other way
    owner_id = Column(String, nullable=False, index=True)
    settings = Column(JSON, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    admins = relationship("User", secondary=organization_admins, lazy="selectin")


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=False, default="")
    # Null while the user is pending an invitation
    password_hash = Column(String, nullable=True)
    role = Column(SQLEnum(UserRole), default=UserRole.MEMBER, nullable=False, index=True)
    status = Column(SQLEnum(UserStatus), default=UserStatus.ACTIVE, nullable=False, index=True)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=True, index=True)
    invitation_token = Column(String, nullable=True, unique=True)
    invited_by = Column(String, nullable=True)
    last_login_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    team_memberships = relationship(
        "TeamMember", back_populates="user", lazy="selectin",
        foreign_keys="TeamMember.user_id",
    )


class Team(Base):
    __tablename__ = "teams"

    id = Column(String, primary_key=True, default=new_uuid)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    lead_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    members = relationship("TeamMember", back_populates="team", lazy="selectin", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_team_org_name"),
    )


class TeamMember(Base):
    __tablename__ = "team_members"

    id = Column(String, primary_key=True, default=new_uuid)
    team_id = Column(String, ForeignKey("teams.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(SQLEnum(TeamRole), default=TeamRole.MEMBER, nullable=False)
    joined_at = Column(DateTime(timezone=True), default=utcnow)

    team = relationship("Team", back_populates="members")
    user = relationship("User", back_populates="team_memberships", foreign_keys=[user_id])

    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="uq_team_member"),
    )


# ============================================================
# PROJECTS & TASKS
# ============================================================

class Project(Base):
    __tablename__ = "projects"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    organization_id = Column(String, ForeignKey("organizations.id"), nullable=True, index=True)
    team_id = Column(String, ForeignKey("teams.id"), nullable=True, index=True)
    visibility = Column(SQLEnum(ProjectVisibility), default=ProjectVisibility.PRIVATE, nullable=False)
    created_by = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    # Ordered list of {"id", "name", "order", "color"}
    columns = Column(JSON, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    members = relationship("ProjectMember", back_populates="project", lazy="selectin", cascade="all, delete-orphan")


class ProjectMember(Base):
    __tablename__ = "project_members"

    id = Column(String, primary_key=True, default=new_uuid)
    project_id = Column(String, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(SQLEnum(ProjectRole), default=ProjectRole.MEMBER, nullable=False)
    added_at = Column(DateTime(timezone=True), default=utcnow)
    added_by = Column(String, ForeignKey("users.id"), nullable=True)

    project = relationship("Project", back_populates="members")

    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_member"),
    )


class Task(Base):
    __tablename__ = "tasks"

    id = Column(String, primary_key=True, default=new_uuid)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="todo", index=True)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    project_id = Column(String, ForeignKey("projects.id"), nullable=True, index=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    tags = Column(JSON, nullable=False, default=list)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    assignees = relationship("User", secondary=task_assignees, lazy="selectin")

    __table_args__ = (
        Index("idx_task_project_status", "project_id", "status"),
    )


class Subtask(Base):
    """Checklist item under a task; not a board card"""
    __tablename__ = "subtasks"

    id = Column(String, primary_key=True, default=new_uuid)
    parent_task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(SQLEnum(SubtaskStatus), default=SubtaskStatus.TODO, nullable=False, index=True)
    priority = Column(SQLEnum(TaskPriority), default=TaskPriority.MEDIUM, nullable=False)
    assigned_to = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    estimated_hours = Column(Float, nullable=True)
    actual_hours = Column(Float, nullable=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    end_date = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=False)
    tags = Column(JSON, nullable=False, default=list)
    order = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_subtask_parent_order", "parent_task_id", "order"),
    )


class TaskHistory(Base):
    __tablename__ = "task_history"

    id = Column(String, primary_key=True, default=new_uuid)
    task_id = Column(String, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(SQLEnum(HistoryAction), nullable=False, index=True)
    field_name = Column(String, nullable=True)
    old_value = Column(JSON, nullable=True)
    new_value = Column(JSON, nullable=True)
    details = Column(Text, nullable=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    user_name = Column(String, nullable=True)
    extra_data = Column(JSON, nullable=True, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    __table_args__ = (
        Index("idx_task_history_task_created", "task_id", "created_at"),
    )
