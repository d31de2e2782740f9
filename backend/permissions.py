# permissions.py — Hierarchical permission resolver
"""
Resolves what an actor may do to a task across the
organisation → team → project → task chain.

Rules are an ordered list of named predicates; the first rule that matches
allows the action. Ceilings run after the allow pass and can only deny.
Every predicate here is pure: views in, bool out.

    1. super_admin                global role
    2. org_admin_scope            same organisation (+ legacy org-less fallback)
    3. team_lead_scope            projects created/joined/led, own organisation
    4. relationships              creator, assignee, project membership
    5. visibility                 organisation / team / public projects
    6. default                    deny

    ceiling: viewer_ceiling       viewers never create or assign
"""
import os
from dataclasses import dataclass
from enum import Enum
from typing import Callable, FrozenSet, List, Optional

from models import ProjectRole, ProjectVisibility, UserRole
from scopes import ProjectView, TaskView, UserView

ORG_ADMIN_ORGLESS_FALLBACK = os.getenv("ORG_ADMIN_ORGLESS_FALLBACK", "true").lower() == "true"


class Action(str, Enum):
    ASSIGN = "assign"
    CREATE = "create"
    EDIT = "edit"
    VIEW = "view"
    MANAGE = "manage"


ALL_ACTIONS = frozenset(Action)


@dataclass(frozen=True)
class Context:
    actor: UserView
    action: Action
    project: Optional[ProjectView] = None
    task: Optional[TaskView] = None
    orgless_fallback: bool = True


@dataclass(frozen=True)
class Rule:
    name: str
    actions: FrozenSet[Action]
    check: Callable[[Context], bool]

    def applies(self, ctx: Context) -> bool:
        return ctx.action in self.actions and self.check(ctx)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    rule: str

    def __bool__(self) -> bool:
        return self.allowed


# ============================================================
# RULE PREDICATES
# ============================================================

def _is_super_admin(ctx: Context) -> bool:
    return ctx.actor.role == UserRole.SUPER_ADMIN


def _org_admin_scope(ctx: Context) -> bool:
    actor, project = ctx.actor, ctx.project
    if actor.role != UserRole.ORG_ADMIN or not actor.organization_id:
        return False
    if project is None:
        # Personal tasks belong to a user, not an organisation: only the
        # organisation-wide create/assign context applies here.
        return ctx.action in (Action.ASSIGN, Action.CREATE)
    if project.organization_id == actor.organization_id:
        return True
    return project.organization_id is None and ctx.orgless_fallback


def _leads_project_team(actor: UserView, project: Optional[ProjectView]) -> bool:
    return project is not None and project.team_id is not None and project.team_id in actor.led_team_ids


def _team_lead_scope(ctx: Context) -> bool:
    actor, project = ctx.actor, ctx.project
    if _leads_project_team(actor, project):
        return True
    if actor.role != UserRole.TEAM_LEAD:
        return False
    if project is None:
        return ctx.action in (Action.ASSIGN, Action.CREATE)
    if project.created_by == actor.id:
        return True
    if project.role_of(actor.id) in (ProjectRole.ADMIN, ProjectRole.MEMBER):
        return True
    return actor.organization_id is not None and project.organization_id == actor.organization_id


def _task_creator(ctx: Context) -> bool:
    return ctx.task is not None and ctx.task.created_by == ctx.actor.id


def _assignee(ctx: Context) -> bool:
    return ctx.task is not None and ctx.actor.id in ctx.task.assignee_ids


def _project_creator(ctx: Context) -> bool:
    return ctx.project is not None and ctx.project.created_by == ctx.actor.id


_MEMBER_ROLES_BY_ACTION = {
    Action.ASSIGN: (ProjectRole.ADMIN,),
    Action.MANAGE: (ProjectRole.ADMIN,),
    Action.CREATE: (ProjectRole.ADMIN, ProjectRole.MEMBER),
    Action.EDIT: (ProjectRole.ADMIN, ProjectRole.MEMBER),
    Action.VIEW: (ProjectRole.ADMIN, ProjectRole.MEMBER, ProjectRole.VIEWER),
}


def _project_member(ctx: Context) -> bool:
    if ctx.project is None:
        return False
    return ctx.project.role_of(ctx.actor.id) in _MEMBER_ROLES_BY_ACTION[ctx.action]


def _personal_create(ctx: Context) -> bool:
    return ctx.project is None


def _personal_self_assign(ctx: Context) -> bool:
    # Individual users (no organisation) may only assign to themselves;
    # the assignable-user filter narrows the pool to the actor alone.
    return ctx.project is None and ctx.actor.organization_id is None


def _organization_visibility(ctx: Context) -> bool:
    project = ctx.project
    return (
        project is not None
        and project.visibility == ProjectVisibility.ORGANIZATION
        and project.organization_id is not None
        and project.organization_id == ctx.actor.organization_id
    )


def _team_visibility(ctx: Context) -> bool:
    project = ctx.project
    return (
        project is not None
        and project.visibility == ProjectVisibility.TEAM
        and project.team_id is not None
        and project.team_id in ctx.actor.team_ids
    )


def _public_visibility(ctx: Context) -> bool:
    return ctx.project is not None and ctx.project.visibility == ProjectVisibility.PUBLIC


def _is_viewer(ctx: Context) -> bool:
    return ctx.actor.role == UserRole.VIEWER


_A, _C, _E, _V, _M = Action.ASSIGN, Action.CREATE, Action.EDIT, Action.VIEW, Action.MANAGE

DEFAULT_RULES: List[Rule] = [
    Rule("super_admin", ALL_ACTIONS, _is_super_admin),
    Rule("org_admin_scope", ALL_ACTIONS, _org_admin_scope),
    Rule("team_lead_scope", ALL_ACTIONS, _team_lead_scope),
    Rule("task_creator", frozenset({_A, _E, _V}), _task_creator),
    Rule("assignee", frozenset({_E, _V}), _assignee),
    Rule("project_creator", ALL_ACTIONS, _project_creator),
    Rule("project_member", ALL_ACTIONS, _project_member),
    Rule("personal_create", frozenset({_C}), _personal_create),
    Rule("personal_self_assign", frozenset({_A}), _personal_self_assign),
    Rule("organization_visibility", frozenset({_C, _V}), _organization_visibility),
    Rule("team_visibility", frozenset({_V}), _team_visibility),
    Rule("public_visibility", frozenset({_C, _V}), _public_visibility),
]

DEFAULT_CEILINGS: List[Rule] = [
    Rule("viewer_ceiling", frozenset({_A, _C}), _is_viewer),
]


# ============================================================
# RESOLVER
# ============================================================

class PermissionResolver:
    """Evaluates rules in order; ceilings override any earlier allow"""

    def __init__(self, rules: Optional[List[Rule]] = None, ceilings: Optional[List[Rule]] = None,
                 orgless_fallback: bool = ORG_ADMIN_ORGLESS_FALLBACK):
        self.rules = list(rules if rules is not None else DEFAULT_RULES)
        self.ceilings = list(ceilings if ceilings is not None else DEFAULT_CEILINGS)
        self.orgless_fallback = orgless_fallback

    def explain(self, actor: UserView, action: Action, project: Optional[ProjectView] = None,
                task: Optional[TaskView] = None) -> Decision:
        if action in (Action.EDIT, Action.VIEW) and task is None:
            return Decision(False, "no_task")
        ctx = Context(actor=actor, action=action, project=project, task=task,
                      orgless_fallback=self.orgless_fallback)
        decision = Decision(False, "default_deny")
        for rule in self.rules:
            if rule.applies(ctx):
                decision = Decision(True, rule.name)
                break
        if decision.allowed:
            for ceiling in self.ceilings:
                if ceiling.applies(ctx):
                    return Decision(False, ceiling.name)
        return decision

    def can_assign_tasks(self, actor: UserView, project: Optional[ProjectView] = None,
                         task: Optional[TaskView] = None) -> bool:
        return self.explain(actor, Action.ASSIGN, project, task).allowed

    def can_create_tasks(self, actor: UserView, project: Optional[ProjectView] = None) -> bool:
        return self.explain(actor, Action.CREATE, project).allowed

    def can_edit_task(self, actor: UserView, task: Optional[TaskView],
                      project: Optional[ProjectView] = None) -> bool:
        return self.explain(actor, Action.EDIT, project, task).allowed

    def can_view_task(self, actor: UserView, task: Optional[TaskView],
                      project: Optional[ProjectView] = None) -> bool:
        return self.explain(actor, Action.VIEW, project, task).allowed

    def can_manage_project(self, actor: UserView, project: ProjectView) -> bool:
        return self.explain(actor, Action.MANAGE, project).allowed

    def summary(self, actor: UserView, task: TaskView, project: Optional[ProjectView] = None) -> dict:
        return {
            "can_view": self.can_view_task(actor, task, project),
            "can_edit": self.can_edit_task(actor, task, project),
            "can_assign": self.can_assign_tasks(actor, project, task),
            "can_create": self.can_create_tasks(actor, project),
        }


resolver = PermissionResolver()

can_assign_tasks = resolver.can_assign_tasks
can_create_tasks = resolver.can_create_tasks
can_edit_task = resolver.can_edit_task
can_view_task = resolver.can_view_task
can_manage_project = resolver.can_manage_project
