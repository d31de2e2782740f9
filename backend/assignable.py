# assignable.py — Which users an actor may assign a task to
from typing import Iterable, List, Optional

from models import UserRole
from permissions import PermissionResolver, resolver as default_resolver
from scopes import ProjectView, TaskView, UserView


def _same_org(pool: List[UserView], organization_id: str) -> List[UserView]:
    return [u for u in pool if u.organization_id == organization_id]


def get_assignable_users(
    actor: UserView,
    project: Optional[ProjectView],
    candidate_pool: Iterable[UserView],
    task: Optional[TaskView] = None,
    resolver: PermissionResolver = default_resolver,
) -> List[UserView]:
    """Narrow candidate_pool to the users actor may assign within project.

    Returns an empty list when the actor cannot assign at all. Inactive users
    and viewers are always dropped, whatever the narrowing step kept.
    """
    if not resolver.can_assign_tasks(actor, project, task):
        return []

    pool = list(candidate_pool)

    if actor.role == UserRole.SUPER_ADMIN:
        narrowed = pool
    elif actor.role in (UserRole.ORG_ADMIN, UserRole.TEAM_LEAD) and actor.organization_id:
        narrowed = _same_org(pool, actor.organization_id)
    elif project is not None:
        if project.organization_id:
            narrowed = [
                u for u in pool
                if u.organization_id == project.organization_id or u.id in project.members
            ]
        else:
            narrowed = [u for u in pool if u.id in project.members or u.id == project.created_by]
    elif actor.organization_id:
        narrowed = _same_org(pool, actor.organization_id)
    else:
        # Individual users can only assign to themselves
        narrowed = [actor]

    return [u for u in narrowed if u.is_active and u.role != UserRole.VIEWER]


def validate_assignees(
    actor: UserView,
    project: Optional[ProjectView],
    user_ids: Iterable[str],
    candidate_pool: Iterable[UserView],
    task: Optional[TaskView] = None,
    resolver: PermissionResolver = default_resolver,
) -> dict:
    """Check requested assignee ids against the assignable set.

    Returns {"valid", "valid_users", "invalid_users", "not_assignable"}.
    """
    requested = list(dict.fromkeys(user_ids))
    pool = list(candidate_pool)
    known = {u.id for u in pool}
    assignable = {u.id: u for u in get_assignable_users(actor, project, pool, task, resolver)}

    invalid = [uid for uid in requested if uid not in known and uid != actor.id]
    not_assignable = [uid for uid in requested if uid not in assignable and uid not in invalid]
    return {
        "valid": not invalid and not not_assignable,
        "valid_users": [assignable[uid] for uid in requested if uid in assignable],
        "invalid_users": invalid,
        "not_assignable": not_assignable,
    }
