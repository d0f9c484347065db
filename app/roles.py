from __future__ import annotations

import logging
from typing import Callable, Dict, FrozenSet, Iterable, List

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from database import UserRole
from errors import FetchError
from settings import MANAGER_ROLES


logger = logging.getLogger(__name__)


def normalize_role(role: str) -> str:
    return (role or "").strip().lower()


def is_manager_role(role: str, manager_roles: Iterable[str] = MANAGER_ROLES) -> bool:
    label = normalize_role(role)
    if not label:
        return False
    return label in {normalize_role(tag) for tag in manager_roles}


def has_manager_role(roles: Iterable[str], manager_roles: Iterable[str] = MANAGER_ROLES) -> bool:
    tags = frozenset(manager_roles)
    return any(is_manager_role(role, tags) for role in roles)


class RoleResolver:
    """Answers "is this actor manager-class?" from the user_roles table.

    Lookups are memoized per resolver; create a fresh resolver when role
    assignments may have changed.
    """

    def __init__(self, session_factory: Callable, manager_roles: FrozenSet[str] = MANAGER_ROLES) -> None:
        self.session_factory = session_factory
        self.manager_roles = frozenset(manager_roles)
        self._cache: Dict[str, bool] = {}

    def roles_for(self, actor_id: str) -> List[str]:
        try:
            with self.session_factory() as session:
                stmt = select(UserRole.role).where(UserRole.user_id == actor_id)
                return [role for role in session.scalars(stmt)]
        except SQLAlchemyError as exc:
            raise FetchError(f"Could not load roles for {actor_id}") from exc

    def is_manager(self, actor_id: str) -> bool:
        if not actor_id:
            return False
        if actor_id not in self._cache:
            self._cache[actor_id] = has_manager_role(self.roles_for(actor_id), self.manager_roles)
            logger.debug("Resolved actor %s manager=%s", actor_id, self._cache[actor_id])
        return self._cache[actor_id]
