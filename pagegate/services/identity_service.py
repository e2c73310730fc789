from __future__ import annotations

import hashlib
import logging
import os

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, col, select

from pagegate.domain.models import Role, RoleCreate, User, UserCreate, UserRole
from pagegate.infra.cell_mutex import CellMutex, get_cell_mutex, hold, user_role_cell
from pagegate.infra.db import get_engine
from pagegate.infra.events import USER_ROLE_BOUND, USER_ROLE_UNBOUND, event_bus

logger = logging.getLogger(__name__)

USER_SEARCH_LIMIT = 20
USER_SEARCH_MIN_CHARS = 2
BOOTSTRAP_ROLE_NAME = "System Administrator"


class IdentityError(Exception):
    pass


class NotFoundError(IdentityError):
    pass


class ConflictError(IdentityError):
    pass


class AuthError(IdentityError):
    pass


class RoleLookupError(IdentityError):
    pass


class IdentityService:
    def __init__(self, *, cell_mutex: CellMutex | None = None) -> None:
        self._cell_mutex = cell_mutex or get_cell_mutex()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        salt = os.getenv("PASSWORD_SALT", "pagegate-dev-salt")
        return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()

    def create_user(self, payload: UserCreate) -> User:
        with self._session() as session:
            user = User(
                username=payload.username,
                display_name=payload.display_name,
                email=payload.email,
                password_hash=self._hash_password(payload.password),
                is_active=payload.is_active,
            )
            session.add(user)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("username already exists") from exc
            session.refresh(user)
            return user

    def bootstrap_admin(self, username: str, password: str) -> User:
        with self._session() as session:
            if session.exec(select(User.id)).first() is not None:
                raise ConflictError("already initialized")

            admin_role = Role(
                name=BOOTSTRAP_ROLE_NAME,
                description="bootstrap administrator role",
                is_privileged=True,
            )
            admin_user = User(
                username=username,
                display_name=username,
                password_hash=self._hash_password(password),
                is_active=True,
            )
            session.add(admin_role)
            session.add(admin_user)
            session.commit()
            session.refresh(admin_role)
            session.refresh(admin_user)

            session.add(UserRole(user_id=admin_user.id, role_id=admin_role.id))
            session.commit()
            return admin_user

    def list_users(self) -> list[User]:
        with self._session() as session:
            return list(session.exec(select(User).order_by(User.username)).all())

    def get_user(self, user_id: str) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    def search_users(self, term: str = "") -> list[User]:
        statement = select(User).where(col(User.is_active).is_(True))
        cleaned = term.strip()
        if len(cleaned) >= USER_SEARCH_MIN_CHARS:
            pattern = f"%{cleaned.lower()}%"
            statement = statement.where(
                or_(
                    func.lower(col(User.display_name)).like(pattern),
                    func.lower(col(User.email)).like(pattern),
                    func.lower(col(User.username)).like(pattern),
                )
            )
        statement = statement.order_by(User.display_name, User.username).limit(USER_SEARCH_LIMIT)
        with self._session() as session:
            return list(session.exec(statement).all())

    def create_role(self, payload: RoleCreate) -> Role:
        with self._session() as session:
            role = Role(
                name=payload.name,
                description=payload.description,
                is_privileged=payload.is_privileged,
            )
            session.add(role)
            session.commit()
            session.refresh(role)
            return role

    def get_role(self, role_id: str) -> Role:
        with self._session() as session:
            role = session.get(Role, role_id)
            if role is None:
                raise NotFoundError("role not found")
            return role

    def search_roles(self, term: str | None = None) -> list[Role]:
        statement = select(Role)
        cleaned = (term or "").strip()
        if cleaned:
            statement = statement.where(func.lower(col(Role.name)).like(f"%{cleaned.lower()}%"))
        try:
            with self._session() as session:
                return list(session.exec(statement.order_by(Role.name)).all())
        except SQLAlchemyError as exc:
            raise RoleLookupError(f"failed to list roles: {exc}") from exc

    def list_roles_for_principal(self, user_id: str) -> list[Role]:
        try:
            with self._session() as session:
                roles = list(
                    session.exec(
                        select(Role)
                        .join(UserRole, col(UserRole.role_id) == col(Role.id))
                        .where(UserRole.user_id == user_id)
                    ).all()
                )
        except SQLAlchemyError as exc:
            raise RoleLookupError(f"failed to load roles for {user_id}: {exc}") from exc
        return sorted(roles, key=lambda item: (item.name.casefold(), item.id))

    def set_user_role(self, user_id: str, role_id: str, assigned: bool, *, actor_id: str | None = None) -> bool:
        """Assign or remove one role for one user.

        Returns True when the stored state changed. A concurrent toggle of
        the same (user, role) cell raises ``CellBusyError``.
        """
        with hold(self._cell_mutex, user_role_cell(user_id, role_id)):
            with self._session() as session:
                if session.get(User, user_id) is None or session.get(Role, role_id) is None:
                    raise NotFoundError("user or role not found")
                link = session.get(UserRole, (user_id, role_id))
                if assigned:
                    if link is not None:
                        return False
                    session.add(UserRole(user_id=user_id, role_id=role_id))
                else:
                    if link is None:
                        return False
                    session.delete(link)
                try:
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    raise ConflictError("user role binding changed concurrently") from exc

        event_bus.publish_dict(
            USER_ROLE_BOUND if assigned else USER_ROLE_UNBOUND,
            {"user_id": user_id, "role_id": role_id},
            actor_id=actor_id,
        )
        logger.info("user %s role %s %s", user_id, role_id, "bound" if assigned else "unbound")
        return True

    def bind_user_role(self, user_id: str, role_id: str, *, actor_id: str | None = None) -> bool:
        return self.set_user_role(user_id, role_id, True, actor_id=actor_id)

    def unbind_user_role(self, user_id: str, role_id: str, *, actor_id: str | None = None) -> bool:
        return self.set_user_role(user_id, role_id, False, actor_id=actor_id)

    def dev_login(self, username: str, password: str) -> tuple[User, list[str]]:
        with self._session() as session:
            user = session.exec(select(User).where(User.username == username)).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if user.password_hash != self._hash_password(password):
                raise AuthError("invalid credentials")

        role_ids = [role.id for role in self.list_roles_for_principal(user.id)]
        return user, role_ids
