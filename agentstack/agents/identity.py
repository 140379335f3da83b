"""Persistent agent identities with a lifecycle and an append-only audit trail."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from enum import Enum
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from .. import db as dbops
from ..db import Database
from ..errors import IdentityNotFound, InvalidTransition, RetiredIdentityError, ValidationError
from ..events import EventEmitter, EventType
from ..models import AgentIdentity, AgentIdentityAudit, utcnow

logger = logging.getLogger(__name__)


class IdentityStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    DORMANT = "dormant"
    RETIRED = "retired"


IDENTITY_STATUS_TRANSITIONS: dict[IdentityStatus, tuple[IdentityStatus, ...]] = {
    IdentityStatus.CREATED: (IdentityStatus.ACTIVE, IdentityStatus.RETIRED),
    IdentityStatus.ACTIVE: (IdentityStatus.DORMANT, IdentityStatus.RETIRED),
    IdentityStatus.DORMANT: (IdentityStatus.ACTIVE, IdentityStatus.RETIRED),
    IdentityStatus.RETIRED: (),
}

_TRANSITION_ACTIONS = {
    IdentityStatus.ACTIVE: "activated",
    IdentityStatus.DORMANT: "deactivated",
    IdentityStatus.RETIRED: "retired",
}

_UPDATABLE_FIELDS = {"display_name", "description", "metadata", "capabilities"}


def is_valid_transition(current: str, target: str) -> bool:
    return IdentityStatus(target) in IDENTITY_STATUS_TRANSITIONS[IdentityStatus(current)]


def identity_to_dict(identity: AgentIdentity) -> dict[str, Any]:
    return {
        "agent_id": identity.agent_id,
        "agent_type": identity.agent_type,
        "status": identity.status,
        "capabilities": list(identity.capabilities or []),
        "version": identity.version,
        "display_name": identity.display_name,
        "description": identity.description,
        "metadata": identity.metadata_ or {},
        "created_by": identity.created_by,
        "created_at": identity.created_at.isoformat(),
        "last_active_at": identity.last_active_at.isoformat(),
        "updated_at": identity.updated_at.isoformat(),
        "retired_at": identity.retired_at.isoformat() if identity.retired_at else None,
        "retirement_reason": identity.retirement_reason,
    }


class IdentityService:
    def __init__(self, db: Database, events: EventEmitter | None = None) -> None:
        self.db = db
        self.events = events

    def _publish(self, event_type: EventType, payload: dict[str, Any]) -> None:
        if self.events:
            self.events.publish(event_type, payload)

    async def _require(self, session: AsyncSession, agent_id: str) -> AgentIdentity:
        identity = await dbops.get_identity(session, agent_id)
        if identity is None:
            raise IdentityNotFound(agent_id)
        return identity

    @staticmethod
    def _touch_version(identity: AgentIdentity) -> None:
        identity.version = (identity.version or 0) + 1
        identity.updated_at = utcnow()

    async def create_identity(
        self,
        agent_type: str,
        *,
        display_name: str | None = None,
        description: str | None = None,
        capabilities: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        created_by: str | None = None,
        auto_activate: bool = False,
    ) -> AgentIdentity:
        initial = IdentityStatus.ACTIVE if auto_activate else IdentityStatus.CREATED
        now = utcnow()
        async with self.db.session() as session:
            identity = AgentIdentity(
                agent_type=agent_type,
                status=initial.value,
                capabilities=capabilities or [],
                display_name=display_name,
                description=description,
                metadata_=metadata or {},
                created_by=created_by,
                version=1,
                created_at=now,
                updated_at=now,
                last_active_at=now,
            )
            session.add(identity)
            await session.flush()
            await dbops.add_identity_audit(
                session,
                agent_id=identity.agent_id,
                action="created",
                new_status=initial.value,
                actor_id=created_by,
                metadata_={"display_name": display_name, "agent_type": agent_type},
                timestamp=now,
            )
            if auto_activate:
                await dbops.add_identity_audit(
                    session,
                    agent_id=identity.agent_id,
                    action="activated",
                    previous_status=IdentityStatus.CREATED.value,
                    new_status=IdentityStatus.ACTIVE.value,
                    reason="Auto-activated on creation",
                    actor_id=created_by,
                    timestamp=now,
                )
        logger.info("Created identity %s (%s, %s)", identity.agent_id, agent_type, display_name)
        self._publish(EventType.IDENTITY_CREATED, identity_to_dict(identity))
        return identity

    async def get_identity(self, agent_id: str) -> AgentIdentity | None:
        async with self.db.session() as session:
            return await dbops.get_identity(session, agent_id)

    async def get_identity_by_name(self, display_name: str) -> AgentIdentity | None:
        async with self.db.session() as session:
            return await dbops.get_identity_by_name(session, display_name)

    async def list_identities(
        self,
        *,
        status: str | None = None,
        agent_type: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Sequence[AgentIdentity]:
        async with self.db.session() as session:
            return await dbops.list_identities(
                session, status=status, agent_type=agent_type, limit=limit, offset=offset
            )

    async def update_identity(
        self, agent_id: str, updates: dict[str, Any], actor_id: str | None = None
    ) -> AgentIdentity:
        """Change non-lifecycle fields: display_name, description, metadata, capabilities."""
        unknown = set(updates) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}", fields=sorted(unknown))

        async with self.db.session() as session:
            identity = await self._require(session, agent_id)
            if identity.status == IdentityStatus.RETIRED.value:
                raise RetiredIdentityError("Cannot update a retired identity", agent_id=agent_id)
            for key, value in updates.items():
                setattr(identity, "metadata_" if key == "metadata" else key, value)
            self._touch_version(identity)
            await dbops.add_identity_audit(
                session,
                agent_id=agent_id,
                action="updated",
                actor_id=actor_id,
                metadata_={"updates": sorted(updates)},
                timestamp=identity.updated_at,
            )
        logger.debug("Updated identity %s: %s", agent_id, sorted(updates))
        self._publish(EventType.IDENTITY_UPDATED, identity_to_dict(identity))
        return identity

    async def activate_identity(self, agent_id: str, actor_id: str | None = None) -> AgentIdentity:
        return await self._transition(agent_id, IdentityStatus.ACTIVE, actor_id=actor_id)

    async def deactivate_identity(
        self, agent_id: str, reason: str | None = None, actor_id: str | None = None
    ) -> AgentIdentity:
        return await self._transition(agent_id, IdentityStatus.DORMANT, reason=reason, actor_id=actor_id)

    async def retire_identity(
        self, agent_id: str, reason: str | None = None, actor_id: str | None = None
    ) -> AgentIdentity:
        async with self.db.session() as session:
            identity = await self._require(session, agent_id)
            if identity.status == IdentityStatus.RETIRED.value:
                raise RetiredIdentityError("Identity is already retired", agent_id=agent_id)
            previous = identity.status
            now = utcnow()
            identity.status = IdentityStatus.RETIRED.value
            identity.retired_at = now
            identity.retirement_reason = reason
            self._touch_version(identity)
            await dbops.add_identity_audit(
                session,
                agent_id=agent_id,
                action="retired",
                previous_status=previous,
                new_status=IdentityStatus.RETIRED.value,
                reason=reason,
                actor_id=actor_id,
                timestamp=now,
            )
        logger.info("Retired identity %s: %s", agent_id, reason)
        self._publish(EventType.IDENTITY_RETIRED, identity_to_dict(identity))
        return identity

    async def record_spawn(self, identity_id: str, spawn_id: str, actor_id: str | None = None) -> None:
        async with self.db.session() as session:
            identity = await self._require(session, identity_id)
            if identity.status == IdentityStatus.RETIRED.value:
                raise RetiredIdentityError("Cannot spawn a retired identity", agent_id=identity_id)
            now = utcnow()
            identity.last_active_at = now
            await dbops.add_identity_audit(
                session,
                agent_id=identity_id,
                action="spawned",
                actor_id=actor_id,
                metadata_={"spawn_id": spawn_id},
                timestamp=now,
            )
        logger.debug("Recorded spawn %s for identity %s", spawn_id, identity_id)

    async def get_audit_trail(self, agent_id: str, limit: int = 100) -> Sequence[AgentIdentityAudit]:
        async with self.db.session() as session:
            return await dbops.get_identity_audit(session, agent_id, limit)

    async def touch_identity(self, agent_id: str) -> bool:
        async with self.db.session() as session:
            identity = await dbops.get_identity(session, agent_id)
            if identity is None or identity.status == IdentityStatus.RETIRED.value:
                return False
            identity.last_active_at = utcnow()
        return True

    def is_valid_transition(self, current: str, target: str) -> bool:
        return is_valid_transition(current, target)

    async def _transition(
        self,
        agent_id: str,
        target: IdentityStatus,
        *,
        reason: str | None = None,
        actor_id: str | None = None,
    ) -> AgentIdentity:
        async with self.db.session() as session:
            identity = await self._require(session, agent_id)
            previous = IdentityStatus(identity.status)
            allowed = IDENTITY_STATUS_TRANSITIONS[previous]
            if target not in allowed:
                raise InvalidTransition(previous.value, target.value, [s.value for s in allowed])
            now = utcnow()
            identity.status = target.value
            if target == IdentityStatus.ACTIVE:
                identity.last_active_at = now
            self._touch_version(identity)
            await dbops.add_identity_audit(
                session,
                agent_id=agent_id,
                action=_TRANSITION_ACTIONS[target],
                previous_status=previous.value,
                new_status=target.value,
                reason=reason,
                actor_id=actor_id,
                timestamp=now,
            )
        logger.info("Identity %s: %s -> %s", agent_id, previous.value, target.value)
        self._publish(
            EventType.IDENTITY_STATUS_CHANGED,
            {"agent_id": agent_id, "from": previous.value, "to": target.value, "reason": reason},
        )
        return identity
