"""
Identity Collaborator Module

The engine resolves an actor id to ``{roles, organization_id}`` through an
``IdentityProvider``. The surrounding application supplies the real provider
(backed by its user/role tables); ``InMemoryIdentityDirectory`` serves tests
and embedded use.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional


@dataclass(frozen=True)
class Actor:
    """Resolved identity of a user acting on a workflow"""
    actor_id: str
    organization_id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)
    is_active: bool = True

    def has_role(self, role: str) -> bool:
        """Check if actor holds a specific role"""
        return role in self.roles

    def has_any_role(self, roles: Iterable[str]) -> bool:
        """Check if actor holds any of the given roles"""
        return bool(self.roles & set(roles))


class IdentityProvider(ABC):
    """Opaque actor lookup consumed by the approver-rule check"""

    @abstractmethod
    def get_actor(self, actor_id: str) -> Optional[Actor]:
        """Resolve an actor, or None if unknown"""
        pass


class InMemoryIdentityDirectory(IdentityProvider):
    """Dictionary-backed identity provider"""

    def __init__(self):
        self._actors: Dict[str, Actor] = {}
        self._lock = threading.RLock()

    def register(self, actor_id: str, organization_id: str,
                 roles: Optional[Iterable[str]] = None) -> Actor:
        """Create or replace an actor"""
        actor = Actor(
            actor_id=actor_id,
            organization_id=organization_id,
            roles=frozenset(roles or ())
        )
        with self._lock:
            self._actors[actor_id] = actor
        return actor

    def assign_role(self, actor_id: str, role: str) -> bool:
        """Grant a role to an existing actor"""
        with self._lock:
            actor = self._actors.get(actor_id)
            if not actor:
                return False
            self._actors[actor_id] = Actor(
                actor_id=actor.actor_id,
                organization_id=actor.organization_id,
                roles=actor.roles | {role},
                is_active=actor.is_active
            )
            return True

    def deactivate(self, actor_id: str) -> bool:
        """Deactivate an actor; inactive actors fail every approver rule"""
        with self._lock:
            actor = self._actors.get(actor_id)
            if not actor:
                return False
            self._actors[actor_id] = Actor(
                actor_id=actor.actor_id,
                organization_id=actor.organization_id,
                roles=actor.roles,
                is_active=False
            )
            return True

    def get_actor(self, actor_id: str) -> Optional[Actor]:
        with self._lock:
            return self._actors.get(actor_id)

    def list_actors(self, organization_id: Optional[str] = None) -> List[Actor]:
        """List actors, optionally restricted to one organization"""
        with self._lock:
            actors = list(self._actors.values())
        if organization_id:
            actors = [a for a in actors if a.organization_id == organization_id]
        return sorted(actors, key=lambda a: a.actor_id)
