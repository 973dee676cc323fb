"""
Identity resolution.

The core does not talk to a naming service directly. It consumes an
IdentityResolver: ``resolve_owner(name)`` returns the controlling address
of a name (e.g. an ENS name) and ``lookup_profile(name)`` returns its
public profile. StaticIdentityResolver is a thread-safe registry used in
development and tests.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class IdentityProfile:
    name: str
    address: str
    avatar: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    social: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "avatar": self.avatar,
            "description": self.description,
            "url": self.url,
            "social": dict(self.social),
        }


class IdentityResolver(ABC):

    @abstractmethod
    def resolve_owner(self, name: str) -> Optional[str]:
        """Controlling address of ``name``, or None if unregistered."""

    @abstractmethod
    def lookup_profile(self, name: str) -> Optional[IdentityProfile]:
        """Public profile of ``name``, or None."""


class StaticIdentityResolver(IdentityResolver):

    def __init__(self):
        self._owners: Dict[str, str] = {}
        self._profiles: Dict[str, IdentityProfile] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(name: str) -> str:
        return name.strip().lower()

    def register(self, name: str, address: str, with_profile: bool = True, **profile_fields) -> None:
        key = self._key(name)
        address = address.strip().lower()
        with self._lock:
            self._owners[key] = address
            if with_profile:
                self._profiles[key] = IdentityProfile(name=key, address=address, **profile_fields)
            else:
                self._profiles.pop(key, None)

    def resolve_owner(self, name: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(self._key(name))

    def lookup_profile(self, name: str) -> Optional[IdentityProfile]:
        with self._lock:
            return self._profiles.get(self._key(name))
