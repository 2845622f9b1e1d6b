"""
Key directory: the coordinating server's view of resources.

The directory stores membership, resource key versions, wrapped keys and
key requests. It never sees a plaintext resource key. Its uniqueness rules
are the only concurrency control the key distribution protocol relies on:

- one current WrappedKey per (resource, recipient, key version)
- one KeyRequest per (resource, requester)
- one invite wrap per invite code hash
- resource versions advance by compare-and-set
- key request status changes are guarded transitions
"""

import asyncio
import dataclasses
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from ..models import KeyRequest, KeyRequestStatus, WrappedKey


class KeyDirectory(ABC):
    """Interface for the server-held key directory."""

    # Membership

    @abstractmethod
    async def authorize(
        self,
        resource_id: str,
        public_id: str,
        display_name: Optional[str] = None,
    ) -> None:
        """Grant a principal access to a resource."""
        ...

    @abstractmethod
    async def revoke(self, resource_id: str, public_id: str) -> None:
        """Remove a principal's access to a resource."""
        ...

    @abstractmethod
    async def authorized(self, resource_id: str) -> list[str]:
        """Public ids currently authorized for a resource."""
        ...

    @abstractmethod
    async def display_name(self, public_id: str) -> Optional[str]:
        """A principal's display name, if one was recorded."""
        ...

    async def is_authorized(self, resource_id: str, public_id: str) -> bool:
        return public_id in await self.authorized(resource_id)

    # Resources

    @abstractmethod
    async def current_version(self, resource_id: str) -> int:
        """Current key version of a resource (0 when no key exists yet)."""
        ...

    @abstractmethod
    async def advance_version(self, resource_id: str, expected: int) -> bool:
        """Move the version from expected to expected + 1. False if it moved already."""
        ...

    @abstractmethod
    async def mark_encrypted(self, resource_id: str) -> None:
        """Flag a resource as encrypted."""
        ...

    @abstractmethod
    async def encrypted_resources(self) -> list[str]:
        """All resources flagged as encrypted."""
        ...

    # Wrapped keys

    @abstractmethod
    async def put_wrapped_key(self, wrapped: WrappedKey, replace: bool = False) -> bool:
        """
        Store a wrapped key.

        Without replace this is insert-if-absent on (resource, recipient,
        key version) and returns False when a wrap is already stored. With
        replace the stored wrap is superseded.
        """
        ...

    @abstractmethod
    async def get_wrapped_key(
        self,
        resource_id: str,
        recipient_public_id: str,
        version: Optional[int] = None,
    ) -> Optional[WrappedKey]:
        """A recipient's wrap at a version, or at its highest version when None."""
        ...

    @abstractmethod
    async def recipients_with_key(self, resource_id: str, version: int) -> set[str]:
        """Recipients holding a wrap for a resource version."""
        ...

    @abstractmethod
    async def wrapped_keys(
        self,
        resource_id: str,
        version: Optional[int] = None,
    ) -> list[WrappedKey]:
        """Every stored wrap for a resource, optionally for one version."""
        ...

    # Invite keys

    @abstractmethod
    async def put_invite_key(self, code_hash: str, wrapped: WrappedKey) -> bool:
        """
        Store a wrap addressed to an invite code's derived identity.

        Insert-if-absent on code_hash; returns False when one is stored.
        """
        ...

    @abstractmethod
    async def get_invite_key(self, code_hash: str) -> Optional[WrappedKey]:
        ...

    @abstractmethod
    async def delete_invite_key(self, code_hash: str) -> bool:
        """Drop an invite wrap. False if there was none."""
        ...

    # Key requests

    @abstractmethod
    async def add_key_request(
        self,
        request: KeyRequest,
        reopen: bool = False,
    ) -> tuple[KeyRequest, bool]:
        """
        Insert a request unless one exists for (resource, requester).

        Returns the stored request and whether it was created. A pending
        request is returned unchanged. A fulfilled or rejected request is
        returned unchanged unless reopen is set, in which case it goes back
        to pending.
        """
        ...

    @abstractmethod
    async def transition_key_request(
        self,
        request_id: str,
        from_status: KeyRequestStatus,
        to_status: KeyRequestStatus,
        by: Optional[str] = None,
    ) -> bool:
        """Change status only if it currently equals from_status."""
        ...

    @abstractmethod
    async def get_key_request(self, request_id: str) -> Optional[KeyRequest]:
        ...

    @abstractmethod
    async def list_key_requests(
        self,
        resource_id: Optional[str] = None,
        status: Optional[KeyRequestStatus] = None,
        requester_public_id: Optional[str] = None,
    ) -> list[KeyRequest]:
        """Requests matching every given criterion, oldest first."""
        ...


class InMemoryKeyDirectory(KeyDirectory):
    """In-memory KeyDirectory guarded by an asyncio.Lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._members: dict[str, dict[str, None]] = {}
        self._display_names: dict[str, str] = {}
        self._versions: dict[str, int] = {}
        self._encrypted: dict[str, None] = {}
        self._wrapped: dict[tuple[str, str, int], WrappedKey] = {}
        self._invites: dict[str, WrappedKey] = {}
        self._requests: dict[str, KeyRequest] = {}
        self._write_count = 0

    @property
    def write_count(self) -> int:
        """Wrapped keys written so far, for inspecting distribution passes."""
        return self._write_count

    async def authorize(
        self,
        resource_id: str,
        public_id: str,
        display_name: Optional[str] = None,
    ) -> None:
        async with self._lock:
            self._members.setdefault(resource_id, {})[public_id] = None
            if display_name is not None:
                self._display_names[public_id] = display_name

    async def revoke(self, resource_id: str, public_id: str) -> None:
        async with self._lock:
            self._members.get(resource_id, {}).pop(public_id, None)

    async def authorized(self, resource_id: str) -> list[str]:
        async with self._lock:
            return list(self._members.get(resource_id, {}))

    async def display_name(self, public_id: str) -> Optional[str]:
        return self._display_names.get(public_id)

    async def current_version(self, resource_id: str) -> int:
        return self._versions.get(resource_id, 0)

    async def advance_version(self, resource_id: str, expected: int) -> bool:
        async with self._lock:
            if self._versions.get(resource_id, 0) != expected:
                return False
            self._versions[resource_id] = expected + 1
            return True

    async def mark_encrypted(self, resource_id: str) -> None:
        async with self._lock:
            self._encrypted[resource_id] = None

    async def encrypted_resources(self) -> list[str]:
        return list(self._encrypted)

    async def put_wrapped_key(self, wrapped: WrappedKey, replace: bool = False) -> bool:
        key = (wrapped.resource_id, wrapped.recipient_public_id, wrapped.key_version)
        async with self._lock:
            if key in self._wrapped and not replace:
                return False
            self._wrapped[key] = wrapped
            self._write_count += 1
            return True

    async def get_wrapped_key(
        self,
        resource_id: str,
        recipient_public_id: str,
        version: Optional[int] = None,
    ) -> Optional[WrappedKey]:
        async with self._lock:
            if version is not None:
                return self._wrapped.get((resource_id, recipient_public_id, version))
            candidates = [
                wk for (rid, recipient, _), wk in self._wrapped.items()
                if rid == resource_id and recipient == recipient_public_id
            ]
            return max(candidates, key=lambda wk: wk.key_version, default=None)

    async def recipients_with_key(self, resource_id: str, version: int) -> set[str]:
        async with self._lock:
            return {
                recipient for (rid, recipient, v) in self._wrapped
                if rid == resource_id and v == version
            }

    async def wrapped_keys(
        self,
        resource_id: str,
        version: Optional[int] = None,
    ) -> list[WrappedKey]:
        async with self._lock:
            return [
                wk for (rid, _, v), wk in self._wrapped.items()
                if rid == resource_id and (version is None or v == version)
            ]

    async def put_invite_key(self, code_hash: str, wrapped: WrappedKey) -> bool:
        async with self._lock:
            if code_hash in self._invites:
                return False
            self._invites[code_hash] = wrapped
            return True

    async def get_invite_key(self, code_hash: str) -> Optional[WrappedKey]:
        async with self._lock:
            return self._invites.get(code_hash)

    async def delete_invite_key(self, code_hash: str) -> bool:
        async with self._lock:
            return self._invites.pop(code_hash, None) is not None

    async def add_key_request(
        self,
        request: KeyRequest,
        reopen: bool = False,
    ) -> tuple[KeyRequest, bool]:
        async with self._lock:
            for existing in self._requests.values():
                if (
                    existing.resource_id == request.resource_id
                    and existing.requester_public_id == request.requester_public_id
                ):
                    if existing.is_pending or not reopen:
                        return dataclasses.replace(existing), False
                    existing.status = KeyRequestStatus.PENDING
                    existing.created_at = datetime.now()
                    existing.fulfilled_at = None
                    existing.fulfilled_by = None
                    existing.target_public_id = request.target_public_id
                    return dataclasses.replace(existing), True

            self._requests[request.id] = dataclasses.replace(request)
            return dataclasses.replace(request), True

    async def transition_key_request(
        self,
        request_id: str,
        from_status: KeyRequestStatus,
        to_status: KeyRequestStatus,
        by: Optional[str] = None,
    ) -> bool:
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.status != from_status:
                return False
            request.status = to_status
            if to_status == KeyRequestStatus.FULFILLED:
                request.fulfilled_at = datetime.now()
                request.fulfilled_by = by
            return True

    async def get_key_request(self, request_id: str) -> Optional[KeyRequest]:
        request = self._requests.get(request_id)
        return dataclasses.replace(request) if request is not None else None

    async def list_key_requests(
        self,
        resource_id: Optional[str] = None,
        status: Optional[KeyRequestStatus] = None,
        requester_public_id: Optional[str] = None,
    ) -> list[KeyRequest]:
        async with self._lock:
            matches = [
                dataclasses.replace(r) for r in self._requests.values()
                if (resource_id is None or r.resource_id == resource_id)
                and (status is None or r.status == status)
                and (requester_public_id is None or r.requester_public_id == requester_public_id)
            ]
        return sorted(matches, key=lambda r: r.created_at)
