"""
Presence registry: who is connected, as what, and on which transport.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from .protocol import HostInfo, Role, is_host_id
from .transport import Transport

logger = logging.getLogger(__name__)


class EndpointNotFound(KeyError):
    """Raised by PresenceRegistry.lookup for an unknown id."""

    def __init__(self, endpoint_id: str):
        self.endpoint_id = endpoint_id
        super().__init__(endpoint_id)


@dataclass
class Endpoint:
    """One registered signaling participant."""

    id: str
    role: Role
    transport: Transport

    @property
    def online(self) -> bool:
        return self.transport.open

    @property
    def is_host(self) -> bool:
        """Hosts are recognised by their id prefix, whatever role they declared."""
        return is_host_id(self.id)


class PresenceRegistry:
    """
    Id to Endpoint map shared by every connection handler.

    All operations go through a single asyncio lock, and iteration for
    broadcasts works on a snapshot, so a handler removing an endpoint never
    races a broadcast walking the map.
    """

    def __init__(self):
        self._endpoints: Dict[str, Endpoint] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._endpoints)

    def __contains__(self, endpoint_id: str) -> bool:
        return endpoint_id in self._endpoints

    async def register(self, endpoint_id: str, role: Optional[Role], transport: Transport) -> Endpoint:
        """
        Add an endpoint, replacing any entry with the same id.

        Args:
            endpoint_id: Caller supplied id
            role: Declared role; None means controller
            transport: Connection used to reach the endpoint

        Returns:
            The new Endpoint
        """
        endpoint = Endpoint(id=endpoint_id, role=role or Role.CONTROLLER, transport=transport)

        async with self._lock:
            # A connection registering again under a new id gives up the old one
            old_id = transport.endpoint_id
            if old_id is not None and old_id != endpoint_id:
                stale = self._endpoints.get(old_id)
                if stale is not None and stale.transport is transport:
                    del self._endpoints[old_id]

            previous = self._endpoints.get(endpoint_id)
            if previous is not None and previous.transport is not transport:
                logger.warning("Endpoint %s re-registered, replacing previous connection", endpoint_id)
            self._endpoints[endpoint_id] = endpoint

        transport.endpoint_id = endpoint_id
        transport.role = endpoint.role
        return endpoint

    async def unregister(self, endpoint_id: str, transport: Optional[Transport] = None) -> Optional[Endpoint]:
        """
        Remove an endpoint.

        When ``transport`` is given the entry is only removed if it is still
        bound to that transport. Removing an absent id is a no-op.

        Returns:
            The removed Endpoint, or None if nothing was removed
        """
        async with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            if endpoint is None:
                return None
            if transport is not None and endpoint.transport is not transport:
                return None
            del self._endpoints[endpoint_id]
            return endpoint

    async def lookup(self, endpoint_id: str) -> Endpoint:
        async with self._lock:
            try:
                return self._endpoints[endpoint_id]
            except KeyError:
                raise EndpointNotFound(endpoint_id) from None

    async def endpoints(self) -> List[Endpoint]:
        """Snapshot of every registered endpoint, in registration order."""
        async with self._lock:
            return list(self._endpoints.values())

    async def list_by_role(self, role: Role) -> List[HostInfo]:
        """
        Roster of endpoints classified as ``role``.

        Classification follows the id prefix convention: ``host-*`` ids are
        hosts, everything else is a controller.
        """
        want_hosts = role is Role.HOST
        return [
            HostInfo(id=endpoint.id, online=endpoint.online)
            for endpoint in await self.endpoints()
            if endpoint.is_host == want_hosts
        ]
