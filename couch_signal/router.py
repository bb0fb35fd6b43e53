"""
Signaling router.

Relays offer/answer/ICE messages between endpoints by id, answers roster
queries and keeps controllers informed when hosts come and go.
"""

import logging
from typing import Union

from . import protocol
from .protocol import Message, MessageType, ProtocolError, Role, SIGNALING_TYPES, now_ms
from .registry import EndpointNotFound, PresenceRegistry
from .transport import Transport

logger = logging.getLogger(__name__)


class SignalingRouter:
    """
    Routes decoded messages from one connection.

    A single router instance is shared by every connection handler; all of
    its state lives in the PresenceRegistry.
    """

    def __init__(self, registry: PresenceRegistry):
        self.registry = registry

    async def handle_frame(self, raw: Union[str, bytes], sender: Transport) -> None:
        """Decode one inbound frame and route it."""
        try:
            message = protocol.decode(raw)
        except ProtocolError as e:
            if e.message_type is None:
                logger.warning("Dropping malformed frame from %r: %s", sender, e.reason)
                return
            logger.warning("Invalid %s from %r: %s", e.message_type, sender, e.reason)
            await sender.send(protocol.error(f"Invalid {e.message_type} message: {e.reason}"))
            return

        await self.route(message, sender)

    async def route(self, message: Message, sender: Transport) -> None:
        """Handle one message according to its type."""
        kind = message.type

        if kind is MessageType.REGISTER:
            await self._handle_register(message, sender)
        elif kind is MessageType.LIST_HOSTS:
            await sender.send(protocol.hosts(await self.registry.list_by_role(Role.HOST)))
        elif kind in SIGNALING_TYPES:
            await self._relay(message, sender)
        elif kind is MessageType.PING:
            await sender.send(protocol.pong())
        else:
            logger.warning("Unknown message type from %r: %s", sender, message.type_name)

    async def _handle_register(self, message: Message, sender: Transport) -> None:
        if not message.id:
            await sender.send(protocol.error("Register requires an id"))
            return

        if sender.endpoint_id is not None and sender.endpoint_id != message.id:
            # Moving to a new id retires the old one, hosts included
            await self.handle_disconnect(sender)

        endpoint = await self.registry.register(message.id, message.role, sender)
        logger.info("Registered: %s as %s (%d connected)",
                    endpoint.id, endpoint.role.value, len(self.registry))

        await sender.send(protocol.registered(endpoint.id))

        if endpoint.role is Role.HOST:
            await self.broadcast_to_controllers(
                protocol.hosts(await self.registry.list_by_role(Role.HOST), updated=True)
            )

    async def _relay(self, message: Message, sender: Transport) -> None:
        if sender.endpoint_id is None:
            await sender.send(protocol.error(f"Register before sending {message.type_name}"))
            return

        target_id = message.target
        try:
            target = await self.registry.lookup(target_id) if target_id else None
        except EndpointNotFound:
            target = None

        if target is None or not target.online:
            logger.info("Cannot relay %s from %s: target %s unavailable",
                        message.type_name, sender.endpoint_id, target_id)
            await sender.send(protocol.error(f"Target {target_id} not found or not connected"))
            return

        forwarded = Message(
            type=message.type,
            from_=sender.endpoint_id,
            payload=message.payload,
            timestamp=now_ms(),
        )
        if await target.transport.send(forwarded):
            logger.info("Relayed %s from %s to %s", message.type_name, sender.endpoint_id, target_id)

    async def broadcast_to_controllers(self, message: Message) -> int:
        """
        Send a message to every open controller.

        Returns:
            Number of controllers the message was sent to
        """
        data = protocol.encode(message)
        sent = 0
        for endpoint in await self.registry.endpoints():
            if endpoint.is_host or not endpoint.online:
                continue
            if await endpoint.transport.send(data):
                sent += 1
        logger.debug("Broadcast %s to %d controller(s)", message.type_name, sent)
        return sent

    async def handle_disconnect(self, sender: Transport) -> None:
        """
        Clean up after a connection went away.

        Safe to call more than once for the same transport: only the call
        that actually removes the endpoint broadcasts.
        """
        endpoint_id = sender.endpoint_id
        if endpoint_id is None:
            return

        endpoint = await self.registry.unregister(endpoint_id, sender)
        if endpoint is None:
            return

        logger.info("Client disconnected: %s (%d remaining)", endpoint_id, len(self.registry))
        if endpoint.role is Role.HOST:
            await self.broadcast_to_controllers(protocol.host_disconnected(endpoint_id))
