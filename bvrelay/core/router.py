from __future__ import annotations

import enum
import logging
from typing import Union

from .connection import Connection
from .proto import (
    REGISTER,
    MalformedEnvelope,
    build_registered,
    new_call_id,
    normalize_identity,
    parse_frame,
)
from .registry import Registry

log = logging.getLogger("bvrelay.router")


class RouteOutcome(enum.Enum):
    REGISTERED = "registered"
    DELIVERED = "delivered"
    INFORMATIONAL = "informational"
    RECIPIENT_UNAVAILABLE = "recipient_unavailable"
    UNKNOWN_KIND = "unknown_kind"
    MALFORMED_MESSAGE = "malformed_message"

    @property
    def ok(self) -> bool:
        return self in (RouteOutcome.REGISTERED, RouteOutcome.DELIVERED, RouteOutcome.INFORMATIONAL)


class Router:
    """Classifies inbound frames and forwards them by addressee.

    Delivery is best effort: a frame for an absent peer is logged and dropped,
    the sender hears nothing. Call-signaling frames without a ``callId`` get a
    fresh one before forwarding; the relay keeps no record of it afterwards.
    """

    def __init__(self, registry: Registry, *, ack_registration: bool = True) -> None:
        self.registry = registry
        self.ack_registration = ack_registration

    def route(self, source: Connection, raw: Union[str, bytes]) -> RouteOutcome:
        try:
            env, frame = parse_frame(raw)
        except MalformedEnvelope as exc:
            log.warning("Malformed frame from %s (%s): %s", source.remote, source.identity, exc)
            return RouteOutcome.MALFORMED_MESSAGE

        if env.kind == REGISTER:
            return self._register(source, env.claimed_identity)

        sender = env.from_ or source.identity
        if not env.is_known:
            log.info("Unknown kind=%s from=%s to=%s, dropped", env.kind, sender, env.to)
            return RouteOutcome.UNKNOWN_KIND

        if env.to is None:
            log.debug("Informational kind=%s from=%s", env.kind, sender)
            return RouteOutcome.INFORMATIONAL

        dest = normalize_identity(env.to)
        target = self.registry.lookup(dest)
        if target is None:
            log.info("Recipient unavailable kind=%s from=%s to=%s", env.kind, sender, dest)
            return RouteOutcome.RECIPIENT_UNAVAILABLE

        if env.is_signaling and env.call_id in (None, ""):
            frame["callId"] = new_call_id()
            log.debug("Assigned callId=%s kind=%s from=%s to=%s", frame["callId"], env.kind, sender, dest)

        if not target.send(frame):
            log.info("Send failed kind=%s from=%s to=%s", env.kind, sender, dest)
            return RouteOutcome.RECIPIENT_UNAVAILABLE

        log.info("Relayed kind=%s from=%s to=%s", env.kind, sender, dest)
        return RouteOutcome.DELIVERED

    def close(self, connection: Connection) -> None:
        connection.close()
        removed = self.registry.unbind(connection)
        if removed:
            log.info("Connection %s closed, unbound %s", connection.remote, ", ".join(removed))
        else:
            log.debug("Anonymous connection %s closed", connection.remote)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _register(self, source: Connection, claimed: object) -> RouteOutcome:
        if not isinstance(claimed, str) or not claimed:
            log.warning("Register from %s without id/address", source.remote)
            return RouteOutcome.MALFORMED_MESSAGE

        identity = normalize_identity(claimed)
        if source.identity is not None and source.identity != identity:
            self.registry.release(source.identity, source)
            log.info("Connection %s re-registering %s -> %s", source.remote, source.identity, identity)

        self.registry.bind(identity, source)
        source.identify(identity)
        log.info("Registered %s on %s", identity, source.remote)

        if self.ack_registration:
            source.send(build_registered(identity))
        return RouteOutcome.REGISTERED


__all__ = ["Router", "RouteOutcome"]
