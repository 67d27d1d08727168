import logging
from dataclasses import dataclass
from typing import Any, Dict, NamedTuple, Optional

from pika.exceptions import ChannelClosedByBroker
from pika.exchange_type import ExchangeType

from amqp_exchange.errors import InvalidDeclarationError, MissingOverrideError

logger = logging.getLogger(__name__)

BINDING_TARGETS = ("queue", "exchange")


@dataclass(frozen=True)
class Binding:
    """
    A queue or exchange that wants to join the declaring exchange.

    Args:
        routing_key: Routing key pattern used for the binding
        source: Name of the queue or exchange which wants to join
        args: Optional binding arguments
        to: Kind of ``source``, either "queue" or "exchange"
    """

    routing_key: str
    source: str
    args: Optional[Dict[str, Any]] = None
    to: str = "queue"

    def __post_init__(self):
        if self.to not in BINDING_TARGETS:
            raise InvalidDeclarationError(
                f"Binding target must be one of {BINDING_TARGETS}, got {self.to!r}"
            )

    @classmethod
    def from_dict(cls, data):
        """Build a binding from either camelCase or snake_case keys"""
        return cls(
            routing_key=data.get("routing_key", data.get("routingKey", "")),
            source=data["source"],
            args=data.get("args"),
            to=data.get("to", "queue"),
        )


class ReturnedMessage(NamedTuple):
    """A mandatory message the broker could not route, as passed to on_return"""

    method: Any
    properties: Any
    body: bytes


class _RequiredDeclaration:
    """Class-level attribute that subclasses must shadow"""

    def __init__(self, hint):
        self.hint = hint
        self.attribute = None

    def __set_name__(self, owner, name):
        self.attribute = name

    def __get__(self, instance, owner):
        raise MissingOverrideError(owner.__name__, self.attribute, self.hint)


class Exchange:
    """
    Base class for declaring an AMQP exchange on top of a pika channel.

    Subclasses declare ``url`` and ``type`` (and optionally ``socket_options``,
    ``options`` and ``bindings``) as class attributes, and override the
    ``on_*`` hooks to react to channel events. Every operation is forwarded
    to the channel and returns whatever the channel returns.
    """

    DIRECT = ExchangeType.direct
    FANOUT = ExchangeType.fanout
    TOPIC = ExchangeType.topic

    url = _RequiredDeclaration("a string with the url of the AMQP server")
    type = _RequiredDeclaration("a valid exchange type (direct, fanout, topic)")

    # Overrides applied to pika.URLParameters, e.g. {"heartbeat": 600}
    socket_options = None
    # Keyword arguments for channel.exchange_declare, e.g. {"durable": True}
    options = None

    def __init__(self, channel, name: Optional[str] = None):
        self._channel = channel
        self._name = name if name is not None else type(self).__name__
        self._subscribe()

    def _subscribe(self):
        """Register one observer per channel event kind"""
        self._channel.add_on_close_callback(self._handle_close)
        self._channel.add_on_return_callback(self._handle_return)
        self._channel.connection.add_on_connection_unblocked_callback(
            self._handle_drain
        )

    @property
    def bindings(self):
        """Ordered sequence of Binding declarations, empty by default"""
        return []

    @property
    def channel(self):
        return self._channel

    @property
    def name(self) -> str:
        return self._name

    def close_channel(self, callback=None):
        """
        Close the channel.

        Args:
            callback: Optional callable(channel, reason) invoked when the
                channel closes. A pika channel closes only once, so each
                callback fires at most once; callbacks passed on repeated
                calls all fire on that same close.
        """
        if callback is not None:
            self._channel.add_on_close_callback(callback)
        return self._channel.close()

    def destroy(self, **options):
        """
        Delete the exchange from the broker.

        The only meaningful option is ``if_unused``: when true and the
        exchange has bindings the broker refuses and closes the channel.
        ``callback`` is forwarded when given.
        """
        return self._channel.exchange_delete(self._name, **options)

    def unbind_from(self, exchange_name, pattern, args=None, callback=None):
        """Remove the binding that routes ``exchange_name`` into this exchange"""
        kwargs = {
            "destination": self._name,
            "source": exchange_name,
            "routing_key": pattern,
            "arguments": args,
        }
        if callback is not None:
            kwargs["callback"] = callback
        return self._channel.exchange_unbind(**kwargs)

    def publish(self, content, routing_key, **options):
        """
        Publish a message through this exchange.

        Args:
            content: Message body as bytes
            routing_key: Routing key used by the exchange
            options: ``properties`` and ``mandatory``, as basic_publish takes them
        """
        return self._channel.basic_publish(self._name, routing_key, content, **options)

    def on_close(self):
        """Invoked when the channel has been closed"""

    def on_error(self, err):
        """Invoked when the broker closes the channel because of an error"""

    def on_return(self, message: ReturnedMessage):
        """Invoked when a published mandatory message cannot be routed"""

    def on_drain(self):
        """Invoked when the broker lets publishers write again"""

    @classmethod
    async def before_create_channel(cls, connection):
        """
        Invoked before the channel for this exchange is created.

        WARNING: ``connection`` is shared by every channel opened on it, so
        any change made here affects all of them.
        """

    def _handle_close(self, channel, reason):
        if isinstance(reason, ChannelClosedByBroker):
            logger.debug(
                "action: channel_error | result: fail | exchange: %s | error: %s",
                self._name,
                reason,
            )
            self.on_error(reason)
        logger.debug("action: channel_close | result: success | exchange: %s", self._name)
        self.on_close()

    def _handle_return(self, channel, method, properties, body):
        logger.debug(
            "action: message_returned | result: success | exchange: %s | routing_key: %s",
            self._name,
            getattr(method, "routing_key", None),
        )
        self.on_return(ReturnedMessage(method, properties, body))

    def _handle_drain(self, connection, method_frame):
        # Registered on the shared connection, which outlives this channel
        if self._channel.is_closed:
            return
        self.on_drain()
