# pylint: disable=broad-exception-caught
import asyncio
import logging
from collections.abc import Mapping

import pika
from pika.adapters.asyncio_connection import AsyncioConnection
from pika.exchange_type import ExchangeType

from amqp_exchange.errors import InvalidDeclarationError
from amqp_exchange.exchange import Binding

SUPPORTED_TYPES = (ExchangeType.direct, ExchangeType.fanout, ExchangeType.topic)


def _resolve(future, value=None):
    if not future.done():
        future.set_result(value)


def _reject(future, error):
    if not future.done():
        future.set_exception(error)


class ExchangeMiddleware:
    """
    Brings an Exchange subclass to life on a pika AsyncioConnection.

    Follows the standard pattern:
    1. Open the connection (unless one is supplied)
    2. Run the class's before_create_channel hook
    3. Open the channel
    4. Declare the exchange
    5. Build the Exchange on top of the channel

    pika reports completion through callbacks; every awaitable method here
    turns that callback into a future and fails it with pika's own close
    reason if the channel or connection goes away first.
    """

    def __init__(self, exchange_cls, name=None, connection=None):
        self.exchange_cls = exchange_cls
        self.name = name if name is not None else exchange_cls.__name__
        self.connection = connection
        self.channel = None
        self.exchange = None
        self.logger = logging.getLogger(__name__)
        self.is_started = False
        # A borrowed connection is shared with its owner and never closed here
        self._owns_connection = connection is None
        self._pending = set()
        self._channel_closed = None
        self._connection_closed = None

    async def start(self):
        """Connect, declare the exchange and return the Exchange instance"""
        self.logger.info(
            "action: exchange_middleware_start | result: in_progress | exchange: %s",
            self.name,
        )
        try:
            exchange_type = self._resolve_type()

            # 1. Open connection
            if self.connection is None:
                self.connection = await self._connect()

            # 2. Let the exchange class prepare the shared connection
            await self.exchange_cls.before_create_channel(self.connection)

            # 3. Open channel
            self.channel = await self._open_channel()

            # 4. Declare exchange
            await self.call(
                self.channel.exchange_declare,
                self.name,
                exchange_type=exchange_type.value,
                **(self.exchange_cls.options or {}),
            )

            # 5. Wrap channel
            self.exchange = self.exchange_cls(self.channel, self.name)

        except Exception as e:
            self.logger.error(
                "action: exchange_middleware_start | result: fail | exchange: %s | error: %s",
                self.name,
                e,
            )
            await self._release()
            raise

        self.is_started = True
        self.logger.info(
            "action: exchange_middleware_start | result: success | exchange: %s | type: %s",
            self.name,
            exchange_type.value,
        )
        return self.exchange

    def _resolve_type(self):
        declared = self.exchange_cls.type
        try:
            exchange_type = ExchangeType(declared)
        except ValueError:
            raise InvalidDeclarationError(
                f"Unknown exchange type {declared!r} declared by {self.exchange_cls.__name__}"
            ) from None
        if exchange_type not in SUPPORTED_TYPES:
            raise InvalidDeclarationError(
                f"Exchange type {exchange_type.value!r} is not supported, "
                f"use one of {[t.value for t in SUPPORTED_TYPES]}"
            )
        return exchange_type

    def _build_parameters(self):
        parameters = pika.URLParameters(self.exchange_cls.url)
        for key, value in (self.exchange_cls.socket_options or {}).items():
            if not hasattr(parameters, key):
                raise InvalidDeclarationError(f"Unknown socket option {key!r}")
            setattr(parameters, key, value)
        return parameters

    async def _connect(self):
        """Open an AsyncioConnection and wait for it to be ready"""
        loop = asyncio.get_running_loop()
        opened = loop.create_future()
        self._pending.add(opened)
        try:
            AsyncioConnection(
                parameters=self._build_parameters(),
                on_open_callback=lambda connection: _resolve(opened, connection),
                on_open_error_callback=lambda connection, error: _reject(opened, error),
                on_close_callback=self._on_connection_closed,
                custom_ioloop=loop,
            )
            connection = await opened
        except Exception as e:
            self.logger.error(f"action: amqp_connect | result: fail | error: {e}")
            raise
        finally:
            self._pending.discard(opened)

        self.logger.debug("action: amqp_connect | result: success")
        return connection

    async def _open_channel(self):
        opened = asyncio.get_running_loop().create_future()
        self._pending.add(opened)
        try:
            self.connection.channel(
                on_open_callback=lambda channel: _resolve(opened, channel)
            )
            channel = await opened
        finally:
            self._pending.discard(opened)

        channel.add_on_close_callback(self._on_channel_closed)
        self.logger.debug(
            "action: channel_open | result: success | channel: %s",
            channel.channel_number,
        )
        return channel

    async def call(self, operation, *args, **kwargs):
        """
        Run a callback-style channel operation and wait for its completion.

        The operation receives a ``callback`` keyword argument; its first
        positional argument (usually the method frame) becomes the result.
        """
        future = asyncio.get_running_loop().create_future()
        self._pending.add(future)
        try:
            operation(*args, callback=lambda frame=None: _resolve(future, frame), **kwargs)
            return await future
        finally:
            self._pending.discard(future)

    async def apply_bindings(self):
        """Apply the exchange's declared bindings, in order"""
        self._ensure_started()
        for binding in self.exchange.bindings:
            if isinstance(binding, Mapping):
                binding = Binding.from_dict(binding)

            if binding.to == "queue":
                await self.call(
                    self.channel.queue_bind,
                    queue=binding.source,
                    exchange=self.name,
                    routing_key=binding.routing_key,
                    arguments=binding.args,
                )
            else:
                await self.call(
                    self.channel.exchange_bind,
                    destination=binding.source,
                    source=self.name,
                    routing_key=binding.routing_key,
                    arguments=binding.args,
                )
            self.logger.info(
                "action: apply_binding | result: success | exchange: %s | %s: %s | routing_key: %s",
                self.name,
                binding.to,
                binding.source,
                binding.routing_key,
            )

    async def destroy(self, **options):
        """Delete the exchange and wait for the broker's answer"""
        self._ensure_started()
        try:
            result = await self.call(self.exchange.destroy, **options)
        except Exception as e:
            self.logger.error(
                "action: destroy_exchange | result: fail | exchange: %s | error: %s",
                self.name,
                e,
            )
            raise
        self.logger.info("action: destroy_exchange | result: success | exchange: %s", self.name)
        return result

    async def unbind_from(self, exchange_name, pattern, args=None):
        self._ensure_started()
        return await self.call(self.exchange.unbind_from, exchange_name, pattern, args)

    async def close_channel(self):
        """Close the channel (if still open) and wait until it is closed"""
        if self.channel is None or self.channel.is_closed:
            return None

        if self._channel_closed is None or self._channel_closed.done():
            self._channel_closed = asyncio.get_running_loop().create_future()
        if not self.channel.is_closing:
            if self.exchange is not None:
                self.exchange.close_channel()
            else:
                self.channel.close()
        return await self._channel_closed

    async def stop(self):
        """Close the channel, and the connection when this middleware opened it"""
        try:
            self.logger.info("action: exchange_middleware_stop | result: in_progress")
            await self.close_channel()

            if self._owns_connection and self.connection and not self.connection.is_closed:
                self._connection_closed = asyncio.get_running_loop().create_future()
                if not self.connection.is_closing:
                    self.connection.close()
                await self._connection_closed

            self.is_started = False
            self.logger.info("action: exchange_middleware_stop | result: success")
        except Exception as e:
            self.logger.error(f"action: exchange_middleware_stop | result: fail | error: {e}")
            raise

    async def _release(self):
        """Close whatever a failed start left open, keeping the original error"""
        try:
            await self.stop()
        except Exception as e:
            self.logger.error(f"action: exchange_middleware_release | result: fail | error: {e}")

    def is_connected(self):
        """Check if both connection and channel are open"""
        return bool(
            self.connection
            and self.connection.is_open
            and self.channel
            and self.channel.is_open
        )

    def _ensure_started(self):
        if self.exchange is None:
            raise RuntimeError("Exchange not available - call start() first")

    def _fail_pending(self, reason):
        for future in list(self._pending):
            _reject(future, reason)

    def _on_channel_closed(self, channel, reason):
        self.logger.info(
            "action: channel_closed | result: success | exchange: %s | reason: %s",
            self.name,
            reason,
        )
        self._fail_pending(reason)
        if self._channel_closed is not None:
            _resolve(self._channel_closed, reason)

    def _on_connection_closed(self, connection, reason):
        self.logger.info("action: connection_closed | result: success | reason: %s", reason)
        self._fail_pending(reason)
        if self._connection_closed is not None:
            _resolve(self._connection_closed, reason)
