#!/usr/bin/env python3

import asyncio
import logging
import signal
import sys

from amqp_exchange import Exchange, ExchangeMiddleware
from common.config import initialize_config
from common.utils import BLOCKED_CONNECTION_TIMEOUT, log_action


def initialize_log(logging_level):
    """
    Python custom logging initialization

    Current timestamp is added to be able to identify in docker
    compose logs the date when the log has arrived
    """
    logging.basicConfig(
        format="%(asctime)s %(levelname)-8s %(message)s",
        level=logging_level,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def build_exchange_class(config):
    """Declare the fanout exchange driven by the runner"""

    class LifecycleExchange(Exchange):
        url = config.url
        type = Exchange.FANOUT
        socket_options = {
            "heartbeat": config.heartbeat,
            "blocked_connection_timeout": BLOCKED_CONNECTION_TIMEOUT,
        }

        @classmethod
        async def before_create_channel(cls, connection):
            log_action("before_create_channel", "in_progress")
            # Ctrl+C closes the shared connection, which closes every channel on it
            asyncio.get_running_loop().add_signal_handler(signal.SIGINT, connection.close)
            connection.add_on_close_callback(
                lambda conn, reason: log_action(
                    "connection_close", "success", extra_fields={"reason": reason}
                )
            )

        def on_close(self):
            log_action("channel_close", "success", extra_fields={"exchange": self.name})

        def on_error(self, err):
            log_action(
                "channel_error",
                "fail",
                level=logging.ERROR,
                error=err,
                extra_fields={"exchange": self.name},
            )

        def on_return(self, message):
            log_action(
                "message_returned",
                "success",
                level=logging.WARNING,
                extra_fields={"exchange": self.name, "bytes": len(message.body)},
            )

        def on_drain(self):
            log_action("connection_unblocked", "success", extra_fields={"exchange": self.name})

    return LifecycleExchange


async def run(config):
    """Declare the exchange, publish one message, then delete it again"""
    middleware = ExchangeMiddleware(build_exchange_class(config), name=config.exchange_name)
    try:
        exchange = await middleware.start()
        # No queue is bound, so a mandatory message comes back through on_return
        exchange.publish(b"lifecycle", "", mandatory=True)
        await middleware.destroy(if_unused=True)
        log_action("destroy", "success", extra_fields={"channel_open": exchange.channel.is_open})
    finally:
        await middleware.stop()


def main():
    try:
        exchange_config = initialize_config()

        initialize_log(exchange_config.logging_level)

        logging.debug(
            "action: config | result: success | exchange: %s | logging_level: %s | heartbeat: %s",
            exchange_config.exchange_name,
            exchange_config.logging_level,
            exchange_config.heartbeat,
        )

        asyncio.run(run(exchange_config))

    except KeyError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
    except ValueError as e:
        print(f"Configuration Parse Error: {e}", file=sys.stderr)
    except KeyboardInterrupt:
        logging.info("action: shutdown | result: in_progress | msg: received keyboard interrupt")
    except Exception as e:
        logging.error("action: exchange_main | result: fail | error: %s", e)


if __name__ == "__main__":
    main()
