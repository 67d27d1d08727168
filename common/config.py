#!/usr/bin/env python3

import os
from configparser import ConfigParser
from dataclasses import dataclass

from common.utils import HEARTBEAT

CONFIG_FILE = "config.ini"


@dataclass
class ExchangeConfig:
    """Configuration for the exchange runner"""

    url: str
    exchange_name: str
    logging_level: str
    heartbeat: int


def initialize_config(config_file=CONFIG_FILE):
    """Parse config file to find program config params

    Function that searches for program configuration parameters in the config.ini file.
    Environment variables take precedence over config file values, and the file
    may be absent when the environment provides every parameter.
    If a required parameter is not found a KeyError exception is thrown. If a
    parameter could not be parsed, a ValueError is thrown.
    If parsing succeeded, the function returns an ExchangeConfig object
    """

    # urls contain %-escaped vhosts like %2F
    config = ConfigParser(interpolation=None)
    config.read(config_file)

    def _get_config(env_key, config_key, default=None):
        """Get configuration value from environment variable or config file"""
        env_value = os.getenv(env_key)
        if env_value is not None:
            return env_value

        try:
            return config["DEFAULT"][config_key]
        except KeyError:
            if default is not None:
                return default
            raise KeyError(
                f"Required configuration parameter '{config_key}' not found in environment variable '{env_key}' or config file"
            )

    try:
        exchange_config = ExchangeConfig(
            url=_get_config("AMQP_URL", "AMQP_URL"),
            exchange_name=_get_config("EXCHANGE_NAME", "EXCHANGE_NAME"),
            logging_level=_get_config("LOGGING_LEVEL", "LOGGING_LEVEL", "INFO"),
            heartbeat=int(_get_config("AMQP_HEARTBEAT", "AMQP_HEARTBEAT", HEARTBEAT)),
        )

    except KeyError as e:
        raise KeyError("Configuration error: {}. Aborting".format(e))
    except ValueError as e:
        raise ValueError("Configuration parsing error: {}. Aborting".format(e))

    return exchange_config
