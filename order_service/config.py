"""
config.py — Environment-driven Settings for the Order Service

All service addresses and tuning knobs are read from environment variables
with defaults suitable for a docker-compose setup.

Resilience policies are configured per policy name:

    RESILIENCE_<NAME>_TIMEOUT_S
    RESILIENCE_<NAME>_MAX_ATTEMPTS
    RESILIENCE_<NAME>_WAIT_S
    RESILIENCE_<NAME>_BACKOFF_MULTIPLIER
    RESILIENCE_<NAME>_MAX_WAIT_S
    RESILIENCE_<NAME>_FAILURE_RATE_THRESHOLD
    RESILIENCE_<NAME>_SLIDING_WINDOW_SIZE
    RESILIENCE_<NAME>_MINIMUM_NUMBER_OF_CALLS
    RESILIENCE_<NAME>_WAIT_IN_OPEN_STATE_S
    RESILIENCE_<NAME>_PERMITTED_CALLS_IN_HALF_OPEN_STATE
"""

import os
from dataclasses import fields

from .resilience import PolicyConfig

# Service-Adressen
INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "http://inventory-service:8082")
INVENTORY_CHECK_PATH = os.environ.get("INVENTORY_CHECK_PATH", "/api/inventory")

RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "guest")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "guest")
NOTIFICATION_TOPIC = os.environ.get("NOTIFICATION_TOPIC", "notificationTopic")
EVENT_PUBLISHER_MAX_PENDING = int(os.environ.get("EVENT_PUBLISHER_MAX_PENDING", "1000"))
EVENT_PUBLISHER_RECONNECT_INTERVAL_S = float(os.environ.get("EVENT_PUBLISHER_RECONNECT_INTERVAL_S", "10"))

ORDER_DB_PATH = os.environ.get("ORDER_DB_PATH", "orders.db")

INVENTORY_POLICY = "inventory"


def load_policy_config(name: str, environ=None) -> PolicyConfig:
    """
    Builds the resilience configuration for one policy name.

    Every field of `PolicyConfig` can be overridden by an environment variable
    named `RESILIENCE_<NAME>_<FIELD>`; unset variables keep the defaults.

    Args:
        name (str): Policy name, e.g. "inventory".
        environ (Mapping, optional): Source of variables, defaults to os.environ.

    Returns:
        PolicyConfig: The resolved configuration.

    Raises:
        ValueError: If a variable is set but cannot be converted.
    """
    environ = os.environ if environ is None else environ
    prefix = f"RESILIENCE_{name.upper()}_"
    overrides = {}
    for field in fields(PolicyConfig):
        raw = environ.get(prefix + field.name.upper())
        if raw is None:
            continue
        convert = int if field.type in (int, "int") else float
        try:
            overrides[field.name] = convert(raw)
        except ValueError as e:
            raise ValueError(f"Invalid value for {prefix + field.name.upper()}: {raw!r}") from e
    return PolicyConfig(**overrides)


def load_resilience_config(environ=None) -> dict:
    """Returns the policy configurations known to this service, keyed by name."""
    return {INVENTORY_POLICY: load_policy_config(INVENTORY_POLICY, environ)}
