"""Custom exception hierarchy for the event fan-out layer."""


class FanoutError(Exception):
    """Base exception for all event fan-out errors."""


# --- Configuration ---
class ConfigError(FanoutError):
    """Invalid or missing configuration."""


# --- Registration ---
class RegistrationError(FanoutError):
    """A handler definition could not be registered."""


class MissingMetadataError(RegistrationError):
    """Handler definition lacks its event type or queue name."""


class DuplicateHandlerError(RegistrationError):
    """Same handler identity registered again with different routing."""


# --- Publishing ---
class PublishError(FanoutError):
    """At least one enqueue of a fan-out failed."""


# --- Broker ---
class BrokerError(FanoutError):
    """Broker backend is unusable (not started, already closed)."""


# --- Dispatch ---
class UnrecoverableJobError(FanoutError):
    """Job failure that a retry cannot fix.  Brokers fail the job immediately."""


class HandlerNotFoundError(UnrecoverableJobError):
    """Job references a handler identity absent from its queue's bindings."""


class EventDeserializationError(UnrecoverableJobError):
    """Serialized event in a job could not be turned back into an event."""
