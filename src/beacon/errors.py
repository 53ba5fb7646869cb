"""Exception types shared across the resolver.

Brief:
  Each failure the resolution pipeline knows how to map onto a DNS response
  code has its own exception type. Handlers translate these into outcomes so
  nothing escapes to the transport layer unmapped.
"""


class BeaconError(Exception):
    """Base class for resolver errors."""

    pass


class ConfigError(BeaconError, ValueError):
    """
    Brief: Invalid or incomplete startup configuration.

    Inputs:
      - message: description of the offending setting

    Outputs:
      - Exception instance
    """

    pass


class MalformedAddress(BeaconError):
    """
    Brief: A reverse-lookup name does not encode a valid address.

    Inputs:
      - message: description including the offending name

    Outputs:
      - Exception instance; handlers answer REFUSED.
    """

    pass


class StoreUnavailable(BeaconError):
    """
    Brief: The backing record store could not answer a lookup.

    Inputs:
      - message: description of the underlying fault

    Outputs:
      - Exception instance; the driver exception is chained as __cause__.
    """

    pass


class UpstreamExhausted(BeaconError):
    """
    Brief: Every configured upstream endpoint failed for a forwarded query.

    Inputs:
      - message: description
      - last_error: optional last per-endpoint exception

    Outputs:
      - Exception instance; the transport answers SERVFAIL.
    """

    def __init__(self, message: str, last_error: Exception | None = None):
        super().__init__(message)
        self.last_error = last_error
