class ConfigurationError(Exception):
    """Missing or invalid settings; the service must not start."""


class StoreError(Exception):
    """A write to the realtime data tree failed."""


class GatewayError(Exception):
    """A PayWay call failed at the transport level or returned a rejection."""

    def __init__(self, message, detail=None):
        super().__init__(message)
        # Body returned by the gateway when there is one, else the message
        self.detail = detail if detail is not None else message
