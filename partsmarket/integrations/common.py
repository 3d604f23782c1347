from __future__ import annotations


class IntegrationDisabledError(RuntimeError):
    pass


class IntegrationMisconfiguredError(RuntimeError):
    pass


class GatewayError(RuntimeError):
    """Remote gateway call failed, timed out, or answered with an error envelope."""

    def __init__(self, code: str, message: str = ""):
        super().__init__(f"{code}:{message}" if message else code)
        self.code = code
        self.detail = message
