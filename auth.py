# auth.py

DEFAULT_DENIED_TOKENS = ("invalid-token",)


class Unauthorized(Exception):
    pass


class TokenValidator:
    """
    Rejects empty tokens and anything on the deny list. When an allow list
    is configured, only tokens on it pass.
    """

    def __init__(self, denied=DEFAULT_DENIED_TOKENS, allowed=None):
        self.denied = set(denied)
        self.allowed = set(allowed) if allowed else None

    def validate(self, token):
        if not token:
            raise Unauthorized("Missing token")
        if token in self.denied:
            raise Unauthorized("Invalid token")
        if self.allowed is not None and token not in self.allowed:
            raise Unauthorized("Invalid token")
