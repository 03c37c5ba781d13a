from __future__ import annotations


class NotFoundError(ValueError):
    pass


class InvalidTransitionError(ValueError):
    pass
