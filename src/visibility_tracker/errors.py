from __future__ import annotations


class VisibilityError(Exception):
    pass


class TransientError(VisibilityError):
    pass


class NotReadyError(VisibilityError):
    pass


class DataError(VisibilityError):
    pass


class PollTimeoutError(VisibilityError):
    pass


class InvalidTransition(VisibilityError):
    pass
