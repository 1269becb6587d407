# errors.py
"""
Exception taxonomy shared by the engine and the HTTP layer.
`status_code` is what main.py answers with when one escapes a request.
"""

from __future__ import annotations


class LotteryError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


# ---------- input validation (400, never persisted) ----------
class InvalidRequestError(LotteryError):
    status_code = 400


class InvalidNumbersError(InvalidRequestError):
    pass


class TransactionAlreadyUsedError(InvalidRequestError):
    pass


class SessionExpiredError(InvalidRequestError):
    pass


# ---------- lookups ----------
class NotFoundError(LotteryError):
    status_code = 404


# ---------- chain ----------
class GatewayError(LotteryError):
    """RPC unreachable, rate limited or returned something unparseable."""
    status_code = 502


class TransactionValidationError(LotteryError):
    """Transaction not found / unconfirmed / failed / wrong recipient / too small."""
    status_code = 400


class PayoutError(LotteryError):
    status_code = 500


# ---------- invariants ----------
class RoundStateError(LotteryError):
    status_code = 400
