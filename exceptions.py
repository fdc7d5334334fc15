"""
Engine Exceptions
Error taxonomy shared by services, sweeps and the API layer
"""


class EngineError(Exception):
    """Base class for all engine errors"""


# ==================== VALIDATION (reject, no retry) ====================

class ValidationError(EngineError):
    """Bad input; the request must not be retried as-is"""


class InvalidScheduleError(ValidationError):
    """Schedule definition cannot be expanded (e.g. malformed clock time)"""

    def __init__(self, scheduled_time, reason: str = "expected HH:MM"):
        self.scheduled_time = scheduled_time
        super().__init__(f"Invalid schedule time {scheduled_time!r}: {reason}")


class InvalidTransitionError(ValidationError):
    """Dose status transition is not allowed"""

    def __init__(self, current: str, target: str, reason: str = ""):
        self.current = current
        self.target = target
        message = f"Cannot move dose from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class UnknownBadgeError(ValidationError):
    """Badge type is not defined in the reward tables"""


class ChallengeNotCompletedError(ValidationError):
    """Reward claimed for a challenge that is not completed yet"""


class InsufficientCoinsError(ValidationError):
    """Purchase would take the coin balance below zero"""

    def __init__(self, user_id: int, balance: int, price: int):
        self.user_id = user_id
        self.balance = balance
        self.price = price
        self.shortfall = price - balance
        super().__init__(
            f"Insufficient coins for user {user_id}: "
            f"balance={balance}, price={price}, shortfall={self.shortfall}"
        )


class NotFoundError(ValidationError):
    """Referenced entity does not exist"""


# ==================== CONCURRENCY / STORAGE (retry) ====================

class ConflictError(EngineError):
    """Lost a race on a natural key or version; retry with a fresh read"""


class TransientStorageError(EngineError):
    """Storage temporarily unavailable; retry with backoff"""


class LedgerUnavailableError(TransientStorageError):
    """Dose ledger storage is unavailable"""


# ==================== EXPECTED DOMAIN OUTCOMES ====================

class NoSpinsAvailableError(EngineError):
    """Account has no spins left, or a spin is already in flight"""

    def __init__(self, user_id: int, reason: str = "no spins available"):
        self.user_id = user_id
        self.reason = reason
        super().__init__(f"User {user_id}: {reason}")


class AlreadyClaimedError(EngineError):
    """Challenge reward was already claimed"""

    def __init__(self, user_challenge_id: int):
        self.user_challenge_id = user_challenge_id
        super().__init__(f"Reward for challenge {user_challenge_id} already claimed")
