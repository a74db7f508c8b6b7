class GrantServiceError(Exception):
    status_code = 500


class NotFoundError(GrantServiceError):
    """No eligible promotion, unknown wallet/promotion, or a failed captcha.

    The cases share one error so a client cannot tell them apart.
    """

    status_code = 404


class ConflictError(GrantServiceError):
    status_code = 409


class BadRequestError(GrantServiceError):
    status_code = 400


class GoneError(GrantServiceError):
    status_code = 410


class UnauthorizedError(GrantServiceError):
    status_code = 401


class InvalidChallengeError(UnauthorizedError):
    """The wallet has no live challenge, or it does not match the proof."""


class ServiceUnavailableError(GrantServiceError):
    status_code = 503

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = max(1, int(retry_after))


class InternalError(GrantServiceError):
    status_code = 500
