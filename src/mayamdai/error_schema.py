ERROR_AUTHENTICATION = "AUTHENTICATION_FAILED"
ERROR_SERVER = "SERVER_ERROR"
ERROR_HTTP = "HTTP_ERROR"
ERROR_TIMEOUT = "TIMEOUT"
ERROR_SEND = "SEND_FAILED"

# ERROR_CONNECTION_CLOSED is the code used when the websocket goes away and the
# session was told not to reconnect.
ERROR_CONNECTION_CLOSED = "CONNECTION_CLOSED"

# ERROR_SESSION_CLOSED is the code used when close() tears down the session.
ERROR_SESSION_CLOSED = "SESSION_CLOSED"

# ERROR_SUPERSEDED is the code used when a newer request of the same kind
# cancels the pending ones.
ERROR_SUPERSEDED = "SUPERSEDED"

SUCCESS_STATUS_CODE = 200


class MayaException(Exception):
    """Base class for every failure delivered to a caller."""

    code: str = "UNKNOWN"

    def __init__(self, message: str, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)


class AuthenticationFailedException(MayaException):
    code = ERROR_AUTHENTICATION

    def __init__(self, server_message: str) -> None:
        self.server_message = server_message
        super().__init__(f"Authentication failed: {server_message}")


class ServerErrorException(MayaException):
    """The server answered with a non-success statusCode."""

    code = ERROR_SERVER

    def __init__(self, status_code: int | None, status_messages: list[str]) -> None:
        self.status_code = status_code
        self.status_messages = status_messages
        super().__init__(
            f"Server error ({status_code}): {'; '.join(status_messages)}"
        )


class HttpErrorException(MayaException):
    code = ERROR_HTTP

    def __init__(self, status: int, reason: str) -> None:
        self.status = status
        self.reason = reason
        super().__init__(f"HTTP error ({status}): {reason}")


class RequestTimeoutException(MayaException):
    code = ERROR_TIMEOUT

    def __init__(self, kind: str, request_id: int) -> None:
        self.kind = kind
        self.request_id = request_id
        super().__init__(f"Request timed out: {request_id}, {kind}")


class SendFailedException(MayaException):
    code = ERROR_SEND


class ConnectionClosedException(MayaException):
    code = ERROR_CONNECTION_CLOSED


class SessionClosedException(MayaException):
    code = ERROR_SESSION_CLOSED

    def __init__(self, message: str = "Closing connection") -> None:
        super().__init__(message)


class SupersededException(MayaException):
    code = ERROR_SUPERSEDED

    def __init__(self, kind: str, request_id: int, superseded_by: int) -> None:
        self.kind = kind
        self.request_id = request_id
        self.superseded_by = superseded_by
        super().__init__(
            f"Request ({kind}:{request_id}) cancelled by new request: {superseded_by}"
        )


def stringify_exception(e: BaseException, limit: int = 10) -> str:
    """Return a string representation of an Exception.

    This is different from just calling str(e) because it will also show the
    chained exceptions as context.
    """
    if e.__cause__ is None:
        return str(e) or type(e).__name__
    causes: list[str] = []
    cause: BaseException | None = e
    while cause and limit:
        causes.append(str(cause) or type(cause).__name__)
        cause = cause.__cause__
        limit -= 1
    if cause:
        causes.append("...")
    return ": ".join(causes)
