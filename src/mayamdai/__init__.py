from .backoff import FixedIntervalBackoff, ReconnectBackoff
from .client import Client
from .error_schema import (
    AuthenticationFailedException,
    ConnectionClosedException,
    HttpErrorException,
    MayaException,
    RequestTimeoutException,
    SendFailedException,
    ServerErrorException,
    SessionClosedException,
    SupersededException,
)
from .events import SessionEvent, SessionEvents
from .session import Session, SessionState
from .transport_options import TransportOptions
from .unary import UnaryClient, request_unary

__all__ = [
    "Client",
    "Session",
    "SessionState",
    "SessionEvent",
    "SessionEvents",
    "TransportOptions",
    "ReconnectBackoff",
    "FixedIntervalBackoff",
    "UnaryClient",
    "request_unary",
    "MayaException",
    "AuthenticationFailedException",
    "ConnectionClosedException",
    "HttpErrorException",
    "RequestTimeoutException",
    "SendFailedException",
    "ServerErrorException",
    "SessionClosedException",
    "SupersededException",
]
