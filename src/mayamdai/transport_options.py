import os
from typing import Literal

from pydantic import BaseModel

CodecName = Literal["json", "msgpack"]

# How stale frames carrying the partial tag are surfaced:
# - "drop": never, they are logged and discarded
# - "known_kind": only if a request of that kind was ever registered
# - "any": always
UnsolicitedPolicy = Literal["drop", "known_kind", "any"]


class TransportOptions(BaseModel):
    ping_interval_ms: float = 30_000
    retry_interval_ms: float = 10_000
    request_timeout_ms: float = 5_000
    close_timeout_ms: float = 10_000
    reconnect: bool = True
    codec: CodecName = "json"
    unsolicited_policy: UnsolicitedPolicy = "known_kind"
    partial_tag_field: str = "partType"

    @classmethod
    def create_from_env(cls) -> "TransportOptions":
        ping_interval_ms = float(os.getenv("MAYAMDAI_PING_INTERVAL_MS", 30_000))
        retry_interval_ms = float(os.getenv("MAYAMDAI_RETRY_INTERVAL_MS", 10_000))
        request_timeout_ms = float(os.getenv("MAYAMDAI_REQUEST_TIMEOUT_MS", 5_000))
        reconnect = os.getenv("MAYAMDAI_RECONNECT", "1").lower() not in (
            "0",
            "false",
            "no",
        )
        return TransportOptions(
            ping_interval_ms=ping_interval_ms,
            retry_interval_ms=retry_interval_ms,
            request_timeout_ms=request_timeout_ms,
            reconnect=reconnect,
        )
