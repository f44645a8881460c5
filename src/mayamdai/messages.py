import json
import logging
from collections.abc import Mapping
from typing import Any

import msgpack
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mayamdai.error_schema import SUCCESS_STATUS_CODE
from mayamdai.transport_options import CodecName

logger = logging.getLogger(__name__)

AUTH_KIND = "auth"
NOOP_KIND = "noop"


class InvalidMessageException(Exception):
    """A frame could not be decoded into an envelope."""


class Envelope(BaseModel):
    """The wire wrapper shared by every request and response.

    Domain payload fields ride along as extras and are never interpreted here.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    kind: str = Field(alias="requestType")
    id: int | None = Field(default=None, alias="requestId")
    statusCode: int | None = None
    statusMessage: list[str] = Field(default_factory=list)

    @field_validator("statusMessage", mode="before")
    @classmethod
    def _coerce_status_message(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @property
    def ok(self) -> bool:
        return self.statusCode == SUCCESS_STATUS_CODE

    @property
    def primary_message(self) -> str:
        if self.statusMessage:
            return self.statusMessage[0]
        return ""

    def payload(self) -> dict[str, Any]:
        """The response as the server sent it."""
        return self.model_dump(by_alias=True, exclude_unset=True)


def build_request(
    kind: str, request_id: int, params: Mapping[str, Any] | None
) -> dict[str, Any]:
    return {**(params or {}), "requestType": kind, "requestId": request_id}


def build_auth(request_id: int, api_key: str, api_secret: str) -> dict[str, Any]:
    return {
        "requestType": AUTH_KIND,
        "requestId": request_id,
        "apiKey": api_key,
        "apiSecret": api_secret,
    }


def encode(message: Mapping[str, Any], codec: CodecName) -> str | bytes:
    if codec == "msgpack":
        packed = msgpack.packb(dict(message), datetime=True)
        assert isinstance(packed, bytes)
        return packed
    return json.dumps(message)


def decode(data: str | bytes, codec: CodecName) -> Any:
    try:
        if isinstance(data, bytes) and codec == "msgpack":
            # 3 - datetime.datetime (UTC)
            return msgpack.unpackb(data, timestamp=3)
        return json.loads(data)
    except (ValueError, TypeError, msgpack.UnpackException) as e:
        raise InvalidMessageException("Failed to decode frame") from e


def parse_envelope(
    data: str | bytes | Mapping[str, Any], codec: CodecName
) -> Envelope:
    unpacked = data if isinstance(data, Mapping) else decode(data, codec)
    if not isinstance(unpacked, Mapping):
        raise InvalidMessageException(
            f"Expected an object, got {type(unpacked).__name__}"
        )
    try:
        return Envelope.model_validate(unpacked)
    except ValidationError as e:
        raise InvalidMessageException("Failed to parse envelope") from e
