"""
Universal Message Format (UMF)

This module provides:
- UMFMessage: the immutable message envelope
- create_message: builds an envelope with a fresh id, timestamp and version
- parse_address: splits ``[instanceID@]serviceName[:path]`` addresses
- serialize / deserialize: the JSON wire encoding
"""

import copy
import json
import re
import uuid
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional, Union

from .errors import InvalidAddressError, MessageFormatError
from .utils import iso_timestamp

UMF_VERSION = "UMF/1.4.6"

# Fields always written to the wire, in this order.
HEADER_FIELDS = ("mid", "timestamp", "version", "to", "from")
OPTIONAL_FIELDS = ("rmid", "type", "priority", "via", "headers", "timeout")

_GENERATED = {"mid", "timestamp", "version"}

_ADDRESS_RE = re.compile(
    r"^(?:(?P<instance>[^@:\s]+)@)?(?P<service>[A-Za-z0-9][A-Za-z0-9_.\-]*)(?::(?P<path>\S*))?$"
)


@dataclass(frozen=True)
class UMFAddress:
    service_name: str
    instance_id: Optional[str] = None
    path: Optional[str] = None

    @property
    def is_direct(self) -> bool:
        return self.instance_id is not None

    def __str__(self) -> str:
        text = self.service_name
        if self.instance_id:
            text = f"{self.instance_id}@{text}"
        if self.path is not None:
            text = f"{text}:{self.path}"
        return text


@dataclass(frozen=True)
class UMFMessage:
    """A UMF envelope. ``from_`` is written as ``from`` on the wire."""
    mid: str
    timestamp: str
    version: str = UMF_VERSION
    to: Optional[str] = None
    from_: Optional[str] = None
    body: Any = field(default_factory=dict)
    rmid: Optional[str] = None
    type: Optional[str] = None
    priority: Optional[str] = None
    via: Optional[str] = None
    headers: Optional[Dict[str, Any]] = None
    timeout: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "mid": self.mid,
            "timestamp": self.timestamp,
            "version": self.version,
            "to": self.to,
            "from": self.from_,
            "body": self.body,
        }
        for name in OPTIONAL_FIELDS:
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UMFMessage':
        if not isinstance(data, dict):
            raise MessageFormatError("UMF message must be an object")
        missing = [name for name in HEADER_FIELDS[:3] if not data.get(name)]
        if missing:
            raise MessageFormatError(f"UMF message is missing {', '.join(missing)}")
        if not str(data["version"]).startswith("UMF/"):
            raise MessageFormatError(f"unsupported message version {data['version']!r}")
        kwargs = {name: data.get(name) for name in OPTIONAL_FIELDS}
        return cls(
            mid=data["mid"],
            timestamp=data["timestamp"],
            version=data["version"],
            to=data.get("to"),
            from_=data.get("from"),
            body=data.get("body", {}),
            **kwargs,
        )


_FIELD_NAMES = {f.name for f in fields(UMFMessage)}


def create_message(message_fields: Optional[Dict[str, Any]] = None) -> UMFMessage:
    """Build a new message from *message_fields*.

    ``mid``, ``timestamp`` and ``version`` are always generated; any value
    passed for them is ignored. ``from`` and ``from_`` are accepted for the
    sender. ``body`` and ``headers`` are copied, so later changes to the
    caller's objects do not alter the message.
    """
    values = dict(message_fields or {})
    if "from" in values:
        values["from_"] = values.pop("from")
    unknown = set(values) - _FIELD_NAMES
    if unknown:
        raise MessageFormatError(f"unknown message field(s): {', '.join(sorted(unknown))}")
    for name in _GENERATED:
        values.pop(name, None)
    for name in ("body", "headers"):
        if name in values:
            values[name] = copy.deepcopy(values[name])
    return UMFMessage(
        mid=str(uuid.uuid4()),
        timestamp=iso_timestamp(),
        version=UMF_VERSION,
        **values,
    )


def parse_address(address: Optional[str]) -> UMFAddress:
    """Parse ``[instanceID@]serviceName[:path]``.

    >>> parse_address("abc@orders:/v1/list")
    UMFAddress(service_name='orders', instance_id='abc', path='/v1/list')
    """
    if not isinstance(address, str) or not address:
        raise InvalidAddressError(f"invalid address {address!r}")
    match = _ADDRESS_RE.match(address)
    if match is None:
        raise InvalidAddressError(f"invalid address {address!r}")
    return UMFAddress(
        service_name=match.group("service"),
        instance_id=match.group("instance"),
        path=match.group("path"),
    )


def serialize(message: UMFMessage) -> str:
    try:
        return json.dumps(message.to_dict())
    except (TypeError, ValueError) as exc:
        raise MessageFormatError(f"message {message.mid} is not serializable: {exc}") from exc


def deserialize(raw: Union[str, bytes]) -> UMFMessage:
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise MessageFormatError(f"message is not valid JSON: {exc}") from exc
    return UMFMessage.from_dict(data)
