"""
Capsule envelope and its transport codec.

A capsule is a payload plus the time it was buried and the time it was
dug out. In the store a capsule *is* its transportable string: that string
is the sorted-set member, so it must never change once computed.

Architecture:
    ::

        Capsule(payload, buried_at)
             │
             │ CapsuleCodec.encode
             ▼
        {"payload": <json>, "buriedAt": 1700000000000}   (compact JSON)
             │ utf-8
             ▼
        eyJwYXlsb2FkIjoiaGVsbG8iLCJidXJpZWRBdCI6MTcwMDAwMDAwMDAwMH0=
                                             (standard base64, store-safe)

    ``dugOutAt`` is never written; it only exists on the object ``dig``
    returns.

Invariants:
    - ``codec.decode(codec.encode(c)) == c``
    - ``codec.encode(codec.decode(s)) == s``, because decode keeps ``s``
      instead of re-rendering it

Tags:
    codec, serialization, base64, pydantic, timecapsule

Doc-Types:
    api-reference
"""

from __future__ import annotations

import base64
import binascii
import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from pydantic import TypeAdapter

from timecapsule.errors import CapsuleDecodeError

P = TypeVar("P")

PAYLOAD_FIELD = "payload"
BURIED_AT_FIELD = "buriedAt"


def unix_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


@dataclass
class Capsule(Generic[P]):
    """A buried payload.

    Attributes:
        payload: Caller data
        buried_at: Epoch ms at which the capsule was buried
        dug_out_at: Epoch ms at which a digger judged it due (0 until then)
        due_at: Score the capsule was popped with; only set by ``dig``
    """

    payload: P
    buried_at: int = 0
    dug_out_at: int = 0
    due_at: int | None = field(default=None, compare=False)
    _encoded: str | None = field(default=None, compare=False, repr=False)

    @property
    def encoded(self) -> str | None:
        """Memoized transportable string, if one was computed or decoded."""
        return self._encoded

    @property
    def is_dug_out(self) -> bool:
        return self.dug_out_at > 0


class CapsuleCodec(Generic[P]):
    """Encode capsules to store-safe strings and back.

    Payloads go through a ``pydantic.TypeAdapter`` for ``payload_type``,
    so models, dataclasses and typed dicts round-trip as themselves.
    ``dump`` / ``load`` replace the adapter when a payload needs a custom
    serializer.

    Example:
        >>> codec = CapsuleCodec(str)
        >>> s = codec.encode(Capsule("hello", buried_at=1700000000000))
        >>> codec.decode(s).payload
        'hello'
    """

    def __init__(
        self,
        payload_type: Any = Any,
        *,
        dump: Callable[[P], Any] | None = None,
        load: Callable[[Any], P] | None = None,
    ) -> None:
        self._adapter: TypeAdapter[Any] = TypeAdapter(payload_type)
        self._dump = dump or self._dump_with_adapter
        self._load = load or self._adapter.validate_python

    def _dump_with_adapter(self, payload: P) -> Any:
        return self._adapter.dump_python(payload, mode="json")

    def new_capsule(self, payload: P, buried_at: int | None = None) -> Capsule[P]:
        """Create a capsule stamped with the current time."""
        return Capsule(
            payload=payload,
            buried_at=unix_millis() if buried_at is None else buried_at,
        )

    def encode(self, capsule: Capsule[P]) -> str:
        """Return the capsule's transportable string, computing it once."""
        if capsule._encoded is not None:
            return capsule._encoded

        envelope = {
            PAYLOAD_FIELD: self._dump(capsule.payload),
            BURIED_AT_FIELD: capsule.buried_at,
        }
        raw = json.dumps(envelope, separators=(",", ":"))
        capsule._encoded = base64.b64encode(raw.encode("utf-8")).decode("ascii")
        return capsule._encoded

    def decode(self, data: str | bytes) -> Capsule[P]:
        """Parse a transportable string.

        Raises:
            CapsuleDecodeError: On bad base64, UTF-8, JSON, envelope shape
                or a payload the payload type rejects
        """
        if isinstance(data, bytes):
            try:
                data = data.decode("ascii")
            except UnicodeDecodeError as e:
                raise CapsuleDecodeError("capsule is not ASCII", cause=e) from e

        try:
            raw = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CapsuleDecodeError("capsule is not valid base64", cause=e) from e

        try:
            envelope = json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise CapsuleDecodeError("capsule is not valid JSON", cause=e) from e

        if not isinstance(envelope, dict) or PAYLOAD_FIELD not in envelope:
            raise CapsuleDecodeError("capsule envelope has no payload")

        buried_at = envelope.get(BURIED_AT_FIELD, 0)
        if isinstance(buried_at, bool) or not isinstance(buried_at, int):
            raise CapsuleDecodeError(f"capsule buriedAt is not an integer: {buried_at!r}")

        try:
            payload = self._load(envelope[PAYLOAD_FIELD])
        except (ValueError, TypeError) as e:
            raise CapsuleDecodeError("capsule payload failed validation", cause=e) from e

        return Capsule(payload=payload, buried_at=buried_at, _encoded=data)


__all__ = ["Capsule", "CapsuleCodec", "unix_millis"]
