"""Pluggable value serialization.

A Serializer turns values into the strings stored in Redis and back. The
default JsonSerializer uses orjson for encoding and pydantic for typed
decoding, so plain JSON types, dataclasses and pydantic models all work.
CustomSerializer lets specific types use their own codec while everything
else falls through to another serializer.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import lru_cache
from typing import Any, Protocol, TypeVar, runtime_checkable

import orjson
from pydantic import BaseModel, TypeAdapter, ValidationError

from redisync.errors import SerializationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class Serializer(Protocol):
    """Convert values to and from their stored string form."""

    def serialize(self, value: Any) -> str: ...

    def deserialize(self, text: str, target: type[T]) -> T: ...


def _default(obj: Any) -> Any:
    """orjson fallback for types it does not encode natively."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


@lru_cache(maxsize=256)
def _adapter(target: Any) -> TypeAdapter[Any]:
    return TypeAdapter(target)


class JsonSerializer:
    """JSON serializer backed by orjson.

    Strings are stored verbatim so that values written by other clients with
    plain SET remain readable. The stored form therefore does not say whether
    it was a string: reading it back as exactly ``str`` returns it untouched,
    while a union such as ``str | int`` first tries it as JSON, so a stored
    ``"123"`` comes back as ``123``. Text that is not valid JSON is still
    accepted by targets that admit ``str``.
    """

    def serialize(self, value: Any) -> str:
        if isinstance(value, str):
            return value
        try:
            return orjson.dumps(value, default=_default).decode("utf-8")
        except (TypeError, orjson.JSONEncodeError) as e:
            raise SerializationError(
                f"Cannot serialize {type(value).__name__}: {e}", target_type=type(value)
            ) from e

    def deserialize(self, text: str, target: type[T]) -> T:
        if target is str:
            return text  # type: ignore[return-value]
        try:
            if isinstance(target, type) and issubclass(target, BaseModel):
                return target.model_validate_json(text)  # type: ignore[return-value]
            adapter = _adapter(target)
            try:
                return adapter.validate_json(text)  # type: ignore[no-any-return]
            except ValidationError:
                # Raw string written by serialize(); only str-admitting targets take it
                return adapter.validate_python(text, strict=True)  # type: ignore[no-any-return]
        except (ValidationError, ValueError, TypeError) as e:
            name = getattr(target, "__name__", str(target))
            raise SerializationError(
                f"Cannot deserialize payload as {name}: {e}", target_type=target
            ) from e


class CustomSerializer:
    """Serializer with per-type codecs and a fallback for everything else.

    Example:
        serializer = CustomSerializer()
        serializer.register(Point, lambda p: f"{p.x},{p.y}", parse_point)
    """

    def __init__(self, fallback: Serializer | None = None) -> None:
        self.fallback: Serializer = fallback or JsonSerializer()
        self._encoders: dict[type, Callable[[Any], str]] = {}
        self._decoders: dict[type, Callable[[str], Any]] = {}

    def register(
        self,
        target: type[T],
        encoder: Callable[[T], str],
        decoder: Callable[[str], T],
    ) -> None:
        """Register a codec pair for ``target``."""
        self._encoders[target] = encoder
        self._decoders[target] = decoder
        logger.debug(f"Registered custom codec for {target.__name__}")

    def unregister(self, target: type) -> None:
        self._encoders.pop(target, None)
        self._decoders.pop(target, None)

    def has_codec(self, target: type) -> bool:
        return target in self._encoders

    def _find_encoder(self, value_type: type) -> Callable[[Any], str] | None:
        for klass in value_type.__mro__:
            encoder = self._encoders.get(klass)
            if encoder is not None:
                return encoder
        return None

    def serialize(self, value: Any) -> str:
        encoder = self._find_encoder(type(value))
        if encoder is None:
            return self.fallback.serialize(value)
        try:
            return encoder(value)
        except Exception as e:
            raise SerializationError(
                f"Custom encoder for {type(value).__name__} failed: {e}",
                target_type=type(value),
            ) from e

    def deserialize(self, text: str, target: type[T]) -> T:
        decoder = self._decoders.get(target)
        if decoder is None:
            return self.fallback.deserialize(text, target)
        try:
            return decoder(text)  # type: ignore[no-any-return]
        except Exception as e:
            raise SerializationError(
                f"Custom decoder for {target.__name__} failed: {e}", target_type=target
            ) from e
