"""
共通 — イベントエンベロープ (Event Envelope)

イベントの種類(event_type)とペイロードを 1 つのメッセージに包む。
ワイヤーフォーマットは JSON:

    {"event_type": "ORDER_CREATED", "data": "<ペイロードの JSON 文字列>"}

ペイロードは文字列として入れ子にするため、購読側は event_type だけを
見てディスパッチ先を決められる。
"""

import json
from enum import Enum

from pydantic import BaseModel, ValidationError

from .errors import DecodeError


class EnvelopeCodec:
    """
    event_type → ペイロードモデルの対応表を持つコーデック。

    登録されていない event_type や壊れたバイト列は DecodeError になる。
    呼び出し側はログに残してイベントを破棄すればよい。
    """

    def __init__(self, registry: dict[str, type[BaseModel]]) -> None:
        self.registry = dict(registry)

    @property
    def event_types(self) -> list[str]:
        return sorted(self.registry)

    def encode(self, event_type: str | Enum, payload: BaseModel) -> bytes:
        name = event_type.value if isinstance(event_type, Enum) else event_type
        model = self.registry.get(name)
        if model is None:
            raise ValueError(f"Unknown event type: {name}")
        if not isinstance(payload, model):
            raise ValueError(f"Payload for {name} must be {model.__name__}")
        envelope = {"event_type": name, "data": payload.model_dump_json()}
        return json.dumps(envelope).encode("utf-8")

    def decode(self, raw: bytes | str) -> tuple[str, BaseModel]:
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Malformed envelope: {e}")

        if not isinstance(envelope, dict):
            raise DecodeError("Envelope must be a JSON object")

        event_type = envelope.get("event_type")
        data = envelope.get("data")
        if not isinstance(event_type, str) or not isinstance(data, str):
            raise DecodeError("Envelope requires string event_type and data")

        model = self.registry.get(event_type)
        if model is None:
            raise DecodeError(f"Unknown event type: {event_type}", event_type=event_type)

        try:
            payload = model.model_validate_json(data)
        except ValidationError as e:
            raise DecodeError(
                f"Invalid {event_type} payload: {e.error_count()} error(s)",
                event_type=event_type,
            )
        return event_type, payload
