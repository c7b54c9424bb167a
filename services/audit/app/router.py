"""
Audit Service — ルーター

監査イベントをルールの配列順に評価し、最初に一致したルールの
ターゲットへイベントをそのまま転送する。

- 一致なし   : 破棄するが unmatched として数える(エラーではない)
- デコード失敗 : ログに残して破棄し、dropped として数える
- ターゲット失敗: ログに残し、failed として数える。ルーター自体は止めない
"""

import logging
from collections import Counter
from typing import Mapping, Sequence

from services.shared.audit import AUDIT_CODEC, AuditEvent
from services.shared.errors import DecodeError, ServiceError

from .rules import AuditRule
from .targets import AuditTarget

logger = logging.getLogger(__name__)


class AuditRouter:
    def __init__(self, rules: Sequence[AuditRule], targets: Mapping[str, AuditTarget]) -> None:
        missing = {rule.target for rule in rules} - set(targets)
        if missing:
            raise ValueError(f"No target registered for: {sorted(missing)}")
        self.rules = tuple(rules)
        self.targets = dict(targets)
        self.routed: Counter[str] = Counter()
        self.unmatched = 0
        self.dropped = 0
        self.failed = 0

    def match(self, event: AuditEvent) -> AuditRule | None:
        for rule in self.rules:
            if rule.matches(event):
                return rule
        return None

    async def route(self, event: AuditEvent) -> AuditRule | None:
        rule = self.match(event)
        if rule is None:
            self.unmatched += 1
            logger.info(
                "No rule matched audit event source=%s detail_type=%s (unmatched=%d)",
                event.source, event.detail_type, self.unmatched,
            )
            return None

        try:
            await self.targets[rule.target].handle(event)
        except ServiceError as e:
            self.failed += 1
            logger.error("Target %s failed for rule %s: %s", rule.target, rule.name, e.message)
            return rule
        except Exception:
            self.failed += 1
            logger.exception("Target %s raised for rule %s", rule.target, rule.name)
            return rule

        self.routed[rule.name] += 1
        logger.info("Audit event routed by %s to %s", rule.name, rule.target)
        return rule

    async def route_message(self, raw: bytes | str) -> AuditRule | None:
        try:
            _, event = AUDIT_CODEC.decode(raw)
        except DecodeError as e:
            self.dropped += 1
            logger.warning("Dropped undecodable audit message: %s", e.message)
            return None
        return await self.route(event)

    def stats(self) -> dict:
        return {
            "routed": dict(self.routed),
            "unmatched": self.unmatched,
            "dropped": self.dropped,
            "failed": self.failed,
        }
