# src/monitoring/notifications.py
"""サイクル通知モジュール

勝者が選定されたサイクルのサマリーを通知先（NotificationSink）へ送る。
配送手段（メール・チャット等）は外部で、ここでは抽象インターフェースと
ログ出力・メモリ保持の実装のみ提供する。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Protocol, runtime_checkable


logger = logging.getLogger(__name__)


@dataclass
class WinnerNotice:
    """通知に含める勝者1件分の詳細"""
    test_id: str
    variant_id: str
    variant_name: str
    confidence: float
    expected_improvement: float
    implementation_strategy: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_id": self.test_id,
            "variant_id": self.variant_id,
            "variant_name": self.variant_name,
            "confidence": self.confidence,
            "expected_improvement": self.expected_improvement,
            "implementation_strategy": self.implementation_strategy,
        }


@dataclass
class CycleSummary:
    """1サイクル分の通知内容"""
    winners_selected: int
    total_tests_monitored: int
    success_rate: float
    winners: List[WinnerNotice] = field(default_factory=list)
    channels: List[str] = field(default_factory=list)
    stakeholders: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "winners_selected": self.winners_selected,
            "total_tests_monitored": self.total_tests_monitored,
            "success_rate": self.success_rate,
            "winners": [w.to_dict() for w in self.winners],
            "channels": list(self.channels),
            "stakeholders": list(self.stakeholders),
        }


@runtime_checkable
class NotificationSink(Protocol):
    """通知先インターフェース

    send が例外を送出してもスケジューラーのサイクルは中断されない。
    """

    async def send(self, summary: CycleSummary) -> None:
        ...


class LoggingNotificationSink:
    """サマリーをログに出力する通知先"""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    async def send(self, summary: CycleSummary) -> None:
        winners = ", ".join(f"{w.test_id}:{w.variant_id}" for w in summary.winners)
        logger.log(
            self.level,
            f"勝者選定通知: winners={summary.winners_selected}, "
            f"monitored={summary.total_tests_monitored}, "
            f"success_rate={summary.success_rate:.1f}, "
            f"channels={summary.channels}, details=[{winners}]",
        )


class InMemoryNotificationSink:
    """送信されたサマリーをメモリに保持する通知先（CLI出力・テスト用）"""

    def __init__(self):
        self.sent: List[CycleSummary] = []

    async def send(self, summary: CycleSummary) -> None:
        self.sent.append(summary)

    def clear(self) -> None:
        self.sent = []
