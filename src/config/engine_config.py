# A/Bテスト判定エンジン パラメータ設定
# 統計分析・結論判定・勝者スケジューラーの設定値を一元管理する

from dataclasses import dataclass, field, fields, is_dataclass
from typing import Any, Dict, List, Optional

import yaml


class ConfigurationError(Exception):
    """設定・入力構成が不正な場合のエラー

    コントロールバリアントが存在しない、ルール定義が不正、
    設定値が範囲外などの場合に送出される。
    """
    pass


@dataclass
class StatisticsConfig:
    """統計分析パラメータ

    SignificanceEngine が参照する信頼水準・検出力・品質チェックの閾値。
    """

    confidence_level: float = 0.95
    """デフォルトの信頼水準"""

    power: float = 0.8
    """目標検出力"""

    minimum_sample_size: int = 1000
    """バリアントあたりの最小サンプル数（insufficient_data 判定用）"""

    minimum_detectable_effect: float = 0.1
    """最小検出効果（相対改善率 10%）"""

    outlier_threshold: float = 3.0
    """外れ値判定のzスコア閾値（標準偏差の倍数）"""

    srm_alpha: float = 0.05
    """サンプル比率不一致（SRM）検定の有意水準"""

    exact_critical_values: bool = False
    """True の場合、臨界値をテーブルではなく scipy.stats の逆分布関数で計算"""


@dataclass
class SelectionCriteria:
    """勝者選定基準

    minimum_confidence / minimum_improvement はパーセント単位。
    """

    primary_metric: str = "conversion_rate"
    """主要指標: "conversion_rate" | "revenue" | "engagement" | "composite" """

    minimum_confidence: float = 95.0
    """勝者候補に必要な最小信頼度（%）"""

    minimum_improvement: float = 5.0
    """勝者候補に必要な最小改善率（%）"""

    risk_tolerance: str = "moderate"
    """リスク許容度: "conservative" | "moderate" | "aggressive" """

    fallback_strategy: str = "extend_test"
    """勝者不在時の方針: "extend_test" | "select_control" | "manual_review" """

    def validate(self) -> None:
        if self.primary_metric not in PRIMARY_METRICS:
            raise ConfigurationError(
                f"primary_metric は {'/'.join(PRIMARY_METRICS)} のいずれかです: "
                f"{self.primary_metric}"
            )
        if self.risk_tolerance not in RISK_TOLERANCE_LIMITS:
            raise ConfigurationError(
                f"risk_tolerance は {'/'.join(RISK_TOLERANCE_LIMITS)} のいずれかです: "
                f"{self.risk_tolerance}"
            )
        if not 0 <= self.minimum_confidence <= 100:
            raise ConfigurationError(
                f"minimum_confidence は 0-100 の範囲で指定してください: {self.minimum_confidence}"
            )
        if self.fallback_strategy not in FALLBACK_STRATEGIES:
            raise ConfigurationError(
                f"fallback_strategy が不正です: {self.fallback_strategy}"
            )

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "SelectionCriteria":
        """上書き値を反映した新しい SelectionCriteria を返す"""
        if not overrides:
            return self
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, value in overrides.items():
            if key not in values:
                raise ConfigurationError(f"未知の選定基準です: {key}")
            values[key] = value
        criteria = SelectionCriteria(**values)
        criteria.validate()
        return criteria

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class NotificationConfig:
    """通知設定"""

    enabled: bool = True
    """勝者選定時にサイクルサマリーを通知するか"""

    channels: List[str] = field(default_factory=lambda: ["email"])
    """通知チャネル（"email", "slack" など。配送は外部）"""

    stakeholders: List[str] = field(default_factory=list)
    """通知先"""


@dataclass
class SchedulerConfig:
    """勝者スケジューラー設定

    check_interval 以外の変更は次のサイクルから反映される。
    check_interval を稼働中に変更するとタイマーが再起動される。
    """

    enabled: bool = True
    """タイマー駆動のサイクルを有効にするか（force_run は常に実行可能）"""

    check_interval: int = 30
    """評価サイクル間隔（分）。テスト用に最小1分、本番ではより大きな値を推奨"""

    max_concurrent_evaluations: int = 5
    """1サイクルで並行評価するテストの上限"""

    minimum_test_age_hours: int = 24
    """評価対象とするテストの最小経過時間（時間）"""

    default_criteria: SelectionCriteria = field(default_factory=SelectionCriteria)
    """デフォルトの勝者選定基準"""

    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    """通知設定"""

    def validate(self) -> None:
        if self.check_interval < 1:
            raise ConfigurationError(
                f"check_interval は1分以上で指定してください: {self.check_interval}"
            )
        if self.max_concurrent_evaluations < 1:
            raise ConfigurationError(
                "max_concurrent_evaluations は1以上で指定してください: "
                f"{self.max_concurrent_evaluations}"
            )
        if self.minimum_test_age_hours < 0:
            raise ConfigurationError(
                f"minimum_test_age_hours は0以上で指定してください: {self.minimum_test_age_hours}"
            )
        self.default_criteria.validate()


@dataclass
class EngineConfig:
    """判定エンジン全体の設定

    使用例:
        config = EngineConfig()
        config = load_engine_config("config/engine.yaml")
    """

    statistics: StatisticsConfig = field(default_factory=StatisticsConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)

    def validate(self) -> None:
        self.scheduler.validate()


# === リスク許容度ごとの最大許容リスク ===
RISK_TOLERANCE_LIMITS: Dict[str, float] = {
    "conservative": 50.0,
    "moderate": 70.0,
    "aggressive": 85.0,
}

FALLBACK_STRATEGIES: List[str] = ["extend_test", "select_control", "manual_review"]

PRIMARY_METRICS: List[str] = ["conversion_rate", "revenue", "engagement", "composite"]

# === 実装戦略のリスク帯（リスクスコア上限 -> 戦略）===
STRATEGY_RISK_BANDS: List[tuple] = [
    (30.0, "immediate"),
    (60.0, "gradual"),
]
"""上限未満で該当戦略。いずれにも該当しない場合は staged"""

# === 段階的ロールアウトのテンプレート ===
IMPLEMENTATION_PHASE_TEMPLATES: Dict[str, List[Dict[str, Any]]] = {
    "immediate": [
        {"id": "full_rollout", "name": "Full Rollout",
         "description": "Immediate implementation to 100% of traffic",
         "rollout_percentage": 100, "duration_hours": 1},
    ],
    "gradual": [
        {"id": "phase_1", "name": "Phase 1: 25% Rollout",
         "description": "Initial rollout to 25% of traffic",
         "rollout_percentage": 25, "duration_hours": 24},
        {"id": "phase_2", "name": "Phase 2: 50% Rollout",
         "description": "Expand to 50% of traffic",
         "rollout_percentage": 50, "duration_hours": 24},
        {"id": "phase_3", "name": "Phase 3: 100% Rollout",
         "description": "Full implementation",
         "rollout_percentage": 100, "duration_hours": 24},
    ],
    "staged": [
        {"id": "pilot", "name": "Pilot Phase",
         "description": "Limited pilot with 10% traffic",
         "rollout_percentage": 10, "duration_hours": 48},
        {"id": "expanded", "name": "Expanded Phase",
         "description": "Expanded rollout to 50% traffic",
         "rollout_percentage": 50, "duration_hours": 72},
        {"id": "full", "name": "Full Implementation",
         "description": "Complete rollout",
         "rollout_percentage": 100, "duration_hours": 24},
    ],
    "delayed": [],
}

# === 監視計画 ===
MONITORING_METRICS: List[str] = ["conversion_rate", "revenue", "bounce_rate", "error_rate"]

MONITORING_EXTRA_HOURS: int = 24
"""全フェーズ完了後に追加で監視する時間"""

ALERT_THRESHOLDS: Dict[str, float] = {
    "conversion_rate_drop": 10,      # 10%低下でアラート
    "revenue_drop": 15,
    "error_rate_increase": 200,      # 200%増加
    "bounce_rate_increase": 25,
}

ESCALATION_PLAN: List[Dict[str, Any]] = [
    {"level": 1, "condition": "Minor metric deviation",
     "action": "Send alert notification",
     "contacts": ["team@company.com"]},
    {"level": 2, "condition": "Significant metric degradation",
     "action": "Pause rollout and investigate",
     "contacts": ["team@company.com", "manager@company.com"]},
    {"level": 3, "condition": "Critical performance issues",
     "action": "Immediate rollback",
     "contacts": ["team@company.com", "manager@company.com", "exec@company.com"]},
]

# === ロールバック ===
ROLLBACK_TRIGGERS: List[Dict[str, Any]] = [
    {"metric": "conversion_rate", "threshold": -10, "timeframe_minutes": 30, "action": "rollback"},
    {"metric": "error_rate", "threshold": 200, "timeframe_minutes": 15, "action": "pause"},
]

ROLLBACK_PROCEDURE: List[Dict[str, Any]] = [
    {"order": 1, "action": "pause_traffic",
     "description": "Immediately pause traffic to new variant",
     "owner": "DevOps Team", "estimated_minutes": 2, "dependencies": []},
    {"order": 2, "action": "restore_control",
     "description": "Restore traffic to control variant",
     "owner": "DevOps Team", "estimated_minutes": 5, "dependencies": ["pause_traffic"]},
    {"order": 3, "action": "verify_restoration",
     "description": "Verify metrics return to baseline",
     "owner": "Analytics Team", "estimated_minutes": 15, "dependencies": ["restore_control"]},
]

ROLLBACK_TIME_MINUTES: int = 10

ROLLBACK_COMMUNICATION_PLAN: List[str] = [
    "Notify development team",
    "Update status dashboard",
    "Inform stakeholders",
    "Document incident",
]

ROLLBACK_DATA_PRESERVATION: List[str] = [
    "Backup current metrics",
    "Save rollback timestamp",
    "Preserve variant configurations",
    "Archive test results",
]

REVENUE_UNCERTAINTY: float = 0.3
"""収益インパクト推定の不確実性幅（±30%）"""


def _apply_section(target: Any, data: Dict[str, Any], path: str) -> None:
    """辞書の値をデータクラスへ再帰的に反映する"""
    known = {f.name: f for f in fields(target)}
    for key, value in data.items():
        if key not in known:
            raise ConfigurationError(f"未知の設定項目です: {path}{key}")
        current = getattr(target, key)
        if is_dataclass(current):
            if not isinstance(value, dict):
                raise ConfigurationError(f"{path}{key} はオブジェクトで指定してください")
            _apply_section(current, value, f"{path}{key}.")
        else:
            setattr(target, key, value)


def engine_config_from_dict(data: Dict[str, Any]) -> EngineConfig:
    """辞書から EngineConfig を構築して検証する"""
    config = EngineConfig()
    _apply_section(config, data or {}, "")
    config.validate()
    return config


def load_engine_config(path: str) -> EngineConfig:
    """YAMLファイルから EngineConfig を読み込む

    Args:
        path: YAMLファイルのパス

    Returns:
        検証済みの EngineConfig

    Raises:
        ConfigurationError: 構造や値が不正な場合
    """
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError("設定YAMLのルートはオブジェクトである必要があります")
    return engine_config_from_dict(data)
