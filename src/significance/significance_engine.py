# src/significance/significance_engine.py
"""統計的有意性判定エンジン

コントロール1つと複数のバリアントからなるA/Bテストを分析し、
バリアントごとの統計結果・データ品質チェック・サンプルサイズ/検出力分析・
ステータスと推奨アクションを含む TestAnalysis を生成する。

計算はすべて入力バリアントの純粋関数で、内部状態を持たない。
唯一の例外は到達日数推定で使う現在時刻で、clock 引数で差し替え可能。
"""

import logging
import math
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from src.config.engine_config import ConfigurationError, StatisticsConfig
from src.significance import stats_kernel
from src.significance.models import (
    AnalysisStatus,
    CheckStatus,
    Impact,
    PowerAnalysis,
    QualityCheck,
    QualityCheckType,
    RecommendedAction,
    SampleSizeAnalysis,
    StatisticalResult,
    TestAnalysis,
    Variant,
)


logger = logging.getLogger(__name__)


SECONDS_PER_DAY = 24 * 60 * 60


class SignificanceEngine:
    """A/Bテストの統計分析エンジン

    使用例:
        engine = SignificanceEngine()
        analysis = engine.analyze_test("test-1", variants)
        if analysis.status == AnalysisStatus.SIGNIFICANT:
            print(analysis.winning_variant)
    """

    def __init__(
        self,
        config: Optional[StatisticsConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            config: 統計パラメータ（省略時はデフォルト）
            clock: 現在時刻を返す関数（テスト用に差し替え可能）
        """
        self.config = config or StatisticsConfig()
        self._clock = clock or datetime.now

    # === 公開API ===

    def analyze_test(
        self,
        test_id: str,
        variants: List[Variant],
        target_confidence: Optional[float] = None,
    ) -> TestAnalysis:
        """テスト全体を分析する

        Args:
            test_id: テストID
            variants: コントロールを含むバリアント一覧
            target_confidence: 信頼水準（省略時は設定値）

        Returns:
            TestAnalysis

        Raises:
            ConfigurationError: バリアントが空、またはコントロールがちょうど1つでない場合
        """
        confidence = target_confidence or self.config.confidence_level
        control = self._find_control(variants)

        quality_checks = self.perform_quality_checks(variants)
        results = self.calculate_variant_results(variants, control, confidence)
        sample_size_analysis = self.analyze_sample_size(variants, control)
        power_analysis = self.analyze_power(control)

        status = self._determine_status(results, quality_checks, variants)
        recommended_action = self._recommend(
            status, quality_checks, sample_size_analysis, power_analysis
        )

        analysis = TestAnalysis(
            test_id=test_id,
            status=status,
            overall_significance=self._overall_significance(results),
            recommended_action=recommended_action,
            winning_variant=self._find_winning_variant(results),
            results=results,
            sample_size_analysis=sample_size_analysis,
            power_analysis=power_analysis,
            quality_checks=quality_checks,
            time_to_significance_days=self.estimate_time_to_significance(
                control, results
            ),
            confidence=confidence,
        )

        logger.debug(
            f"テスト分析完了: test_id={test_id}, status={status.value}, "
            f"action={recommended_action.value}, winner={analysis.winning_variant}"
        )
        return analysis

    # === バリアント結果 ===

    def calculate_variant_results(
        self,
        variants: List[Variant],
        control: Variant,
        confidence: float,
    ) -> List[StatisticalResult]:
        """全バリアントの統計結果をコントロールとの比較で計算"""
        results = []
        for variant in variants:
            if variant.is_control:
                results.append(self._control_result(variant, confidence))
            else:
                results.append(self._compare_to_control(variant, control, confidence))
        return results

    def _control_result(self, control: Variant, confidence: float) -> StatisticalResult:
        rate = control.metrics.conversion_rate
        se = _standard_error(rate, control.metrics.impressions)
        return StatisticalResult(
            variant=control.id,
            conversion_rate=rate,
            confidence_interval=self._wald_interval(rate, se, confidence),
            standard_error=se,
            z_score=0.0,
            p_value=1.0,
            is_significant=False,
            improvement=0.0,
            improvement_confidence_interval=(0.0, 0.0),
            is_control=True,
        )

    def _compare_to_control(
        self,
        variant: Variant,
        control: Variant,
        confidence: float,
    ) -> StatisticalResult:
        variant_rate = variant.metrics.conversion_rate
        control_rate = control.metrics.conversion_rate
        variant_se = _standard_error(variant_rate, variant.metrics.impressions)
        control_se = _standard_error(control_rate, control.metrics.impressions)

        pooled_se = math.sqrt(variant_se ** 2 + control_se ** 2)
        if pooled_se > 0:
            z_score = (variant_rate - control_rate) / pooled_se
            p_value = 2.0 * (1.0 - stats_kernel.normal_cdf(abs(z_score)))
        else:
            z_score = 0.0
            p_value = 1.0

        improvement = (
            (variant_rate - control_rate) / control_rate if control_rate > 0 else 0.0
        )

        # デルタ法による相対改善率の標準誤差
        relative_variance = 0.0
        if variant_rate > 0:
            relative_variance += (variant_se / variant_rate) ** 2
        if control_rate > 0:
            relative_variance += (control_se / control_rate) ** 2
        improvement_margin = (
            self._z_critical(confidence) * abs(improvement) * math.sqrt(relative_variance)
        )

        return StatisticalResult(
            variant=variant.id,
            conversion_rate=variant_rate,
            confidence_interval=self._wald_interval(variant_rate, variant_se, confidence),
            standard_error=variant_se,
            z_score=z_score,
            p_value=p_value,
            is_significant=p_value < 1.0 - confidence,
            improvement=improvement,
            improvement_confidence_interval=(
                improvement - improvement_margin,
                improvement + improvement_margin,
            ),
        )

    def _wald_interval(
        self, rate: float, se: float, confidence: float
    ) -> Tuple[float, float]:
        margin = self._z_critical(confidence) * se
        return max(0.0, rate - margin), min(1.0, rate + margin)

    # === 品質チェック ===

    def perform_quality_checks(self, variants: List[Variant]) -> List[QualityCheck]:
        """データ品質チェックを実行

        SRM・データ完全性・トラフィック配分の3つは常に1件ずつ、
        外れ値チェックは該当バリアントごとに0件以上出力される。
        """
        checks = [
            self.check_sample_ratio_mismatch(variants),
            self.check_data_completeness(variants),
            self.check_traffic_allocation(variants),
        ]
        checks.extend(self.detect_outliers(variants))
        return checks

    def check_sample_ratio_mismatch(self, variants: List[Variant]) -> QualityCheck:
        """配分から期待されるインプレッション比と観測値のカイ二乗適合度検定"""
        total = sum(v.metrics.impressions for v in variants)

        chi_square = 0.0
        if total > 0:
            for variant in variants:
                expected = variant.traffic_allocation / 100.0 * total
                actual = variant.metrics.impressions
                if expected > 0:
                    chi_square += (actual - expected) ** 2 / expected
                elif actual > 0:
                    chi_square = math.inf

        df = len(variants) - 1
        if self.config.exact_critical_values and df >= 1:
            critical = stats_kernel.exact_chi_square_critical(df, self.config.srm_alpha)
        else:
            critical = stats_kernel.chi_square_critical(df, self.config.srm_alpha)

        if chi_square > critical:
            return QualityCheck(
                type=QualityCheckType.SAMPLE_RATIO_MISMATCH,
                status=CheckStatus.FAIL,
                message=(
                    f"Sample ratio mismatch detected "
                    f"(chi2 = {chi_square:.2f}, critical = {critical:.2f})"
                ),
                impact=Impact.HIGH,
                recommendation="Investigate traffic allocation issues before proceeding",
            )
        return QualityCheck(
            type=QualityCheckType.SAMPLE_RATIO_MISMATCH,
            status=CheckStatus.PASS,
            message="Sample ratios match expected allocation",
            impact=Impact.LOW,
        )

    def check_data_completeness(self, variants: List[Variant]) -> QualityCheck:
        """インプレッションがあり clicks/conversions が定義済みのバリアント比率"""
        incomplete = [
            v for v in variants
            if v.metrics.impressions == 0
            or v.metrics.clicks is None
            or v.metrics.conversions is None
        ]
        completeness = (len(variants) - len(incomplete)) / len(variants) * 100.0

        if completeness >= 100.0:
            status, impact = CheckStatus.PASS, Impact.LOW
        elif completeness >= 90.0:
            status, impact = CheckStatus.WARNING, Impact.MEDIUM
        else:
            status, impact = CheckStatus.FAIL, Impact.HIGH

        return QualityCheck(
            type=QualityCheckType.DATA_COMPLETENESS,
            status=status,
            message=f"Data completeness: {completeness:.1f}%",
            impact=impact,
            recommendation=(
                "Review data collection for missing metrics"
                if status != CheckStatus.PASS else None
            ),
        )

    def check_traffic_allocation(self, variants: List[Variant]) -> QualityCheck:
        """配分の合計が100（±0.1）であること"""
        total = sum(v.traffic_allocation for v in variants)
        if abs(total - 100.0) < 0.1:
            return QualityCheck(
                type=QualityCheckType.TRAFFIC_ALLOCATION,
                status=CheckStatus.PASS,
                message=f"Traffic allocation sums to {total:.1f}%",
                impact=Impact.LOW,
            )
        return QualityCheck(
            type=QualityCheckType.TRAFFIC_ALLOCATION,
            status=CheckStatus.FAIL,
            message=f"Traffic allocation sums to {total:.1f}%",
            impact=Impact.HIGH,
            recommendation="Adjust traffic allocation to sum to 100%",
        )

    def detect_outliers(self, variants: List[Variant]) -> List[QualityCheck]:
        """コンバージョン率のzスコアが閾値を超えるバリアントを警告"""
        rates = [v.metrics.conversion_rate for v in variants]
        mean = sum(rates) / len(rates)
        stdev = math.sqrt(sum((r - mean) ** 2 for r in rates) / len(rates))
        if stdev == 0:
            return []

        checks = []
        for variant, rate in zip(variants, rates):
            if abs((rate - mean) / stdev) > self.config.outlier_threshold:
                checks.append(QualityCheck(
                    type=QualityCheckType.OUTLIER_DETECTION,
                    status=CheckStatus.WARNING,
                    message=f"Variant {variant.name} has unusual conversion rate",
                    impact=Impact.MEDIUM,
                    recommendation="Investigate variant configuration and data quality",
                ))
        return checks

    # === サンプルサイズ・検出力 ===

    def analyze_sample_size(
        self, variants: List[Variant], control: Variant
    ) -> SampleSizeAnalysis:
        """最小検出効果に対する必要サンプル数と進捗"""
        current = sum(v.metrics.impressions for v in variants)
        effect = stats_kernel.effect_size(
            control.metrics.conversion_rate, self.config.minimum_detectable_effect
        )
        if effect == 0:
            return SampleSizeAnalysis(current=current, required=0, progress=0.0)

        per_variant = stats_kernel.required_sample_size(
            effect,
            self.config.power,
            1.0 - self.config.confidence_level,
            exact=self.config.exact_critical_values,
        )
        required = per_variant * len(variants)
        return SampleSizeAnalysis(
            current=current,
            required=required,
            progress=min(100.0, current / required * 100.0),
        )

    def analyze_power(self, control: Variant) -> PowerAnalysis:
        """コントロールの現サンプル数での検出力"""
        effect = stats_kernel.effect_size(
            control.metrics.conversion_rate, self.config.minimum_detectable_effect
        )
        current_power = stats_kernel.power(
            control.metrics.impressions,
            effect,
            1.0 - self.config.confidence_level,
            exact=self.config.exact_critical_values,
        )
        return PowerAnalysis(
            current_power=current_power,
            target_power=self.config.power,
            minimum_detectable_effect=self.config.minimum_detectable_effect,
        )

    def estimate_time_to_significance(
        self,
        control: Variant,
        results: List[StatisticalResult],
    ) -> Optional[float]:
        """有意差到達までの残り日数を推定

        コントロールの1日あたりインプレッションを外挿し、最良候補の観測改善率を
        検出するのに必要なサンプル数に届くまでの日数を返す。
        改善している候補がない、または経過時間がない場合は None。
        """
        candidates = [r for r in results if not r.is_control and r.improvement > 0]
        if not candidates:
            return None
        best = max(candidates, key=lambda r: r.improvement)

        elapsed_days = (
            self._clock() - control.start_time
        ).total_seconds() / SECONDS_PER_DAY
        if elapsed_days <= 0 or control.metrics.impressions <= 0:
            return None
        impressions_per_day = control.metrics.impressions / elapsed_days

        effect = stats_kernel.effect_size(
            control.metrics.conversion_rate, best.improvement
        )
        if effect == 0:
            return None
        required = stats_kernel.required_sample_size(
            effect,
            self.config.power,
            1.0 - self.config.confidence_level,
            exact=self.config.exact_critical_values,
        )
        remaining = max(0, required - control.metrics.impressions)
        return remaining / impressions_per_day

    # === ステータス・推奨 ===

    def _determine_status(
        self,
        results: List[StatisticalResult],
        quality_checks: List[QualityCheck],
        variants: List[Variant],
    ) -> AnalysisStatus:
        if any(c.is_critical for c in quality_checks):
            return AnalysisStatus.INCONCLUSIVE
        if any(r.is_significant for r in results if not r.is_control):
            return AnalysisStatus.SIGNIFICANT

        total = sum(v.metrics.impressions for v in variants)
        if total < self.config.minimum_sample_size * len(variants):
            return AnalysisStatus.INSUFFICIENT_DATA
        return AnalysisStatus.RUNNING

    @staticmethod
    def _recommend(
        status: AnalysisStatus,
        quality_checks: List[QualityCheck],
        sample_size: SampleSizeAnalysis,
        power_analysis: PowerAnalysis,
    ) -> RecommendedAction:
        if any(c.is_critical for c in quality_checks):
            return RecommendedAction.INVESTIGATE
        if status == AnalysisStatus.SIGNIFICANT:
            return RecommendedAction.STOP
        if status == AnalysisStatus.INSUFFICIENT_DATA:
            return RecommendedAction.CONTINUE
        if sample_size.progress < 50 or power_analysis.current_power < 0.6:
            return RecommendedAction.CONTINUE
        # progress は100で頭打ちのため、超過判定は生の比率で行う
        if sample_size.required > 0 and sample_size.current / sample_size.required > 1.2:
            return RecommendedAction.STOP
        return RecommendedAction.EXTEND

    @staticmethod
    def _overall_significance(results: List[StatisticalResult]) -> float:
        significant = [r for r in results if r.is_significant and not r.is_control]
        if not significant:
            return 0.0
        return max(r.confidence for r in significant)

    @staticmethod
    def _find_winning_variant(results: List[StatisticalResult]) -> Optional[str]:
        candidates = [
            r for r in results
            if r.is_significant and r.improvement > 0 and not r.is_control
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda r: r.improvement).variant

    # === ヘルパー ===

    def _z_critical(self, confidence: float) -> float:
        if self.config.exact_critical_values:
            return stats_kernel.exact_z_critical(confidence)
        return stats_kernel.z_critical(confidence)

    @staticmethod
    def _find_control(variants: List[Variant]) -> Variant:
        if not variants:
            raise ConfigurationError("バリアントが指定されていません")
        controls = [v for v in variants if v.is_control]
        if not controls:
            raise ConfigurationError("コントロールバリアントが見つかりません")
        if len(controls) > 1:
            raise ConfigurationError(
                f"コントロールバリアントは1つである必要があります: {len(controls)}件"
            )
        return controls[0]


def _standard_error(rate: float, impressions: int) -> float:
    if impressions <= 0:
        return 0.0
    return math.sqrt(rate * (1.0 - rate) / impressions)
