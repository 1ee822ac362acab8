# tests/significance/test_stats_kernel.py
"""stats_kernel のユニットテスト

テスト観点:
- normal_cdf: scipy.stats.norm.cdf との誤差
- 臨界値: テーブル参照とフォールバック、scipy による厳密値
- effect_size / required_sample_size / power の関係
"""

import math

import pytest
from scipy import stats

from src.significance import stats_kernel


# =============================================================================
# 正規分布
# =============================================================================


class TestNormalCdf:
    """normal_cdf のテスト"""

    @pytest.mark.parametrize("x", [-4.0, -2.5, -1.96, -0.5, 0.0, 0.3, 1.0, 1.96, 3.1, 5.0])
    def test_matches_scipy(self, x):
        """scipy の正規分布CDFと 1e-7 以内で一致する"""
        assert stats_kernel.normal_cdf(x) == pytest.approx(stats.norm.cdf(x), abs=1e-7)

    def test_symmetry(self):
        """Φ(x) + Φ(-x) = 1"""
        for x in (0.1, 0.8, 2.2):
            total = stats_kernel.normal_cdf(x) + stats_kernel.normal_cdf(-x)
            assert total == pytest.approx(1.0, abs=1e-7)

    def test_zero_is_half(self):
        assert stats_kernel.normal_cdf(0.0) == pytest.approx(0.5, abs=1e-7)


# =============================================================================
# 臨界値
# =============================================================================


class TestCriticalValues:
    """臨界値テーブルと厳密値のテスト"""

    @pytest.mark.parametrize("level, expected", [(0.90, 1.645), (0.95, 1.96), (0.99, 2.576)])
    def test_z_critical_table(self, level, expected):
        assert stats_kernel.z_critical(level) == expected

    def test_z_critical_falls_back_outside_table(self):
        """テーブル外の水準は 1.96 を返す"""
        assert stats_kernel.z_critical(0.8) == 1.96
        assert stats_kernel.z_critical(0.975) == 1.96

    def test_z_critical_tolerates_float_noise(self):
        assert stats_kernel.z_critical(1.0 - 0.05) == 1.96

    @pytest.mark.parametrize("df, expected", [(1, 3.841), (2, 5.991), (3, 7.815), (4, 9.488), (5, 11.071)])
    def test_chi_square_table(self, df, expected):
        assert stats_kernel.chi_square_critical(df) == expected

    def test_chi_square_falls_back_to_df_one(self):
        """自由度 6 以上や 0 は df=1 の値"""
        assert stats_kernel.chi_square_critical(6) == 3.841
        assert stats_kernel.chi_square_critical(0) == 3.841

    def test_table_values_close_to_scipy(self):
        """テーブル値は scipy の厳密値を丸めたもの"""
        for df in range(1, 6):
            assert stats_kernel.chi_square_critical(df) == pytest.approx(
                stats.chi2.ppf(0.95, df), abs=1e-3
            )
        for level in (0.90, 0.95, 0.99):
            assert stats_kernel.z_critical(level) == pytest.approx(
                stats_kernel.exact_z_critical(level), abs=1e-3
            )

    def test_exact_chi_square_beyond_table(self):
        assert stats_kernel.exact_chi_square_critical(6) == pytest.approx(12.5916, abs=1e-4)

    def test_exact_chi_square_rejects_invalid_df(self):
        with pytest.raises(ValueError):
            stats_kernel.exact_chi_square_critical(0)


# =============================================================================
# 効果量・サンプルサイズ・検出力
# =============================================================================


class TestSampleSizeAndPower:
    """effect_size / required_sample_size / power のテスト"""

    def test_effect_size(self):
        expected = 0.005 / math.sqrt(0.05 * 0.95)
        assert stats_kernel.effect_size(0.05, 0.1) == pytest.approx(expected)

    @pytest.mark.parametrize("baseline", [0.0, 1.0])
    def test_effect_size_degenerate_baseline(self, baseline):
        assert stats_kernel.effect_size(baseline, 0.1) == 0.0

    def test_required_sample_size_formula(self):
        """n = ceil(2 * ((z_alpha + z_beta) / d)^2)（検出力 0.8 はテーブル外で 1.96）"""
        effect = stats_kernel.effect_size(0.05, 0.1)
        expected = math.ceil(2.0 * ((1.96 + 1.96) / effect) ** 2)
        assert stats_kernel.required_sample_size(effect) == expected

    def test_required_sample_size_zero_effect_raises(self):
        with pytest.raises(ValueError, match="non-zero"):
            stats_kernel.required_sample_size(0.0)

    def test_required_sample_size_decreases_with_effect(self):
        small = stats_kernel.required_sample_size(0.05)
        large = stats_kernel.required_sample_size(0.2)
        assert small > large

    @pytest.mark.parametrize("effect", [0.01, 0.05, 0.2, 0.5])
    @pytest.mark.parametrize("target_power", [0.8, 0.9])
    @pytest.mark.parametrize("exact", [False, True])
    def test_required_sample_size_achieves_power(self, effect, target_power, exact):
        """必要サンプル数での検出力は要求値以上"""
        n = stats_kernel.required_sample_size(effect, target_power, 0.05, exact=exact)
        achieved = stats_kernel.power(n, effect, 0.05, exact=exact)
        assert achieved >= target_power

    def test_power_increases_with_sample_size(self):
        effect = stats_kernel.effect_size(0.05, 0.1)
        assert stats_kernel.power(1000, effect) < stats_kernel.power(50000, effect)

    def test_power_with_no_samples(self):
        """サンプル 0 では検出力はほぼ 0"""
        assert stats_kernel.power(0, 0.1) < 0.05
