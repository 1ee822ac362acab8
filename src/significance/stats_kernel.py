# src/significance/stats_kernel.py
"""統計カーネルモジュール

A/Bテスト判定に使う純粋な数値関数群。状態を持たない。

提供する関数:
- normal_cdf: 標準正規分布の累積分布関数（Zelen & Severo 近似）
- z_critical: 両側z臨界値のテーブル参照
- chi_square_critical: カイ二乗臨界値のテーブル参照（α=0.05, df=1..5）
- effect_size: 2比率の標準化効果量
- required_sample_size: 必要サンプル数
- power: 検出力

テーブル外の入力はフォールバック値を返す（z: 1.96, χ²: df=1 の値）。
exact_z_critical / exact_chi_square_critical は scipy.stats で厳密値を計算する。
"""

import math
from typing import Dict

from scipy import stats


# 両側z臨界値（信頼水準 -> z）
Z_CRITICAL_VALUES: Dict[float, float] = {
    0.90: 1.645,
    0.95: 1.96,
    0.99: 2.576,
}

DEFAULT_Z_CRITICAL = 1.96

# α=0.05 のカイ二乗臨界値（自由度 -> 値）
CHI_SQUARE_CRITICAL_VALUES: Dict[int, float] = {
    1: 3.841,
    2: 5.991,
    3: 7.815,
    4: 9.488,
    5: 11.071,
}

# Abramowitz & Stegun 26.2.17 の係数
_P = 0.2316419
_B = (0.319381530, -0.356563782, 1.781477937, -1.821255978, 1.330274429)
_INV_SQRT_2PI = 1.0 / math.sqrt(2.0 * math.pi)

_LOOKUP_TOLERANCE = 1e-9


def normal_cdf(x: float) -> float:
    """標準正規分布の累積分布関数

    Zelen & Severo の多項式近似。誤差は 7.5e-8 以下。
    """
    t = 1.0 / (1.0 + _P * abs(x))
    d = _INV_SQRT_2PI * math.exp(-x * x / 2.0)
    poly = t * (_B[0] + t * (_B[1] + t * (_B[2] + t * (_B[3] + t * _B[4]))))
    prob = d * poly
    return 1.0 - prob if x > 0 else prob


def z_critical(level: float) -> float:
    """信頼水準（または検出力）に対応する両側z臨界値

    0.90 / 0.95 / 0.99 以外は 1.96 を返す（近似）。
    """
    for key, value in Z_CRITICAL_VALUES.items():
        if abs(key - level) < _LOOKUP_TOLERANCE:
            return value
    return DEFAULT_Z_CRITICAL


def chi_square_critical(df: int, alpha: float = 0.05) -> float:
    """カイ二乗分布の臨界値（α=0.05 のテーブル）

    df が 1..5 以外の場合は df=1 の値を返す。alpha は参照しない。
    """
    return CHI_SQUARE_CRITICAL_VALUES.get(df, CHI_SQUARE_CRITICAL_VALUES[1])


def exact_z_critical(level: float) -> float:
    """両側z臨界値の厳密値（scipy.stats.norm.ppf）"""
    return float(stats.norm.ppf(1.0 - (1.0 - level) / 2.0))


def exact_chi_square_critical(df: int, alpha: float = 0.05) -> float:
    """カイ二乗臨界値の厳密値（scipy.stats.chi2.ppf）"""
    if df < 1:
        raise ValueError(f"自由度は1以上で指定してください: {df}")
    return float(stats.chi2.ppf(1.0 - alpha, df))


def effect_size(baseline_rate: float, relative_improvement: float) -> float:
    """2比率の標準化効果量

    d = (new_rate - baseline_rate) / sqrt(baseline_rate * (1 - baseline_rate))
    ベースラインが 0 または 1 の場合は分散が 0 のため 0.0 を返す。
    """
    variance = baseline_rate * (1.0 - baseline_rate)
    if variance <= 0:
        return 0.0
    new_rate = baseline_rate * (1.0 + relative_improvement)
    return (new_rate - baseline_rate) / math.sqrt(variance)


def required_sample_size(
    effect: float,
    power: float = 0.8,
    alpha: float = 0.05,
    exact: bool = False,
) -> int:
    """バリアントあたりの必要サンプル数

    n = ceil(2 * ((z_alpha + z_beta) / d)^2)

    Raises:
        ValueError: 効果量が 0 の場合
    """
    if effect == 0:
        raise ValueError("effect size must be non-zero")
    z_alpha, z_beta = _z_pair(power, alpha, exact)
    return math.ceil(2.0 * ((z_alpha + z_beta) / effect) ** 2)


def power(
    sample_size: float,
    effect: float,
    alpha: float = 0.05,
    exact: bool = False,
) -> float:
    """サンプル数と効果量から検出力を計算（required_sample_size の逆）"""
    z_alpha = exact_z_critical(1.0 - alpha) if exact else z_critical(1.0 - alpha)
    z_beta = abs(effect) * math.sqrt(max(sample_size, 0) / 2.0) - z_alpha
    return normal_cdf(z_beta)


def _z_pair(power_level: float, alpha: float, exact: bool) -> tuple:
    if exact:
        return exact_z_critical(1.0 - alpha), exact_z_critical(power_level)
    return z_critical(1.0 - alpha), z_critical(power_level)
