# 統計的有意性
"""
SignificanceCalculator: 2バリアント間の統計的有意性を計算する

- compute(): 2標本比率の z 検定（プールした比率を使用）
    p̂  = (p1·n1 + p2·n2) / (n1 + n2)
    SE = √(p̂(1−p̂)(1/n1 + 1/n2))
    z  = |p1 − p2| / SE
    p  = 2·(1 − Φ(z))
    CI = (p2 − p1) ± z_critical·SE
- compare_means(): 連続値メトリクスの Welch t 検定（scipy.stats.ttest_ind）

Φ は Abramowitz & Stegun 26.2.17 の有理多項式近似（z>0 で導出されるため
符号で分岐し、Φ(−z) = 1 − Φ(z) を使う）。cdf_method="scipy" で
scipy.stats.norm.cdf に切り替えられる。
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from scipy import stats

from src.config.experimentation_config import ExperimentationConfig
from src.models.errors import ComputationError, ConfigurationError

# Abramowitz & Stegun 26.2.17 の係数（|誤差| < 7.5e-8）
_AS_P = 0.2316419
_AS_B = (0.319381530, -0.356563782, 1.781477937, -1.821255978, 1.330274429)
_INV_SQRT_2PI = 0.3989422804014327

CDF_METHODS = ("abramowitz_stegun", "scipy")


@dataclass(frozen=True)
class ProportionSample:
    """比率検定の入力 {successes, trials}"""
    successes: int
    trials: int

    @property
    def rate(self) -> float:
        if self.trials <= 0:
            raise ComputationError("Cannot compute a rate with zero trials")
        return self.successes / self.trials


@dataclass(frozen=True)
class SignificanceResult:
    """有意性検定の結果"""
    p_value: float
    significant: bool
    confidence_interval: Tuple[float, float]
    z_score: float
    control_rate: float
    treatment_rate: float

    def to_dict(self):
        return {
            "p_value": self.p_value,
            "significant": self.significant,
            "confidence_interval": {
                "lower": self.confidence_interval[0],
                "upper": self.confidence_interval[1],
            },
            "z_score": self.z_score,
            "control_rate": self.control_rate,
            "treatment_rate": self.treatment_rate,
        }


@dataclass(frozen=True)
class MeanComparisonResult:
    """連続値メトリクスの t 検定結果"""
    p_value: float
    significant: bool
    t_statistic: float
    control_mean: float
    treatment_mean: float


def normal_cdf(x: float) -> float:
    """標準正規分布の累積分布関数（有理多項式近似）"""
    t = 1.0 / (1.0 + _AS_P * abs(x))
    density = _INV_SQRT_2PI * math.exp(-x * x / 2.0)
    poly = t * (_AS_B[0] + t * (_AS_B[1] + t * (_AS_B[2] + t * (_AS_B[3] + t * _AS_B[4]))))
    upper_tail = density * poly
    return 1.0 - upper_tail if x >= 0 else upper_tail


class SignificanceCalculator:
    """有意性計算クラス

    使用例:
        calculator = SignificanceCalculator()
        result = calculator.compute(
            ProportionSample(successes=100, trials=1000),
            ProportionSample(successes=150, trials=1000),
        )
        result.significant  # True

    Attributes:
        alpha: 有意水準
        z_critical: 信頼区間のz値
        cdf_method: 正規分布CDFの計算方法
    """

    def __init__(self, config: Optional[ExperimentationConfig] = None):
        self.config = config or ExperimentationConfig()
        self.alpha = self.config.significance_alpha
        self.z_critical = self.config.z_critical
        if self.config.cdf_method not in CDF_METHODS:
            raise ConfigurationError(
                f"Unknown cdf_method '{self.config.cdf_method}'. Valid: {CDF_METHODS}"
            )
        self.cdf_method = self.config.cdf_method

    def cdf(self, z: float) -> float:
        if self.cdf_method == "scipy":
            return float(stats.norm.cdf(z))
        return normal_cdf(z)

    def compute(
        self,
        control: ProportionSample,
        treatment: ProportionSample,
    ) -> SignificanceResult:
        """2標本比率の z 検定

        Raises:
            ComputationError: 試行数が0以下、成功数が範囲外、結果が非有限の場合
        """
        for label, sample in (("control", control), ("treatment", treatment)):
            if sample.trials <= 0:
                raise ComputationError(
                    f"{label} has no trials; need trials > 0 on both variants"
                )
            if sample.successes < 0 or sample.successes > sample.trials:
                raise ComputationError(
                    f"{label} successes ({sample.successes}) must be within "
                    f"[0, trials={sample.trials}]"
                )

        n1, n2 = control.trials, treatment.trials
        p1, p2 = control.rate, treatment.rate

        pooled = (p1 * n1 + p2 * n2) / (n1 + n2)
        standard_error = math.sqrt(pooled * (1.0 - pooled) * (1.0 / n1 + 1.0 / n2))
        diff = p2 - p1

        if standard_error == 0.0:
            # 両側とも 0% または 100%: 分散がなく差もない
            return SignificanceResult(
                p_value=1.0,
                significant=False,
                confidence_interval=(diff, diff),
                z_score=0.0,
                control_rate=p1,
                treatment_rate=p2,
            )

        z_score = abs(p1 - p2) / standard_error
        p_value = 2.0 * (1.0 - self.cdf(z_score))
        p_value = min(max(p_value, 0.0), 1.0)
        margin = self.z_critical * standard_error

        if not all(math.isfinite(v) for v in (z_score, p_value, margin)):
            raise ComputationError(
                f"Non-finite significance result: z={z_score}, p={p_value}"
            )

        return SignificanceResult(
            p_value=p_value,
            significant=p_value < self.alpha,
            confidence_interval=(diff - margin, diff + margin),
            z_score=z_score,
            control_rate=p1,
            treatment_rate=p2,
        )

    def compare_means(
        self,
        control_values: Sequence[float],
        treatment_values: Sequence[float],
    ) -> MeanComparisonResult:
        """連続値メトリクスの Welch t 検定

        Raises:
            ComputationError: どちらかの値が2件未満、または結果が非有限の場合
        """
        if len(control_values) < 2 or len(treatment_values) < 2:
            raise ComputationError(
                "Need at least 2 values per variant for a t-test, got "
                f"{len(control_values)} and {len(treatment_values)}"
            )

        t_stat, p_value = stats.ttest_ind(
            list(control_values), list(treatment_values), equal_var=False
        )
        t_stat, p_value = float(t_stat), float(p_value)
        if not (math.isfinite(t_stat) and math.isfinite(p_value)):
            # 両群とも分散0のとき scipy は nan を返す
            raise ComputationError(
                f"Non-finite t-test result: t={t_stat}, p={p_value}"
            )

        return MeanComparisonResult(
            p_value=p_value,
            significant=p_value < self.alpha,
            t_statistic=t_stat,
            control_mean=sum(control_values) / len(control_values),
            treatment_mean=sum(treatment_values) / len(treatment_values),
        )
