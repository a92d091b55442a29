"""
Plain-text formatting of MLMPower results for the console.
"""

from typing import List, Optional

import numpy as np


class _TableFormatter:
    """Fixed-width text tables."""

    def _create_table(self, headers: List[str], rows: List[List[str]], col_widths: Optional[List[int]] = None) -> str:
        if col_widths is None:
            col_widths = [max(len(str(h)), *(len(str(r[i])) for r in rows)) if rows else len(str(h)) for i, h in enumerate(headers)]

        lines = [" ".join(f"{str(h):<{w}}" for h, w in zip(headers, col_widths))]
        lines.append(" ".join("-" * w for w in col_widths))
        for row in rows:
            lines.append(" ".join(f"{str(c):<{w}}" for c, w in zip(row, col_widths)))
        return "\n".join(lines)

    def _format_value(self, value, spec: Optional[str] = None) -> str:
        if isinstance(value, float):
            if spec is not None:
                return format(value, spec)
            if np.isnan(value):
                return "NA"
            if value != 0 and abs(value) < 0.001:
                return f"{value:.6f}"
            return f"{value:.4f}"
        return str(value)


def _get_significance_code(p_value: Optional[float]) -> str:
    if p_value is None or not np.isfinite(p_value):
        return ""
    if p_value < 0.001:
        return "***"
    if p_value < 0.01:
        return "**"
    if p_value < 0.05:
        return "*"
    return ""


class _ResultFormatter(_TableFormatter):
    """Renders ``PowerSummary`` and model-comparison tables."""

    def _format_short_power(self, summary) -> str:
        params = summary.params
        low, high = summary.power_interval
        lines = [
            "Power Analysis Results",
            f"Design: {params.subject_count} subjects x {params.trial_count} trials "
            f"(N={params.n_observations}), alpha={summary.alpha}",
            "",
        ]
        headers = ["Quantity", "Value"]
        rows = [
            ["Power", f"{summary.power * 100:.1f}% [{low * 100:.1f}, {high * 100:.1f}]"],
            ["Type II error", f"{summary.type_ii_error * 100:.1f}%"],
            ["Mean estimate", self._format_value(summary.mean_estimate)],
            ["True effect", self._format_value(float(params.fixed_group_effect))],
            ["Repetitions used", f"{summary.n_used}/{summary.n_repetitions}"],
        ]
        lines.append(self._create_table(headers, rows))
        return "\n".join(lines)

    def _format_long_power(self, summary) -> str:
        lines = [self._format_short_power(summary), "", "Estimate Distribution", "=" * 40]
        low, high = summary.estimate_interval
        rows = [
            ["SD of estimates", self._format_value(summary.sd_estimate)],
            ["95% range", f"[{self._format_value(low)}, {self._format_value(high)}]"],
            ["Mean std. error", self._format_value(summary.mean_std_error)],
        ]
        lines.append(self._create_table(["Quantity", "Value"], rows))

        lines += ["", "Repetition Status", "=" * 40]
        rows = [
            ["Excluded", f"{summary.n_excluded} ({summary.exclusion_rate:.1%})"],
            ["Non-convergent", str(summary.n_nonconverged)],
            ["Singular", str(summary.n_singular)],
        ]
        lines.append(self._create_table(["Status", "Count"], rows))

        density = summary.density
        lines += ["", "-log10(p) Density", "=" * 40]
        rows = [
            ["Threshold", self._format_value(density.threshold)],
            ["Mass not significant", self._format_value(density.mass_not_significant)],
            ["Mass significant", self._format_value(density.mass_significant)],
        ]
        lines.append(self._create_table(["Quantity", "Value"], rows))
        return "\n".join(lines)

    def _format_comparison(self, comparison) -> str:
        headers = ["Parameter", "Simulated", "Estimate", "Std. Error", "p-value", ""]
        rows = []
        for label, row in comparison.iterrows():
            p_value = row["p_value"]
            has_p = p_value is not None and np.isfinite(p_value)
            rows.append(
                [
                    label,
                    self._format_value(float(row["simulated"])),
                    self._format_value(float(row["estimate"])),
                    self._format_value(float(row["std_error"])),
                    self._format_value(float(p_value)) if has_p else "",
                    _get_significance_code(p_value) if has_p else "",
                ]
            )
        lines = ["Model Comparison", self._create_table(headers, rows)]
        lines.append("Signif. codes: 0 '***' 0.001 '**' 0.01 '*' 0.05")
        return "\n".join(lines)


def _format_results(result_type: str, result, summary: str = "short") -> str:
    """Dispatch to the formatter for *result_type* (``"power"`` or ``"comparison"``)."""
    formatter = _ResultFormatter()
    if result_type == "power":
        if summary == "long":
            return formatter._format_long_power(result)
        return formatter._format_short_power(result)
    if result_type == "comparison":
        return formatter._format_comparison(result)
    raise ValueError(f"Unknown result type: {result_type}")
