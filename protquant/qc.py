"""
QC module: diagnostic summaries and an HTML report for a pipeline run.

The report collects the diagnostic side effects of each stage:
- removed-row counts by rejection reason (filtering)
- single vs. multiple master protein counts before/after parsimony
- missingness classes of ratio rows
- per-sample reference medians before and after normalization
"""

import base64
import io
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import matplotlib
import numpy as np
import pandas as pd

from .matrix import QuantMatrix
from .normalization import compute_reference_medians

matplotlib.use('Agg')
import matplotlib.pyplot as plt  # noqa: E402

logger = logging.getLogger(__name__)


@dataclass
class QCSummary:
    """Diagnostics gathered over a pipeline run."""

    filter_summary: Optional[pd.DataFrame] = None
    parsimony_summary: Optional[pd.DataFrame] = None
    missingness: Optional[pd.DataFrame] = None
    reference_medians_before: Optional[pd.Series] = None
    reference_medians_after: Optional[pd.Series] = None
    n_excluded_sequences: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        """True when no centering or coverage warning was raised."""
        return not self.warnings


def check_centering(
    normalized: QuantMatrix,
    mask: pd.Series,
    target: float,
    tol: float = 1e-9,
) -> tuple[pd.Series, List[str]]:
    """Per-sample reference medians after normalization, checked against the target.

    Returns:
        Tuple of (reference medians, warning messages for samples deviating
        from the target by more than tol)
    """
    medians = compute_reference_medians(normalized.values, mask)
    messages = []
    for sample, value in medians.items():
        if not np.isfinite(value) or abs(value - target) > tol:
            messages.append(f"Reference median of {sample} is {value:.6g}, expected {target:.6g}")
    for msg in messages:
        logger.warning(msg)
    return medians, messages


def plot_value_distributions(
    before: QuantMatrix,
    after: Optional[QuantMatrix] = None,
    title: str = 'log2 values',
):
    """Per-sample density of values before (and optionally after) normalization.

    Returns:
        matplotlib Figure
    """
    n_panels = 1 if after is None else 2
    fig, axes = plt.subplots(1, n_panels, figsize=(6 * n_panels, 4), squeeze=False)

    for ax, (label, matrix) in zip(axes[0], [('before', before), ('after', after)]):
        if matrix is None:
            continue
        finite = matrix.values.to_numpy(dtype=float)
        finite = finite[np.isfinite(finite)]
        if finite.size == 0:
            ax.set_title(f'{title} ({label}): no data')
            continue
        bins = np.linspace(finite.min(), finite.max(), 50) if finite.min() < finite.max() else 10
        for sample in matrix.samples:
            col = matrix.values[sample].dropna()
            if len(col):
                ax.hist(col, bins=bins, histtype='step', density=True, label=str(sample))
        ax.axvline(0, color='grey', linestyle='--', linewidth=0.8)
        ax.set_title(f'{title} ({label})')
        ax.set_xlabel('value')
        ax.set_ylabel('density')

    if len(before.samples) <= 12:
        axes[0][0].legend(fontsize='small')
    fig.tight_layout()
    return fig


def _figure_to_base64(fig) -> str:
    buf = io.BytesIO()
    fig.savefig(buf, format='png', dpi=100)
    plt.close(fig)
    return base64.b64encode(buf.getvalue()).decode('ascii')


def _table_html(frame: Optional[pd.DataFrame], float_format: str = '{:.2f}') -> str:
    if frame is None or len(frame) == 0:
        return '<p>Not available</p>'
    return frame.to_html(float_format=float_format.format, border=0, na_rep='NA')


def generate_qc_report(
    summary: QCSummary,
    method_log: List[str],
    output_path: str,
    before: Optional[QuantMatrix] = None,
    after: Optional[QuantMatrix] = None,
) -> None:
    """
    Generate HTML QC report.

    Args:
        summary: QCSummary collected during the run
        method_log: List of processing steps applied
        output_path: Path to save HTML report
        before: Optional matrix before normalization (for plots)
        after: Optional matrix after normalization (for plots)
    """
    medians = None
    if summary.reference_medians_before is not None:
        medians = pd.DataFrame({
            'before': summary.reference_medians_before,
            'after': summary.reference_medians_after,
        })

    figure_html = ''
    if before is not None:
        encoded = _figure_to_base64(plot_value_distributions(before, after))
        figure_html = f'<img src="data:image/png;base64,{encoded}" alt="value distributions">'

    filter_html = _table_html(summary.filter_summary, '{:.0f}')
    parsimony_html = _table_html(summary.parsimony_summary)
    missingness_html = _table_html(summary.missingness, '{:.0f}')
    medians_html = _table_html(medians, '{:.4f}')

    html = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>Quantification QC Report</title>
        <style>
            body {{ font-family: Arial, sans-serif; margin: 40px; }}
            h1 {{ color: #333; }}
            h2 {{ color: #666; border-bottom: 1px solid #ccc; }}
            .warning {{ color: #cc6600; background: #fff3e0; padding: 10px; margin: 5px 0; }}
            .passed {{ color: #006600; background: #e0ffe0; padding: 10px; }}
            .failed {{ color: #cc0000; background: #ffe0e0; padding: 10px; }}
            table {{ border-collapse: collapse; margin: 20px 0; }}
            th, td {{ border: 1px solid #ccc; padding: 8px; text-align: left; }}
            th {{ background: #f0f0f0; }}
        </style>
    </head>
    <body>
        <h1>Quantification QC Report</h1>

        <h2>Status</h2>
        <div class="{'passed' if summary.passed else 'failed'}">
            {'PASSED' if summary.passed else 'REVIEW'} -
            {'No warnings' if summary.passed else 'Review warnings below'}
        </div>

        <h2>Feature Filtering</h2>
        {filter_html}

        <h2>Protein Parsimony</h2>
        {parsimony_html}
        <p>Sequences excluded for lack of a candidate protein: {summary.n_excluded_sequences}</p>

        <h2>Ratio Missingness</h2>
        {missingness_html}

        <h2>Reference Medians</h2>
        {medians_html}
        {figure_html}

        <h2>Warnings</h2>
        {''.join(f'<div class="warning">{w}</div>' for w in summary.warnings) if summary.warnings else '<p>No warnings</p>'}

        <h2>Processing Steps</h2>
        <ol>
            {''.join(f'<li>{step}</li>' for step in method_log)}
        </ol>

    </body>
    </html>
    """

    with open(output_path, 'w') as f:
        f.write(html)

    logger.info(f"QC report saved to {output_path}")
