"""
Feature filtering: contaminants, unquantified rows and ambiguous master proteins.

Rows are removed in a fixed order and each removed row is counted once, under
the first reason that rejects it:

1. contaminant            - a master protein is a contaminant
2. associated_contaminant - a candidate protein is a contaminant (see policy)
3. no_quant_values        - no finite intensity in any intensity column
4. ambiguous_master       - more than one master protein
5. no_master_protein      - master protein column is blank

Associated-contaminant policy:
- 'feature': drop only the features whose candidate accessions include a
  contaminant
- 'protein': additionally drop every feature of any master protein that owns
  such a feature, since its quantification is suspect as a whole
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

import numpy as np
import pandas as pd

from .data_io import ACCESSION_SEP, NO_QUAN_VALUES, intensity_columns_of

logger = logging.getLogger(__name__)

REJECTION_REASONS = [
    'contaminant',
    'associated_contaminant',
    'no_quant_values',
    'ambiguous_master',
    'no_master_protein',
]

ASSOCIATED_POLICIES = ('feature', 'protein')


@dataclass
class FilterResult:
    """Filtered feature table plus removed-row counts by reason."""

    data: pd.DataFrame
    run: str
    n_input: int
    removed: Dict[str, int] = field(default_factory=dict)

    @property
    def n_retained(self) -> int:
        return len(self.data)

    @property
    def n_removed(self) -> int:
        return sum(self.removed.values())

    def summary(self) -> pd.DataFrame:
        """One row per rejection reason, for reporting."""
        rows = [{'run': self.run, 'reason': reason, 'n_removed': self.removed.get(reason, 0)}
                for reason in REJECTION_REASONS]
        rows.append({'run': self.run, 'reason': 'retained', 'n_removed': self.n_retained})
        return pd.DataFrame(rows)


def _split(value: str) -> list[str]:
    if not value:
        return []
    return value.split(ACCESSION_SEP)


def _touches(accessions: pd.Series, contaminants: set[str]) -> pd.Series:
    return accessions.map(lambda v: any(acc in contaminants for acc in _split(v)))


def filter_features(
    df: pd.DataFrame,
    contaminants: Iterable[str] = (),
    remove_contaminants: bool = True,
    associated_contaminants: str = 'feature',
    require_quant_values: bool = True,
    require_unique_master: bool = True,
    intensity_columns: Optional[list[str]] = None,
    use_protein_group_count: bool = True,
) -> FilterResult:
    """Remove contaminant, unquantified and ambiguous features from one run.

    Args:
        df: Feature table from load_feature_table
        contaminants: Contaminant protein accessions
        remove_contaminants: Apply the contaminant and associated-contaminant rules
        associated_contaminants: 'feature' or 'protein' (see module docstring)
        require_quant_values: Drop rows without any finite intensity
        require_unique_master: Drop rows with zero or several master proteins
        intensity_columns: Intensity columns (defaults to those recorded on load)
        use_protein_group_count: Also treat the vendor's protein group count
            (> 1) as ambiguous. Turn off once a unified assignment has
            replaced the master proteins, since the count describes the
            run's local grouping

    Returns:
        FilterResult with a new filtered DataFrame; the input is not modified

    """
    if associated_contaminants not in ASSOCIATED_POLICIES:
        raise ValueError(
            f"Unknown associated contaminant policy: {associated_contaminants}. "
            f"Must be one of: {ASSOCIATED_POLICIES}"
        )

    contaminants = set(contaminants)
    run = str(df['run'].iloc[0]) if 'run' in df.columns and len(df) else '<run>'
    if intensity_columns is None:
        intensity_columns = intensity_columns_of(df)

    removed = {reason: 0 for reason in REJECTION_REASONS}
    keep = pd.Series(True, index=df.index)

    def reject(mask: pd.Series, reason: str) -> None:
        newly = mask & keep
        removed[reason] += int(newly.sum())
        keep.loc[newly] = False

    if remove_contaminants and contaminants:
        reject(_touches(df['master_accessions'], contaminants), 'contaminant')

        associated = _touches(df['protein_accessions'], contaminants)
        if associated_contaminants == 'protein':
            tainted = set(df.loc[associated & keep, 'master_accessions'])
            tainted.discard('')
            associated = associated | df['master_accessions'].isin(tainted)
        reject(associated, 'associated_contaminant')

    if require_quant_values:
        if intensity_columns:
            values = df[intensity_columns].apply(pd.to_numeric, errors='coerce')
            no_quant = ~np.isfinite(values.to_numpy(dtype=float)).any(axis=1)
            no_quant = pd.Series(no_quant, index=df.index)
        else:
            no_quant = pd.Series(False, index=df.index)
        if 'quan_info' in df.columns:
            no_quant |= df['quan_info'].astype(str).str.contains(NO_QUAN_VALUES, na=False)
        reject(no_quant, 'no_quant_values')

    if require_unique_master:
        ambiguous = df['master_accessions'].str.contains(ACCESSION_SEP, regex=False, na=False)
        if use_protein_group_count and 'n_protein_groups' in df.columns:
            ambiguous |= pd.to_numeric(df['n_protein_groups'], errors='coerce').fillna(1) > 1
        reject(ambiguous, 'ambiguous_master')
        reject(df['master_accessions'].fillna('') == '', 'no_master_protein')

    filtered = df.loc[keep].copy()
    filtered.attrs = dict(df.attrs)

    result = FilterResult(data=filtered, run=run, n_input=len(df), removed=removed)

    logger.info(f"Run {run}: retained {result.n_retained}/{result.n_input} features")
    for reason in REJECTION_REASONS:
        if removed[reason]:
            logger.info(f"  removed {removed[reason]} ({reason})")

    return result


def combine_filter_summaries(results: Iterable[FilterResult]) -> pd.DataFrame:
    """Stack per-run filter summaries into a run x reason table."""
    summaries = [r.summary() for r in results]
    if not summaries:
        return pd.DataFrame(columns=['run', 'reason', 'n_removed'])
    stacked = pd.concat(summaries, ignore_index=True)
    return stacked.pivot(index='run', columns='reason', values='n_removed')[
        REJECTION_REASONS + ['retained']
    ]


def chain_filter_results(first: FilterResult, second: FilterResult) -> FilterResult:
    """Combine two successive filter passes over the same run into one result."""
    removed = {reason: first.removed.get(reason, 0) + second.removed.get(reason, 0)
               for reason in REJECTION_REASONS}
    return FilterResult(data=second.data, run=first.run, n_input=first.n_input, removed=removed)
