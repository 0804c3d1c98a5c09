"""
Protein parsimony across runs.

Each run's export carries its own locally-computed master protein per
peptide, so the same sequence can be attributed to different proteins in
different runs. This module computes one global sequence -> protein
assignment from the union of every run's candidate accessions, using a
greedy set-cover heuristic:

1. Union the candidate accessions of each sequence across all runs.
2. Repeatedly select the protein that explains the most sequences not yet
   explained by a selected protein (ties go to the lexicographically smallest
   accession) and assign those sequences to it.

Sequences with a single candidate are assigned up front; the greedy loop
stops as soon as no multi-candidate sequence remains, which gives the same
result as running it to exhaustion. Single-candidate sequences still count
towards their protein's total while the loop runs.

Greedy set cover is within a factor H(d) of the minimum number of proteins,
where d is the largest number of sequences any one protein explains.
"""

import heapq
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Set, Union

import pandas as pd

from .data_io import ACCESSION_SEP

logger = logging.getLogger(__name__)

RunTables = Union[Mapping[str, pd.DataFrame], Iterable[pd.DataFrame]]


@dataclass
class ParsimonyResult:
    """Unified sequence -> protein assignment with audit information."""

    assignment: Dict[str, str]
    candidates: Dict[str, FrozenSet[str]]
    summary: pd.DataFrame
    excluded: List[str] = field(default_factory=list)

    @property
    def n_proteins(self) -> int:
        return len(set(self.assignment.values()))

    def to_frame(self) -> pd.DataFrame:
        """Assignment as a table sorted by sequence."""
        rows = [
            {
                'sequence': seq,
                'master_accession': acc,
                'n_candidates': len(self.candidates[seq]),
                'candidates': ACCESSION_SEP.join(sorted(self.candidates[seq])),
            }
            for seq, acc in sorted(self.assignment.items())
        ]
        return pd.DataFrame(rows, columns=['sequence', 'master_accession',
                                           'n_candidates', 'candidates'])


def _iter_tables(run_tables: RunTables) -> Iterable[pd.DataFrame]:
    if isinstance(run_tables, Mapping):
        return run_tables.values()
    return run_tables


def _split(value) -> Set[str]:
    if not isinstance(value, str) or not value:
        return set()
    return {acc.strip() for acc in value.split(ACCESSION_SEP) if acc.strip()}


def collect_candidates(
    run_tables: RunTables,
    sequence_col: str = 'sequence',
    protein_col: str = 'protein_accessions',
    exclude: Iterable[str] = (),
) -> Dict[str, FrozenSet[str]]:
    """Union each sequence's candidate accessions across all runs.

    Every run must be fully loaded before this is called; the union is the
    only point where runs meet.

    Args:
        run_tables: Run name -> feature table, or an iterable of tables
        sequence_col: Column with peptide sequences
        protein_col: Column with delimited candidate accessions
        exclude: Accessions to drop from every candidate set (e.g. contaminants)

    Returns:
        Dict of sequence -> frozenset of candidate accessions (possibly empty)

    """
    exclude = set(exclude)
    pooled: Dict[str, Set[str]] = defaultdict(set)

    for table in _iter_tables(run_tables):
        for seq, accs in zip(table[sequence_col], table[protein_col]):
            pooled[str(seq)] |= _split(accs) - exclude

    return {seq: frozenset(accs) for seq, accs in pooled.items()}


def greedy_assign(candidates: Mapping[str, Iterable[str]]) -> Dict[str, str]:
    """Greedy parsimony over a sequence -> candidate accessions mapping.

    Args:
        candidates: Sequence -> candidate accessions; every set must be non-empty

    Returns:
        Dict of sequence -> single chosen accession

    """
    cands = {seq: frozenset(accs) for seq, accs in candidates.items()}
    empty = [seq for seq, accs in cands.items() if not accs]
    if empty:
        raise ValueError(f"{len(empty)} sequences have no candidate proteins: {empty[:5]}")

    prot_to_seqs: Dict[str, Set[str]] = defaultdict(set)
    for seq, accs in cands.items():
        for acc in accs:
            prot_to_seqs[acc].add(seq)

    assignment: Dict[str, str] = {}
    for seq, accs in cands.items():
        if len(accs) == 1:
            assignment[seq] = next(iter(accs))

    pending = {seq for seq, accs in cands.items() if len(accs) > 1}
    unexplained = set(cands)
    counts = {acc: len(seqs) for acc, seqs in prot_to_seqs.items()}
    selected: Set[str] = set()

    # Max-heap on count, min on accession; stale entries are skipped on pop
    heap = [(-n, acc) for acc, n in counts.items()]
    heapq.heapify(heap)

    while pending:
        neg_count, acc = heapq.heappop(heap)
        if acc in selected or -neg_count != counts[acc]:
            continue

        selected.add(acc)
        explained = prot_to_seqs[acc] & unexplained
        for seq in explained:
            assignment[seq] = acc
            unexplained.discard(seq)
            pending.discard(seq)
            for other in cands[seq]:
                counts[other] -= 1
                if other not in selected and counts[other] > 0:
                    heapq.heappush(heap, (-counts[other], other))

    return dict(sorted(assignment.items()))


def _master_summary_row(stage: str, n_single: int, n_multiple: int, n_none: int = 0) -> dict:
    total = n_single + n_multiple + n_none
    return {
        'stage': stage,
        'n_single': n_single,
        'n_multiple': n_multiple,
        'n_none': n_none,
        'pct_single': 100.0 * n_single / total if total else float('nan'),
        'pct_multiple': 100.0 * n_multiple / total if total else float('nan'),
    }


def summarize_resolution(
    run_tables: RunTables,
    candidates: Mapping[str, FrozenSet[str]],
    assignment: Mapping[str, str],
    sequence_col: str = 'sequence',
    master_col: str = 'master_accessions',
) -> pd.DataFrame:
    """Before/after counts of sequences with one vs. several proteins.

    Rows:
    - candidates: candidate accession sets pooled across runs
    - original_master: per-run master accessions pooled across runs
    - updated_master: the unified assignment

    Sequences whose master accession was blank in every run count as
    n_none, not as multiple. Percentages are over all resolved sequences.
    """
    resolved = [seq for seq in candidates if seq in assignment]
    n_cand_single = sum(1 for seq in resolved if len(candidates[seq]) == 1)

    original: Dict[str, Set[str]] = defaultdict(set)
    for table in _iter_tables(run_tables):
        if master_col not in table.columns:
            continue
        for seq, masters in zip(table[sequence_col], table[master_col]):
            original[str(seq)] |= _split(masters)
    n_orig_single = sum(1 for seq in resolved if len(original.get(seq, ())) == 1)
    n_orig_none = sum(1 for seq in resolved if not original.get(seq))

    rows = [
        _master_summary_row('candidates', n_cand_single, len(resolved) - n_cand_single),
        _master_summary_row('original_master', n_orig_single,
                            len(resolved) - n_orig_single - n_orig_none, n_orig_none),
        _master_summary_row('updated_master', len(resolved), 0),
    ]
    return pd.DataFrame(rows).set_index('stage')


def resolve_parsimony(
    run_tables: RunTables,
    sequence_col: str = 'sequence',
    protein_col: str = 'protein_accessions',
    master_col: str = 'master_accessions',
    exclude: Iterable[str] = (),
) -> ParsimonyResult:
    """Compute one unified sequence -> protein assignment across all runs.

    Sequences left with no candidate protein (for example after removing
    contaminant accessions) are excluded and reported, never assigned.

    Args:
        run_tables: Run name -> feature table, or an iterable of tables
        sequence_col: Column with peptide sequences
        protein_col: Column with delimited candidate accessions
        master_col: Column with the runs' own master accessions (for the summary)
        exclude: Accessions removed from every candidate set

    Returns:
        ParsimonyResult

    """
    if isinstance(run_tables, Mapping):
        tables = dict(run_tables)
    else:
        tables = {i: t for i, t in enumerate(run_tables)}

    candidates = collect_candidates(tables, sequence_col, protein_col, exclude)
    excluded = sorted(seq for seq, accs in candidates.items() if not accs)
    if excluded:
        logger.warning(f"Excluded {len(excluded)} sequences with no candidate protein")
        for seq in excluded[:5]:
            logger.debug(f"  {seq}")

    viable = {seq: accs for seq, accs in candidates.items() if accs}
    assignment = greedy_assign(viable)
    summary = summarize_resolution(tables, viable, assignment, sequence_col, master_col)

    n_candidate_proteins = len(set().union(*viable.values())) if viable else 0
    logger.info(f"Parsimony over {len(tables)} runs: {len(assignment)} sequences "
                f"assigned to {len(set(assignment.values()))} of "
                f"{n_candidate_proteins} candidate proteins")
    for stage, row in summary.iterrows():
        logger.info(f"  {stage}: {row['n_single']} single ({row['pct_single']:.1f}%), "
                    f"{row['n_multiple']} multiple ({row['pct_multiple']:.1f}%)")
        if row['n_none']:
            logger.info(f"  {stage}: {row['n_none']} without a master protein")

    return ParsimonyResult(
        assignment=assignment,
        candidates=viable,
        summary=summary,
        excluded=excluded,
    )


def apply_mapping(
    run_table: pd.DataFrame,
    assignment: Mapping[str, str],
    sequence_col: str = 'sequence',
    master_col: str = 'master_accessions',
) -> pd.DataFrame:
    """Return a copy of a run table with master proteins from the unified assignment.

    Features whose sequence is not in the assignment keep their own master
    accessions. The run's original value is kept in 'original_master_accessions'.
    """
    updated = run_table.copy()
    original = run_table[master_col] if master_col in run_table.columns else pd.Series(
        '', index=run_table.index)
    mapped = run_table[sequence_col].astype(str).map(assignment)

    updated['original_master_accessions'] = original
    updated[master_col] = mapped.where(mapped.notna(), original)
    updated.attrs = dict(run_table.attrs)

    n_changed = int((updated[master_col] != original).sum())
    logger.debug(f"Updated master protein for {n_changed}/{len(updated)} features")
    return updated


def export_assignment(result: ParsimonyResult, output_dir: Union[str, Path]) -> None:
    """Write the assignment and summary tables as TSV files."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    result.to_frame().to_csv(output_dir / 'parsimony_assignment.tsv', sep='\t', index=False)
    result.summary.to_csv(output_dir / 'parsimony_summary.tsv', sep='\t')
    if result.excluded:
        pd.DataFrame({'sequence': result.excluded}).to_csv(
            output_dir / 'parsimony_excluded.tsv', sep='\t', index=False)

    logger.info(f"Exported parsimony assignment for {len(result.assignment)} sequences "
                f"to {output_dir}")
