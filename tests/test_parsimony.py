"""Tests for protein parsimony module."""

import math
import random

import pandas as pd
import pytest

from protquant.parsimony import (
    ParsimonyResult,
    apply_mapping,
    collect_candidates,
    export_assignment,
    greedy_assign,
    resolve_parsimony,
)


def _run(sequences, candidates, masters):
    return pd.DataFrame({
        'sequence': sequences,
        'protein_accessions': candidates,
        'master_accessions': masters,
    })


@pytest.fixture
def three_runs():
    """Three runs, five peptides, two proteins.

    pep1 and pep3 are shared between P1 and P2, and run1 locally attributed
    pep1 to P2 while run3 attributed it to P1.
    """
    return {
        'run1': _run(['pep1', 'pep2', 'pep4'],
                     ['P1;P2', 'P1', 'P2'],
                     ['P2', 'P1', 'P2']),
        'run2': _run(['pep1', 'pep3', 'pep5'],
                     ['P1', 'P1;P2', 'P1'],
                     ['P1', 'P1', 'P1']),
        'run3': _run(['pep1', 'pep2', 'pep3', 'pep4'],
                     ['P1;P2', 'P1', 'P2', 'P2'],
                     ['P1', 'P1', 'P2', 'P2']),
    }


class TestCollectCandidates:
    """Tests for pooling candidates across runs."""

    def test_union_across_runs(self, three_runs):
        candidates = collect_candidates(three_runs)

        assert candidates['pep1'] == frozenset({'P1', 'P2'})
        assert candidates['pep3'] == frozenset({'P1', 'P2'})
        assert candidates['pep5'] == frozenset({'P1'})

    def test_exclude(self, three_runs):
        candidates = collect_candidates(three_runs, exclude={'P2'})

        assert candidates['pep1'] == frozenset({'P1'})
        assert candidates['pep4'] == frozenset()

    def test_iterable_of_tables(self, three_runs):
        from_list = collect_candidates(list(three_runs.values()))
        assert from_list == collect_candidates(three_runs)


class TestGreedyAssign:
    """Tests for the greedy set-cover assignment."""

    def test_simple_cover(self):
        candidates = {
            's1': {'A', 'B'},
            's2': {'A'},
            's3': {'B', 'C'},
            's4': {'C'},
        }
        assert greedy_assign(candidates) == {'s1': 'A', 's2': 'A', 's3': 'C', 's4': 'C'}

    def test_tie_goes_to_smallest_accession(self):
        assert greedy_assign({'s1': {'Q9', 'P1'}}) == {'s1': 'P1'}
        assert greedy_assign({'s1': {'B', 'A'}, 's2': {'B', 'A'}}) == {'s1': 'A', 's2': 'A'}

    def test_largest_protein_first(self):
        """A protein explaining every sequence absorbs all shared sequences."""
        candidates = {
            's1': {'BIG', 'X'},
            's2': {'BIG', 'Y'},
            's3': {'BIG', 'Z'},
            's4': {'BIG'},
        }
        result = greedy_assign(candidates)
        assert set(result.values()) == {'BIG'}

    def test_coverage(self):
        rng = random.Random(7)
        proteins = [f'P{i}' for i in range(12)]
        candidates = {
            f's{i}': set(rng.sample(proteins, rng.randint(1, 4))) for i in range(60)
        }

        result = greedy_assign(candidates)

        assert set(result) == set(candidates)
        for seq, acc in result.items():
            assert acc in candidates[seq]

    def test_deterministic_under_reordering(self):
        rng = random.Random(11)
        proteins = [f'P{i}' for i in range(10)]
        candidates = {
            f's{i}': set(rng.sample(proteins, rng.randint(1, 3))) for i in range(40)
        }
        items = list(candidates.items())
        rng.shuffle(items)
        shuffled = {seq: set(reversed(sorted(accs))) for seq, accs in items}

        assert greedy_assign(candidates) == greedy_assign(shuffled)

    def test_greedy_bound(self):
        """Selected protein count stays within H(d) of the optimum."""
        # Optimum is {A, B}; greedy picks C first, then needs A and B
        candidates = {
            's1': {'A', 'C'}, 's2': {'A', 'C'},
            's3': {'B', 'C'}, 's4': {'B', 'C'},
            's5': {'A'}, 's6': {'B'},
        }
        result = greedy_assign(candidates)

        n_selected = len(set(result.values()))
        d = 4
        harmonic = sum(1.0 / k for k in range(1, d + 1))
        assert n_selected <= math.ceil(2 * harmonic)
        assert set(result.values()) <= {'A', 'B', 'C'}

    def test_idempotent(self):
        """Feeding the assignment back as the only candidate reproduces it."""
        rng = random.Random(3)
        proteins = [f'P{i}' for i in range(8)]
        candidates = {
            f's{i}': set(rng.sample(proteins, rng.randint(1, 3))) for i in range(30)
        }
        first = greedy_assign(candidates)

        again = greedy_assign({seq: {acc} for seq, acc in first.items()})

        assert again == first

    def test_output_sorted(self):
        result = greedy_assign({'zz': {'P1'}, 'aa': {'P1'}, 'mm': {'P2'}})
        assert list(result) == ['aa', 'mm', 'zz']

    def test_empty_candidates_raise(self):
        with pytest.raises(ValueError, match='no candidate'):
            greedy_assign({'s1': set(), 's2': {'P1'}})


class TestResolveParsimony:
    """Tests for cross-run resolution."""

    def test_three_run_scenario(self, three_runs):
        result = resolve_parsimony(three_runs)

        assert isinstance(result, ParsimonyResult)
        assert result.assignment == {
            'pep1': 'P1',
            'pep2': 'P1',
            'pep3': 'P1',
            'pep4': 'P2',
            'pep5': 'P1',
        }
        assert result.n_proteins == 2
        assert result.excluded == []

    def test_summary_counts(self, three_runs):
        summary = resolve_parsimony(three_runs).summary

        assert summary.loc['candidates', 'n_single'] == 3
        assert summary.loc['candidates', 'n_multiple'] == 2
        # pep1 was P2 in run1 and P1 elsewhere; pep3 was P1 in run2 and P2 in run3
        assert summary.loc['original_master', 'n_multiple'] == 2
        assert summary.loc['updated_master', 'n_single'] == 5
        assert summary.loc['updated_master', 'pct_single'] == pytest.approx(100.0)

    def test_blank_master_not_counted_as_multiple(self):
        runs = {
            'run1': _run(['pep1', 'pep2', 'pep3'],
                         ['P1', 'P1;P2', 'P2'],
                         ['P1', '', 'P1;P2']),
            'run2': _run(['pep2'], ['P1;P2'], [None]),
        }
        summary = resolve_parsimony(runs).summary

        assert summary.loc['original_master', 'n_single'] == 1
        assert summary.loc['original_master', 'n_multiple'] == 1
        assert summary.loc['original_master', 'n_none'] == 1
        assert summary.loc['original_master', 'pct_multiple'] == pytest.approx(100.0 / 3)
        assert summary.loc['updated_master', 'n_none'] == 0

    def test_excluded_sequences(self, three_runs):
        result = resolve_parsimony(three_runs, exclude={'P2'})

        assert result.excluded == ['pep4']
        assert 'pep4' not in result.assignment
        assert set(result.assignment.values()) == {'P1'}

    def test_same_result_every_run(self, three_runs):
        first = resolve_parsimony(three_runs).assignment
        reordered = {k: three_runs[k] for k in ['run3', 'run1', 'run2']}
        assert resolve_parsimony(reordered).assignment == first

    def test_to_frame(self, three_runs):
        frame = resolve_parsimony(three_runs).to_frame()

        assert frame['sequence'].tolist() == ['pep1', 'pep2', 'pep3', 'pep4', 'pep5']
        assert frame.loc[0, 'candidates'] == 'P1;P2'
        assert frame.loc[0, 'n_candidates'] == 2


class TestApplyMapping:
    """Tests for writing the unified assignment back into a run."""

    def test_masters_replaced(self, three_runs):
        result = resolve_parsimony(three_runs)
        updated = apply_mapping(three_runs['run1'], result.assignment)

        assert updated['master_accessions'].tolist() == ['P1', 'P1', 'P2']
        assert updated['original_master_accessions'].tolist() == ['P2', 'P1', 'P2']

    def test_every_run_agrees(self, three_runs):
        assignment = resolve_parsimony(three_runs).assignment
        pooled = pd.concat([apply_mapping(t, assignment) for t in three_runs.values()])

        per_sequence = pooled.groupby('sequence')['master_accessions'].nunique()
        assert (per_sequence == 1).all()

    def test_input_not_modified(self, three_runs):
        before = three_runs['run1'].copy()
        apply_mapping(three_runs['run1'], {'pep1': 'P1'})
        pd.testing.assert_frame_equal(three_runs['run1'], before)

    def test_unmapped_keep_own_master(self, three_runs):
        updated = apply_mapping(three_runs['run1'], {'pep1': 'P1'})
        assert updated['master_accessions'].tolist() == ['P1', 'P1', 'P2']


def test_export_assignment(three_runs, tmp_path):
    result = resolve_parsimony(three_runs, exclude={'P2'})
    export_assignment(result, tmp_path / 'out')

    assignment = pd.read_csv(tmp_path / 'out' / 'parsimony_assignment.tsv', sep='\t')
    assert len(assignment) == 4
    assert (tmp_path / 'out' / 'parsimony_summary.tsv').exists()
    excluded = pd.read_csv(tmp_path / 'out' / 'parsimony_excluded.tsv', sep='\t')
    assert excluded['sequence'].tolist() == ['pep4']
