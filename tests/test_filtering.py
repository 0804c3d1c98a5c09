"""Tests for feature filtering."""

import numpy as np
import pandas as pd
import pytest

from protquant.data_io import prepare_feature_table
from protquant.filtering import (
    REJECTION_REASONS,
    chain_filter_results,
    combine_filter_summaries,
    filter_features,
)


@pytest.fixture
def run_table():
    """One feature per rejection reason plus two clean features."""
    raw = pd.DataFrame({
        'Sequence': ['AAA', 'BBB', 'CCC', 'DDD', 'EEE', 'FFF', 'GGG'],
        'Protein Accessions': ['P1', 'CONT1', 'P2;CONT1', 'P2', 'P3;P4', 'P5', 'P2'],
        'Master Protein Accessions': ['P1', 'CONT1', 'P2', 'P2', 'P3;P4', '', 'P2'],
        'Abundance S1': [10.0, 5.0, 5.0, np.nan, 3.0, 4.0, 1.0],
        'Abundance S2': [20.0, 6.0, 6.0, np.nan, 3.0, 4.0, 2.0],
    })
    return prepare_feature_table(raw, run_name='run1')


class TestFilterFeatures:
    """Tests for filter_features."""

    def test_each_reason_counted_once(self, run_table):
        result = filter_features(run_table, {'CONT1'})

        assert result.data['sequence'].tolist() == ['AAA', 'GGG']
        for reason in REJECTION_REASONS:
            assert result.removed[reason] == 1
        assert result.n_input == 7
        assert result.n_retained + result.n_removed == result.n_input

    def test_input_not_modified(self, run_table):
        before = run_table.copy()
        filter_features(run_table, {'CONT1'})
        pd.testing.assert_frame_equal(run_table, before)

    def test_protein_policy_drops_tainted_proteins(self, run_table):
        """With the 'protein' policy every feature of P2 goes, not just CCC."""
        result = filter_features(run_table, {'CONT1'}, associated_contaminants='protein')

        assert result.data['sequence'].tolist() == ['AAA']
        assert result.removed['associated_contaminant'] == 3
        assert result.removed['no_quant_values'] == 0

    def test_contaminant_removal_disabled(self, run_table):
        result = filter_features(run_table, {'CONT1'}, remove_contaminants=False)

        assert result.removed['contaminant'] == 0
        assert result.removed['associated_contaminant'] == 0
        assert 'BBB' in result.data['sequence'].tolist()

    def test_quant_and_master_rules_optional(self, run_table):
        result = filter_features(
            run_table,
            require_quant_values=False,
            require_unique_master=False,
        )
        assert result.n_retained == 7
        assert result.n_removed == 0

    def test_first_reason_wins(self):
        """A contaminant master that is also unquantified counts as contaminant."""
        raw = pd.DataFrame({
            'Sequence': ['AAA'],
            'Protein Accessions': ['CONT1'],
            'Master Protein Accessions': ['CONT1'],
            'Abundance S1': [np.nan],
        })
        df = prepare_feature_table(raw, run_name='r')
        result = filter_features(df, {'CONT1'})

        assert result.removed['contaminant'] == 1
        assert result.removed['no_quant_values'] == 0

    def test_quan_info_flag(self):
        raw = pd.DataFrame({
            'Sequence': ['AAA', 'BBB'],
            'Protein Accessions': ['P1', 'P1'],
            'Master Protein Accessions': ['P1', 'P1'],
            'Quan Info': ['NoQuanValues', np.nan],
            'Abundance S1': [1.0, 2.0],
        })
        df = prepare_feature_table(raw, run_name='r')
        result = filter_features(df)

        assert result.data['sequence'].tolist() == ['BBB']
        assert result.removed['no_quant_values'] == 1

    def test_protein_group_count(self):
        raw = pd.DataFrame({
            'Sequence': ['AAA', 'BBB'],
            'Protein Accessions': ['P1;P2', 'P1'],
            'Master Protein Accessions': ['P1', 'P1'],
            'Number of Protein Groups': [2, 1],
            'Abundance S1': [1.0, 2.0],
        })
        df = prepare_feature_table(raw, run_name='r')

        counted = filter_features(df)
        assert counted.data['sequence'].tolist() == ['BBB']
        assert counted.removed['ambiguous_master'] == 1

        ignored = filter_features(df, use_protein_group_count=False)
        assert ignored.data['sequence'].tolist() == ['AAA', 'BBB']
        assert ignored.removed['ambiguous_master'] == 0

    def test_unknown_policy(self, run_table):
        with pytest.raises(ValueError, match='associated contaminant policy'):
            filter_features(run_table, {'CONT1'}, associated_contaminants='peptide')

    def test_intensity_columns_kept_on_result(self, run_table):
        result = filter_features(run_table, {'CONT1'})
        assert result.data.attrs['intensity_columns'] == ['Abundance S1', 'Abundance S2']


class TestFilterSummaries:
    """Tests for reporting helpers."""

    def test_summary_rows(self, run_table):
        summary = filter_features(run_table, {'CONT1'}).summary()
        assert summary['reason'].tolist() == REJECTION_REASONS + ['retained']
        assert summary['n_removed'].sum() == 7

    def test_combine(self, run_table):
        other = run_table.assign(run='run2')
        results = [filter_features(run_table, {'CONT1'}), filter_features(other, {'CONT1'})]

        combined = combine_filter_summaries(results)

        assert combined.index.tolist() == ['run1', 'run2']
        assert combined.loc['run2', 'retained'] == 2

    def test_chain(self, run_table):
        first = filter_features(run_table, {'CONT1'}, require_unique_master=False)
        second = filter_features(first.data, remove_contaminants=False)

        chained = chain_filter_results(first, second)

        assert chained.n_input == 7
        assert chained.n_retained == 2
        assert chained.n_removed == 5
