"""Shared fixtures: synthetic Proteome Discoverer tables."""

import numpy as np
import pandas as pd
import pytest

TMT_TAGS = ['126', '127N', '127C', '128N', '128C', '129N']
ABUNDANCE_COLUMNS = [f'Abundance: F1: {tag}, Sample' for tag in TMT_TAGS]

# Per-sample loading offsets (log2) shared by every protein
SAMPLE_OFFSETS = np.array([0.0, 0.2, -0.1, 0.5, 0.3, -0.4])


def _psm_row(sequence, master, proteins, log_values, **overrides):
    row = {
        'Sequence': sequence,
        'Master Protein Accessions': master,
        'Protein Accessions': proteins,
        '# Protein Groups': 1,
        'Average Reporter S/N': 50.0,
        'Isolation Interference [%]': 10.0,
        'Delta Score': 0.5,
        'Quan Info': '',
    }
    for col, value in zip(ABUNDANCE_COLUMNS, np.power(2.0, log_values)):
        row[col] = value
    row.update(overrides)
    return row


def make_tmt_psms(
    n_proteins: int = 5,
    peptides_per_protein: int = 4,
    contaminants: tuple = ('P00761',),
    seed: int = 0,
) -> pd.DataFrame:
    """TMT PSM table: additive protein + peptide + sample model, small noise."""
    rng = np.random.default_rng(seed)
    rows = []
    for p in range(n_proteins):
        protein = f'Q{p:05d}'
        for k in range(peptides_per_protein):
            log_values = (
                10 + p + rng.normal(0, 1)
                + SAMPLE_OFFSETS
                + rng.normal(0, 0.05, len(TMT_TAGS))
            )
            rows.append(_psm_row(f'PEPTIDE{p}X{k}K', protein, protein, log_values))

    for i, accession in enumerate(contaminants):
        log_values = np.full(len(TMT_TAGS), 15.0)
        rows.append(_psm_row(f'CONTAM{i}K', accession, accession, log_values))

    return pd.DataFrame(rows)


@pytest.fixture
def tmt_psms():
    return make_tmt_psms()


@pytest.fixture
def contaminants():
    return {'P00761', 'P02769', 'P04264'}


@pytest.fixture
def crap_fasta(tmp_path):
    path = tmp_path / 'crap.fasta'
    path.write_text(
        '>sp|P00761|TRYP_PIG Trypsin OS=Sus scrofa\n'
        'FPTDDDDKIVGGYTCAANSIPYQVSLNSGSHFCGGSLINSQWVVSAAHCYK\n'
        '>sp|P02769|ALBU_BOVIN Serum albumin\n'
        'MKWVTFISLLLLFSSAYSRGVFRR\n'
        '>P04264 Keratin, type II cytoskeletal 1\n'
        'MSRQFSSRSGYRSGGGFSSGSAGIINYQRR\n'
    )
    return path
