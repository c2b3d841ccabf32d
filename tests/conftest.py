"""Shared synthetic GDS data for the dengue_gex tests."""

import numpy as np
import pandas as pd
import pytest

from dengue_gex.geo_loader import IDENTIFIER_COLUMN, GEODataset, build_sample_metadata

STATES = [
    "healthy control",
    "dengue fever",
    "dengue hemorrhagic fever",
    "convalescent",
]

N_GENES = 60
N_PLANTED = 10  # GENE00..GENE09 are raised in DHF


def gene_name(i):
    return f"GENE{i:02d}"


def make_sample_columns(per_group=4):
    """GDS ``columns`` table: one row per GSM with the subset annotations."""
    rows = []
    for g, state in enumerate(STATES):
        for j in range(per_group):
            rows.append({
                "sample": f"GSM{100 + g * per_group + j}",
                "disease state": state,
                "individual": f"patient {g * per_group + j}",
                "description": f"Value for GSM{100 + g * per_group + j}",
            })
    return pd.DataFrame(rows).set_index("sample")


def make_dataset(seed=42, per_group=4, effect=3.0, linear=False):
    """
    A small GDS-like dataset.

    60 genes on 80 probes (GENE00..GENE19 have two probes), four groups of
    ``per_group`` samples, log-scale values around 7 (sd 0.3) with GENE00..GENE09
    raised by ``effect`` in DHF. Annotation covers every gene except
    GENE55..GENE59 and repeats GENE00 with a second, later gene ID.
    """
    rng = np.random.RandomState(seed)
    columns = make_sample_columns(per_group)
    metadata = build_sample_metadata(columns)
    samples = list(metadata.index)

    identifiers = [gene_name(i) for i in range(N_GENES)] + [gene_name(i) for i in range(20)]
    probes = [f"{1000 + i}_at" for i in range(len(identifiers))]
    values = rng.normal(7.0, 0.3, size=(len(identifiers), len(samples)))

    dhf = (metadata["group"] == "DHF").to_numpy()
    for row, ident in enumerate(identifiers):
        if int(ident[4:]) < N_PLANTED:
            values[row, dhf] += effect

    if linear:
        values = np.power(2.0, values + 5)

    probe_table = pd.DataFrame(values, index=pd.Index(probes, name="ID_REF"), columns=samples)
    probe_table.insert(0, IDENTIFIER_COLUMN, identifiers)

    annotated = [i for i in range(N_GENES) if i < 55]
    annotation = pd.DataFrame(
        {
            "symbol": [gene_name(i) for i in annotated] + [gene_name(0)],
            "gene_id": [str(5000 + i) for i in annotated] + ["9999"],
            "chromosome": [f"chr{1 + i % 22}" for i in annotated] + ["chrX"],
        },
        index=pd.Index([f"{1000 + i}_at" for i in annotated] + ["1060_at"], name="probe"),
    )

    return GEODataset(
        accession="GDS5093",
        probe_table=probe_table,
        sample_metadata=metadata,
        annotation=annotation,
        platform="GPL570",
        title="Dengue virus infection effect on whole blood",
        value_type="transformed count",
    )


class FakeLoader:
    """Stands in for GEODataLoader; counts calls."""

    def __init__(self, dataset):
        self.dataset = dataset
        self.calls = 0

    def load(self, accession):
        self.calls += 1
        return self.dataset


@pytest.fixture
def dataset():
    return make_dataset()


@pytest.fixture
def fake_loader(dataset):
    return FakeLoader(dataset)
