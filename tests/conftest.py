import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest
from anndata import AnnData

from stannot.datasets import (
    generate_synthetic_spatial_data,
    make_annotation_table,
    make_deconvolution_table,
    write_visium,
    write_xenium,
    write_triplets,
)


@pytest.fixture(autouse=True)
def close_figures():
    import matplotlib.pyplot as plt

    yield
    plt.close("all")


@pytest.fixture()
def six_cells() -> AnnData:
    """Records c1..c6 with two measurement fields and coordinates."""
    keys = [f"c{i}" for i in range(1, 7)]
    adata = AnnData(
        X=np.arange(18, dtype=np.float32).reshape(6, 3),
        obs=pd.DataFrame({"area": [10.0, 20.0, 30.0, 40.0, 50.0, 60.0]}, index=keys),
        var=pd.DataFrame(index=["GeneA", "GeneB", "GeneC"]),
    )
    adata.obsm["spatial"] = np.column_stack([np.arange(6.0), np.arange(6.0) * 2])
    return adata


@pytest.fixture()
def spots() -> AnnData:
    return generate_synthetic_spatial_data(n_obs=120, n_genes=60, n_domains=4, grid_size=20, seed=0)


@pytest.fixture()
def cluster_table(spots) -> pd.DataFrame:
    return make_annotation_table(spots, column="cluster", keep_fraction=0.9, seed=1)


@pytest.fixture()
def deconvolution_table(spots) -> pd.DataFrame:
    return make_deconvolution_table(spots, keep_fraction=0.9, seed=1)


@pytest.fixture()
def visium_dir(tmp_path, spots):
    path = tmp_path / "visium"
    write_visium(spots, path)
    return path


@pytest.fixture()
def xenium_dir(tmp_path, spots):
    path = tmp_path / "xenium"
    write_xenium(spots, path)
    return path


@pytest.fixture()
def triplets_dir(tmp_path, spots):
    path = tmp_path / "triplets"
    write_triplets(spots, path)
    return path
