"""Smoke tests for the plotting helpers (Agg backend)."""

import numpy as np
import pytest

from stannot.annotation import attach_deconvolution, reconcile_clusters
from stannot.palette import set_palette
from stannot.readers import read_visium
from stannot.visualization import (
    plot_composition,
    plot_deconvolution,
    plot_spatial,
    plot_umap,
)


@pytest.fixture()
def clustered(spots, cluster_table):
    adata = reconcile_clusters(spots, cluster_table, verbose=False)
    set_palette(adata, "cluster", seed=0)
    return adata


def test_plot_spatial_categorical(clustered, tmp_path):
    save = tmp_path / "clusters.png"

    ax = plot_spatial(clustered, color="cluster", save=save, show=False)

    assert ax is not None
    assert save.exists()


def test_plot_spatial_gene(spots):
    ax = plot_spatial(spots, color="Gene_0", show=False)

    assert ax.get_title() == "Gene_0"


def test_plot_spatial_unknown_field(spots):
    with pytest.raises(ValueError, match="not found"):
        plot_spatial(spots, color="missing", show=False)


def test_plot_spatial_unknown_basis(spots):
    with pytest.raises(ValueError, match="spatial_lowres"):
        plot_spatial(spots, color="Gene_0", basis="spatial_lowres", show=False)


def test_plot_spatial_on_tissue_image(visium_dir, cluster_table):
    adata = reconcile_clusters(read_visium(visium_dir), cluster_table, verbose=False)
    set_palette(adata, "cluster", seed=0)

    ax = plot_spatial(adata, color="cluster", img_key="hires", show=False)

    assert "spatial_hires" in adata.obsm
    np.testing.assert_allclose(adata.obsm["spatial_hires"], adata.obsm["spatial"] * 0.1)
    assert len(ax.get_images()) == 1
    labels = [t.get_text() for t in ax.get_legend().get_texts()]
    assert labels == list(adata.obs["cluster"].cat.categories)


def test_plot_spatial_on_tissue_image_continuous(visium_dir):
    adata = read_visium(visium_dir)

    ax = plot_spatial(adata, color="Gene_3", img_key="lowres", show=False)

    assert "spatial_lowres" in adata.obsm
    assert len(ax.get_images()) == 1


def test_plot_spatial_missing_image(visium_dir):
    adata = read_visium(visium_dir, load_images=False)

    with pytest.raises(ValueError, match="hires"):
        plot_spatial(adata, color="Gene_0", img_key="hires", show=False)


def test_plot_umap_computes_embedding(clustered, tmp_path):
    save = tmp_path / "umap.png"

    plot_umap(clustered, color="cluster", save=save, show=False)

    assert "X_umap" in clustered.obsm
    assert save.exists()


def test_plot_deconvolution(spots, deconvolution_table):
    adata = attach_deconvolution(spots, deconvolution_table, verbose=False)

    axes = plot_deconvolution(adata, ncols=2, show=False)

    assert len(axes) == deconvolution_table.shape[1]


def test_plot_deconvolution_requires_results(spots):
    with pytest.raises(ValueError, match="attach_deconvolution"):
        plot_deconvolution(spots, show=False)


def test_plot_composition(spots, deconvolution_table):
    adata = attach_deconvolution(spots, deconvolution_table, verbose=False)
    adata.obs["cluster"] = adata.obs["ground_truth"]

    ax = plot_composition(adata, groupby="cluster", key="deconvolution", show=False)
    assert ax.get_ylabel() == "cluster"

    ax = plot_composition(adata, groupby="cluster", key="deconvolution_dominant", show=False)
    assert ax.get_xlabel() == "deconvolution_dominant"
