"""End-to-end tests for the spot-level and cell-level workflows."""

import pandas as pd
import pytest
from anndata import read_h5ad

from stannot.annotation import OrderMismatchError
from stannot.datasets import make_annotation_table
from stannot.palette import generate_palette
from stannot.workflow import cell_workflow, spot_workflow


def test_spot_workflow(tmp_path, spots, visium_dir):
    clusters = make_annotation_table(spots, column="cluster", keep_fraction=0.8, seed=2)
    clusters_path = tmp_path / "clusters.csv"
    clusters.to_csv(clusters_path, index_label="barcode")

    proportions = pd.DataFrame(
        {"Neuron": 0.7, "Glia": 0.3}, index=clusters.index[::2]
    )
    deconvolution_path = tmp_path / "deconvolution.tsv"
    proportions.to_csv(deconvolution_path, sep="\t", index_label="barcode")

    output_dir = tmp_path / "results"
    adata = spot_workflow(
        visium_dir,
        clusters_path,
        deconvolution_path=deconvolution_path,
        hvg_flavor="seurat",
        n_top_genes=30,
        output_dir=output_dir,
    )

    assert list(adata.obs_names) == list(proportions.index)
    expected = clusters.loc[adata.obs_names, "cluster"]
    assert list(adata.obs["cluster"].astype(str)) == list(expected)
    assert list(adata.obs["deconvolution_dominant"].astype(str)) == ["Neuron"] * adata.n_obs
    assert "X_umap" in adata.obsm
    assert "spatial_hires" in adata.obsm

    for name in [
        "spatial_clusters.png",
        "umap_clusters.png",
        "spatial_deconvolution.png",
        "composition.png",
        "spots_annotated.h5ad",
    ]:
        assert (output_dir / name).exists()

    saved = read_h5ad(output_dir / "spots_annotated.h5ad")
    assert list(saved.obs_names) == list(adata.obs_names)


def test_spot_workflow_palette_is_reproducible(tmp_path, spots, visium_dir, cluster_table):
    clusters_path = tmp_path / "clusters.csv"
    cluster_table.to_csv(clusters_path, index_label="barcode")

    first = spot_workflow(visium_dir, clusters_path, hvg_flavor="seurat", img_key=None, seed=5)
    second = spot_workflow(visium_dir, clusters_path, hvg_flavor="seurat", img_key=None, seed=5)

    n_clusters = len(first.obs["cluster"].cat.categories)
    assert first.uns["cluster_colors"] == second.uns["cluster_colors"]
    assert list(first.uns["cluster_colors"]) == generate_palette(n_clusters, seed=5)


def test_spot_workflow_strict_order(tmp_path, spots, visium_dir):
    clusters = make_annotation_table(spots, column="cluster", shuffle=True, seed=3)
    clusters_path = tmp_path / "clusters.csv"
    clusters.to_csv(clusters_path, index_label="barcode")

    with pytest.raises(OrderMismatchError):
        spot_workflow(visium_dir, clusters_path, order="strict", hvg_flavor="seurat")


@pytest.mark.parametrize("reader", ["xenium", "triplets"])
def test_cell_workflow(tmp_path, spots, xenium_dir, triplets_dir, reader):
    labels = make_annotation_table(
        spots, column="cell_type", keep_fraction=0.75, shuffle=True, seed=4
    )
    labels_path = tmp_path / "labels.csv"
    labels.to_csv(labels_path, index_label="cell")

    data_dir = xenium_dir if reader == "xenium" else triplets_dir
    adata = cell_workflow(
        data_dir,
        labels_path,
        reader=reader,
        hvg_flavor="seurat",
        n_top_genes=30,
        output_dir=tmp_path / reader,
    )

    assert set(adata.obs_names) == set(labels.index)
    mapping = dict(zip(adata.obs_names, adata.obs["cell_type"].astype(str)))
    assert mapping == labels["cell_type"].to_dict()
    assert len(adata.uns["cell_type_colors"]) == len(adata.obs["cell_type"].cat.categories)
    assert (tmp_path / reader / "cells_annotated.h5ad").exists()


def test_cell_workflow_unknown_reader(tmp_path):
    with pytest.raises(ValueError, match="Unknown reader"):
        cell_workflow(tmp_path, tmp_path / "labels.csv", reader="merscope")
