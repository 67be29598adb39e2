"""Tests for reconciling external annotation tables with a dataset."""

import numpy as np
import pandas as pd
import pytest

from stannot.annotation import (
    EmptyIntersectionError,
    KeyDomainError,
    OrderMismatchError,
    ReconciliationError,
    attach_deconvolution,
    check_dimensions,
    load_annotation_table,
    reconcile,
    reconcile_cell_types,
    reconcile_clusters,
)


def _labels(keys, values, column="label"):
    return pd.DataFrame({column: values}, index=keys)


def test_matched_input_keeps_every_record(six_cells):
    keys = list(six_cells.obs_names)
    table = _labels(keys, ["a", "b", "a", "b", "a", "b"])

    result = reconcile(six_cells, table, order="strict")

    assert list(result.obs_names) == keys
    assert list(result.obs["label"]) == ["a", "b", "a", "b", "a", "b"]
    np.testing.assert_array_equal(result.X, six_cells.X)
    np.testing.assert_array_equal(result.obsm["spatial"], six_cells.obsm["spatial"])
    assert result.uns["reconciliation"]["label"]["n_dropped"] == 0


def test_matched_input_emits_no_dimension_warning(six_cells, recwarn):
    table = _labels(list(six_cells.obs_names), list("abcdef"))

    reconcile(six_cells, table, verbose=False)

    assert not [w for w in recwarn if "行数が一致しません" in str(w.message)]


def test_subset_restricts_to_annotation_keys(six_cells):
    table = _labels(["c2", "c4", "c5"], ["T-cell", "B-cell", "T-cell"])

    with pytest.warns(UserWarning, match="行数が一致しません"):
        result = reconcile(six_cells, table)

    assert list(result.obs_names) == ["c2", "c4", "c5"]
    assert list(result.obs["label"]) == ["T-cell", "B-cell", "T-cell"]
    assert list(result.obs["area"]) == [20.0, 40.0, 50.0]
    np.testing.assert_array_equal(result.X, six_cells.X[[1, 3, 4]])
    np.testing.assert_array_equal(result.obsm["spatial"], six_cells.obsm["spatial"][[1, 3, 4]])
    assert result.uns["reconciliation"]["label"]["n_dropped"] == 3


def test_label_mapping_does_not_depend_on_table_row_order(six_cells):
    table = _labels(["c5", "c2", "c4"], ["T-cell", "T-cell", "B-cell"])

    result = reconcile(six_cells, table, order="sort")

    assert list(result.obs_names) == ["c2", "c4", "c5"]
    mapping = dict(zip(result.obs_names, result.obs["label"]))
    assert mapping == {"c2": "T-cell", "c4": "B-cell", "c5": "T-cell"}


def test_strict_order_rejects_permuted_table(six_cells):
    table = _labels(["c5", "c2", "c4"], ["T-cell", "T-cell", "B-cell"])

    with pytest.raises(OrderMismatchError, match="キー順序"):
        reconcile(six_cells, table, order="strict")


def test_strict_order_rejects_full_permutation(six_cells):
    keys = list(six_cells.obs_names)[::-1]
    table = _labels(keys, list("fedcba"))

    with pytest.raises(OrderMismatchError):
        reconcile(six_cells, table, order="strict")

    # sort policy accepts the same table and maps by key
    result = reconcile(six_cells, table, order="sort")
    assert list(result.obs_names) == list(six_cells.obs_names)
    assert list(result.obs["label"]) == list("abcdef")


def test_disjoint_keys_raise_empty_intersection(six_cells):
    table = _labels(["x1", "x2"], ["a", "b"])

    with pytest.raises(EmptyIntersectionError):
        reconcile(six_cells, table)


def test_extra_annotation_keys_are_rejected(six_cells):
    table = _labels(["c1", "c2", "zz"], ["a", "b", "c"])

    with pytest.raises(KeyDomainError, match="zz"):
        reconcile(six_cells, table)


def test_reconciliation_errors_are_value_errors():
    assert issubclass(ReconciliationError, ValueError)
    for error in (KeyDomainError, OrderMismatchError, EmptyIntersectionError):
        assert issubclass(error, ReconciliationError)


def test_duplicate_annotation_keys_are_rejected(six_cells):
    table = _labels(["c1", "c1"], ["a", "b"])

    with pytest.raises(ValueError, match="重複"):
        reconcile(six_cells, table)


def test_empty_table_is_rejected(six_cells):
    with pytest.raises(ValueError, match="空"):
        reconcile(six_cells, _labels([], []))


def test_unknown_order_policy(six_cells):
    table = _labels(["c1"], ["a"])

    with pytest.raises(ValueError, match="Unknown order"):
        reconcile(six_cells, table, order="positional")


def test_unknown_column(six_cells):
    table = _labels(["c1"], ["a"])

    with pytest.raises(ValueError, match="not found"):
        reconcile(six_cells, table, column="missing")


def test_input_dataset_is_not_mutated(six_cells):
    table = _labels(["c2", "c4"], ["a", "b"])

    reconcile(six_cells, table)

    assert six_cells.n_obs == 6
    assert "label" not in six_cells.obs
    assert "reconciliation" not in six_cells.uns


def test_labels_are_categorical_by_default(six_cells):
    table = _labels(["c1", "c2", "c3"], ["b", "a", "b"])

    result = reconcile(six_cells, table)
    assert isinstance(result.obs["label"].dtype, pd.CategoricalDtype)
    assert list(result.obs["label"].cat.categories) == ["a", "b"]

    result = reconcile(six_cells, table, categorical=False)
    assert not isinstance(result.obs["label"].dtype, pd.CategoricalDtype)


def test_overwriting_existing_column_warns(six_cells):
    table = _labels(list(six_cells.obs_names), [1.0, 2.0, 3.0, 4.0, 5.0, 6.0], column="score")

    with pytest.warns(UserWarning, match="上書き"):
        result = reconcile(six_cells, table, key_added="area", categorical=False)

    assert list(result.obs["area"]) == [1.0, 2.0, 3.0, 4.0, 5.0, 6.0]


def test_check_dimensions(six_cells):
    assert check_dimensions(six_cells, _labels(list(six_cells.obs_names), list("abcdef")))

    with pytest.warns(UserWarning, match="6.*2"):
        assert not check_dimensions(six_cells, _labels(["c1", "c2"], ["a", "b"]))


def test_reconcile_clusters_converts_integer_ids(six_cells):
    table = pd.DataFrame({"cluster": [0, 1, 0]}, index=["c1", "c3", "c6"])

    result = reconcile_clusters(six_cells, table)

    assert list(result.obs["cluster"]) == ["0", "1", "0"]
    assert isinstance(result.obs["cluster"].dtype, pd.CategoricalDtype)


def test_reconcile_clusters_keeps_missing_ids_missing(six_cells, tmp_path):
    path = tmp_path / "clusters.csv"
    path.write_text("barcode,cluster\nc1,1\nc2,2\nc3,\nc4,1\n")

    result = reconcile_clusters(six_cells, load_annotation_table(path))

    assert list(result.obs["cluster"].cat.categories) == ["1", "2"]
    assert list(result.obs["cluster"].astype(object).iloc[[0, 1, 3]]) == ["1", "2", "1"]
    assert pd.isna(result.obs.loc["c3", "cluster"])


def test_reconcile_cell_types_successive_tables(six_cells):
    types = _labels(["c1", "c2", "c3", "c4"], ["T", "B", "T", "NK"], column="cell_type")
    result = reconcile_cell_types(six_cells, types)

    assert list(result.obs["cell_type"]) == ["T", "B", "T", "NK"]

    clusters = pd.DataFrame({"cluster": [1, 2]}, index=["c4", "c2"])
    result = reconcile_clusters(result, clusters)

    assert list(result.obs_names) == ["c2", "c4"]
    assert list(result.obs["cell_type"]) == ["B", "NK"]
    assert list(result.obs["cluster"]) == ["2", "1"]
    assert set(result.uns["reconciliation"]) == {"cell_type", "cluster"}


def test_synthetic_spots_reconcile(spots, cluster_table):
    shuffled = cluster_table.sample(frac=1.0, random_state=0)

    result = reconcile_clusters(spots, shuffled)

    assert result.n_obs == len(cluster_table)
    assert set(result.obs_names) == set(cluster_table.index)
    expected = spots.obs["ground_truth"].astype(str).loc[result.obs_names]
    assert list(result.obs["cluster"].astype(str)) == list(expected)
    # dataset order is preserved
    positions = [spots.obs_names.get_loc(k) for k in result.obs_names]
    assert positions == sorted(positions)


def test_attach_deconvolution(spots, deconvolution_table):
    result = attach_deconvolution(spots, deconvolution_table)

    cell_types = list(deconvolution_table.columns)
    assert result.n_obs == len(deconvolution_table)
    assert result.uns["deconvolution_cell_types"] == cell_types

    stored = result.obsm["deconvolution"]
    pd.testing.assert_frame_equal(
        stored.loc[deconvolution_table.index], deconvolution_table, check_names=False
    )
    for cell_type in cell_types:
        np.testing.assert_allclose(
            result.obs[f"deconvolution_{cell_type}"].values,
            deconvolution_table.loc[result.obs_names, cell_type].values,
        )

    dominant = deconvolution_table.loc[result.obs_names].idxmax(axis=1)
    assert list(result.obs["deconvolution_dominant"].astype(str)) == list(dominant)


def test_attach_deconvolution_missing_row_has_no_dominant_type(six_cells):
    table = pd.DataFrame({"A": [0.9, np.nan], "B": [0.1, np.nan]}, index=["c1", "c2"])

    with pytest.warns(UserWarning, match="欠損"):
        result = attach_deconvolution(six_cells, table, verbose=False)

    dominant = result.obs["deconvolution_dominant"]
    assert dominant.loc["c1"] == "A"
    assert pd.isna(dominant.loc["c2"])
    assert list(dominant.cat.categories) == ["A", "B"]


def test_attach_deconvolution_rejects_non_numeric(spots):
    table = pd.DataFrame(
        {"A": [0.5, 0.2], "B": ["x", "y"]}, index=list(spots.obs_names[:2])
    )

    with pytest.raises(ValueError, match="数値"):
        attach_deconvolution(spots, table)


def test_load_annotation_table_csv(tmp_path):
    path = tmp_path / "clusters.csv"
    pd.DataFrame({"barcode": ["c1", "c2"], "cluster": [3, 1], "score": [0.1, 0.2]}).to_csv(
        path, index=False
    )

    table = load_annotation_table(path)

    assert list(table.index) == ["c1", "c2"]
    assert list(table.columns) == ["cluster", "score"]

    table = load_annotation_table(path, columns=["score"])
    assert list(table.columns) == ["score"]


def test_load_annotation_table_tsv_with_numeric_keys(tmp_path):
    path = tmp_path / "labels.tsv"
    path.write_text("cell\tcell_type\n101\tT\n102\tB\n")

    table = load_annotation_table(path)

    assert list(table.index) == ["101", "102"]
    assert list(table["cell_type"]) == ["T", "B"]


def test_load_annotation_table_rejects_duplicates(tmp_path):
    path = tmp_path / "dup.csv"
    path.write_text("cell,cell_type\nc1,T\nc1,B\n")

    with pytest.raises(ValueError, match="重複"):
        load_annotation_table(path)


def test_load_annotation_table_unknown_column(tmp_path):
    path = tmp_path / "labels.csv"
    path.write_text("cell,cell_type\nc1,T\n")

    with pytest.raises(ValueError, match="列が見つかりません"):
        load_annotation_table(path, columns=["cluster"])
