"""
ワークフローモジュール
読み込み → アノテーション統合 → 次元削減 → 可視化 の一連の手順

- スポットレベル（Visium）: 空間クラスタ + デコンボリューション
- 細胞レベル（Xenium / triplet）: 細胞型ラベル
"""

import os
from pathlib import Path
from anndata import AnnData
from typing import Optional, Union

from .readers import read_visium, read_xenium, read_triplets, scale_coordinates
from .annotation import (
    load_annotation_table,
    reconcile_clusters,
    reconcile_cell_types,
    attach_deconvolution
)
from .preprocessing import preprocess_data, compute_embeddings, calculate_spatial_statistics
from .palette import set_palette
from .utils import get_rng
from .visualization import (
    plot_spatial,
    plot_umap,
    plot_deconvolution,
    plot_composition
)


def _output_path(output_dir: Optional[Path], name: str) -> Optional[Path]:
    if output_dir is None:
        return None
    return output_dir / name


def spot_workflow(
    data_dir: Union[str, os.PathLike],
    clusters_path: Union[str, os.PathLike],
    deconvolution_path: Optional[Union[str, os.PathLike]] = None,
    cluster_column: Optional[str] = None,
    order: str = 'sort',
    img_key: Optional[str] = 'hires',
    n_top_genes: int = 2000,
    hvg_flavor: str = 'seurat_v3',
    seed: int = 0,
    output_dir: Optional[Union[str, os.PathLike]] = None,
    show: bool = False
) -> AnnData:
    """
    スポットレベル（Visium）のワークフロー

    フロー:
    1. Visium データ読み込み
    2. 表示用座標への変換（スケールファクター）
    3. 空間クラスタの統合
    4. （オプション）デコンボリューション結果の統合
    5. 前処理と PCA / UMAP
    6. パレット設定と可視化
    7. 結果保存

    Parameters
    ----------
    data_dir : str or PathLike
        Space Ranger の outs ディレクトリ
    clusters_path : str or PathLike
        空間クラスタの表（barcode, cluster）
    deconvolution_path : str or PathLike, optional
        デコンボリューション結果の表（barcode, 細胞型ごとの割合）
    cluster_column : str, optional
        クラスタ列の名前（指定しない場合は最初の列）
    order : {'sort', 'strict'}, default='sort'
        キー順序の検証方法
    img_key : str, optional
        背景画像（'hires' / 'lowres'）。None または画像がない場合は座標のみ
    n_top_genes : int, default=2000
        HVG の数
    hvg_flavor : str, default='seurat_v3'
        HVG 選択の手法
    seed : int, default=0
        パレット生成・次元削減の乱数シード
    output_dir : str or PathLike, optional
        図と h5ad の保存先
    show : bool, default=False
        図を表示するかどうか

    Returns
    -------
    adata : AnnData
        アノテーション統合済みのデータ
    """
    if output_dir is not None:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

    print(f"\n{'='*70}")
    print("スポットレベル ワークフロー開始")
    print(f"{'='*70}\n")

    print("ステップ 1/7: データ読み込み")
    adata = read_visium(data_dir)

    print("ステップ 2/7: 座標変換")
    library_id = list(adata.uns['spatial'].keys())[0]
    images = adata.uns['spatial'][library_id]['images']
    if img_key is not None and img_key not in images:
        print(f"画像 '{img_key}' がないため座標のみでプロットします")
        img_key = None
    if img_key is not None:
        scale_coordinates(adata, library_id=library_id, resolution=img_key)

    adata.uns['spatial_stats'] = calculate_spatial_statistics(adata)

    print("ステップ 3/7: 空間クラスタの統合")
    clusters = load_annotation_table(clusters_path)
    adata = reconcile_clusters(adata, clusters, column=cluster_column, order=order)

    if deconvolution_path is not None:
        print("ステップ 4/7: デコンボリューション結果の統合")
        proportions = load_annotation_table(deconvolution_path)
        adata = attach_deconvolution(adata, proportions, order=order)
    else:
        print("ステップ 4/7: デコンボリューションをスキップ")

    print("ステップ 5/7: 前処理と次元削減")
    preprocess_data(adata, n_top_genes=n_top_genes, flavor=hvg_flavor)
    compute_embeddings(adata, random_state=seed)

    print("ステップ 6/7: 可視化")
    rng = get_rng(seed)
    set_palette(adata, 'cluster', rng=rng)

    plot_spatial(
        adata,
        color='cluster',
        img_key=img_key,
        save=_output_path(output_dir, 'spatial_clusters.png'),
        show=show
    )
    plot_umap(adata, color='cluster', save=_output_path(output_dir, 'umap_clusters.png'), show=show)

    if deconvolution_path is not None:
        set_palette(adata, 'deconvolution_dominant', rng=rng)
        plot_deconvolution(adata, save=_output_path(output_dir, 'spatial_deconvolution.png'), show=show)
        plot_composition(
            adata,
            groupby='cluster',
            key='deconvolution',
            save=_output_path(output_dir, 'composition.png'),
            show=show
        )

    if output_dir is not None:
        print("ステップ 7/7: 結果保存")
        output_h5ad = output_dir / 'spots_annotated.h5ad'
        _write(adata, output_h5ad)

    print(f"\n{'='*70}")
    print("スポットレベル ワークフロー完了!")
    print(f"{'='*70}\n")

    return adata


def cell_workflow(
    data_dir: Union[str, os.PathLike],
    labels_path: Union[str, os.PathLike],
    label_column: Optional[str] = None,
    reader: str = 'xenium',
    order: str = 'sort',
    n_top_genes: int = 2000,
    hvg_flavor: str = 'seurat_v3',
    seed: int = 0,
    output_dir: Optional[Union[str, os.PathLike]] = None,
    show: bool = False,
    **reader_kwargs
) -> AnnData:
    """
    細胞レベル（イメージングベース）のワークフロー

    Parameters
    ----------
    data_dir : str or PathLike
        reader='xenium': Xenium の出力ディレクトリ
        reader='triplets': counts.csv と cells.csv を含むディレクトリ
    labels_path : str or PathLike
        細胞型ラベルの表（cell, cell_type）
    label_column : str, optional
        ラベル列の名前（指定しない場合は最初の列）
    reader : {'xenium', 'triplets'}, default='xenium'
        読み込み方法
    order : {'sort', 'strict'}, default='sort'
        キー順序の検証方法
    seed : int, default=0
        パレット生成・次元削減の乱数シード
    output_dir : str or PathLike, optional
        図と h5ad の保存先
    **reader_kwargs
        reader に渡す追加の引数

    Returns
    -------
    adata : AnnData
        細胞型ラベル統合済みのデータ
    """
    if output_dir is not None:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

    print(f"\n{'='*70}")
    print("細胞レベル ワークフロー開始")
    print(f"{'='*70}\n")

    print("ステップ 1/5: データ読み込み")
    if reader == 'xenium':
        adata = read_xenium(data_dir, **reader_kwargs)
    elif reader == 'triplets':
        data_dir = Path(data_dir)
        adata = read_triplets(data_dir / 'counts.csv', data_dir / 'cells.csv', **reader_kwargs)
    else:
        raise ValueError(f"Unknown reader: {reader}. Use 'xenium' or 'triplets'.")

    adata.uns['spatial_stats'] = calculate_spatial_statistics(adata)

    print("ステップ 2/5: 細胞型ラベルの統合")
    labels = load_annotation_table(labels_path)
    adata = reconcile_cell_types(adata, labels, column=label_column, order=order)

    print("ステップ 3/5: 前処理と次元削減")
    preprocess_data(adata, n_top_genes=n_top_genes, flavor=hvg_flavor)
    compute_embeddings(adata, random_state=seed)

    print("ステップ 4/5: 可視化")
    set_palette(adata, 'cell_type', seed=seed)
    plot_spatial(
        adata,
        color='cell_type',
        spot_size=5,
        save=_output_path(output_dir, 'spatial_cell_types.png'),
        show=show
    )
    plot_umap(adata, color='cell_type', save=_output_path(output_dir, 'umap_cell_types.png'), show=show)

    if output_dir is not None:
        print("ステップ 5/5: 結果保存")
        _write(adata, output_dir / 'cells_annotated.h5ad')

    print(f"\n{'='*70}")
    print("細胞レベル ワークフロー完了!")
    print(f"{'='*70}\n")

    return adata


def _write(adata: AnnData, path: Path):
    adata.write_h5ad(path)
    print(f"  - AnnData を保存: {path}")
