"""
データ前処理モジュール
QC フィルタリング・正規化・次元削減（PCA / UMAP）
"""

import numpy as np
import scanpy as sc
from anndata import AnnData
from typing import Optional

from .utils import get_rng


def qc_filter(
    adata: AnnData,
    min_counts: int = 0,
    min_genes: int = 0,
    min_cells: int = 0,
    copy: bool = False
) -> Optional[AnnData]:
    """
    低品質なスポット / 細胞と低発現遺伝子を除去

    外部のクラスタリング・ラベリングはこのフィルタ後のデータで計算されるため、
    アノテーション表のキーはデータセットのキーの部分集合になる

    Parameters
    ----------
    adata : AnnData
        入力データ（生カウント）
    min_counts : int, default=0
        スポット / 細胞の最小総カウント
    min_genes : int, default=0
        スポット / 細胞で検出される最小遺伝子数
    min_cells : int, default=0
        遺伝子が検出される最小スポット / 細胞数
    copy : bool, default=False
        コピーを返すかどうか

    Returns
    -------
    AnnData or None
        copy=True の場合はフィルタ済みの AnnData
    """
    if copy:
        adata = adata.copy()

    n_obs, n_vars = adata.shape
    print(f"QC フィルタリング（min_counts={min_counts}, min_genes={min_genes}, min_cells={min_cells}）")

    if min_counts > 0:
        sc.pp.filter_cells(adata, min_counts=min_counts)
    if min_genes > 0:
        sc.pp.filter_cells(adata, min_genes=min_genes)
    if min_cells > 0:
        sc.pp.filter_genes(adata, min_cells=min_cells)

    print(f"  - スポット / 細胞: {n_obs} -> {adata.n_obs}")
    print(f"  - 遺伝子: {n_vars} -> {adata.n_vars}")

    if copy:
        return adata
    else:
        return None


def preprocess_data(
    adata: AnnData,
    n_top_genes: int = 2000,
    target_sum: float = 1e4,
    log_transform: bool = True,
    flavor: str = 'seurat_v3',
    copy: bool = False
) -> Optional[AnnData]:
    """
    正規化と HVG 選択

    処理手順:
    1. 生カウントを adata.layers['counts'] に保存
    2. 正規化: 各スポット / 細胞の合計カウントを target_sum にスケール
    3. log1p 変換: log(x + 1)
    4. HVG（Highly Variable Genes）の選択（adata.var['highly_variable']）

    Parameters
    ----------
    adata : AnnData
        入力データ
    n_top_genes : int, default=2000
        選択する HVG の数（遺伝子数より多い場合は全遺伝子）
    target_sum : float, default=1e4
        正規化のターゲット合計値
    log_transform : bool, default=True
        log1p 変換を実行するかどうか
    flavor : str, default='seurat_v3'
        HVG 選択の手法（scanpy の flavor）
    copy : bool, default=False
        コピーを返すかどうか

    Returns
    -------
    AnnData or None
        copy=True の場合は前処理済みの AnnData
        copy=False の場合は None（元のオブジェクトを直接変更）

    Notes
    -----
    イメージングベースのパネルは遺伝子数が少ない（数百程度）ため、
    HVG は選択情報を保存するだけで遺伝子は除去しない
    """
    if copy:
        adata = adata.copy()

    print("データ前処理開始...")
    print(f"元のデータサイズ: {adata.shape}")

    if 'counts' not in adata.layers:
        adata.layers['counts'] = adata.X.copy()

    print(f"ステップ1: 正規化（target_sum={target_sum}）")
    sc.pp.normalize_total(adata, target_sum=target_sum)

    if log_transform:
        print("ステップ2: log1p 変換")
        sc.pp.log1p(adata)

    n_top_genes = min(n_top_genes, adata.n_vars)
    print(f"ステップ3: HVG 選択（n_top_genes={n_top_genes}, flavor={flavor}）")
    sc.pp.highly_variable_genes(
        adata,
        n_top_genes=n_top_genes,
        flavor=flavor,
        # seurat_v3 は生カウントを前提とする
        layer='counts' if flavor == 'seurat_v3' else None,
        subset=False
    )

    print(f"前処理完了! HVG 数: {int(adata.var['highly_variable'].sum())}")

    if copy:
        return adata
    else:
        return None


def compute_embeddings(
    adata: AnnData,
    n_comps: int = 30,
    n_neighbors: int = 15,
    min_dist: float = 0.3,
    use_highly_variable: Optional[bool] = None,
    random_state: int = 0
) -> AnnData:
    """
    PCA・近傍グラフ・UMAP を計算

    Parameters
    ----------
    adata : AnnData
        前処理済みのデータ
    n_comps : int, default=30
        主成分の数（スポット数・遺伝子数より小さく制限される）
    n_neighbors : int, default=15
        近傍グラフの近傍数
    min_dist : float, default=0.3
        UMAP の min_dist パラメータ
    use_highly_variable : bool, optional
        HVG のみで PCA を計算するかどうか
        指定しない場合は adata.var['highly_variable'] があれば使用
    random_state : int, default=0
        乱数シード

    Returns
    -------
    adata : AnnData
        adata.obsm['X_pca'], adata.obsm['X_umap'] が追加された AnnData
    """
    if use_highly_variable is None:
        use_highly_variable = 'highly_variable' in adata.var

    n_features = int(adata.var['highly_variable'].sum()) if use_highly_variable else adata.n_vars
    n_comps = max(1, min(n_comps, adata.n_obs - 1, n_features - 1))
    n_neighbors = max(2, min(n_neighbors, adata.n_obs - 1))

    print(f"PCA を計算中（n_comps={n_comps}）...")
    if use_highly_variable:
        sc.tl.pca(adata, n_comps=n_comps, mask_var='highly_variable', random_state=random_state)
    else:
        sc.tl.pca(adata, n_comps=n_comps, random_state=random_state)

    print(f"近傍グラフ構築（n_neighbors={n_neighbors}）...")
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, use_rep='X_pca', random_state=random_state)

    print(f"UMAP を計算中（min_dist={min_dist}）...")
    sc.tl.umap(adata, min_dist=min_dist, random_state=random_state)

    explained = np.sum(adata.uns['pca']['variance_ratio']) * 100
    print(f"PCA 累積寄与率: {explained:.1f}%")

    return adata


def calculate_spatial_statistics(
    adata: AnnData,
    spatial_key: str = 'spatial',
    n_samples: int = 1000,
    seed: int = 0
) -> dict:
    """
    空間座標の統計情報を計算

    Parameters
    ----------
    adata : AnnData
        空間座標を含む AnnData オブジェクト
    spatial_key : str, default='spatial'
        空間座標のキー（adata.obsm[spatial_key]）
    n_samples : int, default=1000
        最近傍距離を計算するサンプル数
    seed : int, default=0
        サンプリングの乱数シード

    Returns
    -------
    dict
        統計情報（平均距離、中央値距離など）
    """
    if spatial_key not in adata.obsm:
        raise ValueError(f"spatial_key '{spatial_key}' not found in adata.obsm")

    coords = np.asarray(adata.obsm[spatial_key], dtype=float)
    if coords.shape[0] < 2:
        raise ValueError("最近傍距離の計算には 2 点以上の座標が必要です")

    from sklearn.neighbors import NearestNeighbors

    rng = get_rng(seed)
    n_samples = min(n_samples, coords.shape[0])
    indices = rng.choice(coords.shape[0], n_samples, replace=False)

    nbrs = NearestNeighbors(n_neighbors=2).fit(coords)
    distances, _ = nbrs.kneighbors(coords[indices])
    nearest_distances = distances[:, 1]  # 自分自身を除く

    stats = {
        'mean_nearest_distance': float(np.mean(nearest_distances)),
        'median_nearest_distance': float(np.median(nearest_distances)),
        'std_nearest_distance': float(np.std(nearest_distances)),
        'n_obs': int(coords.shape[0]),
        'spatial_extent_x': float(coords[:, 0].max() - coords[:, 0].min()),
        'spatial_extent_y': float(coords[:, 1].max() - coords[:, 1].min()),
    }

    print("\n空間統計情報:")
    print(f"  - スポット / 細胞数: {stats['n_obs']}")
    print(f"  - 平均最近傍距離: {stats['mean_nearest_distance']:.2f}")
    print(f"  - 中央値最近傍距離: {stats['median_nearest_distance']:.2f}")
    print(f"  - 空間範囲 (x): {stats['spatial_extent_x']:.2f}")
    print(f"  - 空間範囲 (y): {stats['spatial_extent_y']:.2f}")

    return stats
