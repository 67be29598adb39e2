"""
合成サンプルデータ生成モジュール

動作確認用に、各プラットフォームの出力ディレクトリと
外部アノテーション表（QC で一部のキーが除かれたもの）を生成する
"""

import json
import os
import numpy as np
import pandas as pd
from anndata import AnnData
from scipy.io import mmwrite
from scipy.sparse import csr_matrix
from scipy.spatial.distance import cdist
from typing import Optional, Union

from .utils import get_rng


def generate_synthetic_spatial_data(
    n_obs: int = 500,
    n_genes: int = 200,
    n_domains: int = 5,
    grid_size: int = 30,
    prefix: str = 'Spot',
    label_prefix: str = 'Domain',
    seed: int = 0
) -> AnnData:
    """
    合成空間トランスクリプトームデータを生成

    Parameters
    ----------
    n_obs : int
        スポット / 細胞数
    n_genes : int
        遺伝子数
    n_domains : int
        Spatial domain（細胞型）数
    grid_size : int
        空間座標の範囲
    prefix : str
        obs_names の接頭辞
    label_prefix : str
        ground truth ラベルの接頭辞
    seed : int
        乱数シード

    Returns
    -------
    adata : AnnData
        - adata.X: 整数カウント（CSR）
        - adata.obsm['spatial']: 座標
        - adata.obs['ground_truth']: domain ラベル
    """
    rng = get_rng(seed)

    coords = rng.uniform(0, grid_size, size=(n_obs, 2))

    # 各スポットを最も近い domain center に割り当て
    domain_centers = rng.uniform(0, grid_size, size=(n_domains, 2))
    domain_labels = np.argmin(cdist(coords, domain_centers), axis=1)

    # Domain-specific genes は domain 内で高発現
    expression = rng.negative_binomial(n=2, p=0.8, size=(n_obs, n_genes))
    n_genes_per_domain = max(1, n_genes // n_domains)
    for domain_id in range(n_domains):
        spot_mask = domain_labels == domain_id
        gene_start = domain_id * n_genes_per_domain
        gene_end = min((domain_id + 1) * n_genes_per_domain, n_genes)
        if gene_start >= n_genes:
            break
        expression[np.ix_(spot_mask, np.arange(gene_start, gene_end))] = rng.negative_binomial(
            n=10, p=0.3, size=(int(spot_mask.sum()), gene_end - gene_start)
        )

    adata = AnnData(
        X=csr_matrix(expression.astype(np.float32)),
        obs=pd.DataFrame(index=[f"{prefix}_{i}" for i in range(n_obs)]),
        var=pd.DataFrame(index=[f"Gene_{i}" for i in range(n_genes)])
    )
    adata.obsm['spatial'] = coords
    adata.obs['ground_truth'] = pd.Categorical(
        [f"{label_prefix}_{d}" for d in domain_labels],
        categories=[f"{label_prefix}_{d}" for d in range(n_domains)]
    )

    return adata


def make_annotation_table(
    adata: AnnData,
    key: str = 'ground_truth',
    column: str = 'label',
    keep_fraction: float = 0.9,
    shuffle: bool = False,
    seed: int = 0
) -> pd.DataFrame:
    """
    外部アノテーション表を模擬

    QC フィルタリングで一部のキーが除かれた状態を再現する

    Parameters
    ----------
    adata : AnnData
        元データ
    key : str, default='ground_truth'
        ラベルとして使う adata.obs の列
    column : str, default='label'
        出力する列名
    keep_fraction : float, default=0.9
        残すキーの割合
    shuffle : bool, default=False
        行順をシャッフルするかどうか
    seed : int, default=0
        乱数シード

    Returns
    -------
    table : pd.DataFrame
        キーを index とするアノテーション表
    """
    rng = get_rng(seed)

    n_keep = max(1, int(round(adata.n_obs * keep_fraction)))
    kept = np.sort(rng.choice(adata.n_obs, n_keep, replace=False))
    if shuffle:
        kept = rng.permutation(kept)

    return pd.DataFrame(
        {column: adata.obs[key].astype(str).values[kept]},
        index=adata.obs_names[kept]
    )


def make_deconvolution_table(
    adata: AnnData,
    key: str = 'ground_truth',
    cell_types: Optional[list] = None,
    keep_fraction: float = 0.9,
    concentration: float = 1.0,
    seed: int = 0
) -> pd.DataFrame:
    """
    デコンボリューション結果（スポットごとの細胞型割合）を模擬

    各スポットの割合は Dirichlet 分布から生成し、
    adata.obs[key] の domain に対応する細胞型の割合を高くする
    """
    rng = get_rng(seed)

    domains = adata.obs[key].astype('category')
    if cell_types is None:
        cell_types = [f"CellType_{i}" for i in range(len(domains.cat.categories))]

    n_types = len(cell_types)
    alpha = np.full((adata.n_obs, n_types), concentration)
    alpha[np.arange(adata.n_obs), domains.cat.codes.values % n_types] += 5.0
    proportions = np.vstack([rng.dirichlet(a) for a in alpha])

    table = pd.DataFrame(proportions, index=adata.obs_names, columns=cell_types)

    n_keep = max(1, int(round(adata.n_obs * keep_fraction)))
    kept = np.sort(rng.choice(adata.n_obs, n_keep, replace=False))

    return table.iloc[kept]


def _write_mex(adata: AnnData, path: str):
    os.makedirs(path, exist_ok=True)

    # MEX は 遺伝子 x 細胞
    mmwrite(os.path.join(path, 'matrix.mtx'), csr_matrix(adata.X).T.tocoo())

    pd.DataFrame({
        'id': [f"ENSG{i:08d}" for i in range(adata.n_vars)],
        'name': adata.var_names,
        'type': 'Gene Expression',
    }).to_csv(os.path.join(path, 'features.tsv'), sep='\t', header=False, index=False)

    pd.Series(adata.obs_names).to_csv(
        os.path.join(path, 'barcodes.tsv'), sep='\t', header=False, index=False
    )


def write_visium(
    adata: AnnData,
    path: Union[str, os.PathLike],
    pixel_scale: float = 100.0,
    pixel_offset: float = 500.0,
    hires_scalef: float = 0.1,
    lowres_scalef: float = 0.03,
    image: bool = True,
    legacy_positions: bool = False
):
    """
    Space Ranger の outs ディレクトリ形式で書き出し

    座標 coords はフル解像度のピクセル座標 coords * pixel_scale + pixel_offset に変換する

    Parameters
    ----------
    adata : AnnData
        generate_synthetic_spatial_data() の出力
    path : str or PathLike
        出力ディレクトリ
    pixel_scale, pixel_offset : float
        座標からピクセル座標への変換
    hires_scalef, lowres_scalef : float
        スケールファクター
    image : bool, default=True
        組織画像（hires / lowres）を書き出すかどうか
    legacy_positions : bool, default=False
        True の場合はヘッダーなしの tissue_positions_list.csv
    """
    import matplotlib.pyplot as plt

    path = os.fspath(path)
    spatial_dir = os.path.join(path, 'spatial')
    os.makedirs(spatial_dir, exist_ok=True)

    _write_mex(adata, os.path.join(path, 'filtered_feature_bc_matrix'))

    pixels = np.asarray(adata.obsm['spatial']) * pixel_scale + pixel_offset
    positions = pd.DataFrame({
        'barcode': adata.obs_names,
        'in_tissue': 1,
        'array_row': np.round(pixels[:, 1] / pixel_scale).astype(int),
        'array_col': np.round(pixels[:, 0] / pixel_scale).astype(int),
        'pxl_row_in_fullres': pixels[:, 1],
        'pxl_col_in_fullres': pixels[:, 0],
    })
    if legacy_positions:
        positions.to_csv(os.path.join(spatial_dir, 'tissue_positions_list.csv'), header=False, index=False)
    else:
        positions.to_csv(os.path.join(spatial_dir, 'tissue_positions.csv'), index=False)

    scalefactors = {
        'tissue_hires_scalef': hires_scalef,
        'tissue_lowres_scalef': lowres_scalef,
        'spot_diameter_fullres': pixel_scale * 0.55,
        'fiducial_diameter_fullres': pixel_scale * 0.85,
    }
    with open(os.path.join(spatial_dir, 'scalefactors_json.json'), 'w') as f:
        json.dump(scalefactors, f)

    if image:
        extent = pixels.max() + pixel_offset
        for res, scalef in [('hires', hires_scalef), ('lowres', lowres_scalef)]:
            size = max(2, int(np.ceil(extent * scalef)))
            tissue = np.full((size, size, 3), 0.9)
            tissue[:, :, 0] = np.linspace(0.8, 1.0, size)[None, :]
            plt.imsave(os.path.join(spatial_dir, f'tissue_{res}_image.png'), tissue)


def write_xenium(adata: AnnData, path: Union[str, os.PathLike]):
    """Xenium の出力ディレクトリ形式（cell_feature_matrix/ と cells.csv）で書き出し"""
    path = os.fspath(path)
    _write_mex(adata, os.path.join(path, 'cell_feature_matrix'))

    coords = np.asarray(adata.obsm['spatial'])
    counts = np.asarray(adata.X.sum(axis=1)).ravel()
    pd.DataFrame({
        'cell_id': adata.obs_names,
        'x_centroid': coords[:, 0],
        'y_centroid': coords[:, 1],
        'transcript_counts': counts.astype(int),
    }).to_csv(os.path.join(path, 'cells.csv'), index=False)


def write_triplets(adata: AnnData, path: Union[str, os.PathLike]):
    """縦持ち形式（counts.csv: cell, gene, count と cells.csv: cell, x, y）で書き出し"""
    path = os.fspath(path)
    os.makedirs(path, exist_ok=True)

    X = csr_matrix(adata.X).tocoo()
    pd.DataFrame({
        'cell': adata.obs_names[X.row],
        'gene': adata.var_names[X.col],
        'count': X.data.astype(int),
    }).to_csv(os.path.join(path, 'counts.csv'), index=False)

    coords = np.asarray(adata.obsm['spatial'])
    pd.DataFrame({
        'cell': adata.obs_names,
        'x': coords[:, 0],
        'y': coords[:, 1],
    }).to_csv(os.path.join(path, 'cells.csv'), index=False)
