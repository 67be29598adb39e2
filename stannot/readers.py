"""
データ読み込みモジュール
各プラットフォームの出力ディレクトリから AnnData を構築する

- 10x Visium（スポット、Space Ranger 出力）
- 10x Xenium（細胞、Xenium Onboard Analysis 出力）
- 汎用 triplet 形式（細胞, 遺伝子, カウント の縦持ちテキスト）
"""

import json
import os
import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from scipy.io import mmread
from scipy.sparse import csr_matrix, coo_matrix
from typing import Optional, Tuple, Union
import warnings

from .utils import find_first_file, infer_separator, check_unique


# tissue_positions_list.csv（旧形式）にはヘッダーがない
VISIUM_POSITION_COLUMNS = [
    'barcode',
    'in_tissue',
    'array_row',
    'array_col',
    'pxl_row_in_fullres',
    'pxl_col_in_fullres',
]


# sc.read_10x_mtx が読めるファイル名の組（matrix, features, barcodes）
SCANPY_MEX_LAYOUTS = [
    ('matrix.mtx.gz', 'features.tsv.gz', 'barcodes.tsv.gz'),
    ('matrix.mtx', 'genes.tsv', 'barcodes.tsv'),
]


def read_10x_mex(path: Union[str, os.PathLike]) -> AnnData:
    """
    10x の Market Exchange (MEX) 形式ディレクトリを読み込み

    Parameters
    ----------
    path : str or PathLike
        matrix.mtx, features.tsv (または genes.tsv), barcodes.tsv を含むディレクトリ
        （いずれも .gz 圧縮可）

    Returns
    -------
    adata : AnnData
        細胞（スポット） x 遺伝子 のカウント行列

    Notes
    -----
    Cell Ranger の標準レイアウト（v3 の gzip 圧縮、または v2 の genes.tsv）は
    sc.read_10x_mtx で読み込む。sc.read_10x_mtx が扱えない非圧縮の v3
    （features.tsv）や圧縮の混在したディレクトリは scipy の mmread で直接読む
    """
    matrix_path = find_first_file(path, ['matrix.mtx.gz', 'matrix.mtx'])
    features_path = find_first_file(
        path, ['features.tsv.gz', 'features.tsv', 'genes.tsv.gz', 'genes.tsv']
    )
    barcodes_path = find_first_file(path, ['barcodes.tsv.gz', 'barcodes.tsv'])

    layout = tuple(os.path.basename(p) for p in (matrix_path, features_path, barcodes_path))
    if layout in SCANPY_MEX_LAYOUTS:
        adata = sc.read_10x_mtx(path, var_names='gene_symbols', make_unique=True, gex_only=False)
        adata.X = csr_matrix(adata.X, dtype=np.float32)
        return adata

    # MEX は 遺伝子 x 細胞 で保存されている
    X = csr_matrix(mmread(matrix_path).T)

    features = pd.read_csv(features_path, sep='\t', header=None)
    barcodes = pd.read_csv(barcodes_path, sep='\t', header=None)[0].astype(str)

    if features.shape[1] > 1:
        var = pd.DataFrame(
            {'gene_ids': features[0].astype(str).values},
            index=features[1].astype(str).values
        )
    else:
        var = pd.DataFrame(index=features[0].astype(str).values)
    if features.shape[1] > 2:
        var['feature_types'] = features[2].astype(str).values

    if X.shape != (len(barcodes), len(var)):
        raise ValueError(
            f"行列サイズが barcodes / features と一致しません: {X.shape} vs "
            f"({len(barcodes)}, {len(var)})"
        )

    adata = AnnData(
        X=X.astype(np.float32),
        obs=pd.DataFrame(index=barcodes.values),
        var=var
    )
    adata.var_names_make_unique()

    return adata


def _read_counts(path: str, h5_name: str, mex_name: str) -> AnnData:
    h5_path = os.path.join(path, h5_name)
    if os.path.exists(h5_path):
        print(f"カウント行列を読み込み中: {h5_path}")
        adata = sc.read_10x_h5(h5_path)
        adata.var_names_make_unique()
        return adata

    mex_path = os.path.join(path, mex_name)
    if os.path.isdir(mex_path):
        print(f"カウント行列を読み込み中: {mex_path}")
        return read_10x_mex(mex_path)

    raise FileNotFoundError(f"{path} に {h5_name} も {mex_name}/ も見つかりません")


def _read_visium_positions(spatial_dir: str) -> pd.DataFrame:
    path = find_first_file(
        spatial_dir,
        ['tissue_positions.csv', 'tissue_positions_list.csv']
    )

    if path.endswith('tissue_positions_list.csv'):
        positions = pd.read_csv(path, header=None, names=VISIUM_POSITION_COLUMNS)
    else:
        positions = pd.read_csv(path)

    positions['barcode'] = positions['barcode'].astype(str)
    return positions.set_index('barcode')


def read_visium(
    path: Union[str, os.PathLike],
    count_dir: str = 'filtered_feature_bc_matrix',
    library_id: Optional[str] = None,
    load_images: bool = True,
    in_tissue_only: bool = True
) -> AnnData:
    """
    10x Visium（Space Ranger 出力）を読み込み

    Parameters
    ----------
    path : str or PathLike
        Space Ranger の outs ディレクトリ
        - {count_dir}.h5 または {count_dir}/（MEX 形式）
        - spatial/tissue_positions.csv または spatial/tissue_positions_list.csv
        - spatial/scalefactors_json.json
        - spatial/tissue_hires_image.png, spatial/tissue_lowres_image.png（任意）
    count_dir : str, default='filtered_feature_bc_matrix'
        カウント行列の名前
    library_id : str, optional
        adata.uns['spatial'] のキー（指定しない場合はディレクトリ名）
    load_images : bool, default=True
        組織画像を読み込むかどうか
    in_tissue_only : bool, default=True
        in_tissue == 1 のスポットのみ残すかどうか

    Returns
    -------
    adata : AnnData
        - adata.obsm['spatial']: フル解像度画像上のピクセル座標 (x, y)
        - adata.uns['spatial'][library_id]: 画像とスケールファクター

    Notes
    -----
    表示用の座標は scale_coordinates() でスケールファクターを掛けて得る
    """
    path = os.fspath(path)
    if library_id is None:
        library_id = os.path.basename(os.path.normpath(path))

    print(f"\n{'='*60}")
    print("Visium データ読み込み")
    print(f"{'='*60}")

    adata = _read_counts(path, f'{count_dir}.h5', count_dir)

    spatial_dir = os.path.join(path, 'spatial')
    positions = _read_visium_positions(spatial_dir)

    missing = adata.obs_names[~adata.obs_names.isin(positions.index)]
    if len(missing) > 0:
        raise ValueError(
            f"{len(missing)} 個のスポットに座標がありません: {list(missing[:5])}"
        )

    adata.obs = adata.obs.join(positions, how='left')

    if in_tissue_only and 'in_tissue' in adata.obs:
        n_before = adata.n_obs
        adata = adata[(adata.obs['in_tissue'] == 1).values].copy()
        if adata.n_obs < n_before:
            print(f"組織外のスポットを除去: {n_before - adata.n_obs} スポット")

    adata.obsm['spatial'] = adata.obs[
        ['pxl_col_in_fullres', 'pxl_row_in_fullres']
    ].to_numpy(dtype=float)

    with open(find_first_file(spatial_dir, ['scalefactors_json.json'])) as f:
        scalefactors = json.load(f)

    images = {}
    if load_images:
        from matplotlib.image import imread

        for res in ['hires', 'lowres']:
            image_path = os.path.join(spatial_dir, f'tissue_{res}_image.png')
            if os.path.exists(image_path):
                images[res] = imread(image_path)

    adata.uns['spatial'] = {
        library_id: {
            'images': images,
            'scalefactors': scalefactors,
            'metadata': {'source_path': path},
        }
    }

    print(f"スポット数: {adata.n_obs}, 遺伝子数: {adata.n_vars}")
    print(f"画像: {list(images.keys()) if images else 'なし'}")
    print(f"{'='*60}\n")

    return adata


def read_xenium(
    path: Union[str, os.PathLike],
    cells_file: Optional[str] = None
) -> AnnData:
    """
    10x Xenium の出力ディレクトリを読み込み

    Parameters
    ----------
    path : str or PathLike
        - cell_feature_matrix.h5 または cell_feature_matrix/（MEX 形式）
        - cells.csv(.gz): cell_id, x_centroid, y_centroid など
    cells_file : str, optional
        細胞メタデータのファイル名（指定しない場合は cells.csv.gz / cells.csv）

    Returns
    -------
    adata : AnnData
        adata.obsm['spatial'] に細胞重心の座標（μm）
    """
    path = os.fspath(path)

    print(f"\n{'='*60}")
    print("Xenium データ読み込み")
    print(f"{'='*60}")

    adata = _read_counts(path, 'cell_feature_matrix.h5', 'cell_feature_matrix')

    # Gene Expression 以外（コントロールプローブなど）を除外
    if 'feature_types' in adata.var:
        is_gene = adata.var['feature_types'] == 'Gene Expression'
        if not is_gene.all():
            print(f"Gene Expression 以外の特徴量を除外: {int((~is_gene).sum())} 個")
            adata = adata[:, is_gene.values].copy()

    if cells_file is None:
        cells_path = find_first_file(path, ['cells.csv.gz', 'cells.csv'])
    else:
        cells_path = os.path.join(path, cells_file)
    cells = pd.read_csv(cells_path)
    cells['cell_id'] = cells['cell_id'].astype(str)
    cells = cells.set_index('cell_id')

    missing = adata.obs_names[~adata.obs_names.isin(cells.index)]
    if len(missing) > 0:
        raise ValueError(f"{len(missing)} 個の細胞にメタデータがありません: {list(missing[:5])}")

    adata.obs = adata.obs.join(cells, how='left')
    adata.obsm['spatial'] = adata.obs[['x_centroid', 'y_centroid']].to_numpy(dtype=float)

    print(f"細胞数: {adata.n_obs}, 遺伝子数: {adata.n_vars}")
    print(f"{'='*60}\n")

    return adata


def read_triplets(
    counts_path: Union[str, os.PathLike],
    metadata_path: Union[str, os.PathLike],
    cell_col: str = 'cell',
    gene_col: str = 'gene',
    count_col: str = 'count',
    x_col: str = 'x',
    y_col: str = 'y',
    sep: Optional[str] = None
) -> AnnData:
    """
    縦持ち（triplet）形式のカウントを読み込み

    イメージングベースのプラットフォームでよく使われる
    「1 行 = (細胞, 遺伝子, カウント)」形式のテキストを疎行列に変換する

    Parameters
    ----------
    counts_path : str or PathLike
        カウントのテキスト（cell_col, gene_col, count_col の列を持つ）
    metadata_path : str or PathLike
        細胞メタデータ（cell_col, x_col, y_col の列を持つ）
    cell_col, gene_col, count_col : str
        カウントファイルの列名
    x_col, y_col : str
        メタデータの座標列
    sep : str, optional
        区切り文字（指定しない場合は拡張子から推定）

    Returns
    -------
    adata : AnnData
        メタデータの細胞順に並んだ AnnData（カウントのない細胞は 0 行）
    """
    counts = pd.read_csv(
        counts_path,
        sep=sep if sep is not None else infer_separator(counts_path)
    )
    metadata = pd.read_csv(
        metadata_path,
        sep=sep if sep is not None else infer_separator(metadata_path)
    )

    for col in [cell_col, gene_col, count_col]:
        if col not in counts.columns:
            raise ValueError(f"'{col}' not found in {counts_path}")
    for col in [cell_col, x_col, y_col]:
        if col not in metadata.columns:
            raise ValueError(f"'{col}' not found in {metadata_path}")

    metadata[cell_col] = metadata[cell_col].astype(str)
    check_unique(metadata[cell_col], name="メタデータの細胞 ID")
    metadata = metadata.set_index(cell_col)
    metadata.index.name = None

    counts[cell_col] = counts[cell_col].astype(str)
    counts[gene_col] = counts[gene_col].astype(str)

    unknown = ~counts[cell_col].isin(metadata.index)
    if unknown.any():
        raise ValueError(
            f"メタデータにない細胞のカウントがあります: "
            f"{list(counts.loc[unknown, cell_col].unique()[:5])}"
        )

    cells = pd.Categorical(counts[cell_col], categories=metadata.index)
    genes = pd.Categorical(counts[gene_col])

    # 重複する (細胞, 遺伝子) は合計される
    X = coo_matrix(
        (counts[count_col].to_numpy(dtype=np.float32), (cells.codes, genes.codes)),
        shape=(len(metadata), len(genes.categories))
    ).tocsr()
    X.sum_duplicates()

    adata = AnnData(
        X=X,
        obs=metadata,
        var=pd.DataFrame(index=genes.categories.astype(str))
    )
    adata.obsm['spatial'] = metadata[[x_col, y_col]].to_numpy(dtype=float)

    n_empty = int((np.asarray(X.sum(axis=1)).ravel() == 0).sum())
    if n_empty > 0:
        warnings.warn(f"カウントが 0 の細胞が {n_empty} 個あります", UserWarning)

    print(f"triplet データを読み込みました: {adata.n_obs} 細胞, {adata.n_vars} 遺伝子")

    return adata


def scale_coordinates(
    adata: AnnData,
    scale_factor: Optional[float] = None,
    library_id: Optional[str] = None,
    resolution: str = 'hires',
    offset: Tuple[float, float] = (0.0, 0.0),
    spatial_key: str = 'spatial',
    key_added: Optional[str] = None
) -> np.ndarray:
    """
    ピクセル座標をアフィン変換（coord * scale + offset）

    Parameters
    ----------
    adata : AnnData
        空間座標を含む AnnData
    scale_factor : float, optional
        スケールファクター
        指定しない場合は adata.uns['spatial'][library_id]['scalefactors']
        の tissue_{resolution}_scalef を使用
    library_id : str, optional
        adata.uns['spatial'] のキー（ライブラリが 1 つなら省略可）
    resolution : str, default='hires'
        'hires' または 'lowres'
    offset : tuple of float, default=(0, 0)
        平行移動量 (x, y)
    spatial_key : str, default='spatial'
        元の座標のキー（adata.obsm[spatial_key]）
    key_added : str, optional
        保存先のキー（指定しない場合は f'spatial_{resolution}'）

    Returns
    -------
    coords : np.ndarray, shape (n_obs, 2)
        変換後の座標
    """
    if spatial_key not in adata.obsm:
        raise ValueError(f"spatial_key '{spatial_key}' not found in adata.obsm")

    if scale_factor is None:
        library_id = _get_library_id(adata, library_id)
        scalefactors = adata.uns['spatial'][library_id]['scalefactors']
        name = f'tissue_{resolution}_scalef'
        if name not in scalefactors:
            raise ValueError(f"'{name}' not found in scalefactors of '{library_id}'")
        scale_factor = scalefactors[name]

    coords = np.asarray(adata.obsm[spatial_key], dtype=float) * scale_factor + np.asarray(offset)

    if key_added is None:
        key_added = f'spatial_{resolution}'
    adata.obsm[key_added] = coords

    print(f"座標を変換しました: scale={scale_factor}, offset={tuple(offset)} -> adata.obsm['{key_added}']")

    return coords


def _get_library_id(adata: AnnData, library_id: Optional[str] = None) -> str:
    if 'spatial' not in adata.uns:
        raise ValueError("adata.uns['spatial'] がありません。read_visium で読み込んでください。")

    libraries = list(adata.uns['spatial'].keys())
    if library_id is None:
        if len(libraries) != 1:
            raise ValueError(f"library_id を指定してください: {libraries}")
        return libraries[0]

    if library_id not in adata.uns['spatial']:
        raise ValueError(f"library_id '{library_id}' not found in adata.uns['spatial']: {libraries}")
    return library_id
