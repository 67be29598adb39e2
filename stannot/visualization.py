"""
可視化モジュール
空間座標上・UMAP 上へのアノテーション / 遺伝子発現のプロット
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
from anndata import AnnData
from typing import Optional, Tuple, List, Sequence, Union
import scanpy as sc

from .readers import scale_coordinates, _get_library_id
from .preprocessing import compute_embeddings


def _finish(save: Optional[str], show: bool):
    plt.tight_layout()

    if save:
        plt.savefig(save, dpi=300, bbox_inches='tight')
        print(f"図を保存しました: {save}")

    if show:
        plt.show()


def _check_color(adata: AnnData, color: str):
    if color not in adata.obs and color not in adata.var_names:
        raise ValueError(f"'{color}' not found in adata.obs or adata.var_names")


def _category_colors(
    adata: AnnData,
    key: str,
    categories: Sequence,
    palette: Optional[Union[Sequence[str], dict]]
) -> List[str]:
    if isinstance(palette, dict):
        return [palette[c] for c in categories]
    if palette is not None:
        palette = list(palette)
    elif f'{key}_colors' in adata.uns:
        palette = list(adata.uns[f'{key}_colors'])
    else:
        palette = sc.pl.palettes.default_20 if len(categories) <= 20 else sc.pl.palettes.default_102

    if len(palette) < len(categories):
        raise ValueError(f"パレットの色数が不足しています: {len(palette)} < {len(categories)}")

    return list(palette[:len(categories)])


def plot_spatial(
    adata: AnnData,
    color: str,
    basis: str = 'spatial',
    image: Optional[np.ndarray] = None,
    library_id: Optional[str] = None,
    img_key: Optional[str] = None,
    palette: Optional[Union[Sequence[str], dict]] = None,
    cmap: str = 'viridis',
    spot_size: Optional[float] = None,
    alpha: float = 1.0,
    figsize: Tuple[int, int] = (8, 8),
    title: Optional[str] = None,
    ax: Optional[plt.Axes] = None,
    save: Optional[str] = None,
    show: bool = True,
    **kwargs
) -> plt.Axes:
    """
    アノテーションまたは遺伝子発現を空間座標上にプロット

    Parameters
    ----------
    adata : AnnData
        データ
    color : str
        色付けする変数（adata.obs の列名または遺伝子名）
        カテゴリ列は離散色、数値列・遺伝子はカラーマップで表示
    basis : str, default='spatial'
        座標のキー（adata.obsm[basis]）
    image : np.ndarray, optional
        背景画像（座標は画像のピクセル座標である必要がある）
    library_id : str, optional
        adata.uns['spatial'] のキー（img_key と組み合わせて使用）
    img_key : str, optional
        'hires' または 'lowres'
        指定した場合は adata.uns['spatial'] の画像を背景にし、
        adata.obsm[f'spatial_{img_key}'] の座標（なければ変換して作成）を使う
    palette : list of str or dict, optional
        カテゴリ列の色（指定しない場合は adata.uns[f'{color}_colors']）
    cmap : str, default='viridis'
        連続値のカラーマップ
    spot_size : float, optional
        スポットのサイズ
    alpha : float, default=1.0
        スポットの透明度
    figsize : tuple, default=(8, 8)
        図のサイズ
    title : str, optional
        タイトル
    ax : matplotlib.axes.Axes, optional
        描画先
    save : str, optional
        保存先のパス
    show : bool, default=True
        plt.show() を呼ぶかどうか

    Returns
    -------
    ax : matplotlib.axes.Axes
    """
    _check_color(adata, color)

    if img_key is not None:
        library_id = _get_library_id(adata, library_id)
        images = adata.uns['spatial'][library_id]['images']
        if img_key not in images:
            raise ValueError(f"画像 '{img_key}' がありません: {list(images.keys())}")
        image = images[img_key]

        if basis == 'spatial':
            basis = f'spatial_{img_key}'
        if basis not in adata.obsm:
            scale_coordinates(adata, library_id=library_id, resolution=img_key, key_added=basis)

    if basis not in adata.obsm:
        raise ValueError(f"'{basis}' not found in adata.obsm")

    if image is None:
        # Scanpy の embedding plot を使用
        ax = sc.pl.embedding(
            adata,
            basis=basis,
            color=color,
            palette=palette,
            color_map=cmap,
            size=spot_size,
            alpha=alpha,
            frameon=False,
            title=title if title else color,
            ax=ax,
            show=False,
            **kwargs
        )
        ax.set_aspect('equal')
        _finish(save, show)
        return ax

    if ax is None:
        fig, ax = plt.subplots(figsize=figsize)

    coords = np.asarray(adata.obsm[basis])
    values = sc.get.obs_df(adata, keys=[color])[color]
    size = spot_size if spot_size is not None else 10

    ax.imshow(image)

    if isinstance(values.dtype, pd.CategoricalDtype) or not pd.api.types.is_numeric_dtype(values):
        values = values.astype('category')
        categories = list(values.cat.categories)
        colors = _category_colors(adata, color, categories, palette)
        for category, c in zip(categories, colors):
            mask = (values == category).values
            ax.scatter(coords[mask, 0], coords[mask, 1], c=c, s=size, alpha=alpha,
                       label=str(category), linewidths=0)
        ax.legend(loc='center left', bbox_to_anchor=(1.0, 0.5), frameon=False, markerscale=2)
    else:
        scatter = ax.scatter(coords[:, 0], coords[:, 1], c=values.values, cmap=cmap, s=size,
                             alpha=alpha, linewidths=0)
        plt.colorbar(scatter, ax=ax, shrink=0.6)

    ax.set_title(title if title else color)
    ax.set_axis_off()

    _finish(save, show)

    return ax


def plot_umap(
    adata: AnnData,
    color: Optional[Union[str, List[str]]] = None,
    palette: Optional[Union[Sequence[str], dict]] = None,
    save: Optional[str] = None,
    show: bool = True,
    **kwargs
):
    """
    UMAP 上にプロット

    Parameters
    ----------
    adata : AnnData
        データ
    color : str or list of str, optional
        色付けする変数（指定しない場合は 'cluster' / 'cell_type' のうち存在するもの）
    palette : list of str or dict, optional
        カテゴリ列の色
    save : str, optional
        保存先のパス
    show : bool, default=True
        plt.show() を呼ぶかどうか
    """
    # UMAP を計算（まだ計算されていない場合）
    if 'X_umap' not in adata.obsm:
        print("UMAP が未計算のため計算します...")
        compute_embeddings(adata)

    if color is None:
        color = [k for k in ['cluster', 'cell_type'] if k in adata.obs]
    if isinstance(color, str):
        color = [color]
    for c in color:
        _check_color(adata, c)

    axes = sc.pl.umap(
        adata,
        color=color if len(color) > 1 else color[0],
        palette=palette,
        frameon=False,
        show=False,
        **kwargs
    )

    _finish(save, show)

    return axes


def plot_deconvolution(
    adata: AnnData,
    key: str = 'deconvolution',
    basis: str = 'spatial',
    cell_types: Optional[List[str]] = None,
    ncols: int = 3,
    spot_size: Optional[float] = None,
    cmap: str = 'magma',
    save: Optional[str] = None,
    show: bool = True
):
    """
    デコンボリューションの細胞型割合を空間座標上にプロット

    Parameters
    ----------
    adata : AnnData
        attach_deconvolution() の結果
    key : str, default='deconvolution'
        デコンボリューション結果のキー
    basis : str, default='spatial'
        座標のキー
    cell_types : list of str, optional
        表示する細胞型（指定しない場合は全て）
    ncols : int, default=3
        列数
    """
    if f'{key}_cell_types' not in adata.uns:
        raise ValueError(f"'{key}_cell_types' not found in adata.uns. Run attach_deconvolution first.")

    available = list(adata.uns[f'{key}_cell_types'])
    if cell_types is None:
        cell_types = available
    missing = [c for c in cell_types if c not in available]
    if missing:
        raise ValueError(f"細胞型が見つかりません: {missing}")

    axes = sc.pl.embedding(
        adata,
        basis=basis,
        color=[f'{key}_{c}' for c in cell_types],
        title=list(cell_types),
        size=spot_size,
        color_map=cmap,
        vmin=0,
        vmax=1,
        ncols=ncols,
        frameon=False,
        show=False
    )

    _finish(save, show)

    return axes


def plot_composition(
    adata: AnnData,
    groupby: str = 'cluster',
    key: str = 'deconvolution',
    figsize: Tuple[int, int] = (10, 6),
    cmap: str = 'Reds',
    save: Optional[str] = None,
    show: bool = True
) -> plt.Axes:
    """
    グループ（クラスタなど）ごとの平均細胞型割合をヒートマップで表示

    key が adata.obsm にあればデコンボリューションの平均割合、
    adata.obs のカテゴリ列であればグループ内の構成比を表示する
    """
    if groupby not in adata.obs:
        raise ValueError(f"'{groupby}' not found in adata.obs")

    if key in adata.obsm:
        proportions = pd.DataFrame(adata.obsm[key], index=adata.obs_names)
        composition = proportions.groupby(adata.obs[groupby].values, observed=True).mean()
    elif key in adata.obs:
        composition = pd.crosstab(adata.obs[groupby], adata.obs[key], normalize='index')
    else:
        raise ValueError(f"'{key}' not found in adata.obsm or adata.obs")

    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(composition, cmap=cmap, vmin=0, annot=composition.shape[1] <= 12, fmt='.2f', ax=ax)
    ax.set_xlabel(key)
    ax.set_ylabel(groupby)
    ax.set_title(f'Composition by {groupby}')

    _finish(save, show)

    return ax
